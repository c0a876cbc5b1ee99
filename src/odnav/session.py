#!/usr/bin/env python3
"""Session lifecycle for ODNAV.

SessionController drives the identity client through

    UNINITIALIZED -> INITIALIZING -> READY

with DEGRADED (awaiting manual action) reachable from INITIALIZING or READY.
Consumers watch readiness through ``is_ready()`` or ``subscribe()`` and must
not use dependent features before READY. In DEGRADED they offer a manual
"sign in" action and never retry on their own.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from enum import Enum
from typing import Optional, List, Callable, Iterable, Union, Dict, Any

from .config import Config
from .credential_store import CredentialStore
from .errors import (
    AuthRequired, InteractionAlreadyInProgress, RedirectPending, RetryBudgetExhausted,
    SessionError,
)
from .models import Account, Credential
from .retry import RetryBudget, SESSION_INTERACTION
from .token_broker import TokenBroker

logger = logging.getLogger(__name__)


RedirectResponse = Union[str, Dict[str, Any], Callable[[], Optional[Union[str, Dict[str, Any]]]]]
StateListener = Callable[['SessionState', 'SessionState'], None]


class SessionState(Enum):
    UNINITIALIZED = 'uninitialized'
    INITIALIZING = 'initializing'
    READY = 'ready'
    DEGRADED = 'degraded_awaiting_manual_action'


class SessionController:
    """Orchestrates identity-client startup, redirect resume and sign-out."""

    def __init__(self, config: Config, store: Optional[CredentialStore] = None,
                 broker_factory: Optional[Callable[[CredentialStore], TokenBroker]] = None,
                 require_account: bool = False):
        """Initialize session controller.

        Args:
            config: Configuration manager
            store: Session-scoped credential store (defaults to config.session_path)
            broker_factory: Builds the TokenBroker; construction errors degrade
                the session instead of propagating
            require_account: Only become READY when an account is cached
        """
        self.config = config
        self.store = store or CredentialStore(config.session_path)
        self._broker_factory = broker_factory or (lambda s: TokenBroker.from_config(config, s))
        self.require_account = require_account

        self.broker: Optional[TokenBroker] = None
        self.degraded_reason: Optional[str] = None
        self._state = SessionState.UNINITIALIZED
        self._listeners: List[StateListener] = []
        self._sign_out_hooks: List[Callable[[], None]] = []
        # One automatic interactive attempt per application lifetime
        self._auto_interaction = RetryBudget(ceiling=1)
        self._lock = threading.RLock()

    # Observable state

    @property
    def state(self) -> SessionState:
        return self._state

    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a readiness listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def on_sign_out(self, hook: Callable[[], None]) -> None:
        """Register a hook run on sign-out (e.g. resetting a navigator)."""
        self._sign_out_hooks.append(hook)

    def _transition(self, new_state: SessionState, reason: Optional[str] = None) -> None:
        old_state = self._state
        self._state = new_state
        self.degraded_reason = reason if new_state == SessionState.DEGRADED else None

        if new_state == SessionState.DEGRADED:
            logger.error(f"Session degraded: {reason}")
        else:
            logger.debug(f"Session state {old_state.value} -> {new_state.value}")

        if old_state != new_state:
            for listener in list(self._listeners):
                try:
                    listener(old_state, new_state)
                except Exception:
                    logger.exception("Session state listener failed")

    # Startup

    def clear_stale_markers(self, expecting_response: bool = False) -> bool:
        """Remove an interaction marker left behind by an interrupted flow.

        A marker is stale when it is older than the configured TTL, belongs
        to a popup flow (those never outlive their process), or belongs to a
        redirect flow with no response to consume.

        Returns:
            True if a marker was removed
        """
        marker = self.store.get_interaction_marker()
        if not marker:
            return False

        age = self.store.interaction_marker_age() or 0.0
        stale = (
            age > self.config.interaction_ttl
            or marker.get('mode') != 'redirect'
            or not expecting_response
        )
        if not stale:
            return False

        self.store.clear_interaction_marker()
        logger.warning(f"Cleared stale {marker.get('mode', 'unknown')} interaction marker ({age:.0f}s old)")
        return True

    def start(self, redirect_response: Optional[RedirectResponse] = None) -> SessionState:
        """Initialize the identity client and consume any pending redirect response.

        Args:
            redirect_response: The provider's response to a redirect flow started
                earlier (URL, parameter dict, or a callable that waits for it)

        Returns:
            Resulting session state
        """
        with self._lock:
            if self._state not in (SessionState.UNINITIALIZED, SessionState.DEGRADED):
                return self._state

            self._transition(SessionState.INITIALIZING)
            self.clear_stale_markers(expecting_response=redirect_response is not None)

            try:
                self.broker = self._broker_factory(self.store)
            except Exception as e:
                logger.debug("Identity client construction failed", exc_info=True)
                self.broker = None
                self._transition(SessionState.DEGRADED, f"Identity library failed to initialize: {e}")
                return self._state

            try:
                self.handle_redirect_response(redirect_response)
            except (SessionError, TimeoutError) as e:
                self._transition(SessionState.DEGRADED, f"Could not complete sign-in: {e}")
                return self._state

            if self.require_account and self.broker.get_account() is None:
                self._transition(SessionState.DEGRADED, "Sign-in required")
                return self._state

            self._transition(SessionState.READY)
            return self._state

    def handle_redirect_response(self, response: Optional[RedirectResponse],
                                 timeout: Optional[float] = None) -> Optional[Credential]:
        """Consume a redirect response with a bounded wait.

        Raises:
            TimeoutError: If the response is not handled within ``timeout``
                seconds (defaults to the configured redirect timeout)
        """
        if response is None:
            return None
        if self.broker is None:
            raise AuthRequired("Identity library is not initialized")

        if not self.broker.has_pending_redirect():
            logger.warning("Redirect response received but no sign-in is pending; ignoring it")
            return None

        limit = timeout if timeout is not None else self.config.redirect_timeout
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='odnav-redirect')
        future = executor.submit(self._consume_redirect, response)
        try:
            return future.result(timeout=limit)
        except FutureTimeout:
            # The worker may still be blocked in the provider call; it discards
            # its result once it sees the flow was abandoned
            self.broker.abandon_interaction()
            raise TimeoutError(f"Timed out after {limit:g}s waiting for the sign-in response")
        finally:
            executor.shutdown(wait=False)

    def _consume_redirect(self, response: RedirectResponse) -> Optional[Credential]:
        if callable(response):
            response = response()
            if response is None:
                return None
        credential = self.broker.complete_redirect(response)
        self._auto_interaction.reset()
        return credential

    # Application-facing operations

    def get_access_token(self, scopes: Optional[Iterable[str]] = None) -> Credential:
        """Return a currently valid credential for ``scopes``.

        Interaction is attempted automatically at most once per application
        lifetime; afterwards AuthRequired propagates until the user signs in
        explicitly through ``manual_sign_in``. A failed automatic sign-in moves
        the session to DEGRADED.
        """
        if not self.is_ready():
            raise AuthRequired(
                f"Session is not ready ({self.degraded_reason or self._state.value})"
            )

        scopes = list(scopes or self.config.scopes)
        try:
            return self.broker.acquire_token(scopes, allow_interaction=False)
        except AuthRequired as e:
            try:
                self._auto_interaction.consume(SESSION_INTERACTION)
            except RetryBudgetExhausted:
                logger.info("Automatic sign-in already attempted; manual sign-in required")
                self._transition(SessionState.DEGRADED, "Sign-in required")
                raise e
            try:
                return self.broker.acquire_token_interactive(scopes)
            except (RedirectPending, InteractionAlreadyInProgress):
                # Still signing in; the pending flow decides the outcome
                raise
            except SessionError as err:
                self._transition(SessionState.DEGRADED, f"Automatic sign-in failed: {err}")
                raise

    def manual_sign_in(self, scopes: Optional[Iterable[str]] = None) -> Credential:
        """User-triggered recovery: clear stale state and sign in interactively."""
        with self._lock:
            if self.broker is None:
                try:
                    self.broker = self._broker_factory(self.store)
                except Exception as e:
                    self._transition(SessionState.DEGRADED, f"Identity library failed to initialize: {e}")
                    raise AuthRequired(f"Identity library failed to initialize: {e}")

            self.broker.reset_interaction()
            credential = self.broker.acquire_token_interactive(list(scopes or self.config.scopes))
            self._auto_interaction.reset()
            self._transition(SessionState.READY)
            return credential

    def resume(self, response: RedirectResponse) -> Credential:
        """Complete a redirect flow started by this or an earlier process."""
        with self._lock:
            if self.broker is None:
                raise AuthRequired("Identity library is not initialized")
            credential = self.handle_redirect_response(response)
            if credential is None:
                raise AuthRequired("No sign-in response was received")
            self._transition(SessionState.READY)
            return credential

    def get_account(self) -> Optional[Account]:
        return self.broker.get_account() if self.broker else None

    def sign_out(self, open_browser: bool = True) -> Optional[str]:
        """Sign out, reset dependents and return to READY with no account.

        Returns:
            Provider logout URL, or None if the identity library never started
        """
        with self._lock:
            self._transition(SessionState.INITIALIZING)
            url = None
            if self.broker is not None:
                url = self.broker.sign_out(open_browser=open_browser)
            for hook in list(self._sign_out_hooks):
                hook()
            self._auto_interaction.reset()
            if self.broker is None:
                self._transition(SessionState.DEGRADED, "Identity library is not initialized")
            else:
                self._transition(SessionState.READY)
            return url


_controller: Optional[SessionController] = None
_controller_lock = threading.Lock()


def get_session_controller(config: Optional[Config] = None) -> SessionController:
    """Return the process-wide controller, creating it on first use."""
    global _controller
    with _controller_lock:
        if _controller is None:
            _controller = SessionController(config or Config())
        return _controller


def set_session_controller(controller: Optional[SessionController]) -> None:
    """Install a controller instance (tests install isolated ones)."""
    global _controller
    with _controller_lock:
        _controller = controller


def reset_session_controller() -> None:
    set_session_controller(None)
