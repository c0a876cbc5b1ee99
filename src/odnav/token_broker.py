#!/usr/bin/env python3
"""Token acquisition for ODNAV.

TokenBroker owns the single identity client (msal.PublicClientApplication)
of the process. It resolves the active account, tries silent acquisition
first and falls back to exactly one interactive flow when the provider says
interaction is required.

Interactive flows come in two shapes:

- popup: the system browser plus a loopback listener, completed inside the
  current call (``acquire_token_interactive`` in MSAL).
- redirect: a two-phase auth-code flow. ``begin_redirect`` writes the
  interaction marker, including the pending flow, to the CredentialStore and
  returns the authorization URL. ``complete_redirect`` consumes the
  provider's response, possibly in a later process, and clears the marker.

Only one interactive flow may be in progress at a time; a second attempt
fails immediately with InteractionAlreadyInProgress.
"""

import logging
import threading
import time
import webbrowser
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Callable, Iterable, Union
from urllib.parse import urlencode, urlparse, parse_qs

import msal
import requests
from keyring.errors import KeyringError

from .credential_store import CredentialStore
from .errors import (
    AuthRequired, Cancelled, InteractionAlreadyInProgress, InsufficientScope,
    NetworkError, RedirectPending, SessionError,
)
from .logging_config import sanitize_for_log
from .models import (
    Account, Credential, InteractionState, InteractionStatus, normalize_scopes,
)

logger = logging.getLogger(__name__)


# MSAL error codes that mean "a user has to sign in or consent again"
INTERACTION_REQUIRED_ERRORS = {
    'interaction_required', 'login_required', 'consent_required', 'invalid_grant',
}
CANCELLED_ERRORS = {'access_denied', 'user_cancelled', 'authentication_canceled'}
SCOPE_ERRORS = {'invalid_scope', 'insufficient_scope'}

# Exceptions raised when the popup flow cannot run at all (no browser,
# loopback port unavailable). These trigger the redirect fallback.
POPUP_FAILURES = (OSError, RuntimeError, webbrowser.Error)

# Failures of the keyring or the on-disk store while reading or writing the
# serialized token cache
STORAGE_FAILURES = (KeyringError, OSError)

RedirectHandler = Callable[[str], Optional[Union[str, Dict[str, str]]]]


def parse_auth_response(response: Union[str, Dict[str, Any]]) -> Dict[str, str]:
    """Turn a redirect response URL (or query dict) into a flat parameter dict."""
    if isinstance(response, dict):
        return {k: (v[0] if isinstance(v, list) else v) for k, v in response.items()}

    parsed = urlparse(response.strip())
    params = parse_qs(parsed.query)
    # Implicit/hybrid responses carry their parameters in the fragment
    params.update(parse_qs(parsed.fragment))
    return {k: v[0] for k, v in params.items()}


class TokenBroker:
    """Silent-first, interactive-fallback token acquisition."""

    def __init__(self, client_id: str, authority: str, redirect_uri: str,
                 store: CredentialStore,
                 post_logout_redirect_uri: Optional[str] = None,
                 prefer_popup: bool = True,
                 app: Optional[Any] = None,
                 redirect_handler: Optional[RedirectHandler] = None,
                 browser_opener: Callable[[str], bool] = webbrowser.open):
        """Initialize token broker.

        Args:
            client_id: Application (client) ID
            authority: Authority URL (tenant or consumers endpoint)
            redirect_uri: Redirect URI registered for the application
            store: Session-scoped credential store
            post_logout_redirect_uri: Destination after provider-side sign-out
            prefer_popup: Try the popup flow before the redirect flow
            app: Pre-built identity client (tests inject a fake here)
            redirect_handler: Called with the authorization URL of a redirect
                flow; returns the provider's response (URL or dict) or None
                when the response will arrive in a later process
            browser_opener: Opens URLs in the user's browser
        """
        self.client_id = client_id
        self.authority = authority.rstrip('/')
        self.redirect_uri = redirect_uri
        self.post_logout_redirect_uri = post_logout_redirect_uri or redirect_uri
        self.store = store
        self.prefer_popup = prefer_popup
        self.redirect_handler = redirect_handler
        self._browser_opener = browser_opener

        if app is None:
            cache = msal.SerializableTokenCache()
            try:
                serialized = store.load_token_cache()
            except STORAGE_FAILURES as e:
                logger.warning(f"Token cache unavailable, starting with an empty cache: {e}")
                serialized = None
            if serialized:
                try:
                    cache.deserialize(serialized)
                except ValueError as e:
                    logger.warning(f"Discarding unreadable token cache: {e}")
                    cache = msal.SerializableTokenCache()
            app = msal.PublicClientApplication(
                client_id, authority=self.authority, token_cache=cache,
            )
            logger.debug("Identity client initialized")
        self.app = app

        self._active_home_id: Optional[str] = None
        # Token of the interactive flow holding the slot; None when free
        self._active_flow: Optional[object] = None
        self._slot_guard = threading.Lock()
        self._status = InteractionStatus()

    @classmethod
    def from_config(cls, config, store: CredentialStore, **kwargs) -> 'TokenBroker':
        return cls(
            client_id=config.effective_client_id,
            authority=config.authority,
            redirect_uri=config.redirect_uri,
            post_logout_redirect_uri=config.post_logout_redirect_uri,
            prefer_popup=config.prefer_popup,
            store=store,
            **kwargs,
        )

    # Accounts

    def _raw_account(self) -> Optional[Dict[str, Any]]:
        accounts = self.app.get_accounts()
        if not accounts:
            return None
        if self._active_home_id:
            for account in accounts:
                if account.get('home_account_id') == self._active_home_id:
                    return account
        return accounts[0]

    def get_account(self) -> Optional[Account]:
        """Return the active account, else the first cached one, else None."""
        raw = self._raw_account()
        return Account.from_msal(raw) if raw else None

    def list_accounts(self) -> List[Account]:
        return [Account.from_msal(a) for a in self.app.get_accounts()]

    def set_active_account(self, account: Optional[Account]) -> None:
        self._active_home_id = account.home_account_id if account else None

    @property
    def active_account_id(self) -> Optional[str]:
        return self._active_home_id

    # Interaction state

    @property
    def interaction_status(self) -> InteractionStatus:
        if self.store.get_interaction_marker() and self._status.state != InteractionState.IN_PROGRESS:
            return InteractionStatus(InteractionState.IN_PROGRESS)
        return self._status

    def interaction_running(self) -> bool:
        """True while an interactive flow is executing in this process."""
        return self._active_flow is not None

    def interaction_in_progress(self) -> bool:
        return self.interaction_running() or bool(self.store.get_interaction_marker())

    def _owns_slot(self, flow: Optional[object]) -> bool:
        return flow is None or self._active_flow is flow

    @contextmanager
    def _interaction_slot(self, check_marker: bool = True):
        """Hold the process-wide interaction slot, failing fast if taken.

        Yields the flow token; a flow that was abandoned while running no
        longer owns the slot and must discard its result.
        """
        with self._slot_guard:
            if self._active_flow is not None:
                raise InteractionAlreadyInProgress(
                    "An interactive sign-in is already in progress. Complete it first."
                )
            flow = object()
            self._active_flow = flow
        try:
            marker = self.store.get_interaction_marker() if check_marker else None
            if marker:
                raise InteractionAlreadyInProgress(
                    f"A {marker.get('mode', 'sign-in')} flow is still pending. "
                    "Resume it or clear stale state before starting another."
                )
            yield flow
        finally:
            with self._slot_guard:
                if self._active_flow is flow:
                    self._active_flow = None

    def abandon_interaction(self) -> bool:
        """Give up on the running flow (e.g. a stuck redirect redemption).

        The slot and the marker are released immediately, so a new sign-in can
        start. The abandoned flow discards whatever it receives later.

        Returns:
            True if a marker was removed
        """
        with self._slot_guard:
            abandoned = self._active_flow is not None
            self._active_flow = None
        removed = self.store.clear_interaction_marker()
        if abandoned or removed:
            logger.warning("Abandoned unfinished interactive sign-in")
            self._status = InteractionStatus(InteractionState.FAILED, "sign-in abandoned")
        return removed

    def reset_interaction(self) -> bool:
        """Clear the interaction marker unless a flow is live in this process.

        Returns:
            True if a marker was removed
        """
        if self.interaction_running():
            logger.debug("Interactive flow running in this process; marker kept")
            return False
        removed = self.store.clear_interaction_marker()
        self._status = InteractionStatus()
        return removed

    def _finish(self, error: Optional[Exception] = None) -> None:
        if error is None:
            self._status = InteractionStatus(InteractionState.COMPLETED)
        else:
            self._status = InteractionStatus(InteractionState.FAILED, str(error))

    # Results

    def _persist_cache(self) -> None:
        cache = getattr(self.app, 'token_cache', None)
        if cache is None or not hasattr(cache, 'serialize'):
            return
        if getattr(cache, 'has_state_changed', True):
            try:
                self.store.save_token_cache(cache.serialize())
            except STORAGE_FAILURES as e:
                # The token is still valid for this process
                logger.warning(f"Could not persist token cache: {e}")
                return
            if hasattr(cache, 'has_state_changed'):
                cache.has_state_changed = False

    def _account_for_result(self, result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        accounts = self.app.get_accounts()
        if not accounts:
            return None
        claims = result.get('id_token_claims') or {}
        username = claims.get('preferred_username')
        oid = claims.get('oid')
        for account in accounts:
            if username and account.get('username') == username:
                return account
            if oid and account.get('local_account_id') == oid:
                return account
        return accounts[0]

    def _error_from_result(self, result: Dict[str, Any]) -> SessionError:
        """Map an MSAL error dictionary onto the error taxonomy."""
        error = result.get('error', 'unknown_error')
        description = sanitize_for_log(result.get('error_description', '') or error)

        if error in CANCELLED_ERRORS:
            return Cancelled(f"Sign-in was cancelled: {description}", detail=error)
        if error in SCOPE_ERRORS:
            return InsufficientScope(f"Requested scopes were refused: {description}", detail=error)
        if error in INTERACTION_REQUIRED_ERRORS or result.get('suberror'):
            return AuthRequired(f"User interaction required: {description}", detail=error)
        if error in ('temporarily_unavailable', 'server_error'):
            return NetworkError(f"Identity provider unavailable: {description}")
        return AuthRequired(f"Token acquisition failed: {description}", detail=error)

    def _credential(self, result: Dict[str, Any], scopes: Iterable[str],
                    raw_account: Optional[Dict[str, Any]] = None) -> Credential:
        account = raw_account or self._account_for_result(result)
        return Credential(
            access_token=result['access_token'],
            scopes=normalize_scopes(scopes),
            expires_at=time.time() + int(result.get('expires_in', 3600)),
            account=Account.from_msal(account) if account else None,
        )

    def _complete_interactive(self, result: Dict[str, Any], scopes: List[str]) -> Credential:
        if 'access_token' not in result:
            raise self._error_from_result(result)
        credential = self._credential(result, scopes)
        if credential.account:
            self._active_home_id = credential.account.home_account_id
            logger.info(f"Signed in as {credential.account.username or credential.account.home_account_id}")
        self._persist_cache()
        return credential

    # Acquisition

    def acquire_token(self, scopes: Iterable[str], allow_interaction: bool = True) -> Credential:
        """Get a credential for ``scopes``, silently if possible.

        Args:
            scopes: Scopes the credential must be issued for
            allow_interaction: Fall back to one interactive flow when the
                provider requires it; otherwise raise AuthRequired

        Raises:
            AuthRequired: Interaction needed but could not complete
            RedirectPending: A redirect flow was started and awaits its response
            Cancelled: The user dismissed the interactive flow
            InteractionAlreadyInProgress: Another interactive flow is running
            NetworkError: Transport failure
        """
        scopes = list(scopes)
        raw = self._raw_account()

        if raw is not None:
            try:
                result = self.app.acquire_token_silent(scopes, account=raw)
            except requests.exceptions.RequestException as e:
                raise NetworkError(f"Network failure during silent token acquisition: {e}")

            if result and 'access_token' in result:
                self._persist_cache()
                return self._credential(result, scopes, raw)

            if result and 'error' in result:
                error = self._error_from_result(result)
                if not isinstance(error, AuthRequired):
                    raise error
                logger.info(f"Silent acquisition needs interaction: {result.get('error')}")
            else:
                error = AuthRequired("No cached token for the requested scopes")
                logger.info("No cached token for requested scopes; interaction required")
        else:
            error = AuthRequired("No signed-in account")
            logger.info("No cached account; interactive sign-in required")

        if not allow_interaction:
            raise error
        return self.acquire_token_interactive(scopes)

    def acquire_token_interactive(self, scopes: Iterable[str]) -> Credential:
        """Run one interactive flow (popup first, then redirect)."""
        scopes = list(scopes)
        with self._interaction_slot() as flow:
            self._status = InteractionStatus(InteractionState.IN_PROGRESS)

            if self.prefer_popup:
                credential = self._acquire_popup(scopes)
                if credential is not None:
                    return credential

            return self._redirect_round_trip(scopes, flow)

    def _acquire_popup(self, scopes: List[str]) -> Optional[Credential]:
        """Run the popup flow; None means the popup could not run at all."""
        self.store.set_interaction_marker('popup', scopes)
        try:
            parsed = urlparse(self.redirect_uri)
            kwargs = {'prompt': 'select_account'}
            if parsed.hostname in ('localhost', '127.0.0.1') and parsed.port:
                kwargs['port'] = parsed.port
            try:
                result = self.app.acquire_token_interactive(scopes, **kwargs)
            except requests.exceptions.RequestException as e:
                raise NetworkError(f"Network failure during interactive sign-in: {e}")
            except POPUP_FAILURES as e:
                logger.warning(f"Popup sign-in unavailable, falling back to redirect: {e}")
                return None
            credential = self._complete_interactive(result, scopes)
        except SessionError as e:
            self._finish(e)
            raise
        finally:
            self.store.clear_interaction_marker()
        self._finish()
        return credential

    def _redirect_round_trip(self, scopes: List[str], flow: object) -> Credential:
        auth_url = self._begin_redirect(scopes)
        if self.redirect_handler is None:
            raise RedirectPending("Redirect sign-in started; resume with the provider's response",
                                  auth_url=auth_url)
        response = self.redirect_handler(auth_url)
        if response is None:
            raise RedirectPending("Redirect sign-in awaiting the provider's response",
                                  auth_url=auth_url)
        return self._complete_redirect(response, flow)

    # Two-phase redirect protocol

    def begin_redirect(self, scopes: Iterable[str]) -> str:
        """Phase one: write the marker with the pending flow, return the auth URL."""
        with self._interaction_slot():
            return self._begin_redirect(list(scopes))

    def _begin_redirect(self, scopes: List[str]) -> str:
        try:
            flow = self.app.initiate_auth_code_flow(
                scopes, redirect_uri=self.redirect_uri, prompt='select_account',
            )
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Network failure starting redirect sign-in: {e}")
        if 'auth_uri' not in flow:
            raise self._error_from_result(flow)

        self.store.set_interaction_marker('redirect', scopes, flow=flow)
        self._status = InteractionStatus(InteractionState.IN_PROGRESS)
        logger.info("Redirect sign-in started")
        return flow['auth_uri']

    def has_pending_redirect(self) -> bool:
        marker = self.store.get_interaction_marker()
        return bool(marker and marker.get('mode') == 'redirect' and marker.get('flow'))

    def complete_redirect(self, auth_response: Union[str, Dict[str, Any]]) -> Credential:
        """Phase two: consume the provider's response and clear the marker."""
        with self._interaction_slot(check_marker=False) as flow:
            return self._complete_redirect(auth_response, flow)

    def _complete_redirect(self, auth_response: Union[str, Dict[str, Any]],
                           flow: Optional[object] = None) -> Credential:
        marker = self.store.get_interaction_marker()
        if not marker or marker.get('mode') != 'redirect' or not marker.get('flow'):
            raise AuthRequired("No pending redirect sign-in to complete")

        params = parse_auth_response(auth_response)
        scopes = marker.get('scopes', [])
        try:
            try:
                result = self.app.acquire_token_by_auth_code_flow(marker['flow'], params)
            except ValueError as e:
                # State mismatch or malformed response
                raise AuthRequired(f"Redirect response rejected: {e}")
            except requests.exceptions.RequestException as e:
                raise NetworkError(f"Network failure completing redirect sign-in: {e}")
            if not self._owns_slot(flow):
                # Abandoned while redeeming; a newer flow may own the marker now
                logger.warning("Discarding response of an abandoned redirect sign-in")
                raise Cancelled("Sign-in was abandoned before the response arrived")
            credential = self._complete_interactive(result, scopes)
        except SessionError as e:
            if self._owns_slot(flow):
                self._finish(e)
            raise
        finally:
            if self._owns_slot(flow):
                self.store.clear_interaction_marker()
        self._finish()
        return credential

    # Sign-out and cache maintenance

    def logout_url(self) -> str:
        query = urlencode({'post_logout_redirect_uri': self.post_logout_redirect_uri})
        return f"{self.authority}/oauth2/v2.0/logout?{query}"

    def sign_out(self, open_browser: bool = True) -> str:
        """Remove the active account and trigger provider-side sign-out.

        Returns:
            The provider logout URL
        """
        raw = self._raw_account()
        if raw is not None:
            self.app.remove_account(raw)
            logger.info(f"Signed out {raw.get('username') or raw.get('home_account_id')}")
        self._active_home_id = None
        self._persist_cache()

        url = self.logout_url()
        if open_browser:
            try:
                self._browser_opener(url)
            except webbrowser.Error as e:
                logger.warning(f"Could not open browser for sign-out: {e}")
        return url

    def clear_cache(self) -> int:
        """Drop every cached account from the identity client.

        Returns:
            Number of accounts removed
        """
        accounts = self.app.get_accounts()
        for account in accounts:
            self.app.remove_account(account)
        self._active_home_id = None
        self.store.clear_token_cache()
        logger.info(f"Cleared identity cache ({len(accounts)} account(s))")
        return len(accounts)
