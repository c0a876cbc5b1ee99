#!/usr/bin/env python3
"""Authentication diagnostics for ODNAV.

``run_diagnostics`` only reads state (plus throwaway storage probes) and
turns what it finds into an ordered list of remediation hints. The single
mutating entry point is ``repair_common_issues``.
"""

import logging
import os
from typing import Optional, Dict, Any, List, Tuple
from urllib.parse import urlparse, parse_qs

import keyring
from keyring.errors import KeyringError

from .errors import ConfigurationMismatch
from .models import DiagnosticsSnapshot, Hint, InteractionStatus
from .session import SessionController

logger = logging.getLogger(__name__)


# Hint kinds
CONFIGURATION_MISMATCH = "ConfigurationMismatch"
PROVIDER_ERROR = "ProviderError"
STALE_INTERACTION = "StaleInteraction"
PENDING_REDIRECT = "PendingRedirect"
STORAGE_UNAVAILABLE = "StorageUnavailable"
SESSION_DEGRADED = "SessionDegraded"
SIGN_IN_REQUIRED = "SignInRequired"
RETRY_EXHAUSTED = "RetryBudgetExhausted"
ALL_CLEAR = "AllClear"

KEYRING_PROBE_SERVICE = "odnav-probe"
KEYRING_PROBE_KEY = "probe"


DEFAULT_PORTS = {'http': 80, 'https': 443}


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def _origin_parts(url: str) -> Tuple[str, Optional[str], Optional[int]]:
    """Scheme, host and effective port of ``url``."""
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    try:
        port = parsed.port
    except ValueError:
        port = None
    return scheme, parsed.hostname, port or DEFAULT_PORTS.get(scheme)


def redirect_matches_origin(origin: str, redirect_uri: str) -> bool:
    """True if the configured redirect URI lives on the runtime origin."""
    return _origin_parts(redirect_uri) == _origin_parts(origin)


def url_error_params(url: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Extract provider ``error`` / ``error_description`` from an address."""
    if not url:
        return None, None
    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    params.update(parse_qs(parsed.fragment))
    error = params.get('error', [None])[0]
    description = params.get('error_description', [None])[0]
    return error, description


class Diagnostics:
    """Read-only inspection of the session plus an explicit repair action."""

    def __init__(self, controller: SessionController, navigator=None, keyring_backend=keyring):
        """Initialize diagnostics.

        Args:
            controller: Session controller to inspect
            navigator: Optional RemoteFolderNavigator whose retry budgets are reported
            keyring_backend: Module or object with get/set/delete_password
        """
        self.controller = controller
        self.config = controller.config
        self.store = controller.store
        self.navigator = navigator
        self._keyring = keyring_backend

    def runtime_origin(self, origin: Optional[str] = None) -> str:
        """Origin the application is actually reachable at."""
        return _origin(origin or os.environ.get('ODNAV_ORIGIN') or self.config.redirect_uri)

    def check_origin(self, origin: Optional[str] = None) -> None:
        """Raise ConfigurationMismatch if the redirect URI is not on the runtime origin."""
        runtime = self.runtime_origin(origin)
        if not redirect_matches_origin(runtime, self.config.redirect_uri):
            raise ConfigurationMismatch(runtime, self.config.redirect_uri)

    def _probe_keyring(self) -> bool:
        try:
            self._keyring.set_password(KEYRING_PROBE_SERVICE, KEYRING_PROBE_KEY, "test")
            ok = self._keyring.get_password(KEYRING_PROBE_SERVICE, KEYRING_PROBE_KEY) == "test"
            self._keyring.delete_password(KEYRING_PROBE_SERVICE, KEYRING_PROBE_KEY)
            return ok
        except (KeyringError, RuntimeError) as e:
            logger.debug(f"Keyring probe failed: {e}")
            return False

    def run_diagnostics(self, current_url: Optional[str] = None,
                        origin: Optional[str] = None) -> DiagnosticsSnapshot:
        """Inspect configuration, storage, session and interaction state.

        Args:
            current_url: Address the provider sent the user back to, if any
            origin: Runtime origin (defaults to ODNAV_ORIGIN or the redirect origin)

        Returns:
            Snapshot with issues and ordered remediation hints
        """
        issues: List[str] = []
        hints: List[Hint] = []
        details: Dict[str, Any] = {}
        controller = self.controller
        broker = controller.broker

        details['config'] = {
            'client_id': self.config.effective_client_id,
            'authority': self.config.authority,
            'redirect_uri': self.config.redirect_uri,
            'scopes': self.config.scopes,
        }

        # Redirect/origin mismatch is the most common root cause; report it first
        runtime = self.runtime_origin(origin)
        details['current_origin'] = runtime
        try:
            self.check_origin(origin)
        except ConfigurationMismatch as e:
            issues.append(str(e))
            hints.append(Hint(
                CONFIGURATION_MISMATCH,
                f"Redirect URI mismatch: the application runs at {runtime} but the configured "
                f"redirect URI is {self.config.redirect_uri}. Register {runtime} as a redirect URI "
                f"for the application, or set redirect_uri to match.",
            ))

        error, description = url_error_params(current_url)
        if error:
            issues.append(f"Auth error in URL: {error}")
            if description:
                issues.append(f"Error description: {description}")
            details['url_error'] = error
            details['url_error_description'] = description
            if error == 'redirect_uri_mismatch':
                hints.append(Hint(
                    PROVIDER_ERROR,
                    f"The identity provider rejected the redirect URI. Configure exactly "
                    f"\"{self.config.redirect_uri}\" in the application registration.",
                ))
            elif error in ('access_denied', 'consent_required'):
                hints.append(Hint(PROVIDER_ERROR,
                                  "Sign-in was declined or consent is missing. Sign in again and accept "
                                  "the requested permissions."))
            else:
                hints.append(Hint(PROVIDER_ERROR,
                                  f"The identity provider returned '{error}'. Clear stale state and sign in again."))

        marker = self.store.get_interaction_marker()
        if marker:
            age = self.store.interaction_marker_age() or 0.0
            live = broker is not None and broker.interaction_running()
            details['interaction_marker'] = {'mode': marker.get('mode'), 'age_seconds': round(age)}
            if live:
                details['interaction_marker']['live'] = True
            elif marker.get('mode') == 'redirect' and age <= self.config.interaction_ttl:
                hints.append(Hint(PENDING_REDIRECT,
                                  "A redirect sign-in is waiting for its response. Finish it in the browser "
                                  "and resume, or repair to start over."))
            else:
                issues.append("Stale interaction state detected")
                hints.append(Hint(STALE_INTERACTION,
                                  "A previous sign-in never finished. Run repair to clear stale state, "
                                  "then sign in again."))

        local_ok = self._probe_keyring()
        session_ok = self.store.probe()
        details['local_storage'] = 'available' if local_ok else 'unavailable'
        details['session_storage'] = 'available' if session_ok else 'unavailable'
        if not local_ok:
            issues.append("Cannot access the system keyring")
            hints.append(Hint(STORAGE_UNAVAILABLE,
                              "Unlock or install a keyring backend (Secret Service, KWallet) so the "
                              "token cache can be encrypted."))
        if not session_ok:
            issues.append(f"Cannot write session store at {self.store.path}")
            hints.append(Hint(STORAGE_UNAVAILABLE,
                              f"Check permissions on {self.store.path.parent}."))

        details['session_state'] = controller.state.value
        if controller.degraded_reason:
            issues.append(f"Session degraded: {controller.degraded_reason}")
            hints.append(Hint(SESSION_DEGRADED,
                              "Automatic sign-in stopped. Use the manual sign-in action, or continue "
                              "without OneDrive."))

        interaction = broker.interaction_status if broker else InteractionStatus()
        details['interaction_state'] = interaction.state.value
        if broker is not None:
            accounts = broker.list_accounts()
            details['accounts'] = len(accounts)
            details['account_names'] = [a.username for a in accounts]
            active = broker.get_account()
            details['active_account'] = active.username if active else None
            if not accounts:
                hints.append(Hint(SIGN_IN_REQUIRED, "No accounts found. Sign in first."))
        else:
            details['identity_client'] = 'not initialized'

        if self.navigator is not None:
            budgets = self.navigator.budget.snapshot()
            details['retry_budgets'] = budgets
            exhausted = sorted(op for op, b in budgets.items() if b['exhausted'])
            if exhausted or self.navigator.auto_fetch_halted:
                issues.append(f"Automatic retries stopped for: {', '.join(exhausted) or 'auto_fetch'}")
                hints.append(Hint(RETRY_EXHAUSTED,
                                  "Automatic retries were stopped. Retry manually, or continue without "
                                  "this feature."))

        if not issues and not hints:
            hints.append(Hint(ALL_CLEAR,
                              "Configuration appears correct. Try signing in with the popup flow."))

        return DiagnosticsSnapshot(
            success=not issues,
            session_state=controller.state.value,
            interaction=interaction,
            issues=issues,
            hints=hints,
            details=details,
        )

    def repair_common_issues(self) -> None:
        """Clear stale interaction markers and the identity client's cache.

        Never starts a sign-in. Safe to call repeatedly.
        """
        broker = self.controller.broker
        if broker is not None:
            if broker.reset_interaction():
                logger.info("Removed stale interaction marker")
            broker.clear_cache()
        elif self.store.clear_interaction_marker():
            logger.info("Removed stale interaction marker")
