#!/usr/bin/env python3
"""Error taxonomy for ODNAV.

Every failure the session manager and the folder navigator surface to their
callers is a subclass of SessionError, so that application code can catch the
whole family in one place and still branch on the precise kind.
"""

from typing import Optional


class SessionError(Exception):
    """Base class for all session and navigation errors."""

    def __init__(self, message: str = "", detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class AuthRequired(SessionError):
    """No usable credential is available; user interaction is needed."""
    pass


class RedirectPending(AuthRequired):
    """A redirect flow was started and must be resumed with the provider's response."""

    def __init__(self, message: str = "", auth_url: Optional[str] = None):
        super().__init__(message)
        self.auth_url = auth_url


class Cancelled(SessionError):
    """The user dismissed the interactive flow."""
    pass


class InteractionAlreadyInProgress(SessionError):
    """Another interactive flow is already running in this process."""
    pass


class NetworkError(SessionError):
    """Transport failure or transient remote failure."""

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InsufficientScope(SessionError):
    """The credential does not carry the scopes the resource requires."""
    pass


class ConfigurationMismatch(SessionError):
    """Runtime origin does not match the configured redirect address."""

    def __init__(self, origin: str, redirect_uri: str):
        super().__init__(
            f"Redirect URI mismatch - current origin: {origin}, configured: {redirect_uri}"
        )
        self.origin = origin
        self.redirect_uri = redirect_uri


class RetryBudgetExhausted(SessionError):
    """Automatic recovery gave up; manual action is required."""

    def __init__(self, operation: str, attempts: int, reason: str = "retry limit reached"):
        super().__init__(
            f"Automatic recovery for '{operation}' gave up after {attempts} attempt(s): {reason}"
        )
        self.operation = operation
        self.attempts = attempts
        self.reason = reason


class NavigationInProgress(SessionError):
    """A folder operation is already in flight on this navigator."""
    pass


class RemoteError(SessionError):
    """Non-retryable error returned by the remote store."""

    def __init__(self, message: str = "", status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class SecurityError(SessionError):
    """Raised when a security violation is detected."""
    pass
