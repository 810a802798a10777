"""
Custom exceptions for session storage and sync.

All backends, the credential manager and the remote channel raise these
so callers can tell local persistence failures, authentication problems
and transport failures apart.
"""


class SessionStorageError(Exception):
    """Base exception for all session storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SessionNotFoundError(SessionStorageError):
    """Raised when a session is not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class SessionValidationError(SessionStorageError):
    """Raised when session validation fails (e.g., invalid session_id)."""

    def __init__(self, message: str, field: str | None = None):
        details = {}
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class StorageIOError(SessionStorageError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageConnectionError(SessionStorageError):
    """Raised when a store or remote endpoint cannot be reached.

    Note: Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class SyncError(SessionStorageError):
    """Raised when synchronization fails."""

    def __init__(self, message: str, session_id: str | None = None, cause: Exception | None = None):
        details: dict = {}
        if session_id:
            details["session_id"] = session_id
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.session_id = session_id
        self.cause = cause


# =============================================================================
# Authentication
# =============================================================================


class AuthenticationError(SessionStorageError):
    """Raised when authentication fails or is not possible."""

    def __init__(self, reason: str, details: dict | None = None):
        super().__init__(reason, details)
        self.reason = reason


class NotSignedInError(AuthenticationError):
    """Raised when a token is requested but no credentials are stored."""

    def __init__(self, message: str = 'Not signed in to Google. Run "session-mirror sign-in".'):
        super().__init__(message)


class StateMismatchError(AuthenticationError):
    """Raised when the OAuth callback state does not match the one we issued.

    This is a security failure, not a transient one: the flow is aborted
    and no token exchange happens.
    """

    def __init__(self) -> None:
        super().__init__("OAuth state mismatch - possible CSRF attack. Sign-in aborted.")


class OAuthProviderError(AuthenticationError):
    """Raised when the provider redirects back with an ``error`` parameter."""

    def __init__(self, error: str, description: str | None = None):
        details = {"error": error}
        if description:
            details["description"] = description
        super().__init__(f"Authorization failed: {error}", details)
        self.error = error
        self.description = description


class SignInTimeoutError(AuthenticationError):
    """Raised when no OAuth callback arrives before the deadline."""

    def __init__(self, timeout_s: float):
        super().__init__(
            f"OAuth timeout - no response received within {int(timeout_s)} seconds",
            {"timeout_s": timeout_s},
        )
        self.timeout_s = timeout_s


class TokenRefreshError(AuthenticationError):
    """Raised when the refresh token is rejected by the provider."""

    def __init__(self, status: int | None = None, body: str | None = None):
        details: dict = {}
        if status is not None:
            details["status"] = status
        if body:
            details["body"] = body
        super().__init__("Token refresh failed - please sign in again", details)
        self.status = status


# =============================================================================
# Transport
# =============================================================================


class RemoteRequestError(SessionStorageError):
    """Raised when the remote blob service answers with a non-2xx status."""

    def __init__(self, method: str, url: str, status: int, body: str = ""):
        super().__init__(
            f"{method} {url} -> {status}: {body[:500]}",
            {"method": method, "url": url, "status": status},
        )
        self.method = method
        self.url = url
        self.status = status
        self.body = body


class RemoteAuthError(RemoteRequestError):
    """Raised on 401/403 from the remote service. Never retried by the channel."""
