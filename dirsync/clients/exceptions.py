"""Exception classes for the directory synchronization client.

Every error carries a stable ``kind`` which the outer provisioning layer maps
to a protocol-level status (see ``SyncOrchestrator.error_status``).
"""

from typing import Any, Optional


class DirSyncError(Exception):
    """Base exception for all dirsync errors."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransportError(DirSyncError):
    """Raised for connection-level failures (refused, unresolved, timeout)."""

    kind = "transport"

    # Codes that trigger failover to the next configured endpoint
    RETRYABLE_CODES = frozenset({"ECONNREFUSED", "ENOTFOUND", "ETIMEDOUT"})

    def __init__(
        self,
        message: str,
        code: str = "ECONNRESET",
        endpoint: Optional[str] = None,
    ) -> None:
        """Initialize transport error.

        Args:
            message: Error message
            code: Connection error code, e.g. ECONNREFUSED
            endpoint: Base URL the failing call was sent to
        """
        super().__init__(message)
        self.code = code
        self.endpoint = endpoint

    @property
    def retryable(self) -> bool:
        """Whether the failure should fail over to another endpoint."""
        return self.code in self.RETRYABLE_CODES

    def __str__(self) -> str:
        parts = [self.message, f"Code: {self.code}"]
        if self.endpoint:
            parts.append(f"Endpoint: {self.endpoint}")
        return " | ".join(parts)


class ServiceUnavailableError(DirSyncError):
    """Raised when every configured endpoint of a tenant failed."""

    kind = "service_unavailable"

    def __init__(self, message: str, tenant: Optional[str] = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.tenant = tenant
        self.attempts = attempts


class HttpError(DirSyncError):
    """Raised for non-2xx responses."""

    kind = "http"

    def __init__(
        self,
        message: str,
        status_code: int,
        body: Any = None,
    ) -> None:
        """Initialize HTTP error.

        Args:
            message: Error message
            status_code: HTTP status code
            body: Decoded response body (JSON or text) if available
        """
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_not_found(self) -> bool:
        """A 404 is benign absence for existence-probing calls."""
        return self.status_code == 404

    @property
    def response_text(self) -> str:
        if self.body is None:
            return ""
        return str(self.body)

    def __str__(self) -> str:
        """String representation of the error."""
        parts = [self.message, f"Status: {self.status_code}"]
        if self.response_text:
            # Truncate response text for readability
            response_preview = self.response_text[:200]
            if len(self.response_text) > 200:
                response_preview += "..."
            parts.append(f"Response: {response_preview}")
        return " | ".join(parts)


class ConflictError(HttpError):
    """Raised when a create collides with an existing object (duplicate key)."""

    kind = "conflict"


class RateLimitError(HttpError):
    """Raised when the backend throttles a call (429, or a "ratelimit" error body)."""

    kind = "rate_limit"

    def __init__(
        self,
        message: str,
        status_code: int = 429,
        body: Any = None,
        retry_after: float = 10.0,
    ) -> None:
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code the throttling arrived with
            body: Decoded response body if available
            retry_after: Seconds to wait before retrying
        """
        super().__init__(message, status_code=status_code, body=body)
        self.retry_after = retry_after


class AuthError(DirSyncError):
    """Raised when authenticating against a backend fails (token renewal, LDAP bind)."""

    kind = "auth"

    def __init__(self, message: str, tenant: Optional[str] = None) -> None:
        super().__init__(message)
        self.tenant = tenant


class ValidationError(DirSyncError):
    """Raised for malformed caller input; never retried."""

    kind = "validation"


class NotFoundError(DirSyncError):
    """Raised when an identifier lookup matches no object."""

    kind = "not_found"


class AmbiguousError(DirSyncError):
    """Raised when an identifier lookup matches more than one object."""

    kind = "ambiguous"

    def __init__(self, message: str, matches: int = 0) -> None:
        super().__init__(message)
        self.matches = matches


class ConfigurationError(DirSyncError):
    """Raised when client configuration is invalid or incomplete."""

    kind = "configuration"
