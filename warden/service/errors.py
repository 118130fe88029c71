from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code``. ``reason`` narrows the error to the step that produced it
    so the boundary layer can render a consistent body without re-deriving
    intent:

    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if reason is not None:
            self.reason = reason
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Identifier/secret pair did not match an active principal."""
    reason = "invalid_credentials"


class TokenInvalidError(AuthenticationError):
    """Bad signature, malformed claims, or wrong token class."""
    reason = "token_invalid"


class TokenExpiredError(AuthenticationError):
    """Token is well-formed and signed but past its expiry."""
    reason = "token_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role, permission, or ownership (403)."""
    status_code = 403
    error_code = "forbidden"
    reason = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    reason = "conflict"


class DuplicateIdentifierError(ConflictError):
    """Registration collided with an existing email or username."""
    reason = "duplicate_identifier"


class ServiceUnavailableError(ServiceError):
    """A backing store needed for an authorization decision is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"
    reason = "service_unavailable"


class DenyReason:
    """Stable reason codes emitted by the authorization pipeline."""

    MISSING_CREDENTIAL = "missing_credential"
    TOKEN_INVALID = TokenInvalidError.reason
    TOKEN_EXPIRED = TokenExpiredError.reason
    TOKEN_REVOKED = "token_revoked"
    ROLE_REQUIRED = "role_required"
    PERMISSION_REQUIRED = "permission_required"
    RESOURCE_FORBIDDEN = "resource_forbidden"
    REVOCATION_UNAVAILABLE = "revocation_unavailable"
    AUTHORIZATION_STORE_UNAVAILABLE = "authorization_store_unavailable"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "TokenExpiredError",
    "ForbiddenError",
    "ConflictError",
    "DuplicateIdentifierError",
    "ServiceUnavailableError",
    "DenyReason",
]
