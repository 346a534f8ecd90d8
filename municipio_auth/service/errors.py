from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients may branch on:
    - invalid_credentials, no_eligible_roles, refresh_invalid,
      cloned_credential, unauthorized (401)
    - account_disabled, forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown identity, wrong password, or no password on file.

    The message never says which of the three happened.
    """
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NoEligibleRolesError(AuthenticationError):
    """Identity authenticated but holds no role usable for a session."""
    error_code = "no_eligible_roles"

    def __init__(self, message: str = "no eligible roles", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshInvalidError(AuthenticationError):
    """Refresh token missing, unknown, revoked, expired, or already used."""
    error_code = "refresh_invalid"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ClonedCredentialError(AuthenticationError):
    """Passkey flagged as cloned after a non-increasing signature counter."""
    error_code = "cloned_credential"

    def __init__(self, message: str = "credential flagged as cloned", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "account disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "NoEligibleRolesError",
    "RefreshInvalidError",
    "ClonedCredentialError",
    "ForbiddenError",
    "AccountDisabledError",
    "NotFoundError",
    "ConflictError",
]
