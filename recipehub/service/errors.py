from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure raised by the auth services and rendered as an error envelope.

    ``status_code`` picks the HTTP status and ``error_code`` is the stable
    string clients match on. The generic codes are unauthorized (401),
    forbidden (403), not_found (404), conflict (409), rate_limited (429) and
    validation_error (400); credential failures narrow them further, e.g.
    invalid_credentials or invalid_refresh_token.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing or unusable bearer credentials."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "invalid token"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "admin access required"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Bucket for the caller is empty; ``Retry-After`` says when to come back."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests, please try again later"

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(message, headers={"Retry-After": str(self.retry_after)})


# Credential and token lifecycle failures


class PasswordMismatchError(ValidationError):
    error_code = "password_mismatch"
    default_message = "Passwords do not match"


class EmailAlreadyExistsError(ConflictError):
    error_code = "email_already_exists"
    default_message = "User with this email already exists"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email and wrong password are deliberately indistinguishable."""
    error_code = "invalid_credentials"
    default_message = "Invalid credentials"


class AccountDeactivatedError(AuthenticationError):
    error_code = "account_deactivated"
    default_message = "Account is deactivated"


class InvalidRefreshTokenError(AuthenticationError):
    """Bad signature, expired token, unknown user and inactive user all collapse here."""
    error_code = "invalid_refresh_token"
    default_message = "Invalid refresh token"


class IncorrectPasswordError(AuthenticationError):
    error_code = "incorrect_password"
    default_message = "Current password is incorrect"


class UserNotFoundError(AuthenticationError):
    default_message = "User not found"


class InvalidOrExpiredTokenError(ValidationError):
    """Single-use token missing, already used or past its expiry."""
    error_code = "invalid_or_expired_token"
    default_message = "Invalid or expired token"


class AlreadyVerifiedError(ValidationError):
    error_code = "already_verified"
    default_message = "Email is already verified"


class InvalidRequestError(ValidationError):
    default_message = "Invalid request"


class VerificationDispatchError(ValidationError):
    default_message = "Failed to send verification email"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "PasswordMismatchError",
    "EmailAlreadyExistsError",
    "InvalidCredentialsError",
    "AccountDeactivatedError",
    "InvalidRefreshTokenError",
    "IncorrectPasswordError",
    "UserNotFoundError",
    "InvalidOrExpiredTokenError",
    "AlreadyVerifiedError",
    "InvalidRequestError",
    "VerificationDispatchError",
]
