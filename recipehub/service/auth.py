from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from recipehub.logging import get_logger, hash_identifier
from recipehub.service.credentials import CredentialStore
from recipehub.service.errors import (
    AccountDeactivatedError,
    AuthenticationError,
    EmailAlreadyExistsError,
    ForbiddenError,
    IncorrectPasswordError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidRequestError,
    NotFoundError,
    PasswordMismatchError,
    UserNotFoundError,
)
from recipehub.service.tokens import (
    AccessTokenClaims,
    InvalidTokenError,
    RefreshTokenClaims,
    TokenCodec,
)
from recipehub.storage.errors import ConstraintViolation
from recipehub.storage.models import Role, User

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


@dataclass
class AuthContext:
    """The caller behind a verified access token, with its role read from storage."""

    user_id: str
    email: str
    role: Role
    is_email_verified: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class AuthService:
    """Registration, login and stateless bearer sessions.

    Access and refresh tokens come from two codecs with separate secrets.
    Refresh tokens carry the user's ``token_version``; bumping it on password
    or role changes invalidates every refresh token issued before.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        access_codec: TokenCodec,
        refresh_codec: TokenCodec,
    ) -> None:
        self.credentials = credentials
        self.access_codec = access_codec
        self.refresh_codec = refresh_codec
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _issue_tokens(self, user: User) -> TokenPair:
        now = self._now()
        access = self.access_codec.issue(
            {"sub": user.id, "email": user.email, "role": Role(user.role).value},
            now=now,
        )
        refresh = self.refresh_codec.issue(
            {"sub": user.id, "email": user.email, "tv": user.token_version},
            now=now,
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self.access_codec.expires_in_seconds,
        )

    async def register(
        self,
        email: str,
        password: str,
        confirm_password: str,
        *,
        first_name: str,
        last_name: str,
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        if password != confirm_password:
            raise PasswordMismatchError()
        if self.credentials.find_by_email(email):
            raise EmailAlreadyExistsError()
        try:
            user = self.credentials.create(
                email,
                password,
                first_name=first_name,
                last_name=last_name,
                role=Role.USER,
                avatar=avatar,
                bio=bio,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup for the same address
            raise EmailAlreadyExistsError() from exc
        tokens = self._issue_tokens(user)
        user = self.credentials.update_last_login(user.id) or user
        self.logger.info("user_registered", user_id=user.id, email_hash=hash_identifier(email))
        return user, tokens

    async def login(self, email: str, password: str) -> tuple[User, TokenPair]:
        found = self.credentials.find_by_email_with_password_hash(email)
        if not found:
            self.credentials.verify_dummy_password(password)
            self.logger.info("login_failed", reason="unknown_email", email_hash=hash_identifier(email))
            raise InvalidCredentialsError()
        user, password_hash = found
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive", user_id=user.id)
            raise AccountDeactivatedError()
        if not self.credentials.verify_password(password_hash, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        tokens = self._issue_tokens(user)
        user = self.credentials.update_last_login(user.id) or user
        self.logger.info("login_succeeded", user_id=user.id)
        return user, tokens

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = RefreshTokenClaims.from_payload(self.refresh_codec.verify(refresh_token))
        except InvalidTokenError as exc:
            self.logger.info("refresh_rejected", reason=exc.reason)
            raise InvalidRefreshTokenError() from None
        user = self.credentials.find_by_id(claims.subject_id)
        if not user:
            reason = "unknown_user"
        elif not user.is_active:
            reason = "inactive"
        elif user.token_version != claims.token_version:
            reason = "revoked"
        else:
            reason = None
        if reason:
            self.logger.info("refresh_rejected", reason=reason, user_id=claims.subject_id)
            raise InvalidRefreshTokenError()
        return self._issue_tokens(user)

    def validate_bearer(self, claims: AccessTokenClaims) -> AuthContext:
        """Resolve verified access claims against the current user record.

        The role in the token is ignored; a demoted admin loses admin access
        on the next request rather than when the token expires.
        """
        user = self.credentials.find_by_id(claims.subject_id)
        if not user:
            raise UserNotFoundError()
        if not user.is_active:
            raise AccountDeactivatedError()
        if Role(claims.role) != user.role:
            self.logger.info(
                "access_token_role_stale",
                user_id=user.id,
                token_role=Role(claims.role).value,
                current_role=user.role.value,
            )
        return AuthContext(
            user_id=user.id,
            email=user.email,
            role=Role(user.role),
            is_email_verified=user.is_email_verified,
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError()
        try:
            claims = AccessTokenClaims.from_payload(self.access_codec.verify(token))
        except InvalidTokenError as exc:
            self.logger.info("access_token_rejected", reason=exc.reason)
            raise AuthenticationError() from None
        return self.validate_bearer(claims)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> dict[str, str]:
        user = self.credentials.find_by_id(user_id)
        if not user or not user.is_active:
            raise InvalidRequestError()
        found = self.credentials.find_by_email_with_password_hash(user.email)
        if not found or not self.credentials.verify_password(found[1], current_password):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise IncorrectPasswordError()
        self.credentials.update_password(user_id, new_password)
        self.credentials.bump_token_version(user_id)
        self.logger.info("password_changed", user_id=user_id)
        return {"message": "Password changed successfully"}

    async def logout(self) -> dict[str, str]:
        # Tokens are stateless; clients drop them
        return {"message": "Logout successful"}

    async def set_user_role(self, actor_id: str, user_id: str, role: Role) -> User:
        if actor_id == user_id:
            raise ForbiddenError("You cannot change your own role")
        user = self.credentials.find_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        role = Role(role)
        if user.role == role:
            return user
        updated = self.credentials.update_role(user_id, role)
        if not updated:
            raise NotFoundError("User not found")
        self.credentials.bump_token_version(user_id)
        self.logger.info(
            "user_role_updated",
            user_id=user_id,
            actor_id=actor_id,
            old_role=user.role.value,
            new_role=role.value,
        )
        return self.credentials.find_by_id(user_id) or updated

    async def set_user_active(self, user_id: str, is_active: bool) -> User:
        updated = self.credentials.set_active(user_id, is_active)
        if not updated:
            raise NotFoundError("User not found")
        self.logger.info("user_active_updated", user_id=user_id, is_active=is_active)
        return updated

    async def mark_user_email_verified(self, actor_id: str, user_id: str) -> User:
        """Admin override for the verification flow; idempotent."""
        updated = self.credentials.set_email_verified(user_id)
        if not updated:
            raise NotFoundError("User not found")
        self.logger.info("user_email_verified_by_admin", user_id=user_id, actor_id=actor_id)
        return updated
