from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from recipehub.logging import get_logger, hash_identifier
from recipehub.service.credentials import CredentialStore
from recipehub.service.email import NotificationDispatcher
from recipehub.service.errors import (
    AlreadyVerifiedError,
    InvalidOrExpiredTokenError,
    InvalidRequestError,
    VerificationDispatchError,
)
from recipehub.service.single_use import SingleUseTokenError, SingleUseTokenStore
from recipehub.storage.models import TokenPurpose

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = "Password reset instructions sent to your email"


class AccountRecoveryService:
    """Password reset and email verification over single-use tokens.

    Reset requests answer identically whether or not the address is known.
    With ``expose_dev_tokens`` the raw token is echoed back so the flows can
    be driven without a mail server.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        tokens: SingleUseTokenStore,
        email: NotificationDispatcher,
        *,
        expose_dev_tokens: bool = False,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.email = email
        self.expose_dev_tokens = expose_dev_tokens

    async def _dispatch(self, event: str, send: Callable[..., bool], *args: Any) -> bool:
        try:
            sent = await asyncio.to_thread(send, *args)
        except Exception as exc:
            logger.error(f"{event}_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        if not sent:
            logger.error(f"{event}_failed", error_type="send_returned_false")
        return bool(sent)

    def _with_token(self, payload: dict[str, Any], token: str) -> dict[str, Any]:
        if self.expose_dev_tokens:
            payload["token"] = token
        return payload

    async def request_password_reset(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict[str, Any]:
        response: dict[str, Any] = {"message": RESET_REQUESTED_MESSAGE}
        user = self.credentials.find_by_email(email)
        if not user:
            logger.info("password_reset_unknown_email", email_hash=hash_identifier(email))
            return response
        record = self.tokens.issue(
            user.id,
            TokenPurpose.PASSWORD_RESET,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self._dispatch(
            "password_reset_email",
            self.email.send_password_reset_email,
            user.email,
            user.full_name,
            record.token,
        )
        logger.info("password_reset_requested", user_id=user.id)
        return self._with_token(response, record.token)

    async def reset_password(self, token: str, new_password: str) -> dict[str, str]:
        try:
            user_id = self.tokens.consume(token, TokenPurpose.PASSWORD_RESET)
        except SingleUseTokenError as exc:
            logger.info(
                "password_reset_rejected",
                reason=type(exc).__name__,
                purpose=TokenPurpose.PASSWORD_RESET.value,
            )
            raise InvalidOrExpiredTokenError("Invalid or expired reset token") from None
        if not self.credentials.update_password(user_id, new_password):
            logger.warning("password_reset_user_missing", user_id=user_id)
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")
        self.credentials.bump_token_version(user_id)
        self.tokens.invalidate_unused(user_id, TokenPurpose.PASSWORD_RESET)
        logger.info("password_reset_completed", user_id=user_id)
        return {"message": "Password reset successfully"}

    async def send_email_verification(self, user_id: str) -> dict[str, Any]:
        user = self.credentials.find_by_id(user_id)
        if not user:
            raise InvalidRequestError()
        if user.is_email_verified:
            raise AlreadyVerifiedError()
        record = self.tokens.issue(user.id, TokenPurpose.EMAIL_VERIFICATION)
        sent = await self._dispatch(
            "verification_email",
            self.email.send_verification_email,
            user.email,
            user.full_name,
            record.token,
        )
        if not sent:
            raise VerificationDispatchError()
        logger.info("email_verification_requested", user_id=user.id)
        return self._with_token({"message": "Verification email sent successfully"}, record.token)

    async def verify_email(self, token: str) -> dict[str, str]:
        try:
            user_id = self.tokens.consume(token, TokenPurpose.EMAIL_VERIFICATION)
        except SingleUseTokenError as exc:
            logger.info(
                "email_verification_rejected",
                reason=type(exc).__name__,
                purpose=TokenPurpose.EMAIL_VERIFICATION.value,
            )
            raise InvalidOrExpiredTokenError("Invalid or expired verification token") from None
        user = self.credentials.set_email_verified(user_id)
        if not user:
            logger.warning("email_verification_missing_user", user_id=user_id)
            raise InvalidOrExpiredTokenError("Invalid or expired verification token")
        logger.info("email_verified", user_id=user_id)
        await self._dispatch(
            "welcome_email", self.email.send_welcome_email, user.email, user.full_name
        )
        return {"message": "Email verified successfully"}
