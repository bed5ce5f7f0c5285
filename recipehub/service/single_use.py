from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional, Protocol

from recipehub.logging import get_logger
from recipehub.storage.models import SingleUseToken, TokenPurpose, utcnow

logger = get_logger(__name__)

DEFAULT_TTLS: dict[TokenPurpose, timedelta] = {
    TokenPurpose.PASSWORD_RESET: timedelta(hours=1),
    TokenPurpose.EMAIL_VERIFICATION: timedelta(hours=24),
}


class SingleUseTokenError(Exception):
    """Consumption failed; callers collapse the subclasses into one outward error."""


class TokenNotFoundError(SingleUseTokenError):
    pass


class TokenExpiredError(SingleUseTokenError):
    pass


class TokenBackend(Protocol):
    def replace_single_use_token(self, record: SingleUseToken) -> int: ...

    def get_single_use_token(self, token: str) -> Optional[SingleUseToken]: ...

    def mark_single_use_token_used(self, token_id: str, used_at: datetime) -> bool: ...

    def invalidate_single_use_tokens(
        self, user_id: str, purpose: TokenPurpose, *, except_id: Optional[str] = None
    ) -> int: ...


class SingleUseTokenStore:
    """One-time, expiring tokens scoped to a user and a purpose."""

    def __init__(
        self,
        backend: TokenBackend,
        *,
        ttls: Optional[Mapping[TokenPurpose, timedelta]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self._clock = clock

    @staticmethod
    def _generate() -> str:
        return secrets.token_urlsafe(32)

    def issue(
        self,
        user_id: str,
        purpose: TokenPurpose,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SingleUseToken:
        record = SingleUseToken.new(
            user_id,
            purpose,
            self._generate(),
            self.ttls[purpose],
            ip_address=ip_address,
            user_agent=user_agent,
            now=self._clock(),
        )
        invalidated = self.backend.replace_single_use_token(record)
        logger.info(
            "single_use_token_issued",
            user_id=user_id,
            purpose=purpose.value,
            token_id=record.id,
            invalidated=invalidated,
        )
        return record

    def consume(self, token: str, purpose: TokenPurpose) -> str:
        """Mark ``token`` used and return its user id."""
        record = self.backend.get_single_use_token(token)
        if not record or record.purpose != purpose or record.is_used:
            raise TokenNotFoundError(purpose.value)
        now = self._clock()
        if record.is_expired(now):
            raise TokenExpiredError(purpose.value)
        if not self.backend.mark_single_use_token_used(record.id, now):
            # Another request consumed it between lookup and update
            raise TokenNotFoundError(purpose.value)
        self.backend.invalidate_single_use_tokens(record.user_id, purpose, except_id=record.id)
        logger.info(
            "single_use_token_consumed",
            user_id=record.user_id,
            purpose=purpose.value,
            token_id=record.id,
        )
        return record.user_id

    def invalidate_unused(self, user_id: str, purpose: TokenPurpose) -> int:
        return self.backend.invalidate_single_use_tokens(user_id, purpose)
