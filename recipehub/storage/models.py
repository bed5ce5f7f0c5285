from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles."""

    USER = "user"
    ADMIN = "admin"


class TokenPurpose(str, Enum):
    """What a single-use token unlocks."""

    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: Role = Role.USER
    is_active: bool = True
    is_email_verified: bool = False
    avatar: Optional[str] = None
    bio: Optional[str] = None
    last_login_at: Optional[datetime] = None
    token_version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass
class SingleUseToken:
    id: str
    user_id: str
    purpose: TokenPurpose
    token: str
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        purpose: TokenPurpose,
        token: str,
        ttl: timedelta,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "SingleUseToken":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            purpose=purpose,
            token=token,
            expires_at=created + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=created,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and not self.is_expired(now)
