from __future__ import annotations

import secrets
from datetime import datetime
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from recipehub.logging import get_logger
from recipehub.storage.models import Role, User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class UserBackend(Protocol):
    """Raw persistence operations implemented by MemoryStore and PostgresStore."""

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        password_algo: str = ...,
        first_name: str = ...,
        last_name: str = ...,
        role: Role = ...,
        avatar: Optional[str] = ...,
        bio: Optional[str] = ...,
        is_active: bool = ...,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> bool: ...

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def increment_token_version(self, user_id: str) -> Optional[int]: ...


class CredentialStore(Protocol):
    """What the session issuer and recovery flow need from user persistence."""

    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def find_by_email_with_password_hash(self, email: str) -> Optional[tuple[User, str]]: ...

    def create(
        self,
        email: str,
        password: str,
        *,
        first_name: str,
        last_name: str,
        role: Role = ...,
        avatar: Optional[str] = ...,
        bio: Optional[str] = ...,
    ) -> User: ...

    def update_password(self, user_id: str, new_password: str) -> bool: ...

    def update_last_login(self, user_id: str) -> Optional[User]: ...

    def set_email_verified(self, user_id: str) -> Optional[User]: ...

    def verify_password(self, password_hash: str, password: str) -> bool: ...

    def verify_dummy_password(self, password: str) -> None: ...

    def update_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def set_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def bump_token_version(self, user_id: str) -> Optional[int]: ...


class UserCredentials:
    """CredentialStore over a raw backend; owns argon2id hashing."""

    def __init__(self, backend: UserBackend, hasher: Optional[PasswordHasher] = None) -> None:
        self.backend = backend
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def verify_dummy_password(self, password: str) -> None:
        """Spend one verification on a throwaway hash so unknown emails cost the same."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.verify_password(self._dummy_hash, password)

    def find_by_email(self, email: str) -> Optional[User]:
        return self.backend.get_user_by_email(email)

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.backend.get_user(user_id)

    def find_by_email_with_password_hash(self, email: str) -> Optional[tuple[User, str]]:
        user = self.backend.get_user_by_email(email)
        if not user:
            return None
        record = self.backend.get_password_record(user.id)
        if not record:
            logger.warning("password_record_missing", user_id=user.id)
            return None
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return None
        return user, stored_hash

    def create(
        self,
        email: str,
        password: str,
        *,
        first_name: str,
        last_name: str,
        role: Role = Role.USER,
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> User:
        return self.backend.create_user(
            email,
            self.hash_password(password),
            password_algo=PASSWORD_ALGO,
            first_name=first_name,
            last_name=last_name,
            role=role,
            avatar=avatar,
            bio=bio,
        )

    def update_password(self, user_id: str, new_password: str) -> bool:
        return self.backend.save_password(user_id, self.hash_password(new_password), PASSWORD_ALGO)

    def update_last_login(self, user_id: str) -> Optional[User]:
        return self.backend.update_last_login(user_id, utcnow())

    def set_email_verified(self, user_id: str) -> Optional[User]:
        return self.backend.mark_email_verified(user_id)

    def update_role(self, user_id: str, role: Role) -> Optional[User]:
        return self.backend.update_user_role(user_id, role)

    def set_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self.backend.set_user_active(user_id, is_active)

    def bump_token_version(self, user_id: str) -> Optional[int]:
        return self.backend.increment_token_version(user_id)
