from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from recipehub.logging import get_logger
from recipehub.storage.errors import ConstraintViolation, StorageError
from recipehub.storage.models import (
    Role,
    SingleUseToken,
    TokenPurpose,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential and single-use token store.

    State is mirrored to ``<fs_root>/state/memory_store.json`` after every
    write so a restarted dev server keeps its accounts.
    """

    def __init__(self, fs_root: str = "/tmp/recipehub") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.single_use_tokens: Dict[str, SingleUseToken] = {}
        # RLock for all data operations; token issuance holds it across
        # invalidate-then-insert so concurrent issuers serialise.
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def ping(self) -> bool:
        return self._state_path().parent.exists()

    # Users

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        first_name: str = "",
        last_name: str = "",
        role: Role = Role.USER,
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=Role(role),
                avatar=avatar,
                bio=bio,
                is_active=is_active,
            )
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self.credentials[user_id] = (password_hash, password_algo)
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for attr, value in changes.items():
                setattr(user, attr, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> Optional[User]:
        return self._update_user(user_id, last_login_at=at or utcnow())

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, is_email_verified=True)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        return self._update_user(user_id, role=Role(role))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    def increment_token_version(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = self._update_user(user_id, token_version=user.token_version + 1)
            return updated.token_version if updated else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in users[:limit]]

    # Single-use tokens

    def _invalidate_tokens_locked(
        self, user_id: str, purpose: TokenPurpose, except_id: Optional[str] = None
    ) -> int:
        invalidated = 0
        for record in self.single_use_tokens.values():
            if (
                record.user_id == user_id
                and record.purpose == purpose
                and not record.is_used
                and record.id != except_id
            ):
                record.is_used = True
                invalidated += 1
        return invalidated

    def replace_single_use_token(self, record: SingleUseToken) -> int:
        """Invalidate unused siblings of ``record`` and insert it, atomically.

        Returns the number of sibling tokens invalidated.
        """
        with self._data_lock:
            if any(t.token == record.token for t in self.single_use_tokens.values()):
                raise ConstraintViolation("token already exists", {"field": "token"})
            invalidated = self._invalidate_tokens_locked(record.user_id, record.purpose)
            self.single_use_tokens[record.id] = replace(record)
            self._persist_state()
            return invalidated

    def get_single_use_token(self, token: str) -> Optional[SingleUseToken]:
        with self._data_lock:
            record = next(
                (t for t in self.single_use_tokens.values() if t.token == token), None
            )
            return replace(record) if record else None

    def list_single_use_tokens(
        self, user_id: str, purpose: Optional[TokenPurpose] = None
    ) -> List[SingleUseToken]:
        with self._data_lock:
            records = [
                replace(t)
                for t in self.single_use_tokens.values()
                if t.user_id == user_id and (purpose is None or t.purpose == purpose)
            ]
        return sorted(records, key=lambda t: t.created_at)

    def mark_single_use_token_used(self, token_id: str, used_at: datetime) -> bool:
        """Mark a token used only if it is still unused; False means another caller won."""
        with self._data_lock:
            record = self.single_use_tokens.get(token_id)
            if not record or record.is_used:
                return False
            record.is_used = True
            record.used_at = used_at
            self._persist_state()
            return True

    def invalidate_single_use_tokens(
        self, user_id: str, purpose: TokenPurpose, *, except_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            invalidated = self._invalidate_tokens_locked(user_id, purpose, except_id)
            if invalidated:
                self._persist_state()
            return invalidated

    # Persistence

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "single_use_tokens": [
                self._serialize_token(t) for t in self.single_use_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.single_use_tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("single_use_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role.value,
            "is_active": user.is_active,
            "is_email_verified": user.is_email_verified,
            "avatar": user.avatar,
            "bio": user.bio,
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "token_version": user.token_version,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=Role(data.get("role", Role.USER.value)),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            avatar=data.get("avatar"),
            bio=data.get("bio"),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            token_version=int(data.get("token_version", 1)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_token(self, record: SingleUseToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "purpose": record.purpose.value,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_used": record.is_used,
            "used_at": self._serialize_datetime(record.used_at),
            "ip_address": record.ip_address,
            "user_agent": record.user_agent,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_token(self, data: dict) -> SingleUseToken:
        return SingleUseToken(
            id=data["id"],
            user_id=data["user_id"],
            purpose=TokenPurpose(data["purpose"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_used=data.get("is_used", False),
            used_at=self._deserialize_datetime(data.get("used_at")),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
