"""Compact HS256 bearer tokens for access and refresh credentials.

Each ``TokenCodec`` owns exactly one secret and one lifetime; the runtime
builds one codec per token family so an access secret can never verify a
refresh token and vice versa.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from recipehub.logging import get_logger
from recipehub.storage.models import Role

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^(\d+)([dhms])$")
_DURATION_UNITS = {"d": 86400, "h": 3600, "m": 60, "s": 1}
_DEFAULT_DURATION = timedelta(hours=1)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


class InvalidTokenError(Exception):
    """Token failed verification. The subclass says why; callers should not."""

    reason = "invalid"


class MalformedTokenError(InvalidTokenError):
    reason = "malformed"


class InvalidSignatureError(InvalidTokenError):
    reason = "invalid_signature"


class ExpiredTokenError(InvalidTokenError):
    reason = "expired"


def parse_duration(value: str) -> timedelta:
    """Parse ``<int><d|h|m|s>`` lifetimes such as ``15m`` or ``7d``.

    Anything else falls back to one hour.
    """
    match = _DURATION_PATTERN.match((value or "").strip())
    if not match:
        logger.warning("token_ttl_unparseable", value=value, fallback_seconds=3600)
        return _DEFAULT_DURATION
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _DURATION_UNITS[unit])


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    def __init__(
        self,
        secret: str,
        ttl: timedelta,
        *,
        issuer: str,
        token_type: str,
    ) -> None:
        if not secret:
            raise ValueError("token secret must be non-empty")
        if ttl <= timedelta(0):
            raise ValueError("token ttl must be positive")
        self._secret = secret.encode()
        self.ttl = ttl
        self.issuer = issuer
        self.token_type = token_type

    @property
    def expires_in_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(self, claims: dict[str, Any], *, now: Optional[datetime] = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            **claims,
            "iss": self.issuer,
            "token_type": self.token_type,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self.ttl).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, *, now: Optional[datetime] = None) -> dict[str, Any]:
        """Return the payload of a valid token.

        Signature is checked before anything in the payload is trusted,
        expiry last.
        """
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except Exception as exc:
            raise MalformedTokenError("undecodable header") from exc
        # Reject alg confusion (none, RS256 with an HMAC key, ...)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise MalformedTokenError("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignatureError("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except Exception as exc:
            raise MalformedTokenError("undecodable payload") from exc
        if not isinstance(payload, dict):
            raise MalformedTokenError("payload must be an object")
        if payload.get("iss") != self.issuer or payload.get("token_type") != self.token_type:
            raise InvalidSignatureError("issuer or token type mismatch")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError("missing expiry") from exc
        current = now or datetime.now(timezone.utc)
        if current.timestamp() > exp_ts:
            raise ExpiredTokenError("token expired")
        return payload


@dataclass
class AccessTokenClaims:
    subject_id: str
    email: str
    role: Role
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessTokenClaims":
        try:
            return cls(
                subject_id=str(payload["sub"]),
                email=str(payload["email"]),
                role=Role(payload["role"]),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError("access claims incomplete") from exc


@dataclass
class RefreshTokenClaims:
    subject_id: str
    email: str
    token_version: int
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RefreshTokenClaims":
        try:
            return cls(
                subject_id=str(payload["sub"]),
                email=str(payload["email"]),
                token_version=int(payload["tv"]),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError("refresh claims incomplete") from exc
