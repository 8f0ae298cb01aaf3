from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    id: str
    login: str
    roles: Tuple[str, ...]
    is_locked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(cls, login: str, roles: Tuple[str, ...] | list[str]) -> "Principal":
        return cls(id=str(uuid.uuid4()), login=login.lower(), roles=tuple(roles))


@dataclass
class PrincipalCredential:
    principal_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


class RevokeReason(str, Enum):
    ROTATED = "rotated"
    LOGOUT = "logout"
    REUSE_DETECTED = "reuse_detected"
    PRINCIPAL_REVOKED = "principal_revoked"


@dataclass
class RefreshToken:
    """One link of a rotation chain.

    ``id`` is the SHA-256 digest of the secret handed to the client; the
    secret itself is never stored.
    """

    id: str
    principal_id: str
    issued_at: datetime
    expires_at: datetime
    root_id: str
    parent_id: Optional[str] = None
    replaced_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[RevokeReason] = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class TokenStatus(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ACTIVE = "active"


@dataclass(frozen=True)
class TokenLookup:
    status: TokenStatus
    token: Optional[RefreshToken] = None

    @classmethod
    def classify(cls, token: Optional[RefreshToken], now: datetime) -> "TokenLookup":
        # Revocation takes precedence over expiry.
        if token is None:
            return cls(TokenStatus.NOT_FOUND)
        if token.revoked:
            return cls(TokenStatus.REVOKED, token)
        if token.is_expired(now):
            return cls(TokenStatus.EXPIRED, token)
        return cls(TokenStatus.ACTIVE, token)


@dataclass(frozen=True)
class Rotation:
    """Result of exchanging a refresh token.

    ``replacement`` is only set when ``lookup.status`` is ACTIVE.
    """

    lookup: TokenLookup
    replacement: Optional[RefreshToken] = None

    @property
    def status(self) -> TokenStatus:
        return self.lookup.status
