from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Sequence, Tuple

from sessionforge.config import Settings
from sessionforge.logging import get_logger
from sessionforge.service.errors import InvalidToken, TokenExpired

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
_ALGORITHM = "HS256"


@dataclass(frozen=True)
class SigningKey:
    """Immutable HMAC key; ``retire_at`` is None for the active key."""

    kid: str
    secret: str
    retire_at: Optional[datetime] = None

    def usable_at(self, now: datetime) -> bool:
        return self.retire_at is None or now < self.retire_at

    def __repr__(self) -> str:
        return f"SigningKey(kid={self.kid!r}, retire_at={self.retire_at!r})"


@dataclass(frozen=True)
class KeyRing:
    """Ordered key set: the active key first, then retiring keys.

    Rings are never mutated; rotating keys means building a new ring and
    publishing it to the codec.
    """

    active: SigningKey
    retiring: Tuple[SigningKey, ...] = ()

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyRing":
        return cls(
            active=SigningKey(kid=settings.jwt_key_id, secret=settings.jwt_secret),
            retiring=tuple(
                SigningKey(kid=key.kid, secret=key.secret, retire_at=key.retire_at)
                for key in settings.jwt_retiring_keys
            ),
        )

    def rotated(self, new_active: SigningKey, retire_at: datetime) -> "KeyRing":
        """Return a ring with ``new_active`` signing and the old key retiring."""
        previous = SigningKey(
            kid=self.active.kid, secret=self.active.secret, retire_at=retire_at
        )
        return KeyRing(active=new_active, retiring=(previous,) + self.retiring)

    def verification_keys(self, kid: Optional[str], now: datetime) -> list[SigningKey]:
        keys: Iterable[SigningKey] = (self.active,) + self.retiring
        if kid is not None:
            keys = (key for key in keys if key.kid == kid)
        return [key for key in keys if key.usable_at(now)]


@dataclass(frozen=True)
class AccessClaims:
    principal_id: str
    roles: Tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    token_id: str
    kid: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


class TokenCodec:
    """Signs and verifies access tokens and mints refresh token secrets.

    Access tokens are compact HS256 JWS values. Verification accepts a token
    signed by any key in the current ring that has not passed its retire
    time, and rejects a token once ``now >= exp + clock_skew``.
    """

    def __init__(
        self,
        keyring: KeyRing,
        *,
        issuer: str,
        audience: str,
        clock_skew: timedelta = timedelta(0),
    ) -> None:
        self.keyring = keyring
        self.issuer = issuer
        self.audience = audience
        self.clock_skew = clock_skew

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            KeyRing.from_settings(settings),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock_skew=timedelta(seconds=settings.clock_skew_seconds),
        )

    def publish_keyring(self, keyring: KeyRing) -> None:
        logger.info(
            "signing_keyring_published",
            active_kid=keyring.active.kid,
            retiring_kids=[key.kid for key in keyring.retiring],
        )
        self.keyring = keyring

    def sign_access_token(
        self,
        principal_id: str,
        roles: Sequence[str],
        issued_at: datetime,
        ttl: timedelta,
    ) -> Tuple[str, datetime]:
        """Return the encoded token and its expiry instant."""
        key = self.keyring.active
        iat = int(issued_at.timestamp())
        exp = iat + int(ttl.total_seconds())
        header = {"alg": _ALGORITHM, "typ": "JWT", "kid": key.kid}
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": principal_id,
            "roles": list(roles),
            "iat": iat,
            "exp": exp,
            "typ": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{_sign(key.secret, signing_input)}"
        return token, datetime.fromtimestamp(exp, tz=timezone.utc)

    def verify_access_token(self, token: str, now: datetime) -> AccessClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidToken()

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken()
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            # Guard against algorithm confusion ("none", RS256 with an HMAC key)
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken()

        kid = header.get("kid")
        signing_input = f"{header_b64}.{payload_b64}"
        candidates = self.keyring.verification_keys(kid, now)
        matched = next(
            (
                key
                for key in candidates
                if hmac.compare_digest(_sign(key.secret, signing_input), sig_b64)
            ),
            None,
        )
        if matched is None:
            logger.info("jwt_signature_rejected", kid=kid, candidate_keys=len(candidates))
            raise InvalidToken()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken()
        if not isinstance(payload, dict):
            raise InvalidToken()

        if payload.get("iss") != self.issuer or not self._audience_matches(payload.get("aud")):
            raise InvalidToken()
        if payload.get("typ") != ACCESS_TOKEN_TYPE:
            raise InvalidToken()

        sub = payload.get("sub")
        roles = payload.get("roles")
        if not isinstance(sub, str) or not sub or not isinstance(roles, list):
            raise InvalidToken()
        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise InvalidToken()

        if now.timestamp() >= exp + self.clock_skew.total_seconds():
            raise TokenExpired()

        return AccessClaims(
            principal_id=sub,
            roles=tuple(str(role) for role in roles),
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=str(payload.get("jti", "")),
            kid=matched.kid,
        )

    def _audience_matches(self, aud: Any) -> bool:
        if isinstance(aud, str):
            return aud == self.audience
        if isinstance(aud, list):
            return self.audience in aud
        return False

    @staticmethod
    def new_refresh_secret() -> str:
        """256 bits from the OS CSPRNG, URL-safe; shown to the client once."""
        return secrets.token_urlsafe(32)

    @staticmethod
    def refresh_token_key(secret: str) -> str:
        """Store key for a refresh token secret."""
        return hashlib.sha256(secret.encode()).hexdigest()
