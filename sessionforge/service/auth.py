from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence, Tuple

from sessionforge.config import Settings
from sessionforge.logging import get_logger, short_key
from sessionforge.service.errors import (
    DuplicateIdentifier,
    ForbiddenError,
    InvalidCredentials,
    InvalidToken,
    TokenExpired,
    TokenReuseDetected,
    ValidationError,
)
from sessionforge.service.passwords import PasswordPolicy, PasswordVerifier
from sessionforge.service.security_events import (
    REFRESH_TOKEN_REUSE,
    LoggingSecurityEventSink,
    SecurityEvent,
    SecurityEventSink,
)
from sessionforge.service.tokens import AccessClaims, TokenCodec
from sessionforge.service.validation import (
    identifier_problems,
    normalize_identifier,
    normalize_roles,
)
from sessionforge.storage.errors import ConstraintViolation
from sessionforge.storage.models import (
    Principal,
    RefreshToken,
    RevokeReason,
    Rotation,
    TokenLookup,
    TokenStatus,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_principal_by_login(self, login: str) -> Optional[Principal]: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def create_principal(
        self, login: str, password_hash: str, roles: Iterable[str]
    ) -> Principal: ...

    def get_password_hash(self, principal_id: str) -> Optional[str]: ...

    def update_password_hash(self, principal_id: str, password_hash: str) -> None: ...


class RefreshTokenStore(Protocol):
    def issue_refresh_token(
        self,
        principal_id: str,
        parent_id: Optional[str],
        *,
        token_id: str,
        now: datetime,
        ttl: timedelta,
    ) -> RefreshToken: ...

    def find_active_refresh_token(self, token_id: str, now: datetime) -> TokenLookup: ...

    def mark_refresh_rotated(
        self, token_id: str, replacement_id: str, now: datetime
    ) -> bool: ...

    def rotate_refresh_token(
        self,
        token_id: str,
        *,
        replacement_id: str,
        now: datetime,
        ttl: timedelta,
    ) -> Rotation: ...

    def revoke_refresh_token(
        self, token_id: str, now: datetime, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> bool: ...

    def revoke_refresh_chain(
        self,
        token_id: str,
        now: datetime,
        reason: RevokeReason = RevokeReason.REUSE_DETECTED,
    ) -> int: ...

    def revoke_principal_refresh_tokens(
        self,
        principal_id: str,
        now: datetime,
        reason: RevokeReason = RevokeReason.PRINCIPAL_REVOKED,
    ) -> int: ...

    def discard_refresh_token(self, token_id: str) -> None: ...


class AuthStore(CredentialStore, RefreshTokenStore, Protocol):
    pass


@dataclass(frozen=True)
class PrincipalSummary:
    id: str
    login: str
    roles: Tuple[str, ...]
    is_locked: bool
    created_at: datetime

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalSummary":
        return cls(
            id=principal.id,
            login=principal.login,
            roles=tuple(principal.roles),
            is_locked=principal.is_locked,
            created_at=principal.created_at,
        )


@dataclass(frozen=True)
class TokenPair:
    principal_id: str
    roles: Tuple[str, ...]
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "bearer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Registration, login, refresh rotation and logout.

    The service keeps no mutable state of its own. Every operation reads the
    clock once and hands that instant to every store and codec call it makes.
    Store calls are blocking and run in worker threads; any write that issues
    a refresh token is shielded from cancellation and undone if the caller
    goes away before the token is returned.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        passwords: Optional[PasswordVerifier] = None,
        events: Optional[SecurityEventSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.codec = codec or TokenCodec.from_settings(settings)
        self.passwords = passwords or PasswordVerifier()
        self.policy = PasswordPolicy.from_settings(settings)
        self.events: SecurityEventSink = events or LoggingSecurityEventSink()
        self._clock = clock
        self.logger = logger

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def _issuing_write(
        self, fn: Callable[..., Any], *args: Any, discard_id: str, **kwargs: Any
    ) -> Any:
        """Run a store write that creates refresh token ``discard_id``.

        If the caller is cancelled mid-write the write is allowed to finish and
        the token it created is discarded before the cancellation propagates.
        """
        task = asyncio.ensure_future(asyncio.to_thread(fn, *args, **kwargs))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if await self._settled_ok(task):
                await self._discard(discard_id)
            raise

    @staticmethod
    async def _settled_ok(task: "asyncio.Future[Any]") -> bool:
        await asyncio.wait({task})
        if task.cancelled():
            return False
        exc = task.exception()
        if exc is not None:
            logger.warning("token_write_failed_after_cancel", error=str(exc))
            return False
        return True

    async def _discard(self, token_id: str) -> None:
        await asyncio.shield(self._call(self.store.discard_refresh_token, token_id))
        self.logger.warning("refresh_token_discarded", token_id=short_key(token_id))

    def _token_pair(
        self,
        principal_id: str,
        roles: Sequence[str],
        secret: str,
        refresh: RefreshToken,
        now: datetime,
    ) -> TokenPair:
        access_token, access_expires = self.codec.sign_access_token(
            principal_id, roles, now, self.access_ttl
        )
        return TokenPair(
            principal_id=principal_id,
            roles=tuple(roles),
            access_token=access_token,
            access_token_expires_at=access_expires,
            refresh_token=secret,
            refresh_token_expires_at=refresh.expires_at,
        )

    async def register(
        self,
        identifier: str,
        password: str,
        roles: Optional[Iterable[str]] = None,
    ) -> PrincipalSummary:
        normalized = normalize_identifier(identifier)
        problems: dict[str, list[str]] = {}
        id_problems = identifier_problems(identifier)
        if id_problems:
            problems["identifier"] = id_problems
        pw_problems = self.policy.violations(password or "", identifier=normalized)
        if pw_problems:
            problems["password"] = pw_problems
        role_set, role_problems = normalize_roles(
            roles,
            default=self.settings.default_roles,
            allowed=self.settings.allowed_roles,
        )
        if role_problems:
            problems["roles"] = role_problems
        if problems:
            self.logger.info("register_rejected", fields=sorted(problems))
            raise ValidationError("registration rejected", detail=problems)

        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            principal = await self._call(
                self.store.create_principal, normalized, password_hash, role_set
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "login":
                self.logger.info("register_duplicate_identifier")
                raise DuplicateIdentifier(
                    "identifier already registered", detail={"field": "identifier"}
                )
            raise ValidationError(exc.message, detail=exc.detail)
        self.logger.info("principal_registered", principal_id=principal.id, roles=list(role_set))
        return PrincipalSummary.from_principal(principal)

    async def login(self, identifier: str, password: str) -> TokenPair:
        now = self._now()
        normalized = normalize_identifier(identifier)
        principal = (
            await self._call(self.store.get_principal_by_login, normalized)
            if normalized
            else None
        )
        stored_hash = (
            await self._call(self.store.get_password_hash, principal.id)
            if principal
            else None
        )
        verified, upgraded_hash = await asyncio.to_thread(
            self.passwords.verify, stored_hash, password or ""
        )
        if principal is None or not verified or principal.is_locked:
            reason = (
                "unknown_identifier"
                if principal is None
                else "locked" if verified else "password_mismatch"
            )
            self.logger.info("login_failed", reason=reason)
            raise InvalidCredentials()

        if upgraded_hash:
            await self._call(self.store.update_password_hash, principal.id, upgraded_hash)
            self.logger.info("password_rehashed", principal_id=principal.id)

        secret = self.codec.new_refresh_secret()
        token_id = self.codec.refresh_token_key(secret)
        refresh = await self._issuing_write(
            self.store.issue_refresh_token,
            principal.id,
            None,
            token_id=token_id,
            now=now,
            ttl=self.refresh_ttl,
            discard_id=token_id,
        )
        self.logger.info(
            "login_succeeded", principal_id=principal.id, chain_root=short_key(refresh.root_id)
        )
        return self._token_pair(principal.id, principal.roles, secret, refresh, now)

    async def refresh(self, presented: str) -> TokenPair:
        now = self._now()
        if not presented or not isinstance(presented, str):
            raise InvalidToken()
        token_id = self.codec.refresh_token_key(presented)
        secret = self.codec.new_refresh_secret()
        replacement_id = self.codec.refresh_token_key(secret)

        rotation: Rotation = await self._issuing_write(
            self.store.rotate_refresh_token,
            token_id,
            replacement_id=replacement_id,
            now=now,
            ttl=self.refresh_ttl,
            discard_id=replacement_id,
        )
        if rotation.status is TokenStatus.NOT_FOUND:
            self.logger.info("refresh_failed", reason="not_found")
            raise InvalidToken()
        if rotation.status is TokenStatus.EXPIRED:
            self.logger.info(
                "refresh_failed", reason="expired", principal_id=rotation.lookup.token.principal_id
            )
            raise TokenExpired()
        if rotation.status is TokenStatus.REVOKED:
            await self._respond_to_reuse(rotation.lookup.token, now)

        replacement = rotation.replacement
        try:
            principal = await self._call(self.store.get_principal, replacement.principal_id)
        except BaseException:
            await self._discard(replacement.id)
            raise
        if principal is None or principal.is_locked:
            await asyncio.shield(
                self._call(
                    self.store.revoke_refresh_chain,
                    replacement.id,
                    now,
                    RevokeReason.PRINCIPAL_REVOKED,
                )
            )
            self.logger.warning(
                "refresh_denied_principal_unusable",
                principal_id=replacement.principal_id,
                locked=bool(principal and principal.is_locked),
            )
            raise InvalidToken()

        self.logger.info(
            "refresh_rotated",
            principal_id=principal.id,
            parent=short_key(token_id),
            chain_root=short_key(replacement.root_id),
        )
        return self._token_pair(principal.id, principal.roles, secret, replacement, now)

    async def _respond_to_reuse(self, token: RefreshToken, now: datetime) -> None:
        revoked = await asyncio.shield(
            self._call(
                self.store.revoke_refresh_chain, token.id, now, RevokeReason.REUSE_DETECTED
            )
        )
        event = SecurityEvent(
            kind=REFRESH_TOKEN_REUSE,
            principal_id=token.principal_id,
            chain_root_id=token.root_id,
            token_id=token.id,
            revoked_count=revoked,
            occurred_at=now,
        )
        self.logger.warning(
            "refresh_reuse_detected",
            principal_id=token.principal_id,
            chain_root=short_key(token.root_id),
            previous_reason=token.revoked_reason.value if token.revoked_reason else None,
            revoked=revoked,
        )
        await self.events.publish(event)
        raise TokenReuseDetected(event)

    async def logout(self, presented: str) -> None:
        now = self._now()
        if not presented or not isinstance(presented, str):
            return
        token_id = self.codec.refresh_token_key(presented)
        revoked = await self._call(
            self.store.revoke_refresh_token, token_id, now, RevokeReason.LOGOUT
        )
        self.logger.info("logout", token_id=short_key(token_id), revoked=revoked)

    def authenticate(
        self, access_token: Optional[str], *, required_role: Optional[str] = None
    ) -> AccessClaims:
        """Stateless gate check: signature, expiry and optional role tag."""
        if not access_token:
            raise InvalidToken()
        claims = self.codec.verify_access_token(access_token, self._now())
        if required_role and not claims.has_role(required_role):
            raise ForbiddenError(
                "insufficient role", detail={"required_role": required_role}
            )
        return claims

    async def change_password(
        self, principal_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and revoke every refresh token the principal holds."""
        now = self._now()
        principal = await self._call(self.store.get_principal, principal_id)
        stored_hash = (
            await self._call(self.store.get_password_hash, principal_id)
            if principal
            else None
        )
        verified, _ = await asyncio.to_thread(
            self.passwords.verify, stored_hash, current_password or ""
        )
        if principal is None or not verified:
            self.logger.info("password_change_failed", principal_id=principal_id)
            raise InvalidCredentials()
        problems = self.policy.violations(new_password or "", identifier=principal.login)
        if problems:
            raise ValidationError("password rejected", detail={"password": problems})
        new_hash = await asyncio.to_thread(self.passwords.hash, new_password)
        await self._call(self.store.update_password_hash, principal_id, new_hash)
        revoked = await self._call(
            self.store.revoke_principal_refresh_tokens,
            principal_id,
            now,
            RevokeReason.PRINCIPAL_REVOKED,
        )
        self.logger.info("password_changed", principal_id=principal_id, revoked_tokens=revoked)
        return revoked
