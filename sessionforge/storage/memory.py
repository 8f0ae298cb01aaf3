from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, Optional

from sessionforge.logging import get_logger, short_key
from sessionforge.storage.errors import ConstraintViolation
from sessionforge.storage.models import (
    Principal,
    PrincipalCredential,
    RefreshToken,
    RevokeReason,
    Rotation,
    TokenLookup,
    TokenStatus,
    utcnow,
)


class MemoryStore:
    """In-process credential and refresh token store.

    Every public method takes ``_data_lock`` so the find/issue/mark sequence
    inside :meth:`rotate_refresh_token` is serializable with every other
    access. When ``state_path`` is given the full state is rewritten to that
    JSON file after each mutation and reloaded on construction.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, PrincipalCredential] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so composite operations can call the single-step ones
        self._data_lock = threading.RLock()
        self._state_path = Path(state_path) if state_path else None
        if self._state_path is not None:
            self._load_state()

    # -- credential store -------------------------------------------------

    def create_principal(
        self, login: str, password_hash: str, roles: Iterable[str]
    ) -> Principal:
        normalized = login.strip().lower()
        roles = tuple(roles)
        if not roles:
            raise ConstraintViolation("roles must not be empty", {"field": "roles"})
        with self._data_lock:
            if any(existing.login == normalized for existing in self.principals.values()):
                raise ConstraintViolation("login already exists", {"field": "login"})
            principal = Principal.new(normalized, roles)
            self.principals[principal.id] = principal
            self.credentials[principal.id] = PrincipalCredential(
                principal_id=principal.id, password_hash=password_hash
            )
            self._persist_state()
            return principal

    def get_principal_by_login(self, login: str) -> Optional[Principal]:
        normalized = login.strip().lower()
        with self._data_lock:
            return next(
                (p for p in self.principals.values() if p.login == normalized), None
            )

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_password_hash(self, principal_id: str) -> Optional[str]:
        with self._data_lock:
            credential = self.credentials.get(principal_id)
            return credential.password_hash if credential else None

    def update_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation("principal not found", {"principal_id": principal_id})
            existing = self.credentials.get(principal_id)
            now = utcnow()
            self.credentials[principal_id] = PrincipalCredential(
                principal_id=principal_id,
                password_hash=password_hash,
                created_at=existing.created_at if existing else now,
                last_updated_at=now,
            )
            self._persist_state()

    def update_roles(self, principal_id: str, roles: Iterable[str]) -> Principal:
        roles = tuple(roles)
        if not roles:
            raise ConstraintViolation("roles must not be empty", {"field": "roles"})
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                raise ConstraintViolation("principal not found", {"principal_id": principal_id})
            principal.roles = roles
            principal.updated_at = utcnow()
            self._persist_state()
            return principal

    def set_locked(self, principal_id: str, locked: bool) -> Principal:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                raise ConstraintViolation("principal not found", {"principal_id": principal_id})
            principal.is_locked = locked
            principal.updated_at = utcnow()
            self._persist_state()
            return principal

    # -- refresh token store ----------------------------------------------

    def issue_refresh_token(
        self,
        principal_id: str,
        parent_id: Optional[str],
        *,
        token_id: str,
        now: datetime,
        ttl: timedelta,
    ) -> RefreshToken:
        with self._data_lock:
            if token_id in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "id"})
            if parent_id is not None:
                parent = self.refresh_tokens.get(parent_id)
                if parent is None:
                    raise ConstraintViolation(
                        "parent refresh token not found", {"field": "parent_id"}
                    )
                root_id = parent.root_id
            else:
                root_id = token_id
            token = RefreshToken(
                id=token_id,
                principal_id=principal_id,
                issued_at=now,
                expires_at=now + ttl,
                root_id=root_id,
                parent_id=parent_id,
            )
            self.refresh_tokens[token_id] = token
            self._persist_state()
            return token

    def find_active_refresh_token(self, token_id: str, now: datetime) -> TokenLookup:
        with self._data_lock:
            return TokenLookup.classify(self.refresh_tokens.get(token_id), now)

    def mark_refresh_rotated(
        self, token_id: str, replacement_id: str, now: datetime
    ) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.revoked:
                return False
            token.revoked_at = now
            token.revoked_reason = RevokeReason.ROTATED
            token.replaced_by = replacement_id
            self._persist_state()
            return True

    def rotate_refresh_token(
        self,
        token_id: str,
        *,
        replacement_id: str,
        now: datetime,
        ttl: timedelta,
    ) -> Rotation:
        with self._data_lock:
            lookup = self.find_active_refresh_token(token_id, now)
            if lookup.status is not TokenStatus.ACTIVE:
                return Rotation(lookup)
            replacement = self.issue_refresh_token(
                lookup.token.principal_id,
                token_id,
                token_id=replacement_id,
                now=now,
                ttl=ttl,
            )
            self.mark_refresh_rotated(token_id, replacement_id, now)
            return Rotation(lookup, replacement)

    def revoke_refresh_token(
        self, token_id: str, now: datetime, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.revoked:
                return False
            token.revoked_at = now
            token.revoked_reason = reason
            self._persist_state()
            return True

    def revoke_refresh_chain(
        self,
        token_id: str,
        now: datetime,
        reason: RevokeReason = RevokeReason.REUSE_DETECTED,
    ) -> int:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None:
                return 0
            revoked = 0
            for member in self.refresh_tokens.values():
                if member.root_id == token.root_id and not member.revoked:
                    member.revoked_at = now
                    member.revoked_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
            self.logger.info(
                "refresh_chain_revoked_memory",
                root_id=short_key(token.root_id),
                revoked=revoked,
            )
            return revoked

    def revoke_principal_refresh_tokens(
        self,
        principal_id: str,
        now: datetime,
        reason: RevokeReason = RevokeReason.PRINCIPAL_REVOKED,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.principal_id == principal_id and not token.revoked:
                    token.revoked_at = now
                    token.revoked_reason = reason
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def discard_refresh_token(self, token_id: str) -> None:
        """Remove a token that was never handed to a client.

        If the token was the replacement in a rotation, its parent becomes
        the active head of the chain again, unless the replacement has been
        revoked in the meantime (the chain was revoked by then).
        """
        with self._data_lock:
            token = self.refresh_tokens.pop(token_id, None)
            if token is None:
                return
            if token.parent_id and not token.revoked:
                parent = self.refresh_tokens.get(token.parent_id)
                if parent is not None and parent.replaced_by == token_id:
                    parent.replaced_by = None
                    parent.revoked_at = None
                    parent.revoked_reason = None
            self._persist_state()

    def purge_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            # chain roots stay while any member survives
            live_roots = {
                token.root_id
                for token in self.refresh_tokens.values()
                if token.expires_at >= before
            }
            expired = [
                token_id
                for token_id, token in self.refresh_tokens.items()
                if token.expires_at < before and token_id not in live_roots
            ]
            for token_id in expired:
                del self.refresh_tokens[token_id]
            for token in self.refresh_tokens.values():
                if token.parent_id in expired:
                    token.parent_id = None
            if expired:
                self._persist_state()
            return len(expired)

    def list_refresh_tokens(self, principal_id: str) -> list[RefreshToken]:
        with self._data_lock:
            return sorted(
                (t for t in self.refresh_tokens.values() if t.principal_id == principal_id),
                key=lambda t: t.issued_at,
            )

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        if self._state_path is None:
            return
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_path.parent), prefix=".memory_store_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, self._state_path)
        except OSError as exc:
            Path(tmp_path).unlink(missing_ok=True)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self._state_path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.credentials = {
            c["principal_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            principals=len(self.principals),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "login": principal.login,
            "roles": list(principal.roles),
            "is_locked": principal.is_locked,
            "created_at": self._serialize_datetime(principal.created_at),
            "updated_at": self._serialize_datetime(principal.updated_at),
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        return Principal(
            id=data["id"],
            login=data["login"],
            roles=tuple(data.get("roles") or ()),
            is_locked=bool(data.get("is_locked", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_credential(self, credential: PrincipalCredential) -> dict:
        return {
            "principal_id": credential.principal_id,
            "password_hash": credential.password_hash,
            "created_at": self._serialize_datetime(credential.created_at),
            "last_updated_at": self._serialize_datetime(credential.last_updated_at),
        }

    def _deserialize_credential(self, data: dict) -> PrincipalCredential:
        return PrincipalCredential(
            principal_id=data["principal_id"],
            password_hash=data["password_hash"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_updated_at=self._deserialize_datetime(data.get("last_updated_at")),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "principal_id": token.principal_id,
            "issued_at": self._serialize_datetime(token.issued_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "root_id": token.root_id,
            "parent_id": token.parent_id,
            "replaced_by": token.replaced_by,
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "revoked_reason": token.revoked_reason.value if token.revoked_reason else None,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        reason = data.get("revoked_reason")
        return RefreshToken(
            id=data["id"],
            principal_id=data["principal_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            root_id=data.get("root_id") or data["id"],
            parent_id=data.get("parent_id"),
            replaced_by=data.get("replaced_by"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=RevokeReason(reason) if reason else None,
        )
