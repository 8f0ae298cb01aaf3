from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionforge.logging import get_logger, short_key
from sessionforge.storage.errors import ConstraintViolation, StoreUnavailable
from sessionforge.storage.models import (
    Principal,
    RefreshToken,
    RevokeReason,
    Rotation,
    TokenLookup,
    TokenStatus,
    utcnow,
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id UUID PRIMARY KEY,
        login TEXT NOT NULL,
        roles TEXT[] NOT NULL CHECK (cardinality(roles) > 0),
        is_locked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS principal_login_lower_idx ON principal (lower(login))",
    """
    CREATE TABLE IF NOT EXISTS principal_credential (
        principal_id UUID PRIMARY KEY REFERENCES principal(id),
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        principal_id UUID NOT NULL REFERENCES principal(id),
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        root_id TEXT NOT NULL,
        parent_id TEXT REFERENCES refresh_token(id),
        replaced_by TEXT,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_principal_idx ON refresh_token (principal_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_parent_idx ON refresh_token (parent_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_root_idx ON refresh_token (root_id)",
)


class PostgresStore:
    """Postgres-backed credential and refresh token store.

    Rotation takes a row lock on the presented token, so two exchanges of the
    same token serialize while unrelated tokens proceed in parallel.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the principal and refresh token tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _principal_from_row(row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            login=row["login"],
            roles=tuple(row.get("roles") or ()),
            is_locked=row.get("is_locked", False),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        reason = row.get("revoked_reason")
        return RefreshToken(
            id=row["id"],
            principal_id=str(row["principal_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            root_id=row["root_id"],
            parent_id=row.get("parent_id"),
            replaced_by=row.get("replaced_by"),
            revoked_at=row.get("revoked_at"),
            revoked_reason=RevokeReason(reason) if reason else None,
        )

    # -- credential store -------------------------------------------------

    def create_principal(
        self, login: str, password_hash: str, roles: Iterable[str]
    ) -> Principal:
        roles = tuple(roles)
        if not roles:
            raise ConstraintViolation("roles must not be empty", {"field": "roles"})
        principal = Principal.new(login.strip(), roles)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (id, login, roles, is_locked, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        principal.login,
                        list(principal.roles),
                        principal.is_locked,
                        principal.created_at,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO principal_credential (principal_id, password_hash)
                    VALUES (%s, %s)
                    """,
                    (principal.id, password_hash),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("login already exists", {"field": "login"})
        return principal

    def get_principal_by_login(self, login: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE lower(login) = lower(%s)",
                (login.strip(),),
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def get_password_hash(self, principal_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM principal_credential WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        return row["password_hash"] if row else None

    def update_password_hash(self, principal_id: str, password_hash: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal_credential (principal_id, password_hash, last_updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (principal_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        last_updated_at = now()
                    """,
                    (principal_id, password_hash),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("principal not found", {"principal_id": principal_id})

    def update_roles(self, principal_id: str, roles: Iterable[str]) -> Principal:
        roles = tuple(roles)
        if not roles:
            raise ConstraintViolation("roles must not be empty", {"field": "roles"})
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET roles = %s, updated_at = now() WHERE id = %s RETURNING *",
                (list(roles), principal_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("principal not found", {"principal_id": principal_id})
        return self._principal_from_row(row)

    def set_locked(self, principal_id: str, locked: bool) -> Principal:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET is_locked = %s, updated_at = now() WHERE id = %s RETURNING *",
                (locked, principal_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("principal not found", {"principal_id": principal_id})
        return self._principal_from_row(row)

    # -- refresh token store ----------------------------------------------

    def _insert_token(
        self,
        conn: Any,
        principal_id: str,
        parent_id: Optional[str],
        root_id: str,
        *,
        token_id: str,
        now: datetime,
        ttl: timedelta,
    ) -> RefreshToken:
        token = RefreshToken(
            id=token_id,
            principal_id=principal_id,
            issued_at=now,
            expires_at=now + ttl,
            root_id=root_id,
            parent_id=parent_id,
        )
        conn.execute(
            """
            INSERT INTO refresh_token (id, principal_id, issued_at, expires_at, root_id, parent_id)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.principal_id,
                token.issued_at,
                token.expires_at,
                token.root_id,
                token.parent_id,
            ),
        )
        return token

    def issue_refresh_token(
        self,
        principal_id: str,
        parent_id: Optional[str],
        *,
        token_id: str,
        now: datetime,
        ttl: timedelta,
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                root_id = token_id
                if parent_id is not None:
                    parent = conn.execute(
                        "SELECT root_id FROM refresh_token WHERE id = %s", (parent_id,)
                    ).fetchone()
                    if not parent:
                        raise ConstraintViolation(
                            "parent refresh token not found", {"field": "parent_id"}
                        )
                    root_id = parent["root_id"]
                return self._insert_token(
                    conn, principal_id, parent_id, root_id, token_id=token_id, now=now, ttl=ttl
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("principal not found", {"field": "principal_id"})

    def find_active_refresh_token(self, token_id: str, now: datetime) -> TokenLookup:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return TokenLookup.classify(self._token_from_row(row) if row else None, now)

    def mark_refresh_rotated(
        self, token_id: str, replacement_id: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_reason = %s, replaced_by = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, RevokeReason.ROTATED.value, replacement_id, token_id),
            ).fetchone()
        return row is not None

    def _lock_chain(self, conn, token_id: str) -> Optional[str]:
        """Lock the root row of the token's chain and return the root id.

        Rotation, chain revocation and discard all take this lock first, so
        they serialize per chain. Returns None for unknown tokens.
        """
        row = conn.execute(
            "SELECT root_id FROM refresh_token WHERE id = %s", (token_id,)
        ).fetchone()
        if not row:
            return None
        conn.execute(
            "SELECT 1 FROM refresh_token WHERE id = %s FOR UPDATE", (row["root_id"],)
        )
        return row["root_id"]

    def rotate_refresh_token(
        self,
        token_id: str,
        *,
        replacement_id: str,
        now: datetime,
        ttl: timedelta,
    ) -> Rotation:
        with self._connect() as conn:
            if self._lock_chain(conn, token_id) is None:
                return Rotation(TokenLookup.classify(None, now))
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s FOR UPDATE", (token_id,)
            ).fetchone()
            lookup = TokenLookup.classify(self._token_from_row(row) if row else None, now)
            if lookup.status is not TokenStatus.ACTIVE:
                return Rotation(lookup)
            current = lookup.token
            replacement = self._insert_token(
                conn,
                current.principal_id,
                current.id,
                current.root_id,
                token_id=replacement_id,
                now=now,
                ttl=ttl,
            )
            conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, revoked_reason = %s, replaced_by = %s
                WHERE id = %s
                """,
                (now, RevokeReason.ROTATED.value, replacement_id, token_id),
            )
        return Rotation(lookup, replacement)

    def revoke_refresh_token(
        self, token_id: str, now: datetime, reason: RevokeReason = RevokeReason.LOGOUT
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, reason.value, token_id),
            ).fetchone()
        return row is not None

    def revoke_refresh_chain(
        self,
        token_id: str,
        now: datetime,
        reason: RevokeReason = RevokeReason.REUSE_DETECTED,
    ) -> int:
        with self._connect() as conn:
            root_id = self._lock_chain(conn, token_id)
            if root_id is None:
                return 0
            rows = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE root_id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, reason.value, root_id),
            ).fetchall()
        self.logger.info(
            "refresh_chain_revoked_postgres", root_id=short_key(root_id), revoked=len(rows)
        )
        return len(rows)

    def revoke_principal_refresh_tokens(
        self,
        principal_id: str,
        now: datetime,
        reason: RevokeReason = RevokeReason.PRINCIPAL_REVOKED,
    ) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE principal_id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, reason.value, principal_id),
            ).fetchall()
        return len(rows)

    def discard_refresh_token(self, token_id: str) -> None:
        """Remove a token that was never handed to a client.

        If the token was the replacement in a rotation, its parent becomes
        the active head of the chain again, unless the replacement has been
        revoked in the meantime (the chain was revoked by then).
        """
        with self._connect() as conn:
            if self._lock_chain(conn, token_id) is None:
                return
            row = conn.execute(
                "DELETE FROM refresh_token WHERE id = %s RETURNING parent_id, revoked_at",
                (token_id,),
            ).fetchone()
            if row and row.get("parent_id") and row.get("revoked_at") is None:
                conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked_at = NULL, revoked_reason = NULL, replaced_by = NULL
                    WHERE id = %s AND replaced_by = %s
                    """,
                    (row["parent_id"], token_id),
                )

    def purge_expired_refresh_tokens(self, before: datetime) -> int:
        # chain roots stay while any member survives; other survivors are detached
        with self._connect() as conn:
            rows = conn.execute(
                """
                WITH doomed AS (
                    SELECT id FROM refresh_token t
                    WHERE t.expires_at < %s
                    AND NOT EXISTS (
                        SELECT 1 FROM refresh_token c
                        WHERE c.root_id = t.id AND c.expires_at >= %s
                    )
                ),
                detached AS (
                    UPDATE refresh_token SET parent_id = NULL
                    WHERE parent_id IN (SELECT id FROM doomed)
                    AND id NOT IN (SELECT id FROM doomed)
                )
                DELETE FROM refresh_token WHERE id IN (SELECT id FROM doomed)
                RETURNING id
                """,
                (before, before),
            ).fetchall()
        return len(rows)

    def list_refresh_tokens(self, principal_id: str) -> list[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE principal_id = %s ORDER BY issued_at",
                (principal_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]
