from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from offgrid_auth.logging import get_logger
from offgrid_auth.storage.errors import ConstraintViolation
from offgrid_auth.storage.models import (
    AuditEvent,
    AuditLogEntry,
    Device,
    DeviceType,
    RefreshTokenRecord,
    Role,
    User,
    new_id,
    utcnow,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        username TEXT UNIQUE,
        email TEXT UNIQUE,
        password_hash TEXT,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_anonymous_has_no_password
            CHECK ((role = 'anonymous') = (password_hash IS NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_device (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        type TEXT NOT NULL,
        name TEXT NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT user_device_identity UNIQUE (user_id, type, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        token_hash TEXT NOT NULL,
        device_id TEXT REFERENCES user_device(id),
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ,
        replaced_by_id TEXT,
        CONSTRAINT refresh_token_replaced_implies_revoked
            CHECK (replaced_by_id IS NULL OR revoked_at IS NOT NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        user_id TEXT REFERENCES app_user(id),
        event TEXT NOT NULL,
        meta JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _unique_fields(exc: errors.UniqueViolation) -> List[str]:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    fields = [name for name in ("username", "email") if name in constraint]
    return fields or ["id"]


class PostgresStore:
    """psycopg-backed store implementing every session repository.

    ``transaction()`` yields a pooled connection inside ``conn.transaction()``;
    passing it as ``tx=`` makes repository calls join that unit.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _use(self, tx: Any = None) -> Iterator[Any]:
        if tx is not None:
            yield tx
            return
        with self._connect() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        with self._connect() as conn, conn.transaction():
            yield conn

    def ensure_schema(self) -> None:
        """Create the session tables if they are missing."""

        with self._connect() as conn, conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def create_user(
        self,
        *,
        role: Role,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        verified: bool = False,
        tx: Any = None,
    ) -> User:
        user_id = new_id()
        now = utcnow()
        try:
            with self._use(tx) as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, role, username, email, password_hash, verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        Role(role).value,
                        username,
                        email,
                        password_hash,
                        verified,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            fields = _unique_fields(exc)
            raise ConstraintViolation(
                f"{' and '.join(fields)} already exists", {"fields": fields}
            )
        except errors.CheckViolation:
            raise ConstraintViolation(
                "password is required exactly for credentialed users",
                {"role": Role(role).value},
            )
        return self._user_from_row(row)

    def get_user(self, user_id: str, *, tx: Any = None) -> Optional[User]:
        with self._use(tx) as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_login(
        self, username_or_email: str, *, tx: Any = None
    ) -> Optional[User]:
        with self._use(tx) as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s OR email = %s LIMIT 1",
                (username_or_email, username_or_email),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def upgrade_user(
        self,
        user_id: str,
        *,
        username: Optional[str],
        email: Optional[str],
        password_hash: str,
        role: Role,
        expected_role: Role,
        tx: Any = None,
    ) -> Optional[User]:
        try:
            with self._use(tx) as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET username = %s, email = %s, password_hash = %s, role = %s, updated_at = %s
                    WHERE id = %s AND role = %s
                    RETURNING *
                    """,
                    (
                        username,
                        email,
                        password_hash,
                        Role(role).value,
                        utcnow(),
                        user_id,
                        Role(expected_role).value,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            fields = _unique_fields(exc)
            raise ConstraintViolation(
                f"{' and '.join(fields)} already exists", {"fields": fields}
            )
        return self._user_from_row(row) if row else None

    def set_user_verified(
        self, user_id: str, verified: bool, *, tx: Any = None
    ) -> Optional[User]:
        with self._use(tx) as conn:
            row = conn.execute(
                "UPDATE app_user SET verified = %s, updated_at = %s WHERE id = %s RETURNING *",
                (verified, utcnow(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(
        self, user_id: str, role: Role, *, tx: Any = None
    ) -> Optional[User]:
        try:
            with self._use(tx) as conn, conn.transaction():
                row = conn.execute(
                    "UPDATE app_user SET role = %s, updated_at = %s WHERE id = %s RETURNING *",
                    (Role(role).value, utcnow(), user_id),
                ).fetchone()
        except errors.CheckViolation:
            raise ConstraintViolation(
                "credentialed user cannot be anonymous", {"user_id": user_id}
            )
        return self._user_from_row(row) if row else None

    # ------------------------------------------------------------------
    # devices
    # ------------------------------------------------------------------

    def upsert_device(
        self,
        user_id: str,
        device_type: DeviceType,
        name: str,
        *,
        seen_at: datetime,
        tx: Any = None,
    ) -> Device:
        with self._use(tx) as conn:
            row = conn.execute(
                """
                INSERT INTO user_device (id, user_id, type, name, last_seen_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, type, name)
                DO UPDATE SET last_seen_at = EXCLUDED.last_seen_at, name = EXCLUDED.name
                RETURNING *
                """,
                (new_id(), user_id, DeviceType(device_type).value, name, seen_at, seen_at),
            ).fetchone()
        return self._device_from_row(row)

    def get_device(self, device_id: str, *, tx: Any = None) -> Optional[Device]:
        with self._use(tx) as conn:
            row = conn.execute(
                "SELECT * FROM user_device WHERE id = %s", (device_id,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def touch_device(
        self, device_id: str, *, seen_at: datetime, tx: Any = None
    ) -> Optional[Device]:
        with self._use(tx) as conn:
            row = conn.execute(
                "UPDATE user_device SET last_seen_at = %s WHERE id = %s RETURNING *",
                (seen_at, device_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(
        self, record: RefreshTokenRecord, *, tx: Any = None
    ) -> RefreshTokenRecord:
        with self._use(tx) as conn, conn.transaction():
            self._insert_refresh_token(conn, record)
        return record

    def _insert_refresh_token(self, conn: Any, record: RefreshTokenRecord) -> None:
        try:
            conn.execute(
                """
                INSERT INTO refresh_token (id, user_id, token_hash, device_id, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.user_id,
                    record.token_hash,
                    record.device_id,
                    record.expires_at,
                    record.created_at,
                ),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token id already exists", {"id": record.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token references a missing row", {"user_id": record.user_id}
            )

    def get_refresh_token(
        self, token_id: str, *, tx: Any = None
    ) -> Optional[RefreshTokenRecord]:
        with self._use(tx) as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        token_id: str,
        successor: RefreshTokenRecord,
        *,
        revoked_at: datetime,
        tx: Any = None,
    ) -> bool:
        with self._use(tx) as conn, conn.transaction():
            # row lock serializes racing rotations; the loser re-reads and matches nothing
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, replaced_by_id = %s
                WHERE id = %s AND revoked_at IS NULL AND replaced_by_id IS NULL
                """,
                (revoked_at, successor.id, token_id),
            )
            if cur.rowcount != 1:
                return False
            self._insert_refresh_token(conn, successor)
        return True

    def revoke_refresh_token(
        self, token_id: str, *, revoked_at: datetime, tx: Any = None
    ) -> bool:
        with self._use(tx) as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (revoked_at, token_id),
            )
        return cur.rowcount == 1

    def revoke_user_refresh_tokens(
        self, user_id: str, *, revoked_at: datetime, tx: Any = None
    ) -> int:
        with self._use(tx) as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (revoked_at, user_id),
            )
        return cur.rowcount

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False, tx: Any = None
    ) -> List[RefreshTokenRecord]:
        query = "SELECT * FROM refresh_token WHERE user_id = %s"
        if active_only:
            query += " AND revoked_at IS NULL AND replaced_by_id IS NULL"
        query += " ORDER BY created_at"
        with self._use(tx) as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # audit log
    # ------------------------------------------------------------------

    def append_audit_entry(
        self, entry: AuditLogEntry, *, tx: Any = None
    ) -> AuditLogEntry:
        with self._use(tx) as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, user_id, event, meta, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.event.value,
                    json.dumps(entry.meta or {}),
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_entries(
        self, user_id: Optional[str] = None, *, limit: int = 100, tx: Any = None
    ) -> List[AuditLogEntry]:
        with self._use(tx) as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
        return [self._audit_entry_from_row(row) for row in reversed(rows)]

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            role=Role(row["role"]),
            username=row.get("username"),
            email=row.get("email"),
            password_hash=row.get("password_hash"),
            verified=bool(row.get("verified", False)),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _device_from_row(row: dict) -> Device:
        return Device(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=DeviceType(row["type"]),
            name=row["name"],
            last_seen_at=row["last_seen_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _refresh_token_from_row(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            device_id=row.get("device_id"),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
            replaced_by_id=row.get("replaced_by_id"),
        )

    @staticmethod
    def _audit_entry_from_row(row: dict) -> AuditLogEntry:
        meta = row.get("meta") or {}
        if isinstance(meta, str):
            meta = json.loads(meta)
        return AuditLogEntry(
            id=str(row["id"]),
            user_id=row.get("user_id"),
            event=AuditEvent(row["event"]),
            meta=meta,
            created_at=row["created_at"],
        )


__all__ = ["PostgresStore"]
