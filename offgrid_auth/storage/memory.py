from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

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


class MemoryStore:
    """In-process backing store for development and tests.

    Every method holds ``_data_lock``; ``transaction()`` keeps holding it for the
    whole unit and rolls the tables back if the block raises. When ``fs_root``
    is given, committed state is mirrored to ``state/memory_store.json``.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.devices: Dict[str, Device] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so repository calls can nest inside an open transaction
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ------------------------------------------------------------------
    # transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot()
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._tx_depth -= 1
            self._commit()

    def _snapshot(self) -> tuple:
        return (
            copy.deepcopy(self.users),
            copy.deepcopy(self.devices),
            copy.deepcopy(self.refresh_tokens),
            list(self.audit_log),
        )

    def _restore(self, snapshot: tuple) -> None:
        self.users, self.devices, self.refresh_tokens, self.audit_log = snapshot

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._persist_state()

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
        with self._data_lock:
            if (Role(role) == Role.ANONYMOUS) != (password_hash is None):
                raise ConstraintViolation(
                    "password is required exactly for credentialed users",
                    {"role": Role(role).value},
                )
            self._check_identity_unique(username, email)
            now = utcnow()
            user = User(
                id=new_id(),
                role=Role(role),
                username=username,
                email=email,
                password_hash=password_hash,
                verified=verified,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._commit()
            return replace(user)

    def get_user(self, user_id: str, *, tx: Any = None) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_user_by_login(
        self, username_or_email: str, *, tx: Any = None
    ) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if username_or_email in (user.username, user.email):
                    return replace(user)
            return None

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
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.role != expected_role:
                return None
            self._check_identity_unique(username, email, exclude=user_id)
            user.username = username
            user.email = email
            user.password_hash = password_hash
            user.role = Role(role)
            user.updated_at = utcnow()
            self._commit()
            return replace(user)

    def set_user_verified(
        self, user_id: str, verified: bool, *, tx: Any = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.verified = verified
            user.updated_at = utcnow()
            self._commit()
            return replace(user)

    def update_user_role(
        self, user_id: str, role: Role, *, tx: Any = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            if Role(role) == Role.ANONYMOUS and user.password_hash:
                raise ConstraintViolation(
                    "credentialed user cannot be anonymous", {"user_id": user_id}
                )
            user.role = Role(role)
            user.updated_at = utcnow()
            self._commit()
            return replace(user)

    def _check_identity_unique(
        self,
        username: Optional[str],
        email: Optional[str],
        *,
        exclude: Optional[str] = None,
    ) -> None:
        taken = []
        for existing in self.users.values():
            if existing.id == exclude:
                continue
            if username and existing.username == username:
                taken.append("username")
            if email and existing.email == email:
                taken.append("email")
        if taken:
            fields = sorted(set(taken))
            raise ConstraintViolation(
                f"{' and '.join(fields)} already exists", {"fields": fields}
            )

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
        with self._data_lock:
            device_type = DeviceType(device_type)
            for device in self.devices.values():
                if (
                    device.user_id == user_id
                    and device.type == device_type
                    and device.name == name
                ):
                    device.name = name
                    device.last_seen_at = seen_at
                    self._commit()
                    return replace(device)
            device = Device(
                id=new_id(),
                user_id=user_id,
                type=device_type,
                name=name,
                last_seen_at=seen_at,
                created_at=seen_at,
            )
            self.devices[device.id] = device
            self._commit()
            return replace(device)

    def get_device(self, device_id: str, *, tx: Any = None) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return replace(device) if device else None

    def touch_device(
        self, device_id: str, *, seen_at: datetime, tx: Any = None
    ) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if device is None:
                return None
            device.last_seen_at = seen_at
            self._commit()
            return replace(device)

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(
        self, record: RefreshTokenRecord, *, tx: Any = None
    ) -> RefreshTokenRecord:
        with self._data_lock:
            self._insert_refresh_token(record)
            self._commit()
            return replace(record)

    def _insert_refresh_token(self, record: RefreshTokenRecord) -> None:
        if record.id in self.refresh_tokens:
            raise ConstraintViolation("refresh token id already exists", {"id": record.id})
        if record.user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        self.refresh_tokens[record.id] = replace(record)

    def get_refresh_token(
        self, token_id: str, *, tx: Any = None
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    def rotate_refresh_token(
        self,
        token_id: str,
        successor: RefreshTokenRecord,
        *,
        revoked_at: datetime,
        tx: Any = None,
    ) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or not current.is_active:
                return False
            self._insert_refresh_token(successor)
            current.revoked_at = revoked_at
            current.replaced_by_id = successor.id
            self._commit()
            return True

    def revoke_refresh_token(
        self, token_id: str, *, revoked_at: datetime, tx: Any = None
    ) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or current.revoked_at is not None:
                return False
            current.revoked_at = revoked_at
            self._commit()
            return True

    def revoke_user_refresh_tokens(
        self, user_id: str, *, revoked_at: datetime, tx: Any = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = revoked_at
                    revoked += 1
            self._commit()
            return revoked

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False, tx: Any = None
    ) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and (r.is_active or not active_only)
            ]
            return sorted(records, key=lambda r: r.created_at)

    # ------------------------------------------------------------------
    # audit log
    # ------------------------------------------------------------------

    def append_audit_entry(
        self, entry: AuditLogEntry, *, tx: Any = None
    ) -> AuditLogEntry:
        with self._data_lock:
            stored = replace(entry, meta=copy.deepcopy(entry.meta or {}))
            self.audit_log.append(stored)
            self._commit()
            return replace(stored)

    def list_audit_entries(
        self, user_id: Optional[str] = None, *, limit: int = 100, tx: Any = None
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [
                e for e in self.audit_log if user_id is None or e.user_id == user_id
            ]
            return [replace(e) for e in entries[-limit:]] if limit > 0 else []

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

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

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "devices": [self._serialize_device(d) for d in self.devices.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "audit_log": [self._serialize_audit_entry(e) for e in self.audit_log],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.devices = {
            d["id"]: self._deserialize_device(d) for d in data.get("devices", [])
        }
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.audit_log = [
            self._deserialize_audit_entry(e) for e in data.get("audit_log", [])
        ]
        self.logger.info(
            "memory_store_loaded", users=len(self.users), path=str(path)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "role": user.role.value,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "verified": user.verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            role=Role(data.get("role", Role.USER.value)),
            username=data.get("username"),
            email=data.get("email"),
            password_hash=data.get("password_hash"),
            verified=bool(data.get("verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_device(self, device: Device) -> dict:
        return {
            "id": device.id,
            "user_id": device.user_id,
            "type": device.type.value,
            "name": device.name,
            "last_seen_at": self._serialize_datetime(device.last_seen_at),
            "created_at": self._serialize_datetime(device.created_at),
        }

    def _deserialize_device(self, data: dict) -> Device:
        return Device(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            type=DeviceType(data["type"]),
            name=data["name"],
            last_seen_at=self._deserialize_datetime(data["last_seen_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "device_id": record.device_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "replaced_by_id": record.replaced_by_id,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token_hash=data["token_hash"],
            device_id=data.get("device_id"),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            replaced_by_id=data.get("replaced_by_id"),
        )

    def _serialize_audit_entry(self, entry: AuditLogEntry) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "event": entry.event.value,
            "meta": entry.meta or {},
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_audit_entry(self, data: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(data["id"]),
            user_id=data.get("user_id"),
            event=AuditEvent(data["event"]),
            meta=data.get("meta") or {},
            created_at=self._deserialize_datetime(data["created_at"]),
        )


__all__ = ["MemoryStore"]
