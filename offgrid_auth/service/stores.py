"""Repository contracts consumed by the session service.

Every method takes an optional ``tx`` handle obtained from
``TransactionProvider.transaction()``. Calls that share a handle are applied as
one atomic unit; calls without one run in their own unit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, ContextManager, List, Optional, Protocol

from offgrid_auth.storage.models import (
    AuditLogEntry,
    Device,
    DeviceType,
    RefreshTokenRecord,
    Role,
    User,
)


class TransactionProvider(Protocol):
    def transaction(self) -> ContextManager[Any]: ...


class UserRepository(Protocol):
    def create_user(
        self,
        *,
        role: Role,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        verified: bool = False,
        tx: Any = None,
    ) -> User: ...

    def get_user(self, user_id: str, *, tx: Any = None) -> Optional[User]: ...

    def find_user_by_login(
        self, username_or_email: str, *, tx: Any = None
    ) -> Optional[User]: ...

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
    ) -> Optional[User]: ...

    def set_user_verified(
        self, user_id: str, verified: bool, *, tx: Any = None
    ) -> Optional[User]: ...

    def update_user_role(
        self, user_id: str, role: Role, *, tx: Any = None
    ) -> Optional[User]: ...


class DeviceRepository(Protocol):
    def upsert_device(
        self,
        user_id: str,
        device_type: DeviceType,
        name: str,
        *,
        seen_at: datetime,
        tx: Any = None,
    ) -> Device: ...

    def get_device(self, device_id: str, *, tx: Any = None) -> Optional[Device]: ...

    def touch_device(
        self, device_id: str, *, seen_at: datetime, tx: Any = None
    ) -> Optional[Device]: ...


class RefreshTokenRepository(Protocol):
    def create_refresh_token(
        self, record: RefreshTokenRecord, *, tx: Any = None
    ) -> RefreshTokenRecord: ...

    def get_refresh_token(
        self, token_id: str, *, tx: Any = None
    ) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self,
        token_id: str,
        successor: RefreshTokenRecord,
        *,
        revoked_at: datetime,
        tx: Any = None,
    ) -> bool:
        """Insert ``successor`` and retire ``token_id`` only if it is still active."""
        ...

    def revoke_refresh_token(
        self, token_id: str, *, revoked_at: datetime, tx: Any = None
    ) -> bool: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, *, revoked_at: datetime, tx: Any = None
    ) -> int: ...

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = False, tx: Any = None
    ) -> List[RefreshTokenRecord]: ...


class AuditLogRepository(Protocol):
    def append_audit_entry(
        self, entry: AuditLogEntry, *, tx: Any = None
    ) -> AuditLogEntry: ...

    def list_audit_entries(
        self, user_id: Optional[str] = None, *, limit: int = 100, tx: Any = None
    ) -> List[AuditLogEntry]: ...


class SessionStore(
    TransactionProvider,
    UserRepository,
    DeviceRepository,
    RefreshTokenRepository,
    AuditLogRepository,
    Protocol,
):
    """Everything a single backing store provides."""
