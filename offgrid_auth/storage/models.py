from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    ANONYMOUS = "anonymous"
    USER = "user"
    CONTRIBUTOR = "contributor"
    HARDWARE_SUPPORTER = "hardware_supporter"
    ADMIN = "admin"


class DeviceType(str, Enum):
    CLI = "cli"
    WEB = "web"
    MOBILE = "mobile"


class AuditEvent(str, Enum):
    USER_ANON_CREATED = "USER_ANON_CREATED"
    USER_REGISTERED = "USER_REGISTERED"
    USER_UPGRADED = "USER_UPGRADED"
    USER_VERIFIED = "USER_VERIFIED"
    USER_UNVERIFIED = "USER_UNVERIFIED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"


@dataclass
class User:
    id: str
    role: Role
    username: Optional[str] = None
    email: Optional[str] = None
    password_hash: Optional[str] = None
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_anonymous(self) -> bool:
        return self.role == Role.ANONYMOUS


@dataclass(frozen=True)
class UserProfile:
    """Public projection of a user; never carries the password hash."""

    id: str
    username: Optional[str]
    email: Optional[str]
    role: Role
    verified: bool
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            verified=user.verified,
            created_at=user.created_at,
        )


@dataclass
class Device:
    id: str
    user_id: str
    type: DeviceType
    name: str
    last_seen_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    """Ledger row for one issued refresh token, keyed by its ``jti``.

    ``token_hash`` is a one-way digest of the bearer string, never the token.
    """

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    device_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    replaced_by_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None and self.replaced_by_id is None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class AuditLogEntry:
    id: str
    event: AuditEvent
    user_id: Optional[str] = None
    meta: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
