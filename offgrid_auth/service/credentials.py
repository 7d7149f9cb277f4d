from __future__ import annotations

from typing import Any, Optional, Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError

from offgrid_auth.config import Settings
from offgrid_auth.logging import get_logger
from offgrid_auth.service.stores import UserRepository
from offgrid_auth.storage.models import Role, User

logger = get_logger(__name__)

# Verified against when no account matches so unknown logins cost the same.
_DUMMY_PASSWORD = "offgrid-auth-timing-equalizer"


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, password_hash: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id hashing with a configurable cost factor."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Argon2PasswordHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except (InvalidHash, VerificationError):
            return False

    def burn(self, plaintext: str) -> None:
        """Spend one verification's worth of work against a throwaway hash."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(_DUMMY_PASSWORD)
        self.verify(plaintext, self._dummy_hash)


class CredentialStore:
    """User records plus the password-hash primitive.

    Unique-constraint collisions surface as ``ConstraintViolation`` from the
    repository; callers decide how to report them.
    """

    def __init__(self, users: UserRepository, hasher: PasswordHasher) -> None:
        self.users = users
        self.hasher = hasher

    def create_anonymous(self, *, tx: Any = None) -> User:
        return self.users.create_user(role=Role.ANONYMOUS, tx=tx)

    def hash_password(self, password: str) -> str:
        return self.hasher.hash(password)

    def create_credentialed(
        self,
        password_hash: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        role: Role = Role.USER,
        verified: bool = False,
        tx: Any = None,
    ) -> User:
        return self.users.create_user(
            role=role,
            username=username,
            email=email,
            password_hash=password_hash,
            verified=verified,
            tx=tx,
        )

    def get(self, user_id: str, *, tx: Any = None) -> Optional[User]:
        return self.users.get_user(user_id, tx=tx)

    def find_by_login(self, username_or_email: str, *, tx: Any = None) -> Optional[User]:
        return self.users.find_user_by_login(username_or_email, tx=tx)

    def verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        return self.hasher.verify(password, user.password_hash)

    def burn_verification(self, password: str) -> None:
        burn = getattr(self.hasher, "burn", None)
        if burn is not None:
            burn(password)

    def upgrade(
        self,
        user_id: str,
        password_hash: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        tx: Any = None,
    ) -> Optional[User]:
        """Promote an anonymous account; None if it is no longer anonymous."""
        return self.users.upgrade_user(
            user_id,
            username=username,
            email=email,
            password_hash=password_hash,
            role=Role.USER,
            expected_role=Role.ANONYMOUS,
            tx=tx,
        )

    def set_verified(self, user_id: str, verified: bool, *, tx: Any = None) -> Optional[User]:
        return self.users.set_user_verified(user_id, verified, tx=tx)

    def set_role(self, user_id: str, role: Role, *, tx: Any = None) -> Optional[User]:
        return self.users.update_user_role(user_id, role, tx=tx)
