from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Union

from offgrid_auth.logging import get_logger
from offgrid_auth.service.stores import RefreshTokenRepository, TransactionProvider
from offgrid_auth.storage.models import RefreshTokenRecord, utcnow

logger = get_logger(__name__)


def hash_token(token: str) -> str:
    """One-way digest stored in place of the bearer string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_matches(token: str, token_hash: str) -> bool:
    # SECURITY: constant-time comparison to prevent timing attacks
    return hmac.compare_digest(hash_token(token), token_hash)


class RejectReason(str, Enum):
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    HASH_MISMATCH = "hash_mismatch"


@dataclass(frozen=True)
class LedgerRejection:
    reason: RejectReason
    record: Optional[RefreshTokenRecord] = None

    @property
    def is_replay(self) -> bool:
        """True when an already-rotated token was presented again."""
        return (
            self.reason == RejectReason.REVOKED
            and self.record is not None
            and self.record.replaced_by_id is not None
        )


@dataclass(frozen=True)
class MintedRefreshToken:
    token: str
    record: RefreshTokenRecord


@dataclass(frozen=True)
class Rotation:
    previous: RefreshTokenRecord
    successor: RefreshTokenRecord
    token: str


class LedgerStore(RefreshTokenRepository, TransactionProvider, Protocol):
    pass


SuccessorFactory = Callable[[RefreshTokenRecord, Any], MintedRefreshToken]


class _LostRace(Exception):
    def __init__(self, rejection: LedgerRejection) -> None:
        super().__init__(rejection.reason.value)
        self.rejection = rejection


class RefreshTokenLedger:
    """Persists refresh-token metadata and enforces single-use rotation.

    Lineage state machine: ACTIVE -> rotate -> REVOKED(replaced_by=next) with a new
    ACTIVE successor, or ACTIVE -> revoke -> REVOKED. Nothing leaves REVOKED.
    """

    def __init__(
        self, store: LedgerStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def build(
        self,
        token_id: str,
        user_id: str,
        token: str,
        *,
        expires_at: datetime,
        device_id: Optional[str] = None,
    ) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=token_id,
            user_id=user_id,
            token_hash=hash_token(token),
            expires_at=expires_at,
            device_id=device_id,
            created_at=self._clock(),
        )

    def create(
        self,
        token_id: str,
        user_id: str,
        token: str,
        *,
        expires_at: datetime,
        device_id: Optional[str] = None,
        tx: Any = None,
    ) -> RefreshTokenRecord:
        record = self.build(
            token_id, user_id, token, expires_at=expires_at, device_id=device_id
        )
        return self.store.create_refresh_token(record, tx=tx)

    def inspect(
        self, token_id: str, presented_token: str, *, tx: Any = None
    ) -> Union[RefreshTokenRecord, LedgerRejection]:
        """Run the rotation checks without changing anything."""
        record = self.store.get_refresh_token(token_id, tx=tx)
        return self._check(record, presented_token)

    def rotate(
        self,
        token_id: str,
        presented_token: str,
        successor: SuccessorFactory,
    ) -> Union[Rotation, LedgerRejection]:
        """Swap an active refresh token for the one produced by ``successor``.

        ``successor`` is called with the current record and the transaction handle
        once all checks pass. The retire-old/insert-new swap only lands if the old
        record is still active at write time; a concurrent rotation that got there
        first turns this call into a REVOKED rejection and rolls back whatever
        ``successor`` wrote.
        """
        try:
            with self.store.transaction() as tx:
                record = self.store.get_refresh_token(token_id, tx=tx)
                checked = self._check(record, presented_token)
                if isinstance(checked, LedgerRejection):
                    return checked
                minted = successor(checked, tx)
                swapped = self.store.rotate_refresh_token(
                    checked.id, minted.record, revoked_at=self._clock(), tx=tx
                )
                if not swapped:
                    # unwind the successor's writes along with the failed swap
                    raise _LostRace(
                        LedgerRejection(
                            RejectReason.REVOKED,
                            self.store.get_refresh_token(token_id, tx=tx),
                        )
                    )
        except _LostRace as lost:
            logger.warning("refresh_rotation_lost_race", token_id=token_id)
            return lost.rejection
        logger.info(
            "refresh_token_rotated",
            token_id=checked.id,
            successor_id=minted.record.id,
            user_id=checked.user_id,
        )
        return Rotation(previous=checked, successor=minted.record, token=minted.token)

    def revoke(self, token_id: str, *, tx: Any = None) -> bool:
        return self.store.revoke_refresh_token(token_id, revoked_at=self._clock(), tx=tx)

    def revoke_all_for_user(self, user_id: str, *, tx: Any = None) -> int:
        """Revoke every token active at the moment of the call.

        Tokens minted concurrently after the snapshot stay valid.
        """
        revoked = self.store.revoke_user_refresh_tokens(
            user_id, revoked_at=self._clock(), tx=tx
        )
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=revoked)
        return revoked

    def _check(
        self, record: Optional[RefreshTokenRecord], presented_token: str
    ) -> Union[RefreshTokenRecord, LedgerRejection]:
        if record is None:
            return LedgerRejection(RejectReason.NOT_FOUND)
        if not record.is_active:
            return LedgerRejection(RejectReason.REVOKED, record)
        if record.is_expired(self._clock()):
            return LedgerRejection(RejectReason.EXPIRED, record)
        if not token_matches(presented_token, record.token_hash):
            return LedgerRejection(RejectReason.HASH_MISMATCH, record)
        return record
