"""Unit tests for the refresh-token ledger state machine."""

import threading
from datetime import timedelta

import pytest

from offgrid_auth.service.ledger import (
    MintedRefreshToken,
    RejectReason,
    Rotation,
    LedgerRejection,
    hash_token,
    token_matches,
)
from offgrid_auth.storage.models import DeviceType, Role, utcnow


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(role=Role.ANONYMOUS)


@pytest.fixture
def active(ledger, user):
    """An active record for token string ``token-a``."""
    return ledger.create(
        "jti-a", user.id, "token-a", expires_at=utcnow() + timedelta(days=30)
    )


def _successor(ledger, token_id, token="token-next"):
    def factory(previous, tx):
        record = ledger.build(
            token_id,
            previous.user_id,
            token,
            expires_at=utcnow() + timedelta(days=30),
            device_id=previous.device_id,
        )
        return MintedRefreshToken(token=token, record=record)

    return factory


def test_only_the_hash_is_stored(active, memory_store):
    stored = memory_store.get_refresh_token("jti-a")
    assert stored.token_hash == hash_token("token-a")
    assert "token-a" not in stored.token_hash
    assert token_matches("token-a", stored.token_hash)
    assert not token_matches("token-b", stored.token_hash)


def test_rotate_links_predecessor_to_successor(ledger, active, memory_store):
    outcome = ledger.rotate("jti-a", "token-a", _successor(ledger, "jti-b"))

    assert isinstance(outcome, Rotation)
    assert outcome.token == "token-next"
    previous = memory_store.get_refresh_token("jti-a")
    successor = memory_store.get_refresh_token("jti-b")
    assert previous.revoked_at is not None
    assert previous.replaced_by_id == "jti-b"
    assert successor.is_active


def test_rotated_token_cannot_rotate_again(ledger, active):
    """Replaying a rotated token reports REVOKED and is flagged as a replay."""
    ledger.rotate("jti-a", "token-a", _successor(ledger, "jti-b"))

    outcome = ledger.rotate("jti-a", "token-a", _successor(ledger, "jti-c"))

    assert isinstance(outcome, LedgerRejection)
    assert outcome.reason == RejectReason.REVOKED
    assert outcome.is_replay


def test_successor_rotates_normally(ledger, active):
    ledger.rotate("jti-a", "token-a", _successor(ledger, "jti-b", "token-b"))

    outcome = ledger.rotate("jti-b", "token-b", _successor(ledger, "jti-c"))

    assert isinstance(outcome, Rotation)


def test_unknown_token_is_not_found(ledger):
    outcome = ledger.rotate("missing", "token-a", _successor(ledger, "jti-b"))
    assert outcome.reason == RejectReason.NOT_FOUND
    assert outcome.record is None


def test_expired_record_is_rejected(ledger, active, clock):
    clock.advance(days=31)

    outcome = ledger.rotate("jti-a", "token-a", _successor(ledger, "jti-b"))

    assert outcome.reason == RejectReason.EXPIRED


def test_hash_mismatch_is_rejected(ledger, active, memory_store):
    outcome = ledger.rotate("jti-a", "token-forged", _successor(ledger, "jti-b"))

    assert outcome.reason == RejectReason.HASH_MISMATCH
    assert memory_store.get_refresh_token("jti-a").is_active


def test_revoked_wins_over_expired(ledger, active, clock):
    """Checks run in a fixed order: a revoked record reports REVOKED even when stale."""
    ledger.revoke("jti-a")
    clock.advance(days=31)

    outcome = ledger.inspect("jti-a", "token-a")

    assert outcome.reason == RejectReason.REVOKED
    assert not outcome.is_replay


def test_inspect_does_not_mutate(ledger, active, memory_store):
    checked = ledger.inspect("jti-a", "token-a")

    assert checked.id == "jti-a"
    assert memory_store.get_refresh_token("jti-a").is_active


def test_revoke_is_conditional(ledger, active):
    assert ledger.revoke("jti-a") is True
    assert ledger.revoke("jti-a") is False


def test_revoke_all_only_touches_active_records(ledger, user, memory_store):
    expires = utcnow() + timedelta(days=1)
    for idx in range(3):
        ledger.create(f"jti-{idx}", user.id, f"token-{idx}", expires_at=expires)
    ledger.revoke("jti-0")

    assert ledger.revoke_all_for_user(user.id) == 2
    assert memory_store.list_refresh_tokens(user.id, active_only=True) == []
    # tokens minted after the sweep stay valid
    ledger.create("jti-late", user.id, "token-late", expires_at=expires)
    assert [r.id for r in memory_store.list_refresh_tokens(user.id, active_only=True)] == [
        "jti-late"
    ]


def test_swap_loses_to_a_rotation_that_landed_first(ledger, active, memory_store):
    """If the record is retired between the checks and the write, the swap is refused."""

    def racing_factory(previous, tx):
        rival = ledger.build(
            "jti-rival", previous.user_id, "token-rival", expires_at=previous.expires_at
        )
        assert memory_store.rotate_refresh_token(
            previous.id, rival, revoked_at=utcnow(), tx=tx
        )
        return _successor(ledger, "jti-mine")(previous, tx)

    outcome = ledger.rotate("jti-a", "token-a", racing_factory)

    assert isinstance(outcome, LedgerRejection)
    assert outcome.reason == RejectReason.REVOKED
    assert outcome.record.replaced_by_id == "jti-rival"
    assert memory_store.get_refresh_token("jti-mine") is None


def test_lost_swap_discards_successor_writes(ledger, active, memory_store):
    def racing_factory(previous, tx):
        memory_store.upsert_device(
            previous.user_id, DeviceType.CLI, "laptop", seen_at=utcnow(), tx=tx
        )
        rival = ledger.build(
            "jti-rival", previous.user_id, "token-rival", expires_at=previous.expires_at
        )
        memory_store.rotate_refresh_token(previous.id, rival, revoked_at=utcnow(), tx=tx)
        return _successor(ledger, "jti-mine")(previous, tx)

    outcome = ledger.rotate("jti-a", "token-a", racing_factory)

    assert isinstance(outcome, LedgerRejection)
    assert memory_store.devices == {}


def test_concurrent_rotations_have_exactly_one_winner(ledger, active):
    barrier = threading.Barrier(8)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker(idx):
        barrier.wait()
        result = ledger.rotate("jti-a", "token-a", _successor(ledger, f"jti-{idx}"))
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [o for o in outcomes if isinstance(o, Rotation)]
    losers = [o for o in outcomes if isinstance(o, LedgerRejection)]
    assert len(winners) == 1
    assert len(losers) == 7
    assert all(o.reason == RejectReason.REVOKED for o in losers)
