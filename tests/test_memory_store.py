from datetime import timedelta

import pytest

from offgrid_auth.storage.errors import ConstraintViolation
from offgrid_auth.storage.memory import MemoryStore
from offgrid_auth.storage.models import (
    AuditEvent,
    AuditLogEntry,
    DeviceType,
    RefreshTokenRecord,
    Role,
    new_id,
    utcnow,
)


def _record(user_id, token_id="jti-1", **overrides):
    fields = dict(
        id=token_id,
        user_id=user_id,
        token_hash="hash",
        expires_at=utcnow() + timedelta(days=1),
    )
    fields.update(overrides)
    return RefreshTokenRecord(**fields)


def test_memory_store_persists_state_across_instances(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        role=Role.USER, username="persist", email="persist@example.com", password_hash="h"
    )
    device = store.upsert_device(user.id, DeviceType.WEB, "browser", seen_at=utcnow())
    store.create_refresh_token(_record(user.id, device_id=device.id))
    store.append_audit_entry(
        AuditLogEntry(id=new_id(), event=AuditEvent.LOGIN_SUCCESS, user_id=user.id, meta={"a": 1})
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_user(user.id).username == "persist"
    assert reloaded.get_user(user.id).role == Role.USER
    assert reloaded.get_device(device.id).type == DeviceType.WEB
    assert reloaded.get_refresh_token("jti-1").device_id == device.id
    (entry,) = reloaded.list_audit_entries(user.id)
    assert entry.event == AuditEvent.LOGIN_SUCCESS
    assert entry.meta == {"a": 1}
    assert (tmp_path / "state" / "memory_store.json").exists()


def test_store_without_fs_root_writes_nothing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    store = MemoryStore()
    store.create_user(role=Role.ANONYMOUS)
    assert list(tmp_path.iterdir()) == []


def test_username_and_email_are_unique():
    store = MemoryStore()
    store.create_user(role=Role.USER, username="alice", email="a@example.com", password_hash="h")

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(role=Role.USER, username="alice", password_hash="h")
    assert excinfo.value.detail == {"fields": ["username"]}
    assert excinfo.value.is_identity_clash

    with pytest.raises(ConstraintViolation):
        store.create_user(role=Role.USER, email="a@example.com", password_hash="h")


def test_password_hash_is_null_exactly_for_anonymous():
    store = MemoryStore()

    with pytest.raises(ConstraintViolation) as missing:
        store.create_user(role=Role.ADMIN, username="root")
    with pytest.raises(ConstraintViolation) as extra:
        store.create_user(role=Role.ANONYMOUS, password_hash="h")

    assert not missing.value.is_identity_clash
    assert extra.value.detail == {"role": "anonymous"}
    assert store.users == {}


def test_anonymous_users_do_not_collide():
    store = MemoryStore()
    store.create_user(role=Role.ANONYMOUS)
    store.create_user(role=Role.ANONYMOUS)
    assert len(store.users) == 2


def test_upgrade_is_conditional_on_role():
    store = MemoryStore()
    user = store.create_user(role=Role.ANONYMOUS)

    upgraded = store.upgrade_user(
        user.id,
        username="bob",
        email=None,
        password_hash="h",
        role=Role.USER,
        expected_role=Role.ANONYMOUS,
    )
    again = store.upgrade_user(
        user.id,
        username="bob2",
        email=None,
        password_hash="h",
        role=Role.USER,
        expected_role=Role.ANONYMOUS,
    )

    assert upgraded.role == Role.USER
    assert again is None
    assert store.get_user(user.id).username == "bob"


def test_returned_objects_are_copies():
    store = MemoryStore()
    user = store.create_user(role=Role.ANONYMOUS)
    user.role = Role.ADMIN
    assert store.get_user(user.id).role == Role.ANONYMOUS


def test_transaction_rolls_back_on_error():
    store = MemoryStore()
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            store.create_user(role=Role.ANONYMOUS, tx=tx)
            raise RuntimeError("boom")
    assert store.users == {}


def test_device_upsert_matches_exact_triple():
    store = MemoryStore()
    user = store.create_user(role=Role.ANONYMOUS)
    first = store.upsert_device(user.id, DeviceType.CLI, "box", seen_at=utcnow())
    same = store.upsert_device(user.id, DeviceType.CLI, "box", seen_at=utcnow())
    other_type = store.upsert_device(user.id, DeviceType.WEB, "box", seen_at=utcnow())

    assert same.id == first.id
    assert other_type.id != first.id
    assert store.touch_device("missing", seen_at=utcnow()) is None


def test_rotation_requires_active_predecessor():
    store = MemoryStore()
    user = store.create_user(role=Role.ANONYMOUS)
    store.create_refresh_token(_record(user.id))

    assert store.rotate_refresh_token("jti-1", _record(user.id, "jti-2"), revoked_at=utcnow())
    assert not store.rotate_refresh_token("jti-1", _record(user.id, "jti-3"), revoked_at=utcnow())
    assert store.get_refresh_token("jti-3") is None
    retired = store.get_refresh_token("jti-1")
    assert retired.replaced_by_id == "jti-2"
    assert retired.revoked_at is not None


def test_refresh_token_ids_are_unique():
    store = MemoryStore()
    user = store.create_user(role=Role.ANONYMOUS)
    store.create_refresh_token(_record(user.id))
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(_record(user.id))


def test_audit_entries_are_limited_to_most_recent():
    store = MemoryStore()
    for idx in range(5):
        store.append_audit_entry(
            AuditLogEntry(id=str(idx), event=AuditEvent.LOGIN_FAILED, meta={"n": idx})
        )
    assert [e.meta["n"] for e in store.list_audit_entries(limit=2)] == [3, 4]
