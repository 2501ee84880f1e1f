import threading
from datetime import datetime, timedelta, timezone

import pytest

from walletauth.storage.errors import ConstraintViolation
from walletauth.storage.memory import MemoryStore
from walletauth.storage.models import ACCOUNT_ACTIVE, ACCOUNT_LOCKED


def _lock_until():
    return datetime.now(timezone.utc) + timedelta(minutes=30)


def test_create_user_normalizes_and_rejects_duplicates(memory_store):
    user = memory_store.create_user("  Alice@Example.COM ", "alice", "hash")

    assert user.email == "alice@example.com"
    assert memory_store.find_by_email("ALICE@example.com").id == user.id
    with pytest.raises(ConstraintViolation) as exc_info:
        memory_store.create_user("alice@example.com", "alice2", "hash")
    assert exc_info.value.detail == {"field": "email"}
    with pytest.raises(ConstraintViolation) as exc_info:
        memory_store.create_user("other@example.com", "ALICE", "hash")
    assert exc_info.value.detail == {"field": "username"}


def test_returned_objects_are_copies(memory_store):
    user = memory_store.create_user("copy@example.com", "copy", "hash")

    user.account_status = ACCOUNT_LOCKED

    assert memory_store.find_by_id(user.id).account_status == ACCOUNT_ACTIVE


def test_increment_locks_at_threshold(memory_store):
    user = memory_store.create_user("lock@example.com", "lock", "hash")

    results = [memory_store.increment_failed_attempts(user.id, 3, _lock_until()) for _ in range(3)]

    assert results == [(1, ACCOUNT_ACTIVE), (2, ACCOUNT_ACTIVE), (3, ACCOUNT_LOCKED)]
    # Attempts against a locked account are not counted
    assert memory_store.increment_failed_attempts(user.id, 3, _lock_until()) == (3, ACCOUNT_LOCKED)


def test_concurrent_failures_lock_exactly_once(memory_store):
    user = memory_store.create_user("race@example.com", "race", "hash")
    threshold = 5
    workers = 20
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def attempt():
        barrier.wait()
        outcome = memory_store.increment_failed_attempts(user.id, threshold, _lock_until())
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stored = memory_store.find_by_id(user.id)
    assert stored.account_status == ACCOUNT_LOCKED
    assert stored.failed_login_attempts == threshold
    counts = sorted(count for count, _ in results)
    # Every increment below the threshold happened exactly once
    assert counts[: threshold - 1] == list(range(1, threshold))
    transitions = [r for r in results if r == (threshold, ACCOUNT_LOCKED)]
    assert len(transitions) == workers - (threshold - 1)


def test_record_successful_login_refuses_locked(memory_store):
    user = memory_store.create_user("ok@example.com", "ok", "hash")
    memory_store.increment_failed_attempts(user.id, 5, _lock_until())

    assert memory_store.record_successful_login(user.id)
    assert memory_store.find_by_id(user.id).failed_login_attempts == 0

    memory_store.set_account_status(user.id, ACCOUNT_LOCKED, locked_until=_lock_until())
    assert not memory_store.record_successful_login(user.id)


def test_unlock_if_expired(memory_store):
    user = memory_store.create_user("expire@example.com", "expire", "hash")
    until = _lock_until()
    memory_store.set_account_status(user.id, ACCOUNT_LOCKED, locked_until=until)

    assert not memory_store.unlock_if_expired(user.id, until - timedelta(seconds=1))
    assert memory_store.unlock_if_expired(user.id, until + timedelta(seconds=1))
    unlocked = memory_store.find_by_id(user.id)
    assert unlocked.account_status == ACCOUNT_ACTIVE
    assert unlocked.locked_until is None


def test_consume_backup_code_once(memory_store):
    user = memory_store.create_user("codes@example.com", "codes", "hash")
    cfg = memory_store.create_mfa_config(user.id, "totp", backup_code_hashes=["a", "b"])

    assert memory_store.consume_backup_code(cfg.id, "a") == 1
    assert memory_store.consume_backup_code(cfg.id, "a") is None
    assert memory_store.get_mfa_config(cfg.id).backup_codes_used == 1


def test_advance_totp_step_rejects_replay(memory_store):
    user = memory_store.create_user("steps@example.com", "steps", "hash")
    cfg = memory_store.create_mfa_config(user.id, "totp", secret="JBSWY3DPEHPK3PXP")

    assert memory_store.advance_totp_step(cfg.id, 100)
    assert not memory_store.advance_totp_step(cfg.id, 100)
    assert not memory_store.advance_totp_step(cfg.id, 99)
    assert memory_store.advance_totp_step(cfg.id, 101)


def test_primary_is_exclusive(memory_store):
    user = memory_store.create_user("primary@example.com", "primary", "hash")
    first = memory_store.create_mfa_config(user.id, "totp", is_primary=True)
    second = memory_store.create_mfa_config(user.id, "email", destination=user.email)

    assert memory_store.set_primary_mfa_config(user.id, second.id)

    assert not memory_store.get_mfa_config(first.id).is_primary
    assert memory_store.get_mfa_config(second.id).is_primary


def test_device_tracks_recent_ips(memory_store):
    user = memory_store.create_user("device@example.com", "device", "hash")
    memory_store.upsert_device(user.id, "fp", ip_addr="10.0.0.1")
    memory_store.upsert_device(user.id, "fp", ip_addr="10.0.0.2", trusted=True)

    device = memory_store.get_device(user.id, "fp")

    assert device.known_ips == ["10.0.0.1", "10.0.0.2"]
    assert device.seen_count == 2
    assert device.trusted


def test_concurrent_backup_code_consumed_exactly_once(memory_store):
    user = memory_store.create_user("burst@example.com", "burst", "hash")
    cfg = memory_store.create_mfa_config(user.id, "totp", backup_code_hashes=["a", "b", "c"])
    workers = 16
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def redeem():
        barrier.wait()
        outcome = memory_store.consume_backup_code(cfg.id, "a")
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=redeem) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert [r for r in results if r is not None] == [2]
    stored = memory_store.get_mfa_config(cfg.id)
    assert stored.backup_code_hashes == ["b", "c"]
    assert stored.backup_codes_used == 1


def test_device_trust_and_delete(memory_store):
    user = memory_store.create_user("trust@example.com", "trust", "hash")
    memory_store.upsert_device(user.id, "fp", ip_addr="10.0.0.1")

    assert memory_store.set_device_trust(user.id, "fp", True).trusted
    assert memory_store.get_device(user.id, "fp").trusted
    assert memory_store.set_device_trust(user.id, "other", True) is None
    assert memory_store.delete_device(user.id, "fp")
    assert not memory_store.delete_device(user.id, "fp")
    assert memory_store.list_devices(user.id) == []


def test_refresh_tokens_listed_and_revoked_except_one(memory_store):
    user = memory_store.create_user("sessions@example.com", "sessions", "hash")
    expires = _lock_until()
    for jti in ("j1", "j2", "j3"):
        memory_store.create_refresh_token(jti, user.id, expires, ip_addr="10.0.0.1")

    revoked = memory_store.revoke_user_refresh_tokens(user.id, except_jti="j2")

    assert sorted(r.jti for r in revoked) == ["j1", "j3"]
    assert [r.jti for r in memory_store.list_refresh_tokens(user.id)] == ["j2"]
    assert len(memory_store.list_refresh_tokens(user.id, active_only=False)) == 3


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="reload-key-for-tests-only")
    user = store.create_user("persist@example.com", "persist", "hash", role="admin")
    cfg = store.create_mfa_config(user.id, "totp", secret="JBSWY3DPEHPK3PXP")
    store.set_account_status(user.id, ACCOUNT_LOCKED, locked_until=_lock_until())

    reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="reload-key-for-tests-only")

    restored = reloaded.find_by_id(user.id)
    assert restored.role == "admin"
    assert restored.account_status == ACCOUNT_LOCKED
    assert isinstance(restored.locked_until, datetime)
    assert reloaded.get_mfa_config(cfg.id).secret == "JBSWY3DPEHPK3PXP"
