"""Postgres store tests.

Run against a disposable database by exporting ``DATABASE_URL``; the tables
are created on connect. Each test uses fresh identities so reruns do not
collide with earlier rows.
"""

import os
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from walletauth.storage.errors import ConstraintViolation
from walletauth.storage.models import ACCOUNT_ACTIVE, ACCOUNT_LOCKED

pytestmark = pytest.mark.skipif(
    not os.getenv("DATABASE_URL"), reason="DATABASE_URL not set; Postgres tests skipped"
)


@pytest.fixture
def pg_store(tmp_path):
    from walletauth.storage.postgres import PostgresStore

    store = PostgresStore(
        os.environ["DATABASE_URL"], str(tmp_path), mfa_encryption_key="pg-key-for-tests-only"
    )
    yield store
    store.close()


def _user(store, prefix="pg"):
    tag = uuid.uuid4().hex[:10]
    return store.create_user(f"{prefix}-{tag}@example.com", f"{prefix}_{tag}", "hash")


def _lock_until():
    return datetime.now(timezone.utc) + timedelta(minutes=30)


def _run_together(workers, target):
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def run():
        barrier.wait()
        outcome = target()
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=run) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def test_create_and_find_user(pg_store):
    user = _user(pg_store)

    assert pg_store.find_by_email(user.email.upper()).id == user.id
    assert pg_store.find_by_id(user.id).account_status == ACCOUNT_ACTIVE
    with pytest.raises(ConstraintViolation) as exc_info:
        pg_store.create_user(user.email, "someone_else_" + uuid.uuid4().hex[:6], "hash")
    assert exc_info.value.detail == {"field": "email"}


def test_increment_locks_at_threshold(pg_store):
    user = _user(pg_store)

    results = [pg_store.increment_failed_attempts(user.id, 3, _lock_until()) for _ in range(3)]

    assert results == [(1, ACCOUNT_ACTIVE), (2, ACCOUNT_ACTIVE), (3, ACCOUNT_LOCKED)]
    assert pg_store.increment_failed_attempts(user.id, 3, _lock_until()) == (3, ACCOUNT_LOCKED)
    assert pg_store.find_by_id(user.id).locked_until is not None


def test_concurrent_failures_lock_exactly_once(pg_store):
    user = _user(pg_store)
    threshold = 5

    results = _run_together(
        8, lambda: pg_store.increment_failed_attempts(user.id, threshold, _lock_until())
    )

    stored = pg_store.find_by_id(user.id)
    assert stored.account_status == ACCOUNT_LOCKED
    assert stored.failed_login_attempts == threshold
    assert sorted(count for count, _ in results)[: threshold - 1] == list(range(1, threshold))


def test_backup_code_consumed_exactly_once(pg_store):
    user = _user(pg_store)
    cfg = pg_store.create_mfa_config(user.id, "totp", backup_code_hashes=["a", "b", "c"])

    results = _run_together(6, lambda: pg_store.consume_backup_code(cfg.id, "a"))

    assert [r for r in results if r is not None] == [2]
    stored = pg_store.get_mfa_config(cfg.id)
    assert sorted(stored.backup_code_hashes) == ["b", "c"]
    assert stored.backup_codes_used == 1
    assert pg_store.consume_backup_code(cfg.id, "missing") is None


def test_refresh_revoke_has_single_winner(pg_store):
    user = _user(pg_store)
    jti = uuid.uuid4().hex
    pg_store.create_refresh_token(jti, user.id, _lock_until(), ip_addr="10.0.0.1")

    results = _run_together(6, lambda: pg_store.revoke_refresh_token(jti, replaced_by="next"))

    assert results.count(True) == 1
    assert pg_store.get_refresh_token(jti).revoked_at is not None


def test_revoke_all_but_one_session(pg_store):
    user = _user(pg_store)
    jtis = [uuid.uuid4().hex for _ in range(3)]
    for jti in jtis:
        pg_store.create_refresh_token(jti, user.id, _lock_until())

    revoked = pg_store.revoke_user_refresh_tokens(user.id, except_jti=jtis[1])

    assert sorted(r.jti for r in revoked) == sorted([jtis[0], jtis[2]])
    assert [r.jti for r in pg_store.list_refresh_tokens(user.id)] == [jtis[1]]
    assert len(pg_store.list_refresh_tokens(user.id, active_only=False)) == 3


def test_device_trust_and_delete(pg_store):
    user = _user(pg_store)
    pg_store.upsert_device(user.id, "fp", ip_addr="10.0.0.1")

    assert pg_store.set_device_trust(user.id, "fp", True).trusted
    assert pg_store.set_device_trust(user.id, "other", True) is None
    assert pg_store.delete_device(user.id, "fp")
    assert not pg_store.delete_device(user.id, "fp")
    assert pg_store.list_devices(user.id) == []
