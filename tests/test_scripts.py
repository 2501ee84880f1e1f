from scripts.bootstrap_admin import bootstrap_admin
from scripts.unlock_account import unlock
from walletauth.service.runtime import get_runtime
from walletauth.storage.models import ACCOUNT_ACTIVE, ACCOUNT_LOCKED

PASSWORD = "Secur3Pass!"


def test_bootstrap_admin_creates_verified_admin():
    result = bootstrap_admin("root@example.com", "root", PASSWORD)

    assert result["status"] == "created"
    admin = get_runtime().store.find_by_id(result["user_id"])
    assert admin.is_admin
    assert admin.email_verified
    assert get_runtime().auth.verify_password(admin.id, PASSWORD)


def test_bootstrap_admin_is_idempotent_and_checks_strength():
    bootstrap_admin("root@example.com", "root", PASSWORD)

    assert bootstrap_admin("root@example.com", "root", PASSWORD)["status"] == "already_admin"
    assert bootstrap_admin("new@example.com", "new", "weak")["status"] == "weak_password"
    assert bootstrap_admin("dry@example.com", "dry", PASSWORD, dry_run=True)["status"] == "dry_run"
    assert get_runtime().store.find_by_email("dry@example.com") is None


def test_unlock_account_script():
    store = get_runtime().store
    user = store.create_user("locked@example.com", "locked", "x")
    store.set_account_status(user.id, ACCOUNT_LOCKED)

    assert unlock("locked@example.com", dry_run=True)["status"] == "dry_run"
    assert unlock("locked@example.com")["status"] == "unlocked"
    assert store.find_by_id(user.id).account_status == ACCOUNT_ACTIVE
    assert unlock("locked@example.com")["status"] == "not_locked"
    assert unlock("missing@example.com")["status"] == "not_found"
