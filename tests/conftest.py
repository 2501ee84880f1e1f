import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="walletauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-encryption-key-for-testing-only-do-not-use")
os.environ.setdefault("BACKUP_CODE_PEPPER", "test-backup-code-pepper-for-testing-only-do-not-use")
# Process-local cache keeps rate limits and one-time codes deterministic per test
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from walletauth.config import Settings  # noqa: E402
from walletauth.service.auth import AuthService  # noqa: E402
from walletauth.service.mfa import MFAService  # noqa: E402
from walletauth.service.risk import HeuristicRiskCheck  # noqa: E402
from walletauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from walletauth.service.tokens import TokenService  # noqa: E402
from walletauth.storage.local_cache import LocalCache  # noqa: E402
from walletauth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, start: float | None = None) -> None:
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEmail:
    """Captures outgoing mail instead of talking to SMTP."""

    is_configured = True

    def __init__(self) -> None:
        self.sent = []

    def _record(self, kind, to_email, **fields):
        self.sent.append({"kind": kind, "to": to_email, **fields})
        return True

    def send_password_reset(self, to_email, token, ttl_minutes=15):
        return self._record("password_reset", to_email, token=token)

    def send_email_verification(self, to_email, token):
        return self._record("email_verification", to_email, token=token)

    def send_mfa_code(self, to_email, code, *, purpose="sign-in", ttl_minutes=5):
        return self._record("mfa_code", to_email, code=code, purpose=purpose)

    def send_account_locked(self, to_email, locked_until):
        return self._record("account_locked", to_email, locked_until=locked_until)

    def last(self, kind):
        matching = [m for m in self.sent if m["kind"] == kind]
        return matching[-1] if matching else None


class RecordingSMS:
    is_configured = True

    def __init__(self) -> None:
        self.sent = []

    async def send_code(self, to_number, code, *, ttl_minutes=5):
        self.sent.append({"to": to_number, "code": code})
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # The memory store snapshots to disk; a fresh root keeps tests independent
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Unit-Access-Secret_for-Automation-Only-987654321!",
        jwt_refresh_secret="Unit-Refresh-Secret_for-Automation-Only-123456789!",
        mfa_secret_key="Unit-MFA-Key_for-Automation-Only-555555555!",
        backup_code_pepper="Unit-Pepper_for-Automation-Only-444444444!",
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(tmp_path, settings):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key=settings.mfa_secret_key)


@pytest.fixture
def cache(clock):
    return LocalCache(clock=clock)


@pytest.fixture
def outbox():
    return RecordingEmail()


@pytest.fixture
def sms_outbox():
    return RecordingSMS()


@pytest.fixture
def token_service(settings, memory_store, cache, clock):
    return TokenService(settings, memory_store, cache, clock=clock)


@pytest.fixture
def mfa_service(settings, memory_store, cache, outbox, sms_outbox, clock):
    return MFAService(
        settings, memory_store, cache, email=outbox, sms=sms_outbox, clock=clock
    )


@pytest.fixture
def auth_service(settings, memory_store, cache, token_service, mfa_service, outbox, clock):
    return AuthService(
        settings,
        memory_store,
        cache,
        tokens=token_service,
        mfa=mfa_service,
        risk=HeuristicRiskCheck(memory_store, threshold=settings.risk_threshold),
        email=outbox,
        clock=clock,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
