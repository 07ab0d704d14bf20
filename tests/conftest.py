import asyncio
import inspect
import os
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any imports that might read settings
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-0123456789")
os.environ.setdefault("TWO_FACTOR_ENCRYPTION_KEY", "test-totp-key-for-automation-only-0123456789")
# Keep argon2 cheap so the suite stays fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pyotp  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatekeep.config import Settings  # noqa: E402
from gatekeep.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from gatekeep.storage.kv import MemoryKeyValueStore  # noqa: E402
from gatekeep.storage.models import Role  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-42"
SUPER_ADMIN_EMAIL = "root@example.com"


class FakeClock:
    """Manually advanced clock; starts on a 30s TOTP step boundary."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class SeededRandom:
    """Deterministic random source so failures reproduce."""

    def __init__(self, seed: int = 1234) -> None:
        self._rng = random.Random(seed)

    def randbelow(self, upper: int) -> int:
        return self._rng.randrange(upper)

    def token_bytes(self, nbytes: int) -> bytes:
        return self._rng.randbytes(nbytes)


class RecordingEmail:
    """Email double that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    def _record(self, kind: str, to_email: str, **payload) -> bool:
        self.sent.append({"kind": kind, "to": to_email, **payload})
        return True

    def send_verification_email(self, to_email, token, name=None):
        return self._record("verification", to_email, token=token)

    def send_login_otp(self, to_email, code, name=None):
        return self._record("login_otp", to_email, code=code)

    def send_password_change_otp(self, to_email, code, name=None):
        return self._record("password_change_otp", to_email, code=code)

    def send_two_factor_enabled(self, to_email, name=None):
        return self._record("two_factor_enabled", to_email)

    def last(self, kind: str) -> dict:
        return next(message for message in reversed(self.sent) if message["kind"] == kind)

    def count(self, kind: str) -> int:
        return sum(1 for message in self.sent if message["kind"] == kind)


def wrong_code(code: str) -> str:
    return f"{(int(code) + 500_000) % 1_000_000:06d}"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return SeededRandom()


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        jwt_secret="test-access-secret-for-automation-only-0123456789",
        jwt_refresh_secret="test-refresh-secret-for-automation-only-0123456789",
        two_factor_encryption_key="test-totp-key-for-automation-only-0123456789",
        super_admin_email=SUPER_ADMIN_EMAIL,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
    )


@pytest.fixture
def kv(clock):
    return MemoryKeyValueStore(clock)


@pytest.fixture
def mailer():
    return RecordingEmail()


@pytest.fixture
def runtime(settings, clock, rng, kv, mailer):
    return Runtime(settings, clock=clock, random_source=rng, kv=kv, email_service=mailer)


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def make_account(runtime):
    """Create an account directly in the store, bypassing registration."""

    def _make(email="user@example.com", password=STRONG_PASSWORD, role=Role.STANDARD, **kwargs):
        return runtime.store.create_account(
            email, runtime.credentials.hash(password), role=role, **kwargs
        )

    return _make


@pytest.fixture
def enable_two_factor(runtime):
    """Give an account an enabled TOTP factor and return the plaintext secret."""

    def _enable(account_id: str) -> str:
        secret = runtime.two_factor.generate_secret()
        runtime.store.set_two_factor(
            account_id, secret=runtime.two_factor.encrypt_secret(secret), enabled=True
        )
        return secret

    return _enable


@pytest.fixture
def totp_now(clock):
    def _code(secret: str) -> str:
        return pyotp.TOTP(secret).at(clock.now())

    return _code


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
