import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="realmauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from realmauth.config import Settings  # noqa: E402
from realmauth.service.accounts import AccountService  # noqa: E402
from realmauth.service.email import DeliveryReceipt  # noqa: E402
from realmauth.service.invites import InviteCodeService  # noqa: E402
from realmauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from realmauth.storage.memory import MemoryStore  # noqa: E402
from realmauth.storage.models import Account  # noqa: E402

ADMIN_SECRET = "test-admin-secret"
STRONG_PASSWORD = "Hunter-Pass1"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[dict] = []

    def send(self, to: str, subject: str, html_body: str) -> DeliveryReceipt:
        self.messages.append({"to": to, "subject": subject, "html_body": html_body})
        if self.fail:
            return DeliveryReceipt(delivered=False, error="mailbox unavailable")
        return DeliveryReceipt(delivered=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        admin_secret=ADMIN_SECRET,
        session_ttl_minutes=60,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingSender()


@pytest.fixture
def accounts(store, settings, mailer, clock):
    return AccountService(store, settings, mailer, clock=clock)


@pytest.fixture
def invites(store, settings, clock):
    return InviteCodeService(store, settings, clock=clock)


@pytest.fixture
def verified_account(accounts, store):
    """Register and verify an account; returns a callable taking the email."""

    async def _create(email: str = "player@example.com", password: str = STRONG_PASSWORD) -> Account:
        result = await accounts.register(email, password)
        assert result.ok, result.message
        account = store.get_account_by_email(email.strip().lower())
        confirmed = await accounts.confirm_verification(email, account.verification.token)
        assert confirmed.ok, confirmed.message
        return store.get_account_by_email(email.strip().lower())

    return _create


def make_account(
    store: MemoryStore,
    email: str,
    *,
    unique_hash: str = "unique-hash",
    verified: bool = True,
    wallet_address: str | None = None,
) -> Account:
    """Insert an account directly, skipping password hashing."""
    account = Account.new(email=email, wallet_address=wallet_address, unique_hash=unique_hash)
    account.verified = verified
    return store.create_account(account)


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
