import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything imports loginguard.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("STATE_DIR", "")
os.environ.setdefault("OTP_TEST_ADDRESSES", "+14155550100,qa@example.com")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from loginguard.config import Settings  # noqa: E402
from loginguard.service.blacklist import TokenBlacklistService  # noqa: E402
from loginguard.service.credentials import CredentialGate  # noqa: E402
from loginguard.service.keys import RSAKeyProvider  # noqa: E402
from loginguard.service.login import LoginService  # noqa: E402
from loginguard.service.messaging import (  # noqa: E402
    Message,
    MessagingServiceProvider,
    MessagingType,
)
from loginguard.service.otp import OtpService  # noqa: E402
from loginguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from loginguard.service.tokens import TokenService  # noqa: E402
from loginguard.storage.memory import MemoryStore  # noqa: E402

TEST_PHONE = "+14155550100"
REAL_PHONE = "+237670000001"


class ManualClock:
    """Clock that only moves when told to; starts on a whole second."""

    def __init__(self, start: datetime | None = None) -> None:
        now = start or datetime.now(timezone.utc)
        self.now = now.replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingMessagingService:
    def __init__(self) -> None:
        self.sent: list[Message] = []

    async def send(self, message: Message):
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return Settings(
        redis_url=None,
        test_mode=True,
        otp_test_addresses=[TEST_PHONE, "qa@example.com"],
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def recorder():
    return RecordingMessagingService()


@pytest.fixture
def messaging(recorder):
    return MessagingServiceProvider({channel: recorder for channel in MessagingType})


@pytest.fixture
def otp_service(store, messaging, settings, clock):
    return OtpService(
        store,
        messaging,
        ttl_seconds=settings.otp_ttl_seconds,
        code_length=settings.otp_code_length,
        test_addresses=settings.otp_test_addresses,
        clock=clock,
    )


@pytest.fixture
def key_provider(store, clock):
    return RSAKeyProvider(store, key_bits=2048, rotation_days=30, clock=clock)


@pytest.fixture
def token_service(key_provider, clock):
    return TokenService(key_provider, issuer="loginguard-test", clock=clock)


@pytest.fixture
def blacklist(clock):
    return TokenBlacklistService(clock=clock)


@pytest.fixture
def login_service(store, otp_service, token_service, blacklist, clock):
    return LoginService(
        store,
        CredentialGate(store),
        otp_service,
        token_service,
        blacklist,
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
