import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="offgrid_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from offgrid_auth.config import reset_settings_cache  # noqa: E402
from offgrid_auth.service.audit import AuditTrail  # noqa: E402
from offgrid_auth.service.credentials import (  # noqa: E402
    Argon2PasswordHasher,
    CredentialStore,
)
from offgrid_auth.service.devices import DeviceRegistry  # noqa: E402
from offgrid_auth.service.keys import SigningKeys  # noqa: E402
from offgrid_auth.service.ledger import RefreshTokenLedger  # noqa: E402
from offgrid_auth.service.sessions import SessionManager  # noqa: E402
from offgrid_auth.service.tokens import TokenIssuer  # noqa: E402
from offgrid_auth.storage.memory import MemoryStore  # noqa: E402
from offgrid_auth.storage.models import utcnow  # noqa: E402

ISSUER = "offgrid-auth"
AUDIENCE = "offgrid-clients"


class MutableClock:
    """Wall clock that tests can push forward."""

    def __init__(self) -> None:
        self.offset = timedelta()

    def __call__(self) -> datetime:
        return utcnow() + self.offset

    def advance(self, **kwargs) -> None:
        self.offset += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture(scope="session")
def signing_keys():
    """One RSA pair for the whole run; generation is slow."""
    return SigningKeys.generate("RS256")


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hasher():
    # Minimal argon2 cost keeps the suite fast.
    return Argon2PasswordHasher(time_cost=1, memory_cost=1024)


@pytest.fixture
def issuer(signing_keys, clock):
    return TokenIssuer(
        signing_keys,
        issuer=ISSUER,
        audience=AUDIENCE,
        access_ttl="15m",
        refresh_ttl="30d",
        clock=clock,
    )


@pytest.fixture
def ledger(memory_store, clock):
    return RefreshTokenLedger(memory_store, clock=clock)


@pytest.fixture
def make_manager(memory_store, hasher, issuer, ledger, clock):
    """Factory so tests can flip configuration points per case."""

    def _make(**kwargs) -> SessionManager:
        return SessionManager(
            store=memory_store,
            credentials=CredentialStore(memory_store, hasher),
            devices=DeviceRegistry(memory_store, clock=clock),
            issuer=issuer,
            ledger=ledger,
            audit=AuditTrail(memory_store, clock=clock),
            **kwargs,
        )

    return _make


@pytest.fixture
def manager(make_manager):
    return make_manager()


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
