import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="seqdash_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from seqdash.config import Settings  # noqa: E402
from seqdash.service.auth import AuthService  # noqa: E402
from seqdash.service.backup_codes import BackupCodeManager  # noqa: E402
from seqdash.service.credentials import PasswordService  # noqa: E402
from seqdash.service.revocation import SessionRevocationService  # noqa: E402
from seqdash.service.runtime import reset_runtime_for_tests  # noqa: E402
from seqdash.service.sessions import SessionService  # noqa: E402
from seqdash.service.tokens import TokenCodec  # noqa: E402
from seqdash.service.totp import TOTPEngine  # noqa: E402
from seqdash.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        totp_encryption_key="unit-test-totp-key",
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), totp_encryption_key="unit-test-totp-key")


@pytest.fixture(scope="session")
def passwords():
    # argon2 defaults are slow; one hasher for the whole run
    return PasswordService()


@pytest.fixture
def totp():
    return TOTPEngine()


@pytest.fixture
def codec(settings):
    return TokenCodec(
        settings.jwt_secret, issuer=settings.jwt_issuer, audience=settings.jwt_audience
    )


@pytest.fixture
def session_service(memory_store, codec, settings):
    from datetime import timedelta

    return SessionService(
        memory_store,
        codec,
        session_ttl=timedelta(minutes=settings.session_ttl_minutes),
        pending_ttl=timedelta(minutes=settings.pending_login_ttl_minutes),
    )


@pytest.fixture
def revocation(memory_store):
    return SessionRevocationService(memory_store)


@pytest.fixture
def auth_service(memory_store, settings, passwords, totp, revocation):
    return AuthService(
        memory_store,
        settings,
        passwords=passwords,
        totp=totp,
        backup_codes=BackupCodeManager(memory_store),
        revocation=revocation,
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
