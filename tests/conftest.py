import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment defaults must exist before municipio_auth modules read them
_test_tmp_dir = tempfile.mkdtemp(prefix="municipio_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from municipio_auth.config import Settings, reset_settings_cache  # noqa: E402
from municipio_auth.service.auth import SessionLifecycleManager  # noqa: E402
from municipio_auth.service.passkeys import PasskeyCredentialManager  # noqa: E402
from municipio_auth.service.passwords import Argon2PasswordVerifier  # noqa: E402
from municipio_auth.service.roles import RoleResolver  # noqa: E402
from municipio_auth.service.tokens import TokenIssuer  # noqa: E402
from municipio_auth.storage.memory import MemoryCache, MemoryStore  # noqa: E402
from municipio_auth.storage.models import GrantRole  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
STAFF_PASSWORD = "Senha-Forte-123!"
CITIZEN_PASSWORD = "Cidadao-Senha-456!"


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        operation_timeout_seconds=5.0,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def passwords():
    # Cheap parameters; the production defaults are exercised in test_passwords
    return Argon2PasswordVerifier(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def tokens(settings):
    return TokenIssuer.from_settings(settings)


@pytest.fixture
def passkeys(memory_store, cache):
    return PasskeyCredentialManager(memory_store, cache)


@pytest.fixture
def sessions(memory_store, cache, tokens, passwords, passkeys):
    return SessionLifecycleManager(
        memory_store,
        cache,
        tokens,
        passwords,
        RoleResolver(memory_store),
        passkeys,
        operation_timeout=5.0,
    )


@pytest.fixture
def staff_user(memory_store, passwords):
    """Active staff member holding a SECRETARIO grant."""
    user = memory_store.create_staff_user(
        "Maria Souza", "Maria@Prefeitura.gov.br", passwords.hash(STAFF_PASSWORD)
    )
    memory_store.add_role_grant(
        user.id,
        GrantRole.SECRETARIO,
        secretaria_name="Saude",
        secretaria_slug="saude",
    )
    return user


@pytest.fixture
def citizen(memory_store, passwords):
    return memory_store.create_citizen(
        "Joao Lima", "joao@example.com", passwords.hash(CITIZEN_PASSWORD)
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
