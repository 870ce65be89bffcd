import asyncio
import inspect
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

# Configure the environment before any import that might build settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
# Local token buckets; tests never need a live Redis
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

PASSWORD = "CorrectHorse42"


@dataclass
class RecordingMailer:
    """Stands in for EmailService and keeps every token it was asked to send."""

    deliver: bool = True
    verifications: List[Tuple[str, str]] = field(default_factory=list)
    resets: List[Tuple[str, str]] = field(default_factory=list)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        self.verifications.append((to_email, token))
        return self.deliver

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.resets.append((to_email, token))
        return self.deliver

    def last_verification_token(self, email: str) -> str:
        return [t for to, t in self.verifications if to == email][-1]

    def last_reset_token(self, email: str) -> str:
        return [t for to, t in self.resets if to == email][-1]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh state directory per test gives every test an empty store
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def mailer():
    recorder = RecordingMailer()
    get_runtime().accounts.email = recorder
    return recorder


@pytest.fixture
def client(mailer):
    """Create a test client for the API."""
    from fastapi.testclient import TestClient

    from warden import app as app_module

    return TestClient(app_module.app)


def register_and_verify(client, mailer, email: str, *, name: str = "Test User", password: str = PASSWORD):
    """Register through the API and follow the emailed verification link."""
    response = client.post(
        "/auth/register", json={"name": name, "email": email, "password": password}
    )
    assert response.status_code == 201, response.text
    token = mailer.last_verification_token(email)
    verified = client.get("/auth/verify-email", params={"token": token})
    assert verified.status_code == 200, verified.text
    return response.json()["data"]["user"]


def login(client, email: str, password: str = PASSWORD) -> dict:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


@pytest.fixture
def user(client, mailer):
    """A verified regular account with auth headers."""
    account = register_and_verify(client, mailer, "alice@example.com", name="Alice")
    return {"account": account, "headers": login(client, "alice@example.com")}


@pytest.fixture
def admin(client, mailer):
    """A verified account promoted to admin directly in the store."""
    account = register_and_verify(client, mailer, "root@example.com", name="Root")
    get_runtime().store.update_roles(account["id"], ["user", "admin"])
    return {"account": account, "headers": login(client, "root@example.com")}


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
