import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything imports brewbean.config
_test_tmp_dir = tempfile.mkdtemp(prefix="brewbean_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Per-process rate limits; Redis behaviour is covered with fakeredis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from brewbean.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh state directory per test keeps the JSON-backed store isolated
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    monkeypatch.undo()
    reset_runtime_for_tests()


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing emails instead of logging them."""
    from brewbean.service.runtime import get_runtime

    sent = []
    email = get_runtime().email

    def _send_otp(to_email, otp, name="User"):
        sent.append({"kind": "otp", "to": to_email, "otp": otp, "name": name})
        return True

    def _send_confirmation(to_email, name="User"):
        sent.append({"kind": "reset_confirmation", "to": to_email, "name": name})
        return True

    monkeypatch.setattr(email, "send_otp_email", _send_otp)
    monkeypatch.setattr(email, "send_password_reset_confirmation", _send_confirmation)
    return sent


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
