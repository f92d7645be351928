import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="formvault_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REALM_STRING", "formvault-test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from formvault.service.runtime import reset_runtime_for_tests  # noqa: E402
from formvault.storage.datastore import DAEMON_PRINCIPAL  # noqa: E402
from formvault.storage.memory import MemoryDatastore  # noqa: E402
from formvault.storage.relation import RelationRegistry  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # each test gets its own state file so memory datastores start empty
    monkeypatch.setenv("DATA_ROOT", str(tmp_path / "runtime"))
    for name in ("SUPER_USER_EMAIL", "SUPER_USER_USERNAME"):
        monkeypatch.delenv(name, raising=False)
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def datastore():
    return MemoryDatastore()


@pytest.fixture
def registry(datastore):
    return RelationRegistry(datastore, DAEMON_PRINCIPAL)

