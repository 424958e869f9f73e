import pytest

from vaulty_usage.config import ENV_PREFIX, Settings
from vaulty_usage.db import SqliteBackend
from vaulty_usage.memory import MemoryBackend


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the caller's VAULTY_USAGE_* settings out of the tests."""
    for name in Settings.model_fields:
        monkeypatch.delenv(ENV_PREFIX + name.upper(), raising=False)


@pytest.fixture(params=["sqlite", "memory"])
def backend(request):
    """Each storage implementation, so contract tests run against both."""
    if request.param == "sqlite":
        store = SqliteBackend.open_in_memory()
    else:
        store = MemoryBackend()
    yield store
    store.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(backend="memory", timezone="UTC")
