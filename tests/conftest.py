import pytest

from src.config import PipelineConfig, ServerConfig
from src.local_cache import LocalCache
from src.models import DAY_MS
from src.partition_store import PartitionStore
from src.remote_store import MemoryRemoteStore
from src.server import create_app

# 2024-06-10T00:00:00Z
BASE_MS = 1_717_977_600_000


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = BASE_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance_days(self, days: float) -> None:
        self.now += int(days * DAY_MS)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def partitions():
    return PartitionStore(admin_actors=("admin",))


@pytest.fixture
def memory_store(partitions):
    return MemoryRemoteStore(partitions)


@pytest.fixture
def cache(tmp_path):
    local = LocalCache(str(tmp_path / "logs.db"))
    local.open()
    yield local
    local.close()


@pytest.fixture
def pipeline_config(tmp_path):
    """Fast-test defaults: small batches, long timers, no hooks."""
    return PipelineConfig(
        batch_size=3,
        flush_interval=60.0,
        periodic_sync_interval=3600.0,
        sweep_delay=3600.0,
        cache_path=str(tmp_path / "pipeline.db"),
        console_color=False,
        capture_unhandled=False,
    )


@pytest.fixture
def app(partitions):
    """Create a Flask test app."""
    application = create_app(ServerConfig(admin_actors=("admin",)), store=partitions)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()
