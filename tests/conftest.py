"""
Pytest fixtures for hlsync tests.
Provides storage directories, a SQLite database holding the owning tables,
and an orchestrator wired to a fake ffmpeg.
"""

import os
from pathlib import Path
from typing import AsyncGenerator

import pytest
from databases import Database

# Must be set BEFORE importing config
os.environ["HLSYNC_TEST_MODE"] = "1"

from store.owners import OwnerRepository  # noqa: E402
from store.processed_state import ProcessedStateStore  # noqa: E402
from tests.fixtures.owning_tables import OWNING_COLUMNS, create_tables  # noqa: E402
from tests.fixtures.sample_videos import FakeRunner  # noqa: E402
from worker.alerts import reset_metrics  # noqa: E402
from worker.encoder import RenditionEncoder  # noqa: E402
from worker.locator import AssetLocator  # noqa: E402
from worker.orchestrator import TranscodeOrchestrator, WorkerState  # noqa: E402
from worker.scanner import DatabaseScanner  # noqa: E402
from worker.stability import StabilityMonitor  # noqa: E402


async def no_sleep(_delay):
    return None


@pytest.fixture(autouse=True)
def reset_alert_metrics():
    """Reset alert counters around every test."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture(scope="function")
def test_storage(tmp_path: Path) -> dict:
    """Create test storage directories."""
    uploads_dir = tmp_path / "uploads"
    hls_dir = tmp_path / "hls"
    uploads_dir.mkdir(parents=True, exist_ok=True)
    hls_dir.mkdir(parents=True, exist_ok=True)
    return {
        "uploads": uploads_dir,
        "hls": hls_dir,
        "state_file": tmp_path / "processed_videos.json",
    }


@pytest.fixture(scope="function")
async def test_database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Fresh SQLite database with the owning tables for each test."""
    db_url = f"sqlite:///{tmp_path / 'test.db'}"
    create_tables(db_url)
    database = Database(db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def owners(test_database: Database) -> OwnerRepository:
    return OwnerRepository(test_database, OWNING_COLUMNS)


@pytest.fixture
def orchestrator(test_storage: dict, owners: OwnerRepository, fake_runner: FakeRunner) -> TranscodeOrchestrator:
    """Orchestrator over temp dirs with instant stability checks and no lookup backoff."""
    locator = AssetLocator(test_storage["uploads"], owners, lookup_attempts=2, lookup_backoff=0, sleep=no_sleep)
    return TranscodeOrchestrator(
        locator,
        RenditionEncoder(fake_runner),
        ProcessedStateStore(test_storage["state_file"]),
        stability=StabilityMonitor(poll_interval=0, max_wait=5, sleep=no_sleep),
        hls_dir=test_storage["hls"],
        pointer_prefix="/hls",
        requeue_backoff=0,
        state=WorkerState("test-worker"),
    )


@pytest.fixture
def scanner(orchestrator: TranscodeOrchestrator) -> DatabaseScanner:
    return DatabaseScanner(orchestrator, interval=0.01)
