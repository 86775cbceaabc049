from collections.abc import Generator
from pathlib import Path
import time

import pytest
from sqlalchemy.orm import Session, sessionmaker

from studentflow.config import Settings
from studentflow.database import build_session_factory
from studentflow.dispatcher import TaskDispatcher
from studentflow.pipeline import PipelineRunner
from studentflow.progress import ProgressRegistry
from studentflow.schemas import ProgressSnapshot
from studentflow.service import StudentDataService


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "storage" / "uploads").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="studentflow",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        storage_dir=str(temp_workspace / "storage"),
        upload_dir=str(temp_workspace / "storage" / "uploads"),
        max_workers=2,
        ingest_batch_size=1000,
        export_page_size=7,
        convert_score_offset=10,
        ingest_score_offset=5,
        progress_every_rows=0,
        max_batch_retries=1,
        retry_backoff_seconds=0,
        task_ttl_seconds=3600,
        eviction_interval_seconds=300,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def registry() -> ProgressRegistry:
    return ProgressRegistry()


@pytest.fixture()
def runner(test_settings: Settings, session_factory: sessionmaker[Session], registry: ProgressRegistry) -> PipelineRunner:
    return PipelineRunner(test_settings, session_factory, registry)


@pytest.fixture()
def dispatcher(runner: PipelineRunner) -> Generator[TaskDispatcher, None, None]:
    dispatcher = TaskDispatcher(runner, max_workers=2)
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture()
def service(
    test_settings: Settings,
    session_factory: sessionmaker[Session],
    registry: ProgressRegistry,
) -> Generator[StudentDataService, None, None]:
    service = StudentDataService(test_settings, session_factory, registry=registry, start_scheduler=False)
    yield service
    service.close()


WAIT_TIMEOUT_SECONDS = 30.0


def _wait_for_terminal(registry: ProgressRegistry, task_id: str, timeout: float = WAIT_TIMEOUT_SECONDS) -> ProgressSnapshot:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        snapshot = registry.lookup(task_id)
        if snapshot.status.is_terminal:
            return snapshot
        time.sleep(0.02)
    raise AssertionError(f"task {task_id} did not finish within {timeout}s")


@pytest.fixture()
def wait_for(registry: ProgressRegistry):
    return lambda task_id: _wait_for_terminal(registry, task_id)
