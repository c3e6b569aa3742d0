from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from migration_verifier.app.models import NewProject, Project, TestDefinition, TestOutcome
from migration_verifier.app.orchestrator import TestOrchestrator, build_orchestrator
from migration_verifier.app.settings import Settings


def make_definition(test_id: str, *, code: str = "v1") -> TestDefinition:
    return TestDefinition(
        id=test_id,
        name=f"Test {test_id}",
        description=f"Checks {test_id}",
        full_code=f"# {test_id} {code}",
    )


class FakeGenerator:
    """Test-only generation provider returning queued batches in order."""

    def __init__(self) -> None:
        self.batches: list[list[TestDefinition] | Exception] = []
        self.calls: list[tuple[str, str]] = []
        self.delay_s = 0.0

    def generate(self, project_id: str, project_type: str) -> list[TestDefinition]:
        self.calls.append((project_id, project_type))
        if self.delay_s:
            time.sleep(self.delay_s)
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


class FakeExecutor:
    """Test-only execution provider with scripted outcomes."""

    def __init__(self) -> None:
        self.outcomes: list[TestOutcome] = []
        self.single: dict[str, TestOutcome] = {}
        self.error: Exception | None = None
        self.delay_s = 0.0
        # Set when a call starts; the call then blocks until `release` is set.
        self.started = threading.Event()
        self.release: threading.Event | None = None

    def execute_all(self, project_id: str) -> list[TestOutcome]:
        self._wait()
        if self.error is not None:
            raise self.error
        return list(self.outcomes)

    def execute_one(self, project_id: str, test_id: str) -> TestOutcome:
        self._wait()
        if self.error is not None:
            raise self.error
        return self.single[test_id]

    def _wait(self) -> None:
        self.started.set()
        if self.release is not None:
            self.release.wait(timeout=5)
        if self.delay_s:
            time.sleep(self.delay_s)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        data_dir=tmp_path / "data",
        generation_timeout_s=2.0,
        execution_timeout_s=2.0,
    )


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def orchestrator(
    settings: Settings, generator: FakeGenerator, executor: FakeExecutor
) -> TestOrchestrator:
    return build_orchestrator(settings, generator=generator, executor=executor)


@pytest.fixture
def project(orchestrator: TestOrchestrator) -> Project:
    return orchestrator.projects.create(
        NewProject(name="Billing", type="API", legacy_path="/legacy", new_path="/new")
    )


@pytest.fixture
def client(settings: Settings, orchestrator: TestOrchestrator) -> Iterator[TestClient]:
    from migration_verifier.main import create_app

    app = create_app(settings_override=settings, orchestrator=orchestrator)
    with TestClient(app) as test_client:
        yield test_client
