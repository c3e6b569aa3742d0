"""Test lifecycle orchestration.

Beginner terms:
- Collaborator: the generation or execution provider. It is called on a worker
  thread with a timeout and never while a project lock is held.
- Write-back phase: the store writes that follow a successful collaborator call.
  They run under the project lock so an overlapping run or delete cannot
  interleave with a half-applied update.
- Live view: the optimistic "running" copy of a project's records shown while a
  run is in flight. It is never written to disk.

Per-test states: pending -> running -> passed | failed. The only way back to
pending is a fresh generation inserting a brand-new id.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from typing import Any, TypeVar

from pydantic import TypeAdapter

from .errors import ExecutionError, GenerationError, NoTestsError
from .execution import ExecutionProvider, SimulatedExecutionProvider
from .generation import GenerationProvider, LLMGenerationProvider, TemplateGenerationProvider
from .history import ExecutionHistoryStore
from .llm import build_llm_adapter
from .models import (
    Execution,
    ExecutionResult,
    Project,
    RunReport,
    TestDefinition,
    TestDetail,
    TestOutcome,
    TestRecord,
)
from .settings import Settings
from .storage import ProjectLocks, ProjectStore, TestDefinitionStore, TestRecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
RecordsListener = Callable[[list[TestRecord]], None]

_definitions_adapter = TypeAdapter(list[TestDefinition])
_outcomes_adapter = TypeAdapter(list[TestOutcome])


class TestOrchestrator:
    """Coordinates generation and execution flows over the four stores."""

    __test__ = False

    def __init__(
        self,
        *,
        projects: ProjectStore,
        definitions: TestDefinitionStore,
        records: TestRecordStore,
        history: ExecutionHistoryStore,
        generator: GenerationProvider,
        executor: ExecutionProvider,
        locks: ProjectLocks | None = None,
        generation_timeout_s: float = 60.0,
        execution_timeout_s: float = 300.0,
    ) -> None:
        self.projects = projects
        self.definitions = definitions
        self.records = records
        self.history = history
        self.generator = generator
        self.executor = executor
        self.locks = locks or records.locks
        self.generation_timeout_s = generation_timeout_s
        self.execution_timeout_s = execution_timeout_s
        self._live_guard = threading.Lock()
        # project id -> run token -> test id -> running copy
        self._live: dict[str, dict[int, dict[str, TestRecord]]] = {}
        self._live_tokens = itertools.count()

    # Projects -----------------------------------------------------------

    def open_project(self, project_id: str) -> Project | None:
        """Return the project and stamp its `last_opened`."""
        return self.projects.touch(project_id)

    def delete_project(self, project_id: str) -> bool:
        """Delete the project and cascade to its records, definitions, and history."""
        with self.locks.for_project(project_id):
            deleted = self.projects.delete(project_id)
            self.records.delete_all(project_id)
            self.definitions.delete_all(project_id)
            self.history.delete_all(project_id)
        logger.info("project event=deleted project_id=%s existed=%s", project_id, deleted)
        return deleted

    # Tests --------------------------------------------------------------

    def list_tests(self, project_id: str) -> list[TestRecord]:
        """Stored records, overlaid with the live view while a run is in flight."""
        stored = self.records.get_all(project_id)
        live = self._live_view(project_id)
        return [live.get(record.id, record) for record in stored]

    def get_test(self, project_id: str, test_id: str) -> TestDetail | None:
        record = self.records.get_by_id(project_id, test_id)
        if record is None:
            return None
        record = self._live_view(project_id).get(test_id, record)
        return TestDetail(record=record, definition=self.definitions.get_by_id(project_id, test_id))

    def delete_test(self, project_id: str, test_id: str) -> bool:
        with self.locks.for_project(project_id):
            removed_record = self.records.delete(project_id, test_id)
            removed_definition = self.definitions.delete(project_id, test_id)
        return removed_record or removed_definition

    def delete_all_tests(self, project_id: str) -> None:
        with self.locks.for_project(project_id):
            self.records.delete_all(project_id)
            self.definitions.delete_all(project_id)
        logger.info("test_records event=deleted_all project_id=%s", project_id)

    # Executions ---------------------------------------------------------

    def list_executions(self, project_id: str) -> list[Execution]:
        return self.history.list_by_project(project_id)

    def get_execution_result(self, project_id: str, execution_id: str) -> ExecutionResult | None:
        """The execution plus the project's current test records."""
        execution = self.history.get_by_id(project_id, execution_id)
        if execution is None:
            return None
        return ExecutionResult(
            **execution.model_dump(),
            test_results=self.records.get_all(project_id),
        )

    def delete_all_executions(self, project_id: str) -> None:
        self.history.delete_all(project_id)

    # Flows --------------------------------------------------------------

    def generate(self, project_id: str) -> list[TestRecord] | None:
        """Generate definitions, replace the definition file, merge new records.

        Nothing is written unless the collaborator returns valid definitions.
        Returns None when the project is unknown or was deleted mid-generation.
        """
        project = self.projects.get(project_id)
        if project is None:
            return None

        logger.info("test_generation event=start project_id=%s type=%s", project_id, project.type)
        try:
            raw = self._call_collaborator(
                self.generator.generate,
                project_id,
                project.type,
                timeout_s=self.generation_timeout_s,
                label="generation",
            )
            definitions = _definitions_adapter.validate_python(raw, from_attributes=True)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "test_generation event=failed project_id=%s reason=%s", project_id, exc
            )
            raise GenerationError(f"Test generation failed: {exc}") from exc

        with self.locks.for_project(project_id):
            if self.projects.get(project_id) is None:
                logger.warning(
                    "test_generation event=discarded project_id=%s reason=project_deleted",
                    project_id,
                )
                return None
            self.definitions.replace_all(project_id, definitions)
            self.records.upsert_from_definitions(project_id, definitions)
            records = self.records.get_all(project_id)
        logger.info(
            "test_generation event=completed project_id=%s generated=%d records=%d",
            project_id,
            len(definitions),
            len(records),
        )
        return records

    def run_all(
        self, project_id: str, *, listener: RecordsListener | None = None
    ) -> RunReport | None:
        """Run every test, persist outcomes, and append one Execution to history.

        On collaborator failure persisted records stay untouched, nothing is
        appended, and ExecutionError carries the blanket "all failed" view.
        Returns None when the project is unknown or was deleted mid-run.
        """
        project = self.projects.get(project_id)
        if project is None:
            return None
        records = self.records.get_all(project_id)
        if not records:
            raise NoTestsError(f"Project {project_id} has no tests; generate tests first")

        logger.info("test_run event=start project_id=%s tests=%d", project_id, len(records))
        token = self._begin_live(project_id, records, listener)
        try:
            raw = self._call_collaborator(
                self.executor.execute_all,
                project_id,
                timeout_s=self.execution_timeout_s,
                label="execution",
            )
            outcomes = _outcomes_adapter.validate_python(raw, from_attributes=True)
        except Exception as exc:  # noqa: BLE001
            self._end_live(project_id, token)
            failed_view = _as_failed(records)
            if listener is not None:
                listener(failed_view)
            logger.warning("test_run event=failed project_id=%s reason=%s", project_id, exc)
            raise ExecutionError(f"Test execution failed: {exc}", tests=failed_view) from exc

        try:
            with self.locks.for_project(project_id):
                if self.projects.get(project_id) is None:
                    logger.warning(
                        "test_run event=discarded project_id=%s reason=project_deleted",
                        project_id,
                    )
                    return None
                known = {record.id for record in self.records.get_all(project_id)}
                applied = [outcome for outcome in outcomes if outcome.id in known]
                if len(applied) < len(outcomes):
                    logger.warning(
                        "test_run event=outcomes_skipped project_id=%s skipped=%d reason=unknown_id",
                        project_id,
                        len(outcomes) - len(applied),
                    )
                for outcome in applied:
                    self.records.patch(project_id, outcome.id, outcome.to_patch())
                execution = self.history.append(project_id, project.name, applied)
                updated = self.records.get_all(project_id)
        finally:
            self._end_live(project_id, token)

        if listener is not None:
            listener(updated)
        logger.info(
            "test_run event=completed project_id=%s execution_id=%s status=%s passed=%d failed=%d",
            project_id,
            execution.id,
            execution.status,
            execution.passed_tests,
            execution.failed_tests,
        )
        return RunReport(execution=execution, tests=updated)

    def run_single(
        self, project_id: str, test_id: str, *, listener: RecordsListener | None = None
    ) -> TestRecord | None:
        """Run one test and persist its outcome. Single runs add no history entry.

        Returns None when the project or the test id is unknown.
        """
        if self.projects.get(project_id) is None:
            return None
        record = self.records.get_by_id(project_id, test_id)
        if record is None:
            return None

        logger.info("test_run_single event=start project_id=%s test_id=%s", project_id, test_id)
        token = self._begin_live(project_id, [record], listener)
        try:
            raw = self._call_collaborator(
                self.executor.execute_one,
                project_id,
                test_id,
                timeout_s=self.execution_timeout_s,
                label="execution",
            )
            outcome = TestOutcome.model_validate(raw, from_attributes=True)
            if outcome.id != test_id:
                raise ValueError(f"outcome id {outcome.id!r} does not match {test_id!r}")
        except Exception as exc:  # noqa: BLE001
            self._end_live(project_id, token)
            failed_view = _as_failed([record])
            if listener is not None:
                listener(failed_view)
            logger.warning(
                "test_run_single event=failed project_id=%s test_id=%s reason=%s",
                project_id,
                test_id,
                exc,
            )
            raise ExecutionError(f"Test execution failed: {exc}", tests=failed_view) from exc

        try:
            updated = self.records.patch(project_id, test_id, outcome.to_patch())
        finally:
            self._end_live(project_id, token)

        if updated is not None and listener is not None:
            listener([updated])
        logger.info(
            "test_run_single event=completed project_id=%s test_id=%s status=%s",
            project_id,
            test_id,
            outcome.status,
        )
        return updated

    # Internals ----------------------------------------------------------

    def _begin_live(
        self,
        project_id: str,
        records: list[TestRecord],
        listener: RecordsListener | None,
    ) -> int:
        """Publish a run's "running" copies; return the token that owns them."""
        running = [
            record.model_copy(update={"status": "running", "execution_time": 0})
            for record in records
        ]
        with self._live_guard:
            token = next(self._live_tokens)
            self._live.setdefault(project_id, {})[token] = {
                record.id: record for record in running
            }
        if listener is not None:
            listener(running)
        return token

    def _end_live(self, project_id: str, token: int) -> None:
        with self._live_guard:
            runs = self._live.get(project_id, {})
            runs.pop(token, None)
            if not runs:
                self._live.pop(project_id, None)

    def _live_view(self, project_id: str) -> dict[str, TestRecord]:
        with self._live_guard:
            merged: dict[str, TestRecord] = {}
            for running in self._live.get(project_id, {}).values():
                merged.update(running)
            return merged

    @staticmethod
    def _call_collaborator(
        fn: Callable[..., T],
        *args: Any,
        timeout_s: float,
        label: str,
    ) -> T:
        """Call a collaborator on a worker thread; raise TimeoutError past `timeout_s`."""
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{label}-call")
        future = pool.submit(fn, *args)
        try:
            return future.result(timeout=timeout_s)
        except TimeoutError as exc:
            raise TimeoutError(f"{label} timed out after {timeout_s:.2f}s") from exc
        finally:
            # Do not wait for a stalled call; its result is discarded.
            pool.shutdown(wait=False, cancel_futures=True)


def _as_failed(records: list[TestRecord]) -> list[TestRecord]:
    return [record.model_copy(update={"status": "failed"}) for record in records]


def build_orchestrator(
    settings: Settings,
    *,
    generator: GenerationProvider | None = None,
    executor: ExecutionProvider | None = None,
) -> TestOrchestrator:
    """Wire stores and providers from settings. Explicit providers win over modes."""
    locks = ProjectLocks()
    projects = ProjectStore(settings.data_dir, locks=locks)
    definitions = TestDefinitionStore(settings.data_dir, locks=locks)
    records = TestRecordStore(settings.data_dir, locks=locks)
    history = ExecutionHistoryStore(settings.data_dir, locks=locks, limit=settings.history_limit)

    if generator is None:
        generator = _build_generator(settings, projects)
    if executor is None:
        executor = _build_executor(settings, definitions)

    return TestOrchestrator(
        projects=projects,
        definitions=definitions,
        records=records,
        history=history,
        generator=generator,
        executor=executor,
        locks=locks,
        generation_timeout_s=settings.generation_timeout_s,
        execution_timeout_s=settings.execution_timeout_s,
    )


def _build_generator(settings: Settings, projects: ProjectStore) -> GenerationProvider:
    mode = settings.generation_mode.lower()
    if mode == "template":
        return TemplateGenerationProvider()
    if mode == "llm":
        llm_adapter = build_llm_adapter(settings)
        if llm_adapter is None:
            raise RuntimeError(
                "LLM generation requested but no API key is configured. "
                "Set MIGRATION_VERIFIER_OPENAI_API_KEY or OPENAI_API_KEY."
            )
        return LLMGenerationProvider(
            llm_adapter=llm_adapter,
            projects=projects,
            timeout_s=settings.llm_timeout_s,
            max_chars=settings.source_max_chars,
        )
    raise RuntimeError(f"Unknown generation mode: {settings.generation_mode}")


def _build_executor(settings: Settings, definitions: TestDefinitionStore) -> ExecutionProvider:
    mode = settings.execution_mode.lower()
    if mode == "simulated":
        return SimulatedExecutionProvider(definitions, seed=settings.simulated_seed)
    raise RuntimeError(f"Unknown execution mode: {settings.execution_mode}")
