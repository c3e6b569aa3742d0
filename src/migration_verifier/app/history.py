"""Bounded, most-recent-first execution history per project.

File: executions-{projectId}.json -> {"projectId": ..., "executions": [...]}.
Appending prepends the new Execution and drops whatever falls past the cap
(oldest first).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .models import Execution, ExecutionHistory, TestOutcome
from .storage import ProjectFileStore, ProjectLocks, read_json, write_json

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


def build_execution(
    project_id: str,
    project_name: str,
    outcomes: Iterable[TestOutcome],
    *,
    executed_at: datetime | None = None,
) -> Execution:
    """Aggregate one batch of outcomes into an Execution snapshot."""
    batch = list(outcomes)
    passed = sum(1 for outcome in batch if outcome.status == "passed")
    failed = sum(1 for outcome in batch if outcome.status == "failed")
    return Execution(
        id=str(uuid.uuid4()),
        project_id=project_id,
        project_name=project_name,
        executed_at=executed_at or datetime.now(tz=UTC),
        total_tests=len(batch),
        passed_tests=passed,
        failed_tests=failed,
        total_execution_time=sum(outcome.execution_time for outcome in batch),
        status="failed" if failed > 0 else "passed",
    )


class ExecutionHistoryStore(ProjectFileStore):
    filename_template = "executions-{project_id}.json"

    def __init__(
        self,
        data_dir: Path | str,
        *,
        locks: ProjectLocks | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        super().__init__(data_dir, locks=locks)
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit

    def append(
        self,
        project_id: str,
        project_name: str,
        outcomes: Iterable[TestOutcome],
    ) -> Execution:
        execution = build_execution(project_id, project_name, outcomes)
        with self.locks.for_project(project_id):
            history = self._load(project_id)
            executions = [execution, *history.executions]
            evicted = max(0, len(executions) - self.limit)
            history = ExecutionHistory(project_id=project_id, executions=executions[: self.limit])
            write_json(self.path_for(project_id), history.to_json_dict())
        logger.info(
            "execution_history event=appended project_id=%s execution_id=%s status=%s "
            "total=%d passed=%d failed=%d evicted=%d",
            project_id,
            execution.id,
            execution.status,
            execution.total_tests,
            execution.passed_tests,
            execution.failed_tests,
            evicted,
        )
        return execution

    def list_by_project(self, project_id: str) -> list[Execution]:
        with self.locks.for_project(project_id):
            return self._load(project_id).executions

    def get_by_id(self, project_id: str, execution_id: str) -> Execution | None:
        for execution in self.list_by_project(project_id):
            if execution.id == execution_id:
                return execution
        return None

    def _load(self, project_id: str) -> ExecutionHistory:
        path = self.path_for(project_id)
        parsed = read_json(path)
        if parsed is None:
            return ExecutionHistory(project_id=project_id)
        try:
            return ExecutionHistory.model_validate(parsed)
        except ValidationError as exc:
            logger.warning("storage event=invalid_history file=%s reason=%s", path.name, exc)
            return ExecutionHistory(project_id=project_id)
