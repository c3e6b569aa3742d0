"""Pydantic models shared across stores, orchestrator, providers, and API.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Alias: the camelCase name a field uses on disk and over HTTP
  (for example `execution_time` is stored as `executionTime`).
- Literal: restricts a field to a fixed set of allowed string values.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ProjectType = Literal["API", "Web", "Terminal"]

# Per-test lifecycle: pending -> running -> passed | failed.
TestStatus = Literal["pending", "running", "passed", "failed"]
# Outcomes and aggregates only ever settle on a terminal state.
OutcomeStatus = Literal["passed", "failed"]


class CamelModel(BaseModel):
    """Base model that reads/writes camelCase keys but accepts snake_case too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class NewProject(CamelModel):
    """Request body for POST /projects."""

    name: str = Field(min_length=1)
    type: ProjectType
    legacy_path: str = Field(min_length=1)
    new_path: str = Field(min_length=1)


class Project(CamelModel):
    """A legacy-to-new migration project. Immutable except `last_opened`."""

    id: str
    name: str
    type: ProjectType
    legacy_path: str
    new_path: str
    created_at: datetime
    last_opened: datetime | None = None


class TestDefinition(CamelModel):
    """Full generated content for one test id."""

    __test__ = False

    id: str = Field(min_length=1)
    name: str
    description: str = ""
    full_code: str = ""


class TestRecord(CamelModel):
    """Lifecycle/status summary for one test id."""

    __test__ = False

    id: str
    name: str
    description: str = ""
    status: TestStatus = "pending"
    # Milliseconds.
    execution_time: int | None = None
    legacy_output: str | None = None
    new_output: str | None = None


class TestRecordPatch(CamelModel):
    """Partial update for a TestRecord; only explicitly set fields are merged."""

    __test__ = False

    status: TestStatus | None = None
    execution_time: int | None = None
    legacy_output: str | None = None
    new_output: str | None = None


class TestOutcome(CamelModel):
    """One result returned by the execution provider."""

    __test__ = False

    id: str
    status: OutcomeStatus
    execution_time: int = Field(default=0, ge=0)
    legacy_output: str | None = None
    new_output: str | None = None

    def to_patch(self) -> TestRecordPatch:
        # Absent outputs stay unset so they do not erase stored ones.
        return TestRecordPatch.model_validate(self.model_dump(exclude={"id"}, exclude_none=True))


class Execution(CamelModel):
    """Immutable aggregate snapshot of one full run."""

    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    project_name: str
    executed_at: datetime
    total_tests: int
    passed_tests: int
    failed_tests: int
    total_execution_time: int
    status: OutcomeStatus


class ExecutionHistory(CamelModel):
    """Per-project log, most recent execution first."""

    project_id: str
    executions: list[Execution] = Field(default_factory=list)


class ExecutionResult(Execution):
    """An Execution joined with the project's current test records."""

    test_results: list[TestRecord] = Field(default_factory=list)


class TestDetail(CamelModel):
    """Record plus (possibly missing) definition for one test id."""

    __test__ = False

    record: TestRecord
    definition: TestDefinition | None = None


class RunReport(CamelModel):
    """Response of a completed run-all flow."""

    execution: Execution
    tests: list[TestRecord] = Field(default_factory=list)
