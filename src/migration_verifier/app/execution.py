"""Execution providers: run a project's tests and report per-test outcomes."""

from __future__ import annotations

import json
import logging
import random
from typing import Protocol

from .models import TestDefinition, TestOutcome
from .storage import TestDefinitionStore

logger = logging.getLogger(__name__)


class ExecutionProvider(Protocol):
    def execute_all(self, project_id: str) -> list[TestOutcome]: ...

    def execute_one(self, project_id: str, test_id: str) -> TestOutcome: ...


class SimulatedExecutionProvider:
    """Seedable stand-in for real legacy/new execution.

    Outcomes are drawn per definition: passed three times as often as failed,
    100-599 ms per test, and JSON outputs describing each side.
    """

    def __init__(self, definitions: TestDefinitionStore, *, seed: int | None = None) -> None:
        self.definitions = definitions
        self._rng = random.Random(seed)

    def execute_all(self, project_id: str) -> list[TestOutcome]:
        definitions = self.definitions.get_all(project_id)
        outcomes = [self._simulate(definition) for definition in definitions]
        logger.info(
            "simulated_execution event=completed project_id=%s tests=%d failed=%d",
            project_id,
            len(outcomes),
            sum(1 for outcome in outcomes if outcome.status == "failed"),
        )
        return outcomes

    def execute_one(self, project_id: str, test_id: str) -> TestOutcome:
        definition = self.definitions.get_by_id(project_id, test_id)
        if definition is None:
            raise ValueError(f"No definition for test {test_id}")
        return self._simulate(definition)

    def _simulate(self, definition: TestDefinition) -> TestOutcome:
        status = self._rng.choice(("passed", "failed", "passed", "passed"))
        result = "success" if status == "passed" else "error"
        return TestOutcome(
            id=definition.id,
            status=status,
            execution_time=self._rng.randint(100, 599),
            legacy_output=json.dumps({"result": result, "test": definition.name}),
            new_output=json.dumps({"result": result, "test": definition.name, "improved": True}),
        )
