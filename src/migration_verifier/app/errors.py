"""Typed failures raised by stores and the orchestrator."""

from __future__ import annotations

from .models import TestRecord


class StorageWriteError(RuntimeError):
    """A store file could not be written or removed."""


class ProviderError(RuntimeError):
    """A generation/execution collaborator failed, timed out, or returned bad data."""


class GenerationError(ProviderError):
    """Generation failed; no store was modified."""


class ExecutionError(ProviderError):
    """Execution failed; persisted records were left untouched.

    `tests` is the blanket "all failed" view for presentation only.
    """

    def __init__(self, message: str, *, tests: list[TestRecord] | None = None) -> None:
        super().__init__(message)
        self.tests = tests or []


class NoTestsError(ValueError):
    """A run was requested for a project that has no recorded tests."""
