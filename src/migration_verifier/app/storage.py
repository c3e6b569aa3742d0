"""JSON file storage for projects, test records, and test definitions.

Beginner terms:
- Store: a small class that owns one kind of JSON file under `data_dir`.
- Read-modify-write: read the whole file, change it in memory, write it back.
- Project lock: a re-entrant lock per project id; every read-modify-write for
  that project runs while holding it, so overlapping requests cannot lose updates.
- Recovered read: a missing/empty/corrupt file is logged and treated as empty.

File layout under `data_dir`:
- projects.json               -> array of Project
- tests-{projectId}.json      -> object: test id -> TestRecord
- test-codes-{projectId}.json -> object: test id -> TestDefinition
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import StorageWriteError
from .models import NewProject, Project, TestDefinition, TestRecord, TestRecordPatch

logger = logging.getLogger(__name__)

PROJECTS_FILE = "projects.json"
# Lock key for the shared projects file (never a valid uuid project id).
PROJECTS_LOCK_KEY = "__projects__"


class ProjectLocks:
    """Registry of per-project re-entrant locks shared by every store."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def for_project(self, project_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[project_id] = lock
            return lock


def read_json(path: Path) -> Any | None:
    """Parse a JSON file; return None when it is missing, empty, or unreadable."""
    if not path.exists():
        return None
    try:
        raw = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        logger.warning("storage event=corrupt_file file=%s reason=%s", path.name, exc)
        return None
    except OSError as exc:
        logger.warning("storage event=read_failed file=%s reason=%s", path.name, exc)
        return None
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("storage event=corrupt_file file=%s reason=%s", path.name, exc)
        return None


def write_json(path: Path, payload: Any) -> None:
    """Overwrite the whole file with `payload`; raise StorageWriteError on OS failure."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    except OSError as exc:
        raise StorageWriteError(f"Could not write {path.name}: {exc}") from exc


def remove_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise StorageWriteError(f"Could not remove {path.name}: {exc}") from exc


class ProjectFileStore:
    """Shared plumbing for stores that keep one file per project."""

    filename_template = ""

    def __init__(self, data_dir: Path | str, *, locks: ProjectLocks | None = None) -> None:
        self.data_dir = Path(data_dir)
        self.locks = locks or ProjectLocks()

    def path_for(self, project_id: str) -> Path:
        return self.data_dir / self.filename_template.format(project_id=project_id)

    def delete_all(self, project_id: str) -> None:
        """Remove the entire per-project file (no-op when it does not exist)."""
        with self.locks.for_project(project_id):
            remove_file(self.path_for(project_id))

    def _read_mapping(self, project_id: str) -> dict[str, Any]:
        parsed = read_json(self.path_for(project_id))
        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            logger.warning(
                "storage event=unexpected_shape file=%s expected=object",
                self.path_for(project_id).name,
            )
            return {}
        return parsed


class ProjectStore:
    """Keyed collection of Project records in one shared `projects.json`."""

    def __init__(self, data_dir: Path | str, *, locks: ProjectLocks | None = None) -> None:
        self.data_dir = Path(data_dir)
        self.locks = locks or ProjectLocks()

    @property
    def path(self) -> Path:
        return self.data_dir / PROJECTS_FILE

    def list_all(self) -> list[Project]:
        with self.locks.for_project(PROJECTS_LOCK_KEY):
            return self._load()

    def get(self, project_id: str) -> Project | None:
        for project in self.list_all():
            if project.id == project_id:
                return project
        return None

    def create(self, data: NewProject) -> Project:
        project = Project(
            id=str(uuid.uuid4()),
            name=data.name,
            type=data.type,
            legacy_path=data.legacy_path,
            new_path=data.new_path,
            created_at=datetime.now(tz=UTC),
        )
        with self.locks.for_project(PROJECTS_LOCK_KEY):
            projects = self._load()
            projects.append(project)
            self._save(projects)
        logger.info("project event=created project_id=%s type=%s", project.id, project.type)
        return project

    def touch(self, project_id: str) -> Project | None:
        """Stamp `last_opened` with the current time; None if the project is unknown."""
        with self.locks.for_project(PROJECTS_LOCK_KEY):
            projects = self._load()
            for index, project in enumerate(projects):
                if project.id != project_id:
                    continue
                updated = project.model_copy(update={"last_opened": datetime.now(tz=UTC)})
                projects[index] = updated
                self._save(projects)
                return updated
        return None

    def delete(self, project_id: str) -> bool:
        with self.locks.for_project(PROJECTS_LOCK_KEY):
            projects = self._load()
            remaining = [project for project in projects if project.id != project_id]
            if len(remaining) == len(projects):
                return False
            self._save(remaining)
        return True

    def _load(self) -> list[Project]:
        parsed = read_json(self.path)
        if parsed is None:
            return []
        if not isinstance(parsed, list):
            logger.warning("storage event=unexpected_shape file=%s expected=array", self.path.name)
            return []
        projects: list[Project] = []
        for item in parsed:
            try:
                projects.append(Project.model_validate(item))
            except ValidationError as exc:
                logger.warning("storage event=invalid_project file=%s reason=%s", self.path.name, exc)
        return projects

    def _save(self, projects: list[Project]) -> None:
        write_json(self.path, [project.to_json_dict() for project in projects])


class TestRecordStore(ProjectFileStore):
    """Per-project map of test id -> TestRecord (status, timing, outputs)."""

    __test__ = False
    filename_template = "tests-{project_id}.json"

    def upsert_from_definitions(self, project_id: str, definitions: list[TestDefinition]) -> None:
        """Insert a pending record for every definition id not already present.

        Existing ids are left untouched so prior run results survive regeneration.
        """
        with self.locks.for_project(project_id):
            records = self._load(project_id)
            inserted = 0
            for definition in definitions:
                if definition.id in records:
                    continue
                records[definition.id] = TestRecord(
                    id=definition.id,
                    name=definition.name,
                    description=definition.description,
                    status="pending",
                )
                inserted += 1
            self._save(project_id, records)
        logger.info(
            "test_records event=merged project_id=%s inserted=%d kept=%d",
            project_id,
            inserted,
            len(records) - inserted,
        )

    def get_all(self, project_id: str) -> list[TestRecord]:
        """All records for a project; callers must not rely on ordering."""
        with self.locks.for_project(project_id):
            return list(self._load(project_id).values())

    def get_by_id(self, project_id: str, test_id: str) -> TestRecord | None:
        with self.locks.for_project(project_id):
            return self._load(project_id).get(test_id)

    def patch(self, project_id: str, test_id: str, partial: TestRecordPatch) -> TestRecord | None:
        """Merge only the explicitly set fields of `partial` into an existing record.

        Unknown ids are a logged no-op (records are never created here).
        """
        changes = partial.model_dump(exclude_unset=True)
        with self.locks.for_project(project_id):
            records = self._load(project_id)
            current = records.get(test_id)
            if current is None:
                logger.warning(
                    "test_records event=patch_skipped project_id=%s test_id=%s reason=not_found",
                    project_id,
                    test_id,
                )
                return None
            # None never clears a stored value; status in particular cannot revert.
            changes = {key: value for key, value in changes.items() if value is not None}
            updated = current.model_copy(update=changes)
            records[test_id] = updated
            self._save(project_id, records)
        return updated

    def put_all(self, project_id: str, records: list[TestRecord]) -> None:
        """Overwrite the file with exactly `records`."""
        with self.locks.for_project(project_id):
            self._save(project_id, {record.id: record for record in records})

    def delete(self, project_id: str, test_id: str) -> bool:
        with self.locks.for_project(project_id):
            records = self._load(project_id)
            if records.pop(test_id, None) is None:
                return False
            self._save(project_id, records)
        return True

    def _load(self, project_id: str) -> dict[str, TestRecord]:
        records: dict[str, TestRecord] = {}
        for test_id, item in self._read_mapping(project_id).items():
            try:
                records[test_id] = TestRecord.model_validate(item)
            except ValidationError as exc:
                logger.warning(
                    "storage event=invalid_record project_id=%s test_id=%s reason=%s",
                    project_id,
                    test_id,
                    exc,
                )
        return records

    def _save(self, project_id: str, records: dict[str, TestRecord]) -> None:
        payload = {test_id: record.to_json_dict() for test_id, record in records.items()}
        write_json(self.path_for(project_id), payload)


class TestDefinitionStore(ProjectFileStore):
    """Per-project map of test id -> TestDefinition (generated code blob)."""

    __test__ = False
    filename_template = "test-codes-{project_id}.json"

    def replace_all(self, project_id: str, definitions: list[TestDefinition]) -> None:
        """Overwrite the whole definition file with the supplied definitions."""
        with self.locks.for_project(project_id):
            payload = {definition.id: definition.to_json_dict() for definition in definitions}
            write_json(self.path_for(project_id), payload)
        logger.info(
            "test_definitions event=replaced project_id=%s count=%d",
            project_id,
            len(definitions),
        )

    def get_all(self, project_id: str) -> list[TestDefinition]:
        with self.locks.for_project(project_id):
            return list(self._load(project_id).values())

    def get_by_id(self, project_id: str, test_id: str) -> TestDefinition | None:
        with self.locks.for_project(project_id):
            return self._load(project_id).get(test_id)

    def delete(self, project_id: str, test_id: str) -> bool:
        with self.locks.for_project(project_id):
            definitions = self._load(project_id)
            if definitions.pop(test_id, None) is None:
                return False
            write_json(
                self.path_for(project_id),
                {key: value.to_json_dict() for key, value in definitions.items()},
            )
        return True

    def _load(self, project_id: str) -> dict[str, TestDefinition]:
        definitions: dict[str, TestDefinition] = {}
        for test_id, item in self._read_mapping(project_id).items():
            try:
                definitions[test_id] = TestDefinition.model_validate(item)
            except ValidationError as exc:
                logger.warning(
                    "storage event=invalid_definition project_id=%s test_id=%s reason=%s",
                    project_id,
                    test_id,
                    exc,
                )
        return definitions
