"""FastAPI application wiring for the migration verifier.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Route/path operation: a function exposed over HTTP (for example, GET /health).
- response_model: Pydantic model used to validate/shape API responses.
- app.state: a place to store shared runtime objects (settings, orchestrator).

Route handlers are plain `def` functions, so FastAPI runs them on its worker
thread pool; the stores' per-project locks make overlapping requests safe.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .app.errors import ExecutionError, GenerationError, NoTestsError, StorageWriteError
from .app.models import (
    Execution,
    ExecutionResult,
    NewProject,
    Project,
    RunReport,
    TestDetail,
    TestRecord,
)
from .app.orchestrator import TestOrchestrator, build_orchestrator
from .app.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def create_app(
    *,
    settings_override: Settings | None = None,
    orchestrator: TestOrchestrator | None = None,
) -> FastAPI:
    """Application factory.

    Tests pass their own settings (temporary data dir) and/or a pre-wired
    orchestrator with fake providers.
    """
    settings = settings_override or get_settings()
    # Fail fast on bad provider modes before serving any request.
    orchestrator = orchestrator or build_orchestrator(settings)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    @app.exception_handler(StorageWriteError)
    def storage_write_failed(_: Request, exc: StorageWriteError) -> JSONResponse:
        logger.warning("api event=storage_write_failed reason=%s", exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(GenerationError)
    def generation_failed(_: Request, exc: GenerationError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(ExecutionError)
    def execution_failed(_: Request, exc: ExecutionError) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={
                "detail": str(exc),
                "tests": [record.to_json_dict() for record in exc.tests],
            },
        )

    @app.exception_handler(NoTestsError)
    def no_tests(_: Request, exc: NoTestsError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/projects", response_model=list[Project])
    def list_projects() -> list[Project]:
        return orchestrator.projects.list_all()

    @app.post("/projects", response_model=Project, status_code=201)
    def create_project(payload: NewProject) -> Project:
        return orchestrator.projects.create(payload)

    @app.get("/projects/{project_id}", response_model=Project)
    def open_project(project_id: str) -> Project:
        project = orchestrator.open_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return project

    @app.delete("/projects/{project_id}", status_code=204)
    def delete_project(project_id: str) -> None:
        if not orchestrator.delete_project(project_id):
            raise HTTPException(status_code=404, detail="Project not found")

    @app.get("/projects/{project_id}/tests", response_model=list[TestRecord])
    def list_tests(project_id: str) -> list[TestRecord]:
        _require_project(orchestrator, project_id)
        return orchestrator.list_tests(project_id)

    @app.delete("/projects/{project_id}/tests", status_code=204)
    def delete_all_tests(project_id: str) -> None:
        _require_project(orchestrator, project_id)
        orchestrator.delete_all_tests(project_id)

    @app.post("/projects/{project_id}/tests/generate", response_model=list[TestRecord])
    def generate_tests(project_id: str) -> list[TestRecord]:
        records = orchestrator.generate(project_id)
        if records is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return records

    @app.post("/projects/{project_id}/tests/run", response_model=RunReport)
    def run_tests(project_id: str) -> RunReport:
        report = orchestrator.run_all(project_id)
        if report is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return report

    @app.get("/projects/{project_id}/tests/{test_id}", response_model=TestDetail)
    def get_test(project_id: str, test_id: str) -> TestDetail:
        detail = orchestrator.get_test(project_id, test_id)
        if detail is None:
            raise HTTPException(status_code=404, detail="Test not found")
        return detail

    @app.delete("/projects/{project_id}/tests/{test_id}", status_code=204)
    def delete_test(project_id: str, test_id: str) -> None:
        if not orchestrator.delete_test(project_id, test_id):
            raise HTTPException(status_code=404, detail="Test not found")

    @app.post("/projects/{project_id}/tests/{test_id}/run", response_model=TestRecord)
    def run_single_test(project_id: str, test_id: str) -> TestRecord:
        record = orchestrator.run_single(project_id, test_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Test not found")
        return record

    @app.get("/projects/{project_id}/executions", response_model=list[Execution])
    def list_executions(project_id: str) -> list[Execution]:
        _require_project(orchestrator, project_id)
        return orchestrator.list_executions(project_id)

    @app.delete("/projects/{project_id}/executions", status_code=204)
    def delete_all_executions(project_id: str) -> None:
        _require_project(orchestrator, project_id)
        orchestrator.delete_all_executions(project_id)

    @app.get(
        "/projects/{project_id}/executions/{execution_id}",
        response_model=ExecutionResult,
    )
    def get_execution(project_id: str, execution_id: str) -> ExecutionResult:
        result = orchestrator.get_execution_result(project_id, execution_id)
        if result is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        return result

    return app


def _require_project(orchestrator: TestOrchestrator, project_id: str) -> Project:
    project = orchestrator.projects.get(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


# Module-level app for `uvicorn migration_verifier.main:app`.
app = create_app()
