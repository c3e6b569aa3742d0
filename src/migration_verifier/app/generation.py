"""Generation providers: produce TestDefinitions for a project.

Two styles ship:
1) Template generation: fixed, per-project-type test templates. Ids are stable
   slugs, so regenerating hits the same ids and keeps their recorded results.
2) LLM-backed generation: the model reads legacy + new sources and proposes a
   suite; code then normalizes names and ids.

The orchestrator only depends on the `GenerationProvider` protocol.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from .llm import LLMAdapter
from .models import ProjectType, TestDefinition
from .storage import ProjectStore

logger = logging.getLogger(__name__)


class GenerationProvider(Protocol):
    def generate(self, project_id: str, project_type: ProjectType) -> list[TestDefinition]: ...


@dataclass(frozen=True)
class TestTemplate:
    __test__ = False

    name: str
    description: str
    full_code: str


COMMON_TEMPLATES = (
    TestTemplate(
        name="Login Authentication Test",
        description="Valid credentials log in, invalid credentials are rejected.",
        full_code=(
            "def test_login(client):\n"
            "    ok = client.post('/login', json={'email': 'user@test.com', 'password': 'password123'})\n"
            "    assert ok.status_code == 200 and 'token' in ok.json()\n"
            "    bad = client.post('/login', json={'email': 'user@test.com', 'password': 'wrong'})\n"
            "    assert bad.status_code == 401\n"
        ),
    ),
    TestTemplate(
        name="User Registration Test",
        description="New users are created and required fields are validated.",
        full_code=(
            "def test_registration(client):\n"
            "    user = {'name': 'Test User', 'email': 'test@example.com', 'password': 'password123'}\n"
            "    created = client.post('/register', json=user)\n"
            "    assert created.status_code == 201\n"
            "    assert client.post('/register', json={'email': ''}).status_code == 400\n"
        ),
    ),
    TestTemplate(
        name="Data Validation Test",
        description="Email format and password strength are validated the same way.",
        full_code=(
            "def test_validation(impl):\n"
            "    assert impl.validate_email('user@test.com')\n"
            "    assert not impl.validate_email('invalid-email')\n"
            "    assert not impl.validate_password('123456')\n"
        ),
    ),
)

TYPE_TEMPLATES: dict[str, tuple[TestTemplate, ...]] = {
    "API": (
        TestTemplate(
            name="API Response Test",
            description="List endpoints return the same response structure.",
            full_code=(
                "def test_products_shape(client):\n"
                "    response = client.get('/api/products')\n"
                "    assert response.status_code == 200\n"
                "    assert isinstance(response.json()['data'], list)\n"
            ),
        ),
        TestTemplate(
            name="CRUD Operations Test",
            description="Items can be created and read back by id.",
            full_code=(
                "def test_item_crud(client):\n"
                "    created = client.post('/api/items', json={'name': 'Test Item'}).json()\n"
                "    fetched = client.get(f\"/api/items/{created['id']}\").json()\n"
                "    assert fetched['name'] == 'Test Item'\n"
            ),
        ),
    ),
    "Web": (
        TestTemplate(
            name="Button Click Test",
            description="Clicking the primary button triggers its handler.",
            full_code=(
                "def test_button_click(page):\n"
                "    page.set_content('<button id=\"test-btn\">Click me</button>')\n"
                "    page.click('#test-btn')\n"
                "    assert page.evaluate('window.clicked') is True\n"
            ),
        ),
        TestTemplate(
            name="Form Submit Test",
            description="Required form fields block submission until filled.",
            full_code=(
                "def test_form_validation(page):\n"
                "    page.fill('input[name=email]', '')\n"
                "    assert not page.eval_on_selector('form', 'f => f.checkValidity()')\n"
            ),
        ),
    ),
    "Terminal": (
        TestTemplate(
            name="Usage Message Test",
            description="Running without arguments prints the same usage text.",
            full_code=(
                "def test_usage(run):\n"
                "    result = run([])\n"
                "    assert 'usage' in result.output.lower()\n"
            ),
        ),
        TestTemplate(
            name="Exit Code Test",
            description="Invalid input exits with the same non-zero status.",
            full_code=(
                "def test_invalid_input(run):\n"
                "    result = run(['2', '+'])\n"
                "    assert result.exit_code != 0\n"
            ),
        ),
    ),
}


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "test"


class TemplateGenerationProvider:
    """Deterministic provider built from the templates above."""

    def generate(self, project_id: str, project_type: ProjectType) -> list[TestDefinition]:
        templates = COMMON_TEMPLATES + TYPE_TEMPLATES.get(project_type, ())
        prefix = project_type.lower()
        definitions = [
            TestDefinition(
                id=f"{prefix}-{slugify(template.name)}",
                name=template.name,
                description=template.description,
                full_code=template.full_code,
            )
            for template in templates
        ]
        logger.info(
            "test_generation event=templates project_id=%s type=%s count=%d",
            project_id,
            project_type,
            len(definitions),
        )
        return definitions


class GeneratedTest(BaseModel):
    """One test as proposed by the model (ids are optional hints)."""

    id: str | None = None
    name: str = Field(min_length=1)
    description: str = ""
    full_code: str = ""


class GeneratedSuite(BaseModel):
    tests: list[GeneratedTest] = Field(default_factory=list)


SYSTEM_PROMPT = (
    "You write behavioural comparison tests for software migrations. "
    "Each test must exercise behaviour that both the legacy and the new "
    "implementation are expected to share, so that any difference in output "
    "signals a regression. Respond only with JSON matching the schema."
)

SOURCE_SUFFIXES = frozenset(
    {
        ".c", ".cc", ".cpp", ".h", ".hpp", ".cs", ".go", ".java", ".js", ".jsx",
        ".ts", ".tsx", ".py", ".rb", ".rs", ".php", ".kt", ".swift", ".sh",
    }
)


def read_project_source(path: Path | str, *, max_chars: int) -> str:
    """Concatenate source text from a file, or from the source files under a directory."""
    root = Path(path)
    if not root.exists():
        raise FileNotFoundError(f"Project path does not exist: {root}")
    if root.is_file():
        return root.read_text(encoding="utf-8", errors="replace")[:max_chars]

    chunks: list[str] = []
    remaining = max_chars
    for file_path in sorted(root.rglob("*")):
        if remaining <= 0:
            break
        relative = file_path.relative_to(root)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if not file_path.is_file() or file_path.suffix.lower() not in SOURCE_SUFFIXES:
            continue
        chunk = f"# file: {relative.as_posix()}\n" + file_path.read_text(
            encoding="utf-8", errors="replace"
        )
        chunks.append(chunk[:remaining])
        remaining -= len(chunk)
    return "\n\n".join(chunks)


class LLMGenerationProvider:
    """Ask an LLM for a comparison suite over the project's legacy and new sources."""

    def __init__(
        self,
        *,
        llm_adapter: LLMAdapter,
        projects: ProjectStore,
        timeout_s: float = 45.0,
        max_chars: int = 60_000,
    ) -> None:
        self.llm_adapter = llm_adapter
        self.projects = projects
        self.timeout_s = timeout_s
        self.max_chars = max_chars

    def generate(self, project_id: str, project_type: ProjectType) -> list[TestDefinition]:
        project = self.projects.get(project_id)
        if project is None:
            raise LookupError(f"Project {project_id} does not exist")

        # Half the budget per side keeps the prompt bounded.
        budget = max(1, self.max_chars // 2)
        legacy_source = read_project_source(project.legacy_path, max_chars=budget)
        new_source = read_project_source(project.new_path, max_chars=budget)
        user_prompt = (
            f"Project type: {project_type}\n"
            f"Project name: {project.name}\n\n"
            f"LEGACY SOURCE:\n{legacy_source}\n\n"
            f"NEW SOURCE:\n{new_source}\n\n"
            "Return between 3 and 10 tests. Give each a short unique id, a name, "
            "a one-sentence description, and the full test code."
        )
        suite = self.llm_adapter.generate_structured(
            system_prompt=SYSTEM_PROMPT,
            user_prompt=user_prompt,
            response_model=GeneratedSuite,
            timeout_s=self.timeout_s,
        )
        definitions = normalize_generated(suite.tests)
        if not definitions:
            raise ValueError("LLM returned no tests")
        logger.info(
            "test_generation event=llm project_id=%s type=%s count=%d",
            project_id,
            project_type,
            len(definitions),
        )
        return definitions


def normalize_generated(tests: list[GeneratedTest]) -> list[TestDefinition]:
    """Turn model output into definitions with unique slug ids."""
    seen: set[str] = set()
    definitions: list[TestDefinition] = []
    for test in tests:
        base = slugify(test.id or test.name)
        candidate = base
        suffix = 2
        while candidate in seen:
            candidate = f"{base}-{suffix}"
            suffix += 1
        seen.add(candidate)
        definitions.append(
            TestDefinition(
                id=candidate,
                name=test.name.strip(),
                description=test.description.strip(),
                full_code=test.full_code,
            )
        )
    return definitions
