from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from migration_verifier.app.execution import SimulatedExecutionProvider
from migration_verifier.app.generation import (
    GeneratedSuite,
    GeneratedTest,
    LLMGenerationProvider,
    TemplateGenerationProvider,
    normalize_generated,
    read_project_source,
    slugify,
)
from migration_verifier.app.models import NewProject
from migration_verifier.app.storage import ProjectStore, TestDefinitionStore

from conftest import make_definition


class FakeLLMAdapter:
    def __init__(self, suite: GeneratedSuite) -> None:
        self.suite = suite
        self.calls: list[dict[str, Any]] = []

    def generate_structured(self, **kwargs: Any) -> GeneratedSuite:
        self.calls.append(kwargs)
        return self.suite


def test_template_ids_are_stable_and_type_specific() -> None:
    provider = TemplateGenerationProvider()

    first = provider.generate("p1", "API")
    second = provider.generate("p1", "API")
    web = provider.generate("p1", "Web")
    terminal = provider.generate("p1", "Terminal")

    assert [d.id for d in first] == [d.id for d in second]
    assert "api-login-authentication-test" in {d.id for d in first}
    assert "api-crud-operations-test" in {d.id for d in first}
    assert "web-form-submit-test" in {d.id for d in web}
    assert "terminal-usage-message-test" in {d.id for d in terminal}
    assert len({d.id for d in first}) == len(first)
    assert all(d.full_code for d in first + web + terminal)


def test_slugify_and_normalize_generated() -> None:
    assert slugify("  Login / Logout!  ") == "login-logout"
    assert slugify("???") == "test"

    definitions = normalize_generated(
        [
            GeneratedTest(name="Adds numbers", full_code="a"),
            GeneratedTest(id="adds numbers", name="Adds numbers again"),
            GeneratedTest(id="Div by zero", name=" Division ", description=" errors "),
        ]
    )

    assert [d.id for d in definitions] == ["adds-numbers", "adds-numbers-2", "div-by-zero"]
    assert definitions[2].name == "Division"
    assert definitions[2].description == "errors"


def test_read_project_source_from_directory(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "calc.py").write_text("print(1 + 2)\n", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "hook.sh").write_text("ignored", encoding="utf-8")

    text = read_project_source(tmp_path, max_chars=1_000)

    assert "# file: src/calc.py" in text
    assert "print(1 + 2)" in text
    assert "ignored" not in text
    assert len(read_project_source(tmp_path, max_chars=10)) == 10

    single = tmp_path / "src" / "calc.py"
    assert read_project_source(single, max_chars=5) == "print"

    with pytest.raises(FileNotFoundError):
        read_project_source(tmp_path / "missing", max_chars=10)


def test_llm_provider_sends_both_sources(tmp_path: Path) -> None:
    legacy = tmp_path / "legacy.c"
    legacy.write_text("int main() { return 0; }", encoding="utf-8")
    modern = tmp_path / "modern.py"
    modern.write_text("def main():\n    return 0\n", encoding="utf-8")
    projects = ProjectStore(tmp_path / "data")
    project = projects.create(
        NewProject(name="Calc", type="Terminal", legacy_path=str(legacy), new_path=str(modern))
    )
    adapter = FakeLLMAdapter(
        GeneratedSuite(tests=[GeneratedTest(id="exit-code", name="Exit code", full_code="x")])
    )
    provider = LLMGenerationProvider(llm_adapter=adapter, projects=projects, timeout_s=3.0)

    definitions = provider.generate(project.id, "Terminal")

    assert [d.id for d in definitions] == ["exit-code"]
    prompt = adapter.calls[0]["user_prompt"]
    assert "int main()" in prompt
    assert "def main()" in prompt
    assert "Project type: Terminal" in prompt
    assert adapter.calls[0]["response_model"] is GeneratedSuite
    assert adapter.calls[0]["timeout_s"] == 3.0


def test_llm_provider_failures(tmp_path: Path) -> None:
    projects = ProjectStore(tmp_path / "data")
    empty = LLMGenerationProvider(llm_adapter=FakeLLMAdapter(GeneratedSuite()), projects=projects)
    with pytest.raises(LookupError):
        empty.generate("unknown", "API")

    project = projects.create(
        NewProject(name="X", type="API", legacy_path=str(tmp_path), new_path=str(tmp_path))
    )
    with pytest.raises(ValueError, match="no tests"):
        empty.generate(project.id, "API")

    broken = projects.create(
        NewProject(name="Y", type="API", legacy_path=str(tmp_path / "gone"), new_path="/")
    )
    with pytest.raises(FileNotFoundError):
        empty.generate(broken.id, "API")


def test_simulated_execution_is_seedable(tmp_path: Path) -> None:
    definitions = TestDefinitionStore(tmp_path)
    definitions.replace_all("p1", [make_definition(f"t{i}") for i in range(8)])

    first = SimulatedExecutionProvider(definitions, seed=7).execute_all("p1")
    second = SimulatedExecutionProvider(definitions, seed=7).execute_all("p1")

    assert first == second
    assert [outcome.id for outcome in first] == [f"t{i}" for i in range(8)]
    for outcome in first:
        assert outcome.status in {"passed", "failed"}
        assert 100 <= outcome.execution_time <= 599
        assert json.loads(outcome.new_output)["improved"] is True
        expected = "success" if outcome.status == "passed" else "error"
        assert json.loads(outcome.legacy_output)["result"] == expected


def test_simulated_single_execution(tmp_path: Path) -> None:
    definitions = TestDefinitionStore(tmp_path)
    definitions.replace_all("p1", [make_definition("t1")])
    provider = SimulatedExecutionProvider(definitions, seed=1)

    assert provider.execute_one("p1", "t1").id == "t1"
    with pytest.raises(ValueError):
        provider.execute_one("p1", "missing")
