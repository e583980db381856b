import asyncio
import json

import pytest
from conftest import ScriptedBackend

from fluttery.errors import PlanningError, WorkerError
from fluttery.graph import Task
from fluttery.results import CodeResult, DesignResult, GeneratedFile, TestResult
from fluttery.workers import (
    AgentPlanner,
    CodeWorker,
    DesignWorker,
    StaticPlanner,
    TestWorker,
    WorkerContext,
    extract_requirements,
)
from fluttery.workers.base import Worker, extract_json_from_text


def _task(kind: str) -> Task:
    return Task(id=kind, kind=kind, worker=kind, description=f"do the {kind} work")  # type: ignore[arg-type]


def _context(**changes) -> WorkerContext:
    return WorkerContext(session_id="s1", request="Build a todo app", **changes)


def test_extract_requirements_features_and_complexity() -> None:
    assert extract_requirements("A simple counter")["complexity"] == "low"

    todo = extract_requirements("Todo list with login and Firebase sync")
    assert todo["features"] == ["authentication", "database", "task_management"]
    assert todo["complexity"] == "medium"

    shop = extract_requirements("An ecommerce shop")
    assert shop["features"] == ["ecommerce"]
    assert shop["complexity"] == "high"


def test_extract_json_handles_fences_and_prose() -> None:
    fenced = "```json\n{\"a\": 1}\n```"
    prose = "Here is the plan: {\"a\": {\"b\": 2}} hope it helps"

    assert json.loads(extract_json_from_text(fenced)) == {"a": 1}
    assert json.loads(extract_json_from_text(prose)) == {"a": {"b": 2}}


def test_code_worker_builds_typed_result() -> None:
    backend = ScriptedBackend()
    worker = CodeWorker(backend, model="gpt-test")
    design = DesignResult(specification={"screens": []})

    result = asyncio.run(worker.handle(_task("code"), _context(upstream={"design": design})))

    assert isinstance(result, CodeResult)
    assert [file.path for file in result.files] == ["lib/main.dart", "lib/models/todo.dart"]
    assert result.dependencies == ("provider",)
    assert backend.contexts[0]["model"] == "gpt-test"
    assert backend.contexts[0]["design"] == {"screens": []}


def test_worker_base_cannot_be_instantiated() -> None:
    with pytest.raises(TypeError):
        Worker(ScriptedBackend())  # type: ignore[abstract]


def test_code_worker_without_files_fails() -> None:
    backend = ScriptedBackend({"coder": json.dumps({"files": [], "explanation": "nothing"})})

    with pytest.raises(WorkerError, match="no files"):
        asyncio.run(CodeWorker(backend).handle(_task("code"), _context()))


def test_code_worker_rejects_malformed_output() -> None:
    backend = ScriptedBackend({"coder": "I could not do it {"})

    with pytest.raises(WorkerError, match="malformed"):
        asyncio.run(CodeWorker(backend).handle(_task("code"), _context()))


def test_design_worker_requires_a_specification() -> None:
    good = asyncio.run(DesignWorker(ScriptedBackend()).handle(_task("design"), _context()))
    assert isinstance(good, DesignResult)
    assert good.specification["theme"]["primaryColor"] == "#6750A4"
    assert good.explanation == "Single Material 3 home screen."

    backend = ScriptedBackend({"designer": json.dumps({"design": {}})})
    with pytest.raises(WorkerError):
        asyncio.run(DesignWorker(backend).handle(_task("design"), _context()))


def test_test_worker_collects_suite_sections() -> None:
    payload = {
        "testSuite": {
            "unitTests": [{"file": "test/unit/todo_test.dart", "content": "void main() {}"}],
            "integrationTests": [{"file": "integration_test/app_test.dart", "content": "x"}],
        }
    }
    backend = ScriptedBackend({"tester": json.dumps(payload)})
    code = CodeResult(files=(GeneratedFile("lib/main.dart", "void main() {}"),))

    result = asyncio.run(
        TestWorker(backend).handle(_task("test"), _context(upstream={"code": code}))
    )

    assert isinstance(result, TestResult)
    assert [file.path for file in result.files] == [
        "test/unit/todo_test.dart",
        "integration_test/app_test.dart",
    ]
    assert backend.contexts[0]["codebase"]["files"][0]["path"] == "lib/main.dart"


def test_current_code_is_forwarded_to_the_backend() -> None:
    backend = ScriptedBackend()

    asyncio.run(CodeWorker(backend).handle(_task("code"), _context(current_code="void main() {}")))

    assert backend.contexts[0]["current_code"] == "void main() {}"


def test_static_planner_chains_design_code_test() -> None:
    tasks = asyncio.run(StaticPlanner().plan(_context()))

    assert [task.kind for task in tasks] == ["design", "code", "test"]
    assert [task.depends_on for task in tasks] == [[], ["design"], ["code"]]


def test_agent_planner_parses_task_list() -> None:
    plan = {
        "tasks": [
            {"id": "ui", "kind": "design", "description": "screens"},
            {"id": "impl", "type": "code", "dependencies": ["ui"]},
        ]
    }
    backend = ScriptedBackend({"planner": "Plan:\n" + json.dumps(plan)})

    tasks = asyncio.run(AgentPlanner(backend).plan(_context()))

    assert [(task.id, task.kind, task.depends_on) for task in tasks] == [
        ("ui", "design", []),
        ("impl", "code", ["ui"]),
    ]


@pytest.mark.parametrize(
    "raw",
    [
        "no json here",
        json.dumps({"steps": []}),
        json.dumps({"tasks": [{"id": "x", "kind": "deploy"}]}),
        json.dumps({"tasks": ["design"]}),
    ],
)
def test_agent_planner_rejects_unusable_output(raw: str) -> None:
    with pytest.raises(PlanningError):
        AgentPlanner.parse_plan(raw)
