import json
from unittest.mock import patch

import pytest

from tool_runtime import run
from tool_runtime.models import ChatResponse
from tool_runtime.storage import InMemoryRecordStore, JsonFileDocumentStore
from tool_runtime.workflow import WorkflowEngine

RECORDS = [
    {"id": 1, "merchant": "Acme", "status": "scheduled", "code": "C1", "agent": "kim", "order_date": "2024-05-02"},
    {"id": 2, "merchant": "Acme", "status": "scheduled", "code": "C2", "agent": "kim", "order_date": "2024-05-03"},
]


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TOOL_RUNTIME_WORKFLOW_DIR", str(tmp_path / "tasks"))
    monkeypatch.setenv("OLLAMA_MODEL", "test-model")
    monkeypatch.setenv("OLLAMA_ENABLE_DYNAMIC_TOOLS", "false")
    records_path = tmp_path / "orders.json"
    records_path.write_text(json.dumps(RECORDS), encoding="utf-8")
    return tmp_path, records_path


def _create_task(workspace):
    tmp_path, records_path = workspace
    engine = WorkflowEngine(JsonFileDocumentStore(tmp_path / "tasks"), InMemoryRecordStore(RECORDS))
    return engine.create([{"merchant": "acme"}])


# ---------------------------------------------------------------------------
# task show / task confirm
# ---------------------------------------------------------------------------


def test_task_show_missing_exits_4(workspace):
    assert run.main(["task", "show", "missing-task"]) == run.EXIT_NOT_FOUND


def test_task_show_existing(workspace):
    task = _create_task(workspace)
    assert run.main(["task", "show", task.id]) == run.EXIT_OK


def test_task_confirm_updates_record_file(workspace):
    _, records_path = workspace
    task = _create_task(workspace)

    assert run.main(["--records", str(records_path), "task", "confirm", task.id]) == run.EXIT_OK

    saved = json.loads(records_path.read_text(encoding="utf-8"))
    assert [r["status"] for r in saved] == ["Delivered", "Delivered"]


def test_task_confirm_wrong_step_exits_12(workspace):
    _, records_path = workspace
    task = _create_task(workspace)

    code = run.main(
        ["--records", str(records_path), "task", "confirm", task.id, "--expect-step", "confirm_remitted"]
    )

    assert code == run.EXIT_STEP_MISMATCH
    saved = json.loads(records_path.read_text(encoding="utf-8"))
    assert [r["status"] for r in saved] == ["scheduled", "scheduled"]


def test_task_confirm_missing_exits_4(workspace):
    assert run.main(["task", "confirm", "missing-task"]) == run.EXIT_NOT_FOUND


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------


class OneShotBackend:
    def __init__(self):
        self.calls = 0

    def chat(self, messages, tools=None, *, timeout=None):
        self.calls += 1
        return ChatResponse(content="Two orders are scheduled for Acme.")


def test_chat_runs_one_prompt(workspace):
    _, records_path = workspace
    backend = OneShotBackend()

    with patch("tool_runtime.run.build_backend", return_value=backend):
        code = run.main(["--records", str(records_path), "--no-planner", "chat", "How many Acme orders?"])

    assert code == run.EXIT_OK
    assert backend.calls == 1


def test_chat_without_model_fails(workspace, monkeypatch):
    monkeypatch.delenv("OLLAMA_MODEL")
    backend = OneShotBackend()

    with patch("tool_runtime.run.build_backend", return_value=backend):
        code = run.main(["--no-planner", "chat", "hello"])

    assert code == run.EXIT_RUN_FAILED
    assert backend.calls == 0
