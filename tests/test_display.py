import io

from rich.console import Console

from tool_runtime import display
from tool_runtime.planner import fallback_plan
from tool_runtime.storage import InMemoryDocumentStore, InMemoryRecordStore
from tool_runtime.workflow import WorkflowEngine


def _console():
    buffer = io.StringIO()
    return Console(file=buffer, width=140, force_terminal=False, color_system=None), buffer


# ---------------------------------------------------------------------------
# Event stream rendering
# ---------------------------------------------------------------------------


def test_console_emitter_renders_a_run():
    out, buffer = _console()
    emit = display.ConsoleEmitter(out, verbose=True)

    emit("status", {"phase": "planning"})
    emit("plan", fallback_plan("Count orders").model_dump(mode="json", by_alias=True))
    emit("status", {"phase": "thinking", "iteration": 1})
    emit("context_usage", {"context_used_pct": 1.5, "context_remaining": 1000})
    emit("tool_call", {"tool": "list_orders", "arguments": {"page": 1}})
    emit("critic", {"ok": False, "issues": ["Financial report returned zero orders."], "severity": "low"})
    emit(
        "tool_result",
        {"tool": "list_orders", "result": {"type": "orders_list", "total": 3, "_execution": {"attempts": 2}}},
    )
    emit("delta", {"text": "There are "})
    emit("delta", {"text": "3 orders."})
    emit("done", {"iterations": 2, "tool_calls": 1})

    text = buffer.getvalue()
    assert "Building execution plan" in text
    assert "Analyze request and choose tools." in text
    assert "context 1.5% used" in text
    assert "list_orders" in text
    assert "zero orders" in text
    assert "attempts: 2" in text
    assert '"_execution"' not in text
    assert "There are" in text
    assert "3 orders." in text
    assert "2 iteration(s), 1 tool call(s)" in text


def test_console_emitter_renders_errors_and_cancellation():
    out, buffer = _console()
    emit = display.ConsoleEmitter(out)

    emit("context_usage", {"context_used_pct": 99.0, "context_remaining": 1})
    emit("error", {"category": "iteration_cap", "message": "Max tool iterations reached without a final response."})
    emit("done", {"cancelled": True})
    emit("unknown_event", {})

    text = buffer.getvalue()
    assert "context" not in text
    assert "ERROR: ITERATION_CAP" in text
    assert "Max tool iterations reached" in text
    assert "CANCELLED" in text


# ---------------------------------------------------------------------------
# Workflow rendering
# ---------------------------------------------------------------------------


def test_workflow_task_rendering():
    records = InMemoryRecordStore(
        [{"id": 1, "merchant": "Acme", "status": "scheduled", "code": "C1", "order_date": "2024-05-02"}]
    )
    engine = WorkflowEngine(InMemoryDocumentStore(), records)
    task = engine.create([{"merchant": "acme"}])
    engine.confirm(task.id)
    task = engine.confirm(task.id)

    out, buffer = _console()
    display.workflow_task(task, out)

    text = buffer.getvalue()
    assert task.id in text
    assert "completed" in text
    assert "agent_marked_remitted" in text
    assert "/reports/financial/export?merchant=acme" in text


def test_workflow_task_renders_markup_like_text_literally():
    records = InMemoryRecordStore(
        [{"id": 1, "merchant": "Acme [/b] Ltd", "status": "scheduled", "code": "C1", "order_date": "2024-05-02"}]
    )
    engine = WorkflowEngine(InMemoryDocumentStore(), records)
    task = engine.create([{"merchant": "Acme [/b]"}])
    engine.confirm(task.id)
    task = engine.confirm(task.id)

    out, buffer = _console()
    display.workflow_task(task, out)

    text = buffer.getvalue()
    assert "Acme [/b]" in text
    assert task.matched_count == 1


def test_halt_and_error_render_markup_like_text_literally():
    out, buffer = _console()

    display.halt("Task [bold]x[/red] not found.", out)
    display.ConsoleEmitter(out)("error", {"category": "transport", "message": "[/] broken", "details": "[x]"})

    text = buffer.getvalue()
    assert "Task [bold]x[/red] not found." in text
    assert "[/] broken" in text
    assert "[x]" in text
