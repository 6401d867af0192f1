import pytest
from unittest.mock import MagicMock

from tool_runtime.config import Settings
from tool_runtime.errors import TransportError
from tool_runtime.models import ChatResponse, RiskTier, ToolDescriptor
from tool_runtime.planner import (
    NO_GOAL,
    PlanParseError,
    Planner,
    fallback_plan,
    latest_user_goal,
    parse_plan,
    render_directive,
)

CATALOG = [ToolDescriptor(name="list_orders"), ToolDescriptor(name="financial_report")]
CONVERSATION = [
    {"role": "system", "content": "You are helpful."},
    {"role": "user", "content": "Show Acme revenue for May."},
]

VALID_PLAN = """{
  "goal": "Report Acme revenue",
  "success_criteria": ["Revenue total returned"],
  "steps": [
    {"step": 1, "action": "Fetch the report", "tool": "financial_report", "depends_on": [], "risk": "LOW"},
    {"step": 2, "action": "Summarize", "tool": "none", "depends_on": [1], "risk": "unknown"}
  ]
}"""


def _backend(content=None, side_effect=None):
    backend = MagicMock()
    if side_effect is not None:
        backend.chat.side_effect = side_effect
    else:
        backend.chat.return_value = ChatResponse(content=content)
    return backend


def _assert_fallback(plan, goal):
    assert plan.goal == goal
    assert len(plan.steps) == 2
    first, second = plan.steps
    assert first.action == "Analyze request and choose tools."
    assert first.tool_hint == "none"
    assert second.action == "Execute selected tools with retry/recovery."
    assert second.tool_hint == "dynamic"
    assert second.depends_on == [1]
    assert {first.risk, second.risk} == {RiskTier.MEDIUM}
    assert plan.success_criteria == [
        "Execute requested actions with successful tool responses.",
        "Return clear failure reasons when retries fail.",
    ]


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------


def test_disabled_planner_returns_fallback_without_calling_backend():
    backend = _backend(VALID_PLAN)
    planner = Planner(Settings(model="m", planner_enabled=False), backend)
    _assert_fallback(planner.build_plan(CONVERSATION, CATALOG), "Show Acme revenue for May.")
    backend.chat.assert_not_called()


def test_no_user_goal_returns_fallback():
    backend = _backend(VALID_PLAN)
    planner = Planner(Settings(model="m"), backend)
    plan = planner.build_plan([{"role": "system", "content": "x"}, {"role": "user", "content": "   "}], CATALOG)
    _assert_fallback(plan, NO_GOAL)
    backend.chat.assert_not_called()


@pytest.mark.parametrize(
    "content",
    [
        "",
        "{ broken json }",
        "[1, 2, 3]",
        '{"goal": "x", "steps": []}',
        '{"goal": "x"}',
        '{"goal": "x", "steps": [{"action": "no step number"}]}',
    ],
)
def test_bad_planner_output_returns_fallback(content):
    planner = Planner(Settings(model="m"), _backend(content))
    _assert_fallback(planner.build_plan(CONVERSATION, CATALOG), "Show Acme revenue for May.")


def test_transport_failure_returns_fallback():
    planner = Planner(Settings(model="m"), _backend(side_effect=TransportError("Ollama request timed out.")))
    _assert_fallback(planner.build_plan(CONVERSATION, CATALOG), "Show Acme revenue for May.")


# ---------------------------------------------------------------------------
# Model plans
# ---------------------------------------------------------------------------


def test_valid_plan_is_parsed_with_planner_timeout_and_tool_names():
    backend = _backend(VALID_PLAN)
    planner = Planner(Settings(model="m", planner_timeout=7), backend)

    plan = planner.build_plan(CONVERSATION, CATALOG)

    assert plan.goal == "Report Acme revenue"
    assert plan.success_criteria == ["Revenue total returned"]
    assert [s.step_number for s in plan.steps] == [1, 2]
    assert plan.steps[0].tool_hint == "financial_report"
    assert plan.steps[0].risk == RiskTier.LOW
    assert plan.steps[1].risk == RiskTier.MEDIUM

    args, kwargs = backend.chat.call_args
    assert kwargs["timeout"] == 7
    system_prompt = args[0][0]["content"]
    assert "Use available tools only: list_orders, financial_report" in system_prompt
    assert args[0][1] == {"role": "user", "content": "Show Acme revenue for May."}


def test_fenced_plan_with_missing_goal_and_criteria():
    content = '```json\n{"steps": [{"step": 1, "action": "List", "tool": "list_orders"}]}\n```'
    plan = parse_plan(content, "Show Acme revenue for May.")
    assert plan.goal == "Show Acme revenue for May."
    assert plan.success_criteria == ["Task completed with validated tool outputs."]
    assert plan.steps[0].depends_on == []


def test_parse_plan_raises_on_empty_content():
    with pytest.raises(PlanParseError):
        parse_plan("   ", "goal")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_latest_user_goal_picks_last_non_empty_user_turn():
    conversation = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "ok"},
        {"role": "user", "content": "second"},
        {"role": "user", "content": ""},
    ]
    assert latest_user_goal(conversation) == "second"
    assert latest_user_goal([]) == ""


def test_render_directive():
    text = render_directive(fallback_plan("Ship it"))
    lines = text.splitlines()
    assert lines[0] == "Execution Plan:"
    assert lines[1] == "Goal: Ship it"
    assert lines[2] == "1. Analyze request and choose tools. (tool: none) [risk: medium]"
    assert lines[3] == "2. Execute selected tools with retry/recovery. (tool: dynamic) [risk: medium]"


def test_plan_dump_uses_wire_names():
    dumped = fallback_plan("x").model_dump(mode="json", by_alias=True)
    assert dumped["steps"][1] == {
        "step": 2,
        "action": "Execute selected tools with retry/recovery.",
        "tool": "dynamic",
        "depends_on": [1],
        "risk": "medium",
    }
