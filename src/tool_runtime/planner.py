# planner.py
# Optional structured planning pass before tool execution.
#
# build_plan() always returns a valid Plan. Anything that goes wrong while
# asking the model (transport, empty answer, bad JSON, bad shape) lands on
# the same deterministic two-step fallback.

import json
import re
from collections.abc import Iterable

from pydantic import ValidationError

from tool_runtime.backends import ModelBackend
from tool_runtime.config import Settings
from tool_runtime.errors import TransportError
from tool_runtime.logging import get_logger
from tool_runtime.models import Plan, PlanStep, RiskTier, ToolDescriptor

logger = get_logger(name=__name__)

NO_GOAL = "No explicit user goal detected."
DEFAULT_SUCCESS_CRITERIA = ["Task completed with validated tool outputs."]

PLANNER_PROMPT = """\
You are an execution planner for a tool-calling agent.
Return strict JSON only, with no prose and no markdown, using exactly these keys:
{
  "goal": "<string>",
  "success_criteria": ["<string>"],
  "steps": [
    {"step": 1, "action": "<string>", "tool": "<tool name or none>", "depends_on": [], "risk": "low|medium|high|critical"}
  ]
}
Use available tools only: {tools}\
"""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class PlanParseError(ValueError):
    """Raised when planner output cannot be turned into a Plan."""


def latest_user_goal(conversation: Iterable[dict]) -> str:
    goal = ""
    for turn in conversation:
        if turn.get("role") == "user":
            content = str(turn.get("content") or "").strip()
            if content:
                goal = content
    return goal


def fallback_plan(goal: str) -> Plan:
    return Plan(
        goal=goal or NO_GOAL,
        success_criteria=[
            "Execute requested actions with successful tool responses.",
            "Return clear failure reasons when retries fail.",
        ],
        steps=[
            PlanStep(
                step_number=1,
                action="Analyze request and choose tools.",
                tool_hint="none",
                risk=RiskTier.MEDIUM,
            ),
            PlanStep(
                step_number=2,
                action="Execute selected tools with retry/recovery.",
                tool_hint="dynamic",
                depends_on=[1],
                risk=RiskTier.MEDIUM,
            ),
        ],
    )


def parse_plan(content: str, goal: str) -> Plan:
    """
    Validate planner output.

    Tolerates a ```json fence. Raises PlanParseError on empty content,
    invalid JSON, a non-object payload, or missing/empty steps.
    """
    raw = _FENCE.sub("", content.strip()).strip()
    if not raw:
        raise PlanParseError("Planner returned empty content.")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PlanParseError(f"Planner output is not JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise PlanParseError("Planner output is not a JSON object.")
    if not isinstance(data.get("steps"), list) or not data["steps"]:
        raise PlanParseError("Planner output has no steps.")

    data["goal"] = str(data.get("goal") or "").strip() or goal
    if not data.get("success_criteria"):
        data["success_criteria"] = list(DEFAULT_SUCCESS_CRITERIA)

    try:
        return Plan.model_validate(data)
    except ValidationError as exc:
        raise PlanParseError(f"Plan content is invalid: {exc}") from exc


def render_directive(plan: Plan) -> str:
    """The system turn appended to the conversation before the tool loop."""
    lines = ["Execution Plan:", f"Goal: {plan.goal}"]
    for step in plan.steps:
        lines.append(
            f"{step.step_number}. {step.action} (tool: {step.tool_hint or 'none'}) [risk: {step.risk.value}]"
        )
    if plan.success_criteria:
        lines.append("Success criteria: " + "; ".join(plan.success_criteria))
    return "\n".join(lines)


class Planner:
    def __init__(self, settings: Settings, backend: ModelBackend) -> None:
        self._settings = settings
        self._backend = backend

    def build_plan(self, conversation: list[dict], tool_catalog: Iterable[ToolDescriptor]) -> Plan:
        goal = latest_user_goal(conversation)
        if not goal:
            return fallback_plan(NO_GOAL)
        if not self._settings.planner_enabled:
            return fallback_plan(goal)

        tool_names = ", ".join(d.name for d in tool_catalog) or "none"
        messages = [
            {"role": "system", "content": PLANNER_PROMPT.replace("{tools}", tool_names)},
            {"role": "user", "content": goal},
        ]

        try:
            response = self._backend.chat(messages, timeout=self._settings.planner_timeout)
            return parse_plan(response.content, goal)
        except (TransportError, PlanParseError) as exc:
            logger.info("planner_fallback", reason=str(exc))
            return fallback_plan(goal)
