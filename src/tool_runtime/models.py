# models.py
# Data contracts for the tool runtime.
# No business logic lives here, only schema, validation and wire conversion.

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_error(result: dict) -> bool:
    """Every layer treats a payload with type == "error" as the error case."""
    return isinstance(result, dict) and result.get("type") == "error"


def error_result(message: str, **details: Any) -> dict:
    return {"type": "error", "message": message, **details}


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def needs_confirmation(self) -> bool:
        return self in (RiskTier.HIGH, RiskTier.CRITICAL)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RunStatus(str, Enum):
    DONE = "done"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    WAITING_CONFIRMATION = "waiting_confirmation"
    PROCESSING = "processing"
    COMPLETED = "completed"


class WorkflowStep(str, Enum):
    CONFIRM_DELIVERY = "confirm_delivery"
    CONFIRM_REMITTED = "confirm_remitted"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolDescriptor(BaseModel):
    """Schema-described unit of capability. Frozen once registered."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Public tool name.")
    description: str = Field(default="", description="Shown to the model.")
    parameter_schema: dict = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON schema of the argument map.",
    )
    risk_tier: RiskTier = Field(default=RiskTier.MEDIUM)

    def to_wire(self) -> dict:
        """Function-calling shape understood by the model backends."""
        schema = self.parameter_schema or {}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or self.name,
                "parameters": {
                    "type": "object",
                    "properties": dict(schema.get("properties") or {}),
                    "required": list(schema.get("required") or []),
                },
            },
        }


class ToolCallRequest(BaseModel):
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_wire(cls, tool_call: dict) -> "ToolCallRequest":
        """
        Build a request from a backend tool call entry.

        Backends sometimes return arguments as a JSON string; anything that
        does not decode to an object becomes an empty argument map.
        """
        function = tool_call.get("function") or {}
        arguments = function.get("arguments") or {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        return cls(tool_name=str(function.get("name") or ""), arguments=arguments)


class ExecutionAttempt(BaseModel):
    """One entry of an orchestrated call's attempt history."""

    attempt_number: int
    arguments_used: dict[str, Any]
    result_type: str
    message: str = ""


class PolicyDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    risk_tier: RiskTier
    requires_confirmation: bool
    reason: str | None = None


class CriticVerdict(BaseModel):
    ok: bool
    issues: list[str] = Field(default_factory=list)
    severity: Severity = Severity.LOW


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class PlanStep(BaseModel):
    """A single tool-hinted step. Wire names are `step` and `tool`."""

    model_config = ConfigDict(populate_by_name=True)

    step_number: int = Field(..., alias="step", ge=0)
    action: str = Field(default="")
    tool_hint: str = Field(default="", alias="tool")
    depends_on: list[int] = Field(default_factory=list)
    risk: RiskTier = Field(default=RiskTier.MEDIUM)

    @field_validator("risk", mode="before")
    @classmethod
    def _lenient_risk(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value in {tier.value for tier in RiskTier}:
                return value
        if isinstance(value, RiskTier):
            return value
        return RiskTier.MEDIUM

    @field_validator("tool_hint", mode="before")
    @classmethod
    def _tool_as_text(cls, value: Any) -> Any:
        return "" if value is None else str(value)


class Plan(BaseModel):
    """A complete execution plan. A plan with zero steps is invalid."""

    goal: str = Field(..., description="Top-level objective of the plan.")
    success_criteria: list[str] = Field(default_factory=list)
    steps: list[PlanStep] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class ConversationTurn(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: list[dict] | None = None

    def to_message(self) -> dict:
        return self.model_dump(exclude_none=True)


class ChatResponse(BaseModel):
    """Backend-neutral view of one non-streamed chat completion."""

    content: str = ""
    tool_calls: list[dict] = Field(default_factory=list)
    prompt_eval_count: int = 0
    eval_count: int = 0


class ContextUsage(BaseModel):
    prompt_eval_count: int
    eval_count: int
    context_window: int
    context_used_pct: float
    context_remaining: int
    iteration: int

    @classmethod
    def measure(
        cls,
        response: ChatResponse,
        context_window: int,
        iteration: int,
    ) -> "ContextUsage":
        prompt = max(0, response.prompt_eval_count)
        window = max(1, context_window)
        return cls(
            prompt_eval_count=prompt,
            eval_count=max(0, response.eval_count),
            context_window=window,
            context_used_pct=round(prompt / window * 100, 2),
            context_remaining=max(0, window - prompt),
            iteration=iteration,
        )


class RunOutcome(BaseModel):
    """What a single loop execution ended with."""

    status: RunStatus
    iterations: int = 0
    tool_calls: int = 0
    text: str = ""
    messages: list[dict] = Field(default_factory=list)
    plan: Plan | None = None
    error: dict | None = None


# ---------------------------------------------------------------------------
# Workflow tasks
# ---------------------------------------------------------------------------


class LineItem(BaseModel):
    merchant: str
    start_date: str | None = None
    end_date: str | None = None
    matched_record_ids: list[int] = Field(default_factory=list)

    @computed_field
    @property
    def matched_count(self) -> int:
        return len(self.matched_record_ids)


class WorkflowLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    time: datetime = Field(default_factory=utcnow)
    event: str
    details: str = ""
    affected: int = 0


class ReportLink(BaseModel):
    merchant: str
    url: str


class WorkflowTask(BaseModel):
    """
    Durable, human-gated bulk operation.

    `matched_record_ids` is snapshotted at creation and re-used verbatim by
    every later step, so step two acts on exactly the records step one did.
    """

    id: str
    owner: str | None = None
    type: str = "report_delivery_workflow"
    status: TaskStatus = TaskStatus.WAITING_CONFIRMATION
    current_step: WorkflowStep = WorkflowStep.CONFIRM_DELIVERY
    confirmation_required: bool = True
    message: str = ""
    line_items: list[LineItem] = Field(default_factory=list)
    matched_record_ids: list[int] = Field(default_factory=list)
    logs: list[WorkflowLogEntry] = Field(default_factory=list)
    report_links: list[ReportLink] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @computed_field
    @property
    def matched_count(self) -> int:
        return len(self.matched_record_ids)
