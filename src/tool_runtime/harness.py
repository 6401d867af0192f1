# harness.py
# Conversation loop controller.
#
# The runner owns all control flow. The model only answers chat requests;
# every tool call it asks for goes through the same pipeline:
#
#   resolve → policy gate → orchestrator (retry/repair) → critic → tool turn
#
# State machine per run:
#   AwaitingModel ─▶ no tool calls ─▶ Streaming ─▶ Done
#         │
#         └─▶ tool calls ─▶ ExecutingTools ─▶ AwaitingModel
#
#   Errored   on transport failure or iteration cap (error event, then done)
#   Cancelled on abort (done{cancelled: true})
#
# All terminal output is delegated to the emit callback, no formatting here.

import json
import re
import threading
from collections.abc import Callable
from uuid import uuid4

import structlog

from tool_runtime.backends import ModelBackend
from tool_runtime.config import Settings
from tool_runtime.critic import Critic
from tool_runtime.errors import ErrorCategory, TransportError
from tool_runtime.logging import get_logger
from tool_runtime.models import (
    ContextUsage,
    ConversationTurn,
    CriticVerdict,
    Plan,
    RunOutcome,
    RunStatus,
    ToolCallRequest,
    error_result,
)
from tool_runtime.orchestrator import ExecutionOrchestrator
from tool_runtime.planner import Planner, latest_user_goal, render_directive
from tool_runtime.policy import PolicyGate
from tool_runtime.registry import ToolHandle, ToolRegistry

logger = get_logger(name=__name__)

Emit = Callable[[str, dict], None]

COMPACT_LIMIT = 6000
MIN_DELTA_CHARS = 6
ITERATION_CAP_MESSAGE = "Max tool iterations reached without a final response."

_WORD_BOUNDARY = re.compile(r"(?<=\s)(?=\S)")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dumps(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _shrink(value: object, max_text: int = 500) -> object:
    if isinstance(value, str):
        return value if len(value) <= max_text else value[:max_text] + "…"
    if isinstance(value, (list, tuple, dict)):
        return f"<{type(value).__name__} with {len(value)} items>"
    return value


def compact_tool_result(tool_name: str, result: dict, limit: int = COMPACT_LIMIT) -> str:
    """
    Render a tool result for the tool turn.

    Results that do not fit are summarized: scalars kept (long strings
    clipped), collections replaced by their size, `_critic` kept verbatim.
    """
    text = _dumps({"tool": tool_name, "result": result})
    if len(text) <= limit:
        return text

    summary = {key: _shrink(value) for key, value in result.items() if not key.startswith("_")}
    if "_critic" in result:
        summary["_critic"] = result["_critic"]
    text = _dumps({"tool": tool_name, "truncated": True, "result": summary})
    return text[:limit]


def stream_text(text: str, min_chars: int = MIN_DELTA_CHARS) -> list[str]:
    """Split text into word-aligned chunks of at least `min_chars` (the last may be shorter)."""
    chunks: list[str] = []
    buffer = ""
    for piece in _WORD_BOUNDARY.split(text):
        buffer += piece
        if len(buffer) >= min_chars:
            chunks.append(buffer)
            buffer = ""
    if buffer:
        chunks.append(buffer)
    return chunks


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class ToolRunner:
    """
    Drives one conversation to a final answer.

    Example:
        runner = ToolRunner(settings, OllamaBackend(settings), registry)
        outcome = runner.run([{"role": "user", "content": "Revenue for Acme in May?"}], emit)
    """

    def __init__(
        self,
        settings: Settings,
        backend: ModelBackend,
        registry: ToolRegistry,
        *,
        planner: Planner | None = None,
        policy: PolicyGate | None = None,
        orchestrator: ExecutionOrchestrator | None = None,
        critic: Critic | None = None,
    ) -> None:
        self._settings = settings
        self._backend = backend
        self._registry = registry
        self._planner = planner or Planner(settings, backend)
        self._policy = policy or PolicyGate(settings, registry.catalog())
        self._own_policy = policy is None
        self._orchestrator = orchestrator or ExecutionOrchestrator(settings)
        self._critic = critic or Critic()

    # ------------------------------------------------------------------
    # Single tool call pipeline
    # ------------------------------------------------------------------

    def _refresh_and_resolve(self, tool_name: str) -> ToolHandle | None:
        """One rediscovery pass for a name the registry does not know yet."""
        self._registry.refresh()
        if self._own_policy:
            self._policy = PolicyGate(self._settings, self._registry.catalog())
        handle = self._registry.resolve(tool_name)
        logger.info("tool_registry_refreshed", tool=tool_name, found=handle is not None)
        return handle

    def _dispatch(
        self,
        tool_name: str,
        arguments: dict,
        auto_confirm: bool = False,
    ) -> tuple[str, dict, CriticVerdict]:
        handle = self._registry.resolve(tool_name)
        if handle is None and self._settings.dynamic_tools_enabled:
            handle = self._refresh_and_resolve(tool_name)
        if handle is None:
            result = error_result(f"Unknown tool: {tool_name}")
        else:
            tool_name = handle.name
            args = dict(arguments)
            if auto_confirm and self._policy.requires_confirmation(tool_name) and "confirmed" not in args:
                args["confirmed"] = True

            decision = self._policy.authorize(tool_name, args)
            if decision.allowed:
                result = self._orchestrator.execute(tool_name, args, self._registry.invoke)
            else:
                logger.info("tool_call_blocked", tool=tool_name, risk=decision.risk_tier.value)
                result = {
                    "type": "policy_blocked",
                    "tool": tool_name,
                    "risk": decision.risk_tier.value,
                    "message": decision.reason,
                }
            result["_policy"] = decision.model_dump(mode="json")

        verdict = self._critic.evaluate(tool_name, result)
        result["_critic"] = verdict.model_dump(mode="json")
        return tool_name, result, verdict

    def call_tool(self, tool_name: str, arguments: dict) -> dict:
        """Run one tool call through policy, retries and the critic, without the model."""
        _, result, _ = self._dispatch(tool_name, arguments)
        return result

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _errored(self, emit: Emit, error: dict, state: dict) -> RunOutcome:
        logger.warning("tool_runner_errored", category=error.get("category"), message=error.get("message"))
        emit("error", error)
        emit("done", {"iterations": state["iterations"], "tool_calls": state["tool_calls"]})
        return RunOutcome(status=RunStatus.ERRORED, error=error, **state)

    def _cancelled(self, emit: Emit, state: dict) -> RunOutcome:
        logger.info("tool_runner_cancelled", iterations=state["iterations"])
        emit(
            "done",
            {"cancelled": True, "iterations": state["iterations"], "tool_calls": state["tool_calls"]},
        )
        return RunOutcome(status=RunStatus.CANCELLED, **state)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        initial_messages: list[dict],
        emit: Emit,
        cancel: threading.Event | None = None,
    ) -> RunOutcome:
        """
        Full loop entry point.

        Works on a copy of `initial_messages`; the caller's list is never
        touched. Always ends with exactly one `done` event.
        """
        with structlog.contextvars.bound_contextvars(trace_id=uuid4().hex):
            return self._run(initial_messages, emit, cancel or threading.Event())

    def _run(self, initial_messages: list[dict], emit: Emit, cancel: threading.Event) -> RunOutcome:
        messages = [dict(message) for message in initial_messages]
        if not any(message.get("role") == "system" for message in messages):
            messages.insert(0, {"role": "system", "content": self._settings.system_prompt})

        state: dict = {"iterations": 0, "tool_calls": 0, "text": "", "messages": messages, "plan": None}

        if not self._settings.model.strip():
            error = TransportError(
                "No model configured.",
                details="Set OLLAMA_MODEL to the model the backend should use.",
            )
            return self._errored(emit, error.to_payload(), state)

        logger.info("tool_runner_started", model=self._settings.model, turns=len(messages))

        # ── Planning ─────────────────────────────────────────────────
        emit("status", {"phase": "planning"})
        plan: Plan = self._planner.build_plan(messages, self._registry.catalog())
        state["plan"] = plan
        emit("plan", plan.model_dump(mode="json", by_alias=True))
        messages.append({"role": "system", "content": render_directive(plan)})

        auto_confirm = self._settings.is_confirmation_phrase(latest_user_goal(messages))

        # ── Tool loop ────────────────────────────────────────────────
        for iteration in range(1, self._settings.max_iterations + 1):
            if cancel.is_set():
                return self._cancelled(emit, state)

            state["iterations"] = iteration
            emit("status", {"phase": "thinking", "iteration": iteration})

            try:
                response = self._backend.chat(messages, self._registry.wire_catalog())
            except TransportError as exc:
                return self._errored(emit, exc.to_payload(), state)

            usage = ContextUsage.measure(response, self._settings.context_window, iteration)
            emit("context_usage", usage.model_dump())

            messages.append(
                ConversationTurn(
                    role="assistant",
                    content=response.content,
                    tool_calls=response.tool_calls or None,
                ).to_message()
            )

            if not response.tool_calls:
                for chunk in stream_text(response.content):
                    if cancel.is_set():
                        return self._cancelled(emit, state)
                    state["text"] += chunk
                    emit("delta", {"text": chunk})

                logger.info("tool_runner_finished", iterations=iteration, tool_calls=state["tool_calls"])
                emit("done", {"iterations": iteration, "tool_calls": state["tool_calls"]})
                return RunOutcome(status=RunStatus.DONE, **state)

            emit("status", {"phase": "executing_tools", "count": len(response.tool_calls)})
            for call in response.tool_calls:
                if cancel.is_set():
                    return self._cancelled(emit, state)

                request = ToolCallRequest.from_wire(call)
                emit("tool_call", {"tool": request.tool_name, "arguments": request.arguments})

                name, result, verdict = self._dispatch(request.tool_name, request.arguments, auto_confirm)
                state["tool_calls"] += 1

                emit("critic", {"tool": name, **verdict.model_dump(mode="json")})
                emit("tool_result", {"tool": name, "result": result})
                messages.append({"role": "tool", "content": compact_tool_result(name, result)})

        error = {"category": ErrorCategory.ITERATION_CAP.value, "message": ITERATION_CAP_MESSAGE}
        return self._errored(emit, error, state)
