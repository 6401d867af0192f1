# config.py
# Immutable runtime settings.
#
# Built once at process start (Settings.from_env) and passed by constructor
# to every component that needs it. Nothing mutates it afterwards.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from tool_runtime.models import RiskTier

DEFAULT_SYSTEM_PROMPT = """\
You are an operations assistant with access to tools for querying orders, \
building reports, sending messages and running confirmed bulk workflows.

Call tools whenever the answer depends on live data. Never invent record \
identifiers, totals or links; use what the tools return.

High-risk actions (sending messages, creating or editing orders) require \
explicit confirmation. When a tool answers with policy_blocked, ask the user \
to confirm and re-run the call with confirmed=true only after they agree.\
"""

DEFAULT_RISK_TIERS: dict[str, RiskTier] = {
    "list_orders": RiskTier.LOW,
    "get_order": RiskTier.LOW,
    "financial_report": RiskTier.LOW,
    "get_report_task_status": RiskTier.LOW,
    "create_task": RiskTier.MEDIUM,
    "create_report_task": RiskTier.MEDIUM,
    "setup_integration": RiskTier.MEDIUM,
    "scaffold_mcp_tool": RiskTier.MEDIUM,
    "model_schema_workspace": RiskTier.MEDIUM,
    "send_email": RiskTier.HIGH,
    "send_grid_email": RiskTier.HIGH,
    "send_whatsapp_message": RiskTier.HIGH,
    "create_order": RiskTier.HIGH,
    "edit_order": RiskTier.HIGH,
}

DEFAULT_CONFIRMATION_PHRASES: tuple[str, ...] = (
    "yes",
    "yes.",
    "confirm",
    "confirmed",
    "i confirm",
    "go ahead",
    "proceed",
    "do it",
    "approve",
    "approved",
)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


class Settings(BaseModel):
    """Policy and transport configuration for one process."""

    model_config = ConfigDict(frozen=True)

    backend: str = Field(default="ollama", pattern="^(ollama|openai)$")
    base_url: str = "http://127.0.0.1:11434"
    api_key: str | None = None
    model: str = ""
    timeout: float = Field(default=120.0, gt=0)
    tool_timeout: float | None = Field(default=60.0, gt=0)
    context_window: int = Field(default=234000, ge=1)

    max_iterations: int = Field(default=8, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=0.2, ge=0)

    planner_enabled: bool = True
    planner_timeout: float = Field(default=12.0, ge=3, le=20)
    dynamic_tools_enabled: bool = True

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    risk_tiers: dict[str, RiskTier] = Field(default_factory=lambda: dict(DEFAULT_RISK_TIERS))
    confirmation_phrases: tuple[str, ...] = DEFAULT_CONFIRMATION_PHRASES

    workflow_dir: str = "./storage/report-tasks"
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """
        Read settings from the process environment (and a .env file).

        Keyword overrides win over the environment; they are mainly for
        tests and the CLI.
        """
        load_dotenv()

        timeout = _env_float("OLLAMA_TIMEOUT", 120.0)
        planner_timeout = _env_float("OLLAMA_PLANNER_TIMEOUT", min(timeout, 12.0))
        tool_timeout = _env_float("TOOL_RUNTIME_TOOL_TIMEOUT", 60.0)

        values = {
            "backend": (os.getenv("TOOL_RUNTIME_BACKEND") or "ollama").strip().lower(),
            "base_url": os.getenv("OLLAMA_BASE_URL") or "http://127.0.0.1:11434",
            "api_key": os.getenv("OPENAI_API_KEY") or None,
            "model": (os.getenv("OLLAMA_MODEL") or "").strip(),
            "timeout": timeout,
            "tool_timeout": tool_timeout if tool_timeout > 0 else None,
            "context_window": _env_int("OLLAMA_CONTEXT_WINDOW", 234000),
            "max_iterations": _env_int("TOOL_RUNTIME_MAX_ITERATIONS", 8),
            "max_attempts": _env_int("TOOL_RUNTIME_MAX_ATTEMPTS", 3),
            "retry_backoff": _env_float("TOOL_RUNTIME_RETRY_BACKOFF", 0.2),
            "planner_enabled": _env_bool("OLLAMA_ENABLE_PLANNER", True),
            "planner_timeout": max(3.0, min(20.0, planner_timeout)),
            "dynamic_tools_enabled": _env_bool("OLLAMA_ENABLE_DYNAMIC_TOOLS", True),
            "system_prompt": os.getenv("OLLAMA_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
            "workflow_dir": os.getenv("TOOL_RUNTIME_WORKFLOW_DIR") or "./storage/report-tasks",
            "log_level": (os.getenv("TOOL_RUNTIME_LOG_LEVEL") or "INFO").upper(),
            "log_json": _env_bool("TOOL_RUNTIME_LOG_JSON", False),
        }
        values.update(overrides)
        return cls(**values)

    def risk_for(self, tool_name: str) -> RiskTier:
        return self.risk_tiers.get(tool_name, RiskTier.MEDIUM)

    def is_confirmation_phrase(self, text: str) -> bool:
        return text.strip().lower() in self.confirmation_phrases
