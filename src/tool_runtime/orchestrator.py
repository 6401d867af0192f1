# orchestrator.py
# Bounded retries with failure-driven argument repair for one tool call.
#
#   attempt ─▶ success ─▶ attach _execution, return
#      │
#      └─▶ error ─▶ attempts left? ─▶ repair args (on a copy) ─▶ wait, retry
#                        │
#                        └─▶ no: wrapped error with the full history
#
# Repairs are keyed by tool name and receive the attempt number, so a repair
# may only kick in on a later failure (financial_report drops `city` from the
# second failure on). The whole attempt budget is always spent on failure.

import re
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_incrementing

from tool_runtime.config import Settings
from tool_runtime.logging import get_logger
from tool_runtime.models import ExecutionAttempt, error_result, is_error

logger = get_logger(name=__name__)

InvokeFn = Callable[[str, dict], dict]
Repair = Callable[[dict, int, dict], dict]


# ---------------------------------------------------------------------------
# Argument repair
# ---------------------------------------------------------------------------


def normalize_arguments(args: dict) -> dict:
    """Drop null/empty values and trim strings."""
    return {
        key: value.strip() if isinstance(value, str) else value
        for key, value in args.items()
        if value is not None and value != ""
    }


def _repair_whatsapp_recipient(args: dict, attempt: int, last_error: dict) -> dict:
    to = args.get("to")
    if isinstance(to, str):
        digits = re.sub(r"\D+", "", to)
        if digits:
            args["to"] = "+" + digits
    return args


def _repair_financial_report(args: dict, attempt: int, last_error: dict) -> dict:
    # The city filter is the usual reason a report matches nothing.
    if attempt >= 2:
        args.pop("city", None)
    return args


def _singular(word: str) -> str:
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith(("ses", "xes", "ches", "shes")):
        return word[:-2]
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def _plural(word: str) -> str:
    if word.endswith("y") and len(word) > 1 and word[-2] not in "aeiou":
        return word[:-1] + "ies"
    if word.endswith(("s", "x", "ch", "sh")):
        return word + "es"
    return word + "s"


def _studly(snake: str) -> str:
    return "".join(part.capitalize() for part in snake.split("_") if part)


def _snake(studly: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", studly).lower()


def _repair_model_schema(args: dict, attempt: int, last_error: dict) -> dict:
    message = str(last_error.get("message") or "").lower()
    if "could not resolve model/table" not in message:
        return args

    table = str(args.get("table") or "").strip()
    model = str(args.get("model") or "").strip()

    if table.endswith("_messages"):
        table = table[: -len("_messages")]
        args["table"] = table

    if not model and table:
        parts = table.split("_")
        parts[-1] = _singular(parts[-1])
        args["model"] = _studly("_".join(parts))

    if not table and model:
        base = model.replace("/", "\\").rsplit("\\", 1)[-1]
        parts = _snake(base).split("_")
        parts[-1] = _plural(parts[-1])
        args["table"] = "_".join(parts)

    return args


DEFAULT_REPAIRS: dict[str, Repair] = {
    "send_whatsapp_message": _repair_whatsapp_recipient,
    "financial_report": _repair_financial_report,
    "model_schema_workspace": _repair_model_schema,
}


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ExecutionOrchestrator:
    """
    Runs one tool call under the attempt budget from settings.

    `sleep` is handed to tenacity so tests can skip the backoff.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        repairs: dict[str, Repair] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._repairs = dict(DEFAULT_REPAIRS if repairs is None else repairs)
        self._sleep = sleep

    def repair(self, tool_name: str, args: dict, attempt: int, last_error: dict) -> dict:
        """Return repaired arguments for the next attempt. Never mutates `args`."""
        repaired = normalize_arguments(dict(args))
        tool_repair = self._repairs.get(tool_name)
        if tool_repair is not None:
            repaired = tool_repair(repaired, attempt, last_error)
        return repaired

    def _invoke(self, tool_name: str, args: dict, invoke_fn: InvokeFn) -> dict:
        timeout = self._settings.tool_timeout
        if timeout is None:
            return dict(invoke_fn(tool_name, dict(args)))

        # The worker thread is abandoned on timeout, not killed.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tool-call")
        future = executor.submit(invoke_fn, tool_name, dict(args))
        try:
            return dict(future.result(timeout=timeout))
        except FuturesTimeout:
            logger.warning("tool_call_timed_out", tool=tool_name, timeout=timeout)
            return error_result(
                f"Tool '{tool_name}' timed out after {timeout:g}s.",
                tool=tool_name,
                retryable=True,
            )
        finally:
            executor.shutdown(wait=False)

    def execute(
        self,
        tool_name: str,
        arguments: dict,
        invoke_fn: InvokeFn,
        max_attempts: int | None = None,
    ) -> dict:
        budget = max(1, max_attempts or self._settings.max_attempts)
        backoff = self._settings.retry_backoff
        history: list[ExecutionAttempt] = []
        current = dict(arguments)
        result: dict = {}

        retrying = Retrying(
            stop=stop_after_attempt(budget),
            wait=wait_incrementing(start=backoff, increment=backoff),
            retry=retry_if_result(lambda next_args: next_args is not None),
            sleep=self._sleep,
            reraise=True,
        )

        for attempt in retrying:
            next_args = None
            with attempt:
                number = attempt.retry_state.attempt_number
                result = self._invoke(tool_name, current, invoke_fn)
                history.append(
                    ExecutionAttempt(
                        attempt_number=number,
                        arguments_used=dict(current),
                        result_type=str(result.get("type") or "unknown"),
                        message=str(result.get("message") or ""),
                    )
                )

                if is_error(result) and number < budget:
                    next_args = self.repair(tool_name, current, number, result)
                    logger.info(
                        "tool_call_retrying",
                        tool=tool_name,
                        attempt=number,
                        repaired=next_args != current,
                        error=result.get("message"),
                    )
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(next_args)
            if next_args is not None:
                current = next_args

        attempts = len(history)
        execution = {
            "attempts": attempts,
            "history": [entry.model_dump() for entry in history],
            "recovered": attempts > 1 and not is_error(result),
        }

        if not is_error(result):
            result["_execution"] = execution
            return result

        last_message = str(result.get("message") or "").strip()
        message = "Tool execution failed after retries"
        message = f"{message}: {last_message}" if last_message else f"{message}."

        logger.warning("tool_call_exhausted", tool=tool_name, attempts=attempts, error=last_message)
        return {
            "type": "error",
            "message": message,
            "tool": tool_name,
            "last_error": result,
            "_execution": execution,
        }
