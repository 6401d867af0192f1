# critic.py
# Post-execution result validation.
#
# The critic never blocks and never mutates a result. Its verdict is an
# observability signal: emitted as a `critic` event and attached to the
# tool turn so the model can see it.

from collections.abc import Callable

from tool_runtime.logging import get_logger
from tool_runtime.models import CriticVerdict, Severity, is_error

logger = get_logger(name=__name__)

RECORD_CREATION_TOOLS = ("create_task", "create_report_task")

Rule = Callable[[dict], tuple[list[str], Severity]]


def _financial_report(result: dict) -> tuple[list[str], Severity]:
    issues: list[str] = []
    severity = Severity.LOW
    try:
        total_orders = int(result.get("total_orders") or 0)
        total_revenue = float(result.get("total_revenue") or 0)
    except (TypeError, ValueError):
        return ["Financial report returned non-numeric totals."], Severity.HIGH
    if total_orders <= 0:
        issues.append("Financial report returned zero orders.")
    if total_revenue < 0:
        issues.append("Financial report returned negative revenue.")
        severity = Severity.HIGH
    return issues, severity


def _whatsapp_sent(result: dict) -> tuple[list[str], Severity]:
    if result.get("type") != "whatsapp_message_sent":
        return ["WhatsApp send did not return success type."], Severity.HIGH
    return [], Severity.LOW


def _record_created(result: dict) -> tuple[list[str], Severity]:
    if not result.get("id") or not result.get("task_url"):
        return ["Task creation missing id or task_url."], Severity.HIGH
    return [], Severity.LOW


DEFAULT_RULES: dict[str, Rule] = {
    "financial_report": _financial_report,
    "send_whatsapp_message": _whatsapp_sent,
    **{name: _record_created for name in RECORD_CREATION_TOOLS},
}


class Critic:
    def __init__(self, rules: dict[str, Rule] | None = None) -> None:
        self._rules = dict(DEFAULT_RULES if rules is None else rules)

    def evaluate(self, tool_name: str, result: dict) -> CriticVerdict:
        if is_error(result):
            return CriticVerdict(
                ok=False,
                issues=[str(result.get("message") or "Tool failed.")],
                severity=Severity.HIGH,
            )

        if result.get("type") == "policy_blocked":
            return CriticVerdict(
                ok=False,
                issues=[str(result.get("message") or "Blocked by policy.")],
                severity=Severity.MEDIUM,
            )

        rule = self._rules.get(tool_name)
        if rule is None:
            return CriticVerdict(ok=True)

        issues, severity = rule(result)
        verdict = CriticVerdict(ok=not issues, issues=issues, severity=severity)
        if verdict.severity == Severity.HIGH:
            logger.warning("critic_high_severity", tool=tool_name, issues=issues)
        return verdict
