# policy.py
# Risk-tier policy gate. Pure: no I/O, no state carried between calls.
#
# A decision is computed fresh for every call because the arguments (the
# `confirmed` flag in particular) change the outcome.

from collections.abc import Iterable, Mapping
from typing import Any

from tool_runtime.config import Settings
from tool_runtime.models import PolicyDecision, RiskTier, ToolDescriptor

CONFIRMATION_REASON = (
    "Explicit confirmation is required for this high-risk action. Re-run with confirmed=true."
)

_TRUTHY = {"1", "true", "yes", "on"}


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return False


class PolicyGate:
    """
    Static risk lookup plus the confirmation rule.

    Tiers come from the settings table first, then from the descriptors in
    `catalog`, then default to medium.
    """

    def __init__(self, settings: Settings, catalog: Iterable[ToolDescriptor] = ()) -> None:
        tiers: dict[str, RiskTier] = {d.name: d.risk_tier for d in catalog}
        tiers.update(settings.risk_tiers)
        self._tiers: Mapping[str, RiskTier] = tiers

    def risk_for(self, tool_name: str) -> RiskTier:
        return self._tiers.get(tool_name, RiskTier.MEDIUM)

    def requires_confirmation(self, tool_name: str) -> bool:
        return self.risk_for(tool_name).needs_confirmation

    def authorize(self, tool_name: str, arguments: Mapping[str, Any]) -> PolicyDecision:
        risk = self.risk_for(tool_name)
        if not risk.needs_confirmation:
            return PolicyDecision(allowed=True, risk_tier=risk, requires_confirmation=False)

        if is_truthy(arguments.get("confirmed", False)):
            return PolicyDecision(allowed=True, risk_tier=risk, requires_confirmation=True)

        return PolicyDecision(
            allowed=False,
            risk_tier=risk,
            requires_confirmation=True,
            reason=CONFIRMATION_REASON,
        )
