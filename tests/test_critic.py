from tool_runtime.critic import Critic
from tool_runtime.models import Severity

critic = Critic()


# ---------------------------------------------------------------------------
# Generic verdicts
# ---------------------------------------------------------------------------


def test_error_result_is_high_severity():
    verdict = critic.evaluate("list_orders", {"type": "error", "message": "Database offline."})
    assert verdict.ok is False
    assert verdict.severity == Severity.HIGH
    assert verdict.issues == ["Database offline."]


def test_policy_blocked_is_medium_severity():
    verdict = critic.evaluate(
        "send_email",
        {"type": "policy_blocked", "message": "Explicit confirmation is required."},
    )
    assert verdict.ok is False
    assert verdict.severity == Severity.MEDIUM


def test_tools_without_rules_pass():
    verdict = critic.evaluate("list_orders", {"type": "orders_list", "orders": []})
    assert verdict.ok is True
    assert verdict.issues == []


# ---------------------------------------------------------------------------
# Domain rules
# ---------------------------------------------------------------------------


def test_financial_report_zero_orders_is_a_low_note():
    verdict = critic.evaluate("financial_report", {"type": "financial_report", "total_orders": 0, "total_revenue": 0})
    assert verdict.ok is False
    assert verdict.severity == Severity.LOW
    assert verdict.issues == ["Financial report returned zero orders."]


def test_financial_report_negative_revenue_is_high():
    verdict = critic.evaluate(
        "financial_report", {"type": "financial_report", "total_orders": 3, "total_revenue": -10}
    )
    assert verdict.severity == Severity.HIGH
    assert "Financial report returned negative revenue." in verdict.issues


def test_financial_report_healthy():
    verdict = critic.evaluate(
        "financial_report", {"type": "financial_report", "total_orders": 3, "total_revenue": 99.5}
    )
    assert verdict.ok is True


def test_whatsapp_requires_success_type():
    assert critic.evaluate("send_whatsapp_message", {"type": "whatsapp_message_sent"}).ok is True
    verdict = critic.evaluate("send_whatsapp_message", {"type": "tool_result"})
    assert verdict.ok is False
    assert verdict.severity == Severity.HIGH


def test_record_creation_requires_id_and_task_url():
    ok = critic.evaluate("create_report_task", {"type": "task_workflow", "id": "abc", "task_url": "/report-tasks/abc"})
    assert ok.ok is True

    missing = critic.evaluate("create_task", {"type": "task", "id": 7})
    assert missing.ok is False
    assert missing.severity == Severity.HIGH
    assert missing.issues == ["Task creation missing id or task_url."]


def test_critic_never_mutates_result():
    result = {"type": "financial_report", "total_orders": 0, "total_revenue": 0}
    snapshot = dict(result)
    critic.evaluate("financial_report", result)
    assert result == snapshot


def test_custom_rules_replace_defaults():
    custom = Critic(rules={"list_orders": lambda result: (["empty"], Severity.MEDIUM)})
    verdict = custom.evaluate("list_orders", {"type": "orders_list"})
    assert verdict.issues == ["empty"]
    assert custom.evaluate("financial_report", {"type": "financial_report"}).ok is True
