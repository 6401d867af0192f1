# tools.py
# Tool plugin interface and the built-in tool implementations.
#
# Every tool, built-in or discovered, exposes describe() and invoke(args).
# Tools report failure by returning {"type": "error", ...}; the registry is
# the only caller and never lets the harness touch a tool body directly.

import math
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from tool_runtime.errors import WorkflowNotFound
from tool_runtime.models import RiskTier, ToolDescriptor, error_result
from tool_runtime.storage import RecordStore
from tool_runtime.workflow import WorkflowEngine, normalize_date


@runtime_checkable
class Tool(Protocol):
    def describe(self) -> ToolDescriptor: ...

    def invoke(self, arguments: dict) -> dict: ...


class FunctionTool:
    """Adapts a plain `fn(args) -> dict` into the plugin interface."""

    def __init__(self, descriptor: ToolDescriptor, fn: Callable[[dict], dict]) -> None:
        self._descriptor = descriptor
        self._fn = fn

    def describe(self) -> ToolDescriptor:
        return self._descriptor

    def invoke(self, arguments: dict) -> dict:
        return self._fn(arguments)

    def __repr__(self) -> str:
        return f"FunctionTool({self._descriptor.name!r})"


def function_tool(
    name: str,
    description: str,
    properties: dict[str, Any] | None = None,
    required: list[str] | None = None,
    risk: RiskTier = RiskTier.MEDIUM,
) -> Callable[[Callable[[dict], dict]], FunctionTool]:
    """Decorator turning a function into a FunctionTool."""

    def wrap(fn: Callable[[dict], dict]) -> FunctionTool:
        descriptor = ToolDescriptor(
            name=name,
            description=description,
            parameter_schema={
                "type": "object",
                "properties": properties or {},
                "required": required or [],
            },
            risk_tier=risk,
        )
        return FunctionTool(descriptor, fn)

    return wrap


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _contains(haystack: object, needle: object) -> bool:
    return str(needle).strip().lower() in str(haystack or "").lower()


def _int_arg(args: dict, key: str, default: int) -> int:
    try:
        return int(args.get(key, default))
    except (TypeError, ValueError):
        return default


def _date_of(record: dict, field: str) -> str:
    return str(record.get(field) or "")[:10]


# ---------------------------------------------------------------------------
# Order tools
# ---------------------------------------------------------------------------

_ORDER_FILTERS = ("status", "client_name", "merchant", "phone", "code", "agent", "city", "country")
_SEARCH_FIELDS = ("order_no", "product_name", "client_name", "merchant", "city", "agent", "phone", "code")


def order_tools(records: RecordStore) -> list[FunctionTool]:
    """Read-only order tools over a record store."""

    @function_tool(
        "list_orders",
        "List orders with optional partial-match filters and pagination.",
        properties={
            "page": {"type": "integer", "description": "Page number (default 1)"},
            "per_page": {"type": "integer", "description": "Results per page (default 15, max 50)"},
            "status": {"type": "string", "description": "Filter by order status"},
            "client_name": {"type": "string", "description": "Filter by client name (partial match)"},
            "merchant": {"type": "string", "description": "Filter by merchant (partial match)"},
            "phone": {"type": "string", "description": "Filter by phone (partial match)"},
            "code": {"type": "string", "description": "Filter by code (partial match)"},
            "agent": {"type": "string", "description": "Filter by agent name"},
            "city": {"type": "string", "description": "Filter by city"},
            "country": {"type": "string", "description": "Filter by country"},
            "search": {"type": "string", "description": "Search across the main text columns"},
        },
        risk=RiskTier.LOW,
    )
    def list_orders(args: dict) -> dict:
        filters = {key: args[key] for key in _ORDER_FILTERS if args.get(key) not in (None, "")}
        search = str(args.get("search") or "").strip()

        def matches(record: dict) -> bool:
            if any(not _contains(record.get(key), value) for key, value in filters.items()):
                return False
            if search and not any(_contains(record.get(f), search) for f in _SEARCH_FIELDS):
                return False
            return True

        rows = records.select(matches)
        per_page = max(1, min(50, _int_arg(args, "per_page", 15)))
        last_page = max(1, math.ceil(len(rows) / per_page))
        page = max(1, min(last_page, _int_arg(args, "page", 1)))
        start = (page - 1) * per_page
        return {
            "type": "orders_list",
            "orders": rows[start : start + per_page],
            "total": len(rows),
            "current_page": page,
            "last_page": last_page,
        }

    @function_tool(
        "get_order",
        "Fetch one order by primary key or order number.",
        properties={
            "id": {"type": "integer", "description": "Order primary key"},
            "order_no": {"type": "string", "description": "Order number"},
        },
        risk=RiskTier.LOW,
    )
    def get_order(args: dict) -> dict:
        if args.get("id") not in (None, ""):
            order = records.get(_int_arg(args, "id", 0))
        elif str(args.get("order_no") or "").strip():
            wanted = str(args["order_no"]).strip()
            found = records.select(lambda r: str(r.get("order_no") or "") == wanted)
            order = found[0] if found else None
        else:
            return error_result("Provide id or order_no.")
        if order is None:
            return error_result("Order not found.")
        return {"type": "order", "order": order}

    @function_tool(
        "financial_report",
        "Summarize order count and revenue for a merchant over a date range.",
        properties={
            "merchant": {"type": "string", "description": "Merchant name (partial match)"},
            "start_date": {"type": "string", "description": "Start date (YYYY-MM-DD)"},
            "end_date": {"type": "string", "description": "End date (YYYY-MM-DD)"},
            "city": {"type": "string", "description": "City filter (partial match)"},
            "agent": {"type": "string", "description": "Agent filter"},
        },
        risk=RiskTier.LOW,
    )
    def financial_report(args: dict) -> dict:
        start = normalize_date(args.get("start_date"))
        end = normalize_date(args.get("end_date"))
        for key, parsed in (("start_date", start), ("end_date", end)):
            if args.get(key) and parsed is None:
                return error_result(f"{key} must be a valid YYYY-MM-DD date.")

        def matches(record: dict) -> bool:
            for key in ("merchant", "city", "agent"):
                if args.get(key) and not _contains(record.get(key), args[key]):
                    return False
            order_date = _date_of(record, "order_date")
            if start and order_date < start:
                return False
            if end and order_date > end:
                return False
            return True

        rows = records.select(matches)
        revenue = sum(float(r.get("amount") or 0) for r in rows)
        return {
            "type": "financial_report",
            "merchant": args.get("merchant"),
            "start_date": start,
            "end_date": end,
            "total_orders": len(rows),
            "total_revenue": round(revenue, 2),
        }

    return [list_orders, get_order, financial_report]


# ---------------------------------------------------------------------------
# Workflow tools
# ---------------------------------------------------------------------------


def task_urls(task_id: str) -> dict[str, str]:
    return {
        "task_url": f"/report-tasks/{task_id}",
        "confirm_url": f"/report-tasks/{task_id}/confirm",
    }


def workflow_tools(engine: WorkflowEngine, owner: str | None = None) -> list[FunctionTool]:
    """
    Tools that start and inspect report delivery workflows.

    Confirmation is a human action on the workflow surface and deliberately
    has no tool.
    """

    @function_tool(
        "create_report_task",
        "Start a two-step delivery/remittance workflow for one or more merchants. "
        "The user must confirm each step outside the chat.",
        properties={
            "merchants": {
                "type": "array",
                "description": "Line items: [{merchant, start_date?, end_date?}]",
                "items": {
                    "type": "object",
                    "properties": {
                        "merchant": {"type": "string"},
                        "start_date": {"type": "string", "description": "YYYY-MM-DD"},
                        "end_date": {"type": "string", "description": "YYYY-MM-DD"},
                    },
                },
            },
        },
        required=["merchants"],
        risk=RiskTier.MEDIUM,
    )
    def create_report_task(args: dict) -> dict:
        merchants = args.get("merchants")
        if not isinstance(merchants, list) or not merchants:
            return error_result("The merchants field is required and must be a non-empty list.")
        for index, item in enumerate(merchants):
            if not isinstance(item, dict) or not str(item.get("merchant") or "").strip():
                return error_result(f"merchants.{index}.merchant is required.")
            for key in ("start_date", "end_date"):
                if item.get(key) and normalize_date(item[key]) is None:
                    return error_result(f"merchants.{index}.{key} must match YYYY-MM-DD.")

        task = engine.create(merchants, owner=owner)
        return {**task.model_dump(mode="json"), "type": "task_workflow", **task_urls(task.id)}

    @function_tool(
        "get_report_task_status",
        "Fetch the current state of a report delivery workflow.",
        properties={"task_id": {"type": "string", "description": "Task id UUID"}},
        required=["task_id"],
        risk=RiskTier.LOW,
    )
    def get_report_task_status(args: dict) -> dict:
        task_id = str(args.get("task_id") or "").strip()
        if not task_id:
            return error_result("The task_id field is required.")
        try:
            task = engine.get(task_id, owner=owner)
        except WorkflowNotFound:
            return error_result("Task not found.")
        return {**task.model_dump(mode="json"), "type": "task_workflow", **task_urls(task.id)}

    return [create_report_task, get_report_task_status]
