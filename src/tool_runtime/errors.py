# errors.py
# Exception hierarchy and error categories for the tool runtime.
#
# Tool failures never travel as exceptions: they are result maps with
# type == "error". Exceptions are reserved for the model backend, the
# workflow surface and the document store.

from enum import Enum


class ErrorCategory(str, Enum):
    """Category attached to terminal `error` events and run outcomes."""

    TRANSPORT = "transport"
    ITERATION_CAP = "iteration_cap"
    TOOL_EXECUTION = "tool_execution"
    POLICY_DENIED = "policy_denied"
    WORKFLOW_NOT_FOUND = "workflow_not_found"
    WORKFLOW_STEP_MISMATCH = "workflow_step_mismatch"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolRuntimeError(Exception):
    """Base class for every exception raised by the runtime."""

    category: ErrorCategory | None = None


class TransportError(ToolRuntimeError):
    """Model backend unreachable, timed out, or answered with a non-2xx status.

    Always terminal for the current run. Never retried at the loop level.
    """

    category = ErrorCategory.TRANSPORT

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_payload(self) -> dict:
        payload: dict = {"category": self.category.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        if self.status_code is not None:
            payload["upstream_status"] = self.status_code
        return payload


class WorkflowNotFound(ToolRuntimeError):
    """No workflow task with this id is visible to the caller."""

    category = ErrorCategory.WORKFLOW_NOT_FOUND

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class WorkflowStepMismatch(ToolRuntimeError):
    """The task is not at the step the caller expected, or is mid-transition."""

    category = ErrorCategory.WORKFLOW_STEP_MISMATCH

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class VersionConflict(ToolRuntimeError):
    """A compare-and-swap write lost against a concurrent writer."""

    def __init__(self, key: str, expected: int | None, actual: int | None) -> None:
        super().__init__(
            f"Version conflict on {key!r}: expected {expected}, found {actual}."
        )
        self.key = key
        self.expected = expected
        self.actual = actual
