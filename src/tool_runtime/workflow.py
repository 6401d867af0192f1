# workflow.py
# Durable, human-gated bulk workflow over order records.
#
#   confirm_delivery ──confirm()──▶ confirm_remitted ──confirm()──▶ completed
#
# create() snapshots the matching record ids once. Every later step acts on
# exactly that snapshot, never on a fresh query.
#
# confirm() claims the transition with a compare-and-swap write
# (status=processing) before touching any record, so a concurrent
# confirm() of the same task fails instead of applying a step twice.

import re
import uuid
from collections.abc import Callable, Iterable
from datetime import date, datetime
from urllib.parse import urlencode

from tool_runtime.errors import VersionConflict, WorkflowNotFound, WorkflowStepMismatch
from tool_runtime.logging import get_logger
from tool_runtime.models import (
    LineItem,
    ReportLink,
    TaskStatus,
    WorkflowLogEntry,
    WorkflowStep,
    WorkflowTask,
    utcnow,
)
from tool_runtime.storage import DocumentStore, RecordStore

logger = get_logger(name=__name__)

REPORT_EXPORT_PATH = "/reports/financial/export"

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_date(value: object) -> str | None:
    """Return a valid YYYY-MM-DD string, or None for anything else."""
    if not isinstance(value, str) or not _ISO_DATE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip()).isoformat()
    except ValueError:
        return None


def _text(value: object) -> str:
    return str(value or "").strip().lower()


def _date_part(value: object) -> str | None:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and len(value) >= 10:
        return value[:10]
    return None


def entry_criteria(item: LineItem) -> Callable[[dict], bool]:
    """Scheduled, coded orders of the merchant inside the item's date range."""
    merchant = item.merchant.lower()

    def matches(record: dict) -> bool:
        if merchant not in _text(record.get("merchant")):
            return False
        if _text(record.get("status")) != "scheduled":
            return False
        if not str(record.get("code") or "").strip():
            return False
        order_date = _date_part(record.get("order_date"))
        if item.start_date and (order_date is None or order_date < item.start_date):
            return False
        if item.end_date and (order_date is None or order_date > item.end_date):
            return False
        return True

    return matches


def _is_delivered(record: dict) -> bool:
    return _text(record.get("status")) == "delivered"


def report_links(line_items: Iterable[LineItem]) -> list[ReportLink]:
    links: list[ReportLink] = []
    for item in line_items:
        query = {
            key: value
            for key, value in (
                ("merchant", item.merchant),
                ("start_date", item.start_date),
                ("end_date", item.end_date),
                ("date_field", "delivery_date"),
            )
            if value
        }
        links.append(
            ReportLink(merchant=item.merchant, url=f"{REPORT_EXPORT_PATH}?{urlencode(query)}")
        )
    return links


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class WorkflowEngine:
    """
    Report delivery workflow persisted as one document per task id.

    Example:
        engine = WorkflowEngine(JsonFileDocumentStore("./tasks"), records)
        task = engine.create([{"merchant": "Acme"}], owner="7")
        task = engine.confirm(task.id)   # orders -> Delivered
        task = engine.confirm(task.id)   # agent -> remitted, report links
    """

    def __init__(self, documents: DocumentStore, records: RecordStore) -> None:
        self._documents = documents
        self._records = records

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self, task: WorkflowTask, expected_version: int | None) -> WorkflowTask:
        document = task.model_dump(mode="json", exclude={"version"})
        version = self._documents.put(task.id, document, expected_version)
        return task.model_copy(update={"version": version})

    def get(self, task_id: str, owner: str | None = None) -> WorkflowTask:
        loaded = self._documents.get(task_id)
        if loaded is None:
            raise WorkflowNotFound(task_id)
        document, version = loaded
        task = WorkflowTask.model_validate({**document, "version": version})
        if owner is not None and task.owner != owner:
            raise WorkflowNotFound(task_id)
        return task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, line_items: Iterable[dict | LineItem], owner: str | None = None) -> WorkflowTask:
        """Snapshot matching records per line item and persist a new task."""
        items: list[LineItem] = []
        for raw in line_items:
            data = raw.model_dump() if isinstance(raw, LineItem) else dict(raw)
            merchant = str(data.get("merchant") or "").strip()
            if not merchant:
                continue
            item = LineItem(
                merchant=merchant,
                start_date=normalize_date(data.get("start_date")),
                end_date=normalize_date(data.get("end_date")),
            )
            matched = self._records.select(entry_criteria(item))
            item.matched_record_ids = [int(record["id"]) for record in matched]
            items.append(item)

        if not items:
            raise ValueError("At least one line item with a merchant is required.")

        snapshot: list[int] = []
        for item in items:
            for record_id in item.matched_record_ids:
                if record_id not in snapshot:
                    snapshot.append(record_id)

        task = WorkflowTask(
            id=str(uuid.uuid4()),
            owner=owner,
            message="Step 1 ready: confirm to mark matched scheduled+coded orders as Delivered.",
            line_items=items,
            matched_record_ids=snapshot,
            logs=[
                WorkflowLogEntry(
                    event="task_created",
                    details=f"Matched {len(snapshot)} scheduled orders with code.",
                    affected=len(snapshot),
                )
            ],
        )
        task = self._save(task, expected_version=None)
        logger.info("workflow_task_created", task_id=task.id, matched=len(snapshot), items=len(items))
        return task

    def confirm(
        self,
        task_id: str,
        owner: str | None = None,
        expected_step: WorkflowStep | str | None = None,
    ) -> WorkflowTask:
        """
        Advance the task one step.

        A completed task is returned unchanged. Raises WorkflowNotFound for an
        unknown id and WorkflowStepMismatch when `expected_step` is stale or
        another confirm() holds the transition.
        """
        # Read, check and claim under the document lock so two confirms in this
        # process serialize; the version check covers other processes.
        with self._documents.lock(task_id):
            task = self.get(task_id, owner)

            if task.current_step == WorkflowStep.COMPLETED:
                return task

            if task.status == TaskStatus.PROCESSING:
                raise WorkflowStepMismatch(task_id, "Task is already being confirmed.")

            if expected_step is not None and WorkflowStep(expected_step) != task.current_step:
                raise WorkflowStepMismatch(
                    task_id,
                    f"Task is at step {task.current_step.value}, not {WorkflowStep(expected_step).value}.",
                )

            claimed = task.model_copy(deep=True)
            claimed.status = TaskStatus.PROCESSING
            claimed.updated_at = utcnow()
            try:
                claimed = self._save(claimed, expected_version=task.version)
            except VersionConflict as exc:
                raise WorkflowStepMismatch(
                    task_id, "Task was confirmed concurrently; reload it and try again."
                ) from exc

        step = task.current_step
        try:
            advanced = self._apply_step(claimed)
        except Exception as exc:
            failed = claimed.model_copy(deep=True)
            failed.status = TaskStatus.WAITING_CONFIRMATION
            failed.updated_at = utcnow()
            failed.logs.append(WorkflowLogEntry(event="transition_failed", details=str(exc)))
            self._save(failed, expected_version=claimed.version)
            logger.error("workflow_transition_failed", task_id=task_id, step=step.value, error=str(exc))
            raise

        try:
            saved = self._save(advanced, expected_version=claimed.version)
        except VersionConflict as exc:
            raise WorkflowStepMismatch(task_id, "Task changed while it was being confirmed.") from exc

        logger.info(
            "workflow_task_confirmed",
            task_id=task_id,
            from_step=step.value,
            to_step=saved.current_step.value,
            affected=saved.logs[-1].affected,
        )
        return saved

    def _apply_step(self, task: WorkflowTask) -> WorkflowTask:
        ids = list(task.matched_record_ids)
        advanced = task.model_copy(deep=True)
        advanced.updated_at = utcnow()

        if task.current_step == WorkflowStep.CONFIRM_DELIVERY:
            affected = self._records.update(ids, {"status": "Delivered"}) if ids else 0
            advanced.current_step = WorkflowStep.CONFIRM_REMITTED
            advanced.status = TaskStatus.WAITING_CONFIRMATION
            advanced.confirmation_required = True
            advanced.message = "Step 2 ready: confirm to mark agent as remitted for delivered orders."
            advanced.logs.append(
                WorkflowLogEntry(
                    event="status_marked_delivered",
                    details=f"Marked {affected} orders as Delivered.",
                    affected=affected,
                )
            )
            return advanced

        affected = (
            self._records.update(ids, {"agent": "remitted"}, where=_is_delivered) if ids else 0
        )
        advanced.current_step = WorkflowStep.COMPLETED
        advanced.status = TaskStatus.COMPLETED
        advanced.confirmation_required = False
        advanced.message = "Task completed. You can now download reports per merchant."
        advanced.report_links = report_links(task.line_items)
        advanced.logs.append(
            WorkflowLogEntry(
                event="agent_marked_remitted",
                details=f"Marked {affected} orders as remitted.",
                affected=affected,
            )
        )
        return advanced
