# run.py
# Entry point. Config and wiring only, no logic lives here.
#
#   tool-runtime chat "Revenue for Acme in May?"
#   tool-runtime task show <task_id>
#   tool-runtime task confirm <task_id> [--expect-step confirm_delivery]
#
# Orders are loaded from a JSON file (--records) into the in-memory record
# store; `task confirm` writes the updated records back to the same file.

import argparse
import json
import signal
import sys
import threading
from pathlib import Path

from tool_runtime import display
from tool_runtime.backends import build_backend
from tool_runtime.config import Settings
from tool_runtime.errors import WorkflowNotFound, WorkflowStepMismatch
from tool_runtime.harness import ToolRunner
from tool_runtime.logging import configure_logging, get_logger
from tool_runtime.models import RunStatus
from tool_runtime.registry import ToolRegistry
from tool_runtime.storage import InMemoryRecordStore, JsonFileDocumentStore
from tool_runtime.tools import order_tools, workflow_tools
from tool_runtime.workflow import WorkflowEngine

logger = get_logger(name=__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_NOT_FOUND = 4
EXIT_STEP_MISMATCH = 12


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _load_records(path: str | None) -> InMemoryRecordStore:
    if not path or not Path(path).exists():
        return InMemoryRecordStore()
    with open(path, encoding="utf-8") as handle:
        return InMemoryRecordStore(json.load(handle))


def _save_records(path: str | None, records: InMemoryRecordStore) -> None:
    if not path:
        return
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(records.all(), handle, indent=2, default=str)


def _engine(settings: Settings, records: InMemoryRecordStore) -> WorkflowEngine:
    return WorkflowEngine(JsonFileDocumentStore(settings.workflow_dir), records)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_chat(args: argparse.Namespace, settings: Settings) -> int:
    records = _load_records(args.records)
    engine = _engine(settings, records)
    registry = ToolRegistry(
        builtins=order_tools(records) + workflow_tools(engine, owner=args.owner),
        discover_entry_points=settings.dynamic_tools_enabled,
    )
    runner = ToolRunner(settings, build_backend(settings), registry)

    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        emitter = display.ConsoleEmitter(verbose=args.verbose)
        outcome = runner.run([{"role": "user", "content": args.prompt}], emitter, cancel)
    finally:
        signal.signal(signal.SIGINT, previous)
    _save_records(args.records, records)
    return EXIT_OK if outcome.status == RunStatus.DONE else EXIT_RUN_FAILED


def cmd_task_show(args: argparse.Namespace, settings: Settings) -> int:
    engine = _engine(settings, _load_records(args.records))
    try:
        task = engine.get(args.task_id, owner=args.owner)
    except WorkflowNotFound as exc:
        display.halt(str(exc))
        return EXIT_NOT_FOUND
    display.workflow_task(task)
    return EXIT_OK


def cmd_task_confirm(args: argparse.Namespace, settings: Settings) -> int:
    records = _load_records(args.records)
    engine = _engine(settings, records)
    try:
        task = engine.confirm(args.task_id, owner=args.owner, expected_step=args.expect_step)
    except WorkflowNotFound as exc:
        display.halt(str(exc))
        return EXIT_NOT_FOUND
    except WorkflowStepMismatch as exc:
        display.halt(str(exc))
        return EXIT_STEP_MISMATCH
    _save_records(args.records, records)
    display.workflow_task(task)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tool-runtime", description="Agentic tool-calling runtime.")
    parser.add_argument("--records", help="JSON file with the order records to operate on")
    parser.add_argument("--owner", default=None, help="Owner id scoping workflow tasks")
    parser.add_argument("--model", default=None, help="Override OLLAMA_MODEL")
    parser.add_argument("--no-planner", action="store_true", help="Skip the planning pass")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show context usage per iteration")

    commands = parser.add_subparsers(dest="command", required=True)

    chat = commands.add_parser("chat", help="Run one prompt through the tool loop")
    chat.add_argument("prompt")
    chat.set_defaults(handler=cmd_chat)

    task = commands.add_parser("task", help="Inspect or confirm a workflow task")
    task_commands = task.add_subparsers(dest="task_command", required=True)

    show = task_commands.add_parser("show", help="Print a workflow task")
    show.add_argument("task_id")
    show.set_defaults(handler=cmd_task_show)

    confirm = task_commands.add_parser("confirm", help="Advance a workflow task one step")
    confirm.add_argument("task_id")
    confirm.add_argument(
        "--expect-step",
        choices=["confirm_delivery", "confirm_remitted"],
        default=None,
        help="Refuse to confirm unless the task is at this step",
    )
    confirm.set_defaults(handler=cmd_task_confirm)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    overrides: dict = {}
    if args.model:
        overrides["model"] = args.model
    if args.no_planner:
        overrides["planner_enabled"] = False
    settings = Settings.from_env(**overrides)

    configure_logging(settings.log_level, settings.log_json)
    logger.debug("cli_command", command=args.command, backend=settings.backend)
    return args.handler(args, settings)


if __name__ == "__main__":
    sys.exit(main())
