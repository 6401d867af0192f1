# display.py
# All terminal output for the tool runtime CLI.
#
# This module owns presentation entirely. harness.py never formats strings;
# it emits (event_type, payload) pairs and ConsoleEmitter renders them.
# Swap this file to change the entire UI.
#
# Colour language:
#   cyan    : planning / routing events
#   blue    : model calls and context usage
#   yellow  : policy and critic checkpoints
#   green   : success / completed
#   red     : failures, errors, cancellations
#   magenta : tool call internals (call / result)

import json

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from tool_runtime.models import WorkflowTask

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _visible(result: dict) -> dict:
    return {key: value for key, value in result.items() if not key.startswith("_")}


# ---------------------------------------------------------------------------
# Event stream
# ---------------------------------------------------------------------------


class ConsoleEmitter:
    """
    Callable event sink for ToolRunner.run().

    Deltas are printed inline as they arrive; every other event is rendered
    as a line or a panel.
    """

    def __init__(self, out: Console | None = None, verbose: bool = False) -> None:
        self.console = out or console
        self.verbose = verbose
        self._streaming = False

    def __call__(self, event: str, payload: dict) -> None:
        if event != "delta" and self._streaming:
            self.console.print()
            self._streaming = False

        handler = getattr(self, f"_on_{event}", None)
        if handler is not None:
            handler(payload)

    # ------------------------------------------------------------------

    def _on_status(self, payload: dict) -> None:
        phase = payload.get("phase", "")
        if phase == "planning":
            self.console.print()
            self.console.print(_label("RUNNER", "cyan"), "[cyan] → Building execution plan…[/cyan]")
        elif phase == "thinking":
            self.console.print(
                _label("MODEL", "blue"),
                f"[blue] → Iteration {payload.get('iteration')}[/blue]",
            )
        elif phase == "executing_tools":
            self.console.print(
                _label("RUNNER", "cyan"),
                f"[cyan] → Executing {payload.get('count')} tool call(s)[/cyan]",
            )

    def _on_plan(self, payload: dict) -> None:
        table = Table(
            box=box.SIMPLE_HEAVY,
            border_style="cyan",
            show_header=True,
            header_style="bold cyan",
            padding=(0, 1),
        )
        table.add_column("Step", justify="center", width=6)
        table.add_column("Tool", style="bold white", width=24)
        table.add_column("Risk", width=8)
        table.add_column("Action", style="white")

        for step in payload.get("steps", []):
            table.add_row(
                str(step.get("step")),
                escape(str(step.get("tool") or "none")),
                str(step.get("risk")),
                escape(str(step.get("action", ""))),
            )

        self.console.print(
            Panel(
                table,
                title=_label("PLAN", "cyan"),
                subtitle=f"[dim]Goal: {escape(_mono(str(payload.get('goal', '')), 80))}[/dim]",
                border_style="cyan",
                padding=(0, 1),
            )
        )

    def _on_context_usage(self, payload: dict) -> None:
        if not self.verbose:
            return
        self.console.print(
            f"  [dim blue]context {payload.get('context_used_pct')}% used, "
            f"{payload.get('context_remaining')} tokens left[/dim blue]"
        )

    def _on_tool_call(self, payload: dict) -> None:
        self.console.print(
            f"  [magenta]Call[/magenta]     [bold white]{escape(str(payload.get('tool')))}[/bold white]"
            f"  [dim]{escape(_mono(json.dumps(payload.get('arguments', {}), default=str)))}[/dim]"
        )

    def _on_tool_result(self, payload: dict) -> None:
        result = payload.get("result", {})
        kind = result.get("type")
        if kind == "error":
            color = "red"
        elif kind == "policy_blocked":
            color = "yellow"
        else:
            color = "white"
        attempts = (result.get("_execution") or {}).get("attempts")
        suffix = f" [dim](attempts: {attempts})[/dim]" if attempts and attempts > 1 else ""
        self.console.print(
            f"  [magenta]Result[/magenta]   [{color}]{escape(_mono(json.dumps(_visible(result), default=str), 140))}[/{color}]"
            + suffix
        )

    def _on_critic(self, payload: dict) -> None:
        if payload.get("ok"):
            return
        issues = "; ".join(payload.get("issues", []))
        self.console.print(
            f"  [yellow]Critic[/yellow]   [bold yellow]{payload.get('severity')}[/bold yellow]"
            f"  [white]{escape(_mono(issues, 140))}[/white]"
        )

    def _on_delta(self, payload: dict) -> None:
        if not self._streaming:
            self.console.print()
            self.console.print(_label("RESULT", "green"))
            self._streaming = True
        self.console.print(payload.get("text", ""), end="", markup=False, highlight=False)

    def _on_error(self, payload: dict) -> None:
        body = f"[bold white]{escape(str(payload.get('message', '')))}[/bold white]"
        if payload.get("details"):
            body += f"\n[dim]{escape(_mono(str(payload['details']), 400))}[/dim]"
        self.console.print()
        self.console.print(
            Panel(
                body,
                title=_label(f"ERROR: {str(payload.get('category', '')).upper()}", "red"),
                border_style="red",
                padding=(0, 2),
            )
        )

    def _on_done(self, payload: dict) -> None:
        self.console.print()
        if payload.get("cancelled"):
            self.console.print(Rule("[red]CANCELLED[/red]", style="red"))
            return
        self.console.print(
            Rule(
                f"[dim]done: {payload.get('iterations', 0)} iteration(s), "
                f"{payload.get('tool_calls', 0)} tool call(s)[/dim]",
                style="dim",
            )
        )


# ---------------------------------------------------------------------------
# Workflow tasks
# ---------------------------------------------------------------------------


def workflow_task(task: WorkflowTask, out: Console | None = None) -> None:
    out = out or console
    color = "green" if task.current_step.value == "completed" else "yellow"

    table = Table(box=box.SIMPLE, show_header=True, header_style=f"bold {color}", padding=(0, 1))
    table.add_column("Merchant", style="bold white")
    table.add_column("From", width=12)
    table.add_column("To", width=12)
    table.add_column("Matched", justify="right", width=8)
    for item in task.line_items:
        table.add_row(
            escape(item.merchant),
            escape(item.start_date or "-"),
            escape(item.end_date or "-"),
            str(item.matched_count),
        )

    out.print()
    out.print(
        Panel(
            f"[white]{escape(task.message)}[/white]\n\n"
            f"[dim]Status :[/dim] [white]{task.status.value}[/white]\n"
            f"[dim]Step   :[/dim] [white]{task.current_step.value}[/white]\n"
            f"[dim]Records:[/dim] [white]{task.matched_count}[/white]",
            title=_label(f"TASK {task.id}", color),
            border_style=color,
            padding=(0, 2),
        )
    )
    out.print(table)

    for entry in task.logs:
        out.print(
            f"  [dim]{entry.time.isoformat(timespec='seconds')}[/dim]  "
            f"[bold white]{escape(entry.event)}[/bold white]  [white]{escape(entry.details)}[/white]"
        )
    for link in task.report_links:
        out.print(
            f"  [green]report[/green]  [white]{escape(link.merchant)}[/white]  [dim]{escape(link.url)}[/dim]"
        )
    out.print()


def halt(reason: str, out: Console | None = None) -> None:
    out = out or console
    out.print()
    out.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    out.print()
