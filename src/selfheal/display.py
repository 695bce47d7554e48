# display.py
# All terminal output for the self-healing runner.
#
# This module owns presentation entirely. runner.py and healing.py never
# format strings for the user; they call named functions here.
#
# Colour language:
#   cyan     run lifecycle and routing events
#   blue     model calls (plan / strategy generation)
#   yellow   healing in progress, pauses
#   green    success / confirmed
#   red      failures, give-ups, cancellation
#   magenta  step internals (tool, parameters, result)

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from selfheal.models import HealingStrategy, PlanStep, RunResult, RunStatus, ToolExecutionResult

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
        return escape(value[:max_len]) + "…"
    return escape(value)


def _params(parameters: dict[str, Any]) -> str:
    return json.dumps(parameters, default=str)


# ---------------------------------------------------------------------------
# Pipeline entry
# ---------------------------------------------------------------------------


def banner(model: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Self-Healing Browser Runner[/bold cyan]\n"
            "[dim]Retry with backoff · failure diagnosis · step repair · re-planning[/dim]\n\n"
            f"[dim]Model :[/dim] [white]{model}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def goal_received(goal: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TASK[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(goal)}[/white]",
            title=_label("GOAL", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def calling_planner() -> None:
    console.print()
    console.print(_label("PLANNER", "blue"), "[blue] → Requesting plan from model…[/blue]")


# ---------------------------------------------------------------------------
# Plan display
# ---------------------------------------------------------------------------


def plan_table(steps: list[PlanStep], title: str = "PLAN") -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("Tool", style="bold white", width=18)
    table.add_column("Parameters", style="dim white", width=36)
    table.add_column("Expected outcome", style="white")

    for step in steps:
        optional = " [dim](optional)[/dim]" if step.is_optional else ""
        table.add_row(
            str(step.index),
            step.tool_name + optional,
            _mono(_params(step.parameters), 34),
            escape(step.expected_outcome),
        )

    console.print(Panel(table, title=_label(title, "cyan"), border_style="cyan", padding=(0, 1)))


# ---------------------------------------------------------------------------
# Execution loop
# ---------------------------------------------------------------------------


def run_started(task_id: str, total: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]RUN {task_id} · {total} step(s)[/cyan]", style="cyan"))


def step_start(step: PlanStep, total: int) -> None:
    console.print()
    console.print(
        f"[bold cyan]  STEP [{step.index + 1}/{total}][/bold cyan]  "
        f"[magenta]{step.tool_name}[/magenta]  [dim]{_mono(_params(step.parameters), 80)}[/dim]"
    )


def step_succeeded(result: ToolExecutionResult) -> None:
    retried = f"  [dim]after {result.attempt_count} attempts[/dim]" if result.was_retried else ""
    healed = "  [bold yellow]healed[/bold yellow]" if result.metadata.get("healed") else ""
    console.print(f"  [bold green]✓ {result.tool_name}[/bold green]  "
                  f"[dim]{result.duration:.2f}s[/dim]{retried}{healed}")


def step_failed(result: ToolExecutionResult, optional: bool = False) -> None:
    message = result.error.message if result.error else "unknown error"
    suffix = "  [dim](optional, continuing)[/dim]" if optional else ""
    console.print(
        f"  [bold red]✗ {result.tool_name}[/bold red]  [white]{_mono(message, 140)}[/white]"
        f"  [dim]attempts={result.attempt_count}[/dim]{suffix}"
    )


def paused(task_id: str) -> None:
    console.print(_label("PAUSED", "yellow"), f"[yellow] Task {task_id} waiting for resume…[/yellow]")


def resumed(task_id: str) -> None:
    console.print(_label("RESUMED", "green"), f"[green] Task {task_id} continuing.[/green]")


# ---------------------------------------------------------------------------
# Healing
# ---------------------------------------------------------------------------


def healing_started(index: int, attempt: int, ceiling: int, classification: str) -> None:
    console.print(
        f"  [yellow]↳ Healing step {index}[/yellow] "
        f"[dim yellow]attempt {attempt}/{ceiling} · failure={classification}[/dim yellow]"
    )


def strategy_selected(index: int, strategy: HealingStrategy) -> None:
    console.print(
        f"  [yellow]↳ Strategy[/yellow] [bold white]{strategy.type.value}[/bold white]"
        f"  [dim]confidence={strategy.confidence:.2f} priority={strategy.priority}[/dim]"
        f"  [white]{_mono(strategy.description or strategy.name, 100)}[/white]"
    )


def replanned(steps: list[PlanStep]) -> None:
    plan_table(steps, title="REPLAN")


def healing_gave_up(index: int, reason: str) -> None:
    console.print(f"  [bold red]↳ Giving up on step {index}:[/bold red] [white]{_mono(reason, 140)}[/white]")


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

_STATUS_COLOR = {
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
    RunStatus.CANCELLED: "red",
}


def run_summary(result: RunResult) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Step", justify="center", width=6)
    table.add_column("Tool", width=18)
    table.add_column("OK", justify="center", width=4)
    table.add_column("Attempts", justify="center", width=9)
    table.add_column("Healed", justify="center", width=7)
    table.add_column("Detail", style="dim white")

    for index, step_result in enumerate(result.step_results):
        ok = "[bold green]✓[/bold green]" if step_result.success else "[bold red]✗[/bold red]"
        healed = "✓" if step_result.metadata.get("healed") else ""
        detail = step_result.error.message if step_result.error else str(step_result.result or "")
        table.add_row(str(index), step_result.tool_name, ok, str(step_result.attempt_count),
                      healed, _mono(detail, 60))

    stats = result.statistics
    color = _STATUS_COLOR.get(result.final_status, "yellow")
    console.print(
        Panel(
            table,
            title=_label(f"RUN {result.final_status.value.upper()}", color),
            subtitle=(
                f"[dim]{stats.succeeded_steps}/{stats.total_steps} ok · {stats.healed_steps} healed · "
                f"{stats.total_retries} retries · {result.duration:.2f}s[/dim]"
            ),
            border_style=color,
            padding=(0, 1),
        )
    )


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
