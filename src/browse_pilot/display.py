# display.py
# All terminal output for browse-pilot runs.
#
# This module owns presentation entirely. harness.py never formats strings;
# it calls named functions here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan    - run lifecycle and routing
#   blue    - reflection output
#   magenta - tool dispatch and observations
#   yellow  - guards, rejections, pauses
#   green   - success
#   red     - failures

import json

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from browse_pilot.models import ReflectionState, SubGoal, TerminalResult, TerminalStatus, ToolResult

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ")
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _args(args: dict) -> str:
    return _mono(json.dumps(args, default=str, ensure_ascii=False), 80)


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


def banner(model: str, max_steps: int) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]browse-pilot[/bold cyan]\n"
            "[dim]reflect → gate → act, with budgets, loop guards and sub-goal coverage[/dim]\n\n"
            f"[dim]Model     :[/dim] [white]{model}[/white]\n"
            f"[dim]Max steps :[/dim] [white]{max_steps}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def run_started(goal: str, sub_goals: list[SubGoal]) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TASK[/cyan]", style="cyan"))
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold cyan", padding=(0, 1))
    table.add_column("ID", width=6)
    table.add_column("Sub-goal", style="white")
    for sg in sub_goals:
        table.add_row(sg.id, sg.text)
    console.print(
        Panel(
            table,
            title=_label("GOAL", "cyan"),
            subtitle=f"[dim]{_mono(goal, 100)}[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


def step_start(step: int, max_steps: int) -> None:
    console.print()
    console.print(f"[bold cyan]  STEP [{step + 1}/{max_steps}][/bold cyan]")


def reflection(state: ReflectionState, fallback: bool = False) -> None:
    tag = "[yellow]fallback[/yellow] " if fallback else ""
    components = state.components
    penalty = ""
    if components is not None and components.raw != components.effective:
        penalty = f" [dim](raw {components.raw:.0%})[/dim]"
    console.print(
        f"  [blue]Reflect[/blue]  {tag}confidence=[white]{state.confidence:.0%}[/white]{penalty}"
        f"  sufficient=[white]{'yes' if state.sufficiency else 'no'}[/white]"
    )
    for fact in state.facts[:3]:
        console.print(f"           [dim]fact:[/dim] [white]{_mono(fact, 110)}[/white]")
    for unknown in state.unknowns[:2]:
        console.print(f"           [dim]gap :[/dim] [dim white]{_mono(unknown, 110)}[/dim white]")


def action(tool: str, args: dict, parallel: bool = False) -> None:
    marker = " [dim](parallel)[/dim]" if parallel else ""
    console.print(f"  [magenta]Action[/magenta]   [bold white]{tool}[/bold white]  [dim]{_args(args)}[/dim]{marker}")


def observation(result: ToolResult) -> None:
    payload = result.model_dump(exclude_none=True)
    if not result.success:
        console.print(
            f"  [magenta]Observe[/magenta]  [red]{payload.get('code', 'ERROR')}[/red] "
            f"[white]{_mono(str(payload.get('reason', '')), 120)}[/white]"
        )
        return
    payload.pop("success", None)
    console.print(f"  [magenta]Observe[/magenta]  [white]{_mono(json.dumps(payload, default=str), 140)}[/white]")


def guard_blocked(tool: str, code: str, reason: str, next_tool: str | None = None) -> None:
    hint = f" [dim]→ {next_tool}[/dim]" if next_tool else ""
    console.print(
        f"  [yellow]Guard[/yellow]    [bold yellow]{code}[/bold yellow] on [white]{tool}[/white]"
        f"  [dim]{_mono(reason, 100)}[/dim]{hint}"
    )


def completion_rejected(code: str, reason: str, streak: int) -> None:
    console.print(
        f"  [yellow]Gate[/yellow]     [bold yellow]{code}[/bold yellow]  [white]{_mono(reason, 110)}[/white]"
        f"  [dim](streak {streak})[/dim]"
    )


def step_error(message: str, retry_in_s: float | None = None) -> None:
    retry = f"  [dim]retrying in {retry_in_s:.0f}s[/dim]" if retry_in_s else ""
    console.print(f"  [red]Error[/red]    [white]{_mono(message, 140)}[/white]{retry}")


# ---------------------------------------------------------------------------
# Pauses
# ---------------------------------------------------------------------------


def paused(kind: str, reason: str, blockers: list[str] | None = None) -> None:
    lines = [f"[bold yellow]{reason}[/bold yellow]"]
    for blocker in blockers or []:
        lines.append(f"[white]- {blocker}[/white]")
    lines.append("")
    lines.append("[dim]Waiting for the operator: resume, abort, or request a partial result.[/dim]")
    console.print()
    console.print(
        Panel(
            "\n".join(lines),
            title=_label(f"PAUSED: {kind.upper()}", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def resumed(guidance: str) -> None:
    detail = f" with guidance: [white]{_mono(guidance, 120)}[/white]" if guidance else ""
    console.print(_label("RESUMED", "cyan"), f"[cyan] Run continues{detail}[/cyan]")


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


_STATUS_COLOR = {
    TerminalStatus.COMPLETE: "green",
    TerminalStatus.PARTIAL: "yellow",
    TerminalStatus.TIMEOUT: "yellow",
    TerminalStatus.STUCK: "red",
    TerminalStatus.FAILED: "red",
}


def final_result(result: TerminalResult) -> None:
    color = _STATUS_COLOR.get(result.status, "white")
    body = []
    if result.reason:
        body.append(f"[bold white]{result.reason}[/bold white]\n")
    if result.summary:
        body.append(f"[white]{result.summary}[/white]\n")
    if result.answer:
        body.append(f"[white]{result.answer}[/white]")
    if result.partial_result and result.partial_result.remaining_subgoals:
        body.append("\n[dim]Remaining:[/dim]")
        body.extend(f"[dim]- {item}[/dim]" for item in result.partial_result.remaining_subgoals)

    metrics = result.metrics
    console.print()
    console.print(
        Panel(
            "\n".join(body) or "[dim](no answer)[/dim]",
            title=_label(f"RESULT: {result.status.value.upper()}", color),
            subtitle=(
                f"[dim]{result.steps} step(s) · {metrics.llm_calls} llm call(s) · "
                f"{metrics.tool_calls} tool call(s) · {metrics.tokens.total_tokens} tokens[/dim]"
            ),
            border_style=color,
            padding=(1, 2),
        )
    )
    console.print()
