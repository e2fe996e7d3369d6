# display.py
# All terminal output for the script runner.
#
# This module owns presentation entirely. The runners never format strings
# for the user; run.py calls named functions here. Script output is passed
# through untouched by the core; ANSI SGR sequences in it are rendered here.
#
# Colour language:
#   cyan: scaffolding (banners, step boundaries)
#   green: success / exit code 0
#   red: failures, launch errors, halts
#   yellow: user stop, pending work, search matches
#   dim: metadata (paths, dates, arguments)

import re

from rich import box
from rich.ansi import AnsiDecoder
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from scriptlet_runner.config import Settings
from scriptlet_runner.events import ChainOutcome
from scriptlet_runner.models import (
    ExecutionOutcome,
    RunHistoryEntry,
    ScanLocation,
    Script,
    ScriptChain,
    StepState,
    StepStatus,
)

console = Console()

_ANSI_SGR = re.compile(r"\x1b\[[0-9;]*m")
_PARTIAL_ESCAPE = re.compile(r"\x1b(?:\[[0-9;]*)?\Z")

MATCH_STYLE = "black on yellow"

_STATUS_STYLE = {
    StepState.PENDING: ("○", "dim"),
    StepState.RUNNING: ("●", "bold cyan"),
    StepState.COMPLETED: ("✓", "green"),
    StepState.FAILED: ("✗", "bold red"),
    StepState.SKIPPED: ("–", "yellow"),
}


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


def _exit_style(exit_code: int | None) -> str:
    if exit_code is None:
        return "yellow"
    return "green" if exit_code == 0 else "red"


# ---------------------------------------------------------------------------
# ANSI rendering and search
# ---------------------------------------------------------------------------


def render_ansi(text: str) -> Text:
    """Styled rich Text from output containing ANSI SGR sequences."""
    return Text.from_ansi(text, end="\n" if text.endswith("\n") else "")


def strip_ansi(text: str) -> str:
    return _ANSI_SGR.sub("", text)


def highlight_matches(text: str, query: str, style: str = MATCH_STYLE) -> tuple[Text, int]:
    """Render `text` with every case-insensitive occurrence of `query` highlighted."""
    rendered = render_ansi(text)
    if not query:
        return rendered, 0
    count = rendered.highlight_words([query], style=style, case_sensitive=False)
    return rendered, count


# ---------------------------------------------------------------------------
# Live output
# ---------------------------------------------------------------------------


class LiveOutput:
    """
    Prints one run's output chunks as they arrive.

    A single AnsiDecoder lives for the whole run, so colour set in one pipe
    read still styles the text of the next. An escape sequence cut off at
    the end of a chunk is held back until the rest of it arrives.
    """

    def __init__(self) -> None:
        self._decoder = AnsiDecoder()
        self._pending = ""

    def write(self, chunk: str) -> None:
        text = self._pending + chunk
        partial = _PARTIAL_ESCAPE.search(text)
        if partial:
            text, self._pending = text[: partial.start()], text[partial.start():]
        else:
            self._pending = ""

        lines = text.split("\n")
        for index, line in enumerate(lines):
            newline = index < len(lines) - 1
            if line or newline:
                console.print(self._decoder.decode_line(line), end="\n" if newline else "")


def run_start(script: Script, command: list[str]) -> None:
    console.print()
    console.print(Rule(f"[cyan]RUN — {escape(script.display_name)}[/cyan]", style="cyan"))
    console.print(f"[dim]  {escape(_mono(' '.join(command), 200))}[/dim]")
    console.print()


def run_finished(outcome: ExecutionOutcome) -> None:
    console.print()
    if outcome.launch_failed:
        console.print(
            Panel(
                f"[bold red]Script could not be started.[/bold red]\n[white]{escape(outcome.launch_error or '')}[/white]",
                title=_label("LAUNCH FAILURE ✗", "red"),
                border_style="red",
                padding=(0, 2),
            )
        )
        return
    style = _exit_style(outcome.exit_code)
    glyph = "✓" if outcome.exit_code == 0 else "✗"
    console.print(f"[bold {style}]{glyph} Exit code: {outcome.exit_code}[/bold {style}]")


def chain_start(chain: ScriptChain) -> None:
    console.print()
    console.print(
        Rule(f"[cyan]CHAIN — {escape(chain.name)} ({chain.step_count} step(s))[/cyan]", style="cyan")
    )


def chain_finished(
    chain: ScriptChain,
    statuses: dict[str, StepStatus],
    outcome: ChainOutcome,
    overall_success: bool,
) -> None:
    console.print()
    console.print(chain_status_table(chain, statuses))

    if outcome is ChainOutcome.STOPPED_BY_USER:
        title, color, message = "STOPPED", "yellow", "Chain stopped by user."
    elif outcome is ChainOutcome.STOPPED_ON_ERROR:
        title, color, message = "HALTED ✗", "red", "Chain stopped on a failing step."
    elif overall_success:
        title, color, message = "COMPLETED ✓", "green", "All steps succeeded."
    else:
        title, color, message = "COMPLETED", "red", "Some steps failed."

    console.print(
        Panel(
            f"[bold {color}]{message}[/bold {color}]",
            title=_label(title, color),
            border_style=color,
            padding=(0, 2),
        )
    )


def search_results(text: str, query: str) -> int:
    rendered, count = highlight_matches(text, query)
    console.print()
    console.print(Rule(f"[yellow]SEARCH — {escape(repr(query))}: {count} match(es)[/yellow]", style="yellow"))
    console.print(rendered)
    return count


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------


def script_table(scripts: list[Script], icons: dict[str, str] | None = None) -> Table:
    icons = icons or {}
    table = Table(box=box.SIMPLE_HEAVY, header_style="bold cyan", padding=(0, 1))
    table.add_column("#", justify="right", width=4)
    table.add_column("Script", style="bold white")
    table.add_column("Description", style="white")
    table.add_column("Arguments", style="dim")
    table.add_column("Path", style="dim")

    for index, script in enumerate(scripts, start=1):
        name = escape(script.display_name)
        if script.path in icons:
            name = f"{icons[script.path]} {name}"
        table.add_row(
            str(index),
            name,
            escape(_mono(script.description, 60)),
            escape(", ".join(arg.display_name for arg in script.arguments)),
            escape(script.path),
        )
    return table


def script_list(scripts: list[Script], icons: dict[str, str] | None = None) -> None:
    if not scripts:
        console.print("[yellow]No scripts found. Add a scan location first.[/yellow]")
        return
    console.print(script_table(scripts, icons))


def script_detail(script: Script) -> None:
    lines = [f"[bold white]{escape(script.display_name)}[/bold white]  [dim]{escape(script.path)}[/dim]"]
    if script.description:
        lines.append(f"\n{escape(script.description)}")
    if script.usage:
        lines.append(f"\n[dim]Usage:[/dim] {escape(script.usage)}")
    body = "\n".join(lines)

    table = Table(box=box.SIMPLE, header_style="bold dim", padding=(0, 1))
    table.add_column("Argument", style="bold white")
    table.add_column("Kind", style="dim")
    table.add_column("Description")
    for arg in script.arguments:
        if arg.choices is not None:
            kind = " | ".join(arg.choices)
        elif arg.is_positional:
            kind = "positional"
        elif arg.requires_value:
            kind = f"value <{arg.placeholder}>"
        else:
            kind = "flag"
        table.add_row(escape(arg.display_name), escape(kind), escape(arg.description))

    console.print(Panel(body, border_style="cyan", padding=(0, 2)))
    if script.arguments:
        console.print(table)


def chain_status_table(chain: ScriptChain, statuses: dict[str, StepStatus] | None = None) -> Table:
    statuses = statuses or {}
    table = Table(box=box.SIMPLE_HEAVY, header_style="bold cyan", padding=(0, 1))
    table.add_column("Step", justify="center", width=6)
    table.add_column("", width=2)
    table.add_column("Script", style="bold white")
    table.add_column("On error", style="dim", width=10)
    table.add_column("Status")

    for index, step in enumerate(chain.steps, start=1):
        status = statuses.get(step.id, StepStatus.pending())
        glyph, style = _STATUS_STYLE[status.state]
        if status.state is StepState.COMPLETED:
            style = _exit_style(status.exit_code)
        table.add_row(
            str(index),
            f"[{style}]{glyph}[/{style}]",
            escape(step.script_name),
            "continue" if step.continue_on_error else "stop",
            f"[{style}]{escape(status.label)}[/{style}]",
        )
    return table


def chain_list(chains: list[ScriptChain]) -> None:
    if not chains:
        console.print("[yellow]No chains saved.[/yellow]")
        return
    table = Table(box=box.SIMPLE_HEAVY, header_style="bold cyan", padding=(0, 1))
    table.add_column("Chain", style="bold white")
    table.add_column("Steps", justify="right", width=6)
    table.add_column("Description")
    table.add_column("Last run", style="dim")
    for chain in chains:
        last_run = chain.last_run_at.strftime("%Y-%m-%d %H:%M") if chain.last_run_at else "never"
        table.add_row(
            escape(chain.name), str(chain.step_count), escape(_mono(chain.description, 60)), last_run
        )
    console.print(table)


def location_list(locations: list[ScanLocation]) -> None:
    if not locations:
        console.print("[yellow]No scan locations configured.[/yellow]")
        return
    table = Table(box=box.SIMPLE_HEAVY, header_style="bold cyan", padding=(0, 1))
    table.add_column("Label", style="bold white")
    table.add_column("Path", style="dim")
    table.add_column("Recursive", justify="center")
    table.add_column("Enabled", justify="center")
    for location in locations:
        missing = "" if location.exists else " [red](missing)[/red]"
        table.add_row(
            escape(location.label),
            escape(location.path) + missing,
            "✓" if location.recursive else "",
            "✓" if location.is_enabled else "",
        )
    console.print(table)


def history_list(entries: list[RunHistoryEntry]) -> None:
    if not entries:
        console.print("[dim]No run history yet.[/dim]")
        return
    table = Table(box=box.SIMPLE_HEAVY, header_style="bold cyan", padding=(0, 1))
    table.add_column("", width=2)
    table.add_column("Script", style="bold white")
    table.add_column("Arguments", style="dim")
    table.add_column("Exit", justify="right", width=5)
    table.add_column("When", style="dim")
    for entry in entries:
        style = _exit_style(entry.exit_code)
        table.add_row(
            f"[{style}]{entry.status_icon}[/{style}]",
            escape(entry.script_name),
            escape(" ".join(entry.arguments)),
            "" if entry.exit_code is None else str(entry.exit_code),
            entry.run_date.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Banner and halts
# ---------------------------------------------------------------------------


def banner(settings: Settings) -> None:
    console.print(
        Panel.fit(
            "[bold cyan]Scriptlet Runner[/bold cyan]\n"
            f"[dim]Shell      :[/dim] [white]{escape(settings.shell)}[/white]\n"
            f"[dim]Invocation :[/dim] [white]{settings.invocation.value}[/white]",
            border_style="cyan",
            padding=(0, 2),
        )
    )


def info(message: str) -> None:
    console.print(f"[cyan]{escape(message)}[/cyan]")


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
