"""ANSI-formatted terminal output using Rich.

Diagnostics go to stderr; model answers go to stdout.
"""

import os

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}

_console = Console(stderr=True)
_out = Console()
_level = LEVELS.get(os.environ.get("LOG_LEVEL", "").lower(), LEVELS["info"])


def init(
    *, color: bool = False, no_color: bool = False, level: str | None = None
) -> None:
    """Reconfigure the module-level consoles from CLI flags and config.

    Call once at startup, before any output.
    """
    global _console, _out, _level
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(**kwargs)
    if level is not None:
        _level = parse_level(level)


def parse_level(name: str) -> int:
    key = name.strip().lower()
    if key == "warn":
        key = "warning"
    if key not in LEVELS:
        raise ValueError(f"unknown log level {name!r}")
    return LEVELS[key]


def enabled(level: str) -> bool:
    return LEVELS[level] >= _level


# -- Loop structure ----------------------------------------------------------


def iteration_header(n: int, max_n: int, model_id: str) -> None:
    if not enabled("info"):
        return
    _console.print(Rule(f"Step {n}/{max_n} ({model_id})", style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    if not enabled("info"):
        return
    style = "green" if finish_reason in ("stop", "tool_calls", None) else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for model"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, reason: str) -> None:
    if not enabled("info"):
        return
    if reason == "done":
        _console.print(
            Text(f"  ✓ Request finished: {iterations} steps", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Request finished: {iterations} steps, exit={reason}",
                style="bold red",
            )
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    if not enabled("info"):
        return
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    if not enabled("info"):
        return
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def confirmation(name: str, details: str) -> None:
    line = Text()
    line.append("  ? ", style="bold yellow")
    line.append(f"Model wants to run {name}", style="yellow")
    _console.print(line)
    _console.print(Text(f"    Details: {details}", style="cyan"))


# -- Model text --------------------------------------------------------------


def ai_response(text: str) -> None:
    """Print model text on stdout. Shown at every log level."""
    _out.print(Text(text))


# -- History -----------------------------------------------------------------


def history_line(prefix: str, prefix_style: str, content: str) -> None:
    line = Text()
    line.append(prefix, style=prefix_style)
    line.append(f" {content}")
    _console.print(line)


def history_header(title: str) -> None:
    _console.print(Text(f"\n--- {title} ---", style="bold cyan"))


# -- Diagnostics -------------------------------------------------------------


def debug(msg: str) -> None:
    if not enabled("debug"):
        return
    _console.print(Text(f"  [debug] {msg}", style="dim"))


def info(msg: str) -> None:
    if not enabled("info"):
        return
    _console.print(Text(f"  {msg}", style="dim"))


def success(msg: str) -> None:
    if not enabled("info"):
        return
    _console.print(Text(f"  {msg}", style="green"))


def warning(msg: str) -> None:
    if not enabled("warning"):
        return
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(version: str) -> None:
    _console.print(Text(f"\nWelcome to ai-cli v{version}!", style="bold cyan"))
    _console.print(
        Text(
            "Ask questions, give tasks, or type /help. /quit or Ctrl-D exits.",
            style="dim",
        )
    )
