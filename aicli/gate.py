"""Confirmation gate: which tool calls need interactive approval."""

import json
from typing import Callable, Iterable

from . import fmt
from .tools import ToolName

DEFAULT_CONFIRM_TOOLS = frozenset(
    {
        ToolName.RUN_COMMAND.value,
        ToolName.UPDATE_FILE.value,
        ToolName.DELETE_FILE.value,
    }
)

_PATH_TOOLS = frozenset(
    {
        ToolName.CREATE_FILE.value,
        ToolName.CREATE_DIRECTORY.value,
        ToolName.READ_FILE.value,
        ToolName.UPDATE_FILE.value,
        ToolName.DELETE_FILE.value,
    }
)


def requires_confirmation(
    name: str, confirm_tools: Iterable[str] = DEFAULT_CONFIRM_TOOLS
) -> bool:
    return name in confirm_tools


def describe_action(name: str, args: dict) -> str:
    """One-line summary of a pending tool call, shown before the prompt."""
    if name == ToolName.RUN_COMMAND.value and isinstance(args.get("command"), str):
        summary = args["command"]
        if args.get("cwd"):
            summary += f" (in {args['cwd']})"
        return summary
    if name in _PATH_TOOLS and isinstance(args.get("path"), str):
        return args["path"]
    return json.dumps(args, ensure_ascii=False, default=str)


def ask_yes_no(message: str) -> bool:
    """Prompt on the terminal. Only an explicit y/yes approves."""
    from prompt_toolkit import prompt

    try:
        answer = prompt(f"{message} (y/N) ")
    except (EOFError, KeyboardInterrupt):
        return False
    return answer.strip().lower() in ("y", "yes")


class ConfirmationGate:
    """Classification table plus the prompt used to approve risky calls."""

    def __init__(
        self,
        confirm_tools: Iterable[str] | None = None,
        prompt: Callable[[str], bool] = ask_yes_no,
    ):
        if confirm_tools is None:
            confirm_tools = DEFAULT_CONFIRM_TOOLS
        self.confirm_tools = frozenset(confirm_tools)
        self._prompt = prompt

    def requires_confirmation(self, name: str) -> bool:
        return requires_confirmation(name, self.confirm_tools)

    def describe(self, name: str, args: dict) -> str:
        return describe_action(name, args)

    def approve(self, name: str, args: dict) -> bool:
        """Auto-approve safe tools; ask the user for risky ones (default deny)."""
        if not self.requires_confirmation(name):
            fmt.debug(f"auto-approved {name}")
            return True
        return self.ask(name, args)

    def ask(self, name: str, args: dict) -> bool:
        """Show the pending action and prompt regardless of classification."""
        fmt.confirmation(name, self.describe(name, args))
        approved = self._prompt("Proceed?")
        if not approved:
            fmt.warning(f"{name} cancelled by user")
        return approved
