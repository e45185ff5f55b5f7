"""Core agent loop, REPL and CLI entry point for ai-cli."""

import argparse
import json
import os
import sys
import time
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path
from typing import Callable, Sequence

from . import fmt
from .adapter import get_adapter as _get_adapter
from .config import _UNSET, apply_config_to_args, generate_config, load_config, load_env
from .errors import AgentError, ConfigError
from .filesystem import analyze_codebase
from .gate import ConfirmationGate
from .session import (
    AVAILABLE_MODELS,
    ConversationTurn,
    FunctionCall,
    FunctionResponse,
    Role,
    SessionState,
    SessionStore,
    Text,
    is_valid_model_id,
)
from .tools import ToolName, ToolOutcome, ToolRegistry

MAX_ITERATIONS = 5
MAX_ARG_LOG = 1000
MAX_PROJECT_FILES = 50
HISTORY_PREVIEW = 150

USER_CANCELLED = "User cancelled execution."
COMMAND_CANCELLED = "Command execution cancelled."


@dataclass(frozen=True)
class LoopResult:
    """How a request ended.

    ``reason`` is one of: done, cancelled, unknown_tool, error, exhausted.
    """

    answer: str | None
    reason: str
    iterations: int


# --- Context ---


def system_context(
    user_input: str,
    registry: ToolRegistry,
    base_dir: str,
    project_files: Sequence[str] | None = None,
) -> str:
    lines = [
        "You are a command-line assistant that completes tasks by calling tools.",
        f"Current working directory: {base_dir}",
        f"User goal: {user_input}",
        "",
        "Available tools:",
    ]
    lines += [f"- {d['name']}: {d['description']}" for d in registry.describe_all()]
    lines += [
        "",
        "Instructions:",
        "- Break the goal into steps and request exactly one tool call per step.",
        "- Wait for each tool result before choosing the next step; adapt if a step failed.",
        "- To run a command inside a directory created earlier, pass that directory as "
        "run_command's `cwd` argument instead of chaining `cd <dir> && ...`.",
        "- Paths are relative to the current working directory unless absolute.",
        "- When the goal is complete, or you need input from the user, reply with text only.",
    ]
    if project_files:
        lines += ["", f"Project files (up to {MAX_PROJECT_FILES}):"]
        lines += [f"- {path}" for path in project_files]
    return "\n".join(lines)


def build_context(
    state: SessionState,
    user_input: str,
    registry: ToolRegistry,
    base_dir: str,
    project_files: Sequence[str] | None = None,
) -> list[ConversationTurn]:
    """Return the outgoing turn list: history plus an ephemeral context turn.

    The context turn is placed just before the most recent user turn, or
    first if there is none. The session itself is not modified.
    """
    turns = list(state.history)
    context_turn = ConversationTurn.user(
        system_context(user_input, registry, base_dir, project_files)
    )
    for i in range(len(turns) - 1, -1, -1):
        if turns[i].role is Role.USER:
            turns.insert(i, context_turn)
            break
    else:
        turns.insert(0, context_turn)
    return turns


def project_listing(base_dir: str, limit: int = MAX_PROJECT_FILES) -> list[str]:
    info = analyze_codebase(base_dir, limit=limit)
    if info is None:
        return []
    return [entry.relative_path for entry in info.files]


# --- Tool-call loop ---


def _format_args(args: dict) -> str:
    pretty = json.dumps(args, indent=2, ensure_ascii=False, default=str)
    if len(pretty) > MAX_ARG_LOG:
        pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
    return pretty


def handle_tool_call(
    call: FunctionCall, registry: ToolRegistry, gate: ConfirmationGate
) -> tuple[ToolOutcome, str | None]:
    """Resolve one function call to an outcome.

    Returns (outcome, stop_reason). stop_reason is None when the loop should
    go on planning, "unknown_tool" or "cancelled" when the request ends.
    """
    descriptor = registry.lookup(call.name)
    if descriptor is None:
        fmt.tool_error(call.name, "unknown tool")
        return ToolOutcome.fail(f"unknown tool: {call.name}"), "unknown_tool"

    fmt.tool_call(call.name, _format_args(call.args))

    if not gate.approve(call.name, call.args):
        return ToolOutcome.fail(USER_CANCELLED), "cancelled"

    t0 = time.monotonic()
    try:
        outcome = descriptor.execute(call.args)
    except Exception as e:
        outcome = ToolOutcome.fail(str(e) or type(e).__name__)
    elapsed = time.monotonic() - t0

    if outcome.success:
        fmt.tool_result(call.name, elapsed, (outcome.output or "")[:500])
    else:
        fmt.tool_error(call.name, outcome.error or "failed")
    return outcome, None


def run_tool_loop(
    session: SessionStore,
    registry: ToolRegistry,
    gate: ConfirmationGate,
    user_input: str,
    *,
    get_adapter: Callable,
    max_iterations: int = MAX_ITERATIONS,
    base_dir: str | None = None,
    project_files: Sequence[str] | None = None,
) -> LoopResult:
    """Run the plan/confirm/execute cycle for one request.

    Expects the user turn for ``user_input`` to be in the session already.
    Every exit appends a turn to the session; nothing is raised for adapter
    or tool failures. ``get_adapter`` maps a model id to an object with a
    ``generate(turns)`` method.
    """
    base_dir = base_dir or os.getcwd()
    answer = None
    iterations = 0

    while iterations < max_iterations:
        iterations += 1
        state = session.current()
        fmt.iteration_header(iterations, max_iterations, state.current_model)
        context = build_context(state, user_input, registry, base_dir, project_files)

        t0 = time.monotonic()
        try:
            adapter = get_adapter(state.current_model)
            with fmt.llm_spinner():
                reply = adapter.generate(context)
        except AgentError as e:
            fmt.error(str(e))
            message = f"Sorry, encountered an AI error: {e}"
            session.append(ConversationTurn.model_text(message))
            fmt.ai_response(message)
            fmt.completion(iterations, "error")
            return LoopResult(message, "error", iterations)
        fmt.llm_timing(time.monotonic() - t0, reply.finish_reason)

        text = (reply.text or "").strip()
        if text:
            session.append(ConversationTurn.model_text(text))
            fmt.ai_response(text)
            answer = text

        call = reply.function_call
        if call is None:
            fmt.completion(iterations, "done")
            return LoopResult(answer, "done", iterations)

        session.append(ConversationTurn.model_call(call.name, call.args))
        outcome, stop_reason = handle_tool_call(call, registry, gate)
        session.append(ConversationTurn.tool_result(call.name, outcome))
        if stop_reason is not None:
            fmt.completion(iterations, stop_reason)
            return LoopResult(answer, stop_reason, iterations)

    message = (
        f"Reached the maximum of {max_iterations} steps for this request. "
        "Please split the task into smaller requests."
    )
    session.append(ConversationTurn.model_text(message))
    fmt.ai_response(message)
    fmt.completion(iterations, "exhausted")
    return LoopResult(message, "exhausted", iterations)


# --- History rendering ---


def render_turn(turn: ConversationTurn) -> list[tuple[str, str, str]]:
    """Return (prefix, prefix_style, content) lines for one history turn."""
    lines = []
    for part in turn.parts:
        if isinstance(part, Text):
            if turn.role is Role.USER:
                lines.append(("You:", "bold green", part.text))
            else:
                lines.append(("AI:", "bold blue", part.text))
        elif isinstance(part, FunctionCall):
            args = json.dumps(part.args, ensure_ascii=False, default=str)
            lines.append(("AI -> Tool:", "bold magenta", f"Call: {part.name}({args})"))
        elif isinstance(part, FunctionResponse):
            result = part.result
            content = "Success" if result.success else "Failed"
            if result.output:
                preview = result.output[:HISTORY_PREVIEW]
                if len(result.output) > HISTORY_PREVIEW:
                    preview += "…"
                content += f" | Output: {preview}"
            if result.error:
                content += f" | Error: {result.error}"
            lines.append((f"Tool Result ({part.name}):", "bold yellow", content))
    return lines


# --- REPL commands ---


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                          Show this help message\n"
        "  /model [id]                    Show or switch the active model\n"
        "  /history                       Show the conversation history\n"
        "  /clear                         Clear the conversation history\n"
        "  /create <file|directory> <path>  Create a file or directory\n"
        "  /run <command>                 Run a shell command (asks first)\n"
        "  /exit, /quit                   Exit the REPL\n"
        "Anything else is sent to the model as a request."
    )


def _repl_model(arg: str, session: SessionStore, models: Sequence[str]) -> None:
    if not arg:
        fmt.info(f"Current model: {session.model}")
        for model_id in models:
            marker = "*" if model_id == session.model else " "
            fmt.info(f" {marker} {model_id}")
        return
    if not is_valid_model_id(arg, tuple(models)):
        fmt.error(f"unknown model {arg!r}. Available: {', '.join(models)}")
        return
    session.set_model(arg)
    fmt.success(f"Switched to model {arg}")


def _repl_history(session: SessionStore) -> None:
    history = session.current().history
    if not history:
        fmt.info("history is empty")
        return
    fmt.history_header("Conversation History")
    for turn in history:
        for prefix, style, content in render_turn(turn):
            fmt.history_line(prefix, style, content)
    fmt.history_header("End of History")


def _repl_clear(session: SessionStore) -> None:
    dropped = session.clear()
    fmt.info(f"history cleared ({dropped} turns removed)")


_CREATE_KINDS = {
    "file": ToolName.CREATE_FILE,
    "directory": ToolName.CREATE_DIRECTORY,
    "dir": ToolName.CREATE_DIRECTORY,
}


def _repl_create(line: str, arg: str, session: SessionStore, registry: ToolRegistry) -> None:
    parts = arg.split(None, 1)
    if len(parts) != 2 or parts[0].lower() not in _CREATE_KINDS:
        fmt.error("usage: /create <file|directory|dir> <path>")
        return
    kind, path = parts[0].lower(), parts[1].strip()
    tool = registry.lookup(_CREATE_KINDS[kind].value)

    session.append(ConversationTurn.user(line))
    outcome = tool.execute({"path": path})
    label = "file" if kind == "file" else "directory"
    if outcome.success:
        message = f"Created {label} at {path}."
        fmt.success(message)
    else:
        message = f"Failed to create {label} at {path}: {outcome.error}"
        fmt.error(message)
    session.append(ConversationTurn.model_text(message))


def _repl_run(
    line: str,
    command: str,
    session: SessionStore,
    registry: ToolRegistry,
    gate: ConfirmationGate,
) -> None:
    if not command:
        fmt.error("usage: /run <command>")
        return
    name = ToolName.RUN_COMMAND.value
    args = {"command": command}

    session.append(ConversationTurn.user(line))
    if not gate.ask(name, args):
        session.append(ConversationTurn.model_text(COMMAND_CANCELLED))
        fmt.ai_response(COMMAND_CANCELLED)
        return

    outcome = registry.lookup(name).execute(args)
    session.append(ConversationTurn.model_call(name, args))
    session.append(ConversationTurn.tool_result(name, outcome))
    if outcome.output:
        fmt.ai_response(outcome.output)
    if outcome.success:
        if outcome.error:
            fmt.warning(outcome.error)
    else:
        fmt.tool_error(name, outcome.error or "failed")


# --- Request handling ---


@dataclass
class AgentContext:
    """Everything a request needs, owned by main() for the process lifetime."""

    session: SessionStore
    registry: ToolRegistry
    gate: ConfirmationGate
    get_adapter: Callable
    base_dir: str
    max_iterations: int = MAX_ITERATIONS
    models: tuple[str, ...] = AVAILABLE_MODELS
    project_context: bool = True


def ask(ctx: AgentContext, question: str) -> LoopResult:
    """Append ``question`` as a user turn and run the tool loop on it."""
    ctx.session.append(ConversationTurn.user(question))
    project_files = project_listing(ctx.base_dir) if ctx.project_context else None
    return run_tool_loop(
        ctx.session,
        ctx.registry,
        ctx.gate,
        question,
        get_adapter=ctx.get_adapter,
        max_iterations=ctx.max_iterations,
        base_dir=ctx.base_dir,
        project_files=project_files,
    )


def handle_command(line: str, ctx: AgentContext) -> bool:
    """Run a slash command. Returns False when the REPL should exit."""
    cmd_parts = line.split(None, 1)
    cmd = cmd_parts[0].lower()
    cmd_arg = cmd_parts[1].strip() if len(cmd_parts) > 1 else ""

    if cmd in ("/exit", "/quit"):
        return False
    if cmd == "/help":
        _repl_help()
    elif cmd == "/model":
        _repl_model(cmd_arg, ctx.session, ctx.models)
    elif cmd == "/history":
        _repl_history(ctx.session)
    elif cmd == "/clear":
        _repl_clear(ctx.session)
    elif cmd == "/create":
        _repl_create(line, cmd_arg, ctx.session, ctx.registry)
    elif cmd == "/run":
        _repl_run(line, cmd_arg, ctx.session, ctx.registry, ctx.gate)
    else:
        fmt.error(f"unknown command {cmd}. Type /help for the list.")
    return True


def repl_loop(ctx: AgentContext) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText

    prompt_session = PromptSession()
    prompt_text = FormattedText([("bold fg:ansigreen", "ai-cli> ")])

    fmt.repl_banner(_version())

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue

        if line.startswith("/"):
            if not handle_command(line, ctx):
                break
            continue

        try:
            result = ask(ctx, line)
        except KeyboardInterrupt:
            fmt.warning("interrupted, request aborted.")
            continue
        except AgentError as e:
            fmt.error(str(e))
            continue
        if result.reason == "exhausted":
            fmt.warning("step limit reached for this request.")

    fmt.info("Goodbye!")


# --- CLI ---


def _version() -> str:
    try:
        return metadata.version("ai-cli")
    except metadata.PackageNotFoundError:
        return "unknown"


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="ai-cli",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="An interactive command-line agent that turns requests into tool calls.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session (after answering the question, if given).",
    )
    parser.add_argument(
        "--model",
        "-m",
        default=_UNSET,
        help="Model id to start with (default: default_model from config).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum model calls per request (default: 5).",
    )
    parser.add_argument(
        "--no-project-context",
        dest="project_context",
        action="store_false",
        default=_UNSET,
        help="Do not include the project file listing in the model context.",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show debug diagnostics.",
    )
    verbosity.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        default=_UNSET,
        help="Only show errors and model answers.",
    )
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force colored output.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable colored output.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )
    return parser


def _log_level(args) -> str | None:
    if args.verbose:
        return "debug"
    if args.quiet:
        return "error"
    return args.log_level


def setup_agent(args, base_dir: str) -> AgentContext:
    """Resolve settings into the process-wide session, registry and gate."""
    models = tuple(args.models) if args.models else AVAILABLE_MODELS
    session = SessionStore.from_config(args.model, models)
    registry = ToolRegistry(base_dir=base_dir)

    confirm_tools = args.confirm_tools
    if confirm_tools is not None:
        unknown = [name for name in confirm_tools if name not in registry]
        if unknown:
            fmt.warning(f"confirm_tools names unknown tools: {', '.join(unknown)}")
    gate = ConfirmationGate(confirm_tools)

    declarations = registry.describe_all()
    return AgentContext(
        session=session,
        registry=registry,
        gate=gate,
        get_adapter=lambda model_id: _get_adapter(args, model_id, declarations),
        base_dir=base_dir,
        max_iterations=args.max_iterations,
        models=models,
        project_context=args.project_context,
    )


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        print(_version())
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        sys.exit(_run_main(args, parser))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args, parser) -> int:
    base_dir = os.getcwd()
    load_env(Path(base_dir))
    apply_config_to_args(args, load_config(Path(base_dir)))

    try:
        fmt.init(color=args.color, no_color=args.no_color, level=_log_level(args))
    except ValueError as e:
        raise ConfigError(f"log_level: {e}")

    if args.max_iterations < 1:
        parser.error("--max-iterations must be at least 1")

    ctx = setup_agent(args, base_dir)
    fmt.debug(f"using model {ctx.session.model}, max {ctx.max_iterations} steps")

    if not args.repl and args.question is None:
        args.repl = True

    if args.question is not None:
        try:
            result = ask(ctx, args.question)
        except KeyboardInterrupt:
            fmt.warning("interrupted, request aborted.")
            return 130
        if not args.repl:
            return 1 if result.reason == "error" else 0

    repl_loop(ctx)
    return 0
