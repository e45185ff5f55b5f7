"""Tool definitions, argument schemas and implementations.

Every tool returns a ``ToolOutcome``; filesystem and process failures are
reported through it rather than raised.
"""

import dataclasses
import os
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable

from .errors import ToolArgumentError
from .filesystem import read_file_content, resolve_path

MAX_READ_LENGTH = 5000
MAX_COMMAND_OUTPUT = 10 * 1024
NO_OUTPUT_MESSAGE = "(Command executed successfully with no output)"


class ToolName(str, Enum):
    RUN_COMMAND = "run_command"
    CREATE_FILE = "create_file"
    CREATE_DIRECTORY = "create_directory"
    READ_FILE = "read_file"
    UPDATE_FILE = "update_file"
    DELETE_FILE = "delete_file"

    @classmethod
    def parse(cls, name: str) -> "ToolName | None":
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class ToolOutcome:
    """Uniform result of a tool execution."""

    success: bool
    output: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, output: str | None = None, error: str | None = None) -> "ToolOutcome":
        return cls(True, output=output, error=error)

    @classmethod
    def fail(cls, error: str, output: str | None = None) -> "ToolOutcome":
        return cls(False, output=output, error=error)

    def to_dict(self) -> dict:
        result: dict[str, Any] = {"success": self.success}
        if self.output is not None:
            result["output"] = self.output
        if self.error is not None:
            result["error"] = self.error
        return result


# --- Argument schemas ---


def _require_str(args: dict, key: str) -> str:
    value = args.get(key)
    if value is None or value == "":
        raise ToolArgumentError(f"Missing '{key}' argument.")
    if not isinstance(value, str):
        raise ToolArgumentError(
            f"'{key}' must be a string, got {type(value).__name__}."
        )
    return value


def _optional_str(args: dict, key: str, default: str | None = None) -> str | None:
    value = args.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ToolArgumentError(
            f"'{key}' must be a string, got {type(value).__name__}."
        )
    return value


@dataclass(frozen=True)
class RunCommandArgs:
    command: str
    cwd: str | None = None

    @classmethod
    def parse(cls, args: dict) -> "RunCommandArgs":
        return cls(_require_str(args, "command"), _optional_str(args, "cwd") or None)


@dataclass(frozen=True)
class CreateFileArgs:
    path: str
    content: str = ""

    @classmethod
    def parse(cls, args: dict) -> "CreateFileArgs":
        return cls(_require_str(args, "path"), _optional_str(args, "content", ""))


@dataclass(frozen=True)
class PathArgs:
    path: str

    @classmethod
    def parse(cls, args: dict) -> "PathArgs":
        return cls(_require_str(args, "path"))


@dataclass(frozen=True)
class UpdateFileArgs:
    path: str
    content: str

    @classmethod
    def parse(cls, args: dict) -> "UpdateFileArgs":
        path = _require_str(args, "path")
        if args.get("content") is None:
            raise ToolArgumentError("Missing 'content' argument for update.")
        return cls(path, _optional_str(args, "content", ""))


ToolArgs = RunCommandArgs | CreateFileArgs | PathArgs | UpdateFileArgs


# --- Implementations ---


def _run_command(command: str, base_dir: str | None, cwd: str | None = None) -> ToolOutcome:
    """Run a shell string via sh -c (Unix) or cmd.exe /c (Windows)."""
    workdir = resolve_path(cwd, base_dir) if cwd else Path(base_dir or os.getcwd())
    if not workdir.is_dir():
        return ToolOutcome.fail(f"Working directory does not exist: {workdir}")

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    try:
        proc = subprocess.run(
            shell_cmd,
            cwd=workdir,
            stdin=subprocess.DEVNULL,
            capture_output=True,
        )
    except (OSError, ValueError) as e:
        return ToolOutcome.fail(f"Failed to start shell command: {e}")

    stdout = _clip(proc.stdout.decode("utf-8", errors="replace").strip())
    stderr = _clip(proc.stderr.decode("utf-8", errors="replace").strip())

    if proc.returncode != 0:
        lines = [f"Error: command exited with code {proc.returncode}: {command}"]
        if stderr:
            lines.append(f"Stderr: {stderr}")
        if stdout:
            lines.append(f"Stdout (before error): {stdout}")
        return ToolOutcome.fail("\n".join(lines), output=stdout or None)

    if not stdout and not stderr:
        return ToolOutcome.ok(NO_OUTPUT_MESSAGE)
    return ToolOutcome.ok(stdout or None, error=stderr or None)


def _clip(text: str) -> str:
    if len(text) <= MAX_COMMAND_OUTPUT:
        return text
    return text[:MAX_COMMAND_OUTPUT] + "\n... (output truncated)"


def _create_file(path: str, content: str, base_dir: str | None) -> ToolOutcome:
    resolved = resolve_path(path, base_dir)
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")
    except OSError as e:
        return ToolOutcome.fail(f"Failed to create file: {e}")
    return ToolOutcome.ok(f"File created successfully at {resolved}")


def _create_directory(path: str, base_dir: str | None) -> ToolOutcome:
    resolved = resolve_path(path, base_dir)
    if resolved.is_dir():
        return ToolOutcome.ok(f"Directory already exists: {resolved}")
    try:
        resolved.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return ToolOutcome.fail(f"Failed to create directory: {e}")
    return ToolOutcome.ok(f"Directory created successfully at {resolved}")


def _read_file(path: str, base_dir: str | None) -> ToolOutcome:
    resolved = resolve_path(path, base_dir)
    if resolved.is_dir():
        return ToolOutcome.fail(f"Path is a directory, not a file: {path}")
    content = read_file_content(resolved)
    if content is None:
        return ToolOutcome.fail(f"Failed to read file or file not found: {path}")
    if len(content) > MAX_READ_LENGTH:
        content = content[:MAX_READ_LENGTH] + "\n... (truncated)"
    return ToolOutcome.ok(content)


def _update_file(path: str, content: str, base_dir: str | None) -> ToolOutcome:
    resolved = resolve_path(path, base_dir)
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")
    except OSError as e:
        return ToolOutcome.fail(f"Failed to update file: {e}")
    return ToolOutcome.ok(f"File updated successfully at {resolved}")


def _delete_file(path: str, base_dir: str | None) -> ToolOutcome:
    resolved = resolve_path(path, base_dir)
    try:
        resolved.unlink()
    except FileNotFoundError:
        return ToolOutcome.fail(f"File not found: {resolved}")
    except OSError as e:
        return ToolOutcome.fail(f"Failed to delete file: {e}")
    return ToolOutcome.ok(f"File deleted successfully: {resolved}")


# --- Descriptors ---


@dataclass(frozen=True)
class ToolDescriptor:
    """Immutable registry entry: declaration plus a bound executor."""

    name: ToolName
    description: str
    parameters: dict
    parse_args: Callable[[dict], ToolArgs]
    handler: Callable[[Any, str | None], ToolOutcome]
    base_dir: str | None = None

    def declaration(self) -> dict:
        return {
            "name": self.name.value,
            "description": self.description,
            "parameters": self.parameters,
        }

    def execute(self, args: dict) -> ToolOutcome:
        """Validate ``args`` against the schema, then run the tool.

        Path and process errors the handler did not map itself (for example
        an embedded NUL byte) are returned as a failed outcome.
        """
        if not isinstance(args, dict):
            return ToolOutcome.fail(
                f"arguments must be an object, got {type(args).__name__}."
            )
        try:
            parsed = self.parse_args(args)
        except ToolArgumentError as e:
            return ToolOutcome.fail(str(e))
        try:
            return self.handler(parsed, self.base_dir)
        except (OSError, ValueError) as e:
            return ToolOutcome.fail(f"{self.name.value} failed: {e}")


def _path_param(action: str) -> dict:
    return {
        "type": "string",
        "description": f"The relative (to current dir) or absolute path of the file to {action}.",
    }


TOOL_DESCRIPTORS = (
    ToolDescriptor(
        name=ToolName.RUN_COMMAND,
        description=(
            "Executes a shell command. Use for installations, running build scripts, "
            "version control (git), listing files, etc. Cannot be used for interactive "
            "commands. To run a command inside a subdirectory, pass it as `cwd` "
            "instead of chaining `cd dir && ...`."
        ),
        parameters={
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The exact, non-interactive shell command to execute.",
                },
                "cwd": {
                    "type": "string",
                    "description": "Optional: directory to run the command in, relative to the current directory.",
                },
            },
            "required": ["command"],
        },
        parse_args=RunCommandArgs.parse,
        handler=lambda a, base_dir: _run_command(a.command, base_dir, cwd=a.cwd),
    ),
    ToolDescriptor(
        name=ToolName.CREATE_FILE,
        description=(
            "Creates a new file at the specified path, optionally with initial content. "
            "Creates parent directories if needed."
        ),
        parameters={
            "type": "object",
            "properties": {
                "path": _path_param("create"),
                "content": {
                    "type": "string",
                    "description": "Optional: the initial text content to write into the file.",
                },
            },
            "required": ["path"],
        },
        parse_args=CreateFileArgs.parse,
        handler=lambda a, base_dir: _create_file(a.path, a.content, base_dir),
    ),
    ToolDescriptor(
        name=ToolName.CREATE_DIRECTORY,
        description="Creates a directory (and any missing parents) at the specified path.",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "The relative (to current dir) or absolute path of the directory to create.",
                },
            },
            "required": ["path"],
        },
        parse_args=PathArgs.parse,
        handler=lambda a, base_dir: _create_directory(a.path, base_dir),
    ),
    ToolDescriptor(
        name=ToolName.READ_FILE,
        description=(
            "Reads the content of an existing file at the specified path. "
            "Returns the content or an error."
        ),
        parameters={
            "type": "object",
            "properties": {"path": _path_param("read")},
            "required": ["path"],
        },
        parse_args=PathArgs.parse,
        handler=lambda a, base_dir: _read_file(a.path, base_dir),
    ),
    ToolDescriptor(
        name=ToolName.UPDATE_FILE,
        description=(
            "Overwrites the entire content of a file at the specified path. "
            "Creates the file if it doesn't exist. Use carefully."
        ),
        parameters={
            "type": "object",
            "properties": {
                "path": _path_param("update"),
                "content": {
                    "type": "string",
                    "description": "The new text content for the file.",
                },
            },
            "required": ["path", "content"],
        },
        parse_args=UpdateFileArgs.parse,
        handler=lambda a, base_dir: _update_file(a.path, a.content, base_dir),
    ),
    ToolDescriptor(
        name=ToolName.DELETE_FILE,
        description="Deletes a single file at the specified path.",
        parameters={
            "type": "object",
            "properties": {"path": _path_param("delete")},
            "required": ["path"],
        },
        parse_args=PathArgs.parse,
        handler=lambda a, base_dir: _delete_file(a.path, base_dir),
    ),
)


class ToolRegistry:
    """Name-keyed, read-only collection of tool descriptors."""

    def __init__(self, descriptors=TOOL_DESCRIPTORS, *, base_dir: str | None = None):
        self.base_dir = base_dir
        self._tools = MappingProxyType(
            {d.name: dataclasses.replace(d, base_dir=base_dir) for d in descriptors}
        )

    def lookup(self, name: str) -> ToolDescriptor | None:
        """Return the descriptor for ``name``, or None for unknown names."""
        tool_name = ToolName.parse(name)
        if tool_name is None:
            return None
        return self._tools.get(tool_name)

    def describe_all(self) -> list[dict]:
        return [d.declaration() for d in self._tools.values()]

    def names(self) -> list[str]:
        return [name.value for name in self._tools]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.lookup(name) is not None
