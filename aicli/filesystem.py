"""Directory scanning and file helpers used to build advisory project context."""

import os
from dataclasses import dataclass
from pathlib import Path

from . import fmt

IGNORED_NAMES = frozenset(
    {"node_modules", ".git", "dist", "build", ".vscode", ".idea", ".env"}
)

ALLOWED_EXTENSIONS = frozenset(
    {
        ".js",
        ".jsx",
        ".ts",
        ".tsx",
        ".py",
        ".go",
        ".java",
        ".cs",
        ".rb",
        ".php",
        ".html",
        ".css",
        ".scss",
        ".json",
        ".md",
        ".yaml",
        ".yml",
        ".toml",
        ".sh",
        ".bat",
        ".txt",
    }
)


@dataclass(frozen=True)
class FileEntry:
    absolute_path: Path
    relative_path: str


@dataclass
class CodebaseInfo:
    base_path: Path
    files: list[FileEntry]


def resolve_path(path: str, base_dir: str | None = None) -> Path:
    """Resolve ``path`` against ``base_dir`` (default: the process working directory)."""
    p = Path(path).expanduser()
    if p.is_absolute():
        return p.resolve()
    return (Path(base_dir or os.getcwd()) / p).resolve()


def is_source_file(name: str) -> bool:
    lowered = name.lower()
    if lowered == "readme":
        return True
    return Path(lowered).suffix in ALLOWED_EXTENSIONS


def read_directory_recursive(root: Path, limit: int | None = None) -> list[FileEntry]:
    """List source/text files under ``root``, pruning ignored names.

    Entries are sorted by relative path. Unreadable directories are skipped.
    With ``limit``, the walk stops once that many files have been collected,
    visiting each directory's files before its subdirectories in name order.
    """
    root = root.resolve()
    entries: list[FileEntry] = []

    def _onerror(exc: OSError) -> None:
        fmt.debug(f"error reading directory {exc.filename}: {exc.strerror}")

    for dirpath, dirs, files in os.walk(root, onerror=_onerror):
        dirs[:] = sorted(d for d in dirs if d not in IGNORED_NAMES)
        for filename in sorted(files):
            if filename in IGNORED_NAMES or not is_source_file(filename):
                continue
            path = Path(dirpath) / filename
            entries.append(FileEntry(path, path.relative_to(root).as_posix()))
            if limit is not None and len(entries) >= limit:
                break
        if limit is not None and len(entries) >= limit:
            fmt.debug(f"stopped scanning {root} after {limit} files")
            break

    entries.sort(key=lambda e: e.relative_path)
    return entries


def read_file_content(path: Path) -> str | None:
    """Read a UTF-8 text file, returning None on any read failure."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        fmt.debug(f"file not found for reading: {path}")
    except (UnicodeDecodeError, OSError) as e:
        fmt.debug(f"error reading file {path}: {e}")
    return None


def analyze_codebase(base_path: str, limit: int | None = None) -> CodebaseInfo | None:
    """Collect the source files under ``base_path``.

    Returns None when the path is missing, not a directory or inaccessible.
    An empty directory yields an empty file list.
    """
    absolute = resolve_path(base_path)
    try:
        if not absolute.is_dir():
            fmt.debug(f"analysis target is not a directory: {absolute}")
            return None
        os.scandir(absolute).close()
    except PermissionError:
        fmt.warning(f"permission denied accessing {absolute}")
        return None
    except OSError as e:
        fmt.warning(f"error accessing {absolute}: {e}")
        return None

    files = read_directory_recursive(absolute, limit)
    fmt.debug(f"analysis found {len(files)} files under {absolute}")
    return CodebaseInfo(base_path=absolute, files=files)
