"""Configuration file loading and merging for ai-cli.

Reads TOML config from ~/.config/ai-cli/config.toml (global) and
<base_dir>/ai-cli.toml (project). Precedence: CLI > project > global > defaults.
A ``.env`` file in the working directory is loaded into the environment
without overriding variables that are already set.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_API_KEY_ENV_VAR = "GEMINI_API_KEY"
DEFAULT_CACHE = {"enabled": False, "ttl": 3600}


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "default_model": str,
    "models": list,
    "api_key_env_var": str,
    "max_iterations": int,
    "confirm_tools": list,
    "log_level": str,
    "color": bool,
    "quiet": bool,
    "temperature": (int, float),
    "max_output_tokens": int,
    "project_context": bool,
    "cache": dict,
}

_LIST_OF_STR_KEYS = {"models", "confirm_tools"}

_CACHE_KEYS: dict[str, type] = {"enabled": bool, "ttl": int}

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "default_model": "model",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": None,
    "models": None,
    "api_key_env_var": DEFAULT_API_KEY_ENV_VAR,
    "max_iterations": 5,
    "confirm_tools": None,
    "log_level": None,
    "color": False,
    "no_color": False,
    "quiet": False,
    "verbose": False,
    "temperature": None,
    "max_output_tokens": None,
    "project_context": True,
    "cache": DEFAULT_CACHE,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "ai-cli"
    return Path.home() / ".config" / "ai-cli"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_type(value: Any, expected, label: str) -> None:
    # bool is a subclass of int; reject it for non-bool fields.
    if isinstance(value, bool) and expected is not bool:
        raise ConfigError(f"{label} expected {_type_name(expected)}, got bool")
    if not isinstance(value, expected):
        raise ConfigError(
            f"{label} expected {_type_name(expected)}, got {type(value).__name__}"
        )


def _validate_config(config: dict, source: str) -> None:
    """Validate types and ranges in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        _check_type(value, CONFIG_KEYS[key], f"{source}: {key!r}")

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

    if "max_iterations" in config and config["max_iterations"] < 1:
        raise ConfigError(f"{source}: 'max_iterations' must be at least 1")

    if "models" in config and not config["models"]:
        raise ConfigError(f"{source}: 'models' must not be empty")

    if "cache" in config:
        for key, value in config["cache"].items():
            if key not in _CACHE_KEYS:
                print(
                    f"warning: {source}: unknown cache key {key!r}", file=sys.stderr
                )
                continue
            _check_type(value, _CACHE_KEYS[key], f"{source}: cache.{key}")


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    if "cache" in known:
        known["cache"] = {k: v for k, v in known["cache"].items() if k in _CACHE_KEYS}
    return known


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included. The ``cache`` table is
    merged key by key so a project file can flip ``enabled`` alone.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "ai-cli.toml"
    project_config = _load_single(project_path, str(project_path))

    global_cache = global_config.pop("cache", None)
    project_cache = project_config.pop("cache", None)
    merged = {**global_config, **project_config}
    if global_cache is not None or project_cache is not None:
        merged["cache"] = {**DEFAULT_CACHE, **(global_cache or {}), **(project_cache or {})}
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are then replaced with the defaults from
    _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if _is_unset(dest):
            setattr(args, dest, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, dict(default) if isinstance(default, dict) else default)


def load_env(base_dir: Path) -> bool:
    """Load ``<base_dir>/.env`` into os.environ. Existing variables win."""
    from dotenv import load_dotenv

    return load_dotenv(dotenv_path=Path(base_dir) / ".env", override=False)


def get_api_key(env_var: str = DEFAULT_API_KEY_ENV_VAR) -> str:
    """Return the API key from ``env_var``, or raise ConfigError."""
    key = os.environ.get(env_var)
    if not key:
        raise ConfigError(
            f"API key not found. Set the {env_var} environment variable (or add it to .env)."
        )
    return key


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# ai-cli configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/ai-cli.toml' if project else '~/.config/ai-cli/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        '# default_model = "gemini-1.5-flash-latest"',
        '# models = ["gemini-1.5-flash-latest", "gemini-1.5-pro-latest"]',
        '# api_key_env_var = "GEMINI_API_KEY"   # the key itself stays in the environment or .env',
        "",
        "# --- Generation parameters ---",
        "# temperature = 0.7",
        "# max_output_tokens = 8192",
        "",
        "# --- Agent behaviour ---",
        "# max_iterations = 5",
        '# confirm_tools = ["run_command", "update_file", "delete_file"]',
        "# project_context = true",
        "",
        "# --- Response cache ---",
        "# [cache]",
        "# enabled = false",
        "# ttl = 3600",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        '# log_level = "info"  # debug | info | warning | error',
        "",
    ]
    return "\n".join(lines)
