"""Configuration file loading and merging for coba.

Reads TOML config from ~/.config/coba/config.toml (global) and
<workdir>/coba.toml (project), plus COBA_* environment variables.
Precedence: CLI > environment > project > global > defaults.
"""

import argparse
import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)

_UNSET = object()  # Sentinel for "not set by CLI"

PROJECT_CONFIG_NAME = "coba.toml"

# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "api_url": str,
    "context_size": int,
    "max_messages": int,
    "write_mode": bool,
    "yolo": bool,
    "no_agent_rules": bool,
    "color": bool,
    "sessions_dir": str,
}

# Environment variable -> config key
ENV_KEYS: dict[str, str] = {
    "COBA_PROVIDER": "provider",
    "COBA_MODEL": "model",
    "COBA_WRITE_MODE": "write_mode",
}

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "ollama",
    "model": "magistral:24b",
    "api_key": None,
    "api_url": None,
    "context_size": None,
    "max_messages": None,
    "write_mode": False,
    "yolo": False,
    "no_agent_rules": False,
    "color": False,
    "no_color": False,
    "sessions_dir": None,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "coba"
    return Path.home() / ".config" / "coba"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types in a parsed config dict.

    Raises ConfigError for type mismatches. Logs warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            logger.warning("%s: unknown config key %r", source, key)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(f"{source}: {key!r} expected {_type_name(expected)}, got bool")
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if expected is int and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be a positive integer")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            logger.warning(
                "%s: 'api_key' in a git-tracked project config may be committed "
                "accidentally. Consider using an environment variable.",
                config_path,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}

    if "sessions_dir" in known:
        expanded = Path(known["sessions_dir"]).expanduser()
        if not expanded.is_absolute():
            expanded = path.parent / expanded
        known["sessions_dir"] = str(expanded)
    return known


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigError(f"{name}: expected a boolean (1/0, true/false, yes/no), got {raw!r}")


# --- Public API ---


def load_env(environ: dict | None = None) -> dict:
    """Read COBA_* environment variables into config-canonical keys."""
    environ = os.environ if environ is None else environ
    config: dict = {}
    for name, key in ENV_KEYS.items():
        raw = environ.get(name)
        if raw is None:
            continue
        if CONFIG_KEYS[key] is bool:
            config[key] = _parse_bool(name, raw)
        elif raw:
            config[key] = raw
    return config


def load_config(work_dir: Path, environ: dict | None = None) -> dict:
    """Load and merge global config, project config and the environment.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(work_dir).resolve() / PROJECT_CONFIG_NAME
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config, **load_env(environ)}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive --color/--no-color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    # --write-mode and --yolo are exclusive; a flag on the command line
    # overrides both config keys.
    mode_from_cli = not (_is_unset("write_mode") and _is_unset("yolo"))

    for key, value in config.items():
        if key == "color":
            continue
        if key in ("write_mode", "yolo") and mode_from_cli:
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# coba configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<workdir>/coba.toml' if project else '~/.config/coba/config.toml'}",
        "#",
        "# CLI flags and COBA_* environment variables override these values.",
        "",
        "# --- Provider / model ---",
        '# provider = "ollama"     # ollama | lmstudio | openai | anthropic | openrouter | huggingface',
        '# model = "magistral:24b"',
        '# api_key = "sk-..."      # prefer OPENAI_API_KEY, ANTHROPIC_API_KEY, ...',
        '# api_url = "http://localhost:11434"',
        "",
        "# --- Context ---",
        "# context_size = 32768    # token budget for the conversation history",
        "# max_messages = 200",
        "",
        "# --- Tools ---",
        "# write_mode = false      # allow writes, asking before each one",
        "# yolo = false            # allow writes without asking",
        "# no_agent_rules = false  # ignore AGENTS.md / CLAUDE.md / .cursorrules",
        "",
        "# --- Sessions / UI ---",
        '# sessions_dir = "~/.coba/sessions"',
        "# color = true            # true = force color, false = force no-color, absent = auto",
        "",
    ]
    return "\n".join(lines)
