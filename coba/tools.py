"""Tool definitions and implementations exposed to the model.

Every tool is confined to the session's workDir. Handlers return plain text;
failures come back as text starting with ``ERROR: `` so they can be fed to
the model as conversation content instead of crashing the turn.
"""

import fnmatch
import os
import re
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Callable

from .errors import ConfigError
from .messages import ERROR_PREFIX
from .sandbox import Sandbox

CONFIRM = "confirm"
READ_ONLY = "read-only"
YOLO = "yolo"
TOOL_MODES = (CONFIRM, READ_ONLY, YOLO)

OUTSIDE_WORK_DIR = "Access outside of workDir is not allowed."
NO_WORK_DIR = "Configuration error! No base path (workDir) available."

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_READ_CHARS = 200_000
MAX_LINE_LENGTH = 2000
MAX_SEARCH_MATCHES = 100
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB


class PathEscapeError(ValueError):
    """Raised when a user-supplied path resolves outside the workDir."""


# ---------------------------------------------------------------------------
# Path confinement
# ---------------------------------------------------------------------------


def resolve_within_work_dir(user_path: str, work_dir) -> Path:
    """Resolve ``user_path`` against ``work_dir`` and verify it stays inside.

    Both sides are canonicalised (symlinks resolved), so ``..`` segments,
    absolute paths and symlinks pointing outside are all rejected.

    Raises:
        ConfigError: If ``work_dir`` is missing or does not exist.
        PathEscapeError: If the resolved path escapes ``work_dir``.
    """
    if not work_dir or not isinstance(work_dir, (str, os.PathLike)):
        raise ConfigError(NO_WORK_DIR)
    try:
        base = Path(work_dir).resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise ConfigError(f"{NO_WORK_DIR} ({exc})") from exc
    if not isinstance(user_path, str):
        raise ValueError(f"path must be a string, got {type(user_path).__name__}")

    resolved = (base / user_path).resolve()
    if not resolved.is_relative_to(base):
        raise PathEscapeError(OUTSIDE_WORK_DIR)
    return resolved


def _relative(path: Path, base: Path) -> str:
    try:
        return path.relative_to(base).as_posix() or "."
    except ValueError:
        return str(path)


def _check_pattern(pattern: str) -> str | None:
    """Reject glob patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"pattern {pattern!r} must be relative, not absolute"
    posix_parts = PurePosixPath(pattern).parts
    win_parts = PureWindowsPath(pattern).parts
    if ".." in posix_parts or ".." in win_parts:
        return f"pattern {pattern!r} contains '..', which is not allowed"
    return None


# ---------------------------------------------------------------------------
# Ignore rules
# ---------------------------------------------------------------------------


def load_ignore_patterns(base: Path) -> list[str]:
    """Read the top-level .gitignore of ``base``. Negations are not supported."""
    try:
        text = (base / ".gitignore").read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    patterns = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or line.startswith("!"):
            continue
        patterns.append(line)
    return patterns


def is_ignored(rel: str, is_dir: bool, patterns: list[str]) -> bool:
    """Match a workDir-relative POSIX path against gitignore-style patterns."""
    name = rel.rsplit("/", 1)[-1]
    for pattern in patterns:
        dir_only = pattern.endswith("/")
        pat = pattern.rstrip("/")
        if dir_only and not is_dir:
            continue
        if pat.startswith("/"):
            if fnmatch.fnmatch(rel, pat[1:]):
                return True
        elif "/" in pat:
            if fnmatch.fnmatch(rel, pat) or fnmatch.fnmatch(rel, "*/" + pat):
                return True
        elif fnmatch.fnmatch(name, pat):
            return True
    return False


def walk_tree(root: Path, base: Path, patterns: list[str] | None = None):
    """Yield ``(dirpath, dirnames, filenames)`` like os.walk, pruning .git and ignored paths."""
    if patterns is None:
        patterns = load_ignore_patterns(base)
    for dirpath, dirs, files in os.walk(root):
        current = Path(dirpath)
        rel_dir = _relative(current, base)
        prefix = "" if rel_dir == "." else rel_dir + "/"
        dirs[:] = sorted(
            d
            for d in dirs
            if d != ".git" and not is_ignored(prefix + d, True, patterns)
        )
        files = sorted(f for f in files if not is_ignored(prefix + f, False, patterns))
        yield current, dirs, files


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def validate_args(parameters: dict, args) -> str | None:
    """Check tool arguments against a (flat) JSON schema. Returns an error or None.

    Keys the schema does not declare are ignored; models often add extras.
    """
    if not isinstance(args, dict):
        return f"arguments must be an object, got {type(args).__name__}"

    properties = parameters.get("properties", {})
    for key in parameters.get("required", []):
        if key not in args:
            return f"missing required argument {key!r}"

    for key, value in args.items():
        prop = properties.get(key)
        if prop is None:
            continue
        if value is None and key not in parameters.get("required", []):
            continue
        expected = prop.get("type")
        if expected is None:
            continue
        py_type = _JSON_TYPES[expected]
        # bool is a subclass of int; reject it for numeric fields.
        if isinstance(value, bool) and expected != "boolean":
            return f"argument {key!r} expected {expected}, got boolean"
        if not isinstance(value, py_type):
            return f"argument {key!r} expected {expected}, got {type(value).__name__}"
        if expected == "array" and "items" in prop:
            item_type = _JSON_TYPES[prop["items"]["type"]]
            for i, item in enumerate(value):
                if not isinstance(item, item_type) or isinstance(item, bool) and item_type is not bool:
                    return f"argument {key}[{i}] expected {prop['items']['type']}"
        if "minimum" in prop and value < prop["minimum"]:
            return f"argument {key!r} must be >= {prop['minimum']}"
    return None


# ---------------------------------------------------------------------------
# Tool records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Tool:
    """A named capability: JSON schema, destructive flag and handler."""

    name: str
    description: str
    parameters: dict
    handler: Callable[[dict, str], str]
    destructive: bool = False

    @property
    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def invoke(self, args, work_dir: str) -> str:
        """Validate and run. Never raises; failures come back as ``ERROR: `` text."""
        problem = validate_args(self.parameters, args)
        if problem:
            return f"{ERROR_PREFIX}Invalid arguments for tool `{self.name}`: {problem}"
        properties = self.parameters.get("properties", {})
        known = {k: v for k, v in args.items() if k in properties}
        try:
            return self.handler(known, work_dir)
        except PathEscapeError as exc:
            return f"{ERROR_PREFIX}{exc}"
        except Exception as exc:
            return f"{ERROR_PREFIX}Tool `{self.name}` failed with: {exc}"


class ToolRegistry:
    """All tools known to a session, partitioned by the destructive flag.

    Several tools may share a wire name (e.g. read-only and read-write
    ``executeCommand``); ``all_tools`` prefers the destructive variant and
    ``safe_tools`` only ever sees the non-destructive one.
    """

    def __init__(self, tools: list[Tool]):
        self._tools = list(tools)

    def safe_tools(self) -> dict[str, Tool]:
        return {t.name: t for t in self._tools if not t.destructive}

    def all_tools(self) -> dict[str, Tool]:
        ordered = sorted(self._tools, key=lambda t: t.destructive)
        return {t.name: t for t in ordered}

    def for_mode(self, tool_mode: str) -> dict[str, Tool]:
        if tool_mode not in TOOL_MODES:
            raise ConfigError(f"unknown tool mode {tool_mode!r}")
        return self.safe_tools() if tool_mode == READ_ONLY else self.all_tools()


# ---------------------------------------------------------------------------
# Filesystem tools
# ---------------------------------------------------------------------------


def _list_directory(directory: str, work_dir: str) -> str:
    """List files and folders directly inside a directory."""
    resolved = resolve_within_work_dir(directory, work_dir)

    lines: list[str] = []
    total_bytes = 0
    with os.scandir(resolved) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        try:
            if entry.is_dir():
                tag = "[DIR]  "
            elif entry.is_file():
                tag = "[FILE] "
            else:
                continue
            size = entry.stat().st_size
        except OSError:
            continue
        line = f"{tag} {entry.name} {size}"
        encoded_len = len(line.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            lines.append("[truncated at 50KB]")
            break
        lines.append(line)
        total_bytes += encoded_len

    return "\n".join(lines) or f"The directory {directory} is empty."


def _read_file(file_name: str, work_dir: str, max_length: int | None = None) -> str:
    """Read a UTF-8 text file, optionally limited to ``max_length`` characters."""
    resolved = resolve_within_work_dir(file_name, work_dir)
    if resolved.is_dir():
        raise IsADirectoryError(f"{file_name} is a directory, use listDirectory")

    with open(resolved, "rb") as f:
        chunk = f.read(BINARY_CHECK_BYTES)
    if b"\x00" in chunk:
        raise ValueError(f"binary file detected: {file_name}")

    content = resolved.read_text(encoding="utf-8", errors="replace")
    limit = MAX_READ_CHARS if max_length is None else min(max_length, MAX_READ_CHARS)
    truncated = len(content) > limit
    content = content[:limit]
    if not content:
        return f'The file "{file_name}" is empty.'
    if truncated and max_length is None:
        content += f"\n[truncated at {MAX_READ_CHARS} characters, pass maxLength to control]"
    return content


def _write_file(file_name: str, file_data: str, work_dir: str) -> str:
    """Create or overwrite a file, creating parent directories as needed."""
    resolved = resolve_within_work_dir(file_name, work_dir)
    if resolved.is_dir():
        raise IsADirectoryError(f"{file_name} is a directory")
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(file_data, encoding="utf-8")
    return f"{file_name} created."


def _delete_file(file_name: str, work_dir: str) -> str:
    resolved = resolve_within_work_dir(file_name, work_dir)
    if resolved.is_dir():
        raise IsADirectoryError(f"{file_name} is a directory, only files can be deleted")
    resolved.unlink()
    return f"{file_name} deleted."


def _move_file(source_file_name: str, destination_file_name: str, work_dir: str) -> str:
    source = resolve_within_work_dir(source_file_name, work_dir)
    destination = resolve_within_work_dir(destination_file_name, work_dir)
    if source == Path(work_dir).resolve():
        raise ValueError("cannot move the working directory itself")
    if not source.exists():
        raise FileNotFoundError(f"no such file: {source_file_name}")
    source.rename(destination)
    return f"{source_file_name} moved to {destination_file_name}."


def _create_directory(file_name: str, work_dir: str) -> str:
    resolved = resolve_within_work_dir(file_name, work_dir)
    resolved.mkdir(parents=True, exist_ok=True)
    return f"{file_name} created."


def _glob_match(rel: str, pattern: str) -> bool:
    if fnmatch.fnmatch(rel, pattern):
        return True
    if pattern.startswith("**/") and fnmatch.fnmatch(rel, pattern[3:]):
        return True
    return "/" not in pattern and fnmatch.fnmatch(rel.rsplit("/", 1)[-1], pattern)


def _search_in_files(
    pattern: str,
    glob: str,
    work_dir: str,
    directory: str = ".",
    case_sensitive: bool = True,
) -> str:
    """Search files matching ``glob`` under ``directory`` for a regex."""
    err = _check_pattern(glob)
    if err:
        raise ValueError(err)
    try:
        regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
    except re.error as exc:
        raise ValueError(f"invalid regex {pattern!r}: {exc}") from exc

    root = resolve_within_work_dir(directory, work_dir)
    if not root.is_dir():
        raise NotADirectoryError(f"path is not a directory: {directory}")
    base = Path(work_dir).resolve()

    matches: list[tuple[str, int, str]] = []
    for dirpath, _dirs, files in walk_tree(root, base):
        for filename in files:
            filepath = dirpath / filename
            if not _glob_match(_relative(filepath, root), glob):
                continue
            # Per-file containment check: symlinks may point outside.
            try:
                if not filepath.resolve().is_relative_to(base):
                    continue
                with open(filepath, "rb") as f:
                    if b"\x00" in f.read(BINARY_CHECK_BYTES):
                        continue
                text = filepath.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            rel = _relative(filepath, base)
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append((rel, line_no, line))

    if not matches:
        return f"No matches found for {pattern!r} in {glob}."

    total_found = len(matches)
    grouped: OrderedDict[str, list[tuple[int, str]]] = OrderedDict()
    for rel, line_no, line in matches[:MAX_SEARCH_MATCHES]:
        grouped.setdefault(rel, []).append((line_no, line))

    output_parts = [f"Found {total_found} matches"]
    total_bytes = len(output_parts[0]) + 1
    byte_truncated = False
    for rel, file_matches in grouped.items():
        for line_no, line in file_matches:
            entry = f"{rel}:{line_no}: {line[:MAX_LINE_LENGTH]}"
            encoded_len = len(entry.encode("utf-8")) + 1
            if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
                byte_truncated = True
                break
            output_parts.append(entry)
            total_bytes += encoded_len
        if byte_truncated:
            break

    result = "\n".join(output_parts)
    if total_found > MAX_SEARCH_MATCHES or byte_truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_SEARCH_MATCHES} matches. "
            "Use a more specific pattern, glob or directory.)"
        )
    return result


# ---------------------------------------------------------------------------
# Registry construction
# ---------------------------------------------------------------------------


def _path_param(what: str) -> dict:
    return {
        "type": "string",
        "description": f"Path to the {what}, relative to the working directory.",
    }


def _filesystem_tools() -> list[Tool]:
    return [
        Tool(
            name="listDirectory",
            description=(
                "List the files and folders inside a given directory (relative to the "
                "working directory). Use ONLY when the user wants to browse or inspect "
                "the contents of a folder."
            ),
            parameters={
                "type": "object",
                "properties": {"directory": _path_param("directory to list")},
                "required": ["directory"],
            },
            handler=lambda args, wd: _list_directory(args["directory"], wd),
        ),
        Tool(
            name="readFile",
            description=(
                "Read the contents of a file. Use ONLY when the user wants to retrieve "
                "or inspect saved content (e.g., source code, configuration files, etc.)."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "fileName": _path_param("file to read"),
                    "maxLength": {
                        "type": "integer",
                        "minimum": 1,
                        "description": "Optionally limit the number of characters to read.",
                    },
                },
                "required": ["fileName"],
            },
            handler=lambda args, wd: _read_file(
                args["fileName"], wd, max_length=args.get("maxLength")
            ),
        ),
        Tool(
            name="searchInFiles",
            description=(
                "Search file contents for a regular expression. Only files whose path "
                "matches the glob are searched. Returns matching lines as path:line: text."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Python regular expression to search for.",
                    },
                    "glob": {
                        "type": "string",
                        "description": 'Glob pattern to filter files, e.g. "**/*.py" or "*.md".',
                    },
                    "directory": {
                        "type": "string",
                        "description": (
                            "Directory to search in, relative to the working directory. "
                            'Defaults to ".".'
                        ),
                    },
                    "caseSensitive": {
                        "type": "boolean",
                        "description": "Match case exactly. Defaults to true.",
                    },
                },
                "required": ["pattern", "glob"],
            },
            handler=lambda args, wd: _search_in_files(
                args["pattern"],
                args["glob"],
                wd,
                directory=args.get("directory") or ".",
                case_sensitive=args.get("caseSensitive", True),
            ),
        ),
        Tool(
            name="writeFile",
            description=(
                "Write content to a file (create or overwrite). Use ONLY when the user "
                "wants to persist generated or modified content to disk."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "fileName": _path_param("file to write"),
                    "fileData": {
                        "type": "string",
                        "description": "The content to write into the file.",
                    },
                },
                "required": ["fileName", "fileData"],
            },
            handler=lambda args, wd: _write_file(args["fileName"], args["fileData"], wd),
            destructive=True,
        ),
        Tool(
            name="deleteFile",
            description=(
                "Delete a file from disk. Use ONLY when the user clearly wants to remove "
                "a file permanently."
            ),
            parameters={
                "type": "object",
                "properties": {"fileName": _path_param("file to delete")},
                "required": ["fileName"],
            },
            handler=lambda args, wd: _delete_file(args["fileName"], wd),
            destructive=True,
        ),
        Tool(
            name="moveFile",
            description=(
                "Rename or move a file within the working directory. Use ONLY when the "
                "user asks to rename or move a file."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "sourceFileName": _path_param("file to move or rename"),
                    "destinationFileName": {
                        "type": "string",
                        "description": "New path or name for the file, relative to the working directory.",
                    },
                },
                "required": ["sourceFileName", "destinationFileName"],
            },
            handler=lambda args, wd: _move_file(
                args["sourceFileName"], args["destinationFileName"], wd
            ),
            destructive=True,
        ),
        Tool(
            name="createDirectory",
            description=(
                "Create a directory (and any necessary parent directories) at the given "
                "path. Use ONLY when the user wants to make a new folder."
            ),
            parameters={
                "type": "object",
                "properties": {"fileName": _path_param("directory to create")},
                "required": ["fileName"],
            },
            handler=lambda args, wd: _create_directory(args["fileName"], wd),
            destructive=True,
        ),
    ]


_COMMAND_PARAMETERS = {
    "type": "object",
    "properties": {
        "command": {
            "type": "string",
            "description": "The command to execute (e.g., 'ls', 'git', 'python3').",
        },
        "args": {
            "type": "array",
            "items": {"type": "string"},
            "description": "An array of arguments to pass to the command (e.g., ['-l', '-a']).",
        },
    },
    "required": ["command"],
}


def _command_tools(sandbox: Sandbox) -> list[Tool]:
    def run(mount: str):
        def handler(args: dict, work_dir: str) -> str:
            root = resolve_within_work_dir(".", work_dir)
            return sandbox.run(args["command"], args.get("args") or [], root, mount=mount)

        return handler

    return [
        Tool(
            name="executeCommand",
            description=(
                "Execute an arbitrary command in a read-only shell. You cannot write to "
                "the disk. Use ONLY when the user wants to run a command, like 'ls -l' "
                "or 'git diff'."
            ),
            parameters=_COMMAND_PARAMETERS,
            handler=run("ro"),
        ),
        Tool(
            name="executeCommand",
            description=(
                "Execute an arbitrary command in the shell. Use ONLY when the user wants "
                "to run a command, like 'ls -l' or 'git diff' or 'pip install'."
            ),
            parameters=_COMMAND_PARAMETERS,
            handler=run("rw"),
            destructive=True,
        ),
    ]


def build_registry(sandbox: Sandbox | None = None) -> ToolRegistry:
    """Build the registry of every tool coba exposes."""
    return ToolRegistry(_filesystem_tools() + _command_tools(sandbox or Sandbox()))
