"""System prompt assembly: base template, project context and agent rules."""

import json
import logging
from pathlib import Path

from .tools import load_ignore_patterns, walk_tree

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).parent / "prompts"
DEFAULT_TEMPLATE = "default"

AGENT_RULE_FILES = (".cursorrules", "AGENTS.md", "CLAUDE.md")
MAX_RULES_CHARS = 4000
METADATA_FILES = ("pyproject.toml", "package.json", "Cargo.toml", "go.mod")
MAX_METADATA_CHARS = 4000
MAX_TREE_ENTRIES = 200

CONTEXT_HEADER = "--- Project Context ---"
RULES_HEADER = "--- Project-Specific Instructions ---"


def load_template(provider: str) -> str:
    """Return the base prompt for ``provider``, falling back to the default one."""
    path = PROMPTS_DIR / f"{provider}.md"
    if not path.is_file():
        path = PROMPTS_DIR / f"{DEFAULT_TEMPLATE}.md"
    return path.read_text(encoding="utf-8").strip()


def find_agent_rules(work_dir: str) -> Path | None:
    """Locate the highest-priority agent rule file anywhere under ``work_dir``.

    Priority follows AGENT_RULE_FILES; ties are broken by the shallowest path,
    then alphabetically. Ignored directories and .git are not searched.
    """
    base = Path(work_dir).resolve()
    candidates: list[tuple[int, int, str, Path]] = []
    for dirpath, _dirs, files in walk_tree(base, base):
        for name in files:
            if name in AGENT_RULE_FILES:
                path = dirpath / name
                rel = path.relative_to(base).as_posix()
                candidates.append(
                    (AGENT_RULE_FILES.index(name), rel.count("/"), rel, path)
                )
    if not candidates:
        return None
    return min(candidates)[3]


def load_agent_rules(work_dir: str) -> str | None:
    try:
        path = find_agent_rules(work_dir)
        if path is None:
            return None
        with path.open(encoding="utf-8", errors="replace") as f:
            content = f.read(MAX_RULES_CHARS)
    except OSError as exc:
        logger.debug("Agent rules unavailable: %s", exc)
        return None
    logger.debug("Loaded agent rules from %s", path)
    return content.strip() or None


def _directory_listing(base: Path) -> list[str]:
    patterns = load_ignore_patterns(base)
    dirs: list[str] = []
    for dirpath, subdirs, _files in walk_tree(base, base, patterns):
        for d in subdirs:
            dirs.append((dirpath / d).relative_to(base).as_posix())
    dirs.sort()
    if len(dirs) > MAX_TREE_ENTRIES:
        dirs = dirs[:MAX_TREE_ENTRIES]
        dirs.append(f"[... truncated at {MAX_TREE_ENTRIES} directories]")
    return dirs


def _project_metadata(base: Path) -> tuple[str, str] | None:
    for name in METADATA_FILES:
        path = base / name
        if not path.is_file():
            continue
        text = path.read_text(encoding="utf-8", errors="replace")
        if name == "package.json":
            try:
                text = json.dumps(json.loads(text), indent=2)
            except json.JSONDecodeError:
                pass  # show it as-is
        if len(text) > MAX_METADATA_CHARS:
            text = text[:MAX_METADATA_CHARS] + "\n[truncated]"
        return name, text.strip()
    return None


def load_project_context(work_dir: str) -> str | None:
    """Describe the project layout and its metadata file, if any."""
    base = Path(work_dir).resolve()
    try:
        dirs = _directory_listing(base)
        metadata = _project_metadata(base)
    except OSError as exc:
        logger.debug("Project context unavailable: %s", exc)
        return None

    lines = [CONTEXT_HEADER, "Directory Structure:"]
    lines.append("\n".join(dirs) if dirs else "(no subdirectories)")
    if metadata is not None:
        name, text = metadata
        lines.append("")
        lines.append(f"{name}:")
        lines.append(text)
    return "\n".join(lines)


def build_system_prompt(session) -> str:
    """Compose the system prompt for one model call.

    The result depends only on the provider, the workDir contents and the
    ``disable_agent_rules`` option, so repeated calls are identical.
    """
    options = session.options
    parts = [load_template(options.provider)]

    context = load_project_context(session.work_dir)
    if context:
        parts.append(context)

    if not options.disable_agent_rules:
        rules = load_agent_rules(session.work_dir)
        if rules:
            parts.append(f"{RULES_HEADER}\n{rules}")

    return "\n\n".join(parts)
