"""Conversation sessions and their on-disk store."""

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .errors import ConfigError
from .messages import Message, from_dict, to_dict
from .provider import ProviderOptions
from .tools import READ_ONLY, TOOL_MODES

logger = logging.getLogger(__name__)

DEFAULT_SESSIONS_DIR = Path.home() / ".coba" / "sessions"
SESSION_SUFFIX = ".json"


def new_session_id() -> str:
    """Sortable unique id: creation timestamp plus a random suffix."""
    return datetime.now().strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:8]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class Session:
    """One conversation: where it works, how tools are gated and what was said.

    ``finished`` is the timeline cursor returned by the work loop; it is less
    than ``len(messages)`` while a tool call waits for confirmation.
    """

    work_dir: str
    options: ProviderOptions
    tool_mode: str = READ_ONLY
    messages: list[Message] = field(default_factory=list)
    finished: int = 0
    id: str = field(default_factory=new_session_id)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    store: "SessionStore | None" = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.tool_mode not in TOOL_MODES:
            raise ConfigError(
                f"invalid tool mode {self.tool_mode!r} (expected one of: {', '.join(TOOL_MODES)})"
            )
        self.work_dir = str(self.work_dir)

    @property
    def blocked(self) -> bool:
        return self.finished < len(self.messages)

    def set_messages(self, messages: list[Message], finished: int | None = None) -> None:
        """Replace the timeline and persist it.

        Nothing is written when both the old and the new timeline are empty.
        """
        if not self.messages and not messages:
            return
        self.messages = list(messages)
        self.finished = len(self.messages) if finished is None else finished
        self.updated_at = _now()
        self.save()

    def save(self) -> None:
        if self.store is not None:
            self.store.save(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workDir": self.work_dir,
            "toolMode": self.tool_mode,
            "chatServiceOptions": self.options.to_dict(),
            "messages": [to_dict(m) for m in self.messages],
            "finished": self.finished,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        """Rebuild a session. Messages that fail to parse are skipped with a warning.

        Raises:
            ConfigError: If the document itself is malformed.
        """
        if not isinstance(data, dict):
            raise ConfigError("session document must be a JSON object")
        try:
            session_id = data["id"]
            work_dir = data["workDir"]
            tool_mode = data.get("toolMode", READ_ONLY)
            options_data = data["chatServiceOptions"]
            raw_messages = data.get("messages", [])
        except KeyError as e:
            raise ConfigError(f"session document is missing {e.args[0]!r}") from e
        if not isinstance(session_id, str) or not isinstance(work_dir, str):
            raise ConfigError("session 'id' and 'workDir' must be strings")
        if not isinstance(options_data, dict) or not isinstance(raw_messages, list):
            raise ConfigError("session 'chatServiceOptions' or 'messages' has the wrong type")
        try:
            options = ProviderOptions.from_dict(options_data)
        except TypeError as e:
            raise ConfigError(f"invalid chatServiceOptions: {e}") from e

        messages: list[Message] = []
        for i, raw in enumerate(raw_messages):
            try:
                messages.append(from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable message %d in session %s: %s", i, session_id, e)

        finished = data.get("finished", len(messages))
        if not isinstance(finished, int) or not 0 <= finished <= len(messages):
            finished = len(messages)

        return cls(
            work_dir=work_dir,
            options=options,
            tool_mode=tool_mode,
            messages=messages,
            finished=finished,
            id=session_id,
            created_at=str(data.get("createdAt") or _now()),
            updated_at=str(data.get("updatedAt") or _now()),
        )


@dataclass
class SessionSummary:
    id: str
    work_dir: str
    provider: str
    model: str
    message_count: int
    updated_at: str
    path: Path
    preview: str = ""


def _write_atomic(path: Path, text: str) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class SessionStore:
    """Sessions stored as ``<root>/<id>.json``."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root).expanduser() if root else DEFAULT_SESSIONS_DIR

    def path_for(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise ConfigError(f"invalid session id {session_id!r}")
        return self.root / f"{session_id}{SESSION_SUFFIX}"

    def save(self, session: Session) -> Path:
        """Write the session atomically (temp file in the same directory, then rename)."""
        path = self.path_for(session.id)
        self.root.mkdir(parents=True, exist_ok=True)
        _write_atomic(path, json.dumps(session.to_dict(), indent=2, ensure_ascii=False))
        logger.debug("Saved session %s to %s", session.id, path)
        return path

    def _resolve(self, path_or_id: str | Path) -> Path:
        candidate = Path(path_or_id).expanduser()
        if candidate.suffix == SESSION_SUFFIX or candidate.exists():
            return candidate
        return self.path_for(str(path_or_id))

    def load(self, path_or_id: str | Path) -> Session:
        """Load a session by file path or id, attached to this store.

        Raises:
            ConfigError: If the file cannot be read or is not a session document.
        """
        path = self._resolve(path_or_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigError(f"cannot read session {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"session file {path} is not valid JSON: {e}") from e
        session = Session.from_dict(data)
        session.store = self
        return session

    def list_sessions(
        self, work_dir: str | None = None, limit: int | None = None
    ) -> list[SessionSummary]:
        """Summaries of saved sessions, most recently updated first."""
        if not self.root.is_dir():
            return []
        wanted = str(Path(work_dir).resolve()) if work_dir else None
        summaries = []
        for path in self.root.glob(f"*{SESSION_SUFFIX}"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("not a JSON object")
                options = data.get("chatServiceOptions") or {}
                messages = data.get("messages") or []
                summary = SessionSummary(
                    id=str(data["id"]),
                    work_dir=str(data["workDir"]),
                    provider=str(options.get("provider", "")),
                    model=str(options.get("model", "")),
                    message_count=len(messages),
                    updated_at=str(data.get("updatedAt") or ""),
                    path=path,
                    preview=_preview(messages),
                )
            except (OSError, ValueError, KeyError, AttributeError) as e:
                logger.warning("Could not read session %s: %s", path.name, e)
                continue
            if wanted and summary.work_dir != wanted:
                continue
            summaries.append(summary)

        summaries.sort(key=lambda s: (s.updated_at, s.id), reverse=True)
        if limit and limit > 0:
            summaries = summaries[:limit]
        return summaries

    def latest(self, work_dir: str) -> Session | None:
        """The most recently updated session for ``work_dir``, if any."""
        for summary in self.list_sessions(work_dir=work_dir):
            try:
                return self.load(summary.path)
            except ConfigError as e:
                logger.warning("Skipping session %s: %s", summary.id, e)
        return None

    def delete(self, session_id: str) -> bool:
        try:
            self.path_for(session_id).unlink()
        except FileNotFoundError:
            return False
        return True


def _preview(messages: list) -> str:
    for raw in reversed(messages):
        if isinstance(raw, dict) and raw.get("type") == "human":
            text = str(raw.get("text", "")).strip().replace("\n", " ")
            return text[:100]
    return ""
