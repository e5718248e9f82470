"""Conversation message model.

Every entry in a session timeline is one of the dataclasses below. They share
a ``type`` tag (used for serialization and rendering) and a ``text``
projection (used for rendering and token estimation). Messages are treated as
values: state changes produce a new instance with the same ``id``.
"""

import dataclasses
import json
import uuid
from dataclasses import dataclass, field
from typing import ClassVar

HUMAN = "human"
AI = "ai"
TOOL = "tool"
TOOL_PROGRESS = "tool-progress"
ERROR = "error"
SYSTEM = "system"

PENDING = "pending"
PENDING_CONFIRMATION = "pending-confirmation"
CONFIRMED = "confirmed"
DECLINED = "declined"
SUCCESS = "success"
FAILED = "error"

ERROR_PREFIX = "ERROR: "

# Allowed ToolProgress status transitions. success/error are terminal.
_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PENDING_CONFIRMATION, CONFIRMED, FAILED},
    PENDING_CONFIRMATION: {CONFIRMED, DECLINED},
    CONFIRMED: {SUCCESS, FAILED},
    DECLINED: {FAILED},
    SUCCESS: set(),
    FAILED: set(),
}

TOOL_PROGRESS_STATUSES = frozenset(_TRANSITIONS)


def new_id() -> str:
    return uuid.uuid4().hex


def is_error_text(text: str) -> bool:
    return text.startswith(ERROR_PREFIX)


@dataclass
class ToolCall:
    id: str
    name: str
    args: dict = field(default_factory=dict)
    # Raw argument text when the model sent something that is not a JSON object.
    invalid_args: str | None = None


@dataclass
class ToolCallChunk:
    """A fragment of a tool call as it arrives from the model stream.

    ``args`` is raw (possibly incomplete) JSON text; fragments with the same
    ``index`` are concatenated.
    """

    index: int
    id: str | None = None
    name: str | None = None
    args: str = ""


@dataclass
class HumanMessage:
    type: ClassVar[str] = HUMAN

    text: str
    id: str = field(default_factory=new_id)


@dataclass
class AIMessage:
    type: ClassVar[str] = AI

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_chunks: list[ToolCallChunk] = field(default_factory=list)
    id: str = field(default_factory=new_id)


@dataclass
class ToolResultMessage:
    type: ClassVar[str] = TOOL

    tool_call_id: str
    name: str
    content: str
    status: str = SUCCESS
    id: str = field(default_factory=new_id)

    @property
    def text(self) -> str:
        return self.content


@dataclass
class ToolProgressMessage:
    type: ClassVar[str] = TOOL_PROGRESS

    tool_call: ToolCall
    status: str = PENDING
    content: str | None = None
    id: str = field(default_factory=new_id)

    @property
    def text(self) -> str:
        return self.content or ""

    @property
    def resolved(self) -> bool:
        return self.status in (SUCCESS, FAILED)

    def advance(self, status: str, content: str | None = None) -> "ToolProgressMessage":
        """Return a copy moved to ``status``.

        Raises ValueError for transitions the lifecycle does not allow.
        """
        if status not in _TRANSITIONS.get(self.status, set()):
            raise ValueError(
                f"illegal tool progress transition {self.status!r} -> {status!r} "
                f"for {self.tool_call.name}"
            )
        return dataclasses.replace(
            self, status=status, content=content if content is not None else self.content
        )


@dataclass
class ErrorMessage:
    type: ClassVar[str] = ERROR

    content: str
    cause: dict | None = None
    id: str = field(default_factory=new_id)

    @property
    def text(self) -> str:
        return self.content

    @classmethod
    def from_exception(cls, content: str, exc: BaseException) -> "ErrorMessage":
        return cls(content, cause={"name": type(exc).__name__, "message": str(exc)})


@dataclass
class SystemMessage:
    type: ClassVar[str] = SYSTEM

    text: str
    id: str = field(default_factory=new_id)


Message = (
    HumanMessage
    | AIMessage
    | ToolResultMessage
    | ToolProgressMessage
    | ErrorMessage
    | SystemMessage
)


# -- Serialization -----------------------------------------------------------


def _tool_call_to_dict(tc: ToolCall) -> dict:
    out = {"id": tc.id, "name": tc.name, "args": tc.args}
    if tc.invalid_args is not None:
        out["invalid_args"] = tc.invalid_args
    return out


def _tool_call_from_dict(obj: dict) -> ToolCall:
    args = obj.get("args") or {}
    if not isinstance(args, dict):
        raise ValueError(f"tool call args must be an object, got {type(args).__name__}")
    invalid = obj.get("invalid_args")
    return ToolCall(
        id=str(obj["id"]),
        name=str(obj["name"]),
        args=args,
        invalid_args=str(invalid) if invalid is not None else None,
    )


def to_dict(msg: Message) -> dict:
    """Serialize a message to a JSON-compatible dict tagged with ``type``.

    Streaming-only state (``tool_call_chunks``) is not persisted.
    """
    if isinstance(msg, HumanMessage):
        return {"type": HUMAN, "id": msg.id, "text": msg.text}
    if isinstance(msg, AIMessage):
        return {
            "type": AI,
            "id": msg.id,
            "text": msg.text,
            "tool_calls": [_tool_call_to_dict(tc) for tc in msg.tool_calls],
        }
    if isinstance(msg, ToolResultMessage):
        return {
            "type": TOOL,
            "id": msg.id,
            "tool_call_id": msg.tool_call_id,
            "name": msg.name,
            "status": msg.status,
            "content": msg.content,
        }
    if isinstance(msg, ToolProgressMessage):
        return {
            "type": TOOL_PROGRESS,
            "id": msg.id,
            "tool_call": _tool_call_to_dict(msg.tool_call),
            "status": msg.status,
            "content": msg.content,
        }
    if isinstance(msg, ErrorMessage):
        return {"type": ERROR, "id": msg.id, "content": msg.content, "cause": msg.cause}
    if isinstance(msg, SystemMessage):
        return {"type": SYSTEM, "id": msg.id, "text": msg.text}
    raise TypeError(f"not a message: {msg!r}")


def from_dict(obj: dict) -> Message:
    """Rebuild a message from :func:`to_dict` output.

    Raises ValueError (or KeyError/TypeError for structurally broken input)
    when the object is not a valid serialized message.
    """
    if not isinstance(obj, dict):
        raise ValueError(f"expected an object, got {type(obj).__name__}")
    kind = obj.get("type")
    msg_id = str(obj["id"])
    if kind == HUMAN:
        return HumanMessage(text=str(obj["text"]), id=msg_id)
    if kind == AI:
        return AIMessage(
            text=str(obj.get("text") or ""),
            tool_calls=[_tool_call_from_dict(tc) for tc in obj.get("tool_calls") or []],
            id=msg_id,
        )
    if kind == TOOL:
        status = obj.get("status", SUCCESS)
        if status not in (SUCCESS, FAILED):
            raise ValueError(f"invalid tool result status {status!r}")
        return ToolResultMessage(
            tool_call_id=str(obj["tool_call_id"]),
            name=str(obj["name"]),
            content=str(obj["content"]),
            status=status,
            id=msg_id,
        )
    if kind == TOOL_PROGRESS:
        status = obj["status"]
        if status not in TOOL_PROGRESS_STATUSES:
            raise ValueError(f"invalid tool progress status {status!r}")
        return ToolProgressMessage(
            tool_call=_tool_call_from_dict(obj["tool_call"]),
            status=status,
            content=obj.get("content"),
            id=msg_id,
        )
    if kind == ERROR:
        cause = obj.get("cause")
        return ErrorMessage(
            content=str(obj["content"]),
            cause=cause if isinstance(cause, dict) else None,
            id=msg_id,
        )
    if kind == SYSTEM:
        return SystemMessage(text=str(obj["text"]), id=msg_id)
    raise ValueError(f"unknown message type {kind!r}")


def to_llm_message(msg: Message) -> dict:
    """Convert a model-facing message to the OpenAI chat format litellm expects."""
    if isinstance(msg, SystemMessage):
        return {"role": "system", "content": msg.text}
    if isinstance(msg, HumanMessage):
        return {"role": "user", "content": msg.text}
    if isinstance(msg, AIMessage):
        out: dict = {"role": "assistant", "content": msg.text or None}
        if msg.tool_calls:
            out["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.args)},
                }
                for tc in msg.tool_calls
            ]
        elif not msg.text:
            out["content"] = ""
        return out
    if isinstance(msg, ToolResultMessage):
        return {
            "role": "tool",
            "tool_call_id": msg.tool_call_id,
            "name": msg.name,
            "content": msg.content,
        }
    raise TypeError(f"{msg.type} messages are not valid model input")
