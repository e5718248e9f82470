"""Turning a session timeline into the message list sent to the model."""

import json
import logging

import tiktoken

from .messages import (
    AIMessage,
    HumanMessage,
    Message,
    SystemMessage,
    ToolResultMessage,
)
from .prompt import build_system_prompt

logger = logging.getLogger(__name__)

_encoder = tiktoken.get_encoding("cl100k_base")

MESSAGE_OVERHEAD = 4  # role, separators
MISSING_TOOL_CONTENT = "ERROR: No content returned from tool."


def estimate_tokens(msg: Message) -> int:
    """Approximate the prompt tokens one message costs."""
    text = msg.text or ""
    if isinstance(msg, AIMessage):
        for tc in msg.tool_calls:
            text += tc.name + json.dumps(tc.args)
    return len(_encoder.encode(text, disallowed_special=())) + MESSAGE_OVERHEAD


def group_into_turns(messages: list[Message]) -> list[list[Message]]:
    """Group messages into atomic units.

    An AI message with tool calls and the tool results answering it form one
    group; every other message is a group of its own.
    """
    groups: list[list[Message]] = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        if isinstance(msg, AIMessage) and msg.tool_calls:
            group: list[Message] = [msg]
            ids = {tc.id for tc in msg.tool_calls}
            j = i + 1
            while (
                j < len(messages)
                and isinstance(messages[j], ToolResultMessage)
                and messages[j].tool_call_id in ids
            ):
                group.append(messages[j])
                j += 1
            groups.append(group)
            i = j
        else:
            groups.append([msg])
            i += 1
    return groups


def _trim(messages: list[Message], limit: int, cost) -> list[Message]:
    """Keep a suffix of ``messages`` whose total cost fits in ``limit``.

    Everything from the most recent human message to the end is always
    kept, even when it alone exceeds the limit, so the current turn's tool
    calls and results survive. Older groups are added newest first until
    one does not fit.
    """
    groups = group_into_turns(messages)
    start = len(groups)
    for idx in range(len(groups) - 1, -1, -1):
        if isinstance(groups[idx][0], HumanMessage):
            start = idx
            break

    used = sum(cost(m) for group in groups[start:] for m in group)
    while start > 0:
        size = sum(cost(m) for m in groups[start - 1])
        if used + size > limit:
            break
        start -= 1
        used += size

    kept = [m for group in groups[start:] for m in group]
    if len(kept) < len(messages):
        logger.debug("Trimmed %d of %d messages", len(messages) - len(kept), len(messages))
    return kept


def trim_by_count(messages: list[Message], max_messages: int | None) -> list[Message]:
    if not max_messages:
        return messages
    return _trim(messages, max_messages, lambda m: 1)


def trim_by_tokens(messages: list[Message], budget: int | None) -> list[Message]:
    if budget is None:
        return messages
    return _trim(messages, budget, estimate_tokens)


def _to_model_visible(messages: list[Message]) -> list[Message]:
    out: list[Message] = []
    for msg in messages:
        if isinstance(msg, (HumanMessage, ToolResultMessage)):
            out.append(msg)
        elif isinstance(msg, AIMessage) and (msg.text or msg.tool_calls):
            out.append(msg)
    return out


def _tool_results_as_text(messages: list[Message]) -> list[Message]:
    return [
        AIMessage(
            text=f"Result of tool call {msg.name}:\n\n{msg.content or MISSING_TOOL_CONTENT}",
            id=msg.id,
        )
        if isinstance(msg, ToolResultMessage)
        else msg
        for msg in messages
    ]


def prepare(
    messages: list[Message],
    session,
    system_prompt: str | None = None,
    transform_tool_messages: bool = False,
) -> list[Message]:
    """Build the model input for one call.

    Drops UI-only entries (errors, tool progress, empty AI turns), trims to
    the session's ``max_messages`` and ``context_size`` while keeping tool
    call groups whole, optionally rewrites tool results as plain AI text,
    and prepends a fresh system message.
    """
    if system_prompt is None:
        system_prompt = build_system_prompt(session)
    system = SystemMessage(system_prompt)

    visible = _to_model_visible(messages)
    options = session.options
    try:
        trimmed = trim_by_count(visible, options.max_messages)
        if options.context_size:
            budget = max(options.context_size - estimate_tokens(system), 0)
            trimmed = trim_by_tokens(trimmed, budget)
    except Exception:
        logger.debug("Trimming failed, sending untrimmed history", exc_info=True)
        trimmed = visible

    if transform_tool_messages:
        trimmed = _tool_results_as_text(trimmed)
    return [system, *trimmed]
