"""Folding streamed model output into AI messages."""

import json

from .messages import AIMessage, ToolCall, ToolCallChunk, new_id


def _merge_chunk(prev: ToolCallChunk, chunk: ToolCallChunk) -> ToolCallChunk:
    return ToolCallChunk(
        index=prev.index,
        id=prev.id or chunk.id,
        name=prev.name or chunk.name,
        args=prev.args + (chunk.args or ""),
    )


def accumulate(previous: AIMessage | None, chunk: AIMessage) -> AIMessage:
    """Merge a streamed chunk into the running partial AI message.

    Pure: neither argument is modified. Text is concatenated; tool-call
    chunks are merged by ``index`` (argument text concatenated, first id and
    name win); complete tool calls some providers emit are appended.
    """
    if previous is None:
        return AIMessage(
            text=chunk.text,
            tool_calls=list(chunk.tool_calls),
            tool_call_chunks=[
                ToolCallChunk(c.index, c.id, c.name, c.args or "")
                for c in sorted(chunk.tool_call_chunks, key=lambda c: c.index)
            ],
            id=chunk.id,
        )

    merged: dict[int, ToolCallChunk] = {c.index: c for c in previous.tool_call_chunks}
    for c in chunk.tool_call_chunks:
        prev = merged.get(c.index)
        if prev is None:
            merged[c.index] = ToolCallChunk(c.index, c.id, c.name, c.args or "")
        else:
            merged[c.index] = _merge_chunk(prev, c)

    return AIMessage(
        text=previous.text + chunk.text,
        tool_calls=previous.tool_calls + list(chunk.tool_calls),
        tool_call_chunks=[merged[i] for i in sorted(merged)],
        id=previous.id,
    )


def has_tool_calls(msg: AIMessage | None) -> bool:
    return msg is not None and bool(msg.tool_calls or msg.tool_call_chunks)


def parse_partial_json(text: str) -> dict | None:
    """Best-effort parse of an incomplete JSON object.

    Closes any open string, array and object so that ``{"fileName": "sr``
    yields ``{"fileName": "sr"}``. Returns None when the text cannot be
    completed into an object yet.
    """
    text = text.strip()
    if not text:
        return {}
    try:
        value = json.loads(text)
        return value if isinstance(value, dict) else None
    except json.JSONDecodeError:
        pass

    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack:
                return None
            stack.pop()

    candidate = text
    if in_string:
        if escaped:
            candidate = candidate[:-1]
        candidate += '"'
    candidate = candidate.rstrip()
    if candidate.endswith(","):
        candidate = candidate[:-1]
    candidate += "".join(reversed(stack))
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def finalize(partial: AIMessage) -> AIMessage:
    """Turn a completed partial message into one with parsed ``tool_calls``.

    Tool calls whose argument text is not a JSON object keep the raw text in
    ``invalid_args`` so the work loop can report it back to the model.
    """
    calls = list(partial.tool_calls)
    for c in partial.tool_call_chunks:
        raw = c.args or ""
        invalid = None
        try:
            args = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            args, invalid = {}, raw
        if not isinstance(args, dict):
            args, invalid = {}, raw
        calls.append(
            ToolCall(
                id=c.id or f"call_{new_id()[:24]}",
                name=c.name or "",
                args=args,
                invalid_args=invalid,
            )
        )
    return AIMessage(text=partial.text, tool_calls=calls, id=partial.id)


def preview_tool_calls(partial: AIMessage) -> list[ToolCall]:
    """Tool calls reconstructed from a still-streaming message, for display.

    Arguments are filled in only once the partial JSON can be parsed.
    """
    previews = list(partial.tool_calls)
    for c in partial.tool_call_chunks:
        args = parse_partial_json(c.args or "")
        previews.append(
            ToolCall(
                id=c.id or f"pending-{c.index}",
                name=c.name or "",
                args=args or {},
            )
        )
    return previews
