"""The agentic work loop: stream a reply, run its tool calls, repeat.

One call to :func:`work` handles one user turn. It keeps calling the model
for as long as the latest reply asks for tools, and stops when the model
answers in plain text, when a tool needs user confirmation, when the turn is
cancelled, or when something fails. Failures never raise; they are recorded
in the timeline as error entries.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Callable

from .messages import (
    CONFIRMED,
    DECLINED,
    ERROR_PREFIX,
    FAILED,
    PENDING,
    PENDING_CONFIRMATION,
    SUCCESS,
    AIMessage,
    ErrorMessage,
    Message,
    ToolCall,
    ToolProgressMessage,
    ToolResultMessage,
    is_error_text,
    new_id,
)
from .prepare import prepare
from .prompt import build_system_prompt
from .provider import LLMClient, ProviderClientCache
from .stream import accumulate, finalize, has_tool_calls, preview_tool_calls
from .tools import CONFIRM, READ_ONLY, Tool, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 100
CANCELLED = "Cancelled by user."
DECLINED_RESULT = f"{ERROR_PREFIX}Tool call declined by user."
CANCELLED_RESULT = f"{ERROR_PREFIX}Tool call cancelled by user."
EMPTY_REPLY = f"{ERROR_PREFIX}The model returned an empty response."


_END = object()


async def _next_chunk(stream):
    return await anext(stream, _END)


def failure_text(name: str, reason: str) -> str:
    return f"{ERROR_PREFIX}Tool invocation failed for tool {name} with error: {reason}."


def policy_denial(name: str) -> str:
    return f"{ERROR_PREFIX}Tool call denied by policy: {name} is not allowed in read-only mode."


@dataclass
class WorkResult:
    """Outcome of one :func:`work` call.

    ``finished`` equals ``len(messages)`` when the turn is complete, otherwise
    it points at the tool progress entry waiting for confirmation.
    """

    messages: list[Message]
    finished: int

    @property
    def blocked(self) -> bool:
        return self.finished < len(self.messages)


def open_batch(messages: list[Message]) -> int | None:
    """Index of the last AI message if its tool calls are not all resolved."""
    for idx in range(len(messages) - 1, -1, -1):
        msg = messages[idx]
        if isinstance(msg, AIMessage):
            break
    else:
        return None
    if not msg.tool_calls:
        return None
    ids = {tc.id for tc in msg.tool_calls}
    resolved = {
        m.tool_call.id
        for m in messages[idx + 1 :]
        if isinstance(m, ToolProgressMessage) and m.resolved
    }
    return None if ids <= resolved else idx


def pending_confirmations(messages: list[Message]) -> list[int]:
    """Indices of tool progress entries currently awaiting a user decision."""
    return [
        i
        for i, m in enumerate(messages)
        if isinstance(m, ToolProgressMessage) and m.status == PENDING_CONFIRMATION
    ]


class _WorkLoop:
    def __init__(
        self,
        session,
        messages: list[Message],
        registry: ToolRegistry,
        send: Callable[[list[Message]], None] | None,
        cancel: asyncio.Event | None,
        persist: Callable[[list[Message]], None] | None = None,
    ):
        self.session = session
        self.timeline = list(messages)
        self.registry = registry
        self.tools = registry.for_mode(session.tool_mode)
        self.send = send
        self.cancel = cancel
        self.persist = persist
        self.system_prompt: str | None = None
        self._placeholder_ids: dict[int, str] = {}

    def emit(self, extra: list[Message] | None = None) -> None:
        if self.send is not None:
            self.send(self.timeline + (extra or []))

    def commit(self) -> None:
        """Publish a settled timeline change and hand it to ``persist``."""
        self.emit()
        if self.persist is not None:
            self.persist(list(self.timeline))

    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    async def _until_cancelled(self, aw) -> tuple[bool, object]:
        """Await ``aw`` unless the cancel event fires first.

        Returns ``(True, None)`` when cancelled, in which case ``aw`` has
        been cancelled too, and ``(False, result)`` otherwise.
        """
        if self.cancel is None:
            return False, await aw
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self.cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        if task.cancelled():
            return True, None
        return False, task.result()

    def add_error(self, content: str, exc: BaseException | None = None) -> None:
        if exc is None:
            self.timeline.append(ErrorMessage(content))
        else:
            self.timeline.append(ErrorMessage.from_exception(content, exc))
        self.commit()

    # -- Streaming ---------------------------------------------------------

    def _snapshot(self, partial: AIMessage) -> list[Message]:
        if not has_tool_calls(partial):
            return [partial]
        extra: list[Message] = []
        if partial.text:
            extra.append(AIMessage(text=partial.text, id=partial.id))
        for pos, tc in enumerate(preview_tool_calls(partial)):
            pid = self._placeholder_ids.setdefault(pos, new_id())
            extra.append(ToolProgressMessage(tool_call=tc, id=pid))
        return extra

    async def stream_reply(self, client: LLMClient) -> AIMessage | None:
        """Stream one model reply. Returns None when the turn must end."""
        if self.system_prompt is None:
            self.system_prompt = await asyncio.to_thread(build_system_prompt, self.session)
        prepared = prepare(
            self.timeline,
            self.session,
            system_prompt=self.system_prompt,
            transform_tool_messages=client.transform_tool_messages,
        )
        try:
            stopped, chunks = await self._until_cancelled(
                client.stream(prepared, metadata={"workDir": str(self.session.work_dir)})
            )
        except Exception as e:
            logger.debug("Stream failed to start", exc_info=True)
            self.add_error(f"{ERROR_PREFIX}{e}", e)
            return None
        if stopped:
            self.add_error(CANCELLED)
            return None

        self._placeholder_ids = {}
        partial: AIMessage | None = None
        try:
            async with aclosing(chunks) as stream:
                while True:
                    stopped, chunk = await self._until_cancelled(_next_chunk(stream))
                    if stopped or chunk is _END or self.cancelled():
                        break
                    partial = accumulate(partial, chunk)
                    self.emit(self._snapshot(partial))
        except Exception as e:
            logger.debug("Stream failed", exc_info=True)
            self.add_error(f"{ERROR_PREFIX}{e}", e)
            return None

        if self.cancelled():
            self.add_error(CANCELLED)
            return None
        if partial is None:
            self.add_error(EMPTY_REPLY)
            return None
        return finalize(partial)

    # -- Tool execution ----------------------------------------------------

    def _lookup(self, tc: ToolCall) -> tuple[Tool | None, str | None]:
        tool = self.tools.get(tc.name)
        if tool is None:
            if tc.name in self.registry.all_tools() and self.session.tool_mode == READ_ONLY:
                return None, policy_denial(tc.name)
            return None, failure_text(tc.name or "<unnamed>", "Tool not found")
        if tc.invalid_args is not None:
            return None, failure_text(
                tc.name, f"invalid JSON in tool arguments: {tc.invalid_args[:200]!r}"
            )
        return tool, None

    def _resolve(self, idx: int, status: str, content: str) -> None:
        entry: ToolProgressMessage = self.timeline[idx]
        self.timeline[idx] = entry.advance(status, content)
        tc = entry.tool_call
        self.timeline.append(
            ToolResultMessage(
                tool_call_id=tc.id, name=tc.name, content=content, status=status
            )
        )
        self.commit()

    def _cancel_remaining(self, ai: AIMessage, progress: dict[str, int]) -> None:
        for tc in ai.tool_calls:
            idx = progress[tc.id]
            entry = self.timeline[idx]
            if entry.resolved:
                continue
            if entry.status == PENDING_CONFIRMATION:
                self.timeline[idx] = entry.advance(DECLINED)
            self._resolve(idx, FAILED, CANCELLED_RESULT)
        self.add_error(CANCELLED)

    async def run_batch(self, ai_index: int) -> int | None | bool:
        """Work through the tool calls of the AI message at ``ai_index``.

        Returns the index of an entry awaiting confirmation, False when the
        turn was cancelled, or None when every call is resolved.
        """
        ai: AIMessage = self.timeline[ai_index]
        progress = {
            m.tool_call.id: i
            for i, m in enumerate(self.timeline)
            if i > ai_index and isinstance(m, ToolProgressMessage)
        }
        for tc in ai.tool_calls:
            if tc.id not in progress:
                self.timeline.append(ToolProgressMessage(tool_call=tc))
                progress[tc.id] = len(self.timeline) - 1

        for tc in ai.tool_calls:
            idx = progress[tc.id]
            entry = self.timeline[idx]
            if entry.resolved:
                continue
            if self.cancelled():
                self._cancel_remaining(ai, progress)
                return False
            if entry.status == PENDING_CONFIRMATION:
                return idx
            if entry.status == DECLINED:
                self._resolve(idx, FAILED, DECLINED_RESULT)
                continue

            tool, failure = self._lookup(tc)
            if failure is not None:
                self._resolve(idx, FAILED, failure)
                continue

            if entry.status == PENDING:
                if tool.destructive and self.session.tool_mode == CONFIRM:
                    self.timeline[idx] = entry.advance(PENDING_CONFIRMATION)
                    self.commit()
                    return idx
                self.timeline[idx] = entry.advance(CONFIRMED)
                self.commit()

            try:
                result = await asyncio.to_thread(tool.invoke, tc.args, str(self.session.work_dir))
            except Exception as e:
                result = failure_text(tc.name, str(e))
            self._resolve(idx, FAILED if is_error_text(result) else SUCCESS, result)
        return None

    # -- Driver ------------------------------------------------------------

    async def run(self, client: LLMClient, max_turns: int) -> WorkResult:
        turns = 0
        while True:
            ai_index = open_batch(self.timeline)
            if ai_index is None:
                if turns >= max_turns:
                    self.add_error(
                        f"{ERROR_PREFIX}Stopped after {max_turns} model calls without a final answer."
                    )
                    break
                turns += 1
                ai = await self.stream_reply(client)
                if ai is None:
                    break
                self.timeline.append(ai)
                if not ai.tool_calls:
                    self.commit()
                    break
                for pos, tc in enumerate(ai.tool_calls):
                    pid = self._placeholder_ids.get(pos) or new_id()
                    self.timeline.append(ToolProgressMessage(tool_call=tc, id=pid))
                self.commit()
                ai_index = len(self.timeline) - len(ai.tool_calls) - 1

            outcome = await self.run_batch(ai_index)
            if outcome is False:
                break
            if outcome is not None:
                logger.debug("Waiting for confirmation of entry %d", outcome)
                return WorkResult(self.timeline, outcome)
        return WorkResult(self.timeline, len(self.timeline))


async def work(
    session,
    messages: list[Message],
    *,
    cache: ProviderClientCache,
    registry: ToolRegistry,
    send: Callable[[list[Message]], None] | None = None,
    cancel: asyncio.Event | None = None,
    persist: Callable[[list[Message]], None] | None = None,
    max_turns: int = DEFAULT_MAX_TURNS,
) -> WorkResult:
    """Run one turn over a copy of ``messages``.

    ``send`` receives a fresh snapshot of the timeline after every change.
    ``persist`` receives the timeline whenever it settles: a finished reply
    with its tool entries, each tool result, each error. Setting ``cancel``
    interrupts a stream at once, without waiting for its next chunk.
    When the previous call stopped for confirmation, call again once the
    waiting entry has been set to confirmed or declined; the loop resumes
    with that tool call instead of asking the model again.

    Raises:
        ConfigError: If the session's provider cannot be set up.
    """
    client = cache.get_client(session.options)
    loop = _WorkLoop(session, messages, registry, send, cancel, persist)
    bound = client.bind_tools([t.schema for t in loop.tools.values()])
    return await loop.run(bound, max_turns)
