"""Shared fixtures: a scripted LLM client and sessions rooted in tmp_path."""

import asyncio

import pytest

from coba.messages import AIMessage, ToolCallChunk
from coba.provider import ProviderOptions
from coba.session import Session, SessionStore
from coba.tools import READ_ONLY


def text_reply(*parts):
    return [AIMessage(text=p) for p in parts]


def tool_reply(name, args_json, call_id="call_1", text="", split=True):
    """Chunks for one tool call, with the argument JSON split across two chunks."""
    chunks = [AIMessage(text=text)] if text else []
    if split and len(args_json) > 1:
        half = len(args_json) // 2
        chunks.append(AIMessage(tool_call_chunks=[ToolCallChunk(0, call_id, name, args_json[:half])]))
        chunks.append(AIMessage(tool_call_chunks=[ToolCallChunk(0, None, None, args_json[half:])]))
    else:
        chunks.append(AIMessage(tool_call_chunks=[ToolCallChunk(0, call_id, name, args_json)]))
    return chunks


class StreamBroke(Exception):
    pass


class Stall:
    """A reply that hangs, either before the stream starts or after ``chunks``."""

    seconds = 30

    def __init__(self, chunks=(), at_start=False):
        self.chunks = list(chunks)
        self.at_start = at_start


class FakeClient:
    """Plays back one scripted reply per stream() call.

    A reply is a list of chunks, an exception (the stream fails to start),
    a ``(chunks, exception)`` pair (the stream fails after ``chunks``), or
    a :class:`Stall`.
    """

    transform_tool_messages = False

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []
        self.tools = ()

    def bind_tools(self, schemas):
        self.tools = tuple(schemas)
        return self

    async def stream(self, messages, *, metadata=None):
        self.calls.append({"messages": list(messages), "metadata": metadata})
        if not self.replies:
            raise AssertionError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        stall = None
        if isinstance(reply, Stall):
            stall = reply
            if stall.at_start:
                await asyncio.sleep(stall.seconds)
            chunks, failure = stall.chunks, None
        elif isinstance(reply, tuple):
            chunks, failure = reply
        else:
            chunks, failure = reply, None

        async def gen():
            for chunk in chunks:
                yield chunk
            if stall is not None:
                await asyncio.sleep(stall.seconds)
            if failure is not None:
                raise failure

        return gen()


class FakeCache:
    def __init__(self, client):
        self.client = client
        self.requested = []

    def get_client(self, options):
        self.requested.append(options)
        return self.client


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions")


@pytest.fixture
def work_dir(tmp_path):
    d = tmp_path / "project"
    d.mkdir()
    return d


@pytest.fixture
def make_session(work_dir, store):
    def _make(tool_mode=READ_ONLY, **options):
        opts = {"provider": "ollama", "model": "test-model", **options}
        return Session(
            work_dir=str(work_dir),
            options=ProviderOptions(**opts),
            tool_mode=tool_mode,
            store=store,
        )

    return _make
