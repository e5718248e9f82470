"""Tests for coba.session: persistence, listing and resumption."""

import json

import pytest

from coba.errors import ConfigError
from coba.messages import (
    AIMessage,
    ErrorMessage,
    HumanMessage,
    ToolCall,
    ToolProgressMessage,
)
from coba.provider import ProviderOptions
from coba.session import Session, SessionStore, new_session_id
from coba.tools import CONFIRM, READ_ONLY


def _session(store, work_dir, **kwargs):
    return Session(
        work_dir=str(work_dir.resolve()),
        options=ProviderOptions(provider="ollama", model="m"),
        store=store,
        **kwargs,
    )


class TestSession:
    def test_invalid_tool_mode(self, work_dir):
        with pytest.raises(ConfigError, match="invalid tool mode"):
            Session(work_dir=str(work_dir), options=ProviderOptions("ollama", "m"), tool_mode="reckless")

    def test_set_messages_saves(self, store, work_dir):
        session = _session(store, work_dir)
        session.set_messages([HumanMessage("hi")])
        assert store.path_for(session.id).exists()
        assert session.finished == 1
        assert not session.blocked

    def test_empty_to_empty_not_saved(self, store, work_dir):
        session = _session(store, work_dir)
        session.set_messages([])
        assert not store.path_for(session.id).exists()

    def test_emptied_timeline_is_saved(self, store, work_dir):
        session = _session(store, work_dir)
        session.set_messages([HumanMessage("hi")])
        session.set_messages([])
        assert store.load(session.id).messages == []

    def test_blocked_cursor(self, store, work_dir):
        session = _session(store, work_dir, tool_mode=CONFIRM)
        tc = ToolCall("c1", "writeFile", {"fileName": "a"})
        session.set_messages(
            [HumanMessage("go"), AIMessage(tool_calls=[tc]), ToolProgressMessage(tc, "pending-confirmation")],
            finished=2,
        )
        assert session.blocked
        loaded = store.load(session.id)
        assert loaded.finished == 2
        assert loaded.tool_mode == CONFIRM

    def test_ids_sortable_and_unique(self):
        a, b = new_session_id(), new_session_id()
        assert a != b
        assert len(a.split("-")) == 3


class TestStore:
    def test_round_trip(self, store, work_dir):
        session = _session(store, work_dir)
        session.set_messages(
            [HumanMessage("hi"), AIMessage("hello"), ErrorMessage("ERROR: boom", cause={"name": "E", "message": "boom"})]
        )
        loaded = store.load(store.path_for(session.id))
        assert loaded == session
        assert loaded.store is store

    def test_document_layout(self, store, work_dir):
        session = _session(store, work_dir)
        session.set_messages([HumanMessage("hi")])
        data = json.loads(store.path_for(session.id).read_text(encoding="utf-8"))
        assert set(data) == {
            "id",
            "workDir",
            "toolMode",
            "chatServiceOptions",
            "messages",
            "finished",
            "createdAt",
            "updatedAt",
        }
        assert data["toolMode"] == READ_ONLY
        assert data["chatServiceOptions"]["provider"] == "ollama"

    def test_atomic_save_leaves_no_temp_files(self, store, work_dir):
        session = _session(store, work_dir)
        for i in range(3):
            session.set_messages([*session.messages, HumanMessage(str(i))])
        assert [p.name for p in store.root.iterdir()] == [f"{session.id}.json"]

    def test_bad_messages_skipped(self, store, work_dir):
        session = _session(store, work_dir)
        session.set_messages([HumanMessage("keep")])
        path = store.path_for(session.id)
        data = json.loads(path.read_text(encoding="utf-8"))
        data["messages"].append({"type": "hologram", "id": "x"})
        data["messages"].append({"type": "human"})
        path.write_text(json.dumps(data), encoding="utf-8")
        loaded = store.load(path)
        assert [m.text for m in loaded.messages] == ["keep"]
        assert loaded.finished == 1

    @pytest.mark.parametrize(
        "content",
        ["not json", "[1, 2]", json.dumps({"id": "x"}), json.dumps({"id": 1, "workDir": "/", "chatServiceOptions": {}})],
    )
    def test_invalid_documents(self, store, content):
        store.root.mkdir(parents=True)
        path = store.root / "broken.json"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigError):
            store.load(path)

    def test_missing_file(self, store):
        with pytest.raises(ConfigError, match="cannot read session"):
            store.load("20240101-000000-deadbeef")

    @pytest.mark.parametrize("bad", ["", "..", "a/b", "a\\b"])
    def test_invalid_ids(self, store, bad):
        with pytest.raises(ConfigError):
            store.path_for(bad)


class TestListing:
    def test_newest_first_and_filtered(self, store, tmp_path, work_dir):
        other = tmp_path / "other"
        other.mkdir()
        old = _session(store, work_dir, updated_at="2024-01-01T00:00:00+00:00")
        new = _session(store, work_dir, updated_at="2024-06-01T00:00:00+00:00")
        elsewhere = _session(store, other, updated_at="2025-01-01T00:00:00+00:00")
        old.messages = [HumanMessage("old question")]
        new.messages = [HumanMessage("new\nquestion"), AIMessage("answer")]
        for s in (old, new, elsewhere):
            store.save(s)

        everything = store.list_sessions()
        assert [s.id for s in everything] == [elsewhere.id, new.id, old.id]

        mine = store.list_sessions(work_dir=str(work_dir))
        assert [s.id for s in mine] == [new.id, old.id]
        assert mine[0].preview == "new question"
        assert mine[0].message_count == 2
        assert store.list_sessions(limit=1)[0].id == elsewhere.id

        assert store.latest(str(work_dir)).id == new.id

    def test_unreadable_files_skipped(self, store, work_dir):
        store.root.mkdir(parents=True)
        (store.root / "junk.json").write_text("{", encoding="utf-8")
        store.save(_session(store, work_dir))
        assert len(store.list_sessions()) == 1

    def test_empty_store(self, tmp_path, work_dir):
        store = SessionStore(tmp_path / "nowhere")
        assert store.list_sessions() == []
        assert store.latest(str(work_dir)) is None

    def test_delete(self, store, work_dir):
        session = _session(store, work_dir)
        store.save(session)
        assert store.delete(session.id) is True
        assert store.delete(session.id) is False
        assert store.list_sessions() == []
