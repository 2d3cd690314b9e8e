"""Tests for scrivo.session: message records and the append-only session log."""

import json

import pytest

from scrivo.report import SessionNotFoundError, StoreError
from scrivo.session import Message, SessionStore, ToolCall, ToolResult


def _records(store, session_id):
    path = store.root / f"{session_id}.jsonl"
    return [json.loads(line) for line in path.read_text().splitlines() if line]


def _sample_messages():
    call = ToolCall(id="call_1", name="list_files", args=(".",), source="TOOL: list_files .")
    return [
        Message.user("what is here?"),
        Message.assistant("Let me look.\nTOOL: list_files .\n", [call]),
        Message.tool(ToolResult("call_1", "list_files", True, "a.txt", duration=0.01)),
        Message.assistant("There is one file, a.txt."),
    ]


class TestMessages:
    def test_tool_message_carries_result(self):
        result = ToolResult("call_1", "read_file", False, "nope", error_kind="NotFound")
        msg = Message.tool(result)
        assert msg.role == "tool"
        assert msg.content == "nope"
        assert Message.from_dict(msg.to_dict()) == msg

    def test_parse_error_survives_round_trip(self):
        call = ToolCall(id="c", name="read_file", source="TOOL: read_file",
                        error="missing path", error_kind="ParseError")
        msg = Message.assistant("TOOL: read_file\n", [call])
        assert Message.from_dict(msg.to_dict()).tool_calls[0].error_kind == "ParseError"

    def test_plain_messages_stay_small(self):
        assert Message.user("hi").to_dict() == {"role": "user", "content": "hi"}


class TestSessionStore:
    def test_create_writes_header(self, tmp_path):
        store = SessionStore(tmp_path / "sessions")
        session_id = store.create()
        assert store.exists(session_id)
        records = _records(store, session_id)
        assert records[0]["type"] == "session"
        assert records[0]["id"] == session_id
        assert store.load(session_id) == []

    def test_ids_are_unique(self, tmp_path):
        store = SessionStore(tmp_path)
        assert len({store.create() for _ in range(5)}) == 5

    def test_append_then_load_preserves_order(self, tmp_path):
        store = SessionStore(tmp_path)
        session_id = store.create()
        messages = _sample_messages()
        for msg in messages:
            store.append(session_id, msg)
        assert store.load(session_id) == messages

    def test_append_is_one_line_per_message(self, tmp_path):
        store = SessionStore(tmp_path)
        session_id = store.create()
        store.append(session_id, Message.user("line one\nline two"))
        records = _records(store, session_id)
        assert [r["type"] for r in records] == ["session", "message"]
        assert records[1]["content"] == "line one\nline two"

    def test_lone_surrogate_round_trips(self, tmp_path):
        store = SessionStore(tmp_path)
        session_id = store.create()
        call = ToolCall(id="c1", name="write_file", args=("a.txt", "x\ud800y"),
                        source="TOOL: write_file a.txt x\ud800y")
        msg = Message.assistant("TOOL: write_file a.txt x\ud800y\n", [call])
        store.append(session_id, msg)
        assert store.load(session_id) == [msg]

    def test_append_to_missing_session(self, tmp_path):
        with pytest.raises(SessionNotFoundError):
            SessionStore(tmp_path).append("20240101-000000-abcdef", Message.user("x"))

    def test_load_missing_session(self, tmp_path):
        with pytest.raises(SessionNotFoundError):
            SessionStore(tmp_path).load("nope")

    @pytest.mark.parametrize("bad_id", ["../etc/passwd", "a/b", "", ".hidden"])
    def test_invalid_ids_rejected(self, tmp_path, bad_id):
        store = SessionStore(tmp_path)
        with pytest.raises(SessionNotFoundError):
            store.load(bad_id)
        assert not store.exists(bad_id)

    def test_resume_appends_marker_and_keeps_history(self, tmp_path):
        store = SessionStore(tmp_path)
        session_id = store.create()
        for msg in _sample_messages():
            store.append(session_id, msg)

        history = store.resume(session_id)
        assert history == _sample_messages()
        assert _records(store, session_id)[-1]["type"] == "resume"

        store.append(session_id, Message.user("and now?"))
        assert store.load(session_id)[-1] == Message.user("and now?")
        assert len(store.load(session_id)) == 5

    def test_torn_final_line_is_skipped(self, tmp_path):
        store = SessionStore(tmp_path)
        session_id = store.create()
        store.append(session_id, Message.user("kept"))
        path = tmp_path / f"{session_id}.jsonl"
        with path.open("a") as f:
            f.write('{"type": "message", "role": "assis')

        assert store.load(session_id) == [Message.user("kept")]

        # The next record starts on a fresh line.
        store.append(session_id, Message.user("after crash"))
        assert store.load(session_id) == [Message.user("kept"), Message.user("after crash")]

    def test_non_object_record_is_an_error(self, tmp_path):
        store = SessionStore(tmp_path)
        session_id = store.create()
        with (tmp_path / f"{session_id}.jsonl").open("a") as f:
            f.write("[1, 2, 3]\n")
        with pytest.raises(StoreError):
            store.load(session_id)

    def test_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(StoreError):
            SessionStore(blocker / "sessions").create()


class TestListSessions:
    def test_empty_when_missing(self, tmp_path):
        assert SessionStore(tmp_path / "none").list_sessions() == []

    def test_counts_messages(self, tmp_path):
        store = SessionStore(tmp_path)
        first = store.create()
        store.append(first, Message.user("hi"))
        store.append(first, Message.assistant("hello"))
        second = store.create()

        listed = {sid: count for sid, _created, count in store.list_sessions()}
        assert listed == {first: 2, second: 0}

    def test_newest_first(self, tmp_path):
        store = SessionStore(tmp_path)
        for sid, created in [("old", "2024-01-01T00:00:00"), ("new", "2025-01-01T00:00:00")]:
            (tmp_path / f"{sid}.jsonl").write_text(
                json.dumps({"type": "session", "id": sid, "created": created}) + "\n"
            )
        assert [s[0] for s in store.list_sessions()] == ["new", "old"]
