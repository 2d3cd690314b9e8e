"""Conversation records and the append-only session log."""

import json
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .report import SessionNotFoundError, StoreError

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class ToolCall:
    """One parsed invocation. ``error`` is set when the invocation was malformed."""

    id: str
    name: str
    args: tuple[str, ...] = ()
    source: str = ""
    error: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict:
        d = {"id": self.id, "name": self.name, "args": list(self.args), "source": self.source}
        if self.error is not None:
            d["error"] = self.error
            d["error_kind"] = self.error_kind
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "ToolCall":
        return cls(
            id=d["id"],
            name=d["name"],
            args=tuple(d.get("args", ())),
            source=d.get("source", ""),
            error=d.get("error"),
            error_kind=d.get("error_kind"),
        )


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool_name: str
    ok: bool
    output: str
    error_kind: str | None = None
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "ok": self.ok,
            "output": self.output,
            "error_kind": self.error_kind,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ToolResult":
        return cls(
            call_id=d["call_id"],
            tool_name=d["tool_name"],
            ok=d["ok"],
            output=d["output"],
            error_kind=d.get("error_kind"),
            duration=d.get("duration", 0.0),
        )


@dataclass(frozen=True)
class Message:
    role: str  # "user" | "assistant" | "tool"
    content: str
    tool_calls: tuple[ToolCall, ...] = field(default=())
    result: ToolResult | None = None
    interrupted: bool = False

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", content=text)

    @classmethod
    def assistant(
        cls, text: str, calls=(), interrupted: bool = False
    ) -> "Message":
        return cls(
            role="assistant",
            content=text,
            tool_calls=tuple(calls),
            interrupted=interrupted,
        )

    @classmethod
    def tool(cls, result: ToolResult) -> "Message":
        return cls(role="tool", content=result.output, result=result)

    def to_dict(self) -> dict:
        d: dict = {"role": self.role, "content": self.content}
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.result is not None:
            d["result"] = self.result.to_dict()
        if self.interrupted:
            d["interrupted"] = True
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Message":
        result = d.get("result")
        return cls(
            role=d["role"],
            content=d.get("content", ""),
            tool_calls=tuple(ToolCall.from_dict(tc) for tc in d.get("tool_calls", ())),
            result=ToolResult.from_dict(result) if result else None,
            interrupted=d.get("interrupted", False),
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_session_id() -> str:
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


class SessionStore:
    """One JSONL file per session under ``root``.

    Each line is a record: a ``session`` header, ``resume`` markers, and
    ``message`` records in conversational order. Every write is flushed
    and fsynced before the call returns.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id):
            raise SessionNotFoundError(f"invalid session id: {session_id!r}")
        return self.root / f"{session_id}.jsonl"

    def _write_record(self, path: Path, record: dict) -> None:
        # Lone surrogates from model output are written as JSON \u escapes.
        data = (json.dumps(record, ensure_ascii=False) + "\n").encode(
            "utf-8", "backslashreplace"
        )
        try:
            with path.open("ab+") as f:
                # Keep a torn final line from swallowing this record.
                if f.seek(0, os.SEEK_END) > 0:
                    f.seek(-1, os.SEEK_END)
                    if f.read(1) != b"\n":
                        data = b"\n" + data
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StoreError(f"failed to write session log {path}: {e}") from e

    def create(self) -> str:
        """Start a new, empty session and return its id."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"cannot create sessions directory {self.root}: {e}") from e
        session_id = new_session_id()
        path = self._path(session_id)
        while path.exists():
            session_id = new_session_id()
            path = self._path(session_id)
        self._write_record(path, {"type": "session", "id": session_id, "created": _now()})
        logger.debug("created session %s at %s", session_id, path)
        return session_id

    def exists(self, session_id: str) -> bool:
        try:
            return self._path(session_id).is_file()
        except SessionNotFoundError:
            return False

    def append(self, session_id: str, message: Message) -> None:
        path = self._path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(f"no such session: {session_id}")
        self._write_record(path, {"type": "message", "at": _now(), **message.to_dict()})

    def _read_records(self, session_id: str) -> list[dict]:
        path = self._path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(f"no such session: {session_id}")
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StoreError(f"failed to read session log {path}: {e}") from e

        records = []
        for lineno, line in enumerate(text.split("\n"), start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                # Only a crash in the middle of a write leaves a torn line.
                logger.warning("%s:%d: ignoring torn record", path, lineno)
                continue
            if not isinstance(record, dict):
                raise StoreError(f"{path}:{lineno}: expected a JSON object")
            records.append(record)
        return records

    def load(self, session_id: str) -> list[Message]:
        """Return the session's messages in order, without marking a resume."""
        messages = []
        for record in self._read_records(session_id):
            if record.get("type") != "message":
                continue
            try:
                messages.append(Message.from_dict(record))
            except (KeyError, TypeError) as e:
                raise StoreError(f"session {session_id}: malformed message record: {e}") from e
        return messages

    def resume(self, session_id: str) -> list[Message]:
        """Load a session for continuation and record the resume time."""
        messages = self.load(session_id)
        self._write_record(self._path(session_id), {"type": "resume", "at": _now()})
        logger.debug("resumed session %s (%d messages)", session_id, len(messages))
        return messages

    def list_sessions(self) -> list[tuple[str, str, int]]:
        """Return (id, created, message_count) for each session, newest first."""
        if not self.root.is_dir():
            return []
        sessions = []
        for path in self.root.glob("*.jsonl"):
            session_id = path.stem
            try:
                records = self._read_records(session_id)
            except (StoreError, SessionNotFoundError) as e:
                logger.warning("skipping unreadable session %s: %s", session_id, e)
                continue
            created = ""
            if records and records[0].get("type") == "session":
                created = records[0].get("created", "")
            count = sum(1 for r in records if r.get("type") == "message")
            sessions.append((session_id, created, count))
        sessions.sort(key=lambda s: s[1], reverse=True)
        return sessions
