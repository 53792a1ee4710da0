"""
Session event bus for the live assistant.

The session engine publishes what happens (state changes, transcript
fragments, tool calls, barge-in) as events. In-process callbacks give the UI
real-time delivery; an optional JSONL log keeps one line per event for
debugging a session after the fact.

Writer atomicity: lines are kept under PIPE_BUF (4096 bytes) so appends from
several writers never interleave.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

# POSIX PIPE_BUF: lines must stay under this for atomic multi-writer appends
_PIPE_BUF = 4096

# Core fields that are not part of the payload
_CORE_FIELDS = {"ts", "src", "type", "sid"}


class EventType(str, Enum):
    """All event types the session publishes."""
    STATE = "state"
    USER_TRANSCRIPT = "user_transcript"
    ASSISTANT_TRANSCRIPT = "assistant_transcript"
    TRANSCRIPT_CLEARED = "transcript_cleared"
    TOOL_CALL = "tool_call"
    TOOL_RESPONSE = "tool_response"
    AUDIO_CHUNK = "audio_chunk"
    AUDIO_DROPPED = "audio_dropped"
    BARGE_IN = "barge_in"
    BRIDGE_RESULT = "bridge_result"
    ERROR = "error"


# Longest string payload value kept when a line has to be shrunk
_MAX_FIELD = 200


@dataclass
class BusEvent:
    """One published event: who sent it, when, and its payload."""
    ts: float
    src: str
    type: str
    sid: str
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"ts": self.ts, "src": self.src, "type": self.type,
                "sid": self.sid, **self.payload}

    def to_json_line(self) -> str:
        """One JSON line, newline-terminated, never longer than PIPE_BUF."""
        line = _dump(self.to_dict())
        if len(line.encode()) <= _PIPE_BUF:
            return line
        line = _dump({**self.to_dict(), **_shrink(self.payload)})
        if len(line.encode()) <= _PIPE_BUF:
            return line
        header = {k: v for k, v in self.to_dict().items() if k in _CORE_FIELDS}
        return _dump({**header, "_truncated": True})

    @classmethod
    def from_json_line(cls, line: str) -> "BusEvent":
        data = json.loads(line)
        return cls(ts=data.pop("ts"), src=data.pop("src"), type=data.pop("type"),
                   sid=data.pop("sid"), payload=data)

    def describe(self) -> str:
        stamp = time.strftime("%H:%M:%S", time.localtime(self.ts))
        fields = " ".join(f"{k}={v}" for k, v in self.payload.items())
        return f"{stamp} [{self.src}] {self.type} {fields}".rstrip()


def _dump(data: dict) -> str:
    return json.dumps(data, separators=(',', ':'), default=str) + "\n"


def _shrink(payload: dict) -> dict:
    """Cut long string values down to _MAX_FIELD characters."""
    return {k: v[:_MAX_FIELD] + "...[truncated]"
            for k, v in payload.items()
            if isinstance(v, str) and len(v) > _MAX_FIELD}


class EventBus:
    """In-process callbacks plus an optional append-only JSONL log.

    Usage:
        bus = EventBus("live_session", session_id, log_path=Path("events.jsonl"))
        bus.on("*", print)
        bus.emit(EventType.STATE, state="active")
        bus.close()
    """

    def __init__(self, src: str, sid: str, log_path: Path | None = None):
        self._src = src
        self._sid = sid
        self._log_path = log_path
        self._file = None
        self._callbacks: dict[str, list[Callable]] = {}  # type -> [callback]

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def on(self, event_type: str, callback: Callable):
        """Register a callback for one event type, or "*" for all events."""
        key = event_type.value if isinstance(event_type, EventType) else event_type
        self._callbacks.setdefault(key, []).append(callback)

    def _fire_callbacks(self, evt: BusEvent):
        for cb_type in (evt.type, "*"):
            for cb in self._callbacks.get(cb_type, []):
                try:
                    cb(evt)
                except Exception as e:
                    logger.error("Bus callback error for %s: %s", evt.type, e)

    def _write(self, evt: BusEvent):
        if self._log_path is None:
            return
        if self._file is None:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self._log_path, "a")
        self._file.write(evt.to_json_line())
        self._file.flush()

    def emit(self, event_type, **payload) -> BusEvent:
        """Write the event to the log (if any) and fire callbacks."""
        type_str = event_type.value if isinstance(event_type, EventType) else str(event_type)
        evt = BusEvent(ts=time.time(), src=self._src, type=type_str, sid=self._sid, payload=payload)
        try:
            self._write(evt)
        except OSError as e:
            logger.error("Event log write failed: %s", e)
        self._fire_callbacks(evt)
        return evt

    def read_recent(self, last_n: int = 50, event_type: str | None = None) -> list[BusEvent]:
        """Read the most recent events back from the JSONL log."""
        if self._log_path is None or not self._log_path.exists():
            return []
        events = []
        with open(self._log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    evt = BusEvent.from_json_line(line)
                except (json.JSONDecodeError, KeyError, TypeError):
                    continue
                if event_type and evt.type != event_type:
                    continue
                events.append(evt)
        return events[-last_n:] if last_n else events

    def close(self):
        if self._file:
            self._file.close()
            self._file = None
