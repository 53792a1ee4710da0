#!/usr/bin/env python3
"""Tests for the CLI host loop and the --replay log view.

The microphone and the model connection are patched out; the bridge points
at a closed local port, so it simply reads as offline.

Run: python3 test_assistant.py
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent))

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


class FakeCapture:
    instances = []

    def __init__(self, *args, **kwargs):
        self.closed = False
        FakeCapture.instances.append(self)

    def acquire(self):
        pass

    def attach(self, tap):
        pass

    def close(self):
        self.closed = True


class DeniedCapture(FakeCapture):
    def acquire(self):
        from live_session import PermissionFault
        raise PermissionFault("denied")


def make_settings():
    from config import Settings
    return Settings(api_key="test-key", bridge_endpoint="http://127.0.0.1:9",
                    status_timeout=0.2, poll_interval=0.05)


@test("A refused model connection returns an exit code instead of raising")
async def test_run_connect_refused():
    import assistant
    import live_session

    async def refuse(self, model, callbacks, config):
        raise OSError("connection refused")

    FakeCapture.instances.clear()
    with patch.object(live_session, "MicrophoneCapture", FakeCapture), \
            patch.object(live_session.GeminiLiveChannel, "connect", refuse):
        code = await asyncio.wait_for(assistant.run(make_settings(), None), timeout=5.0)
    assert code == 1
    assert FakeCapture.instances[-1].closed


@test("A refused microphone returns an exit code before connecting")
async def test_run_mic_denied():
    import assistant
    import live_session
    connects = []

    async def record(self, model, callbacks, config):
        connects.append(model)

    with patch.object(live_session, "MicrophoneCapture", DeniedCapture), \
            patch.object(live_session.GeminiLiveChannel, "connect", record):
        code = await asyncio.wait_for(assistant.run(make_settings(), None), timeout=5.0)
    assert code == 1
    assert connects == []


@test("The JSONL event log records the failed start")
async def test_run_writes_event_log():
    import tempfile
    import assistant
    import live_session
    from event_bus import EventBus

    async def refuse(self, model, callbacks, config):
        raise OSError("connection refused")

    with tempfile.TemporaryDirectory() as tmpdir:
        log_path = Path(tmpdir) / "events.jsonl"
        with patch.object(live_session, "MicrophoneCapture", FakeCapture), \
                patch.object(live_session.GeminiLiveChannel, "connect", refuse):
            await asyncio.wait_for(assistant.run(make_settings(), log_path), timeout=5.0)
        events = EventBus("reader", "x", log_path=log_path).read_recent(last_n=0)
        types = [e.type for e in events]
        assert types[:2] == ["state", "error"], types
        assert events[1].payload["stage"] == "start"
        assert types[-1] == "state" and events[-1].payload["state"] == "idle"


@test("--replay prints the last events of a log, one line each")
def test_replay_prints_events():
    import contextlib
    import io
    import tempfile
    import assistant
    from event_bus import EventBus, EventType

    with tempfile.TemporaryDirectory() as tmpdir:
        log_path = Path(tmpdir) / "events.jsonl"
        bus = EventBus("assistant", "sid1", log_path=log_path)
        bus.emit(EventType.STATE, state="connecting")
        bus.emit(EventType.USER_TRANSCRIPT, text="list files", full="list files")
        bus.emit(EventType.STATE, state="active")
        bus.close()

        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = assistant.replay(log_path, last_n=2)
        assert code == 0
        lines = out.getvalue().splitlines()
        assert len(lines) == 2, lines
        assert "[assistant] user_transcript text=list files" in lines[0]
        assert lines[1].endswith("[assistant] state state=active")

        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            assistant.replay(log_path, last_n=0, event_type="state")
        assert len(out.getvalue().splitlines()) == 2


@test("--replay of a missing log returns an exit code")
def test_replay_missing_log():
    import contextlib
    import io
    import tempfile
    import assistant

    with tempfile.TemporaryDirectory() as tmpdir:
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            code = assistant.replay(Path(tmpdir) / "absent.jsonl")
        assert code == 1
        assert "No event log" in err.getvalue()


if __name__ == "__main__":
    print("=" * 60)
    print("Assistant CLI Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
