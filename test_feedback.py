#!/usr/bin/env python3
"""Tests for transient notifications.

Run: python3 test_feedback.py
"""

import asyncio
import sys
from pathlib import Path

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


# ======================================================================
# Feedback
# ======================================================================

@test("Notification expires after its ttl")
async def test_feedback_expires():
    from feedback import Feedback
    fb = Feedback(ttl=0.02)
    changes = []
    fb.on_change(changes.append)
    note = fb.show("BUFFER_CLEARED")
    assert fb.current is note
    await asyncio.sleep(0.08)
    assert fb.current is None
    assert changes == [note, None]


@test("A newer notification is not cleared by the older timer")
async def test_feedback_replace():
    from feedback import Feedback
    fb = Feedback(ttl=0.05)
    fb.show("FIRST")
    await asyncio.sleep(0.03)
    second = fb.show("SECOND", "error")
    await asyncio.sleep(0.03)
    assert fb.current is second
    assert second.level == "error"
    await asyncio.sleep(0.05)
    assert fb.current is None


@test("Unknown level falls back to info; works without a loop")
def test_feedback_no_loop():
    from feedback import Feedback
    fb = Feedback()
    note = fb.show("HELLO", "loud")
    assert note.level == "info"
    assert fb.current is note
    fb.clear()
    assert fb.current is None


if __name__ == "__main__":
    print("=" * 60)
    print("Feedback Tests")
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
