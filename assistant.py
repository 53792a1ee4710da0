#!/usr/bin/env python3
"""sudO live voice assistant.

Talk to the model through the default microphone; it answers out loud and can
run shell commands through the command bridge.

Usage:
    python assistant.py [--endpoint URL] [--model NAME] [--verbose] [--log-file PATH]
    python assistant.py --replay PATH [--last N] [--type TYPE]
"""

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

from command_bridge import BridgeClient
from config import CONFIG_DIR, Settings
from event_bus import EventBus, EventType
from feedback import Feedback
from live_session import LiveSession, PermissionFault
from playback_scheduler import PlaybackScheduler
from system_tasks import AssistantState, SystemTaskHandler
from tool_dispatcher import ToolDispatcher

log = logging.getLogger("assistant")


def _print_captions(evt):
    if evt.type == EventType.USER_TRANSCRIPT.value:
        print(f"\r  you: {evt.payload['full']}", flush=True)
    elif evt.type == EventType.ASSISTANT_TRANSCRIPT.value:
        print(f"\r sudO: {evt.payload['full']}", flush=True)


async def run(settings: Settings, log_path: Path | None) -> int:
    session_id = time.strftime("%Y%m%d_%H%M%S")
    bus = EventBus("assistant", session_id, log_path=log_path)
    bus.on("*", _print_captions)

    feedback = Feedback()
    bridge = BridgeClient(
        settings.bridge_endpoint,
        exec_timeout=settings.exec_timeout,
        status_timeout=settings.status_timeout,
        poll_interval=settings.poll_interval,
    )
    bridge.on_result(lambda r: bus.emit(EventType.BRIDGE_RESULT, command=r.command,
                                        fault=r.fault.value, output=r.display_text))
    bridge.on_connectivity(lambda up: feedback.show("TERMUX_LINK_ONLINE" if up else "TERMUX_LINK_OFFLINE",
                                                    "info" if up else "warning"))

    state = AssistantState()
    tasks = SystemTaskHandler(state, feedback, bridge)
    dispatcher = ToolDispatcher(tasks, bridge, feedback)
    scheduler = PlaybackScheduler()
    session = LiveSession(dispatcher, scheduler, settings, bus=bus, feedback=feedback)

    bridge.start_polling()
    try:
        try:
            await session.start()
        except PermissionFault as e:
            log.error("Cannot start: %s", e)
            return 1
        except Exception as e:
            log.error("Session setup failed: %s", e)
            return 1
        log.info("Session started, speak now (Ctrl-C to quit)")
        await session.wait_closed()
        return 0
    finally:
        await session.stop()
        await bridge.close()
        scheduler.close()
        bus.close()


def replay(path: Path, last_n: int = 50, event_type: str | None = None) -> int:
    """Print events from a session log, oldest first."""
    if not path.exists():
        print(f"No event log at {path}", file=sys.stderr)
        return 1
    reader = EventBus("replay", "-", log_path=path)
    for evt in reader.read_recent(last_n=last_n, event_type=event_type):
        print(evt.describe())
    reader.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description="sudO live voice assistant")
    parser.add_argument("--endpoint", help="Command bridge base URL (default: $SUDO_BRIDGE_ENDPOINT or http://localhost:8080)")
    parser.add_argument("--model", help="Live model name")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", type=Path, help=f"JSONL event log (e.g. {CONFIG_DIR}/events.jsonl)")
    parser.add_argument("--replay", type=Path, metavar="PATH", help="Print events from a JSONL log and exit")
    parser.add_argument("--last", type=int, default=50, metavar="N", help="With --replay: show the last N events (0 for all)")
    parser.add_argument("--type", dest="event_type", help="With --replay: only events of this type")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.replay is not None:
        sys.exit(replay(args.replay, args.last, args.event_type))

    settings = Settings.load(bridge_endpoint=args.endpoint, model=args.model)
    if not settings.api_key:
        print("No API key. Set GEMINI_API_KEY or write it to "
              f"{CONFIG_DIR / 'api_key'}", file=sys.stderr)
        sys.exit(2)

    try:
        code = asyncio.run(run(settings, args.log_file))
    except KeyboardInterrupt:
        log.info("Interrupted")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
