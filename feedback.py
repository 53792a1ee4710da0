"""Transient user notifications that expire on their own."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from config import FEEDBACK_TTL

logger = logging.getLogger(__name__)

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class Notification:
    message: str
    level: str = "info"
    shown_at: float = field(default_factory=time.time)


class Feedback:
    """Holds at most one notification; each one clears itself after ttl seconds."""

    def __init__(self, ttl: float = FEEDBACK_TTL):
        self.ttl = ttl
        self.current: Optional[Notification] = None
        self._expiry: Optional[asyncio.TimerHandle] = None
        self._callbacks: list[Callable[[Optional[Notification]], None]] = []

    def on_change(self, callback: Callable[[Optional[Notification]], None]):
        self._callbacks.append(callback)

    def show(self, message: str, level: str = "info") -> Notification:
        if level not in _LEVELS:
            level = "info"
        note = Notification(message=message, level=level)
        self.current = note
        logger.log(_LEVELS[level], "%s", message)

        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._expiry = loop.call_later(self.ttl, self._expire, note)

        self._fire(note)
        return note

    def _expire(self, note: Notification):
        # A newer notification owns the slot now
        if self.current is note:
            self.current = None
            self._expiry = None
            self._fire(None)

    def clear(self):
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        self.current = None

    def _fire(self, note: Optional[Notification]):
        for cb in self._callbacks:
            try:
                cb(note)
            except Exception as e:
                logger.error("Feedback callback error: %s", e)
