"""Cancelable one-shot timers for session timeouts."""

from __future__ import annotations

import threading
from typing import Callable, Protocol


class TimerHandle(Protocol):
    """Handle of a pending timer."""

    def cancel(self) -> None:
        """Cancel the timer. No-op if it already fired or was cancelled."""
        ...


class Scheduler(Protocol):
    """Protocol for timer schedulers."""

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback once after delay_seconds."""
        ...


class ThreadingScheduler:
    """Scheduler backed by daemon `threading.Timer` threads.

    Each pending timer owns one sleeping thread, which is fine for the
    number of concurrent senders a single WhatsApp account produces.
    """

    def __init__(self, name_prefix: str = "session-timer") -> None:
        self._name_prefix = name_prefix

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = True
        timer.name = f"{self._name_prefix}-{timer.name}"
        timer.start()
        return timer
