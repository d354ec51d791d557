"""
qai.agent.cancel — Two-press cancellation signal.

The first request only arms the signal and asks the user to press again;
a second request inside the confirmation window sets it. A lone press that
is not followed up in time expires and is ignored.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import StrEnum
from typing import Callable

logger = logging.getLogger("qai.agent.cancel")

CONFIRM_WINDOW = 1.0  # seconds


class CancelRequest(StrEnum):
    NOTICE = "notice"          # first press: show "press again to cancel"
    CONFIRMED = "confirmed"    # second press inside the window: tear down
    IGNORED = "ignored"        # already cancelled


class CancelSignal:
    def __init__(
        self,
        window: float = CONFIRM_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self._clock = clock
        self._event = asyncio.Event()
        self._armed_at: float | None = None

    def request(self) -> CancelRequest:
        """Register one cancel press (Ctrl+C, ESC, a UI button)."""
        if self._event.is_set():
            return CancelRequest.IGNORED
        now = self._clock()
        if self._armed_at is not None and now - self._armed_at <= self.window:
            self._armed_at = None
            self._event.set()
            logger.info("Cancellation confirmed")
            return CancelRequest.CONFIRMED
        self._armed_at = now
        logger.debug("Cancellation armed; waiting for confirmation")
        return CancelRequest.NOTICE

    def cancel(self) -> None:
        """Set the signal immediately, skipping the confirmation step."""
        self._armed_at = None
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def reset(self) -> None:
        self._armed_at = None
        self._event.clear()
