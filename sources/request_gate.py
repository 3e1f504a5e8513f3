# request_gate.py
"""
Rate limiter for on‑demand "read the sensor now" requests.

Screens that show a single value ask the sensor for fresh data when they
open or when the user taps refresh. Those requests go through this gate:
one in flight at a time, and a fixed cooldown between executed requests.
The streaming path never goes through here.
"""

import time
from typing import Awaitable, Callable, Optional

from app_logger import logger

REQUEST_COOLDOWN_S = 2.0


class ManualRequestGate:
    def __init__(self, cooldown_s: float = REQUEST_COOLDOWN_S,
                 clock: Callable[[], float] = time.monotonic):
        self.cooldown_s = cooldown_s
        self.clock = clock
        self.in_flight = False
        self._last_request: Optional[float] = None

    def can_request(self) -> bool:
        if self.in_flight:
            return False
        if self._last_request is None:
            return True
        return self.clock() - self._last_request >= self.cooldown_s

    async def request(self, action: Callable[[], Awaitable[object]],
                      description: str = "sensor data") -> bool:
        """
        Run ``action`` unless a request is in flight or the cooldown is active.

        Returns True when the action ran. Errors raised by the action
        propagate to the caller; the cooldown still counts from its start.
        """
        if self.in_flight:
            logger.debug("request for %s blocked – one already in flight", description)
            return False
        if not self.can_request():
            logger.debug("request for %s blocked – cooldown active", description)
            return False

        self.in_flight = True
        self._last_request = self.clock()
        logger.info("requesting %s on demand", description)
        try:
            await action()
        finally:
            self.in_flight = False
        return True
