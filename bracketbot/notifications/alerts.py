"""
Alert dispatch - fire-and-forget operator alerts with duplicate suppression
"""
import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, Optional, Set

from loguru import logger


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertChannel(ABC):
    """Outbound alert transport (Telegram, ...)"""

    @abstractmethod
    async def send_alert(self, message: str, severity: Severity) -> bool:
        pass


class AlertDispatcher:
    """
    Sends alerts without blocking the caller.

    notify() returns immediately: delivery runs as a background task bounded
    by `timeout_s`. An identical message seen again within `cooldown_s` is
    dropped so a failing loop cannot flood the operator.
    """

    def __init__(
        self,
        channel: Optional[AlertChannel] = None,
        cooldown_s: float = 60.0,
        timeout_s: float = 5.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel = channel
        self.cooldown_s = cooldown_s
        self.timeout_s = timeout_s
        self.enabled = enabled
        self._clock = clock
        self._last_sent: Dict[str, float] = {}
        self._pending: Set[asyncio.Task] = set()

    def _prune(self, now: float):
        expired = [m for m, sent in self._last_sent.items() if now - sent >= self.cooldown_s]
        for message in expired:
            del self._last_sent[message]

    def notify(self, message: str, severity: Severity = Severity.INFO) -> bool:
        """
        Queue an alert

        Returns:
            False if the message was suppressed as a duplicate
        """
        now = self._clock()
        self._prune(now)
        last = self._last_sent.get(message)
        if last is not None and (now - last) < self.cooldown_s:
            logger.debug(f"Skipping duplicate alert due to cooldown: {message}")
            return False
        self._last_sent[message] = now

        if severity == Severity.CRITICAL:
            logger.critical(f"[ALERT] {message}")
        elif severity == Severity.WARNING:
            logger.warning(f"[ALERT] {message}")
        else:
            logger.info(f"[ALERT] {message}")

        if not self.enabled or self.channel is None:
            return True

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, alert was only logged")
            return True

        task = loop.create_task(self._deliver(message, severity))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _deliver(self, message: str, severity: Severity):
        try:
            delivered = await asyncio.wait_for(
                self.channel.send_alert(message, severity), timeout=self.timeout_s
            )
            if not delivered:
                logger.warning(f"Alert channel refused message: {message}")
        except asyncio.TimeoutError:
            logger.warning(f"Alert delivery timed out after {self.timeout_s}s")
        except Exception as e:
            logger.error(f"Failed to deliver alert: {e}")

    async def drain(self):
        """Wait for in-flight deliveries (used on shutdown and in tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
