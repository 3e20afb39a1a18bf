"""
Typed events delivered to the decision loop through one queue
"""
import asyncio
from dataclasses import dataclass
from typing import Optional, Union

from bracketbot.core.models import MarkPriceUpdate, Tick


@dataclass(frozen=True)
class TradeTickEvent:
    tick: Tick


@dataclass(frozen=True)
class TimerTickEvent:
    timestamp_ms: int


@dataclass(frozen=True)
class MarkPriceEvent:
    update: MarkPriceUpdate


Event = Union[TradeTickEvent, TimerTickEvent, MarkPriceEvent]


class EventChannel:
    """
    Bridges stream callbacks into the event loop.

    pybit invokes callbacks on its own threads; publish() hops onto the
    bound loop with call_soon_threadsafe so the queue is only touched there.
    """

    def __init__(self):
        self.queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop

    def publish(self, event: Event):
        if self._loop is None:
            raise RuntimeError("EventChannel is not bound to an event loop")
        self._loop.call_soon_threadsafe(self.queue.put_nowait, event)

    def on_trade(self, tick: Tick):
        self.publish(TradeTickEvent(tick))

    def on_mark_price(self, update: MarkPriceUpdate):
        self.publish(MarkPriceEvent(update))

    async def get(self) -> Event:
        return await self.queue.get()
