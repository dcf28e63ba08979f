"""Typed engine event fan-out."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set

from tool_warden.models.enums import EventKind
from tool_warden.models.events import EngineEvent
from tool_warden.utils.ids import utcnow

LOG = logging.getLogger(__name__)

EventHandler = Callable[[EngineEvent], None]


@dataclass
class _Subscription:
    handler: EventHandler
    kinds: Optional[Set[EventKind]]

    def wants(self, event: EngineEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds


class EventBus:
    """Synchronous observer registry plus per-consumer asyncio queues.

    Handlers run in emit order on the caller's control flow. A failing
    handler is logged and skipped; it never reaches the engine that emitted.
    """

    def __init__(self) -> None:
        self._subscriptions: List[_Subscription] = []

    def subscribe(self, handler: EventHandler, kinds: Optional[Iterable[EventKind]] = None) -> Callable[[], None]:
        subscription = _Subscription(handler=handler, kinds=set(kinds) if kinds is not None else None)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def open_channel(
        self, kinds: Optional[Iterable[EventKind]] = None
    ) -> "tuple[asyncio.Queue[EngineEvent], Callable[[], None]]":
        """Return a queue receiving matching events and a function closing it."""
        queue: asyncio.Queue[EngineEvent] = asyncio.Queue()
        close = self.subscribe(queue.put_nowait, kinds)
        return queue, close

    def emit(self, kind: EventKind, **fields) -> EngineEvent:
        event = EngineEvent(kind=kind, timestamp=utcnow(), **fields)
        for subscription in list(self._subscriptions):
            if not subscription.wants(event):
                continue
            try:
                subscription.handler(event)
            except Exception:
                LOG.exception("Event handler failed for %s", kind.value)
        return event
