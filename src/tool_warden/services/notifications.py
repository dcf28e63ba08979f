"""Routes approval notifications to per-channel handlers."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Protocol

LOG = logging.getLogger(__name__)

ChannelHandler = Callable[[List[str], str], Awaitable[None]]


class NotificationSink(Protocol):
    async def notify(self, recipients: Iterable[str], message: str, channel: str) -> None:
        ...


class NotificationRouter:
    """Dispatches ``(recipients, message, channel)`` to the handler registered for the channel.

    Channels without a handler are logged and dropped. Handler failures are
    logged; an approval never fails because a notification could not be sent.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._handlers: Dict[str, ChannelHandler] = {}

    def register_handler(self, channel: str, handler: ChannelHandler) -> None:
        self._handlers[channel] = handler

    @property
    def channels(self) -> List[str]:
        return sorted(self._handlers)

    async def notify(self, recipients: Iterable[str], message: str, channel: str) -> None:
        if not self.enabled:
            return
        handler = self._handlers.get(channel)
        if handler is None:
            LOG.debug("No handler for notification channel %s; dropping %r", channel, message)
            return
        try:
            await handler(list(recipients), message)
        except Exception:
            LOG.warning("Notification via %s failed", channel, exc_info=True)
