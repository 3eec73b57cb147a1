"""EMD — Poller Event Bus.

Observer registration per channel. Handlers are delivered sequentially in
registration order; coroutine handlers are awaited before the next handler
runs. A failing handler is logged and does not stop delivery.
"""

import inspect
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Union

from emd.core.logging import get_logger

logger = get_logger("events")

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class Channel(str, Enum):
    """Per-cycle delivery order: CYCLE → CHANGES → NEW_ALERTS → RESOLVED_ALERTS."""

    CYCLE = "cycle"
    CHANGES = "changes"
    NEW_ALERTS = "new_alerts"
    RESOLVED_ALERTS = "resolved_alerts"
    ERROR = "error"


class EventBus:
    """In-process observer registry."""

    def __init__(self) -> None:
        self._handlers: Dict[Channel, Dict[str, Handler]] = {c: {} for c in Channel}

    def subscribe(self, channel: Channel | str, handler: Handler) -> str:
        """Register a handler; returns a token for ``unsubscribe``."""
        token = uuid.uuid4().hex
        self._handlers[Channel(channel)][token] = handler
        return token

    def unsubscribe(self, token: str) -> bool:
        for handlers in self._handlers.values():
            if handlers.pop(token, None) is not None:
                return True
        return False

    def handler_count(self, channel: Channel | str) -> int:
        return len(self._handlers[Channel(channel)])

    async def publish(self, channel: Channel | str, payload: Any) -> None:
        channel = Channel(channel)
        for token, handler in list(self._handlers[channel].items()):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event handler {token[:8]} failed on {channel.value}: {e}")

    # ── Convenience registration ──

    def on_cycle(self, handler: Handler) -> str:
        return self.subscribe(Channel.CYCLE, handler)

    def on_changes(self, handler: Handler) -> str:
        return self.subscribe(Channel.CHANGES, handler)

    def on_new_alerts(self, handler: Handler) -> str:
        return self.subscribe(Channel.NEW_ALERTS, handler)

    def on_resolved_alerts(self, handler: Handler) -> str:
        return self.subscribe(Channel.RESOLVED_ALERTS, handler)

    def on_error(self, handler: Handler) -> str:
        return self.subscribe(Channel.ERROR, handler)
