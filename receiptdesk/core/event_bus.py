"""
In-process event bus for the ingestion pipeline.

Events published here:
- a document finished ingesting, or failed
- a classification rule is worth suggesting to the user
- contact extraction merged contacts, or failed

Handlers may be coroutines or plain callables; plain callables run in a
worker thread. A handler that raises is logged and skipped.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

Handler = Callable[["Event"], Any]


class EventType(str, Enum):
    DOCUMENT_INGESTED = "document.ingested"
    DOCUMENT_FAILED = "document.failed"
    RULE_SUGGESTED = "rule.suggested"
    CONTACT_UPSERTED = "contact.upserted"
    CONTACT_EXTRACTION_FAILED = "contact.extraction_failed"


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any]
    user_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: f"EVT-{uuid.uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    def __init__(self, max_history: int = 1000):
        self._handlers: Dict[EventType, List[Handler]] = {}
        self._history: Deque[Event] = deque(maxlen=max_history)

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register ``handler``; the returned callable removes it again."""
        self._handlers.setdefault(event_type, []).append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: Event) -> None:
        self._history.append(event)
        handlers = list(self._handlers.get(event.type, []))
        logger.debug("%s for user %s -> %d handler(s)", event.type.value, event.user_id, len(handlers))
        if not handlers:
            return
        results = await asyncio.gather(*(self._invoke(h, event) for h in handlers), return_exceptions=True)
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error("Handler %s failed on %s: %s",
                             getattr(handler, "__name__", handler), event.type.value, result)

    @staticmethod
    async def _invoke(handler: Handler, event: Event) -> Any:
        if asyncio.iscoroutinefunction(handler):
            return await handler(event)
        return await asyncio.to_thread(handler, event)

    def get_history(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> List[Event]:
        events = [
            e for e in self._history
            if (user_id is None or e.user_id == user_id) and (event_type is None or e.type == event_type)
        ]
        return events[-limit:]


_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _bus
    if _bus is None:
        _bus = EventBus()
    return _bus
