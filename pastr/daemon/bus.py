"""Async event bus: the engine's change feed and message channel."""

import asyncio
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


@dataclass
class Event:
    """Base event class."""
    type: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: Optional[str] = None
    correlation_id: Optional[str] = None


def _make_ref(handler: Callable[[Event], Any]) -> weakref.ref:
    # Bound methods need WeakMethod or the reference dies immediately
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return weakref.WeakMethod(handler)
    return weakref.ref(handler)


class EventBus:
    """
    Async pub/sub event bus for in-process communication.

    Event types follow pattern: category.action
    Examples: settings.changed, snippets.changed, notification.created,
    sync.completed
    """

    def __init__(self, maxsize: int = 1000):
        self._subscribers: Dict[str, List[weakref.ref]] = defaultdict(list)
        self._event_queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._running = False
        self._processor_task: Optional[asyncio.Task] = None
        self._stats = defaultdict(int)

    def subscribe(self, event_pattern: str, handler: Callable[[Event], Any]) -> None:
        """
        Subscribe to events matching pattern.
        Pattern can use wildcards: 'settings.*' matches all settings events.
        """
        self._subscribers[event_pattern].append(_make_ref(handler))
        logger.debug(f"Subscribed handler to pattern: {event_pattern}")

    async def emit(self, event: Event) -> None:
        """Emit an event to the bus."""
        if self._event_queue.full():
            logger.warning(f"Event queue full, dropping event: {event.type}")
            self._stats['dropped'] += 1
            return

        await self._event_queue.put(event)
        self._stats['emitted'] += 1
        logger.debug(f"Emitted event: {event.type}")

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the event processor."""
        if self._running:
            logger.warning("Event bus already running")
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the event processor."""
        self._running = False
        if self._processor_task:
            await self._processor_task
            self._processor_task = None
        logger.info("Event bus stopped")

    async def _process_events(self) -> None:
        """Process events from the queue."""
        while self._running:
            try:
                # Timeout lets the loop notice _running going False
                event = await asyncio.wait_for(
                    self._event_queue.get(),
                    timeout=0.5
                )
                await self._dispatch(event)
                self._stats['processed'] += 1

            except asyncio.TimeoutError:
                continue
            except Exception as e:
                logger.error(f"Error processing event: {e}")
                self._stats['processing_errors'] += 1

    async def _dispatch(self, event: Event) -> None:
        handlers = []
        for pattern, refs in list(self._subscribers.items()):
            if not self._matches_pattern(event.type, pattern):
                continue
            valid_refs = []
            for ref in refs:
                handler = ref()
                if handler is not None:
                    handlers.append(handler)
                    valid_refs.append(ref)
            self._subscribers[pattern] = valid_refs

        if not handlers:
            return

        tasks = []
        for handler in handlers:
            if asyncio.iscoroutinefunction(handler):
                tasks.append(asyncio.create_task(handler(event)))
            else:
                tasks.append(asyncio.create_task(asyncio.to_thread(handler, event)))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Handler error for event {event.type}: {result}")
                self._stats['handler_errors'] += 1

    def _matches_pattern(self, event_type: str, pattern: str) -> bool:
        """Check if event type matches subscription pattern."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            prefix = pattern[:-2]
            return event_type.startswith(prefix + ".")
        return event_type == pattern

    def get_stats(self) -> Dict[str, int]:
        """Get event bus statistics."""
        return dict(self._stats)


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the process-wide event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
