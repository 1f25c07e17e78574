"""
In-process observer registration.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Callable, Dict, List

from interfaces import IEventBus

logger = logging.getLogger(__name__)


class EventBus(IEventBus):
    """
    Synchronous publish to registered handlers.

    Plain callables run inline in publish order. Coroutine functions are
    scheduled as tasks on the running loop so a slow consumer never stalls
    the publishing connection.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._tasks: set = set()

    def subscribe(self, event_type: str, handler: Callable) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def cancel():
            self.unsubscribe(event_type, handler)

        return cancel

    def unsubscribe(self, event_type: str, handler: Callable) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, []))

    def publish(self, event_type: str, data) -> None:
        # Copy so handlers may unsubscribe while being called
        for handler in list(self._handlers.get(event_type, [])):
            if asyncio.iscoroutinefunction(handler):
                task = asyncio.get_running_loop().create_task(self._safe_callback(handler, data))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                continue
            try:
                handler(data)
            except Exception as e:
                logger.error(f"Handler for {event_type} failed: {e}")

    async def _safe_callback(self, callback: Callable, data):
        """Execute callback with error handling"""
        try:
            await callback(data)
        except Exception as e:
            logger.error(f"Callback execution failed: {e}")

    def clear(self) -> None:
        self._handlers.clear()
