"""
Execution event broadcaster.

Delivers workflow events to every subscriber currently registered for an
execution id.  ``publish`` never suspends the caller: each subscriber owns a
bounded outbound queue drained by its own pump task, so one slow or broken
subscriber cannot hold up the sequencer or the other subscribers.

A subscriber is dropped when its handler raises or when its backlog
overflows.  Events are not buffered for late subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from models.schemas import WorkflowEvent

logger = logging.getLogger(__name__)

Message = Dict[str, Any]
Handler = Callable[[Message], Union[Awaitable[None], None]]


class _Subscriber:
    def __init__(self, execution_id: str, handler: Handler, queue_size: int) -> None:
        self.execution_id = execution_id
        self.handler = handler
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.task: Optional[asyncio.Task] = None

    def drain(self) -> None:
        """Discard queued messages so nobody waits on them."""
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.queue.task_done()


class EventBroadcaster:
    """Fan-out of execution events to per-execution subscribers."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: Dict[str, List[_Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    # ---------------------------------
    # Registration
    # ---------------------------------

    def subscribe(self, execution_id: str, handler: Handler) -> None:
        """Register ``handler`` (sync or async callable) for events of ``execution_id``."""
        sub = _Subscriber(execution_id, handler, self._queue_size)
        sub.task = asyncio.get_running_loop().create_task(self._pump(sub))
        with self._lock:
            self._subscribers[execution_id].append(sub)
        logger.debug(f"Subscriber added for {execution_id} ({self.subscriber_count(execution_id)} total)")

    def unsubscribe(self, execution_id: str, handler: Handler) -> bool:
        with self._lock:
            subs = self._subscribers.get(execution_id, [])
            match = next((s for s in subs if s.handler is handler), None)
            if match is None:
                return False
        self._discard(match)
        return True

    def subscriber_count(self, execution_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(execution_id, []))

    # ---------------------------------
    # Delivery
    # ---------------------------------

    def publish(self, execution_id: str, event: Union[WorkflowEvent, Message]) -> int:
        """Queue ``event`` for every current subscriber; return how many accepted it."""
        message = event.to_message() if isinstance(event, WorkflowEvent) else dict(event)
        with self._lock:
            targets = list(self._subscribers.get(execution_id, []))

        delivered = 0
        for sub in targets:
            try:
                sub.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Dropping slow subscriber for {execution_id}: backlog of {self._queue_size} events")
                self._discard(sub)
        return delivered

    async def flush(self, execution_id: Optional[str] = None) -> None:
        """Wait until every queued event has been handed to its subscriber."""
        with self._lock:
            if execution_id is None:
                subs = [s for group in self._subscribers.values() for s in group]
            else:
                subs = list(self._subscribers.get(execution_id, []))
        for sub in subs:
            await sub.queue.join()

    async def close(self) -> None:
        """Stop every pump task (service shutdown)."""
        with self._lock:
            subs = [s for group in self._subscribers.values() for s in group]
            self._subscribers.clear()
        for sub in subs:
            if sub.task is not None:
                sub.task.cancel()
        await asyncio.gather(*(s.task for s in subs if s.task is not None), return_exceptions=True)

    # ---------------------------------
    # Internals
    # ---------------------------------

    async def _pump(self, sub: _Subscriber) -> None:
        try:
            while True:
                message = await sub.queue.get()
                try:
                    result = sub.handler(message)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.warning(
                        f"Subscriber for {sub.execution_id} failed on "
                        f"{message.get('type')}: {e}; dropping it"
                    )
                    self._remove(sub)
                    return
                finally:
                    sub.queue.task_done()
        finally:
            sub.drain()

    def _remove(self, sub: _Subscriber) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.execution_id)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscribers[sub.execution_id]

    def _discard(self, sub: _Subscriber) -> None:
        self._remove(sub)
        if sub.task is not None and sub.task is not asyncio.current_task():
            sub.task.cancel()
        sub.drain()
