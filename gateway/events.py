"""
Lifecycle event fan-out.

Components (run queue, agent runner, cron scheduler) publish named events;
the gateway subscribes to log them or to deliver cron results. Delivery is
best-effort: a raising observer is logged and skipped, and coroutine
observers run as background tasks so a slow one never stalls the publisher.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], Any]


class EventEmitter:
    """Minimal observer registry keyed by event name."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._pending: Set[asyncio.Task] = set()

    def on(self, event: str, listener: Listener) -> Listener:
        """Register *listener* for *event*. Returns the listener for chaining."""
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        """Notify every listener of *event*. Never raises."""
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(payload)
            except Exception as e:
                logger.warning("Listener for '%s' raised: %s", event, e)
                continue
            if asyncio.iscoroutine(result):
                self._schedule(event, result)

    def _schedule(self, event: str, coro) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("Dropped async listener for '%s': no running event loop", event)
            return
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_task_done(event, t))

    def _on_task_done(self, event: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Async listener for '%s' failed: %s", event, exc)

    async def drain(self) -> None:
        """Wait for in-flight async listeners (used on shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
