"""
Per-conversation run queue.

Every conversation key gets its own FIFO. At most one run per key is in
flight at any moment; runs for different keys proceed concurrently. The
only code that mutates a key's state is that key's drain task, so no locks
are needed.

Lifecycle events published on the emitter:
    queued      {session_key, run_id, position, queue_length}
    processing  {session_key, run_id, wait_time_ms, remaining_in_queue}
    completed   {session_key, run_id, processing_time_ms}
    failed      {session_key, run_id, error}
    aborted     {session_key, run_id}
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

from agent.engine import ImageAttachment
from agent.runner import AgentRunner, RunAborted
from gateway.events import EventEmitter

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    """One pending or in-flight invocation."""
    session_key: str
    text: str
    image: Optional[ImageAttachment] = None
    context: Optional[Dict[str, Any]] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    enqueued_at: float = field(default_factory=time.monotonic)
    status: str = "queued"  # queued -> processing -> completed | failed | aborted
    future: Optional[asyncio.Future] = None


@dataclass
class ConversationQueueState:
    """Backlog plus the in-flight entry for one conversation key."""
    backlog: Deque[QueueEntry] = field(default_factory=deque)
    current: Optional[QueueEntry] = None
    task: Optional[asyncio.Task] = None

    @property
    def is_idle(self) -> bool:
        return self.current is None and not self.backlog


@dataclass(frozen=True)
class QueueStatus:
    pending: int = 0
    processing: bool = False


class RunQueue:
    """Serializes agent runs per conversation key."""

    def __init__(self, runner: AgentRunner, events: Optional[EventEmitter] = None):
        self.runner = runner
        self.events = events or EventEmitter()
        self._states: Dict[str, ConversationQueueState] = {}

    def submit(
        self,
        session_key: str,
        text: str,
        context: Optional[Dict[str, Any]] = None,
        image: Optional[ImageAttachment] = None,
    ) -> asyncio.Future:
        """
        Enqueue a run and return a future for its reply.

        Must be called from within a running event loop. If no run is in
        flight for the key, the new entry starts processing immediately.
        """
        if not session_key:
            raise ValueError("session_key must be non-empty")
        if not text and image is None:
            raise ValueError("text may only be empty when an image is attached")

        loop = asyncio.get_running_loop()
        entry = QueueEntry(
            session_key=session_key,
            text=text or "",
            image=image,
            context=context,
            future=loop.create_future(),
        )

        state = self._states.get(session_key)
        if state is None:
            state = ConversationQueueState()
            self._states[session_key] = state

        state.backlog.append(entry)
        # Position counts the in-flight run, so 0 means "runs right away".
        position = len(state.backlog) - 1 + (1 if state.current else 0)
        self.events.emit("queued", {
            "session_key": session_key,
            "run_id": entry.run_id,
            "position": position,
            "queue_length": len(state.backlog) + (1 if state.current else 0),
        })

        if state.current is None:
            state.current = state.backlog.popleft()
            state.task = loop.create_task(self._drain(session_key, state))
        return entry.future

    async def enqueue_run(
        self,
        session_key: str,
        text: str,
        context: Optional[Dict[str, Any]] = None,
        image: Optional[ImageAttachment] = None,
    ) -> str:
        """
        Enqueue a run and wait for its reply.

        Raises whatever the run raised (``AgentRunError``, ``RunAborted``).
        """
        return await self.submit(session_key, text, context=context, image=image)

    def get_queue_status(self, session_key: str) -> QueueStatus:
        """Snapshot of waiting entries (the in-flight one excluded)."""
        state = self._states.get(session_key)
        if state is None:
            return QueueStatus()
        return QueueStatus(pending=len(state.backlog), processing=state.current is not None)

    async def _drain(self, session_key: str, state: ConversationQueueState) -> None:
        try:
            while state.current is not None:
                await self._process(state.current, len(state.backlog))
                state.current = state.backlog.popleft() if state.backlog else None
        finally:
            # Cancellation (shutdown) fails whatever is still waiting.
            for entry in ([state.current] if state.current else []) + list(state.backlog):
                if entry.future and not entry.future.done():
                    entry.future.cancel()
            state.backlog.clear()
            state.current = None
            state.task = None
            if self._states.get(session_key) is state:
                del self._states[session_key]

    async def _process(self, entry: QueueEntry, remaining: int) -> None:
        started = time.monotonic()
        entry.status = "processing"
        self.events.emit("processing", {
            "session_key": entry.session_key,
            "run_id": entry.run_id,
            "wait_time_ms": (started - entry.enqueued_at) * 1000,
            "remaining_in_queue": remaining,
        })

        try:
            response = await self.runner.run(
                entry.session_key, entry.text, image=entry.image, context=entry.context
            )
        except RunAborted as e:
            entry.status = "aborted"
            self.events.emit("aborted", {"session_key": entry.session_key, "run_id": entry.run_id})
            self._settle(entry, error=e)
        except asyncio.CancelledError:
            entry.status = "failed"
            if entry.future and not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as e:
            entry.status = "failed"
            self.events.emit("failed", {
                "session_key": entry.session_key,
                "run_id": entry.run_id,
                "error": str(e),
            })
            self._settle(entry, error=e)
        else:
            entry.status = "completed"
            self.events.emit("completed", {
                "session_key": entry.session_key,
                "run_id": entry.run_id,
                "processing_time_ms": (time.monotonic() - started) * 1000,
            })
            self._settle(entry, result=response)

    @staticmethod
    def _settle(entry: QueueEntry, result: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        future = entry.future
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    async def shutdown(self) -> None:
        """Cancel every drain task; pending callers see CancelledError."""
        tasks = [s.task for s in self._states.values() if s.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
