"""
Agent execution adapter.

Wraps an ``AgentEngine`` behind one call: ``run(session_key, text, image)``
consumes the engine's event stream and returns the consolidated reply text.
Tool activity is published on the event emitter as a side channel and never
changes the return value.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from agent.engine import AgentEngine, ImageAttachment
from gateway.events import EventEmitter

logger = logging.getLogger(__name__)

EMPTY_RESPONSE = "(No response generated)"


class AgentRunError(RuntimeError):
    """The engine reported an error or the stream broke."""


class RunAborted(Exception):
    """A run was deliberately stopped. Not a failure."""

    def __init__(self, session_key: str):
        super().__init__(f"Run aborted for {session_key}")
        self.session_key = session_key


class AgentRunner:
    """
    Runs prompts against the engine, one consolidated reply per call.

    At most one run per session key may be active; the run queue guarantees
    that, and ``abort(session_key)`` relies on it.
    """

    def __init__(
        self,
        engine: AgentEngine,
        session_store=None,
        events: Optional[EventEmitter] = None,
        options: Optional[Dict[str, Any]] = None,
    ):
        self.engine = engine
        self.session_store = session_store
        self.events = events or EventEmitter()
        self.options = options or {}
        self._active: Dict[str, asyncio.Task] = {}
        self._aborted: Set[str] = set()

    def is_running(self, session_key: str) -> bool:
        task = self._active.get(session_key)
        return task is not None and not task.done()

    async def run(
        self,
        session_key: str,
        text: str,
        image: Optional[ImageAttachment] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Execute one prompt and return the full reply.

        Raises:
            AgentRunError: engine error event, engine exception, or a second
                concurrent run for the same key.
            RunAborted: ``abort()`` was called while this run was in flight.
        """
        if self.is_running(session_key):
            raise AgentRunError(f"A run is already in flight for {session_key}")

        task = asyncio.ensure_future(self._consume(session_key, text, image, context))
        self._active[session_key] = task
        try:
            return await task
        except asyncio.CancelledError:
            if session_key in self._aborted:
                raise RunAborted(session_key) from None
            raise
        finally:
            if self._active.get(session_key) is task:
                del self._active[session_key]
            self._aborted.discard(session_key)

    def abort(self, session_key: str) -> bool:
        """Stop the in-flight run for *session_key*. Returns False if none."""
        task = self._active.get(session_key)
        if task is None or task.done():
            return False
        logger.info("Aborting run for %s", session_key)
        self._aborted.add(session_key)
        task.cancel()
        return True

    async def _consume(
        self,
        session_key: str,
        text: str,
        image: Optional[ImageAttachment],
        context: Optional[Dict[str, Any]],
    ) -> str:
        resume_id = self.session_store.get_session_id(session_key) if self.session_store else None
        options = {**self.options, **(context or {})}

        parts = []
        stream = self.engine.query(prompt=text, session_id=resume_id, image=image, options=options)
        try:
            async for event in stream:
                etype = event.get("type")
                if etype == "text":
                    parts.append(event.get("content") or "")
                elif etype == "session_init":
                    if self.session_store and event.get("session_id"):
                        self.session_store.set_session_id(session_key, event["session_id"])
                elif etype == "tool_use":
                    self.events.emit("agent:tool", {
                        "session_key": session_key,
                        "name": event.get("name"),
                        "input": event.get("input"),
                        "id": event.get("id"),
                    })
                elif etype == "tool_result":
                    self.events.emit("agent:tool_result", {
                        "session_key": session_key,
                        "tool_use_id": event.get("tool_use_id"),
                        "result": event.get("result"),
                    })
                elif etype == "error":
                    raise AgentRunError(str(event.get("error") or "Agent engine error"))
                elif etype == "aborted":
                    raise RunAborted(session_key)
                elif etype == "done":
                    break
        except (AgentRunError, RunAborted):
            raise
        except Exception as e:
            raise AgentRunError(f"{type(e).__name__}: {e}") from e
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.session_store:
            self.session_store.touch(session_key)

        response = "".join(parts).strip()
        return response or EMPTY_RESPONSE
