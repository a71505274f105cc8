"""
Slash commands handled by the gateway itself.

Commands never go through the run queue, so they answer immediately even
while a long agent run is in flight for the same conversation. Unknown
``/words`` are not commands; they fall through to the agent.
"""

import logging
from typing import Callable, Dict, List, Optional

from agent.runner import AgentRunner
from cron.jobs import JobStore
from gateway.platforms.base import MessageEvent
from gateway.run_queue import RunQueue
from gateway.session import SessionStore

logger = logging.getLogger(__name__)

COMMANDS: Dict[str, str] = {
    "help": "Show this help",
    "new": "Start a fresh conversation",
    "reset": "Same as /new",
    "status": "Show session and queue status",
    "stop": "Stop the reply currently being generated",
    "jobs": "List scheduled jobs for this chat",
}


class CommandHandler:
    """Answers gateway-level slash commands."""

    def __init__(
        self,
        session_store: SessionStore,
        run_queue: RunQueue,
        runner: AgentRunner,
        job_store: Optional[JobStore] = None,
        connected_platforms: Optional[Callable[[], List[str]]] = None,
    ):
        self.session_store = session_store
        self.run_queue = run_queue
        self.runner = runner
        self.job_store = job_store
        self.connected_platforms = connected_platforms or (lambda: [])

    def is_command(self, event: MessageEvent) -> bool:
        return event.get_command() in COMMANDS

    async def handle(self, event: MessageEvent, session_key: str) -> Optional[str]:
        """Return the reply for a known command, or None to let the agent have it."""
        command = event.get_command()
        if command not in COMMANDS:
            return None
        logger.info("Command /%s for %s", command, session_key)
        handler = getattr(self, f"_cmd_{command}")
        return handler(event, session_key)

    def _cmd_help(self, event: MessageEvent, session_key: str) -> str:
        lines = ["Available commands:"]
        lines.extend(f"/{name} - {desc}" for name, desc in COMMANDS.items())
        return "\n".join(lines)

    def _cmd_new(self, event: MessageEvent, session_key: str) -> str:
        if self.session_store.reset_session(session_key):
            return "Started a new conversation."
        return "No previous conversation, you're already starting fresh."

    _cmd_reset = _cmd_new

    def _cmd_status(self, event: MessageEvent, session_key: str) -> str:
        status = self.run_queue.get_queue_status(session_key)
        session_id = self.session_store.get_session_id(session_key)
        platforms = ", ".join(self.connected_platforms()) or "none"
        return "\n".join([
            f"Session: {session_id or '(new)'}",
            f"Running: {'yes' if self.runner.is_running(session_key) else 'no'}",
            f"Queued: {status.pending}",
            f"Platforms: {platforms}",
        ])

    def _cmd_stop(self, event: MessageEvent, session_key: str) -> str:
        if self.runner.abort(session_key):
            status = self.run_queue.get_queue_status(session_key)
            if status.pending:
                return f"Stopped. {status.pending} queued message(s) will still be answered."
            return "Stopped."
        return "Nothing is running."

    def _cmd_jobs(self, event: MessageEvent, session_key: str) -> str:
        if self.job_store is None:
            return "Scheduled jobs are not enabled."
        jobs = self.job_store.list_jobs(
            platform=event.source.platform.value, chat_id=event.source.chat_id
        )
        if not jobs:
            return "No scheduled jobs for this chat."
        lines = [f"{len(jobs)} scheduled job(s):"]
        for job in jobs:
            next_run = job.next_run_at.strftime("%Y-%m-%d %H:%M") if job.next_run_at else "-"
            lines.append(f"[{job.id}] {job.name} ({job.schedule_display}, {job.status}), next: {next_run}")
        return "\n".join(lines)
