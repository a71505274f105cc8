"""
Cron job scheduler - fires due jobs.

``CronScheduler.poll()`` checks the job store for due jobs and fires them.
The gateway runs it every ``poll_interval`` seconds from a background task.

Uses a file-based lock (<cron_dir>/.tick.lock) so only one poll runs at a
time if several processes share the same job store. Within one process an
asyncio.Lock keeps polls from overlapping.

The scheduler never talks to platform adapters. Results are published as an
``execute`` event {job_id, platform, chat_id, message} and the gateway
delivers them.
"""

import asyncio
import json
import logging
import traceback

# fcntl is Unix-only; on Windows use msvcrt for file locking
try:
    import fcntl
except ImportError:
    fcntl = None
    try:
        import msvcrt
    except ImportError:
        msvcrt = None
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional, Set

import aiohttp

from cron.jobs import JobExecution, JobNotFoundError, JobStore, ScheduledJob, compute_next_run
from gateway.events import EventEmitter

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 60
WEBHOOK_TIMEOUT = 30

AgentCallback = Callable[[ScheduledJob], Awaitable[str]]


def _format_output(job: ScheduledJob, response: str, error: Optional[str] = None) -> str:
    header = f"# Cron Job: {job.name}" + (" (FAILED)" if error else "")
    body = f"## Error\n\n```\n{error}\n```" if error else f"## Response\n\n{response}"
    return f"""{header}

**Job ID:** {job.id}
**Run Time:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}
**Schedule:** {job.schedule_display or job.job_type}
**Target:** {job.platform}:{job.chat_id}

## Prompt

{job.prompt}

{body}
"""


class CronScheduler:
    """
    Polls the job store and fires due jobs.

    Args:
        store: Job persistence
        run_agent: Coroutine function that runs a job's prompt through the
            agent and returns the reply. Required for action="agent" jobs.
        events: Emitter that receives ``execute`` and ``job_failed``
        poll_interval: Seconds between polls
        lock_path: Cross-process tick lock file
    """

    def __init__(
        self,
        store: JobStore,
        run_agent: Optional[AgentCallback] = None,
        events: Optional[EventEmitter] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        lock_path: Optional[Path] = None,
    ):
        self.store = store
        self.run_agent = run_agent
        self.events = events or EventEmitter()
        self.poll_interval = poll_interval
        self.lock_path = Path(lock_path) if lock_path else store.cron_dir / ".tick.lock"

        self._poll_lock = asyncio.Lock()
        self._firing: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- lifecycle ------------------------------------------------------------

    def initialize_schedules(self, now: Optional[datetime] = None) -> int:
        """Give every active job without a next_run_at one. Returns the count."""
        now = now or datetime.now()
        updated = 0
        for job in self.store.list_jobs():
            if job.status != "active" or job.next_run_at is not None:
                continue
            # A one_time job that already ran stays without a next run
            next_run = compute_next_run(job, now, fired=job.run_count > 0)
            if next_run is None:
                continue
            self.store.update_job(job.id, {"next_run_at": next_run})
            updated += 1
        if updated:
            logger.info("Computed next run for %d job(s)", updated)
        return updated

    async def start(self) -> None:
        if self.running:
            return
        self.store.ensure_dirs()
        self.initialize_schedules()
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Cron scheduler started (every %ss)", self.poll_interval)

    async def stop(self) -> None:
        """Stop the poll loop. Safe to call repeatedly."""
        task, self._task = self._task, None
        if task is None:
            return
        self._stop_event.set()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Cron scheduler stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll()
            except Exception as e:
                logger.error("Cron poll error: %s", e)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # -- polling --------------------------------------------------------------

    def _acquire_tick_lock(self):
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_fd = open(self.lock_path, "w")
        try:
            if fcntl:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            elif msvcrt:
                msvcrt.locking(lock_fd.fileno(), msvcrt.LK_NBLCK, 1)
        except (OSError, IOError):
            lock_fd.close()
            return None
        return lock_fd

    def _release_tick_lock(self, lock_fd) -> None:
        if fcntl:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
        elif msvcrt:
            try:
                msvcrt.locking(lock_fd.fileno(), msvcrt.LK_UNLCK, 1)
            except (OSError, IOError):
                pass
        lock_fd.close()

    async def poll(self, now: Optional[datetime] = None) -> int:
        """
        Fire all due jobs concurrently.

        Returns:
            Number of jobs fired (0 if another process holds the tick lock)
        """
        async with self._poll_lock:
            lock_fd = self._acquire_tick_lock()
            if lock_fd is None:
                logger.debug("Poll skipped, another instance holds the lock")
                return 0
            try:
                now = now or datetime.now()
                due = [j for j in self.store.get_due_jobs(now) if j.id not in self._firing]
                if not due:
                    return 0

                logger.info("%s - %d job(s) due", now.strftime('%H:%M:%S'), len(due))
                await asyncio.gather(*(self._fire(job, now) for job in due))
                return len(due)
            finally:
                self._release_tick_lock(lock_fd)

    async def execute(self, job_id: str) -> bool:
        """
        Fire a job now, regardless of its next_run_at.

        Returns True if the action succeeded.

        Raises:
            JobNotFoundError: no job with that id
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job_id in self._firing:
            logger.warning("Job '%s' is already firing, manual trigger ignored", job_id)
            return False
        return await self._fire(job)

    # -- firing ---------------------------------------------------------------

    async def _call_webhook(self, job: ScheduledJob, execution: JobExecution) -> str:
        config = job.action_config or {}
        url = config.get("url")
        if not url:
            raise ValueError("Webhook URL is required")
        method = str(config.get("method") or "POST").upper()
        headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
        body = config.get("body")
        kwargs = {}
        if body:
            kwargs["data"] = body if isinstance(body, str) else json.dumps(body)

        timeout = aiohttp.ClientTimeout(total=config.get("timeout", WEBHOOK_TIMEOUT))
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(method, url, headers=headers, **kwargs) as resp:
                execution.result = {"status": resp.status, "reason": resp.reason}
                if not 200 <= resp.status < 300:
                    raise RuntimeError(f"Webhook returned {resp.status}: {resp.reason}")
                logger.info("Job '%s': %s %s -> %s", job.name, method, url, resp.status)
        # Nothing to deliver to a chat
        return ""

    async def _perform(self, job: ScheduledJob, execution: JobExecution) -> str:
        if job.action == "webhook":
            return await self._call_webhook(job, execution)
        if job.action == "message":
            response = job.prompt
        elif self.run_agent is None:
            raise RuntimeError("No agent runner configured for cron jobs")
        else:
            response = await self.run_agent(job)
        execution.result = {"response_chars": len(response)}
        return response

    async def _fire(self, job: ScheduledJob, poll_time: Optional[datetime] = None) -> bool:
        """Run one job. Never raises except for cancellation."""
        self._firing.add(job.id)
        execution = self.store.add_execution(job.id)
        logger.info("Running job '%s' (ID: %s)", job.name, job.id)

        response = ""
        error: Optional[str] = None
        try:
            response = await self._perform(job, execution)
        except asyncio.CancelledError:
            error = "Cancelled"
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error("Job '%s' failed: %s", job.name, error)
            logger.debug(traceback.format_exc())
        finally:
            finished = datetime.now()
            execution.completed_at = finished
            execution.duration_ms = int((finished - execution.started_at).total_seconds() * 1000)
            execution.status = "failed" if error else "completed"
            execution.error_message = error
            try:
                self.store.update_execution(execution)
                self._advance(job.id, finished, error, poll_time)
            except Exception as e:
                logger.error("Could not record run of job %s: %s", job.id, e)
            self._firing.discard(job.id)

        try:
            output_file = self.store.save_job_output(job.id, _format_output(job, response, error))
            logger.debug("Output saved to: %s", output_file)
        except OSError as e:
            logger.warning("Could not save output of job %s: %s", job.id, e)

        if error:
            self.events.emit("job_failed", {"job_id": job.id, "error": error})
            return False

        logger.info("Job '%s' completed successfully", job.name)
        self.events.emit("execute", {
            "job_id": job.id,
            "platform": job.platform,
            "chat_id": job.chat_id,
            "message": response,
        })
        return True

    def _advance(
        self,
        job_id: str,
        finished: datetime,
        error: Optional[str],
        poll_time: Optional[datetime] = None,
    ) -> None:
        # Re-read so CLI edits made while the job was running are kept.
        job = self.store.get_job(job_id)
        if job is None:
            return
        # Counted from the poll time when that is ahead of the clock
        base = max(poll_time, finished) if poll_time else finished
        next_run = compute_next_run(job, base, fired=True)
        self.store.update_job(job_id, {
            "next_run_at": next_run,
            "last_run_at": finished,
            "run_count": job.run_count + 1,
            "last_error": error,
        })
        if next_run is None:
            logger.info("Job '%s' has no further runs", job.name)
