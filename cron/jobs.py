"""
Cron job storage and management.

Jobs are stored in <cron_dir>/jobs.json
Execution records in <cron_dir>/executions.json
Output is saved to <cron_dir>/output/{job_id}/{timestamp}.md

Writes are read-modify-write of whole files. ``update_job`` only touches the
fields it is given, so a CLI edit and a scheduler update to *different*
fields both survive; edits to the *same* field are last-write-wins.
"""

import json
import logging
import os
import re
import tempfile
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, List, Any

from croniter import croniter

logger = logging.getLogger(__name__)

JOB_TYPES = ("cron", "recurring", "one_time")
JOB_STATUSES = ("active", "paused", "disabled")
JOB_ACTIONS = ("agent", "message", "webhook")

# Oldest execution records are dropped beyond this many.
MAX_EXECUTIONS = 1000


class JobNotFoundError(KeyError):
    """No job with the given id."""


# =============================================================================
# Records
# =============================================================================

def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


_DATETIME_FIELDS = {"execute_at", "next_run_at", "last_run_at", "created_at"}


@dataclass
class ScheduledJob:
    """A persisted schedule that fires an agent run or a plain message."""
    id: str
    name: str
    agent_id: str
    platform: str
    chat_id: str
    prompt: str
    job_type: str  # "cron" | "recurring" | "one_time"
    action: str = "agent"  # "agent" runs the prompt, "message" sends it verbatim, "webhook" calls a URL
    # webhook: url, method (POST), headers, body
    action_config: Dict[str, Any] = field(default_factory=dict)
    cron_expression: Optional[str] = None
    interval_seconds: Optional[int] = None
    execute_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    status: str = "active"
    run_count: int = 0
    last_error: Optional[str] = None
    schedule_display: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = _iso(value) if f.name in _DATETIME_FIELDS else value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledJob":
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            kwargs[key] = _dt(value) if key in _DATETIME_FIELDS else value
        if kwargs.get("created_at") is None:
            kwargs.pop("created_at", None)
        return cls(**kwargs)


@dataclass
class JobExecution:
    """One firing of a job."""
    id: str
    job_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: str = "running"  # "running" | "completed" | "failed"
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "status": self.status,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobExecution":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=_dt(data.get("completed_at")),
            status=data.get("status", "running"),
            error_message=data.get("error_message"),
            duration_ms=data.get("duration_ms"),
            result=data.get("result"),
        )


# =============================================================================
# Schedule Parsing
# =============================================================================

def parse_duration(s: str) -> int:
    """
    Parse duration string into minutes.

    Examples:
        "30m" → 30
        "2h" → 120
        "1d" → 1440
    """
    s = s.strip().lower()
    match = re.match(r'^(\d+)\s*(m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)$', s)
    if not match:
        raise ValueError(f"Invalid duration: '{s}'. Use format like '30m', '2h', or '1d'")

    value = int(match.group(1))
    unit = match.group(2)[0]

    multipliers = {'m': 1, 'h': 60, 'd': 1440}
    return value * multipliers[unit]


def parse_schedule(schedule: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Parse schedule string into job fields.

    Returns dict with ``job_type``, ``schedule_display`` and one of
    ``cron_expression`` / ``interval_seconds`` / ``execute_at``.

    Examples:
        "30m"              → one_time in 30 minutes
        "every 2h"         → recurring every 2 hours
        "0 9 * * *"        → cron expression
        "2026-02-03T14:00" → one_time at timestamp
    """
    schedule = schedule.strip()
    original = schedule
    now = now or datetime.now()

    if schedule.lower().startswith("every "):
        minutes = parse_duration(schedule[6:].strip())
        if minutes <= 0:
            raise ValueError("Interval must be positive")
        return {
            "job_type": "recurring",
            "interval_seconds": minutes * 60,
            "schedule_display": f"every {minutes}m",
        }

    # Cron fields: minute hour day month weekday
    parts = schedule.split()
    if len(parts) == 5 and all(re.match(r'^[\d\*\-,/]+$', p) for p in parts):
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid cron expression '{schedule}'")
        return {
            "job_type": "cron",
            "cron_expression": schedule,
            "schedule_display": schedule,
        }

    if 'T' in schedule or re.match(r'^\d{4}-\d{2}-\d{2}', schedule):
        try:
            dt = datetime.fromisoformat(schedule.replace('Z', '+00:00'))
        except ValueError as e:
            raise ValueError(f"Invalid timestamp '{schedule}': {e}")
        if dt.tzinfo is not None:
            dt = dt.astimezone().replace(tzinfo=None)
        return {
            "job_type": "one_time",
            "execute_at": dt,
            "schedule_display": f"once at {dt.strftime('%Y-%m-%d %H:%M')}",
        }

    try:
        minutes = parse_duration(schedule)
    except ValueError:
        minutes = None
    if minutes is not None:
        return {
            "job_type": "one_time",
            "execute_at": now + timedelta(minutes=minutes),
            "schedule_display": f"once in {original}",
        }

    raise ValueError(
        f"Invalid schedule '{original}'. Use:\n"
        f"  - Duration: '30m', '2h', '1d' (one-shot)\n"
        f"  - Interval: 'every 30m', 'every 2h' (recurring)\n"
        f"  - Cron: '0 9 * * *' (cron expression)\n"
        f"  - Timestamp: '2026-02-03T14:00:00' (one-shot at time)"
    )


def compute_next_run(job: ScheduledJob, now: Optional[datetime] = None, fired: bool = False) -> Optional[datetime]:
    """
    Compute the next run time for a job.

    cron       next occurrence strictly after ``now``
    recurring  ``now`` + interval
    one_time   ``execute_at`` until it has fired, then None
    """
    now = now or datetime.now()

    if job.job_type == "one_time":
        return None if fired else job.execute_at

    if job.job_type == "recurring":
        if not job.interval_seconds or job.interval_seconds <= 0:
            return None
        return now + timedelta(seconds=job.interval_seconds)

    if job.job_type == "cron":
        if not job.cron_expression:
            return None
        next_run = croniter(job.cron_expression, now).get_next(datetime)
        # croniter works at minute resolution; guarantee strictly-after.
        while next_run <= now:
            next_run = croniter(job.cron_expression, next_run).get_next(datetime)
        return next_run

    return None


# =============================================================================
# Store
# =============================================================================

class JobStore:
    """JSON-file persistence for scheduled jobs and their executions."""

    def __init__(self, cron_dir: Path):
        self.cron_dir = Path(cron_dir)
        self.jobs_file = self.cron_dir / "jobs.json"
        self.executions_file = self.cron_dir / "executions.json"
        self.output_dir = self.cron_dir / "output"

    def ensure_dirs(self) -> None:
        self.cron_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _read(self, path: Path, key: str) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f).get(key, [])
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Could not read %s: %s", path, e)
            return []

    def _write(self, path: Path, key: str, items: List[Dict[str, Any]]) -> None:
        self.ensure_dirs()
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix='.tmp', prefix=f'.{path.stem}_')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump({key: items, "updated_at": datetime.now().isoformat()}, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # -- jobs -----------------------------------------------------------------

    def load_jobs(self) -> List[ScheduledJob]:
        jobs = []
        for data in self._read(self.jobs_file, "jobs"):
            try:
                jobs.append(ScheduledJob.from_dict(data))
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed job %s: %s", data.get("id", "?"), e)
        return jobs

    def save_jobs(self, jobs: List[ScheduledJob]) -> None:
        self._write(self.jobs_file, "jobs", [j.to_dict() for j in jobs])

    def create_job(
        self,
        prompt: str,
        schedule: str,
        platform: str = "",
        chat_id: str = "",
        name: Optional[str] = None,
        agent_id: str = "clawd",
        action: str = "agent",
        action_config: Optional[Dict[str, Any]] = None,
    ) -> ScheduledJob:
        """
        Create a new job.

        Args:
            prompt: Text to run through the agent (or to send, for action="message")
            schedule: Schedule string (see parse_schedule)
            platform: Delivery platform ("telegram", "signal", ...)
            chat_id: Delivery chat on that platform
            name: Optional friendly name
            agent_id: Agent identity whose conversation the run joins
            action: "agent", "message" or "webhook"
            action_config: Webhook request (url, method, headers, body)
        """
        if action not in JOB_ACTIONS:
            raise ValueError(f"Unknown job action '{action}'. Use one of: {', '.join(JOB_ACTIONS)}")
        action_config = dict(action_config or {})
        if action == "webhook":
            if not action_config.get("url"):
                raise ValueError("Webhook URL is required")
        elif not prompt or not prompt.strip():
            raise ValueError("Job prompt must not be empty")

        now = datetime.now()
        job = ScheduledJob(
            id=uuid.uuid4().hex[:12],
            name=name or (prompt or "")[:50].strip() or f"webhook {action_config.get('url')}",
            agent_id=agent_id,
            platform=platform,
            chat_id=str(chat_id),
            prompt=prompt or "",
            action=action,
            action_config=action_config,
            created_at=now,
            **parse_schedule(schedule, now),
        )
        job.next_run_at = compute_next_run(job, now)

        jobs = self.load_jobs()
        jobs.append(job)
        self.save_jobs(jobs)
        return job

    def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        for job in self.load_jobs():
            if job.id == job_id:
                return job
        return None

    def list_jobs(
        self,
        include_disabled: bool = False,
        platform: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> List[ScheduledJob]:
        jobs = self.load_jobs()
        if not include_disabled:
            jobs = [j for j in jobs if j.status != "disabled"]
        if platform is not None:
            jobs = [j for j in jobs if j.platform == platform]
        if chat_id is not None:
            jobs = [j for j in jobs if j.chat_id == str(chat_id)]
        return jobs

    def update_job(self, job_id: str, updates: Dict[str, Any]) -> Optional[ScheduledJob]:
        """Apply field updates to one job. Unknown fields raise ValueError."""
        known = {f.name for f in fields(ScheduledJob)}
        unknown = set(updates) - known
        if unknown:
            raise ValueError(f"Unknown job fields: {', '.join(sorted(unknown))}")
        if "status" in updates and updates["status"] not in JOB_STATUSES:
            raise ValueError(f"Invalid status '{updates['status']}'")

        jobs = self.load_jobs()
        for job in jobs:
            if job.id == job_id:
                for key, value in updates.items():
                    setattr(job, key, value)
                self.save_jobs(jobs)
                return job
        return None

    def set_status(self, job_id: str, status: str) -> ScheduledJob:
        job = self.update_job(job_id, {"status": status})
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def remove_job(self, job_id: str) -> bool:
        jobs = self.load_jobs()
        remaining = [j for j in jobs if j.id != job_id]
        if len(remaining) < len(jobs):
            self.save_jobs(remaining)
            return True
        return False

    def get_due_jobs(self, now: Optional[datetime] = None) -> List[ScheduledJob]:
        """Active jobs whose next_run_at is at or before ``now``."""
        now = now or datetime.now()
        return [
            job for job in self.load_jobs()
            if job.status == "active" and job.next_run_at is not None and job.next_run_at <= now
        ]

    # -- executions -----------------------------------------------------------

    def load_executions(self) -> List[JobExecution]:
        return [JobExecution.from_dict(d) for d in self._read(self.executions_file, "executions")]

    def add_execution(self, job_id: str, started_at: Optional[datetime] = None) -> JobExecution:
        execution = JobExecution(
            id=uuid.uuid4().hex[:12],
            job_id=job_id,
            started_at=started_at or datetime.now(),
        )
        executions = self.load_executions()
        executions.append(execution)
        self._write(
            self.executions_file, "executions",
            [e.to_dict() for e in executions[-MAX_EXECUTIONS:]],
        )
        return execution

    def update_execution(self, execution: JobExecution) -> None:
        executions = self.load_executions()
        for i, existing in enumerate(executions):
            if existing.id == execution.id:
                executions[i] = execution
                break
        else:
            executions.append(execution)
        self._write(
            self.executions_file, "executions",
            [e.to_dict() for e in executions[-MAX_EXECUTIONS:]],
        )

    def list_executions(self, job_id: Optional[str] = None, limit: Optional[int] = None) -> List[JobExecution]:
        executions = self.load_executions()
        if job_id is not None:
            executions = [e for e in executions if e.job_id == job_id]
        if limit is not None:
            executions = executions[-limit:]
        return executions

    def save_job_output(self, job_id: str, output: str) -> Path:
        """Save job output to file."""
        job_output_dir = self.output_dir / job_id
        job_output_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S_%f")
        output_file = job_output_dir / f"{timestamp}.md"
        with open(output_file, 'w', encoding='utf-8') as f:
            f.write(output)
        return output_file
