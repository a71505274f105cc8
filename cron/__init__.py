"""
Cron job scheduling for the Clawd gateway.

Jobs fire on a schedule (cron expression, fixed interval, or one-shot) and
either run a prompt through the agent or send a stored message. Results are
delivered to the job's platform and chat by the gateway:
    clawd cron add "every 2h" "Summarize my inbox" --platform telegram --chat-id 123
    clawd gateway            # runs the scheduler alongside the adapters

A file lock prevents duplicate firing if multiple processes share a job store.
"""

from cron.jobs import (
    JobExecution,
    JobNotFoundError,
    JobStore,
    ScheduledJob,
    compute_next_run,
    parse_schedule,
)
from cron.scheduler import CronScheduler

__all__ = [
    "CronScheduler",
    "JobExecution",
    "JobNotFoundError",
    "JobStore",
    "ScheduledJob",
    "compute_next_run",
    "parse_schedule",
]
