"""
Cron subcommand for clawd CLI.

Handles: clawd cron [list|add|remove|pause|resume|history]

Jobs fire automatically while the gateway is running (clawd gateway).
"""

import sys
from typing import Optional

from rich.console import Console
from rich.table import Table

from cron.jobs import JobNotFoundError, JobStore
from gateway.config import Platform, get_clawd_home, load_gateway_config

_console = Console()

STATUS_STYLES = {"active": "green", "paused": "yellow", "disabled": "red"}


def _store(store: Optional[JobStore] = None) -> JobStore:
    return store or JobStore(get_clawd_home() / "cron")


def _fmt(dt) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "-"


def _target(job) -> str:
    if job.action == "webhook":
        return f"{job.action_config.get('method', 'POST')} {job.action_config.get('url')}"
    return f"{job.platform}:{job.chat_id}"


def cron_list(show_all: bool = False, store: Optional[JobStore] = None):
    """List scheduled jobs."""
    jobs = _store(store).list_jobs(include_disabled=show_all)

    if not jobs:
        _console.print("[dim]No scheduled jobs.[/]")
        _console.print("[dim]Create one with: clawd cron add \"every 1h\" \"...\" --platform telegram --chat-id <id>[/]")
        return

    table = Table(title=f"Scheduled Jobs ({len(jobs)})")
    table.add_column("ID", style="bold yellow")
    table.add_column("Name", max_width=40)
    table.add_column("Schedule", style="cyan")
    table.add_column("Target", style="dim")
    table.add_column("Action", style="dim")
    table.add_column("Status")
    table.add_column("Next run")
    table.add_column("Runs", justify="right")

    for job in jobs:
        style = STATUS_STYLES.get(job.status, "white")
        table.add_row(
            job.id,
            job.name,
            job.schedule_display or job.job_type,
            _target(job),
            job.action,
            f"[{style}]{job.status}[/]",
            _fmt(job.next_run_at),
            str(job.run_count),
        )
    _console.print(table)


def _home_chat_id(platform_name: str) -> Optional[str]:
    try:
        platform = Platform(platform_name)
    except ValueError:
        return None
    home = load_gateway_config().get_home_channel(platform)
    return home.chat_id if home else None


def cron_add(args, store: Optional[JobStore] = None):
    """Create a job from CLI arguments."""
    webhook = getattr(args, "webhook", None)
    if webhook:
        chat_id = args.chat_id or ""
        action = "webhook"
        action_config = {"url": webhook, "method": args.method}
        if args.prompt:
            action_config["body"] = args.prompt
    else:
        if not args.platform:
            _console.print("[red]✗ --platform is required (or use --webhook)[/]")
            sys.exit(1)
        chat_id = args.chat_id or _home_chat_id(args.platform)
        if not chat_id:
            _console.print(f"[red]✗ No --chat-id given and no home channel set for {args.platform}[/]")
            sys.exit(1)
        action = "message" if args.message else "agent"
        action_config = None
    try:
        job = _store(store).create_job(
            prompt=args.prompt,
            schedule=args.schedule,
            platform=args.platform or "",
            chat_id=chat_id,
            name=args.name,
            agent_id=args.agent_id,
            action=action,
            action_config=action_config,
        )
    except ValueError as e:
        _console.print(f"[red]✗ {e}[/]")
        sys.exit(1)
    _console.print(f"[green]✓ Created job {job.id}[/] ({job.schedule_display}), next run: {_fmt(job.next_run_at)}")


def cron_remove(job_id: str, store: Optional[JobStore] = None):
    if not _store(store).remove_job(job_id):
        _console.print(f"[red]✗ No job with id {job_id}[/]")
        sys.exit(1)
    _console.print(f"[green]✓ Removed job {job_id}[/]")


def cron_set_status(job_id: str, status: str, store: Optional[JobStore] = None):
    try:
        _store(store).set_status(job_id, status)
    except JobNotFoundError:
        _console.print(f"[red]✗ No job with id {job_id}[/]")
        sys.exit(1)
    _console.print(f"[green]✓ Job {job_id} is now {status}[/]")


def cron_history(job_id: str, limit: int = 20, store: Optional[JobStore] = None):
    """Show recent executions of a job."""
    store = _store(store)
    job = store.get_job(job_id)
    if job is None:
        _console.print(f"[red]✗ No job with id {job_id}[/]")
        sys.exit(1)

    executions = store.list_executions(job_id=job_id, limit=limit)
    if not executions:
        _console.print(f"[dim]Job {job_id} has not run yet.[/]")
        return

    table = Table(title=f"History: {job.name}")
    table.add_column("Started")
    table.add_column("Finished")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Error", max_width=60, style="dim")
    for execution in reversed(executions):
        style = {"completed": "green", "failed": "red"}.get(execution.status, "yellow")
        table.add_row(
            execution.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            execution.completed_at.strftime("%H:%M:%S") if execution.completed_at else "-",
            f"[{style}]{execution.status}[/]",
            f"{execution.duration_ms}ms" if execution.duration_ms is not None else "-",
            execution.error_message or "",
        )
    _console.print(table)


def cron_command(args):
    """Handle cron subcommands."""
    subcmd = getattr(args, 'cron_command', None)

    if subcmd is None or subcmd == "list":
        cron_list(getattr(args, 'all', False))
    elif subcmd == "add":
        cron_add(args)
    elif subcmd == "remove":
        cron_remove(args.job_id)
    elif subcmd == "pause":
        cron_set_status(args.job_id, "paused")
    elif subcmd == "resume":
        cron_set_status(args.job_id, "active")
    elif subcmd == "history":
        cron_history(args.job_id, args.limit)
    else:
        _console.print(f"Unknown cron command: {subcmd}")
        _console.print("Usage: clawd cron [list|add|remove|pause|resume|history]")
        sys.exit(1)
