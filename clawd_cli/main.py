#!/usr/bin/env python3
"""
Clawd CLI - Main entry point.

Usage:
    clawd gateway                 # Run the messaging gateway in foreground
    clawd cron list [--all]       # List scheduled jobs
    clawd cron add <schedule> <prompt> --platform <p> [--chat-id <id>]
    clawd cron add <schedule> <body> --webhook <url> [--method <m>]
    clawd cron remove <id>        # Delete a job
    clawd cron pause <id>         # Stop a job from firing
    clawd cron resume <id>        # Re-activate a paused job
    clawd cron history <id>       # Show recent executions
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from gateway.config import get_clawd_home

logger = logging.getLogger(__name__)


def cmd_gateway(args):
    """Run the gateway in the foreground until interrupted."""
    from gateway.run import start_gateway

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    if not asyncio.run(start_gateway()):
        sys.exit(1)


def cmd_cron(args):
    """Cron job management."""
    from clawd_cli.cron import cron_command
    cron_command(args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clawd",
        description="Clawd - messaging gateway for a conversational agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    clawd gateway                                   Run messaging gateway
    clawd cron add "0 9 * * *" "Daily briefing" --platform telegram --chat-id 123
    clawd cron add "every 2h" "Drink water" --platform signal --chat-id +15550100 --message
    clawd cron add "every 1h" '{"source": "clawd"}' --webhook https://example.com/hook
    clawd cron list --all

For more help on a command:
    clawd <command> --help
"""
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # =========================================================================
    # gateway command
    # =========================================================================
    gateway_parser = subparsers.add_parser(
        "gateway",
        help="Run the messaging gateway",
        description="Connect configured platforms and run the cron scheduler",
    )
    gateway_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    gateway_parser.set_defaults(func=cmd_gateway)

    # =========================================================================
    # cron command
    # =========================================================================
    cron_parser = subparsers.add_parser(
        "cron",
        help="Cron job management",
        description="Manage scheduled tasks"
    )
    cron_subparsers = cron_parser.add_subparsers(dest="cron_command")

    cron_list = cron_subparsers.add_parser("list", help="List scheduled jobs")
    cron_list.add_argument("--all", action="store_true", help="Include disabled jobs")

    cron_add = cron_subparsers.add_parser("add", help="Schedule a new job")
    cron_add.add_argument("schedule", help="'30m', 'every 2h', '0 9 * * *' or an ISO timestamp")
    cron_add.add_argument("prompt", help="Prompt for the agent (or the message text with --message)")
    cron_add.add_argument("--platform", help="Delivery platform (telegram, whatsapp, signal, imessage)")
    cron_add.add_argument("--chat-id", help="Delivery chat id (default: the platform's home channel)")
    cron_add.add_argument("--name", help="Friendly name")
    cron_add.add_argument("--agent-id", default="clawd", help="Agent identity (default: clawd)")
    cron_add.add_argument("--message", action="store_true", help="Send the text as-is instead of running the agent")
    cron_add.add_argument("--webhook", metavar="URL", help="Call this URL instead (the prompt becomes the request body)")
    cron_add.add_argument("--method", default="POST", help="HTTP method for --webhook (default: POST)")

    for name, help_text in (
        ("remove", "Delete a job"),
        ("pause", "Pause a job"),
        ("resume", "Resume a paused job"),
    ):
        sub = cron_subparsers.add_parser(name, help=help_text)
        sub.add_argument("job_id")

    cron_history = cron_subparsers.add_parser("history", help="Show recent executions of a job")
    cron_history.add_argument("job_id")
    cron_history.add_argument("--limit", type=int, default=20)

    cron_parser.set_defaults(func=cmd_cron)

    return parser


def main(argv=None):
    """Main entry point for clawd CLI."""
    env_path = get_clawd_home() / '.env'
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)

    parser = build_parser()
    args = parser.parse_args(argv)

    if hasattr(args, 'func'):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
