"""
Gateway runner - entry point for messaging platform integrations.

This module provides:
- start_gateway(): Start all configured platform adapters and the scheduler
- GatewayRunner: Routes inbound messages through the run queue and delivers
  replies (and cron results) back through the originating adapter

Usage:
    # Start the gateway
    python -m gateway.run

    # Or from CLI
    clawd gateway
"""

import asyncio
import functools
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

from gateway.config import get_clawd_home

# Load environment variables from ~/.clawd/.env first
_env_path = get_clawd_home() / '.env'
if _env_path.exists():
    try:
        load_dotenv(_env_path, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(_env_path, encoding="latin-1")
# Also try project .env as fallback
load_dotenv()

from agent.engine import AgentEngine, OpenAIChatEngine
from agent.runner import AgentRunner, RunAborted
from cron.jobs import JobStore, ScheduledJob
from cron.scheduler import CronScheduler
from gateway.commands import CommandHandler
from gateway.config import Platform, GatewayConfig, load_gateway_config
from gateway.events import EventEmitter
from gateway.platforms.base import BasePlatformAdapter, MessageEvent
from gateway.run_queue import RunQueue
from gateway.session import SessionStore, build_session_key

logger = logging.getLogger(__name__)

QUEUED_REACTION = "⏳"
SLOW_WAIT_MS = 100


def _platform_name(platform: Union[Platform, str]) -> str:
    return platform.value if isinstance(platform, Platform) else str(platform)


class GatewayRunner:
    """
    Main gateway controller.

    Owns the adapters, the run queue and the cron scheduler, and routes
    messages between them. Collaborators can be injected for tests.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        engine: Optional[AgentEngine] = None,
        events: Optional[EventEmitter] = None,
        session_store: Optional[SessionStore] = None,
        job_store: Optional[JobStore] = None,
    ):
        self.config = config or load_gateway_config()
        self.events = events or EventEmitter()
        self.adapters: Dict[str, Any] = {}

        self.session_store = session_store or SessionStore(self.config.sessions_dir)
        self.job_store = job_store or JobStore(self.config.cron_dir)

        agent_cfg = self.config.agent
        if engine is None:
            engine = OpenAIChatEngine(
                model=agent_cfg.model,
                api_key=agent_cfg.api_key,
                base_url=agent_cfg.base_url,
                system_prompt=agent_cfg.system_prompt,
                session_store=self.session_store,
            )
        self.runner = AgentRunner(
            engine,
            session_store=self.session_store,
            events=self.events,
            options={"max_turns": agent_cfg.max_turns, "allowed_tools": agent_cfg.allowed_tools},
        )
        self.run_queue = RunQueue(self.runner, self.events)
        self.commands = CommandHandler(
            self.session_store,
            self.run_queue,
            self.runner,
            job_store=self.job_store,
            connected_platforms=lambda: sorted(self.adapters),
        )
        self.scheduler = CronScheduler(
            self.job_store,
            run_agent=self._run_cron_job,
            events=self.events,
            poll_interval=self.config.cron_poll_interval,
        )

        self._running = False
        self._shutdown_event = asyncio.Event()

        self._setup_queue_monitor()
        self.events.on("execute", self._deliver_cron_result)
        self.events.on("job_failed", self._on_job_failed)

    # -- adapters -------------------------------------------------------------

    def register_adapter(self, platform: Union[Platform, str], adapter: Any) -> None:
        """Register an adapter and route its inbound messages through the gateway."""
        name = _platform_name(platform)
        if name in self.adapters:
            logger.warning("Replacing adapter for %s", name)
        self.adapters[name] = adapter
        adapter.on_message(functools.partial(self._handle_message, name, adapter))

    def _create_adapter(self, platform: Platform, config: Any) -> Optional[BasePlatformAdapter]:
        """Create the appropriate adapter for a platform."""
        if platform == Platform.TELEGRAM:
            from gateway.platforms.telegram import TelegramAdapter, check_telegram_requirements
            if not check_telegram_requirements():
                logger.warning("Telegram: python-telegram-bot not installed")
                return None
            return TelegramAdapter(config)

        elif platform == Platform.WHATSAPP:
            from gateway.platforms.whatsapp import WhatsAppAdapter, check_whatsapp_requirements
            if not check_whatsapp_requirements():
                logger.warning("WhatsApp: Node.js not installed or bridge not configured")
                return None
            return WhatsAppAdapter(config)

        elif platform == Platform.SIGNAL:
            from gateway.platforms.signal import SignalAdapter, check_signal_requirements
            if not check_signal_requirements(config):
                logger.warning("Signal: signal-cli not found or SIGNAL_PHONE_NUMBER not set")
                return None
            return SignalAdapter(config)

        elif platform == Platform.IMESSAGE:
            from gateway.platforms.imessage import IMessageAdapter, check_imessage_requirements
            if not check_imessage_requirements(config):
                logger.warning("iMessage: imsg CLI not found (macOS only)")
                return None
            return IMessageAdapter(config)

        return None

    # -- lifecycle ------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start configured adapters and the cron scheduler.

        The gateway keeps running even with no platforms connected so that
        scheduled jobs still fire.
        """
        if self._running:
            return True
        logger.info("Starting Clawd Gateway (agent: %s)...", self.config.agent_id)
        logger.info("Session storage: %s", self.config.sessions_dir)

        for platform, platform_config in self.config.platforms.items():
            if not platform_config.enabled or platform.value in self.adapters:
                continue
            adapter = self._create_adapter(platform, platform_config)
            if not adapter:
                logger.warning("No adapter available for %s", platform.value)
                continue
            self.register_adapter(platform, adapter)

        connected = 0
        for name, adapter in list(self.adapters.items()):
            logger.info("Connecting to %s...", name)
            try:
                if await adapter.start():
                    connected += 1
                    logger.info("✓ %s connected", name)
                else:
                    logger.warning("✗ %s failed to connect", name)
                    del self.adapters[name]
            except Exception as e:
                logger.error("✗ %s error: %s", name, e)
                del self.adapters[name]

        if connected == 0:
            logger.warning("No messaging platforms connected.")
            logger.info("Gateway will continue running for cron job execution.")
        else:
            logger.info("Gateway running with %s platform(s)", connected)

        await self.scheduler.start()
        self._running = True
        self._shutdown_event.clear()
        logger.info("Press Ctrl+C to stop")
        return True

    async def stop(self) -> None:
        """Stop the scheduler, in-flight runs and adapters. Safe to call repeatedly."""
        if not self._running:
            self._shutdown_event.set()
            return
        logger.info("Stopping gateway...")
        self._running = False

        await self.scheduler.stop()
        await self.run_queue.shutdown()

        for name, adapter in list(self.adapters.items()):
            try:
                await adapter.stop()
                logger.info("✓ %s disconnected", name)
            except Exception as e:
                logger.error("✗ %s disconnect error: %s", name, e)

        await self.events.drain()
        self._shutdown_event.set()
        logger.info("Gateway stopped")

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()

    # -- inbound --------------------------------------------------------------

    def _resolve_key(self, platform: str, adapter: Any, event: MessageEvent) -> str:
        hook = getattr(adapter, "generate_session_key", None)
        if hook is not None:
            try:
                return hook(self.config.agent_id, platform, event)
            except Exception as e:
                logger.warning("[%s] generate_session_key failed, using default: %s", platform, e)
        return build_session_key(self.config.agent_id, platform, getattr(event, "source", None))

    async def _handle_message(self, platform: str, adapter: Any, event: MessageEvent) -> None:
        """
        Handle one inbound message end to end.

        Never raises: adapters must not see errors from the gateway.
        """
        try:
            await self._dispatch(platform, adapter, event)
        except Exception as e:
            logger.error("[%s] Unhandled error routing message: %s", platform, e, exc_info=True)

    async def _dispatch(self, platform: str, adapter: Any, event: MessageEvent) -> None:
        source = event.source
        chat_id = source.chat_id
        session_key = self._resolve_key(platform, adapter, event)

        preview = event.text[:100] + ("..." if len(event.text) > 100 else "")
        logger.info(
            "[%s] message key=%s sender=%s group=%s text=%r%s",
            platform, session_key, source.user_id, source.is_group, preview,
            f" image={len(event.image.data)}B" if event.image else "",
        )

        try:
            self.session_store.get_or_create(session_key, origin=source)
        except Exception as e:
            logger.warning("Could not record session %s: %s", session_key, e)

        if self.commands.is_command(event):
            reply = await self.commands.handle(event, session_key)
            if reply is not None:
                await self._send_reply(platform, adapter, chat_id, reply, fallback=False)
                return

        await self._call_optional(adapter, "send_typing", chat_id)
        try:
            context = {
                "platform": platform,
                "chat_id": chat_id,
                "user_id": source.user_id,
                "is_group": source.is_group,
            }
            future = self.run_queue.submit(session_key, event.text, context=context, image=event.image)
            if self.run_queue.get_queue_status(session_key).pending > 0:
                await self._call_optional(adapter, "react", chat_id, event.message_id, QUEUED_REACTION)
            response = await future
        except RunAborted:
            logger.info("[%s] run aborted for %s", platform, session_key)
            return
        except Exception as e:
            logger.error("[%s] agent run failed for %s: %s", platform, session_key, e)
            await self._send_reply(platform, adapter, chat_id, self.config.error_message, fallback=False)
            return
        finally:
            # Keep typing while later messages for this conversation are queued or running
            status = self.run_queue.get_queue_status(session_key)
            if not status.pending and not status.processing:
                await self._call_optional(adapter, "stop_typing", chat_id)

        await self._send_reply(platform, adapter, chat_id, response)

    async def _send_reply(self, platform: str, adapter: Any, chat_id: str, text: str, fallback: bool = True) -> bool:
        try:
            await adapter.send_message(chat_id, text)
            return True
        except Exception as e:
            logger.error("[%s] failed to send reply to %s: %s", platform, chat_id, e)
        if not fallback:
            return False
        try:
            await adapter.send_message(chat_id, self.config.error_message)
        except Exception as e:
            logger.error("[%s] fallback message to %s also failed: %s", platform, chat_id, e)
        return False

    @staticmethod
    async def _call_optional(adapter: Any, method: str, *args) -> None:
        """Best-effort call of an optional adapter capability."""
        func = getattr(adapter, method, None)
        if func is None:
            return
        try:
            await func(*args)
        except Exception as e:
            logger.debug("%s failed: %s", method, e)

    # -- cron -----------------------------------------------------------------

    def _job_session_key(self, job: ScheduledJob) -> str:
        # Join the chat's existing conversation when we've seen it before
        for entry in self.session_store.list_sessions():
            origin = entry.origin
            if origin and origin.platform.value == job.platform and origin.chat_id == job.chat_id:
                if entry.session_key.startswith(f"agent:{job.agent_id}:"):
                    return entry.session_key
        return build_session_key(job.agent_id, job.platform, {"chat_id": job.chat_id})

    async def _run_cron_job(self, job: ScheduledJob) -> str:
        session_key = self._job_session_key(job)
        logger.info("Cron job '%s' running on %s", job.name, session_key)
        return await self.run_queue.enqueue_run(
            session_key,
            job.prompt,
            context={"platform": job.platform, "chat_id": job.chat_id, "cron_job_id": job.id},
        )

    async def _deliver_cron_result(self, payload: Dict[str, Any]) -> None:
        platform = payload.get("platform")
        chat_id = payload.get("chat_id")
        message = payload.get("message")
        if not message or not chat_id:
            # Webhook jobs have nothing to say in a chat
            logger.debug("Job '%s': nothing to deliver", payload.get("job_id"))
            return
        adapter = self.adapters.get(platform)
        if adapter is None:
            logger.warning("Job '%s': no adapter for platform '%s', dropping result", payload.get("job_id"), platform)
            return
        try:
            await adapter.send_message(chat_id, message)
            logger.info("Job '%s': delivered to %s:%s", payload.get("job_id"), platform, chat_id)
        except Exception as e:
            logger.error("Job '%s': delivery to %s:%s failed: %s", payload.get("job_id"), platform, chat_id, e)

    def _on_job_failed(self, payload: Dict[str, Any]) -> None:
        logger.warning("Job '%s' failed: %s", payload.get("job_id"), payload.get("error"))

    # -- observability --------------------------------------------------------

    def _setup_queue_monitor(self) -> None:
        def on_queued(e):
            if e["position"] > 0:
                logger.info("Queued %s at position %s (%s in queue)", e["session_key"], e["position"], e["queue_length"])

        def on_processing(e):
            if e["wait_time_ms"] > SLOW_WAIT_MS:
                logger.info("Processing %s after waiting %.0fms", e["session_key"], e["wait_time_ms"])

        def on_completed(e):
            logger.info("Completed %s in %.0fms", e["session_key"], e["processing_time_ms"])

        def on_failed(e):
            logger.warning("Run failed for %s: %s", e["session_key"], e["error"])

        def on_aborted(e):
            logger.info("Run aborted for %s", e["session_key"])

        def on_tool(e):
            logger.info("Tool %s used in %s", e.get("name"), e["session_key"])

        self.events.on("queued", on_queued)
        self.events.on("processing", on_processing)
        self.events.on("completed", on_completed)
        self.events.on("failed", on_failed)
        self.events.on("aborted", on_aborted)
        self.events.on("agent:tool", on_tool)


def _setup_file_logging() -> None:
    log_dir = get_clawd_home() / 'logs'
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / 'gateway.log',
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
    )
    file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    logging.getLogger().addHandler(file_handler)
    logging.getLogger().setLevel(logging.INFO)


async def start_gateway(config: Optional[GatewayConfig] = None, adapters: Optional[List[Any]] = None) -> bool:
    """
    Start the gateway and run until interrupted.

    This is the main entry point for running the gateway.
    Returns True if the gateway ran successfully, False if it failed to start.
    """
    _setup_file_logging()

    runner = GatewayRunner(config)
    for platform, adapter in adapters or []:
        runner.register_adapter(platform, adapter)

    def signal_handler():
        asyncio.create_task(runner.stop())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    success = await runner.start()
    if not success:
        return False

    await runner.wait_for_shutdown()
    return True


def main():
    """CLI entry point for the gateway."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description="Clawd Gateway - Multi-platform messaging")
    parser.add_argument("--config", "-c", help="Path to gateway config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    config = None
    if args.config:
        with open(args.config) as f:
            config = GatewayConfig.from_dict(json.load(f))

    success = asyncio.run(start_gateway(config))
    if not success:
        sys.exit(1)


if __name__ == "__main__":
    main()
