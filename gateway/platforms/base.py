"""
Base platform adapter interface.

All platform adapters (WhatsApp, iMessage, Telegram, Signal) inherit from
this and implement connect/disconnect/send. Everything else (gating,
dispatch to the gateway, typing loops, message splitting) lives here.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any, Callable, Awaitable, Set

from agent.engine import ImageAttachment
from gateway.config import Platform, PlatformConfig
from gateway.session import SessionSource, build_session_key

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "[Image]"


@dataclass(frozen=True)
class MessageEvent:
    """
    Incoming message from a platform.

    Normalized representation that all adapters produce.
    """
    text: str
    source: SessionSource

    # Media attachment (first image only)
    image: Optional[ImageAttachment] = None

    # Ids/handles mentioned in the message, as the platform reports them
    mentions: frozenset = frozenset()

    # Original platform data, passed through untouched (reactions, replies)
    raw_message: Any = None
    message_id: Optional[str] = None

    timestamp: datetime = field(default_factory=datetime.now)

    def is_command(self) -> bool:
        """Check if this is a command message (e.g., /new, /reset)."""
        return self.text.startswith("/")

    def get_command(self) -> Optional[str]:
        """Extract command name if this is a command message."""
        if not self.is_command():
            return None
        parts = self.text.split(maxsplit=1)
        if not parts:
            return None
        # Telegram appends the bot name in groups: /status@my_bot
        return parts[0][1:].split("@", 1)[0].lower()

    def get_command_args(self) -> str:
        """Get the arguments after a command."""
        if not self.is_command():
            return self.text
        parts = self.text.split(maxsplit=1)
        return parts[1] if len(parts) > 1 else ""


@dataclass
class SendResult:
    """Result of sending a message."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    raw_response: Any = None


class SendError(RuntimeError):
    """A reply could not be delivered."""


# Type for message handlers
MessageHandler = Callable[[MessageEvent], Awaitable[None]]


class BasePlatformAdapter(ABC):
    """
    Base class for platform adapters.

    Subclasses implement platform-specific logic for:
    - Connecting and receiving messages (``connect`` / ``disconnect``)
    - Sending a single chunk (``send``)
    - Optionally typing indicators and reactions
    """

    # Longest single message the platform accepts
    MAX_MESSAGE_LENGTH = 4096
    supports_reactions = False

    def __init__(self, config: PlatformConfig, platform: Platform):
        self.config = config
        self.platform = platform
        self._message_handler: Optional[MessageHandler] = None
        self._running = False
        self._stopped = False
        self._dispatch_tasks: Set[asyncio.Task] = set()
        self._typing_tasks: Dict[str, asyncio.Task] = {}
        # Ids/handles that count as "mentioning us"; filled in by connect()
        self.self_ids: Set[str] = set()

    @property
    def name(self) -> str:
        """Human-readable name for this adapter."""
        return self.platform.value.title()

    @property
    def is_connected(self) -> bool:
        return self._running

    def on_message(self, handler: MessageHandler) -> None:
        """
        Set the handler for incoming messages.

        The handler receives every MessageEvent that passes ``should_respond``
        and is responsible for replying.
        """
        self._message_handler = handler

    def generate_session_key(self, agent_id: str, platform: Any, event: MessageEvent) -> str:
        return build_session_key(agent_id, platform or self.platform, event.source)

    # -- lifecycle ------------------------------------------------------------

    @abstractmethod
    async def connect(self) -> bool:
        """
        Connect to the platform and start receiving messages.

        Returns True if connection was successful.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the platform."""

    async def start(self) -> bool:
        if self._running:
            return True
        self._stopped = False
        return await self.connect()

    async def stop(self) -> None:
        """
        Disconnect and cancel everything the adapter started.

        Runs even when the connection already dropped on its own (a reader
        saw EOF). Safe to call repeatedly during shutdown.
        """
        if self._stopped:
            return
        self._stopped = True
        for chat_id in list(self._typing_tasks):
            await self.stop_typing(chat_id)
        try:
            await self.disconnect()
        finally:
            self._running = False
        pending = list(self._dispatch_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- outbound -------------------------------------------------------------

    @abstractmethod
    async def send(
        self,
        chat_id: str,
        content: str,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        """
        Send one message (already within MAX_MESSAGE_LENGTH) to a chat.

        Args:
            chat_id: The chat/channel ID to send to
            content: Message content (may be markdown)
            reply_to: Optional message ID to reply to
            metadata: Additional platform-specific options

        Returns:
            SendResult with success status and message ID
        """

    async def send_message(self, chat_id: str, text: str, reply_to: Optional[str] = None) -> None:
        """
        Deliver a reply, split into as many messages as the platform needs.

        Raises:
            SendError: any chunk failed to send
        """
        for i, chunk in enumerate(self.truncate_message(text, self.MAX_MESSAGE_LENGTH)):
            result = await self.send(chat_id, chunk, reply_to=reply_to if i == 0 else None)
            if not result.success:
                raise SendError(f"[{self.name}] send to {chat_id} failed: {result.error}")

    async def send_typing(self, chat_id: str) -> None:
        """
        Show a typing indicator until ``stop_typing``.

        Override in subclasses if the platform supports it.
        """

    async def stop_typing(self, chat_id: str) -> None:
        task = self._typing_tasks.pop(str(chat_id), None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def react(self, chat_id: str, message_id: Optional[str], emoji: str) -> None:
        """React to a message. No-op unless the platform supports reactions."""

    def _start_typing_loop(
        self,
        chat_id: str,
        pulse: Callable[[str], Awaitable[None]],
        interval: float = 4.0,
    ) -> None:
        """
        Keep calling *pulse* until ``stop_typing``.

        Telegram/WhatsApp typing status expires after ~5 seconds, so we refresh every 4.
        """
        chat_id = str(chat_id)
        if chat_id in self._typing_tasks:
            return

        async def _keep_typing():
            while True:
                try:
                    await pulse(chat_id)
                except Exception as e:
                    logger.debug("[%s] typing indicator failed: %s", self.name, e)
                await asyncio.sleep(interval)

        self._typing_tasks[chat_id] = asyncio.create_task(_keep_typing())

    # -- inbound --------------------------------------------------------------

    def is_mentioned(self, event: MessageEvent) -> bool:
        if event.mentions & self.self_ids:
            return True
        text = event.text.lower()
        return any(f"@{handle.lower()}" in text for handle in self.self_ids if handle)

    def should_respond(self, event: MessageEvent) -> bool:
        """
        Decide whether the agent should see this message.

        Drops empty messages, senders outside the allowlist, and group
        messages that don't mention us when ``require_mention`` is set.
        """
        if not event.text.strip() and event.image is None:
            return False

        allowed = self.config.allowed_senders
        if allowed and str(event.source.user_id) not in allowed and "*" not in allowed:
            logger.debug("[%s] ignoring sender %s (not in allowlist)", self.name, event.source.user_id)
            return False

        if event.source.is_group and self.config.require_mention and not self.is_mentioned(event):
            return False

        return True

    async def handle_message(self, event: MessageEvent) -> None:
        """
        Dispatch an incoming message to the gateway in the background.

        Returns immediately so the platform's receive loop keeps reading
        while earlier messages are still queued or running.
        """
        if not self._message_handler or not self.should_respond(event):
            return
        task = asyncio.create_task(self._dispatch(event))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(self, event: MessageEvent) -> None:
        try:
            await self._message_handler(event)
        except Exception as e:
            logger.error("[%s] Error handling message: %s", self.name, e, exc_info=True)

    def build_source(
        self,
        chat_id: str,
        chat_name: Optional[str] = None,
        chat_type: str = "dm",
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> SessionSource:
        """Helper to build a SessionSource for this platform."""
        return SessionSource(
            platform=self.platform,
            chat_id=str(chat_id),
            chat_name=chat_name,
            chat_type=chat_type,
            user_id=str(user_id) if user_id else None,
            user_name=user_name,
        )

    def build_event(
        self,
        text: Optional[str],
        source: SessionSource,
        image: Optional[ImageAttachment] = None,
        mentions=(),
        raw_message: Any = None,
        message_id: Optional[str] = None,
    ) -> MessageEvent:
        """Normalize platform fields into a MessageEvent; image-only messages get a placeholder text."""
        text = (text or "").strip()
        if not text and image is not None:
            text = IMAGE_PLACEHOLDER
        return MessageEvent(
            text=text,
            source=source,
            image=image,
            mentions=frozenset(str(m) for m in mentions if m),
            raw_message=raw_message,
            message_id=str(message_id) if message_id is not None else None,
        )

    def format_message(self, content: str) -> str:
        """
        Format a message for this platform.

        Override in subclasses to handle platform-specific formatting
        (e.g., Telegram MarkdownV2).
        """
        return content

    def truncate_message(self, content: str, max_length: int = 4096) -> List[str]:
        """
        Split a long message into chunks.

        Prefers newline boundaries, then spaces, then a hard split.
        """
        if len(content) <= max_length:
            return [content]

        chunks = []
        while content:
            if len(content) <= max_length:
                chunks.append(content)
                break

            split_idx = content.rfind("\n", 0, max_length)
            if split_idx <= 0:
                split_idx = content.rfind(" ", 0, max_length)
            if split_idx <= 0:
                split_idx = max_length

            chunks.append(content[:split_idx])
            content = content[split_idx:].lstrip()

        return chunks
