"""
Telegram platform adapter.

Uses python-telegram-bot library for:
- Receiving messages from users/groups (long polling)
- Sending responses back as MarkdownV2
- Downloading photos for the agent
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Optional, Any

try:
    from telegram import Update, Bot, Message, MessageEntity
    from telegram.ext import (
        Application,
        MessageHandler as TelegramMessageHandler,
        ContextTypes,
        filters,
    )
    from telegram.constants import ParseMode, ChatType
    TELEGRAM_AVAILABLE = True
except ImportError:
    TELEGRAM_AVAILABLE = False
    Update = Any
    Bot = Any
    Message = Any
    Application = Any
    ContextTypes = Any

from agent.engine import ImageAttachment
from gateway.commands import COMMANDS
from gateway.config import Platform, PlatformConfig
from gateway.platforms.base import (
    BasePlatformAdapter,
    MessageEvent,
    SendResult,
)

logger = logging.getLogger(__name__)


def check_telegram_requirements() -> bool:
    """Check if Telegram dependencies are available."""
    return TELEGRAM_AVAILABLE


# Matches every character that MarkdownV2 requires to be backslash-escaped
# when it appears outside a code span or fenced code block.
_MDV2_ESCAPE_RE = re.compile(r'([_*\[\]()~`>#\+\-=|{}.!\\])')


def _escape_mdv2(text: str) -> str:
    """Escape Telegram MarkdownV2 special characters with a preceding backslash."""
    return _MDV2_ESCAPE_RE.sub(r'\\\1', text)


def to_markdown_v2(content: str) -> str:
    """
    Convert standard markdown to Telegram MarkdownV2.

    Code spans and fences pass through untouched; headers and bold become
    MarkdownV2 bold, single-asterisk emphasis becomes italic, links keep
    their URL, and everything else is escaped.
    """
    if not content:
        return content

    stash: Dict[str, str] = {}

    def hold(value: str) -> str:
        token = f"\x00{len(stash)}\x00"
        stash[token] = value
        return token

    text = re.sub(r'```(?:[^\n]*\n)?[\s\S]*?```', lambda m: hold(m.group(0)), content)
    text = re.sub(r'`[^`\n]+`', lambda m: hold(m.group(0)), text)

    def link(m):
        url = m.group(2).replace('\\', '\\\\').replace(')', '\\)')
        return hold(f'[{_escape_mdv2(m.group(1))}]({url})')

    text = re.sub(r'\[([^\]]+)\]\(([^)]+)\)', link, text)

    def header(m):
        title = re.sub(r'\*\*(.+?)\*\*', r'\1', m.group(1).strip())
        return hold(f'*{_escape_mdv2(title)}*')

    text = re.sub(r'^#{1,6}\s+(.+)$', header, text, flags=re.MULTILINE)
    text = re.sub(r'\*\*(.+?)\*\*', lambda m: hold(f'*{_escape_mdv2(m.group(1))}*'), text)
    text = re.sub(r'\*([^*\n]+)\*', lambda m: hold(f'_{_escape_mdv2(m.group(1))}_'), text)

    text = _escape_mdv2(text)

    # Later tokens may wrap earlier ones, so restore newest first
    for token in reversed(list(stash)):
        text = text.replace(token, stash[token])
    return text


class TelegramAdapter(BasePlatformAdapter):
    """
    Telegram bot adapter.

    Handles:
    - Text, command and photo messages from users and groups
    - Mentions (@botname, replies to the bot) for group gating
    - MarkdownV2 replies with a plain-text fallback
    """

    # Leaves room for MarkdownV2 escaping under Telegram's 4096 limit
    MAX_MESSAGE_LENGTH = 3800
    supports_reactions = True

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.TELEGRAM)
        self._app: Optional[Application] = None
        self._bot: Optional[Bot] = None
        self._bot_id: Optional[str] = None

    async def connect(self) -> bool:
        """Connect to Telegram and start polling for updates."""
        if not TELEGRAM_AVAILABLE:
            logger.error("[%s] python-telegram-bot not installed. Run: pip install python-telegram-bot", self.name)
            return False

        if not self.config.token:
            logger.error("[%s] No bot token configured", self.name)
            return False

        try:
            self._app = Application.builder().token(self.config.token).build()
            self._bot = self._app.bot

            self._app.add_handler(TelegramMessageHandler(
                filters.TEXT | filters.PHOTO,
                self._handle_update
            ))

            await self._app.initialize()
            await self._app.start()
            await self._app.updater.start_polling(allowed_updates=Update.ALL_TYPES)

            me = await self._bot.get_me()
            self._bot_id = str(me.id)
            self.self_ids = {self._bot_id}
            if me.username:
                self.self_ids.add(me.username)

            # Register bot commands so Telegram shows a hint menu when users type /
            try:
                from telegram import BotCommand
                await self._bot.set_my_commands(
                    [BotCommand(name, desc) for name, desc in COMMANDS.items()]
                )
            except Exception as e:
                logger.warning("[%s] Could not register command menu: %s", self.name, e)

            self._running = True
            logger.info("[%s] Connected as @%s and polling for updates", self.name, me.username)
            return True

        except Exception as e:
            logger.error("[%s] Failed to connect: %s", self.name, e)
            return False

    async def disconnect(self) -> None:
        """Stop polling and disconnect."""
        if self._app:
            try:
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()
            except Exception as e:
                logger.warning("[%s] Error during disconnect: %s", self.name, e)

        self._running = False
        self._app = None
        self._bot = None
        logger.info("[%s] Disconnected", self.name)

    async def send(
        self,
        chat_id: str,
        content: str,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        """Send a message to a Telegram chat."""
        if not self._bot:
            return SendResult(success=False, error="Not connected")

        reply_id = int(reply_to) if reply_to else None
        try:
            try:
                msg = await self._bot.send_message(
                    chat_id=int(chat_id),
                    text=self.format_message(content),
                    parse_mode=ParseMode.MARKDOWN_V2,
                    reply_to_message_id=reply_id,
                )
            except Exception as md_error:
                # Markdown parsing failed, try plain text
                if "parse" not in str(md_error).lower() and "markdown" not in str(md_error).lower():
                    raise
                msg = await self._bot.send_message(
                    chat_id=int(chat_id),
                    text=content,
                    reply_to_message_id=reply_id,
                )
            return SendResult(success=True, message_id=str(msg.message_id))
        except Exception as e:
            return SendResult(success=False, error=str(e))

    async def send_typing(self, chat_id: str) -> None:
        if self._bot:
            self._start_typing_loop(chat_id, self._typing_pulse)

    async def _typing_pulse(self, chat_id: str) -> None:
        await self._bot.send_chat_action(chat_id=int(chat_id), action="typing")

    async def react(self, chat_id: str, message_id: Optional[str], emoji: str) -> None:
        if not self._bot or not message_id:
            return
        await self._bot.set_message_reaction(
            chat_id=int(chat_id), message_id=int(message_id), reaction=emoji
        )

    def format_message(self, content: str) -> str:
        return to_markdown_v2(content)

    async def _handle_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle incoming text, command and photo messages."""
        msg = update.message
        if not msg:
            return

        image = None
        if msg.photo:
            try:
                # msg.photo is a list of PhotoSize sorted by size; take the largest
                file_obj = await msg.photo[-1].get_file()
                data = await file_obj.download_as_bytearray()
                media_type = "image/png" if (file_obj.file_path or "").lower().endswith(".png") else "image/jpeg"
                image = ImageAttachment(bytes(data), media_type)
            except Exception as e:
                logger.warning("[%s] Failed to download photo: %s", self.name, e)

        await self.handle_message(self._build_message_event(msg, image))

    def _build_message_event(self, message: Message, image: Optional[ImageAttachment] = None) -> MessageEvent:
        """Build a MessageEvent from a Telegram message."""
        chat = message.chat
        user = message.from_user

        chat_type = "dm"
        if chat.type in (ChatType.GROUP, ChatType.SUPERGROUP):
            chat_type = "group"
        elif chat.type == ChatType.CHANNEL:
            chat_type = "channel"

        source = self.build_source(
            chat_id=str(chat.id),
            chat_name=chat.title or getattr(chat, "full_name", None),
            chat_type=chat_type,
            user_id=str(user.id) if user else None,
            user_name=user.full_name if user else None,
        )

        mentions = {
            text.lstrip("@")
            for text in message.parse_entities([MessageEntity.MENTION]).values()
        }
        if message.caption:
            mentions.update(
                text.lstrip("@")
                for text in message.parse_caption_entities([MessageEntity.MENTION]).values()
            )
        replied = message.reply_to_message
        if replied and replied.from_user and str(replied.from_user.id) == self._bot_id:
            mentions.add(self._bot_id)

        return self.build_event(
            text=message.text or message.caption,
            source=source,
            image=image,
            mentions=mentions,
            raw_message=message,
            message_id=message.message_id,
        )
