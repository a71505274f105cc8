"""
iMessage platform adapter (macOS only).

Uses the ``imsg`` command line tool:
- ``imsg watch --json`` streams new messages as JSON lines
- ``imsg send --to <handle> --text <text>`` for direct chats
- ``imsg send --chat-id <id> --text <text>`` for group chats

Group chats are addressed as ``chat.<id>``; direct chats by the sender's
handle (phone number or email).
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Dict, Optional, Any

from agent.engine import ImageAttachment
from gateway.config import Platform, PlatformConfig
from gateway.platforms.base import (
    BasePlatformAdapter,
    MessageEvent,
    SendResult,
)

logger = logging.getLogger(__name__)

GROUP_PREFIX = "chat."
SEND_TIMEOUT = 30
STREAM_LIMIT = 4 * 1024 * 1024


def check_imessage_requirements(config: Optional[PlatformConfig] = None) -> bool:
    cli_path = config.extra.get("cli_path", "imsg") if config is not None else "imsg"
    return shutil.which(cli_path) is not None


class IMessageAdapter(BasePlatformAdapter):
    """
    iMessage adapter over the imsg CLI.

    Configuration (``PlatformConfig.extra``):
    - cli_path: imsg executable (default: imsg)
    - handle: Our own handle, used to detect "@handle" mentions in groups
    """

    MAX_MESSAGE_LENGTH = 10000

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.IMESSAGE)
        self.cli_path: str = config.extra.get("cli_path", "imsg")
        if config.extra.get("handle"):
            self.self_ids = {str(config.extra["handle"])}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None

    async def connect(self) -> bool:
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.cli_path, "watch", "--json", "--attachments",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            logger.error("[%s] Failed to start imsg: %s", self.name, e)
            return False

        self._reader_task = asyncio.create_task(self._read_messages())
        self._running = True
        logger.info("[%s] Watching for messages", self.name)
        return True

    async def disconnect(self) -> None:
        self._running = False
        if self._reader_task:
            self._reader_task.cancel()
            self._reader_task = None
        if self._process and self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=5)
            except asyncio.TimeoutError:
                self._process.kill()
                await self._process.wait()
        self._process = None
        logger.info("[%s] Disconnected", self.name)

    async def send(
        self,
        chat_id: str,
        content: str,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        if chat_id.startswith(GROUP_PREFIX):
            target = ["--chat-id", chat_id[len(GROUP_PREFIX):]]
        else:
            target = ["--to", chat_id]
        try:
            proc = await asyncio.create_subprocess_exec(
                self.cli_path, "send", *target, "--text", content,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return SendResult(success=False, error=str(e))
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=SEND_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return SendResult(success=False, error=f"imsg send timed out after {SEND_TIMEOUT}s")
        if proc.returncode != 0:
            return SendResult(
                success=False,
                error=f"imsg exited with code {proc.returncode}: {stderr.decode(errors='replace').strip()}",
            )
        return SendResult(success=True)

    async def _read_messages(self) -> None:
        process = self._process
        if not process or process.stdout is None:
            return
        while True:
            raw = await process.stdout.readline()
            if not raw:
                break
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                continue
            event = self._build_message_event(data)
            if event:
                await self.handle_message(event)
        logger.warning("[%s] imsg watch exited", self.name)
        self._running = False

    def _load_image(self, data: Dict[str, Any]) -> Optional[ImageAttachment]:
        for attachment in data.get("attachments") or []:
            mime = str(attachment.get("mime_type") or "").lower()
            path = attachment.get("original_path") or attachment.get("path")
            if not mime.startswith("image/") or not path:
                continue
            try:
                return ImageAttachment(Path(path).expanduser().read_bytes(), mime)
            except OSError as e:
                logger.warning("[%s] Could not read attachment %s: %s", self.name, path, e)
        return None

    def _build_message_event(self, data: Dict[str, Any]) -> Optional[MessageEvent]:
        if data.get("is_from_me"):
            return None
        sender = data.get("sender")
        if not sender:
            return None

        is_group = bool(data.get("is_group"))
        chat_id = f"{GROUP_PREFIX}{data.get('chat_id')}" if is_group else sender
        source = self.build_source(
            chat_id=chat_id,
            chat_name=data.get("chat_name"),
            chat_type="group" if is_group else "dm",
            user_id=sender,
        )
        return self.build_event(
            text=data.get("text"),
            source=source,
            image=self._load_image(data),
            raw_message=data,
            message_id=data.get("guid") or data.get("id"),
        )
