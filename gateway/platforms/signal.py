"""
Signal platform adapter.

Runs ``signal-cli -u <number> jsonRpc`` as a child process and talks
JSON-RPC over its stdin/stdout: inbound messages arrive as ``receive``
notifications, replies go out through ``send`` requests.

Group chats are addressed as ``group.<groupId>``; direct chats by the
sender's phone number.

Install signal-cli: https://github.com/AsamK/signal-cli
"""

import asyncio
import base64
import itertools
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

GROUP_PREFIX = "group."
RPC_TIMEOUT = 30
# Inline attachments make for long JSON lines
STREAM_LIMIT = 16 * 1024 * 1024
DEFAULT_ATTACHMENTS_DIR = Path.home() / ".local" / "share" / "signal-cli" / "attachments"


def check_signal_requirements(config: Optional[PlatformConfig] = None) -> bool:
    """signal-cli must be on PATH (or configured) and a phone number set."""
    cli_path = "signal-cli"
    if config is not None:
        if not config.extra.get("phone_number"):
            return False
        cli_path = config.extra.get("cli_path", cli_path)
    return shutil.which(cli_path) is not None


def _recipient_params(chat_id: str) -> Dict[str, Any]:
    if chat_id.startswith(GROUP_PREFIX):
        return {"groupId": chat_id[len(GROUP_PREFIX):]}
    return {"recipient": [chat_id]}


class SignalAdapter(BasePlatformAdapter):
    """
    Signal adapter over signal-cli JSON-RPC.

    Configuration (``PlatformConfig.extra``):
    - phone_number: Registered account number (required)
    - cli_path: signal-cli executable (default: signal-cli)
    - attachments_dir: Where signal-cli stores received attachments
    """

    MAX_MESSAGE_LENGTH = 8000

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.SIGNAL)
        self.phone_number: Optional[str] = config.extra.get("phone_number")
        self.cli_path: str = config.extra.get("cli_path", "signal-cli")
        self.attachments_dir = Path(config.extra.get("attachments_dir", DEFAULT_ATTACHMENTS_DIR))
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._ids = itertools.count(1)
        self._pending: Dict[str, asyncio.Future] = {}

    async def connect(self) -> bool:
        if not self.phone_number:
            logger.error("[%s] Signal phone number is required (SIGNAL_PHONE_NUMBER)", self.name)
            return False

        logger.info("[%s] Starting signal-cli daemon...", self.name)
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.cli_path, "-u", self.phone_number, "jsonRpc",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            logger.error("[%s] Failed to start signal-cli: %s", self.name, e)
            return False

        self.self_ids = {self.phone_number}
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._running = True
        logger.info("[%s] Connected as %s", self.name, self.phone_number)
        return True

    async def disconnect(self) -> None:
        self._running = False
        for task in (self._reader_task, self._stderr_task):
            if task:
                task.cancel()
        if self._process and self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=5)
            except asyncio.TimeoutError:
                self._process.kill()
                await self._process.wait()
        self._process = None
        self._fail_pending(ConnectionError("signal-cli stopped"))
        logger.info("[%s] Adapter stopped", self.name)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _rpc(self, method: str, params: Dict[str, Any]) -> Any:
        """Send a JSON-RPC request and wait for its response."""
        if not self._process or self._process.stdin is None:
            raise ConnectionError("signal-cli is not running")
        request_id = str(next(self._ids))
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        line = json.dumps({"jsonrpc": "2.0", "method": method, "params": params, "id": request_id})
        try:
            self._process.stdin.write(line.encode() + b"\n")
            await self._process.stdin.drain()
            return await asyncio.wait_for(future, timeout=RPC_TIMEOUT)
        finally:
            self._pending.pop(request_id, None)

    async def send(
        self,
        chat_id: str,
        content: str,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        try:
            result = await self._rpc("send", {**_recipient_params(chat_id), "message": content})
        except Exception as e:
            return SendResult(success=False, error=str(e))
        timestamp = result.get("timestamp") if isinstance(result, dict) else None
        return SendResult(success=True, message_id=str(timestamp) if timestamp else None, raw_response=result)

    async def send_typing(self, chat_id: str) -> None:
        if self._running:
            self._start_typing_loop(chat_id, self._typing_pulse, interval=10.0)

    async def _typing_pulse(self, chat_id: str) -> None:
        await self._rpc("sendTyping", _recipient_params(chat_id))

    async def stop_typing(self, chat_id: str) -> None:
        was_typing = str(chat_id) in self._typing_tasks
        await super().stop_typing(chat_id)
        if was_typing and self._running:
            try:
                await self._rpc("sendTyping", {**_recipient_params(chat_id), "stop": True})
            except Exception as e:
                logger.debug("[%s] stop typing failed: %s", self.name, e)

    async def _read_stdout(self) -> None:
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

            if "id" in data and ("result" in data or "error" in data):
                future = self._pending.get(str(data["id"]))
                if future and not future.done():
                    if data.get("error"):
                        future.set_exception(RuntimeError(data["error"].get("message", "signal-cli error")))
                    else:
                        future.set_result(data.get("result"))
            elif data.get("method") == "receive":
                event = self._build_message_event(data.get("params") or {})
                if event:
                    await self.handle_message(event)

        logger.warning("[%s] signal-cli exited (code %s)", self.name, process.returncode)
        self._running = False
        self._fail_pending(ConnectionError("signal-cli exited"))

    async def _read_stderr(self) -> None:
        process = self._process
        if not process or process.stderr is None:
            return
        while True:
            raw = await process.stderr.readline()
            if not raw:
                break
            msg = raw.decode(errors="replace").strip()
            if msg and "DEBUG" not in msg:
                logger.warning("[%s] %s", self.name, msg)

    def _load_attachment(self, attachment: Dict[str, Any]) -> Optional[ImageAttachment]:
        content_type = str(attachment.get("contentType") or "").lower()
        if not content_type.startswith("image/"):
            return None
        try:
            if attachment.get("data"):
                return ImageAttachment(base64.b64decode(attachment["data"]), content_type)
            if attachment.get("id"):
                path = self.attachments_dir / attachment["id"]
                return ImageAttachment(path.read_bytes(), content_type)
        except (OSError, ValueError) as e:
            logger.warning("[%s] Could not load image attachment: %s", self.name, e)
        return None

    def _build_message_event(self, params: Dict[str, Any]) -> Optional[MessageEvent]:
        """Build a MessageEvent from a ``receive`` notification."""
        envelope = params.get("envelope") or {}
        sender = envelope.get("sourceNumber") or envelope.get("source")
        if not sender or sender == self.phone_number:
            return None

        data_message = envelope.get("dataMessage")
        if not data_message:
            return None

        image = None
        for attachment in data_message.get("attachments") or []:
            image = self._load_attachment(attachment)
            if image:
                logger.info("[%s] Image attachment received, %d bytes", self.name, len(image.data))
                break

        group = data_message.get("groupInfo")
        if group:
            chat_id = f"{GROUP_PREFIX}{group.get('groupId')}"
        else:
            chat_id = sender

        source = self.build_source(
            chat_id=chat_id,
            chat_name=group.get("groupName") if group else envelope.get("sourceName"),
            chat_type="group" if group else "dm",
            user_id=sender,
            user_name=envelope.get("sourceName"),
        )
        mentions = [m.get("number") for m in data_message.get("mentions") or []]

        return self.build_event(
            text=data_message.get("message"),
            source=source,
            image=image,
            mentions=mentions,
            raw_message=envelope,
            message_id=data_message.get("timestamp") or envelope.get("timestamp"),
        )
