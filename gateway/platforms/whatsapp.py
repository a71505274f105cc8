"""
WhatsApp platform adapter.

There is no official bot API for personal WhatsApp accounts, so this adapter
drives a small Node.js bridge (whatsapp-web.js or Baileys based) over HTTP:

    GET  /health     bridge status, {"status": ..., "me": "<own id>"}
    GET  /messages   drain inbound messages received since the last call
    POST /send       {"chatId", "message", "replyTo"?}
    POST /typing     {"chatId"}
    POST /react      {"chatId", "messageId", "emoji"}
"""

import asyncio
import base64
import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Dict, Optional, Any

import aiohttp

from agent.engine import ImageAttachment
from gateway.config import Platform, PlatformConfig, get_clawd_home
from gateway.platforms.base import (
    BasePlatformAdapter,
    MessageEvent,
    SendResult,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
BRIDGE_STARTUP_SECONDS = 15


def check_whatsapp_requirements() -> bool:
    """
    Check if WhatsApp dependencies are available.

    WhatsApp requires a Node.js bridge.
    """
    try:
        result = subprocess.run(
            ["node", "--version"],
            capture_output=True,
            text=True,
            timeout=5
        )
        return result.returncode == 0
    except Exception:
        return False


class WhatsAppAdapter(BasePlatformAdapter):
    """
    WhatsApp adapter backed by a local HTTP bridge.

    Configuration (``PlatformConfig.extra``):
    - bridge_script: Path to the Node.js bridge script
    - bridge_port: Port for HTTP communication (default: 3000)
    - session_path: Where the bridge keeps WhatsApp session data
    - external_bridge: True if the bridge is managed elsewhere (don't spawn it)
    """

    MAX_MESSAGE_LENGTH = 65536
    supports_reactions = True

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.WHATSAPP)
        self._bridge_process: Optional[subprocess.Popen] = None
        self._bridge_port: int = int(config.extra.get("bridge_port", 3000))
        self._bridge_script = Path(config.extra.get(
            "bridge_script",
            get_clawd_home() / "whatsapp-bridge" / "bridge.js",
        ))
        self._session_path = Path(config.extra.get(
            "session_path",
            get_clawd_home() / "whatsapp" / "session",
        ))
        self._external_bridge = bool(config.extra.get("external_bridge", False))
        self._http: Optional[aiohttp.ClientSession] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def _base_url(self) -> str:
        return f"http://localhost:{self._bridge_port}"

    async def connect(self) -> bool:
        """
        Start the WhatsApp bridge.

        Launches the Node.js bridge process (unless external) and waits for
        its health check to pass.
        """
        if not self._external_bridge:
            if not self._bridge_script.exists():
                logger.warning("[%s] Bridge script not found: %s", self.name, self._bridge_script)
                return False
            self._session_path.mkdir(parents=True, exist_ok=True)
            # Own process group so child node processes die with it
            self._bridge_process = subprocess.Popen(
                [
                    "node",
                    str(self._bridge_script),
                    "--port", str(self._bridge_port),
                    "--session", str(self._session_path),
                ],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                preexec_fn=os.setsid,
            )

        self._http = aiohttp.ClientSession()
        for _ in range(BRIDGE_STARTUP_SECONDS):
            await asyncio.sleep(1)
            if self._bridge_process and self._bridge_process.poll() is not None:
                logger.error("[%s] Bridge process died (exit code %s)", self.name, self._bridge_process.returncode)
                await self._close_http()
                return False
            try:
                async with self._http.get(
                    f"{self._base_url}/health",
                    timeout=aiohttp.ClientTimeout(total=2)
                ) as resp:
                    if resp.status == 200:
                        data = await resp.json()
                        if data.get("me"):
                            self.self_ids = {str(data["me"])}
                        logger.info("[%s] Bridge ready (status: %s)", self.name, data.get("status", "?"))
                        break
            except (aiohttp.ClientError, asyncio.TimeoutError):
                continue
        else:
            logger.error("[%s] Bridge did not become ready in %ss", self.name, BRIDGE_STARTUP_SECONDS)
            await self.disconnect()
            return False

        self._running = True
        self._poll_task = asyncio.create_task(self._poll_messages())
        logger.info("[%s] Bridge started on port %s", self.name, self._bridge_port)
        return True

    async def _close_http(self) -> None:
        if self._http:
            await self._http.close()
            self._http = None

    async def disconnect(self) -> None:
        """Stop polling and the bridge process."""
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._bridge_process:
            try:
                os.killpg(os.getpgid(self._bridge_process.pid), signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                self._bridge_process.terminate()
            await asyncio.sleep(1)
            if self._bridge_process.poll() is None:
                self._bridge_process.kill()
            self._bridge_process = None

        await self._close_http()
        logger.info("[%s] Disconnected", self.name)

    async def _post(self, path: str, payload: Dict[str, Any], timeout: float = 30) -> Dict[str, Any]:
        async with self._http.post(
            f"{self._base_url}{path}",
            json=payload,
            timeout=aiohttp.ClientTimeout(total=timeout)
        ) as resp:
            if resp.status != 200:
                raise RuntimeError(f"bridge {path} returned {resp.status}: {await resp.text()}")
            return await resp.json()

    async def send(
        self,
        chat_id: str,
        content: str,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        """Send a message via the WhatsApp bridge."""
        if not self._running or not self._http:
            return SendResult(success=False, error="Not connected")

        payload = {"chatId": chat_id, "message": content}
        if reply_to:
            payload["replyTo"] = reply_to
        try:
            data = await self._post("/send", payload)
            return SendResult(success=True, message_id=data.get("messageId"), raw_response=data)
        except Exception as e:
            return SendResult(success=False, error=str(e))

    async def send_typing(self, chat_id: str) -> None:
        if self._running:
            self._start_typing_loop(chat_id, self._typing_pulse)

    async def _typing_pulse(self, chat_id: str) -> None:
        await self._post("/typing", {"chatId": chat_id}, timeout=5)

    async def react(self, chat_id: str, message_id: Optional[str], emoji: str) -> None:
        if not self._running or not message_id:
            return
        await self._post("/react", {"chatId": chat_id, "messageId": message_id, "emoji": emoji}, timeout=5)

    async def _poll_messages(self) -> None:
        """Poll the bridge for incoming messages."""
        while self._running:
            try:
                async with self._http.get(
                    f"{self._base_url}/messages",
                    timeout=aiohttp.ClientTimeout(total=30)
                ) as resp:
                    if resp.status == 200:
                        for msg_data in await resp.json():
                            event = await self._build_message_event(msg_data)
                            if event:
                                await self.handle_message(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("[%s] Poll error: %s", self.name, e)
                await asyncio.sleep(5)

            await asyncio.sleep(POLL_INTERVAL)

    async def _fetch_image(self, data: Dict[str, Any]) -> Optional[ImageAttachment]:
        media_type = data.get("mediaType") or data.get("mimetype") or ""
        if not data.get("hasMedia") or not media_type.startswith("image"):
            return None
        try:
            if data.get("mediaData"):
                return ImageAttachment(base64.b64decode(data["mediaData"]), media_type)
            for url in data.get("mediaUrls", []):
                if url.startswith(("http://", "https://")):
                    async with self._http.get(url, timeout=aiohttp.ClientTimeout(total=30)) as resp:
                        resp.raise_for_status()
                        return ImageAttachment(await resp.read(), media_type)
        except Exception as e:
            logger.warning("[%s] Failed to fetch image: %s", self.name, e)
        return None

    async def _build_message_event(self, data: Dict[str, Any]) -> Optional[MessageEvent]:
        """Build a MessageEvent from bridge message data."""
        if data.get("fromMe"):
            return None
        try:
            source = self.build_source(
                chat_id=data.get("chatId", ""),
                chat_name=data.get("chatName"),
                chat_type="group" if data.get("isGroup") else "dm",
                user_id=data.get("senderId"),
                user_name=data.get("senderName"),
            )
            return self.build_event(
                text=data.get("body", ""),
                source=source,
                image=await self._fetch_image(data),
                mentions=data.get("mentionedIds", []),
                raw_message=data,
                message_id=data.get("messageId"),
            )
        except Exception as e:
            logger.warning("[%s] Error building event: %s", self.name, e)
            return None
