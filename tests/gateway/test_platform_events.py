"""
Tests for the Signal, iMessage and WhatsApp adapters.

No real child processes or bridges are started: payload parsing is exercised
directly and process lifecycle runs against FakeProcess.
"""

import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock

import pytest

from gateway.config import PlatformConfig
from gateway.platforms import imessage
from gateway.platforms.imessage import IMessageAdapter
from gateway.platforms.signal import SignalAdapter, _recipient_params
from gateway.platforms.whatsapp import WhatsAppAdapter


# =========================================================================
# Helpers
# =========================================================================

class FakeProcess:
    """Stands in for an asyncio subprocess; stdout/stderr are real stream readers."""

    def __init__(self, hang=False):
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin = MagicMock()
        self.stdin.drain = AsyncMock()
        self.returncode = None
        self.terminated = False
        self.killed = False
        self.hang = hang

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode

    async def communicate(self):
        if self.hang:
            await asyncio.Event().wait()
        self.returncode = 0
        return b"", b""


# =========================================================================
# Signal
# =========================================================================

@pytest.fixture()
def signal_adapter(tmp_path):
    config = PlatformConfig(enabled=True, extra={"phone_number": "+15550100", "attachments_dir": str(tmp_path)})
    return SignalAdapter(config)


class TestSignalEvents:
    def test_direct_message(self, signal_adapter):
        event = signal_adapter._build_message_event({"envelope": {
            "sourceNumber": "+15550111",
            "sourceName": "Ana",
            "dataMessage": {"message": "hello", "timestamp": 1700000000000},
        }})

        assert event.text == "hello"
        assert event.source.chat_id == "+15550111"
        assert event.source.chat_type == "dm"
        assert event.message_id == "1700000000000"

    def test_group_message_with_mention(self, signal_adapter):
        signal_adapter.self_ids = {"+15550100"}
        event = signal_adapter._build_message_event({"envelope": {
            "sourceNumber": "+15550111",
            "dataMessage": {
                "message": "￼ what's up",
                "groupInfo": {"groupId": "abc=", "groupName": "Team"},
                "mentions": [{"number": "+15550100", "start": 0, "length": 1}],
            },
        }})

        assert event.source.chat_id == "group.abc="
        assert event.source.is_group
        assert signal_adapter.is_mentioned(event)

    def test_own_and_non_data_messages_are_skipped(self, signal_adapter):
        assert signal_adapter._build_message_event({"envelope": {
            "sourceNumber": "+15550100", "dataMessage": {"message": "echo"},
        }}) is None
        assert signal_adapter._build_message_event({"envelope": {
            "sourceNumber": "+15550111", "typingMessage": {"action": "STARTED"},
        }}) is None

    def test_image_attachment_from_disk(self, signal_adapter, tmp_path):
        (tmp_path / "att1").write_bytes(b"\x89PNG")
        event = signal_adapter._build_message_event({"envelope": {
            "sourceNumber": "+15550111",
            "dataMessage": {"attachments": [{"contentType": "image/png", "id": "att1"}]},
        }})

        assert event.text == "[Image]"
        assert event.image.data == b"\x89PNG"
        assert event.image.media_type == "image/png"

    def test_recipient_params(self):
        assert _recipient_params("group.abc=") == {"groupId": "abc="}
        assert _recipient_params("+15550111") == {"recipient": ["+15550111"]}


class TestSignalLifecycle:
    @pytest.mark.asyncio
    async def test_stop_cleans_up_after_signal_cli_exits(self, signal_adapter):
        proc = FakeProcess()
        signal_adapter._process = proc
        signal_adapter._running = True
        await signal_adapter.send_typing("+15550111")
        typing = signal_adapter._typing_tasks["+15550111"]

        proc.stdout.feed_eof()
        await signal_adapter._read_stdout()
        assert not signal_adapter.is_connected

        await signal_adapter.stop()

        assert typing.cancelled()
        assert signal_adapter._typing_tasks == {}
        assert proc.terminated
        assert signal_adapter._process is None

    @pytest.mark.asyncio
    async def test_pending_requests_fail_when_signal_cli_exits(self, signal_adapter):
        proc = FakeProcess()
        signal_adapter._process = proc
        signal_adapter._running = True

        send = asyncio.create_task(signal_adapter.send("+15550111", "hi"))
        while not signal_adapter._pending:
            await asyncio.sleep(0)
        proc.stdout.feed_eof()
        await signal_adapter._read_stdout()

        result = await asyncio.wait_for(send, timeout=1)
        assert not result.success
        assert "exited" in result.error

    @pytest.mark.asyncio
    async def test_readers_return_without_a_process(self, signal_adapter):
        await signal_adapter._read_stdout()
        await signal_adapter._read_stderr()


# =========================================================================
# iMessage
# =========================================================================

class TestIMessageEvents:
    def test_group_chat_id_is_prefixed(self):
        adapter = IMessageAdapter(PlatformConfig(enabled=True, extra={"handle": "me@icloud.com"}))
        event = adapter._build_message_event({
            "sender": "+15550111", "text": "hey @me@icloud.com", "is_group": True, "chat_id": 42, "guid": "G1",
        })

        assert event.source.chat_id == "chat.42"
        assert event.message_id == "G1"
        assert adapter.is_mentioned(event)

    def test_messages_from_me_are_skipped(self):
        adapter = IMessageAdapter(PlatformConfig(enabled=True))
        assert adapter._build_message_event({"sender": "+1", "text": "x", "is_from_me": True}) is None
        assert adapter._build_message_event({"text": "no sender"}) is None

    @pytest.mark.asyncio
    async def test_send_timeout_kills_the_child(self, monkeypatch):
        proc = FakeProcess(hang=True)
        monkeypatch.setattr(imessage, "SEND_TIMEOUT", 0.05)
        monkeypatch.setattr(imessage.asyncio, "create_subprocess_exec", AsyncMock(return_value=proc))
        adapter = IMessageAdapter(PlatformConfig(enabled=True))

        result = await adapter.send("+15550111", "hi")

        assert not result.success
        assert "timed out" in result.error
        assert proc.killed

    @pytest.mark.asyncio
    async def test_send_to_group_uses_chat_id(self, monkeypatch):
        proc = FakeProcess()
        spawn = AsyncMock(return_value=proc)
        monkeypatch.setattr(imessage.asyncio, "create_subprocess_exec", spawn)
        adapter = IMessageAdapter(PlatformConfig(enabled=True))

        result = await adapter.send("chat.42", "hi")

        assert result.success
        assert spawn.call_args.args[:4] == ("imsg", "send", "--chat-id", "42")

    @pytest.mark.asyncio
    async def test_stop_after_watch_exits_reaps_the_process(self):
        proc = FakeProcess()
        adapter = IMessageAdapter(PlatformConfig(enabled=True))
        adapter._process = proc
        adapter._running = True

        proc.stdout.feed_eof()
        await adapter._read_messages()
        await adapter.stop()
        await adapter.stop()

        assert proc.terminated
        assert adapter._process is None


# =========================================================================
# WhatsApp
# =========================================================================

class TestWhatsAppEvents:
    @pytest.mark.asyncio
    async def test_inline_image_and_mentions(self):
        adapter = WhatsAppAdapter(PlatformConfig(enabled=True, extra={"external_bridge": True}))
        event = await adapter._build_message_event({
            "chatId": "1203@g.us",
            "isGroup": True,
            "senderId": "555@c.us",
            "body": "",
            "hasMedia": True,
            "mediaType": "image/jpeg",
            "mediaData": base64.b64encode(b"jpeg").decode(),
            "mentionedIds": ["999@c.us"],
            "messageId": "wamid.1",
        })

        assert event.text == "[Image]"
        assert event.image.data == b"jpeg"
        assert event.mentions == frozenset({"999@c.us"})
        assert event.source.is_group

    @pytest.mark.asyncio
    async def test_own_messages_are_skipped(self):
        adapter = WhatsAppAdapter(PlatformConfig(enabled=True))
        assert await adapter._build_message_event({"fromMe": True, "body": "x"}) is None
