"""
Tests for gateway/platforms/base.py.

Covers: sender/mention gating, event normalization, message splitting,
        send failures and background dispatch.
"""

import asyncio

import pytest

from agent.engine import ImageAttachment
from gateway.config import Platform, PlatformConfig
from gateway.platforms.base import (
    IMAGE_PLACEHOLDER,
    BasePlatformAdapter,
    SendError,
    SendResult,
)


class DummyAdapter(BasePlatformAdapter):
    MAX_MESSAGE_LENGTH = 20

    def __init__(self, config=None):
        super().__init__(config or PlatformConfig(enabled=True), Platform.SIGNAL)
        self.sent = []
        self.fail_on = None
        self.disconnects = 0

    async def connect(self):
        self._running = True
        return True

    async def disconnect(self):
        self.disconnects += 1

    async def send(self, chat_id, content, reply_to=None, metadata=None):
        if content == self.fail_on:
            return SendResult(success=False, error="rejected")
        self.sent.append((chat_id, content, reply_to))
        return SendResult(success=True)

    def event(self, text="hi", chat_type="dm", user_id="u1", mentions=(), image=None):
        source = self.build_source("c1", chat_type=chat_type, user_id=user_id)
        return self.build_event(text, source, image=image, mentions=mentions, message_id=7)


# =========================================================================
# Gating
# =========================================================================

class TestShouldRespond:
    def test_dm_from_anyone_by_default(self):
        adapter = DummyAdapter()
        assert adapter.should_respond(adapter.event("hello"))

    def test_empty_message_dropped(self):
        adapter = DummyAdapter()
        assert not adapter.should_respond(adapter.event("   "))

    def test_allowlist(self):
        adapter = DummyAdapter(PlatformConfig(enabled=True, allowed_senders=["u1"]))
        assert adapter.should_respond(adapter.event(user_id="u1"))
        assert not adapter.should_respond(adapter.event(user_id="u2"))

    def test_wildcard_allowlist(self):
        adapter = DummyAdapter(PlatformConfig(enabled=True, allowed_senders=["*"]))
        assert adapter.should_respond(adapter.event(user_id="anyone"))

    def test_group_requires_mention(self):
        adapter = DummyAdapter()
        adapter.self_ids = {"+15550100", "clawd"}

        assert not adapter.should_respond(adapter.event("hi all", chat_type="group"))
        assert adapter.should_respond(adapter.event("hi", chat_type="group", mentions=["+15550100"]))
        assert adapter.should_respond(adapter.event("hey @Clawd", chat_type="group"))

    def test_group_without_mention_requirement(self):
        adapter = DummyAdapter(PlatformConfig(enabled=True, require_mention=False))
        assert adapter.should_respond(adapter.event("hi all", chat_type="group"))


# =========================================================================
# Events
# =========================================================================

class TestBuildEvent:
    def test_image_only_message_gets_placeholder(self):
        adapter = DummyAdapter()
        image = ImageAttachment(b"\xff\xd8", "image/jpeg")
        event = adapter.event("", image=image)

        assert event.text == IMAGE_PLACEHOLDER
        assert event.image is image
        assert event.message_id == "7"
        assert adapter.should_respond(event)

    def test_command_parsing(self):
        adapter = DummyAdapter()
        event = adapter.event("/Status@clawd_bot now please")

        assert event.is_command()
        assert event.get_command() == "status"
        assert event.get_command_args() == "now please"
        assert adapter.event("plain").get_command() is None


# =========================================================================
# Sending
# =========================================================================

class TestSend:
    def test_short_message_is_one_chunk(self):
        assert DummyAdapter().truncate_message("short", 20) == ["short"]

    def test_split_prefers_newlines_then_spaces(self):
        adapter = DummyAdapter()
        assert adapter.truncate_message("first line\nsecond line here", 20) == ["first line", "second line here"]
        assert adapter.truncate_message("aaaa bbbb cccc dddd eeee", 10) == ["aaaa bbbb", "cccc dddd", "eeee"]
        assert adapter.truncate_message("x" * 25, 10) == ["x" * 10, "x" * 10, "x" * 5]

    @pytest.mark.asyncio
    async def test_send_message_splits_and_replies_once(self):
        adapter = DummyAdapter()
        await adapter.send_message("c1", "first line\nsecond line here", reply_to="9")

        assert adapter.sent == [("c1", "first line", "9"), ("c1", "second line here", None)]

    @pytest.mark.asyncio
    async def test_failed_chunk_raises(self):
        adapter = DummyAdapter()
        adapter.fail_on = "second line here"

        with pytest.raises(SendError, match="rejected"):
            await adapter.send_message("c1", "first line\nsecond line here")


# =========================================================================
# Dispatch and lifecycle
# =========================================================================

class TestDispatch:
    @pytest.mark.asyncio
    async def test_handle_message_returns_before_the_handler_finishes(self):
        adapter = DummyAdapter()
        release = asyncio.Event()
        seen = []

        async def handler(event):
            await release.wait()
            seen.append(event.text)

        adapter.on_message(handler)
        await adapter.handle_message(adapter.event("one"))
        await adapter.handle_message(adapter.event("two"))
        assert seen == []

        release.set()
        await asyncio.gather(*adapter._dispatch_tasks)
        assert sorted(seen) == ["one", "two"]

    @pytest.mark.asyncio
    async def test_handler_errors_are_contained(self):
        adapter = DummyAdapter()

        async def handler(event):
            raise RuntimeError("gateway bug")

        adapter.on_message(handler)
        await adapter.handle_message(adapter.event())
        await asyncio.gather(*adapter._dispatch_tasks)

    @pytest.mark.asyncio
    async def test_filtered_messages_never_reach_the_handler(self):
        adapter = DummyAdapter(PlatformConfig(enabled=True, allowed_senders=["u1"]))
        seen = []

        async def handler(event):
            seen.append(event)

        adapter.on_message(handler)
        await adapter.handle_message(adapter.event(user_id="stranger"))
        assert adapter._dispatch_tasks == set()
        assert seen == []

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        adapter = DummyAdapter()
        assert await adapter.start()
        await adapter.stop()
        await adapter.stop()

        assert adapter.disconnects == 1
        assert not adapter.is_connected

    @pytest.mark.asyncio
    async def test_typing_loop_runs_until_stopped(self):
        adapter = DummyAdapter()
        pulses = []

        async def pulse(chat_id):
            pulses.append(chat_id)

        adapter._start_typing_loop("c1", pulse, interval=0.01)
        await asyncio.sleep(0.05)
        await adapter.stop_typing("c1")
        count = len(pulses)
        await asyncio.sleep(0.03)

        assert count >= 2
        assert len(pulses) == count
