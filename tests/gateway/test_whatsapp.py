"""Tests for the WhatsApp bridge adapter in gateway/platforms/whatsapp.py."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from aiohttp import test_utils, web

from gateway.config import GroupConfig, PlatformConfig
from gateway.platforms.base import ConnectionState, MessageType
from gateway.platforms.whatsapp import (
    WhatsAppAdapter,
    normalize_number_list,
    normalize_whatsapp_id,
)
from gateway.system_events import SystemEventQueue


def _adapter(**overrides):
    adapter = WhatsAppAdapter(PlatformConfig(enabled=True, **overrides))
    adapter._bot_jid = "15559999@c.us"
    adapter._state = ConnectionState.READY
    adapter.system_events = SystemEventQueue()
    handler = AsyncMock()
    adapter.set_message_handler(handler)
    return adapter, handler


async def _receive(adapter, message):
    """Feed one inbound message and wait for its dispatched turn."""
    await adapter._on_message(message)
    await adapter.wait_for_pending()


def _dm(body="hello", sender="15550100@c.us", **extra):
    data = {
        "messageId": "m1",
        "chatId": sender,
        "senderId": sender,
        "senderName": "Alice",
        "body": body,
        "timestamp": 1735787040,
    }
    data.update(extra)
    return data


def _group(body="hello", **extra):
    return _dm(body, chatId="12036@g.us", isGroup=True, chatName="Family", **extra)


class TestIds:
    def test_normalize_whatsapp_id(self):
        assert normalize_whatsapp_id("whatsapp:+1 555-0100") == "15550100"
        assert normalize_whatsapp_id("15550100@c.us") == "15550100"
        assert normalize_whatsapp_id("15550100:12@s.whatsapp.net") == "15550100"
        assert normalize_whatsapp_id(None) == ""

    def test_normalize_number_list(self):
        assert normalize_number_list(["+1 555 0100", "*", "wa:42"]) == ["15550100", "*", "42"]

    def test_chat_jid(self):
        assert WhatsAppAdapter._chat_jid("user:+1 555-0100") == "15550100@c.us"
        assert WhatsAppAdapter._chat_jid("12036@g.us") == "12036@g.us"
        assert WhatsAppAdapter._chat_jid("channel:12036@g.us") == "12036@g.us"


class TestInbound:
    @pytest.mark.asyncio
    async def test_direct_message(self):
        adapter, handler = _adapter()
        await _receive(adapter, _dm())

        event = handler.await_args.args[0]
        assert event.text == "hello"
        assert event.from_id == "whatsapp:15550100"
        assert event.to == "15550100@c.us"
        assert event.from_label == "Alice (+15550100)"
        assert event.timestamp == 1735787040000

    @pytest.mark.asyncio
    async def test_own_messages_skipped(self):
        adapter, handler = _adapter()
        await _receive(adapter, _dm(fromMe=True))
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_allow_from_numbers(self):
        adapter, handler = _adapter()
        adapter.config.dm.allow_from = ["+1 555 0199"]
        await _receive(adapter, _dm())
        handler.assert_not_awaited()

        adapter.config.dm.allow_from = ["+1 555 0100"]
        await _receive(adapter, _dm())
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_group_mention_gating(self):
        adapter, handler = _adapter()
        await _receive(adapter, _group())
        assert handler.await_args.args[0].observe_only is True

        await _receive(adapter, _group("@bot hi", mentionedIds=["15559999@c.us"]))
        event = handler.await_args.args[0]
        assert event.was_mentioned is True
        assert event.observe_only is False
        assert event.history_key == "12036@g.us"

    @pytest.mark.asyncio
    async def test_group_not_listed(self):
        adapter, handler = _adapter(groups={"other@g.us": GroupConfig()})
        await _receive(adapter, _group())
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_media_placeholder(self):
        adapter, handler = _adapter()
        await _receive(adapter, _dm(
            body="", hasMedia=True, mediaType="image", mimetype="image/jpeg",
            mediaUrls=["/tmp/wa/photo.jpg"],
        ))
        event = handler.await_args.args[0]
        assert event.text == "<media:image>"
        assert event.message_type == MessageType.PHOTO
        assert event.media_urls == ["/tmp/wa/photo.jpg"]

    @pytest.mark.asyncio
    async def test_group_notification(self):
        adapter, handler = _adapter()
        await _receive(adapter, _group(body="", notificationType="add", recipients=["Bob"]))

        handler.assert_not_awaited()
        assert [e.text for e in adapter.system_events.drain()] == ["WhatsApp system: Alice added Bob in Family"]


class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_requires_running_bridge(self):
        adapter, _ = _adapter()
        result = await adapter.send("user:15550100", "hi")
        assert result.success is False
        assert result.error == "Not connected"


async def _until(predicate):
    while not predicate():
        await asyncio.sleep(0.01)


class TestConcurrentTurns:
    @pytest.mark.asyncio
    async def test_slow_chat_does_not_block_other_chats(self):
        batches = [[_dm(sender="111@c.us", messageId="a1"), _dm(sender="222@c.us", messageId="b1")]]

        async def messages(request):
            return web.json_response(batches.pop(0) if batches else [])

        app = web.Application()
        app.router.add_get("/messages", messages)

        adapter, _ = _adapter()
        release = asyncio.Event()
        handled = []

        async def handler(event):
            if event.to == "111@c.us":
                await release.wait()
            handled.append(event.to)

        adapter.set_message_handler(handler)

        async with test_utils.TestServer(app) as server:
            adapter._bridge_port = server.port
            adapter._running = True
            poll_task = asyncio.create_task(adapter._poll_messages())
            try:
                await asyncio.wait_for(_until(lambda: handled), timeout=5)
                assert handled == ["222@c.us"]

                release.set()
                await asyncio.wait_for(_until(lambda: len(handled) == 2), timeout=5)
            finally:
                adapter._running = False
                poll_task.cancel()
                await asyncio.gather(poll_task, return_exceptions=True)

        assert handled == ["222@c.us", "111@c.us"]

    @pytest.mark.asyncio
    async def test_same_chat_keeps_arrival_order(self):
        adapter, _ = _adapter()
        release = asyncio.Event()
        handled = []

        async def handler(event):
            if event.text == "first":
                await release.wait()
            handled.append(event.text)

        adapter.set_message_handler(handler)
        await adapter._on_message(_dm("first", messageId="a1"))
        await adapter._on_message(_dm("second", messageId="a2"))
        await asyncio.sleep(0.05)
        assert handled == []

        release.set()
        await adapter.wait_for_pending()
        assert handled == ["first", "second"]

    @pytest.mark.asyncio
    async def test_handler_failure_is_logged(self, caplog):
        adapter, handler = _adapter()
        handler.side_effect = RuntimeError("boom")

        with caplog.at_level("ERROR", logger="gateway.platforms.base"):
            await _receive(adapter, _dm())

        assert "handler failed: boom" in caplog.text
        assert not adapter._pending_tasks

    @pytest.mark.asyncio
    async def test_cancel_pending(self):
        adapter, _ = _adapter()
        started = asyncio.Event()

        async def handler(event):
            started.set()
            await asyncio.sleep(60)

        adapter.set_message_handler(handler)
        await adapter._on_message(_dm())
        await asyncio.wait_for(started.wait(), timeout=1)

        adapter.cancel_pending()
        await adapter.wait_for_pending()
        assert not adapter._pending_tasks
