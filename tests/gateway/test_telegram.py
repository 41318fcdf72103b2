"""
Tests for the Telegram adapter in gateway/platforms/telegram.py.

Covers: mention detection (UTF-16 entity offsets), MarkdownV2 formatting,
private/group admission, system events, media size caps and send fallback.

Note: python-telegram-bot may not be installed in the test environment.
We mock the telegram module at import time to avoid collection errors.
"""

import sys
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from gateway.config import GroupConfig, PlatformConfig
from gateway.platforms.base import ConnectionState, MediaFetchError, MessageType
from gateway.system_events import SystemEventQueue


# ---------------------------------------------------------------------------
# Mock the telegram package if it's not installed
# ---------------------------------------------------------------------------

def _ensure_telegram_mock():
    """Install mock telegram modules so TelegramAdapter can be imported."""
    if "telegram" in sys.modules and hasattr(sys.modules["telegram"], "__file__"):
        return

    telegram_mod = MagicMock()
    telegram_mod.ext.ContextTypes.DEFAULT_TYPE = type(None)
    telegram_mod.constants.ParseMode.MARKDOWN_V2 = "MarkdownV2"

    for name in ("telegram", "telegram.ext", "telegram.constants"):
        sys.modules.setdefault(name, telegram_mod)


_ensure_telegram_mock()

from gateway.platforms.telegram import (  # noqa: E402
    TelegramAdapter,
    _escape_mdv2,
    entity_text,
    is_bot_mentioned,
)


BOT_USERNAME = "relaybot"
BOT_ID = "4242"


# ---------------------------------------------------------------------------
# Helpers to build mock Telegram objects
# ---------------------------------------------------------------------------

def _entity(kind, offset, length, user=None):
    return SimpleNamespace(type=kind, offset=offset, length=length, user=user)


def _user(user_id=7, username="alice", full_name="Alice Smith", is_bot=False):
    return SimpleNamespace(id=user_id, username=username, full_name=full_name, is_bot=is_bot)


def _chat(chat_id=7, kind="private", title=None):
    return SimpleNamespace(id=chat_id, type=kind, title=title, full_name=None)


def _message(text="hello", chat=None, user=None, entities=None, message_id=100, **extra):
    fields = dict(
        message_id=message_id,
        chat=chat or _chat(),
        from_user=user if user is not None else _user(),
        text=text,
        caption=None,
        entities=entities or [],
        caption_entities=[],
        date=datetime(2025, 1, 2, 3, 4, tzinfo=timezone.utc),
        reply_to_message=None,
    )
    fields.update(extra)
    return SimpleNamespace(**fields)


def _adapter(**overrides):
    adapter = TelegramAdapter(PlatformConfig(enabled=True, token="tok", **overrides))
    adapter._bot_username = BOT_USERNAME
    adapter._bot_id = BOT_ID
    adapter._state = ConnectionState.READY
    adapter.system_events = SystemEventQueue()
    handler = AsyncMock()
    adapter.set_message_handler(handler)
    return adapter, handler


async def _receive(adapter, message):
    """Feed one inbound message and wait for its dispatched turn."""
    await adapter._on_message(message)
    await adapter.wait_for_pending()


GROUP = _chat(chat_id=-100123, kind="supergroup", title="Dev Chat")


# ---------------------------------------------------------------------------
# Mentions and formatting
# ---------------------------------------------------------------------------

class TestMentions:
    def test_entity_offsets_are_utf16(self):
        text = "😀 @relaybot hi"
        # The emoji is two UTF-16 code units
        assert entity_text(text, 3, 9) == "@relaybot"

    def test_mention_entity(self):
        text = "hey @RelayBot"
        assert is_bot_mentioned(text, [_entity("mention", 4, 9)], BOT_USERNAME, BOT_ID) is True
        assert is_bot_mentioned(text, [_entity("mention", 4, 9)], "otherbot", BOT_ID) is False

    def test_text_mention(self):
        entity = _entity("text_mention", 0, 5, user=SimpleNamespace(id=4242))
        assert is_bot_mentioned("Relay look", [entity], BOT_USERNAME, BOT_ID) is True

    def test_command_addressed_to_bot(self):
        text = "/status@relaybot"
        assert is_bot_mentioned(text, [_entity("bot_command", 0, len(text))], BOT_USERNAME, BOT_ID) is True

    def test_plain_text_without_entities(self):
        assert is_bot_mentioned("ping @relaybot", [], BOT_USERNAME, BOT_ID) is True
        assert is_bot_mentioned("ping", [], BOT_USERNAME, BOT_ID) is False
        assert is_bot_mentioned("", [], BOT_USERNAME, BOT_ID) is False


class TestFormatting:
    def test_escape(self):
        assert _escape_mdv2("a.b!") == "a\\.b\\!"

    def test_format_message(self):
        adapter, _ = _adapter()
        assert adapter.format_message("**bold** v1.0") == "*bold* v1\\.0"
        assert adapter.format_message("run `x.y()` now.") == "run `x.y()` now\\."
        assert adapter.format_message("") == ""


# ---------------------------------------------------------------------------
# Inbound admission
# ---------------------------------------------------------------------------

class TestPrivateChats:
    @pytest.mark.asyncio
    async def test_private_message(self):
        adapter, handler = _adapter()
        await _receive(adapter, _message("  hi  "))

        event = handler.await_args.args[0]
        assert event.text == "hi"
        assert event.from_id == "telegram:7"
        assert event.to == "user:7"
        assert event.from_label == "Alice Smith (@alice) id:7"
        assert event.history_key is None
        assert event.timestamp == int(datetime(2025, 1, 2, 3, 4, tzinfo=timezone.utc).timestamp() * 1000)

    @pytest.mark.asyncio
    async def test_allow_from_accepts_prefixed_ids(self):
        adapter, handler = _adapter()
        adapter.config.dm.allow_from = ["tg:8"]
        await _receive(adapter, _message())
        handler.assert_not_awaited()

        await _receive(adapter, _message(user=_user(user_id=8, username="bob")))
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bots_and_channels_ignored(self):
        adapter, handler = _adapter()
        await _receive(adapter, _message(user=_user(is_bot=True)))
        await _receive(adapter, _message(chat=_chat(kind="channel")))
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_commands_typed(self):
        adapter, handler = _adapter()
        await _receive(adapter, _message("/reset"))
        assert handler.await_args.args[0].message_type == MessageType.COMMAND

    @pytest.mark.asyncio
    async def test_photo_placeholder(self):
        adapter, handler = _adapter()
        photo = SimpleNamespace(file_id="file-1", file_size=10)
        await _receive(adapter, _message(text=None, photo=[photo]))

        event = handler.await_args.args[0]
        assert event.text == "<media:image>"
        assert event.message_type == MessageType.PHOTO
        assert event.media_urls == ["file-1"]

    @pytest.mark.asyncio
    async def test_reply_context(self):
        adapter, handler = _adapter()
        replied = SimpleNamespace(
            text="earlier", caption=None, from_user=_user(full_name="Bob"),
            date=None, message_id=99,
        )
        await _receive(adapter, _message(reply_to_message=replied))
        context = handler.await_args.args[0].reply_context
        assert context.startswith("[Telegram Bob] earlier")
        assert "[telegram message id: 99 chat: 7]" in context


class TestGroups:
    @pytest.mark.asyncio
    async def test_unmentioned_group_message_observed(self):
        adapter, handler = _adapter()
        await _receive(adapter, _message(chat=GROUP))

        event = handler.await_args.args[0]
        assert event.observe_only is True
        assert event.history_key == "-100123"
        assert event.from_id == "group:-100123"
        assert event.from_label == "Dev Chat id:-100123"

    @pytest.mark.asyncio
    async def test_mentioned_group_message_answered(self):
        adapter, handler = _adapter()
        message = _message("@relaybot hi", chat=GROUP, entities=[_entity("mention", 0, 9)])
        await _receive(adapter, message)

        event = handler.await_args.args[0]
        assert event.was_mentioned is True
        assert event.observe_only is False

    @pytest.mark.asyncio
    async def test_group_entries(self):
        adapter, handler = _adapter(groups={"-100999": GroupConfig()})
        await _receive(adapter, _message(chat=GROUP))
        handler.assert_not_awaited()

        adapter.config.groups = {"*": GroupConfig(require_mention=False)}
        await _receive(adapter, _message(chat=GROUP))
        assert handler.await_args.args[0].observe_only is False

    @pytest.mark.asyncio
    async def test_disallowed_group(self):
        adapter, handler = _adapter(groups={"-100123": GroupConfig(allow=False)})
        await _receive(adapter, _message(chat=GROUP))
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_member_join_is_system_event(self):
        adapter, handler = _adapter()
        message = _message(text=None, chat=GROUP, new_chat_members=[_user(full_name="Carol")])
        await _receive(adapter, message)

        handler.assert_not_awaited()
        assert [e.text for e in adapter.system_events.drain()] == ["Telegram system: Carol joined Dev Chat"]


# ---------------------------------------------------------------------------
# Media and outbound
# ---------------------------------------------------------------------------

class TestResolveMedia:
    @pytest.mark.asyncio
    async def test_oversized_media_rejected(self):
        adapter, handler = _adapter(media_max_mb=1)
        document = SimpleNamespace(file_size=5 * 1024 * 1024, mime_type="application/pdf", get_file=AsyncMock())
        await _receive(adapter, _message(text=None, document=document))
        event = handler.await_args.args[0]

        with pytest.raises(MediaFetchError):
            await adapter.resolve_media(event)
        document.get_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_media(self):
        adapter, handler = _adapter()
        await _receive(adapter, _message())
        assert await adapter.resolve_media(handler.await_args.args[0]) is None


class TestSend:
    @pytest.mark.asyncio
    async def test_not_connected(self):
        adapter, _ = _adapter()
        result = await adapter.send("user:7", "hi")
        assert result.success is False

    @pytest.mark.asyncio
    async def test_plain_text_fallback_on_parse_error(self):
        adapter, _ = _adapter()
        bot = MagicMock()
        bot.send_message = AsyncMock(side_effect=[
            Exception("Can't parse entities"),
            SimpleNamespace(message_id=55),
        ])
        adapter._bot = bot

        result = await adapter.send("user:7", "v1.0", reply_to="12")
        assert result.success is True
        assert result.message_id == "55"
        fallback = bot.send_message.await_args_list[1].kwargs
        assert fallback["text"] == "v1.0"
        assert fallback["parse_mode"] is None
        assert fallback["chat_id"] == 7
        assert fallback["reply_to_message_id"] == 12

    @pytest.mark.asyncio
    async def test_topic_thread_id_on_text_and_media(self):
        adapter, _ = _adapter()
        bot = MagicMock()
        bot.send_message = AsyncMock(return_value=SimpleNamespace(message_id=60))
        bot.send_photo = AsyncMock(return_value=SimpleNamespace(message_id=61))
        adapter._bot = bot

        await adapter.send("group:-100123", "hi", metadata={"thread_id": "5"})
        result = await adapter.send_media(
            "group:-100123", "https://cdn.example/p.png", caption="look", metadata={"thread_id": "5"},
        )

        assert result.success is True
        assert bot.send_message.await_args.kwargs["message_thread_id"] == 5
        photo_kwargs = bot.send_photo.await_args.kwargs
        assert photo_kwargs["message_thread_id"] == 5
        assert photo_kwargs["photo"] == "https://cdn.example/p.png"
        assert photo_kwargs["chat_id"] == -100123
