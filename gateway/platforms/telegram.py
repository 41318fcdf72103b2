"""
Telegram platform adapter.

Uses python-telegram-bot library for:
- Receiving messages from private chats and groups
- Group admission, @mention gating and status-update system events
- Downloading inbound media with the configured size cap
- Sending responses back with MarkdownV2 (plain text fallback)
"""

import logging
import os
import re
from typing import Dict, List, Optional, Any

try:
    from telegram import Update, Bot, Message
    from telegram.ext import (
        Application,
        MessageHandler as TelegramMessageHandler,
        ContextTypes,
        filters,
    )
    from telegram.constants import ParseMode
    TELEGRAM_AVAILABLE = True
except ImportError:
    TELEGRAM_AVAILABLE = False
    Update = Any
    Bot = Any
    Message = Any
    Application = Any
    ContextTypes = Any

from gateway.config import Platform, PlatformConfig
from gateway.context import format_agent_envelope
from gateway.delivery import DeliveryTarget
from gateway.platforms.base import (
    BasePlatformAdapter,
    ConnectionState,
    MediaFetchError,
    MediaInfo,
    MessageEvent,
    MessageType,
    SendResult,
    infer_placeholder,
    save_media_bytes,
)
from gateway.policy import (
    is_sender_allowed,
    matches_command_prefix,
    resolve_group_entry,
    resolve_require_mention,
)

logger = logging.getLogger(__name__)

TELEGRAM_USER_PREFIXES = ("telegram:", "tg:", "user:")

# Telegram caption limit for media messages
MAX_CAPTION_LENGTH = 1024

_IMAGE_EXTS = (".jpg", ".jpeg", ".png", ".webp")
_VIDEO_EXTS = (".mp4", ".mov", ".webm")
_AUDIO_EXTS = (".mp3", ".m4a", ".wav")
_VOICE_EXTS = (".ogg", ".opus")


def check_telegram_requirements() -> bool:
    """Check if Telegram dependencies are available."""
    return TELEGRAM_AVAILABLE


# Matches every character that MarkdownV2 requires to be backslash-escaped
# when it appears outside a code span or fenced code block.
_MDV2_ESCAPE_RE = re.compile(r'([_*\[\]()~`>#\+\-=|{}.!\\])')


def _escape_mdv2(text: str) -> str:
    """Escape Telegram MarkdownV2 special characters with a preceding backslash."""
    return _MDV2_ESCAPE_RE.sub(r'\\\1', text)


def entity_text(text: str, offset: int, length: int) -> str:
    """Slice an entity out of message text. Telegram offsets count UTF-16 code units."""
    encoded = text.encode("utf-16-le")
    return encoded[offset * 2:(offset + length) * 2].decode("utf-16-le", errors="ignore")


def is_bot_mentioned(text: str, entities: List[Any], bot_username: Optional[str], bot_id: Optional[str]) -> bool:
    """
    True when the text addresses the bot: an @username mention, a text
    mention of the bot user, or a /command@username.
    """
    if not text:
        return False
    handle = f"@{bot_username}".lower() if bot_username else None
    for entity in entities or []:
        kind = str(getattr(entity, "type", ""))
        if kind == "text_mention":
            user = getattr(entity, "user", None)
            if user is not None and bot_id and str(user.id) == bot_id:
                return True
            continue
        if not handle or kind not in ("mention", "bot_command"):
            continue
        fragment = entity_text(text, entity.offset, entity.length).lower()
        if kind == "mention" and fragment == handle:
            return True
        if kind == "bot_command" and fragment.endswith(handle):
            return True
    if handle and not entities:
        return handle in text.lower()
    return False


def _display_name(user: Any) -> str:
    if user is None:
        return ""
    full_name = getattr(user, "full_name", None)
    if full_name:
        return full_name
    parts = [getattr(user, "first_name", None), getattr(user, "last_name", None)]
    return " ".join(p for p in parts if p) or (getattr(user, "username", None) or "")


def _media_object(message: Any):
    """(file-bearing object, content type, message type) for the message's attachment."""
    if getattr(message, "photo", None):
        return message.photo[-1], "image/jpeg", MessageType.PHOTO
    if getattr(message, "sticker", None):
        return message.sticker, "image/webp", MessageType.STICKER
    if getattr(message, "video", None):
        return message.video, message.video.mime_type or "video/mp4", MessageType.VIDEO
    if getattr(message, "animation", None):
        return message.animation, message.animation.mime_type or "video/mp4", MessageType.VIDEO
    if getattr(message, "voice", None):
        return message.voice, message.voice.mime_type or "audio/ogg", MessageType.VOICE
    if getattr(message, "audio", None):
        return message.audio, message.audio.mime_type or "audio/mpeg", MessageType.AUDIO
    if getattr(message, "document", None):
        return message.document, message.document.mime_type, MessageType.DOCUMENT
    return None, None, MessageType.TEXT


class TelegramAdapter(BasePlatformAdapter):
    """
    Telegram bot adapter.

    Handles:
    - Private chats (dm.enabled, dm.allow_from)
    - Groups and supergroups via `groups` entries keyed by chat id or "*"
    - Forum topics (thread_id on the session source)
    - Member join/leave, pins and title changes as system events
    """

    # Telegram message limits
    MAX_MESSAGE_LENGTH = 4096

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.TELEGRAM)
        self._app: Optional[Application] = None
        self._bot: Optional[Bot] = None
        self._bot_username: Optional[str] = None
        self._bot_id: Optional[str] = None

    async def connect(self) -> bool:
        """Connect to Telegram and start polling for updates."""
        if not TELEGRAM_AVAILABLE:
            print(f"[{self.name}] python-telegram-bot not installed. Run: pip install python-telegram-bot")
            return False

        if not self.config.token:
            print(f"[{self.name}] No bot token configured")
            return False

        self._set_state(ConnectionState.CONNECTING)
        try:
            self._app = Application.builder().token(self.config.token).build()
            self._bot = self._app.bot

            self._app.add_handler(TelegramMessageHandler(filters.ALL, self._handle_update))

            await self._app.initialize()
            self._bot_username = self._bot.username
            self._bot_id = str(self._bot.id)
            await self._app.start()
            await self._app.updater.start_polling(
                allowed_updates=Update.ALL_TYPES,
                error_callback=self._on_polling_error,
            )

            self._set_state(ConnectionState.READY)
            print(f"[{self.name}] Connected as @{self._bot_username} and polling for updates")
            return True

        except Exception as e:
            print(f"[{self.name}] Failed to connect: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            return False

    def _on_polling_error(self, error: Exception) -> None:
        """Network errors while polling; the updater keeps retrying."""
        logger.warning("[%s] polling error: %s", self.name, error)
        if self._state == ConnectionState.READY:
            self._set_state(ConnectionState.DEGRADED)

    async def disconnect(self) -> None:
        """Stop polling and disconnect."""
        if self._app:
            try:
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()
            except Exception as e:
                print(f"[{self.name}] Error during disconnect: {e}")

        self._set_state(ConnectionState.DISCONNECTED)
        self._app = None
        self._bot = None
        print(f"[{self.name}] Disconnected")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _handle_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if self._state == ConnectionState.DEGRADED:
            # An update got through, so polling recovered
            self._set_state(ConnectionState.READY)
        message = update.message
        if message is None:
            return
        await self._on_message(message)

    def _system_event_text(self, message: Message, chat_label: str) -> Optional[str]:
        actor = _display_name(message.from_user)
        actor_prefix = f"{actor} " if actor else ""
        if getattr(message, "new_chat_members", None):
            names = ", ".join(_display_name(m) for m in message.new_chat_members)
            return f"Telegram system: {names} joined {chat_label}"
        if getattr(message, "left_chat_member", None):
            return f"Telegram system: {_display_name(message.left_chat_member)} left {chat_label}"
        if getattr(message, "pinned_message", None):
            return f"Telegram system: {actor_prefix}pinned a message in {chat_label}"
        if getattr(message, "new_chat_title", None):
            return f"Telegram system: {actor_prefix}changed the title of {chat_label} to \"{message.new_chat_title}\""
        return None

    async def _on_message(self, message: Message) -> None:
        """Admission and normalization for one inbound Telegram message."""
        if self._state != ConnectionState.READY:
            return
        chat = message.chat
        user = message.from_user
        if user is not None and user.is_bot:
            return

        chat_type = str(chat.type)
        is_direct = chat_type == "private"
        is_group = chat_type in ("group", "supergroup")
        if not is_direct and not is_group:
            # Broadcast channels are not conversations
            return

        chat_id = str(chat.id)
        dm = self.config.dm
        group_entry = None

        if is_direct:
            if not dm.enabled:
                logger.debug("telegram: drop dm (dms disabled)")
                return
            if user is None:
                return
            if not is_sender_allowed(
                dm.allow_from, entry_id=str(user.id), name=user.username, tag=user.username, prefixes=TELEGRAM_USER_PREFIXES
            ):
                logger.debug("Blocked unauthorized telegram sender %s (not in allow_from)", user.id)
                return
        else:
            group_entry = resolve_group_entry(chat_id, self.config.groups)
            if self.config.groups and group_entry is None:
                logger.debug("Blocked telegram group %s (not in groups)", chat_id)
                return
            if group_entry is not None and not group_entry.allow:
                logger.debug("Blocked telegram group %s (allow=false)", chat_id)
                return

        chat_label = "DM" if is_direct else (chat.title or chat_id)
        system_text = self._system_event_text(message, chat_label)
        if system_text:
            self.enqueue_system_event(system_text, context_key=f"telegram:system:{chat_id}:{message.message_id}")
            return

        text = (message.text or message.caption or "").strip()
        entities = list(message.entities or message.caption_entities or [])
        media, content_type, msg_type = _media_object(message)
        if not text and media is not None:
            text = infer_placeholder(content_type)
        if not text:
            return
        if msg_type == MessageType.TEXT and text.startswith("/"):
            msg_type = MessageType.COMMAND

        was_mentioned = (not is_direct) and is_bot_mentioned(
            message.text or message.caption or "", entities, self._bot_username, self._bot_id
        )

        observe_only = False
        if is_group:
            require_mention = resolve_require_mention(
                None,
                group_entry.require_mention if group_entry else None,
                fallback=self.config.require_mention,
            )
            if require_mention and not was_mentioned:
                if matches_command_prefix(text, self.config.command_prefixes):
                    logger.debug("telegram: command prefix bypasses mention gating")
                else:
                    logger.debug("telegram: skipping group message %s (no-mention)", message.message_id)
                    observe_only = True
            if group_entry is not None and group_entry.users and not is_sender_allowed(
                group_entry.users,
                entry_id=str(user.id) if user else None,
                name=user.username if user else None,
                prefixes=TELEGRAM_USER_PREFIXES,
            ):
                logger.debug("Blocked telegram group sender %s (not in group users)", user.id if user else "?")
                observe_only = True

        user_id = str(user.id) if user else chat_id
        name = _display_name(user) or user_id
        username = user.username if user else None
        tag = f"@{username}" if username else name
        thread_id = getattr(message, "message_thread_id", None)

        source = self.build_source(
            chat_id=chat_id,
            chat_name=chat.title or (chat.full_name if hasattr(chat, "full_name") else None),
            chat_type="direct" if is_direct else "group",
            user_id=user_id,
            user_name=name,
            username=username,
            user_tag=tag,
            thread_id=str(thread_id) if thread_id and getattr(message, "is_topic_message", False) else None,
        )

        if is_direct:
            from_label = f"{name} ({tag}) id:{user_id}" if username else f"{name} id:{user_id}"
        else:
            from_label = f"{chat.title or 'Group'} id:{chat_id}"

        reply_context = None
        replied = getattr(message, "reply_to_message", None)
        if replied is not None:
            replied_text = (replied.text or replied.caption or "").strip()
            if replied_text:
                replied_from = _display_name(replied.from_user) or "unknown"
                replied_ts = int(replied.date.timestamp() * 1000) if getattr(replied, "date", None) else None
                reply_context = format_agent_envelope(
                    "Telegram",
                    replied_from,
                    replied_ts,
                    f"{replied_text}\n[telegram message id: {replied.message_id} chat: {chat_id}]",
                )

        timestamp = int(message.date.timestamp() * 1000) if message.date else None
        event = MessageEvent(
            text=text,
            message_type=msg_type,
            source=source,
            raw_message=message,
            message_id=str(message.message_id),
            timestamp=timestamp,
            media_urls=[media.file_id] if media is not None else [],
            media_types=[content_type or "unknown"] if media is not None else [],
            was_mentioned=was_mentioned,
            observe_only=observe_only,
            from_id=f"telegram:{user_id}" if is_direct else f"group:{chat_id}",
            to=f"user:{user_id}" if is_direct else f"channel:{chat_id}",
            from_label=from_label,
            history_key=None if is_direct else chat_id,
            group_subject=None if is_direct else (chat.title or chat_id),
            reply_context=reply_context,
        )
        await self.handle_message(event)

    async def resolve_media(self, event: MessageEvent) -> Optional[MediaInfo]:
        """Download the attachment through the Bot API (file URLs embed the token)."""
        message = event.raw_message
        media, content_type, _ = _media_object(message) if message is not None else (None, None, None)
        if media is None:
            return None

        max_bytes = self.config.media_max_bytes
        size = getattr(media, "file_size", None)
        if size and max_bytes and size > max_bytes:
            raise MediaFetchError(f"Media exceeds {self.config.media_max_mb}MB limit ({size} bytes)")

        try:
            file_obj = await media.get_file()
            data = await file_obj.download_as_bytearray()
        except Exception as e:
            raise MediaFetchError(f"Failed to download attachment: {e}") from e

        filename = getattr(media, "file_name", None) or (
            os.path.basename(file_obj.file_path) if getattr(file_obj, "file_path", None) else None
        )
        return save_media_bytes(bytes(data), content_type, max_bytes, filename)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    @staticmethod
    def _chat_id(target: str) -> int:
        return int(DeliveryTarget.parse(target).id)

    async def send(
        self,
        chat_id: str,
        content: str,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        """Send one text message (already chunked) to a Telegram chat."""
        if not self._bot:
            return SendResult(success=False, error="Not connected")

        try:
            target_id = self._chat_id(chat_id)
            thread_id = metadata.get("thread_id") if metadata else None
            formatted = self.format_message(content)
            kwargs = {
                "chat_id": target_id,
                "reply_to_message_id": int(reply_to) if reply_to else None,
                "message_thread_id": int(thread_id) if thread_id else None,
            }

            if len(formatted) > self.MAX_MESSAGE_LENGTH:
                # Escaping grew the chunk past the provider limit
                msg = await self._bot.send_message(text=content, parse_mode=None, **kwargs)
                return SendResult(success=True, message_id=str(msg.message_id))

            # Try Markdown first, fall back to plain text if it fails
            try:
                msg = await self._bot.send_message(text=formatted, parse_mode=ParseMode.MARKDOWN_V2, **kwargs)
            except Exception as md_error:
                if "parse" in str(md_error).lower() or "markdown" in str(md_error).lower():
                    msg = await self._bot.send_message(text=content, parse_mode=None, **kwargs)
                else:
                    raise
            return SendResult(success=True, message_id=str(msg.message_id))

        except Exception as e:
            return SendResult(success=False, error=str(e))

    async def send_media(
        self,
        chat_id: str,
        media_url: str,
        caption: Optional[str] = None,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """Send media natively: photo, video, voice, audio, else document."""
        if not self._bot:
            return SendResult(success=False, error="Not connected")

        try:
            target_id = self._chat_id(chat_id)
            thread_id = metadata.get("thread_id") if metadata else None
            is_local = os.path.exists(media_url)
            if is_local and os.path.getsize(media_url) > self.config.media_max_bytes:
                return SendResult(success=False, error=f"Media exceeds {self.config.media_max_mb}MB limit")

            lowered = media_url.lower().split("?", 1)[0]
            if lowered.endswith(_IMAGE_EXTS):
                method, field_name = self._bot.send_photo, "photo"
            elif lowered.endswith(_VIDEO_EXTS):
                method, field_name = self._bot.send_video, "video"
            elif lowered.endswith(_VOICE_EXTS):
                method, field_name = self._bot.send_voice, "voice"
            elif lowered.endswith(_AUDIO_EXTS):
                method, field_name = self._bot.send_audio, "audio"
            else:
                method, field_name = self._bot.send_document, "document"

            kwargs = {
                "chat_id": target_id,
                "caption": caption[:MAX_CAPTION_LENGTH] if caption else None,
                "reply_to_message_id": int(reply_to) if reply_to else None,
                "message_thread_id": int(thread_id) if thread_id else None,
            }
            if is_local:
                with open(media_url, "rb") as f:
                    msg = await method(**{field_name: f}, **kwargs)
            else:
                msg = await method(**{field_name: media_url}, **kwargs)
            return SendResult(success=True, message_id=str(msg.message_id))
        except Exception as e:
            return SendResult(success=False, error=str(e))

    async def send_typing(self, chat_id: str) -> None:
        """Send typing indicator."""
        if self._bot:
            try:
                await self._bot.send_chat_action(chat_id=self._chat_id(chat_id), action="typing")
            except Exception:
                pass  # Ignore typing indicator failures

    def format_message(self, content: str) -> str:
        """
        Convert standard markdown to Telegram MarkdownV2.

        Code spans and fenced blocks are set aside before escaping so their
        contents reach Telegram untouched.
        """
        if not content:
            return content

        stash: Dict[str, str] = {}

        def _keep(value: str) -> str:
            key = f"\x00K{len(stash)}\x00"
            stash[key] = value
            return key

        text = re.sub(r'```(?:[^\n]*\n)?[\s\S]*?```', lambda m: _keep(m.group(0)), content)
        text = re.sub(r'`[^`]+`', lambda m: _keep(m.group(0)), text)

        def _link(m):
            url = m.group(2).replace('\\', '\\\\').replace(')', '\\)')
            return _keep(f'[{_escape_mdv2(m.group(1))}]({url})')

        text = re.sub(r'\[([^\]]+)\]\(([^)]+)\)', _link, text)
        text = re.sub(
            r'^#{1,6}\s+(.+)$',
            lambda m: _keep("*" + _escape_mdv2(re.sub(r'[*]{2}(.+?)[*]{2}', r'\1', m.group(1).strip())) + "*"),
            text,
            flags=re.MULTILINE,
        )
        text = re.sub(r'\*\*(.+?)\*\*', lambda m: _keep(f'*{_escape_mdv2(m.group(1))}*'), text)
        text = re.sub(r'\*([^*]+)\*', lambda m: _keep(f'_{_escape_mdv2(m.group(1))}_'), text)
        text = _escape_mdv2(text)

        # Later stashes may contain earlier keys
        for key in reversed(list(stash)):
            text = text.replace(key, stash[key])
        return text
