"""
Base platform adapter interface.

All platform adapters (Telegram, Discord, WhatsApp) inherit from this
and implement the required methods. An adapter owns everything that depends
on the provider's native shapes: admission, mention detection, system events
and media download. It hands the runner a provider-neutral `MessageEvent`.
"""

import asyncio
import logging
import mimetypes
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any, Callable, Awaitable, Set

import aiohttp

from gateway.config import Platform, PlatformConfig, get_relay_home
from gateway.session import SessionSource

logger = logging.getLogger(__name__)


class MediaFetchError(Exception):
    """An inbound attachment could not be downloaded or exceeded the size cap."""


class ProviderConnectionError(Exception):
    """A provider listener failed to log in or lost its connection."""


class ConnectionState(Enum):
    """Lifecycle of a single provider connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"


class MessageType(Enum):
    """Types of incoming messages."""
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE = "voice"
    DOCUMENT = "document"
    STICKER = "sticker"
    COMMAND = "command"


@dataclass
class MediaInfo:
    """A downloaded inbound attachment."""
    path: str
    content_type: Optional[str] = None
    placeholder: str = "<media:document>"


@dataclass
class MessageEvent:
    """
    Incoming message from a platform.

    Normalized representation that all adapters produce. Admission has
    already been decided by the adapter; `observe_only` events passed the
    conversation checks but must not be answered (mention missing, sender not
    in the group user list) and only feed group history.
    """
    # Base text: trimmed content, else media placeholder, else embed text
    text: str
    message_type: MessageType = MessageType.TEXT

    # Source information
    source: SessionSource = None

    # Original platform data
    raw_message: Any = None
    message_id: Optional[str] = None
    timestamp: Optional[int] = None  # epoch ms

    # Media attachments (only the first is downloaded)
    media_urls: List[str] = field(default_factory=list)
    media_types: List[str] = field(default_factory=list)

    # Admission outcome
    was_mentioned: bool = False
    observe_only: bool = False

    # Addressing for the agent context
    from_id: str = ""
    to: str = ""
    from_label: str = ""
    history_key: Optional[str] = None  # conversation id for group history
    group_subject: Optional[str] = None
    group_room: Optional[str] = None
    group_space: Optional[str] = None
    session_key: Optional[str] = None

    # Extra context blocks, already rendered as envelopes
    reply_context: Optional[str] = None
    forwarded_context: Optional[str] = None

    @property
    def history_sender(self) -> str:
        source = self.source
        if source is None:
            return "unknown"
        return source.user_name or source.user_tag or source.user_id or "unknown"


@dataclass
class SendResult:
    """Result of sending a message."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    raw_response: Any = None


# Type for message handlers
MessageHandler = Callable[[MessageEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Inbound media cache
# ---------------------------------------------------------------------------

def get_media_cache_dir() -> Path:
    path = get_relay_home() / "media" / "inbound"
    path.mkdir(parents=True, exist_ok=True)
    return path


def infer_placeholder(content_type: Optional[str]) -> str:
    """Human placeholder for an attachment when the message has no text."""
    mime = (content_type or "").lower()
    if mime.startswith("image/"):
        return "<media:image>"
    if mime.startswith("video/"):
        return "<media:video>"
    if mime.startswith("audio/"):
        return "<media:audio>"
    return "<media:document>"


def detect_mime(header_mime: Optional[str], filename: Optional[str] = None) -> Optional[str]:
    if header_mime:
        return header_mime.split(";", 1)[0].strip().lower() or None
    if filename:
        guessed, _ = mimetypes.guess_type(filename)
        return guessed
    return None


def save_media_bytes(
    data: bytes,
    content_type: Optional[str],
    max_bytes: int,
    filename: Optional[str] = None,
) -> MediaInfo:
    """
    Write an attachment into the inbound cache.

    Raises MediaFetchError when the payload is larger than `max_bytes`.
    """
    if max_bytes and len(data) > max_bytes:
        raise MediaFetchError(
            f"Media exceeds {max_bytes // (1024 * 1024)}MB limit ({len(data)} bytes)"
        )

    ext = ""
    if filename:
        ext = os.path.splitext(filename)[1].lower()
    if not ext and content_type:
        ext = mimetypes.guess_extension(content_type) or ""
    if ext == ".jpeg":
        ext = ".jpg"

    path = get_media_cache_dir() / f"{uuid.uuid4().hex}{ext}"
    with open(path, "wb") as f:
        f.write(data)
    return MediaInfo(path=str(path), content_type=content_type, placeholder=infer_placeholder(content_type))


async def download_media(
    url: str,
    max_bytes: int,
    content_type: Optional[str] = None,
    filename: Optional[str] = None,
    timeout: float = 60,
) -> MediaInfo:
    """
    Download an attachment URL into the inbound cache.

    Non-2xx responses and bodies over `max_bytes` raise MediaFetchError; the
    body is streamed so an oversized file is never fully buffered.
    """
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise MediaFetchError(f"Failed to download attachment: HTTP {resp.status}")
                if max_bytes and resp.content_length and resp.content_length > max_bytes:
                    raise MediaFetchError(
                        f"Media exceeds {max_bytes // (1024 * 1024)}MB limit ({resp.content_length} bytes)"
                    )
                buffer = bytearray()
                async for chunk in resp.content.iter_chunked(64 * 1024):
                    buffer.extend(chunk)
                    if max_bytes and len(buffer) > max_bytes:
                        raise MediaFetchError(
                            f"Media exceeds {max_bytes // (1024 * 1024)}MB limit"
                        )
                mime = detect_mime(content_type or resp.headers.get("content-type"), filename or url)
    except aiohttp.ClientError as e:
        raise MediaFetchError(f"Failed to download attachment: {e}") from e
    except asyncio.TimeoutError as e:
        raise MediaFetchError("Failed to download attachment: timed out") from e

    info = save_media_bytes(bytes(buffer), mime, max_bytes, filename)
    # Placeholder follows the declared type even when sniffing found none
    info.placeholder = infer_placeholder(content_type or mime)
    return info


class BasePlatformAdapter(ABC):
    """
    Base class for platform adapters.

    Subclasses implement platform-specific logic for:
    - Connecting and authenticating
    - Receiving messages and deciding admission
    - Sending messages and media
    - Downloading inbound media
    """

    # Provider hard limit on a single text message
    MAX_MESSAGE_LENGTH = 4096

    def __init__(self, config: PlatformConfig, platform: Platform):
        self.config = config
        self.platform = platform
        self._message_handler: Optional[MessageHandler] = None
        self._state = ConnectionState.DISCONNECTED
        self._fatal_error: Optional[BaseException] = None
        self._failure_event = asyncio.Event()
        self.system_events = None  # SystemEventQueue, injected by the runner
        self._pending_tasks: Set[asyncio.Task] = set()
        self._conversation_tails: Dict[str, asyncio.Task] = {}

    @property
    def name(self) -> str:
        """Human-readable name for this adapter."""
        return self.platform.value.title()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def fatal_error(self) -> Optional[BaseException]:
        return self._fatal_error

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.info("[%s] connection %s -> %s", self.name, self._state.value, state.value)
        self._state = state

    def _mark_failed(self, error: BaseException) -> None:
        """Record a fatal connection error; the runner stops on it."""
        self._fatal_error = error
        self._set_state(ConnectionState.DEGRADED)
        self._failure_event.set()

    async def wait_for_failure(self) -> BaseException:
        """Resolve once the listener has failed fatally."""
        await self._failure_event.wait()
        return self._fatal_error

    def set_message_handler(self, handler: MessageHandler) -> None:
        """Set the handler that runs the reply pipeline for each event."""
        self._message_handler = handler

    @abstractmethod
    async def connect(self) -> bool:
        """
        Connect to the platform and start receiving messages.

        Returns True if connection was successful.
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the platform."""
        pass

    @abstractmethod
    async def send(
        self,
        chat_id: str,
        content: str,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        """
        Send one text message.

        Args:
            chat_id: Chat id or a target string ("user:<id>", "channel:<id>")
            content: Message content; callers chunk before calling
            reply_to: Optional message ID to thread the reply to
            metadata: Additional platform-specific options

        Returns:
            SendResult with success status and message ID
        """
        pass

    async def send_media(
        self,
        chat_id: str,
        media_url: str,
        caption: Optional[str] = None,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """
        Send one media message.

        Default falls back to a text message carrying the URL.
        """
        text = f"{caption}\n{media_url}" if caption else media_url
        return await self.send(chat_id=chat_id, content=text, reply_to=reply_to, metadata=metadata)

    async def send_typing(self, chat_id: str) -> None:
        """
        Send a typing indicator.

        Override in subclasses if the platform supports it.
        """
        pass

    async def _keep_typing(self, chat_id: str, interval: float = 4.0) -> None:
        """
        Continuously send typing indicator until cancelled.

        Telegram/Discord typing status expires after ~5 seconds, so we refresh every 4.
        """
        try:
            while True:
                try:
                    await self.send_typing(chat_id)
                except Exception as e:
                    logger.debug("[%s] typing indicator failed: %s", self.name, e)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            pass

    async def resolve_media(self, event: MessageEvent) -> Optional[MediaInfo]:
        """
        Download the first attachment of an event.

        Raises MediaFetchError on HTTP failure or when over the size cap.
        """
        if not event.media_urls:
            return None
        content_type = event.media_types[0] if event.media_types else None
        if content_type == "unknown":
            content_type = None
        return await download_media(
            event.media_urls[0],
            self.config.media_max_bytes,
            content_type=content_type,
        )

    async def resolve_reply_context(self, event: MessageEvent) -> Optional[str]:
        """
        Envelope of the message this event replies to.

        Called only for turns that will be answered. Adapters that need a
        network round trip to fetch the referenced message override this.
        """
        return event.reply_context

    async def handle_message(self, event: MessageEvent) -> None:
        """
        Schedule the runner's handler for an admitted event.

        Events that arrive before the connection is ready are dropped, not
        queued. The turn runs in its own task and its failures are logged there.
        """
        if not self._message_handler:
            return
        if self._state != ConnectionState.READY:
            logger.debug("[%s] dropping event %s (state=%s)", self.name, event.message_id, self._state.value)
            return

        # Turns of one conversation are chained to keep arrival order
        key = self._conversation_key(event)
        previous = self._conversation_tails.get(key)
        task = asyncio.create_task(self._run_handler(event, previous))
        self._pending_tasks.add(task)
        self._conversation_tails[key] = task
        task.add_done_callback(lambda t, k=key: self._on_handler_done(k, t))

    @staticmethod
    def _conversation_key(event: MessageEvent) -> str:
        if event.session_key:
            return event.session_key
        source = event.source
        chat = event.history_key or event.to or (source.chat_id if source else "")
        thread = source.thread_id if source else None
        return f"{chat}:{thread}" if thread else chat

    async def _run_handler(self, event: MessageEvent, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        await self._message_handler(event)

    def _on_handler_done(self, key: str, task: asyncio.Task) -> None:
        self._pending_tasks.discard(task)
        if self._conversation_tails.get(key) is task:
            del self._conversation_tails[key]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("[%s] handler failed: %s", self.name, error, exc_info=error)

    async def wait_for_pending(self) -> None:
        """Wait until every dispatched turn has finished."""
        while True:
            pending = [t for t in self._pending_tasks if not t.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    def cancel_pending(self) -> None:
        """Cancel dispatched turns that are still running."""
        for task in list(self._pending_tasks):
            task.cancel()

    def enqueue_system_event(self, text: str, context_key: Optional[str] = None) -> None:
        if self.system_events is None:
            logger.debug("[%s] no system event queue; dropping %r", self.name, text)
            return
        self.system_events.enqueue(text, context_key=context_key)

    def build_source(
        self,
        chat_id: str,
        chat_name: Optional[str] = None,
        chat_type: str = "direct",
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
        username: Optional[str] = None,
        user_tag: Optional[str] = None,
        thread_id: Optional[str] = None,
        space_id: Optional[str] = None,
        space_name: Optional[str] = None,
    ) -> SessionSource:
        """Helper to build a SessionSource for this platform."""
        return SessionSource(
            platform=self.platform,
            chat_id=str(chat_id),
            chat_name=chat_name,
            chat_type=chat_type,
            user_id=str(user_id) if user_id else None,
            user_name=user_name,
            username=username,
            user_tag=user_tag,
            thread_id=str(thread_id) if thread_id else None,
            space_id=str(space_id) if space_id else None,
            space_name=space_name,
        )

    def format_message(self, content: str) -> str:
        """
        Format a message for this platform.

        Default implementation returns content as-is.
        """
        return content

    def text_limit(self) -> int:
        """Effective chunk size: the configured limit capped at the provider limit."""
        return max(1, min(self.config.text_chunk_limit, self.MAX_MESSAGE_LENGTH))
