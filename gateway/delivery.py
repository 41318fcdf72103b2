"""
Outbound delivery for agent replies.

Turns a list of reply payloads into provider sends:
- Text is chunked to the effective limit (configured limit capped at the
  provider's hard limit), preferring newline then whitespace boundaries
- Media is sent one message per URL; only the first carries the caption
- Reply threading follows the platform's reply_to_mode (off | first | all)

Delivery failures are logged per payload and never abort the rest of the
turn. Nothing here retries.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from gateway.context import ReplyPayload, SILENT_REPLY_TOKEN

logger = logging.getLogger(__name__)

_MENTION_TARGET_RE = re.compile(r"^<@!?(\d+)>$")

USER_TARGET_PREFIXES = ("user:", "discord:", "telegram:", "whatsapp:")
CHANNEL_TARGET_PREFIXES = ("channel:", "group:")


@dataclass
class DeliveryTarget:
    """
    A parsed reply target.

    Formats:
    - "user:123" / "discord:123" / "<@123>" -> direct message to a user
    - "channel:456" / "group:456" -> a channel or group chat
    - "456" -> a channel/chat id as-is
    """
    kind: str  # "user" or "channel"
    id: str

    @classmethod
    def parse(cls, target: str) -> "DeliveryTarget":
        raw = (target or "").strip()
        if not raw:
            raise ValueError("Recipient is required")

        mention = _MENTION_TARGET_RE.match(raw)
        if mention:
            return cls(kind="user", id=mention.group(1))

        lowered = raw.lower()
        for prefix in USER_TARGET_PREFIXES:
            if lowered.startswith(prefix):
                return cls(kind="user", id=raw[len(prefix):].strip())
        for prefix in CHANNEL_TARGET_PREFIXES:
            if lowered.startswith(prefix):
                return cls(kind="channel", id=raw[len(prefix):].strip())
        return cls(kind="channel", id=raw)

    def to_string(self) -> str:
        return f"{self.kind}:{self.id}"


def chunk_text(text: str, limit: int) -> List[str]:
    """
    Split text into at most ``ceil(len(text) / limit)`` chunks of at most
    `limit` characters.

    Splits after the last newline in the window, else after the last
    whitespace, but only while the rest still fits in the remaining chunk
    budget; otherwise cuts hard at the limit. Nothing is dropped:
    ``"".join(chunk_text(t, n)) == t``.
    """
    if not text:
        return []
    if limit <= 0 or len(text) <= limit:
        return [text]

    length = len(text)
    budget = -(-length // limit)
    chunks = []
    pos = 0
    while pos < length:
        end = pos + limit
        if end >= length:
            chunks.append(text[pos:])
            break

        split_at = end
        window = text[pos:end]
        # Chunks left after this one must still hold the remainder
        spare = (budget - len(chunks) - 1) * limit
        for cut in (window.rfind("\n"), max(window.rfind(" "), window.rfind("\t"))):
            if cut > 0 and length - (pos + cut + 1) <= spare:
                split_at = pos + cut + 1
                break

        chunks.append(text[pos:split_at])
        pos = split_at
    return chunks


def resolve_reply_target(
    reply_to_mode: str,
    reply_to_id: Optional[str],
    has_replied: bool,
) -> Optional[str]:
    """Message id to thread to, or None."""
    if reply_to_mode == "off":
        return None
    reply_to_id = (reply_to_id or "").strip()
    if not reply_to_id:
        return None
    if reply_to_mode == "all":
        return reply_to_id
    return None if has_replied else reply_to_id


class ReplyThreadState:
    """
    Per-turn "has replied" flag for first-only threading.

    Created fresh for every inbound turn and shared by the block replies and
    the final replies of that turn.
    """

    def __init__(self, reply_to_mode: str = "first", default_reply_to: Optional[str] = None):
        self.reply_to_mode = reply_to_mode
        self.default_reply_to = default_reply_to
        self.has_replied = False

    def next_reply_to(self, payload_reply_to: Optional[str] = None) -> Optional[str]:
        reply_to = resolve_reply_target(
            self.reply_to_mode,
            payload_reply_to or self.default_reply_to,
            self.has_replied,
        )
        if reply_to and not self.has_replied:
            self.has_replied = True
        return reply_to


@dataclass
class DeliveryReport:
    attempted: int = 0  # payloads with content that we tried to send
    sent: int = 0  # individual provider messages that succeeded
    failed: int = 0  # payloads that hit an error


async def _send_payload(
    adapter,
    payload: ReplyPayload,
    target: str,
    thread: ReplyThreadState,
    limit: int,
    metadata: Optional[Dict[str, Any]] = None,
) -> int:
    """Send one payload; returns the number of successful provider messages."""
    text = payload.text or ""
    media = payload.media
    sent = 0

    if not media:
        for chunk in chunk_text(text, limit):
            if not chunk.strip():
                continue
            reply_to = thread.next_reply_to(payload.reply_to_id)
            result = await adapter.send(chat_id=target, content=chunk, reply_to=reply_to, metadata=metadata)
            if not result.success:
                raise RuntimeError(result.error or "send failed")
            sent += 1
        return sent

    first = True
    for media_url in media:
        caption = text if first else ""
        first = False
        reply_to = thread.next_reply_to(payload.reply_to_id)
        result = await adapter.send_media(
            chat_id=target,
            media_url=media_url,
            caption=caption or None,
            reply_to=reply_to,
            metadata=metadata,
        )
        if not result.success:
            raise RuntimeError(result.error or "media send failed")
        sent += 1
    return sent


async def deliver_replies(
    adapter,
    replies: List[ReplyPayload],
    target: str,
    thread: Optional[ReplyThreadState] = None,
    text_limit: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> DeliveryReport:
    """
    Deliver reply payloads in order through one adapter.

    Empty payloads are silent markers and are skipped. A payload that fails
    is logged and the remaining payloads are still delivered.
    """
    if thread is None:
        thread = ReplyThreadState(adapter.config.reply_to_mode)
    limit = text_limit or adapter.text_limit()
    report = DeliveryReport()

    for payload in replies:
        if payload is None or payload.is_empty:
            continue
        report.attempted += 1
        try:
            report.sent += await _send_payload(adapter, payload, target, thread, limit, metadata)
        except Exception as e:
            report.failed += 1
            logger.error("[%s] delivery to %s failed: %s", adapter.name, target, e)
            continue
        logger.debug("[%s] delivered reply to %s", adapter.name, target)

    return report


def build_slash_messages(replies: List[ReplyPayload], text_limit: int) -> List[str]:
    """
    Flatten replies for a slash-command response.

    Text (minus the silent token) and media URLs are joined by newlines and
    chunked; each chunk becomes one interaction message.
    """
    messages: List[str] = []
    for payload in replies:
        if payload is None:
            continue
        text = (payload.text or "").strip()
        if text == SILENT_REPLY_TOKEN:
            text = ""
        parts = [text] + [url.strip() for url in payload.media]
        combined = "\n".join(part for part in parts if part)
        if not combined:
            continue
        messages.extend(chunk_text(combined, text_limit))
    return messages
