"""
Canonical turn records shared by every surface.

`MessageContext` is what the agent sees for one inbound turn; `ReplyPayload`
is what comes back. Adapters never pass provider-native objects past this
point.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from gateway.config import Platform

# Agent output that means "stay silent"
SILENT_REPLY_TOKEN = "NO_REPLY"


def format_timestamp(timestamp_ms: Optional[int]) -> str:
    if not timestamp_ms:
        return ""
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M UTC")


def format_agent_envelope(
    surface: str,
    from_label: Optional[str],
    timestamp_ms: Optional[int],
    body: str,
) -> str:
    """
    Prefix a body with its origin: ``[Discord alice user id:1 2025-01-02 03:04 UTC] hi``.
    """
    header = " ".join(
        part for part in (surface, from_label or "", format_timestamp(timestamp_ms)) if part
    )
    return f"[{header}] {body}"


def surface_label(platform: Platform) -> str:
    if platform == Platform.WHATSAPP:
        return "WhatsApp"
    if platform == Platform.WEBCHAT:
        return "WebChat"
    return platform.value.title()


@dataclass(frozen=True)
class MessageContext:
    """
    One inbound turn, normalized.

    `from_id`/`to` are provider-namespaced ("discord:<uid>", "group:<chatId>",
    "user:<uid>", "channel:<id>") and never shared across surfaces.
    `message_sid` is the provider message id used for de-duplication.
    """
    body: str
    from_id: str
    to: str
    surface: Platform
    chat_type: str = "direct"  # "direct" or "group"
    sender_name: Optional[str] = None
    sender_username: Optional[str] = None
    sender_tag: Optional[str] = None
    sender_id: Optional[str] = None
    was_mentioned: bool = False
    message_sid: str = ""
    timestamp: Optional[int] = None  # epoch ms
    media_path: Optional[str] = None
    media_type: Optional[str] = None
    media_url: Optional[str] = None
    group_subject: Optional[str] = None
    group_room: Optional[str] = None
    group_space: Optional[str] = None
    session_key: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return self.chat_type == "direct"

    def to_dict(self) -> Dict[str, Any]:
        """Wire form sent to the agent backend."""
        data = {
            "Body": self.body,
            "From": self.from_id,
            "To": self.to,
            "ChatType": self.chat_type,
            "SenderName": self.sender_name,
            "SenderUsername": self.sender_username,
            "SenderTag": self.sender_tag,
            "SenderId": self.sender_id,
            "Surface": self.surface.value,
            "WasMentioned": self.was_mentioned,
            "MessageSid": self.message_sid,
            "Timestamp": self.timestamp,
            "MediaPath": self.media_path,
            "MediaType": self.media_type,
            "MediaUrl": self.media_url,
            "GroupSubject": self.group_subject,
            "GroupRoom": self.group_room,
            "GroupSpace": self.group_space,
            "SessionKey": self.session_key,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class ReplyPayload:
    """One reply unit. Empty text and no media means an explicit silent marker."""
    text: Optional[str] = None
    media_url: Optional[str] = None
    media_urls: List[str] = field(default_factory=list)
    reply_to_id: Optional[str] = None

    @property
    def media(self) -> List[str]:
        if self.media_urls:
            return list(self.media_urls)
        return [self.media_url] if self.media_url else []

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.media

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.text is not None:
            data["text"] = self.text
        if self.media_url:
            data["mediaUrl"] = self.media_url
        if self.media_urls:
            data["mediaUrls"] = list(self.media_urls)
        if self.reply_to_id:
            data["replyToId"] = self.reply_to_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReplyPayload":
        media_urls = data.get("mediaUrls") or data.get("media_urls") or []
        return cls(
            text=data.get("text"),
            media_url=data.get("mediaUrl") or data.get("media_url"),
            media_urls=[str(url) for url in media_urls if url],
            reply_to_id=data.get("replyToId") or data.get("reply_to_id"),
        )
