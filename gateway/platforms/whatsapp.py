"""
WhatsApp platform adapter.

WhatsApp Web has no official bot API, so a Node.js bridge process runs the
web client and exposes a small HTTP API on localhost:

    GET  /health           {"status": "connected"|..., "me": "<jid>"}
    GET  /messages         queued inbound messages (drained on read)
    POST /send             {"chatId", "message", "replyTo"?}
    POST /send-media       {"chatId", "mediaUrl"|"filePath", "caption"?, "replyTo"?}
    POST /typing           {"chatId"}
    GET  /chat/<chatId>    {"name", "isGroup", "participants"}

Configuration (platform `extra`):
- bridge_script: Path to the Node.js bridge script
- bridge_port: Port for HTTP communication (default: 3000)
- session_path: Where the bridge keeps its WhatsApp session
"""

import asyncio
import logging
import os
import re
import signal
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Any

import aiohttp

from gateway.config import Platform, PlatformConfig, get_relay_home
from gateway.context import format_agent_envelope
from gateway.delivery import DeliveryTarget
from gateway.platforms.base import (
    BasePlatformAdapter,
    ConnectionState,
    MessageEvent,
    MessageType,
    SendResult,
    infer_placeholder,
)
from gateway.policy import (
    is_sender_allowed,
    matches_command_prefix,
    resolve_group_entry,
    resolve_require_mention,
)

logger = logging.getLogger(__name__)

WHATSAPP_USER_PREFIXES = ("whatsapp:", "wa:", "user:")

# whatsapp-web.js notification types that become system events
NOTIFICATION_ACTIONS = {
    "add": "added {who}",
    "invite": "joined via invite",
    "remove": "removed {who}",
    "leave": "left",
    "subject": "changed the subject",
    "description": "changed the description",
    "picture": "changed the group picture",
}


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
    except (OSError, subprocess.SubprocessError):
        return False


def normalize_whatsapp_id(value: Optional[str]) -> str:
    """"whatsapp:+1 555-0100", "15550100@c.us" -> "15550100". Group ids keep their digits too."""
    if not value:
        return ""
    text = str(value).strip()
    lowered = text.lower()
    for prefix in WHATSAPP_USER_PREFIXES:
        if lowered.startswith(prefix):
            text = text[len(prefix):]
            break
    text = text.split("@", 1)[0].split(":", 1)[0]
    return re.sub(r"\D", "", text)


def normalize_number_list(raw: Optional[List[Any]]) -> List[str]:
    """Reduce configured numbers to digits so they compare against sender JIDs."""
    entries: List[str] = []
    for item in raw or []:
        text = str(item).strip()
        if text == "*":
            entries.append(text)
            continue
        digits = normalize_whatsapp_id(text)
        if digits:
            entries.append(digits)
        elif text:
            entries.append(text)
    return entries


def _message_type(media_type: str) -> MessageType:
    if "image" in media_type or media_type == "sticker":
        return MessageType.PHOTO
    if "video" in media_type:
        return MessageType.VIDEO
    if "audio" in media_type or "ptt" in media_type:  # ptt = voice note
        return MessageType.VOICE
    return MessageType.DOCUMENT


class WhatsAppAdapter(BasePlatformAdapter):
    """
    WhatsApp adapter backed by the Node.js bridge.

    Handles:
    - Direct chats (dm.enabled, dm.allow_from with phone numbers)
    - Groups via `groups` entries keyed by group JID or "*"
    - Mentions of the bot's own JID in `mentionedIds`
    - Group notifications (joins, leaves, subject changes) as system events
    """

    # WhatsApp message limits
    MAX_MESSAGE_LENGTH = 65536

    _DEFAULT_BRIDGE_DIR = Path(__file__).resolve().parents[2] / "scripts" / "whatsapp-bridge"

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.WHATSAPP)
        self._bridge_process: Optional[subprocess.Popen] = None
        self._bridge_port: int = int(config.extra.get("bridge_port", 3000))
        self._bridge_script: str = config.extra.get(
            "bridge_script",
            str(self._DEFAULT_BRIDGE_DIR / "bridge.js"),
        )
        self._session_path: Path = Path(config.extra.get(
            "session_path",
            get_relay_home() / "whatsapp" / "session"
        ))
        self._poll_task: Optional[asyncio.Task] = None
        self._bot_jid: Optional[str] = None
        self._running = False

    @property
    def bridge_url(self) -> str:
        return f"http://127.0.0.1:{self._bridge_port}"

    async def connect(self) -> bool:
        """Launch the Node.js bridge and wait for its health check."""
        if not check_whatsapp_requirements():
            logger.warning("[%s] Node.js not found. WhatsApp requires Node.js.", self.name)
            return False

        bridge_path = Path(self._bridge_script)
        if not bridge_path.exists():
            logger.warning("[%s] Bridge script not found: %s", self.name, bridge_path)
            return False

        bridge_dir = bridge_path.parent
        if not (bridge_dir / "node_modules").exists():
            print(f"[{self.name}] Installing WhatsApp bridge dependencies...")
            try:
                install_result = subprocess.run(
                    ["npm", "install", "--silent"],
                    cwd=str(bridge_dir),
                    capture_output=True,
                    text=True,
                    timeout=60,
                )
            except (OSError, subprocess.SubprocessError) as e:
                print(f"[{self.name}] Failed to install dependencies: {e}")
                return False
            if install_result.returncode != 0:
                print(f"[{self.name}] npm install failed: {install_result.stderr}")
                return False

        self._set_state(ConnectionState.CONNECTING)
        try:
            self._session_path.mkdir(parents=True, exist_ok=True)
            self._bridge_process = subprocess.Popen(
                [
                    "node",
                    str(bridge_path),
                    "--port", str(self._bridge_port),
                    "--session", str(self._session_path),
                ],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                preexec_fn=os.setsid,
            )

            for _ in range(15):
                await asyncio.sleep(1)
                if self._bridge_process.poll() is not None:
                    print(f"[{self.name}] Bridge process died (exit code {self._bridge_process.returncode})")
                    self._set_state(ConnectionState.DISCONNECTED)
                    return False
                health = await self._health()
                if health is not None:
                    self._bot_jid = health.get("me")
                    print(f"[{self.name}] Bridge ready (status: {health.get('status', '?')})")
                    break
            else:
                print(f"[{self.name}] Bridge did not become ready in 15s")
                self._set_state(ConnectionState.DISCONNECTED)
                return False

            self._running = True
            self._set_state(ConnectionState.READY)
            self._poll_task = asyncio.create_task(self._poll_messages())
            print(f"[{self.name}] Bridge started on port {self._bridge_port}")
            return True

        except Exception as e:
            logger.error("[%s] Failed to start bridge: %s", self.name, e, exc_info=True)
            self._set_state(ConnectionState.DISCONNECTED)
            return False

    async def _health(self) -> Optional[Dict[str, Any]]:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f"{self.bridge_url}/health",
                    timeout=aiohttp.ClientTimeout(total=2)
                ) as resp:
                    if resp.status == 200:
                        return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return None
        return None

    async def disconnect(self) -> None:
        """Stop the bridge process group."""
        self._running = False
        if self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None

        if self._bridge_process:
            try:
                try:
                    os.killpg(os.getpgid(self._bridge_process.pid), signal.SIGTERM)
                except (ProcessLookupError, PermissionError):
                    self._bridge_process.terminate()
                await asyncio.sleep(1)
                if self._bridge_process.poll() is None:
                    try:
                        os.killpg(os.getpgid(self._bridge_process.pid), signal.SIGKILL)
                    except (ProcessLookupError, PermissionError):
                        self._bridge_process.kill()
            except Exception as e:
                print(f"[{self.name}] Error stopping bridge: {e}")

        self._set_state(ConnectionState.DISCONNECTED)
        self._bridge_process = None
        print(f"[{self.name}] Disconnected")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _poll_messages(self) -> None:
        """Poll the bridge for incoming messages until stopped or the bridge dies."""
        while self._running:
            if self._bridge_process is not None and self._bridge_process.poll() is not None:
                self._running = False
                self._mark_failed(RuntimeError(
                    f"WhatsApp bridge exited with code {self._bridge_process.returncode}"
                ))
                return
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.get(
                        f"{self.bridge_url}/messages",
                        timeout=aiohttp.ClientTimeout(total=30)
                    ) as resp:
                        if resp.status == 200:
                            messages = await resp.json()
                            if self._state == ConnectionState.DEGRADED:
                                self._set_state(ConnectionState.READY)
                            for msg_data in messages:
                                await self._on_message(msg_data)
            except asyncio.CancelledError:
                break
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("[%s] poll error: %s", self.name, e)
                if self._state == ConnectionState.READY:
                    self._set_state(ConnectionState.DEGRADED)
                await asyncio.sleep(5)
                continue

            await asyncio.sleep(1)  # Poll interval

    def _is_bot_mentioned(self, data: Dict[str, Any]) -> bool:
        bot = normalize_whatsapp_id(self._bot_jid)
        if not bot:
            return False
        return any(normalize_whatsapp_id(jid) == bot for jid in data.get("mentionedIds") or [])

    def _notification_text(self, data: Dict[str, Any], chat_label: str) -> Optional[str]:
        kind = data.get("notificationType") or ""
        template = NOTIFICATION_ACTIONS.get(kind)
        if template is None:
            return None
        actor = data.get("senderName") or data.get("senderId") or ""
        recipients = ", ".join(str(r) for r in data.get("recipients") or []) or "a participant"
        action = template.format(who=recipients)
        actor_prefix = f"{actor} " if actor else ""
        return f"WhatsApp system: {actor_prefix}{action} in {chat_label}"

    async def _on_message(self, data: Dict[str, Any]) -> None:
        """Admission and normalization for one message from the bridge."""
        if self._state != ConnectionState.READY:
            return
        if data.get("fromMe"):
            return

        chat_id = str(data.get("chatId") or "")
        if not chat_id:
            return
        is_group = bool(data.get("isGroup")) or chat_id.endswith("@g.us")
        sender_jid = str(data.get("senderId") or chat_id)
        sender_number = normalize_whatsapp_id(sender_jid)
        dm = self.config.dm
        group_entry = None

        if not is_group:
            if not dm.enabled:
                logger.debug("whatsapp: drop dm (dms disabled)")
                return
            if not is_sender_allowed(
                normalize_number_list(dm.allow_from), entry_id=sender_number, prefixes=WHATSAPP_USER_PREFIXES
            ):
                logger.debug("Blocked unauthorized whatsapp sender %s (not in allow_from)", sender_number)
                return
        else:
            group_entry = resolve_group_entry(chat_id, self.config.groups)
            if self.config.groups and group_entry is None:
                logger.debug("Blocked whatsapp group %s (not in groups)", chat_id)
                return
            if group_entry is not None and not group_entry.allow:
                logger.debug("Blocked whatsapp group %s (allow=false)", chat_id)
                return

        chat_label = (data.get("chatName") or chat_id) if is_group else "DM"
        system_text = self._notification_text(data, chat_label)
        if system_text:
            self.enqueue_system_event(
                system_text,
                context_key=f"whatsapp:system:{chat_id}:{data.get('messageId') or data.get('timestamp')}",
            )
            return

        media_urls = [u for u in (data.get("mediaUrls") or []) if u]
        media_type = data.get("mediaType") or ""
        text = (data.get("body") or "").strip()
        msg_type = MessageType.TEXT
        if data.get("hasMedia") and media_urls:
            msg_type = _message_type(media_type)
            if not text:
                text = infer_placeholder(media_type if "/" in media_type else data.get("mimetype"))
        if not text:
            return

        was_mentioned = is_group and self._is_bot_mentioned(data)
        observe_only = False
        if is_group:
            require_mention = resolve_require_mention(
                None,
                group_entry.require_mention if group_entry else None,
                fallback=self.config.require_mention,
            )
            if require_mention and not was_mentioned:
                if matches_command_prefix(text, self.config.command_prefixes):
                    logger.debug("whatsapp: command prefix bypasses mention gating")
                else:
                    logger.debug("whatsapp: skipping group message %s (no-mention)", data.get("messageId"))
                    observe_only = True
            if group_entry is not None and group_entry.users and not is_sender_allowed(
                normalize_number_list(group_entry.users), entry_id=sender_number, prefixes=WHATSAPP_USER_PREFIXES
            ):
                logger.debug("Blocked whatsapp group sender %s (not in group users)", sender_number)
                observe_only = True

        sender_name = data.get("senderName") or data.get("pushName") or sender_number
        source = self.build_source(
            chat_id=chat_id,
            chat_name=data.get("chatName"),
            chat_type="group" if is_group else "direct",
            user_id=sender_jid,
            user_name=sender_name,
            username=sender_number,
            user_tag=f"+{sender_number}" if sender_number else sender_name,
        )

        if is_group:
            from_label = f"{data.get('chatName') or 'Group'} id:{chat_id}"
        else:
            from_label = f"{sender_name} (+{sender_number})" if sender_number else sender_name

        reply_context = None
        quoted = data.get("quotedMessage") or {}
        if quoted.get("body"):
            quoted_from = quoted.get("senderName") or quoted.get("senderId") or "unknown"
            reply_context = format_agent_envelope(
                "WhatsApp",
                quoted_from,
                None,
                f"{quoted['body']}\n[whatsapp message id: {quoted.get('messageId') or 'unknown'} chat: {chat_id}]",
            )

        raw_ts = data.get("timestamp")
        timestamp = int(float(raw_ts) * 1000) if raw_ts else None
        event = MessageEvent(
            text=text,
            message_type=msg_type,
            source=source,
            raw_message=data,
            message_id=data.get("messageId"),
            timestamp=timestamp,
            media_urls=media_urls[:1] if msg_type != MessageType.TEXT else [],
            media_types=[media_type or "unknown"] if msg_type != MessageType.TEXT else [],
            was_mentioned=was_mentioned,
            observe_only=observe_only,
            from_id=f"whatsapp:{sender_number}" if not is_group else f"group:{chat_id}",
            to=chat_id,
            from_label=from_label,
            history_key=chat_id if is_group else None,
            group_subject=data.get("chatName") if is_group else None,
            reply_context=reply_context,
        )
        await self.handle_message(event)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    @staticmethod
    def _chat_jid(target: str) -> str:
        """Bridge chat id for a delivery target; bare numbers become user JIDs."""
        if "@" in target and not target.startswith("<@"):
            local = target.split("@", 1)[0]
            return target.split(":", 1)[1] if ":" in local else target
        parsed = DeliveryTarget.parse(target)
        digits = normalize_whatsapp_id(parsed.id)
        return f"{digits}@c.us" if digits else parsed.id

    async def _post(self, path: str, payload: Dict[str, Any], timeout: float = 30) -> SendResult:
        if not self._running:
            return SendResult(success=False, error="Not connected")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.bridge_url}{path}",
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=timeout)
                ) as resp:
                    if resp.status == 200:
                        data = await resp.json()
                        return SendResult(success=True, message_id=data.get("messageId"), raw_response=data)
                    return SendResult(success=False, error=await resp.text())
        except Exception as e:
            return SendResult(success=False, error=str(e))

    async def send(
        self,
        chat_id: str,
        content: str,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        """Send a message via the WhatsApp bridge."""
        payload = {"chatId": self._chat_jid(chat_id), "message": content}
        if reply_to:
            payload["replyTo"] = reply_to
        return await self._post("/send", payload)

    async def send_media(
        self,
        chat_id: str,
        media_url: str,
        caption: Optional[str] = None,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """Send a URL or local file through the bridge's /send-media endpoint."""
        payload: Dict[str, Any] = {"chatId": self._chat_jid(chat_id)}
        if os.path.exists(media_url):
            if os.path.getsize(media_url) > self.config.media_max_bytes:
                return SendResult(success=False, error=f"Media exceeds {self.config.media_max_mb}MB limit")
            payload["filePath"] = os.path.abspath(media_url)
        else:
            payload["mediaUrl"] = media_url
        if caption:
            payload["caption"] = caption
        if reply_to:
            payload["replyTo"] = reply_to
        return await self._post("/send-media", payload, timeout=120)

    async def send_typing(self, chat_id: str) -> None:
        """Send typing indicator via bridge."""
        if not self._running:
            return
        try:
            async with aiohttp.ClientSession() as session:
                await session.post(
                    f"{self.bridge_url}/typing",
                    json={"chatId": self._chat_jid(chat_id)},
                    timeout=aiohttp.ClientTimeout(total=5)
                )
        except Exception:
            pass  # Ignore typing indicator failures
