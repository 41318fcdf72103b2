"""
Discord platform adapter.

Uses discord.py for:
- Receiving messages from servers, DMs and group DMs
- Guild/channel admission, mention gating and group history context
- System messages and reactions as system events
- The slash command (/relay by default) as a separate structured path
- Sending text and file attachments with reply references
"""

import asyncio
import io
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

try:
    import discord
    from discord import app_commands
    DISCORD_AVAILABLE = True
except ImportError:
    DISCORD_AVAILABLE = False
    discord = None
    app_commands = None

import aiohttp

from gateway.config import Platform, PlatformConfig
from gateway.context import MessageContext, ReplyPayload, format_agent_envelope
from gateway.delivery import DeliveryTarget, build_slash_messages
from gateway.platforms.base import (
    BasePlatformAdapter,
    ConnectionState,
    MessageEvent,
    MessageType,
    ProviderConnectionError,
    SendResult,
    infer_placeholder,
)
from gateway.policy import (
    USER_PREFIXES,
    is_sender_allowed,
    matches_command_prefix,
    normalize_slug,
    resolve_channel_config,
    resolve_group_dm_allowed,
    resolve_guild_entry,
    resolve_require_mention,
    should_emit_reaction_notification,
)

logger = logging.getLogger(__name__)

SLASH_EMPTY_PROMPT = "Message required."
SLASH_NO_RESPONSE = "No response was generated for that command."
SLASH_FAILURE = "Sorry, something went wrong handling that command."
SLASH_NOT_READY = "The gateway is still connecting. Try again in a moment."

# discord.py MessageType names that become system events
SYSTEM_EVENT_ACTIONS = {
    "pins_add": "pinned a message",
    "recipient_add": "added a recipient",
    "recipient_remove": "removed a recipient",
    "new_member": "user joined",
    "premium_guild_subscription": "boosted the server",
    "premium_guild_tier_1": "boosted the server (Tier 1 reached)",
    "premium_guild_tier_2": "boosted the server (Tier 2 reached)",
    "premium_guild_tier_3": "boosted the server (Tier 3 reached)",
    "thread_created": "created a thread",
    "auto_moderation_action": "auto moderation action",
    "guild_incident_alert_mode_enabled": "raid protection enabled",
    "guild_incident_alert_mode_disabled": "raid protection disabled",
    "guild_incident_report_raid": "raid reported",
    "guild_incident_report_false_alarm": "raid report marked false alarm",
    "stage_start": "stage started",
    "stage_end": "stage ended",
    "stage_speaker": "stage speaker updated",
    "stage_topic": "stage topic updated",
    "poll_result": "poll results posted",
    "purchase_notification": "purchase notification",
}

COMMAND_MESSAGE_TYPES = ("chat_input_command", "context_menu_command")

# Slash turns: context in, replies out (raises on generation failure)
SlashHandler = Callable[[MessageContext], Awaitable[List[ReplyPayload]]]


def check_discord_requirements() -> bool:
    """Check if Discord dependencies are available."""
    return DISCORD_AVAILABLE


def _type_name(obj: Any) -> str:
    """Enum member name of a discord.py `.type` attribute ("private", "group", ...)."""
    value = getattr(obj, "type", None)
    return getattr(value, "name", "") or ""


def user_tag(user: Any) -> str:
    """Discord tag: "name#1234" for legacy discriminators, else the username."""
    if user is None:
        return ""
    name = getattr(user, "name", "") or ""
    discriminator = str(getattr(user, "discriminator", "") or "")
    if discriminator and discriminator != "0":
        return f"{name}#{discriminator}"
    return name


def _timestamp_ms(moment: Any) -> Optional[int]:
    if moment is None:
        return None
    try:
        return int(moment.timestamp() * 1000)
    except (AttributeError, TypeError):
        return None


def _first_embed_description(message: Any) -> str:
    embeds = getattr(message, "embeds", None) or []
    if not embeds:
        return ""
    return getattr(embeds[0], "description", None) or ""


def _snapshot_text(snapshot: Any) -> str:
    content = (getattr(snapshot, "content", None) or "").strip()
    return content or _first_embed_description(snapshot)


def resolve_message_text(message: Any, fallback_text: str = "") -> str:
    """Trimmed content, else attachment placeholder, else first embed, else fallback."""
    content = (getattr(message, "content", None) or "").strip()
    if content:
        return content
    attachments = getattr(message, "attachments", None) or []
    if attachments:
        return infer_placeholder(getattr(attachments[0], "content_type", None))
    embed = _first_embed_description(message)
    if embed:
        return embed
    return (fallback_text or "").strip()


def format_reaction_emoji(emoji: Any) -> str:
    rendered = str(emoji) if emoji is not None else ""
    if rendered:
        return rendered
    emoji_id = getattr(emoji, "id", None)
    emoji_name = getattr(emoji, "name", None)
    if emoji_id and emoji_name:
        return f"{emoji_name}:{emoji_id}"
    return emoji_name or "emoji"


class DiscordAdapter(BasePlatformAdapter):
    """
    Discord bot adapter.

    Handles:
    - DMs (dm.enabled, dm.allow_from) and group DMs (dm.group_enabled, dm.group_channels)
    - Guild admission via guild entries and per-channel overrides
    - Mention gating with group history for unanswered messages
    - System messages, reactions and the slash command
    """

    # Discord message limits
    MAX_MESSAGE_LENGTH = 2000

    def __init__(self, config: PlatformConfig):
        super().__init__(config, Platform.DISCORD)
        self._client = None
        self._tree = None
        self._client_task: Optional[asyncio.Task] = None
        self._ready_event = asyncio.Event()
        self._stopping = False
        self._slash_handler: Optional[SlashHandler] = None

    def set_slash_handler(self, handler: SlashHandler) -> None:
        self._slash_handler = handler

    @property
    def bot_id(self) -> Optional[str]:
        user = getattr(self._client, "user", None) if self._client else None
        return str(user.id) if user is not None else None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Log in, register handlers and wait until the client is ready."""
        if not DISCORD_AVAILABLE:
            print(f"[{self.name}] discord.py not installed. Run: pip install discord.py")
            return False

        if not self.config.token:
            print(f"[{self.name}] No bot token configured")
            return False

        self._set_state(ConnectionState.CONNECTING)
        self._stopping = False
        try:
            intents = discord.Intents.default()
            intents.message_content = True
            intents.dm_messages = True
            intents.guild_messages = True
            intents.guild_reactions = True
            intents.dm_reactions = True

            self._client = discord.Client(intents=intents)
            self._tree = app_commands.CommandTree(self._client)
            self._register_slash_command()

            @self._client.event
            async def on_ready():
                print(f"[{self.name}] Connected as {self._client.user}")
                if self.config.slash_command.enabled:
                    await self._ensure_slash_command()
                self._set_state(ConnectionState.READY)
                self._ready_event.set()

            @self._client.event
            async def on_resumed():
                self._set_state(ConnectionState.READY)

            @self._client.event
            async def on_disconnect():
                if not self._stopping and self._state == ConnectionState.READY:
                    self._set_state(ConnectionState.DEGRADED)

            @self._client.event
            async def on_message(message):
                await self._on_message(message)

            @self._client.event
            async def on_raw_reaction_add(payload):
                await self._on_raw_reaction(payload, "added")

            @self._client.event
            async def on_raw_reaction_remove(payload):
                await self._on_raw_reaction(payload, "removed")

            self._client_task = asyncio.create_task(self._client.start(self.config.token))
            self._client_task.add_done_callback(self._on_client_exit)

            ready = asyncio.create_task(self._ready_event.wait())
            done, _ = await asyncio.wait(
                {ready, self._client_task},
                timeout=30,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if ready not in done:
                ready.cancel()
                if self._client_task in done and self._client_task.exception():
                    raise self._client_task.exception()
                raise ProviderConnectionError("Timeout waiting for Discord ready")
            return True

        except Exception as e:
            print(f"[{self.name}] Failed to connect: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            return False

    def _on_client_exit(self, task: asyncio.Task) -> None:
        if self._stopping or task.cancelled():
            return
        error = task.exception()
        if error is None:
            error = ProviderConnectionError("Discord client stopped unexpectedly")
        logger.error("[%s] client exited: %s", self.name, error)
        self._mark_failed(error)

    async def disconnect(self) -> None:
        """Disconnect from Discord."""
        self._stopping = True
        if self._client:
            try:
                await self._client.close()
            except Exception as e:
                print(f"[{self.name}] Error during disconnect: {e}")
        if self._client_task and not self._client_task.done():
            self._client_task.cancel()

        self._set_state(ConnectionState.DISCONNECTED)
        self._client = None
        self._tree = None
        self._client_task = None
        self._ready_event.clear()
        print(f"[{self.name}] Disconnected")

    # ------------------------------------------------------------------
    # Slash command
    # ------------------------------------------------------------------

    def _register_slash_command(self) -> None:
        slash = self.config.slash_command
        if not slash.enabled or self._tree is None:
            return

        @app_commands.describe(prompt="What should the assistant help with?")
        async def slash_callback(interaction, prompt: str):
            await self._on_slash(interaction, prompt)

        command = app_commands.Command(
            name=slash.name,
            description="Ask the assistant a question",
            callback=slash_callback,
        )
        self._tree.add_command(command)

    async def _ensure_slash_command(self) -> None:
        """Register the slash command with Discord if it is not there yet."""
        name = self.config.slash_command.name
        try:
            existing = await self._tree.fetch_commands()
            if any(getattr(cmd, "name", None) == name for cmd in existing):
                return
            await self._tree.sync()
            logger.info("[%s] registered slash command /%s", self.name, name)
        except Exception as e:
            status = getattr(e, "status", None)
            message = str(e)
            if status == 429 or "rate limit" in message.lower() or "ratelimit" in message.lower():
                logger.warning("[%s] slash command setup failed: %s", self.name, message)
            else:
                logger.error("[%s] slash command setup failed: %s", self.name, message)

    async def _on_slash(self, interaction, prompt: Optional[str]) -> None:
        try:
            await self._handle_slash(interaction, prompt)
        except Exception as e:
            logger.error("[%s] slash handler failed: %s", self.name, e, exc_info=True)
            try:
                if interaction.response.is_done():
                    await interaction.followup.send(content=SLASH_FAILURE, ephemeral=True)
                else:
                    await interaction.response.send_message(content=SLASH_FAILURE, ephemeral=True)
            except Exception as reply_error:
                logger.debug("[%s] could not send slash failure reply: %s", self.name, reply_error)

    async def _handle_slash(self, interaction, prompt: Optional[str]) -> None:
        slash = self.config.slash_command
        if not slash.enabled:
            return
        if self._state != ConnectionState.READY:
            await interaction.response.send_message(content=SLASH_NOT_READY, ephemeral=True)
            return
        user = interaction.user
        if user is None or getattr(user, "bot", False):
            return

        channel = interaction.channel
        channel_type = _type_name(channel)
        is_guild = interaction.guild is not None
        is_group_dm = channel_type == "group"
        is_direct = not is_guild and channel_type == "private"
        dm = self.config.dm

        if is_group_dm and not dm.group_enabled:
            logger.debug("discord: drop slash (group dms disabled)")
            return
        if is_direct and not dm.enabled:
            logger.debug("discord: drop slash (dms disabled)")
            return

        user_id = str(user.id)
        tag = user_tag(user)
        channel_id = str(interaction.channel_id)
        channel_name = getattr(channel, "name", None)
        channel_slug = normalize_slug(channel_name)

        if is_guild:
            guild = interaction.guild
            guild_info = resolve_guild_entry(str(guild.id), getattr(guild, "name", None), self.config.guilds)
            if self.config.guilds and guild_info is None:
                logger.debug("Blocked discord guild %s (not in guilds)", guild.id)
                return
            decision = resolve_channel_config(guild_info, channel_id, channel_name, channel_slug)
            if not decision.allowed:
                logger.debug("Blocked discord channel %s not in guild channel allowlist", channel_id)
                return
            if guild_info and guild_info.users and not is_sender_allowed(
                guild_info.users, entry_id=user_id, name=user.name, tag=tag, prefixes=USER_PREFIXES
            ):
                logger.debug("Blocked discord guild sender %s (not in guild users)", user_id)
                return
        elif is_group_dm:
            if not resolve_group_dm_allowed(dm.group_channels, channel_id, channel_name, channel_slug):
                return
        elif is_direct:
            if not is_sender_allowed(dm.allow_from, entry_id=user_id, name=user.name, tag=tag, prefixes=USER_PREFIXES):
                logger.debug("Blocked unauthorized discord sender %s (not in allow_from)", user_id)
                return

        prompt = (prompt or "").strip()
        if not prompt:
            await interaction.response.send_message(content=SLASH_EMPTY_PROMPT, ephemeral=True)
            return

        await interaction.response.defer(ephemeral=slash.ephemeral)

        context = MessageContext(
            body=prompt,
            from_id=f"discord:{user_id}",
            to=f"slash:{user_id}",
            surface=Platform.DISCORD,
            chat_type="direct",
            sender_name=user.name,
            sender_username=user.name,
            sender_tag=tag,
            sender_id=user_id,
            was_mentioned=True,
            message_sid=str(interaction.id),
            timestamp=_timestamp_ms(getattr(interaction, "created_at", None)),
            session_key=f"{slash.session_prefix}:{user_id}",
        )

        replies: List[ReplyPayload] = []
        if self._slash_handler is not None:
            replies = await self._slash_handler(context)

        messages = build_slash_messages(replies, self.text_limit())
        if not messages:
            await interaction.edit_original_response(content=SLASH_NO_RESPONSE)
            return
        await interaction.edit_original_response(content=messages[0])
        for message in messages[1:]:
            await interaction.followup.send(content=message, ephemeral=slash.ephemeral)

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    def _from_label(self, message, is_direct: bool) -> str:
        author = message.author
        if is_direct:
            return f"{user_tag(author)} user id:{author.id}"
        channel = message.channel
        channel_name = getattr(channel, "name", None) or str(channel.id)
        guild_name = getattr(message.guild, "name", None) or "Guild"
        return f"{guild_name} #{channel_name} channel id:{channel.id}"

    def _system_event_text(self, message, action: str) -> str:
        channel = message.channel
        channel_name = getattr(channel, "name", None) or str(channel.id)
        guild_name = getattr(message.guild, "name", None) if message.guild else None
        if guild_name:
            location = f"{guild_name} #{channel_name}"
        elif _type_name(channel) == "group":
            location = f"Group DM #{channel_name}"
        else:
            location = "DM"
        author_label = user_tag(message.author) or getattr(message.author, "name", "")
        actor = f"{author_label} " if author_label else ""
        return f"Discord system: {actor}{action} in {location}"

    def _forwarded_context(self, message, snapshot) -> str:
        author = message.author
        forwarder_name = user_tag(author) or getattr(author, "name", "")
        forwarder = f"{forwarder_name} id:{author.id}" if forwarder_name else str(author.id)
        snapshot_text = _snapshot_text(snapshot) or "<forwarded message>"

        reference = getattr(message, "reference", None)
        meta = []
        if reference is not None and getattr(reference, "message_id", None):
            meta.append(f"forwarded message id: {reference.message_id}")
        if reference is not None and getattr(reference, "channel_id", None):
            meta.append(f"channel: {reference.channel_id}")
        if reference is not None and getattr(reference, "guild_id", None):
            meta.append(f"guild: {reference.guild_id}")
        body = f"{snapshot_text}\n[{' '.join(meta)}]" if meta else snapshot_text

        timestamp = _timestamp_ms(getattr(snapshot, "created_at", None)) or _timestamp_ms(message.created_at)
        envelope = format_agent_envelope("Discord", f"Forwarded by {forwarder}", timestamp, body)
        return envelope

    async def _on_message(self, message) -> None:
        """Admission and normalization for one inbound Discord message."""
        if self._state != ConnectionState.READY:
            return
        author = getattr(message, "author", None)
        if author is None or getattr(author, "bot", False):
            return

        dm = self.config.dm
        channel = message.channel
        channel_type = _type_name(channel)
        is_group_dm = channel_type == "group"
        is_direct = channel_type == "private"
        is_guild = message.guild is not None

        if is_group_dm and not dm.group_enabled:
            logger.debug("discord: drop group dm (group dms disabled)")
            return
        if is_direct and not dm.enabled:
            logger.debug("discord: drop dm (dms disabled)")
            return

        bot_id = self.bot_id
        was_mentioned = (not is_direct) and bool(bot_id) and any(
            str(getattr(user, "id", "")) == bot_id for user in (getattr(message, "mentions", None) or [])
        )

        snapshots = getattr(message, "message_snapshots", None) or []
        snapshot = snapshots[0] if snapshots else None
        forwarded_text = _snapshot_text(snapshot) if snapshot is not None else ""
        base_text = resolve_message_text(message, forwarded_text)

        message_type = _type_name(message)
        if is_guild and message_type in COMMAND_MESSAGE_TYPES:
            logger.debug("discord: drop channel command message")
            return

        guild_info = None
        if is_guild:
            guild_info = resolve_guild_entry(str(message.guild.id), getattr(message.guild, "name", None), self.config.guilds)
            if self.config.guilds and guild_info is None:
                logger.debug("Blocked discord guild %s (not in guilds)", message.guild.id)
                return

        channel_id = str(channel.id)
        channel_name = getattr(channel, "name", None) if (is_guild or is_group_dm) else None
        channel_slug = normalize_slug(channel_name)
        guild_slug = ""
        if is_guild:
            guild_slug = (guild_info.slug if guild_info else "") or normalize_slug(getattr(message.guild, "name", None))

        decision = None
        if is_guild:
            decision = resolve_channel_config(guild_info, channel_id, channel_name, channel_slug)
            if not decision.allowed:
                logger.debug("Blocked discord channel %s not in guild channel allowlist", channel_id)
                return
        if is_group_dm and not resolve_group_dm_allowed(dm.group_channels, channel_id, channel_name, channel_slug):
            logger.debug("Blocked discord group dm %s", channel_id)
            return

        author_id = str(author.id)
        tag = user_tag(author)

        if is_direct and not is_sender_allowed(dm.allow_from, entry_id=author_id, name=author.name, tag=tag, prefixes=USER_PREFIXES):
            logger.debug("Blocked unauthorized discord sender %s (not in allow_from)", author_id)
            return

        action = SYSTEM_EVENT_ACTIONS.get(message_type)
        if action:
            self.enqueue_system_event(
                self._system_event_text(message, action),
                context_key=f"discord:system:{channel_id}:{message.id}",
            )
            return

        if not base_text:
            logger.debug("discord: drop message %s (no text)", message.id)
            return

        observe_only = False
        if is_guild:
            default_mention = guild_info.require_mention if guild_info else None
            if default_mention is None:
                default_mention = self.config.require_mention
            require_mention = resolve_require_mention(decision, default_mention)
            if require_mention and bot_id and not was_mentioned:
                if matches_command_prefix(base_text, self.config.command_prefixes):
                    logger.debug("discord: command prefix bypasses mention gating")
                else:
                    logger.debug("discord: skipping guild message %s (no-mention)", message.id)
                    observe_only = True

            if guild_info and guild_info.users and not is_sender_allowed(
                guild_info.users, entry_id=author_id, name=author.name, tag=tag, prefixes=USER_PREFIXES
            ):
                logger.debug("Blocked discord guild sender %s (not in guild users)", author_id)
                observe_only = True

        display_name = getattr(author, "display_name", None) or tag
        source = self.build_source(
            chat_id=channel_id,
            chat_name=channel_name,
            chat_type="direct" if is_direct else "group",
            user_id=author_id,
            user_name=display_name,
            username=author.name,
            user_tag=tag,
            space_id=str(message.guild.id) if is_guild else None,
            space_name=getattr(message.guild, "name", None) if is_guild else None,
        )

        attachments = getattr(message, "attachments", None) or []
        group_room = f"#{channel_slug}" if is_guild and channel_slug else None
        event = MessageEvent(
            text=base_text,
            message_type=MessageType.TEXT,
            source=source,
            raw_message=message,
            message_id=str(message.id),
            timestamp=_timestamp_ms(message.created_at),
            media_urls=[attachments[0].url] if attachments else [],
            media_types=[attachments[0].content_type or "unknown"] if attachments else [],
            was_mentioned=was_mentioned,
            observe_only=observe_only,
            from_id=f"discord:{author_id}" if is_direct else f"group:{channel_id}",
            to=f"user:{author_id}" if is_direct else f"channel:{channel_id}",
            from_label=self._from_label(message, is_direct),
            history_key=None if is_direct else channel_id,
            group_subject=None if is_direct else group_room,
            group_room=group_room,
            group_space=(guild_slug or None) if is_guild else None,
            forwarded_context=self._forwarded_context(message, snapshot) if snapshot is not None else None,
        )
        await self.handle_message(event)

    async def resolve_reply_context(self, event: MessageEvent) -> Optional[str]:
        """Envelope for the message this one replies to, if any."""
        message = event.raw_message
        reference = getattr(message, "reference", None) if message is not None else None
        if reference is None or not getattr(reference, "message_id", None):
            return None
        if getattr(message, "message_snapshots", None):
            return None
        try:
            referenced = getattr(reference, "resolved", None)
            if referenced is None or not hasattr(referenced, "author"):
                referenced = await message.channel.fetch_message(int(reference.message_id))
            if referenced is None or getattr(referenced, "author", None) is None:
                return None
            text = resolve_message_text(referenced)
            if not text:
                return None
            ref_author = referenced.author
            is_direct = _type_name(referenced.channel) == "private"
            if is_direct:
                from_label = f"{user_tag(ref_author)} user id:{ref_author.id}"
            else:
                from_label = getattr(ref_author, "display_name", None) or user_tag(ref_author)
            body = (
                f"{text}\n[discord message id: {referenced.id} channel: {referenced.channel.id} "
                f"from: {user_tag(ref_author)} user id:{ref_author.id}]"
            )
            return format_agent_envelope("Discord", from_label, _timestamp_ms(referenced.created_at), body)
        except Exception as e:
            logger.debug("discord: failed to fetch reply context for %s: %s", event.message_id, e)
            return None

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    async def _on_raw_reaction(self, payload, action: str) -> None:
        try:
            await self._handle_reaction(payload, action)
        except Exception as e:
            logger.error("[%s] reaction handler failed: %s", self.name, e)

    async def _handle_reaction(self, payload, action: str) -> None:
        if self._state != ConnectionState.READY or self._client is None:
            return
        if payload.guild_id is None:
            return

        bot_id = self.bot_id
        user_id = str(payload.user_id)
        if bot_id and user_id == bot_id:
            return

        user = getattr(payload, "member", None) or self._client.get_user(payload.user_id)
        if user is None:
            user = await self._client.fetch_user(payload.user_id)
        if getattr(user, "bot", False):
            return

        guild = self._client.get_guild(payload.guild_id)
        guild_name = getattr(guild, "name", None)
        guild_info = resolve_guild_entry(str(payload.guild_id), guild_name, self.config.guilds)
        if self.config.guilds and guild_info is None:
            return

        channel = self._client.get_channel(payload.channel_id)
        if channel is None:
            channel = await self._client.fetch_channel(payload.channel_id)
        channel_name = getattr(channel, "name", None)
        channel_slug = normalize_slug(channel_name)
        decision = resolve_channel_config(guild_info, str(payload.channel_id), channel_name, channel_slug)
        if not decision.allowed:
            return

        message = await channel.fetch_message(payload.message_id)
        message_author = getattr(message, "author", None)
        mode = (guild_info.reaction_notifications if guild_info else None) or "own"
        if not should_emit_reaction_notification(
            mode,
            user_id=user_id,
            bot_id=bot_id,
            message_author_id=str(message_author.id) if message_author is not None else None,
            user_name=getattr(user, "name", None),
            user_tag=user_tag(user),
            allowlist=guild_info.users if guild_info else None,
        ):
            return

        emoji_label = format_reaction_emoji(payload.emoji)
        actor = user_tag(user) or getattr(user, "name", None) or user_id
        guild_slug = (guild_info.slug if guild_info else "") or normalize_slug(guild_name) or str(payload.guild_id)
        channel_label = f"#{channel_slug}" if channel_slug else f"#{payload.channel_id}"
        text = f"Discord reaction {action}: {emoji_label} by {actor} on {guild_slug} {channel_label} msg {payload.message_id}"
        author_label = user_tag(message_author) if message_author is not None else ""
        if author_label:
            text = f"{text} from {author_label}"
        self.enqueue_system_event(
            text,
            context_key=f"discord:reaction:{action}:{payload.message_id}:{user_id}:{emoji_label}",
        )

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _resolve_channel(self, chat_id: str):
        target = DeliveryTarget.parse(chat_id)
        if target.kind == "user":
            user = self._client.get_user(int(target.id))
            if user is None:
                user = await self._client.fetch_user(int(target.id))
            return user.dm_channel or await user.create_dm()
        channel = self._client.get_channel(int(target.id))
        if channel is None:
            channel = await self._client.fetch_channel(int(target.id))
        return channel

    def _reference(self, channel, reply_to: Optional[str]):
        if not reply_to:
            return None
        return discord.MessageReference(
            message_id=int(reply_to),
            channel_id=channel.id,
            fail_if_not_exists=False,
        )

    async def send(
        self,
        chat_id: str,
        content: str,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SendResult:
        """Send one text message (already chunked) to a Discord target."""
        if not self._client:
            return SendResult(success=False, error="Not connected")
        if len(content) > self.MAX_MESSAGE_LENGTH:
            return SendResult(success=False, error=f"Message exceeds {self.MAX_MESSAGE_LENGTH} characters")

        try:
            channel = await self._resolve_channel(chat_id)
            if channel is None:
                return SendResult(success=False, error=f"Channel {chat_id} not found")
            msg = await channel.send(
                content=self.format_message(content),
                reference=self._reference(channel, reply_to),
            )
            return SendResult(success=True, message_id=str(msg.id))
        except Exception as e:
            return SendResult(success=False, error=str(e))

    async def _load_media(self, media_url: str):
        """Return (bytes, filename) for a URL or local path."""
        if os.path.exists(media_url):
            with open(media_url, "rb") as f:
                return f.read(), os.path.basename(media_url)

        async with aiohttp.ClientSession() as session:
            async with session.get(media_url, timeout=aiohttp.ClientTimeout(total=30)) as resp:
                if resp.status != 200:
                    raise Exception(f"Failed to download media: HTTP {resp.status}")
                data = await resp.read()
                filename = media_url.rsplit("/", 1)[-1].split("?", 1)[0] or "file"
                if "." not in filename:
                    content_type = resp.headers.get("content-type", "")
                    ext = "png"
                    if "jpeg" in content_type or "jpg" in content_type:
                        ext = "jpg"
                    elif "gif" in content_type:
                        ext = "gif"
                    elif "webp" in content_type:
                        ext = "webp"
                    elif "mp4" in content_type:
                        ext = "mp4"
                    filename = f"{filename}.{ext}"
                return data, filename

    async def send_media(
        self,
        chat_id: str,
        media_url: str,
        caption: Optional[str] = None,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """Send media as a Discord file attachment."""
        if not self._client:
            return SendResult(success=False, error="Not connected")

        try:
            channel = await self._resolve_channel(chat_id)
            if channel is None:
                return SendResult(success=False, error=f"Channel {chat_id} not found")

            data, filename = await self._load_media(media_url)
            if len(data) > self.config.media_max_bytes:
                return SendResult(
                    success=False,
                    error=f"Media exceeds {self.config.media_max_mb}MB limit ({len(data)} bytes)",
                )

            file = discord.File(io.BytesIO(data), filename=filename)
            msg = await channel.send(
                content=caption[:self.MAX_MESSAGE_LENGTH] if caption else None,
                file=file,
                reference=self._reference(channel, reply_to),
            )
            return SendResult(success=True, message_id=str(msg.id))
        except Exception as e:
            return SendResult(success=False, error=str(e))

    async def send_typing(self, chat_id: str) -> None:
        """Send typing indicator."""
        if self._client:
            try:
                channel = await self._resolve_channel(chat_id)
                if channel:
                    await channel.typing()
            except Exception:
                pass  # Ignore typing indicator failures
