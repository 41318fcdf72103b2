"""
Gateway configuration management.

Handles loading and validating configuration for:
- Connected platforms (Telegram, Discord, WhatsApp)
- Admission policy (DM allow lists, guild/channel/group entries, mention gating)
- Delivery preferences (chunk limits, reply threading, media caps)
- The local RPC surface and the agent backend
"""

import logging
import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum

logger = logging.getLogger(__name__)


def get_relay_home() -> Path:
    """Resolve the gateway home directory (respects RELAY_HOME override)."""
    return Path(os.getenv("RELAY_HOME", Path.home() / ".relay"))


class Platform(Enum):
    """Supported messaging surfaces."""
    TELEGRAM = "telegram"
    DISCORD = "discord"
    WHATSAPP = "whatsapp"
    WEBCHAT = "webchat"


REPLY_TO_MODES = ("off", "first", "all")
REACTION_NOTIFICATION_MODES = ("off", "own", "all", "allowlist")

# Raw allow-list entries as they appear in config files (ids may be numbers)
AllowEntries = List[Union[str, int]]


def _split_env_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class ChannelConfig:
    """Per-channel override inside a guild entry."""
    allow: bool = True
    require_mention: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"allow": self.allow}
        if self.require_mention is not None:
            result["require_mention"] = self.require_mention
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelConfig":
        return cls(
            allow=data.get("allow", True),
            require_mention=data.get("require_mention"),
        )


@dataclass
class GuildConfig:
    """
    Discord guild entry.

    Keyed in `PlatformConfig.guilds` by guild id, guild slug, or "*".
    """
    slug: Optional[str] = None
    require_mention: Optional[bool] = None
    reaction_notifications: Optional[str] = None  # off | own | all | allowlist
    users: AllowEntries = field(default_factory=list)
    channels: Dict[str, ChannelConfig] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "users": list(self.users),
            "channels": {k: v.to_dict() for k, v in self.channels.items()},
        }
        if self.slug:
            result["slug"] = self.slug
        if self.require_mention is not None:
            result["require_mention"] = self.require_mention
        if self.reaction_notifications:
            result["reaction_notifications"] = self.reaction_notifications
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuildConfig":
        channels = {}
        for key, channel_data in (data.get("channels") or {}).items():
            channels[str(key)] = ChannelConfig.from_dict(channel_data or {})

        reaction_mode = data.get("reaction_notifications")
        if reaction_mode is not None and reaction_mode not in REACTION_NOTIFICATION_MODES:
            logger.warning(
                "Invalid reaction_notifications=%r (expected one of %s). Using 'own'.",
                reaction_mode, ", ".join(REACTION_NOTIFICATION_MODES),
            )
            reaction_mode = "own"

        return cls(
            slug=data.get("slug"),
            require_mention=data.get("require_mention"),
            reaction_notifications=reaction_mode,
            users=list(data.get("users") or []),
            channels=channels,
        )


@dataclass
class GroupConfig:
    """
    Telegram / WhatsApp group entry.

    Keyed in `PlatformConfig.groups` by chat id or "*".
    """
    allow: bool = True
    require_mention: Optional[bool] = None
    users: AllowEntries = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"allow": self.allow, "users": list(self.users)}
        if self.require_mention is not None:
            result["require_mention"] = self.require_mention
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GroupConfig":
        return cls(
            allow=data.get("allow", True),
            require_mention=data.get("require_mention"),
            users=list(data.get("users") or []),
        )


@dataclass
class DmPolicy:
    """Direct-message and group-DM toggles."""
    enabled: bool = True
    allow_from: AllowEntries = field(default_factory=list)
    group_enabled: bool = False
    group_channels: AllowEntries = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "allow_from": list(self.allow_from),
            "group_enabled": self.group_enabled,
            "group_channels": list(self.group_channels),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DmPolicy":
        return cls(
            enabled=data.get("enabled", True),
            allow_from=list(data.get("allow_from") or []),
            group_enabled=data.get("group_enabled", False),
            group_channels=list(data.get("group_channels") or []),
        )


@dataclass
class SlashCommandConfig:
    """Discord slash command registration."""
    enabled: bool = False
    name: str = "relay"
    session_prefix: str = "discord:slash"
    ephemeral: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "name": self.name,
            "session_prefix": self.session_prefix,
            "ephemeral": self.ephemeral,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SlashCommandConfig":
        # A present section enables the command unless it says otherwise
        if data is None:
            return cls()
        return cls(
            enabled=data.get("enabled") is not False,
            name=(data.get("name") or "").strip() or "relay",
            session_prefix=(data.get("session_prefix") or "").strip() or "discord:slash",
            ephemeral=data.get("ephemeral") is not False,
        )


@dataclass
class PlatformConfig:
    """Configuration for a single messaging platform."""
    enabled: bool = False
    token: Optional[str] = None  # Bot token (Telegram, Discord)

    # Admission policy
    dm: DmPolicy = field(default_factory=DmPolicy)
    guilds: Dict[str, GuildConfig] = field(default_factory=dict)
    groups: Dict[str, GroupConfig] = field(default_factory=dict)
    require_mention: bool = True
    command_prefixes: List[str] = field(default_factory=list)

    # Delivery and context
    media_max_mb: float = 8
    text_chunk_limit: int = 4000
    history_limit: int = 20
    reply_to_mode: str = "first"  # "off", "first", or "all"
    slash_command: SlashCommandConfig = field(default_factory=SlashCommandConfig)

    # Platform-specific settings
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def media_max_bytes(self) -> int:
        return int(self.media_max_mb * 1024 * 1024)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "enabled": self.enabled,
            "dm": self.dm.to_dict(),
            "guilds": {k: v.to_dict() for k, v in self.guilds.items()},
            "groups": {k: v.to_dict() for k, v in self.groups.items()},
            "require_mention": self.require_mention,
            "command_prefixes": list(self.command_prefixes),
            "media_max_mb": self.media_max_mb,
            "text_chunk_limit": self.text_chunk_limit,
            "history_limit": self.history_limit,
            "reply_to_mode": self.reply_to_mode,
            "slash_command": self.slash_command.to_dict(),
            "extra": self.extra,
        }
        if self.token:
            result["token"] = self.token
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlatformConfig":
        guilds = {
            str(key): GuildConfig.from_dict(entry or {})
            for key, entry in (data.get("guilds") or {}).items()
        }
        groups = {
            str(key): GroupConfig.from_dict(entry or {})
            for key, entry in (data.get("groups") or {}).items()
        }

        return cls(
            enabled=data.get("enabled", False),
            token=data.get("token"),
            dm=DmPolicy.from_dict(data.get("dm") or {}),
            guilds=guilds,
            groups=groups,
            require_mention=data.get("require_mention", True),
            command_prefixes=list(data.get("command_prefixes") or []),
            media_max_mb=data.get("media_max_mb", 8),
            text_chunk_limit=data.get("text_chunk_limit", 4000),
            history_limit=data.get("history_limit", 20),
            reply_to_mode=data.get("reply_to_mode", "first"),
            slash_command=SlashCommandConfig.from_dict(data.get("slash_command")),
            extra=data.get("extra", {}),
        )


@dataclass
class RpcConfig:
    """Local WebSocket control surface."""
    host: str = "127.0.0.1"
    port: int = 18789
    token: Optional[str] = None

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"host": self.host, "port": self.port}
        if self.token:
            result["token"] = self.token
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RpcConfig":
        return cls(
            host=data.get("host", "127.0.0.1"),
            port=int(data.get("port", 18789)),
            token=data.get("token"),
        )


@dataclass
class AgentConfig:
    """Where conversational turns are sent for reply generation."""
    url: Optional[str] = None
    token: Optional[str] = None
    timeout_seconds: float = 600

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"timeout_seconds": self.timeout_seconds}
        if self.url:
            result["url"] = self.url
        if self.token:
            result["token"] = self.token
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        return cls(
            url=data.get("url"),
            token=data.get("token"),
            timeout_seconds=data.get("timeout_seconds", 600),
        )


@dataclass
class GatewayConfig:
    """
    Main gateway configuration.

    Loaded once at startup and treated as read-only afterwards.
    """
    # Platform configurations
    platforms: Dict[Platform, PlatformConfig] = field(default_factory=dict)

    # Storage paths
    sessions_dir: Path = field(default_factory=lambda: get_relay_home() / "sessions")

    # Session key that receives direct-message turns and proactive sends
    session_main_key: str = "main"

    rpc: RpcConfig = field(default_factory=RpcConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platforms": {
                p.value: c.to_dict() for p, c in self.platforms.items()
            },
            "sessions_dir": str(self.sessions_dir),
            "session_main_key": self.session_main_key,
            "rpc": self.rpc.to_dict(),
            "agent": self.agent.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GatewayConfig":
        platforms = {}
        for platform_name, platform_data in data.get("platforms", {}).items():
            try:
                platform = Platform(platform_name)
                platforms[platform] = PlatformConfig.from_dict(platform_data or {})
            except ValueError:
                logger.warning("Ignoring unknown platform %r in gateway config", platform_name)

        sessions_dir = get_relay_home() / "sessions"
        if "sessions_dir" in data:
            sessions_dir = Path(data["sessions_dir"]).expanduser()

        return cls(
            platforms=platforms,
            sessions_dir=sessions_dir,
            session_main_key=(data.get("session_main_key") or "main").strip() or "main",
            rpc=RpcConfig.from_dict(data.get("rpc") or {}),
            agent=AgentConfig.from_dict(data.get("agent") or {}),
        )


def load_gateway_config() -> GatewayConfig:
    """
    Load gateway configuration from multiple sources.

    Priority (highest to lowest):
    1. Environment variables
    2. <RELAY_HOME>/gateway.json
    3. config.yaml gateway section
    4. Defaults
    """
    home = get_relay_home()
    data: Dict[str, Any] = {}

    # config.yaml is the user-facing file; its gateway section is the base layer
    config_yaml_path = home / "config.yaml"
    if config_yaml_path.exists():
        try:
            import yaml
            with open(config_yaml_path, encoding="utf-8") as f:
                yaml_cfg = yaml.safe_load(f) or {}
            section = yaml_cfg.get("gateway")
            if isinstance(section, dict):
                data = section
        except Exception as e:
            logger.warning("Failed to load %s: %s", config_yaml_path, e)

    gateway_config_path = home / "gateway.json"
    if gateway_config_path.exists():
        try:
            with open(gateway_config_path, "r", encoding="utf-8") as f:
                data = _merge_dicts(data, json.load(f))
        except Exception as e:
            logger.warning("Failed to load %s: %s", gateway_config_path, e)

    config = GatewayConfig.from_dict(data)

    # Override with environment variables
    _apply_env_overrides(config)

    validate_gateway_config(config)
    return config


def _as_number(value: Any, cast: Callable[[Any], Any]) -> Any:
    """Cast a numeric config value, or None when it can't be converted."""
    try:
        return cast(value)
    except (TypeError, ValueError):
        return None


def validate_gateway_config(config: GatewayConfig) -> None:
    """Replace invalid values with defaults, logging a warning for each."""
    for platform, pconfig in config.platforms.items():
        if pconfig.reply_to_mode not in REPLY_TO_MODES:
            logger.warning(
                "%s: invalid reply_to_mode=%r (must be off, first or all). Using 'first'.",
                platform.value, pconfig.reply_to_mode,
            )
            pconfig.reply_to_mode = "first"

        history_limit = _as_number(pconfig.history_limit, int)
        if history_limit is None:
            logger.warning(
                "%s: invalid history_limit=%r. Using 20.",
                platform.value, pconfig.history_limit,
            )
            history_limit = 20
        elif history_limit < 0:
            logger.warning(
                "%s: invalid history_limit=%r (must be >= 0). Using 0.",
                platform.value, pconfig.history_limit,
            )
            history_limit = 0
        pconfig.history_limit = history_limit

        text_chunk_limit = _as_number(pconfig.text_chunk_limit, int)
        if text_chunk_limit is None or text_chunk_limit <= 0:
            logger.warning(
                "%s: invalid text_chunk_limit=%r. Using 4000.",
                platform.value, pconfig.text_chunk_limit,
            )
            text_chunk_limit = 4000
        pconfig.text_chunk_limit = text_chunk_limit

        media_max_mb = _as_number(pconfig.media_max_mb, float)
        if media_max_mb is None or media_max_mb <= 0:
            logger.warning(
                "%s: invalid media_max_mb=%r. Using 8.",
                platform.value, pconfig.media_max_mb,
            )
            media_max_mb = 8
        pconfig.media_max_mb = media_max_mb

        # Empty bot tokens won't connect and the cause is confusing without a log line
        if pconfig.enabled and pconfig.token is not None and not pconfig.token.strip():
            logger.warning(
                "%s is enabled but its token is empty. "
                "The adapter will likely fail to connect.",
                platform.value,
            )


def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _ensure_platform(config: GatewayConfig, platform: Platform) -> PlatformConfig:
    if platform not in config.platforms:
        config.platforms[platform] = PlatformConfig()
    return config.platforms[platform]


def _apply_env_overrides(config: GatewayConfig) -> None:
    """Apply environment variable overrides to config."""

    # Telegram
    telegram_token = os.getenv("TELEGRAM_BOT_TOKEN")
    if telegram_token:
        pconfig = _ensure_platform(config, Platform.TELEGRAM)
        pconfig.enabled = True
        pconfig.token = telegram_token

    # Discord
    discord_token = os.getenv("DISCORD_BOT_TOKEN")
    if discord_token:
        pconfig = _ensure_platform(config, Platform.DISCORD)
        pconfig.enabled = True
        pconfig.token = discord_token

    # WhatsApp (authenticates through the bridge session)
    whatsapp_enabled = os.getenv("WHATSAPP_ENABLED", "").lower() in ("true", "1", "yes")
    if whatsapp_enabled:
        _ensure_platform(config, Platform.WHATSAPP).enabled = True

    # DM allow lists
    allow_env_map = {
        Platform.TELEGRAM: "TELEGRAM_ALLOWED_USERS",
        Platform.DISCORD: "DISCORD_ALLOWED_USERS",
        Platform.WHATSAPP: "WHATSAPP_ALLOWED_USERS",
    }
    for platform, env_name in allow_env_map.items():
        raw = os.getenv(env_name, "").strip()
        if raw and platform in config.platforms:
            allow_from = config.platforms[platform].dm.allow_from
            for entry in _split_env_list(raw):
                if entry not in allow_from:
                    allow_from.append(entry)

    # RPC surface
    rpc_host = os.getenv("RELAY_RPC_HOST")
    if rpc_host:
        config.rpc.host = rpc_host
    rpc_port = os.getenv("RELAY_RPC_PORT")
    if rpc_port:
        try:
            config.rpc.port = int(rpc_port)
        except ValueError:
            logger.warning("Ignoring invalid RELAY_RPC_PORT=%r", rpc_port)
    rpc_token = os.getenv("RELAY_RPC_TOKEN")
    if rpc_token:
        config.rpc.token = rpc_token

    # Agent backend
    agent_url = os.getenv("RELAY_AGENT_URL")
    if agent_url:
        config.agent.url = agent_url
    agent_token = os.getenv("RELAY_AGENT_TOKEN")
    if agent_token:
        config.agent.token = agent_token


def save_gateway_config(config: GatewayConfig) -> None:
    """Save gateway configuration to <RELAY_HOME>/gateway.json."""
    gateway_config_path = get_relay_home() / "gateway.json"
    gateway_config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(gateway_config_path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
