"""
Tests for gateway/config.py: defaults, file layering, env overrides and
validation fallbacks.
"""

import json

import pytest

from gateway.config import (
    GatewayConfig,
    GuildConfig,
    Platform,
    PlatformConfig,
    SlashCommandConfig,
    load_gateway_config,
    save_gateway_config,
    validate_gateway_config,
)

ENV_NAMES = (
    "TELEGRAM_BOT_TOKEN",
    "DISCORD_BOT_TOKEN",
    "WHATSAPP_ENABLED",
    "TELEGRAM_ALLOWED_USERS",
    "DISCORD_ALLOWED_USERS",
    "WHATSAPP_ALLOWED_USERS",
    "RELAY_RPC_HOST",
    "RELAY_RPC_PORT",
    "RELAY_RPC_TOKEN",
    "RELAY_AGENT_URL",
    "RELAY_AGENT_TOKEN",
)


@pytest.fixture
def relay_home(tmp_path, monkeypatch):
    monkeypatch.setenv("RELAY_HOME", str(tmp_path))
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return tmp_path


class TestDefaults:
    def test_platform_defaults(self):
        config = PlatformConfig.from_dict({})
        assert config.enabled is False
        assert config.dm.enabled is True
        assert config.dm.group_enabled is False
        assert config.require_mention is True
        assert config.reply_to_mode == "first"
        assert config.history_limit == 20
        assert config.text_chunk_limit == 4000
        assert config.media_max_bytes == 8 * 1024 * 1024

    def test_slash_command_absent_is_disabled(self):
        assert SlashCommandConfig.from_dict(None).enabled is False

    def test_slash_command_section_enables(self):
        slash = SlashCommandConfig.from_dict({})
        assert slash.enabled is True
        assert slash.name == "relay"
        assert slash.session_prefix == "discord:slash"
        assert slash.ephemeral is True

    def test_slash_command_blank_name(self):
        assert SlashCommandConfig.from_dict({"name": "  "}).name == "relay"

    def test_invalid_reaction_mode_falls_back(self):
        assert GuildConfig.from_dict({"reaction_notifications": "loud"}).reaction_notifications == "own"

    def test_guild_channels_parsed(self):
        guild = GuildConfig.from_dict({"channels": {"general": {"require_mention": False}}})
        assert guild.channels["general"].allow is True
        assert guild.channels["general"].require_mention is False

    def test_unknown_platform_ignored(self):
        config = GatewayConfig.from_dict({"platforms": {"irc": {"enabled": True}}})
        assert config.platforms == {}

    def test_rpc_defaults(self):
        config = GatewayConfig.from_dict({})
        assert config.rpc.url == "ws://127.0.0.1:18789"
        assert config.session_main_key == "main"
        assert config.agent.timeout_seconds == 600


class TestValidation:
    def test_invalid_values_replaced(self):
        config = GatewayConfig(platforms={
            Platform.DISCORD: PlatformConfig(
                reply_to_mode="sometimes",
                history_limit=-5,
                text_chunk_limit=0,
                media_max_mb=-1,
            ),
        })
        validate_gateway_config(config)
        discord = config.platforms[Platform.DISCORD]
        assert discord.reply_to_mode == "first"
        assert discord.history_limit == 0
        assert discord.text_chunk_limit == 4000
        assert discord.media_max_mb == 8

    def test_non_numeric_values_fall_back(self, caplog):
        config = GatewayConfig(platforms={
            Platform.TELEGRAM: PlatformConfig(
                history_limit="lots",
                text_chunk_limit="big",
                media_max_mb=None,
            ),
        })
        with caplog.at_level("WARNING", logger="gateway.config"):
            validate_gateway_config(config)

        telegram = config.platforms[Platform.TELEGRAM]
        assert telegram.history_limit == 20
        assert telegram.text_chunk_limit == 4000
        assert telegram.media_max_mb == 8
        assert "invalid history_limit='lots'" in caplog.text

    def test_numeric_strings_accepted(self):
        config = GatewayConfig(platforms={
            Platform.DISCORD: PlatformConfig(history_limit="5", text_chunk_limit="1500", media_max_mb="2.5"),
        })
        validate_gateway_config(config)
        discord = config.platforms[Platform.DISCORD]
        assert discord.history_limit == 5
        assert discord.text_chunk_limit == 1500
        assert discord.media_max_mb == 2.5

    def test_bad_yaml_values_do_not_break_startup(self, relay_home):
        (relay_home / "config.yaml").write_text(
            "gateway:\n"
            "  platforms:\n"
            "    discord:\n"
            "      enabled: true\n"
            "      history_limit: plenty\n"
            "      media_max_mb: [1, 2]\n",
            encoding="utf-8",
        )
        discord = load_gateway_config().platforms[Platform.DISCORD]
        assert discord.history_limit == 20
        assert discord.media_max_mb == 8


class TestLoadGatewayConfig:
    def test_yaml_then_json_then_env(self, relay_home, monkeypatch):
        (relay_home / "config.yaml").write_text(
            "gateway:\n"
            "  platforms:\n"
            "    discord:\n"
            "      enabled: true\n"
            "      token: yaml-token\n"
            "      history_limit: 5\n"
            "      reply_to_mode: all\n",
            encoding="utf-8",
        )
        (relay_home / "gateway.json").write_text(json.dumps({
            "platforms": {"discord": {"history_limit": 7}},
            "rpc": {"port": 19000},
        }), encoding="utf-8")
        monkeypatch.setenv("DISCORD_BOT_TOKEN", "env-token")
        monkeypatch.setenv("DISCORD_ALLOWED_USERS", "111, 222")

        config = load_gateway_config()
        discord = config.platforms[Platform.DISCORD]
        assert discord.token == "env-token"
        assert discord.history_limit == 7
        assert discord.reply_to_mode == "all"
        assert discord.dm.allow_from == ["111", "222"]
        assert config.rpc.port == 19000

    def test_env_only(self, relay_home, monkeypatch):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "tg")
        monkeypatch.setenv("WHATSAPP_ENABLED", "yes")
        monkeypatch.setenv("RELAY_RPC_PORT", "not-a-port")
        monkeypatch.setenv("RELAY_AGENT_URL", "http://agent.local/turn")

        config = load_gateway_config()
        assert config.platforms[Platform.TELEGRAM].enabled is True
        assert config.platforms[Platform.WHATSAPP].enabled is True
        assert config.rpc.port == 18789
        assert config.agent.url == "http://agent.local/turn"

    def test_broken_yaml_is_ignored(self, relay_home):
        (relay_home / "config.yaml").write_text("gateway: [unclosed", encoding="utf-8")
        config = load_gateway_config()
        assert config.platforms == {}

    def test_save_and_reload(self, relay_home):
        config = GatewayConfig(platforms={
            Platform.TELEGRAM: PlatformConfig(enabled=True, token="abc", history_limit=3),
        })
        save_gateway_config(config)

        loaded = load_gateway_config()
        assert loaded.platforms[Platform.TELEGRAM].token == "abc"
        assert loaded.platforms[Platform.TELEGRAM].history_limit == 3
