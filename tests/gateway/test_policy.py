"""
Tests for the admission policy in gateway/policy.py.

Covers: allow-list parsing and matching, guild/channel resolution, group DM
admission, mention precedence, reaction notification modes.
"""

import pytest

from gateway.config import ChannelConfig, GroupConfig, GuildConfig
from gateway.policy import (
    AllowEntryKind,
    ChannelDecision,
    is_sender_allowed,
    matches_command_prefix,
    normalize_allow_list,
    normalize_slug,
    parse_allow_entry,
    resolve_channel_config,
    resolve_group_dm_allowed,
    resolve_group_entry,
    resolve_guild_entry,
    resolve_require_mention,
    should_emit_reaction_notification,
)


class TestParseAllowEntry:
    def test_wildcard(self):
        assert parse_allow_entry("*").kind == AllowEntryKind.WILDCARD

    def test_prefixed_numeric_id(self):
        entry = parse_allow_entry("discord:123")
        assert entry.kind == AllowEntryKind.NUMERIC_ID
        assert entry.value == "123"

    def test_integer_entry(self):
        entry = parse_allow_entry(123)
        assert entry.kind == AllowEntryKind.NUMERIC_ID
        assert entry.value == "123"

    def test_mention_forms(self):
        assert parse_allow_entry("<@!456>").value == "456"
        assert parse_allow_entry("user:<@789>").kind == AllowEntryKind.MENTION

    def test_name_drops_leading_at(self):
        entry = parse_allow_entry("@Alice Smith")
        assert entry.kind == AllowEntryKind.NAME
        assert entry.value == "Alice Smith"

    def test_blank_entry(self):
        assert parse_allow_entry("   ") is None


class TestNormalizeSlug:
    def test_folds_punctuation_and_spaces(self):
        assert normalize_slug("#General Chat!") == "general-chat"

    def test_underscores_and_runs(self):
        assert normalize_slug("dev__ops  team") == "dev-ops-team"

    def test_empty(self):
        assert normalize_slug(None) == ""
        assert normalize_slug("  ") == ""


class TestSenderAllowed:
    def test_empty_list_is_unrestricted(self):
        assert is_sender_allowed([], entry_id="1") is True
        assert is_sender_allowed(None, entry_id="1") is True

    def test_blank_entries_admit_nobody(self):
        assert is_sender_allowed(["  ", ""], entry_id="1") is False

    def test_id_match(self):
        assert is_sender_allowed(["123"], entry_id="123") is True
        assert is_sender_allowed(["123"], entry_id="456") is False

    def test_name_is_case_insensitive(self):
        assert is_sender_allowed(["alice"], name="Alice") is True

    def test_slug_match_against_tag(self):
        assert is_sender_allowed(["Alice Smith"], tag="alice-smith") is True

    def test_wildcard(self):
        assert is_sender_allowed(["*"], entry_id="999", name="anyone") is True

    def test_normalize_returns_none_for_unconfigured(self):
        assert normalize_allow_list(None) is None
        allow_list = normalize_allow_list(["<@1>", "bob"])
        assert allow_list.ids == {"1"}
        assert "bob" in allow_list.names


class TestGuildEntries:
    def test_no_entries(self):
        assert resolve_guild_entry("1", "Guild", {}) is None
        assert resolve_guild_entry("1", "Guild", None) is None

    def test_exact_id(self):
        entries = {"123": GuildConfig(slug="home", require_mention=False)}
        guild = resolve_guild_entry("123", "Whatever", entries)
        assert guild.slug == "home"
        assert guild.require_mention is False

    def test_slug_key(self):
        entries = {"my-server": GuildConfig()}
        guild = resolve_guild_entry("9", "My Server", entries)
        assert guild is not None
        assert guild.slug == "my-server"

    def test_slug_field(self):
        entries = {"abc": GuildConfig(slug="My Server", users=["42"])}
        guild = resolve_guild_entry("9", "my server", entries)
        assert guild.users == ["42"]

    def test_wildcard_fallback(self):
        entries = {"*": GuildConfig(reaction_notifications="all")}
        guild = resolve_guild_entry("9", "Other", entries)
        assert guild.reaction_notifications == "all"

    def test_unmatched(self):
        entries = {"123": GuildConfig()}
        assert resolve_guild_entry("9", "Other", entries) is None


class TestChannelConfig:
    def _guild(self, channels):
        return resolve_guild_entry("1", "g", {"1": GuildConfig(channels=channels)})

    def test_no_channel_list_allows_everything(self):
        decision = resolve_channel_config(self._guild({}), "55")
        assert decision.allowed is True
        assert decision.require_mention is None

    def test_listed_by_slug(self):
        guild = self._guild({"general": ChannelConfig(require_mention=False)})
        decision = resolve_channel_config(guild, "55", "General", "general")
        assert decision.allowed is True
        assert decision.require_mention is False

    def test_listed_by_hash_slug(self):
        guild = self._guild({"#random": ChannelConfig()})
        assert resolve_channel_config(guild, "55", "random", "random").allowed is True

    def test_unlisted_channel_rejected(self):
        guild = self._guild({"general": ChannelConfig()})
        assert resolve_channel_config(guild, "55", "other", "other").allowed is False

    def test_explicit_deny(self):
        guild = self._guild({"55": ChannelConfig(allow=False)})
        assert resolve_channel_config(guild, "55").allowed is False


class TestGroupDmAllowed:
    def test_unrestricted(self):
        assert resolve_group_dm_allowed(None, "1") is True

    def test_channel_prefix(self):
        assert resolve_group_dm_allowed(["channel:55"], "55") is True

    def test_unlisted(self):
        assert resolve_group_dm_allowed(["55"], "66", channel_slug="other") is False

    def test_by_slug(self):
        assert resolve_group_dm_allowed(["friends"], "66", channel_slug="friends") is True


class TestRequireMention:
    def test_channel_wins(self):
        assert resolve_require_mention(ChannelDecision(True, False), True) is False

    def test_guild_default(self):
        assert resolve_require_mention(ChannelDecision(True), False) is False

    def test_fallback(self):
        assert resolve_require_mention(None, None) is True
        assert resolve_require_mention(None, None, fallback=False) is False


class TestReactionNotifications:
    def test_off(self):
        assert should_emit_reaction_notification("off", "u1", "bot", "bot") is False

    def test_own_is_default(self):
        assert should_emit_reaction_notification(None, "u1", "bot", "bot") is True
        assert should_emit_reaction_notification(None, "u1", "bot", "someone") is False

    def test_own_without_bot_id(self):
        assert should_emit_reaction_notification("own", "u1", None, "bot") is False

    def test_all(self):
        assert should_emit_reaction_notification("all", "u1", "bot", "someone") is True

    def test_allowlist(self):
        assert should_emit_reaction_notification("allowlist", "111", allowlist=["111"]) is True
        assert should_emit_reaction_notification("allowlist", "222", allowlist=["111"]) is False
        assert should_emit_reaction_notification("allowlist", "111", allowlist=[]) is False

    def test_allowlist_by_name(self):
        assert should_emit_reaction_notification(
            "allowlist", "u9", user_name="Alice", allowlist=["alice"]
        ) is True


class TestGroupEntries:
    def test_exact_then_wildcard(self):
        exact = GroupConfig(require_mention=False)
        wildcard = GroupConfig(allow=False)
        entries = {"-100": exact, "*": wildcard}
        assert resolve_group_entry("-100", entries) is exact
        assert resolve_group_entry("-200", entries) is wildcard

    def test_none(self):
        assert resolve_group_entry("-100", {}) is None


class TestCommandPrefix:
    @pytest.mark.parametrize("text,expected", [
        ("!ask hi", True),
        ("  !ask hi", True),
        ("hello", False),
        ("", False),
    ])
    def test_matches(self, text, expected):
        assert matches_command_prefix(text, ["!"]) is expected

    def test_empty_prefix_ignored(self):
        assert matches_command_prefix("hello", [""]) is False
