"""
Admission policy for inbound messages.

Pure functions shared by every platform adapter:
- Allow-list parsing and matching (ids, @names, <@id> mentions, "*")
- Discord guild/channel entry resolution and group-DM admission
- Telegram/WhatsApp group entry resolution
- Reaction notification gating

Nothing in here performs I/O or mutates configuration, so the results can be
computed concurrently by any number of inbound handlers.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Union

from gateway.config import ChannelConfig, GroupConfig, GuildConfig

USER_PREFIXES = ("discord:", "user:")
CHANNEL_PREFIXES = ("channel:",)

_MENTION_RE = re.compile(r"^<[@#]!?(\d+)>$")
_DIGITS_RE = re.compile(r"^\d+$")


class AllowEntryKind(Enum):
    """What a single raw allow-list entry turned out to be."""
    WILDCARD = "wildcard"
    NUMERIC_ID = "id"
    MENTION = "mention"
    NAME = "name"


@dataclass(frozen=True)
class AllowEntry:
    kind: AllowEntryKind
    value: str = ""


@dataclass
class AllowList:
    """
    Normalized allow list.

    `allow_all` short-circuits every membership check. `names` holds both the
    case-folded and the slug-folded form of every configured name.
    """
    allow_all: bool = False
    ids: Set[str] = field(default_factory=set)
    names: Set[str] = field(default_factory=set)


def normalize_name(value: Optional[str]) -> str:
    if not value:
        return ""
    return value.strip().lower()


def normalize_slug(value: Optional[str]) -> str:
    """
    Fold a display name into a slug: lowercase, leading @/# removed,
    runs of anything other than [a-z0-9] collapsed to a single "-".
    """
    if not value:
        return ""
    text = value.strip().lower()
    if not text:
        return ""
    text = re.sub(r"^[@#]+", "", text)
    text = re.sub(r"[\s_]+", "-", text)
    text = re.sub(r"[^a-z0-9-]+", "-", text)
    text = re.sub(r"-{2,}", "-", text).strip("-")
    return text


def parse_allow_entry(
    raw: Union[str, int],
    prefixes: Iterable[str] = USER_PREFIXES,
) -> Optional[AllowEntry]:
    """
    Classify one raw config entry.

    Returns None for blank entries so callers can skip them.
    """
    entry = str(raw).strip()
    if not entry:
        return None
    if entry == "*":
        return AllowEntry(AllowEntryKind.WILDCARD)

    lowered = entry.lower()
    for prefix in prefixes:
        if lowered.startswith(prefix):
            entry = entry[len(prefix):]
            break

    mention = _MENTION_RE.match(entry)
    if mention:
        return AllowEntry(AllowEntryKind.MENTION, mention.group(1))

    entry = entry.strip()
    if entry.startswith("@") or entry.startswith("#"):
        entry = entry[1:]
    if _DIGITS_RE.match(entry):
        return AllowEntry(AllowEntryKind.NUMERIC_ID, entry)
    if not entry:
        return None
    return AllowEntry(AllowEntryKind.NAME, entry)


def normalize_allow_list(
    raw: Optional[List[Union[str, int]]],
    prefixes: Iterable[str] = USER_PREFIXES,
) -> Optional[AllowList]:
    """
    Build an AllowList from raw config entries.

    Returns None when nothing was configured (no restriction) or when every
    entry was blank.
    """
    if not raw:
        return None
    prefixes = tuple(prefixes)
    allow_list = AllowList()

    for raw_entry in raw:
        entry = parse_allow_entry(raw_entry, prefixes)
        if entry is None:
            continue
        if entry.kind == AllowEntryKind.WILDCARD:
            allow_list.allow_all = True
        elif entry.kind in (AllowEntryKind.NUMERIC_ID, AllowEntryKind.MENTION):
            allow_list.ids.add(entry.value)
        else:
            name = normalize_name(entry.value)
            if name:
                allow_list.names.add(name)
            slug = normalize_slug(entry.value)
            if slug:
                allow_list.names.add(slug)

    if not allow_list.allow_all and not allow_list.ids and not allow_list.names:
        return None
    return allow_list


def allow_list_matches(
    allow_list: AllowList,
    entry_id: Optional[str] = None,
    name: Optional[str] = None,
    tag: Optional[str] = None,
) -> bool:
    """True if the candidate is admitted by the list."""
    if allow_list.allow_all:
        return True
    if entry_id and str(entry_id) in allow_list.ids:
        return True
    for value in (name, tag):
        folded = normalize_name(value)
        if folded and folded in allow_list.names:
            return True
    for value in (name, tag):
        slug = normalize_slug(value)
        if slug and slug in allow_list.names:
            return True
    return False


def is_sender_allowed(
    raw: Optional[List[Union[str, int]]],
    entry_id: Optional[str] = None,
    name: Optional[str] = None,
    tag: Optional[str] = None,
    prefixes: Iterable[str] = USER_PREFIXES,
) -> bool:
    """
    Evaluate a raw allow list for one sender.

    An empty raw list means no restriction. A non-empty list that normalizes
    to nothing admits nobody.
    """
    if not raw:
        return True
    allow_list = normalize_allow_list(raw, prefixes)
    if allow_list is None:
        return False
    return allow_list_matches(allow_list, entry_id=entry_id, name=name, tag=tag)


# ---------------------------------------------------------------------------
# Discord guilds and channels
# ---------------------------------------------------------------------------

@dataclass
class ResolvedGuild:
    """A guild entry matched for a specific guild."""
    id: str
    slug: str
    require_mention: Optional[bool] = None
    reaction_notifications: Optional[str] = None
    users: List[Union[str, int]] = field(default_factory=list)
    channels: Dict[str, ChannelConfig] = field(default_factory=dict)


@dataclass
class ChannelDecision:
    allowed: bool
    require_mention: Optional[bool] = None


def resolve_guild_entry(
    guild_id: str,
    guild_name: Optional[str],
    entries: Optional[Dict[str, GuildConfig]],
) -> Optional[ResolvedGuild]:
    """
    Find the config entry for a guild.

    Precedence: exact id, exact slug key, an entry whose `slug` field matches,
    then "*". Returns None when nothing matches or no entries exist; callers
    reject the guild only when entries exist.
    """
    if not entries:
        return None
    guild_slug = normalize_slug(guild_name)

    entry = entries.get(str(guild_id))
    if entry is None and guild_slug:
        entry = entries.get(guild_slug)
    if entry is None and guild_slug:
        for candidate in entries.values():
            candidate_slug = normalize_slug(candidate.slug)
            if candidate_slug and candidate_slug == guild_slug:
                entry = candidate
                break
    if entry is None:
        entry = entries.get("*")
    if entry is None:
        return None

    return ResolvedGuild(
        id=str(guild_id),
        slug=entry.slug or guild_slug,
        require_mention=entry.require_mention,
        reaction_notifications=entry.reaction_notifications,
        users=list(entry.users),
        channels=dict(entry.channels),
    )


def resolve_channel_config(
    guild: Optional[ResolvedGuild],
    channel_id: str,
    channel_name: Optional[str] = None,
    channel_slug: Optional[str] = None,
) -> ChannelDecision:
    """
    Decide whether a guild channel is admitted.

    When the guild lists channels, only listed channels are allowed (looked up
    by id, slug, "#slug", then the slug of the raw name).
    """
    channels = guild.channels if guild else None
    if not channels:
        return ChannelDecision(allowed=True)

    entry = channels.get(str(channel_id))
    if entry is None and channel_slug:
        entry = channels.get(channel_slug) or channels.get(f"#{channel_slug}")
    if entry is None and channel_name:
        entry = channels.get(normalize_slug(channel_name))
    if entry is None:
        return ChannelDecision(allowed=False)
    return ChannelDecision(allowed=entry.allow is not False, require_mention=entry.require_mention)


def resolve_group_dm_allowed(
    channels: Optional[List[Union[str, int]]],
    channel_id: str,
    channel_name: Optional[str] = None,
    channel_slug: Optional[str] = None,
) -> bool:
    if not channels:
        return True
    allow_list = normalize_allow_list(channels, CHANNEL_PREFIXES)
    if allow_list is None:
        return True
    return allow_list_matches(allow_list, entry_id=channel_id, name=channel_slug or channel_name)


def resolve_require_mention(
    channel: Optional[ChannelDecision],
    guild_or_group_default: Optional[bool],
    fallback: bool = True,
) -> bool:
    """Channel setting wins over the guild/group setting, which wins over the fallback."""
    if channel is not None and channel.require_mention is not None:
        return channel.require_mention
    if guild_or_group_default is not None:
        return guild_or_group_default
    return fallback


def should_emit_reaction_notification(
    mode: Optional[str],
    user_id: str,
    bot_id: Optional[str] = None,
    message_author_id: Optional[str] = None,
    user_name: Optional[str] = None,
    user_tag: Optional[str] = None,
    allowlist: Optional[List[Union[str, int]]] = None,
) -> bool:
    effective = mode or "own"
    if effective == "off":
        return False
    if effective == "own":
        if not bot_id or not message_author_id:
            return False
        return str(message_author_id) == str(bot_id)
    if effective == "allowlist":
        if not allowlist:
            return False
        users = normalize_allow_list(allowlist, USER_PREFIXES)
        if users is None:
            return False
        return allow_list_matches(users, entry_id=user_id, name=user_name, tag=user_tag)
    return True


# ---------------------------------------------------------------------------
# Telegram / WhatsApp groups
# ---------------------------------------------------------------------------

def resolve_group_entry(
    chat_id: str,
    entries: Optional[Dict[str, GroupConfig]],
) -> Optional[GroupConfig]:
    """Exact chat id, then "*"."""
    if not entries:
        return None
    return entries.get(str(chat_id)) or entries.get("*")


def matches_command_prefix(text: str, prefixes: Iterable[str]) -> bool:
    """True when the text starts with one of the configured command prefixes."""
    stripped = (text or "").lstrip()
    return any(prefix and stripped.startswith(prefix) for prefix in prefixes)
