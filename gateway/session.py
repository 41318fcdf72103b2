"""
Session management for the gateway.

Handles:
- Session source tracking (where messages come from)
- Session key derivation (which logical conversation a turn belongs to)
- Durable session index with the last route used per session, so proactive
  sends go back to the most recent direct-message target
"""

import logging
import json
import uuid
from pathlib import Path
from datetime import datetime, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

logger = logging.getLogger(__name__)

from .config import Platform


@dataclass
class SessionSource:
    """
    Describes where a message originated from.

    This information is used to:
    1. Route responses back to the right place
    2. Label the sender and room for the agent
    3. Derive the session key
    """
    platform: Platform
    chat_id: str
    chat_name: Optional[str] = None
    chat_type: str = "direct"  # "direct" or "group"
    user_id: Optional[str] = None
    user_name: Optional[str] = None  # display name
    username: Optional[str] = None  # account handle
    user_tag: Optional[str] = None  # e.g. Discord "name#1234" or "name"
    thread_id: Optional[str] = None
    space_id: Optional[str] = None  # guild id for Discord
    space_name: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return self.chat_type == "direct"

    @property
    def description(self) -> str:
        """Human-readable description of the source."""
        if self.is_direct:
            return f"DM with {self.user_name or self.user_id or 'user'}"
        parts = [f"group: {self.chat_name or self.chat_id}"]
        if self.space_name:
            parts.append(f"server: {self.space_name}")
        if self.thread_id:
            parts.append(f"thread: {self.thread_id}")
        return ", ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform.value,
            "chat_id": self.chat_id,
            "chat_name": self.chat_name,
            "chat_type": self.chat_type,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "username": self.username,
            "user_tag": self.user_tag,
            "thread_id": self.thread_id,
            "space_id": self.space_id,
            "space_name": self.space_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSource":
        return cls(
            platform=Platform(data["platform"]),
            chat_id=str(data["chat_id"]),
            chat_name=data.get("chat_name"),
            chat_type=data.get("chat_type", "direct"),
            user_id=data.get("user_id"),
            user_name=data.get("user_name"),
            username=data.get("username"),
            user_tag=data.get("user_tag"),
            thread_id=data.get("thread_id"),
            space_id=data.get("space_id"),
            space_name=data.get("space_name"),
        )


@dataclass
class SessionRoute:
    """Last surface/target used for a session."""
    channel: Platform
    to: str

    def to_dict(self) -> Dict[str, Any]:
        return {"channel": self.channel.value, "to": self.to}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRoute":
        return cls(channel=Platform(data["channel"]), to=str(data["to"]))


def build_session_key(source: SessionSource, main_key: str = "main") -> str:
    """
    Derive the session key for a source.

    Direct messages from every surface share the main session; each group
    conversation gets its own.
    """
    if source.is_direct:
        return main_key
    return f"{source.platform.value}:group:{source.chat_id}"


@dataclass
class SessionEntry:
    """
    Entry in the session store.

    Maps a session key to its current session ID and routing metadata.
    """
    session_key: str
    session_id: str
    created_at: datetime
    updated_at: datetime

    # Origin metadata for delivery routing
    origin: Optional[SessionSource] = None
    last_route: Optional[SessionRoute] = None

    # Display metadata
    display_name: Optional[str] = None
    platform: Optional[Platform] = None
    chat_type: str = "direct"

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "session_key": self.session_key,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "display_name": self.display_name,
            "platform": self.platform.value if self.platform else None,
            "chat_type": self.chat_type,
        }
        if self.origin:
            result["origin"] = self.origin.to_dict()
        if self.last_route:
            result["last_route"] = self.last_route.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionEntry":
        origin = None
        if data.get("origin"):
            origin = SessionSource.from_dict(data["origin"])

        last_route = None
        if data.get("last_route"):
            try:
                last_route = SessionRoute.from_dict(data["last_route"])
            except (KeyError, ValueError):
                pass

        platform = None
        if data.get("platform"):
            try:
                platform = Platform(data["platform"])
            except ValueError:
                pass

        return cls(
            session_key=data["session_key"],
            session_id=data["session_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            origin=origin,
            last_route=last_route,
            display_name=data.get("display_name"),
            platform=platform,
            chat_type=data.get("chat_type", "direct"),
        )


def _new_session_id(now: datetime) -> str:
    return f"{now.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


class SessionStore:
    """
    Manages the session index.

    Entries are kept in memory and written through to sessions.json on every
    change.
    """

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = sessions_dir
        self._entries: Dict[str, SessionEntry] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        """Load sessions index from disk if not already loaded."""
        if self._loaded:
            return

        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        sessions_file = self.sessions_dir / "sessions.json"

        if sessions_file.exists():
            try:
                with open(sessions_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                    for key, entry_data in data.items():
                        self._entries[key] = SessionEntry.from_dict(entry_data)
            except Exception as e:
                logger.warning("Failed to load sessions from %s: %s", sessions_file, e)

        self._loaded = True

    def _save(self) -> None:
        """Save sessions index to disk."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        sessions_file = self.sessions_dir / "sessions.json"

        data = {key: entry.to_dict() for key, entry in self._entries.items()}
        tmp_file = sessions_file.with_suffix(".json.tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp_file.replace(sessions_file)

    def get_or_create_session(self, session_key: str, source: Optional[SessionSource] = None) -> SessionEntry:
        """Get an existing session or create a new one, bumping its activity time."""
        self._ensure_loaded()
        now = datetime.now()

        entry = self._entries.get(session_key)
        if entry is not None:
            entry.updated_at = now
            self._save()
            return entry

        entry = SessionEntry(
            session_key=session_key,
            session_id=_new_session_id(now),
            created_at=now,
            updated_at=now,
            origin=source,
            display_name=source.chat_name if source else None,
            platform=source.platform if source else None,
            chat_type=source.chat_type if source else "direct",
        )
        self._entries[session_key] = entry
        self._save()
        return entry

    def update_last_route(self, session_key: str, channel: Platform, to: str) -> SessionEntry:
        """Record the surface/target most recently used for a session."""
        entry = self.get_or_create_session(session_key)
        entry.last_route = SessionRoute(channel=channel, to=to)
        self._save()
        logger.debug("Session %s last route -> %s %s", session_key, channel.value, to)
        return entry

    def get_last_route(self, session_key: str) -> Optional[SessionRoute]:
        self._ensure_loaded()
        entry = self._entries.get(session_key)
        return entry.last_route if entry else None

    def list_sessions(self, active_minutes: Optional[int] = None) -> List[SessionEntry]:
        """List all sessions, optionally filtered by activity."""
        self._ensure_loaded()

        entries = list(self._entries.values())

        if active_minutes is not None:
            cutoff = datetime.now() - timedelta(minutes=active_minutes)
            entries = [e for e in entries if e.updated_at >= cutoff]

        entries.sort(key=lambda e: e.updated_at, reverse=True)

        return entries
