"""
Rolling per-conversation history for group chats.

Group messages the agent has not answered yet are kept here so the next
answered turn can include them as context. Once a reply is delivered the
conversation's history is cleared.

The store is owned by the gateway process and handed to each adapter; it is
in-memory only and lives exactly as long as the runner.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass
class HistoryEntry:
    sender: str
    body: str
    timestamp: Optional[int] = None  # epoch ms
    message_id: Optional[str] = None


class HistoryStore:
    """
    Bounded, insertion-ordered history keyed by conversation id.

    Each key has its own lock, so append/truncate/clear are atomic per
    conversation while different conversations never wait on each other.
    """

    def __init__(self):
        self._entries: Dict[str, List[HistoryEntry]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def record(self, key: str, entry: HistoryEntry, limit: int) -> List[HistoryEntry]:
        """
        Append an entry and return the entries that preceded it.

        A limit of 0 disables history: nothing is stored and nothing is returned.
        Redelivered messages (same message id) are not appended twice.
        """
        if limit <= 0:
            return []
        async with self._lock_for(key):
            history = self._entries.setdefault(key, [])
            if entry.message_id and any(e.message_id == entry.message_id for e in history):
                return [e for e in history if e.message_id != entry.message_id]
            previous = list(history)
            history.append(entry)
            while len(history) > limit:
                history.pop(0)
            return previous[-(limit - 1):] if limit > 1 else []

    async def snapshot(self, key: str) -> List[HistoryEntry]:
        lock = self._locks.get(key)
        if lock is None:
            return list(self._entries.get(key, []))
        async with lock:
            return list(self._entries.get(key, []))

    async def clear(self, key: str) -> None:
        """Drop a conversation's history along with its lock."""
        lock = self._lock_for(key)
        async with lock:
            self._entries.pop(key, None)
        if not lock.locked() and self._locks.get(key) is lock:
            del self._locks[key]

    def __len__(self) -> int:
        return sum(len(v) for v in self._entries.values())


def render_history_prefix(
    previous: List[HistoryEntry],
    current_body: str,
    channel_id: str,
    envelope,
) -> str:
    """
    Wrap the current agent body with the "since your last reply" block.

    `envelope(timestamp, body)` formats one history line the same way the
    current message was formatted.
    """
    if not previous:
        return current_body
    lines = [
        envelope(
            entry.timestamp,
            f"{entry.sender}: {entry.body} [id:{entry.message_id or 'unknown'} channel:{channel_id}]",
        )
        for entry in previous
    ]
    history_text = "\n".join(lines)
    return (
        "[Chat messages since your last reply - for context]\n"
        f"{history_text}\n\n"
        "[Current message - respond to this]\n"
        f"{current_body}"
    )


class RecentMessageCache:
    """Remembers recently processed message ids so redeliveries are skipped."""

    def __init__(self, max_size: int = 2000):
        self._max_size = max_size
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, key: str) -> bool:
        """Mark `key` as processed; returns True if it was already marked."""
        if key in self._seen:
            self._seen.move_to_end(key)
            return True
        self._seen[key] = None
        while len(self._seen) > self._max_size:
            self._seen.popitem(last=False)
        return False
