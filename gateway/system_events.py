"""
System event queue.

Non-conversational events (pins, joins, boosts, reactions, ...) never reach
the reply generator on their own. They are queued here and prepended to the
next direct-message turn as "System: ..." lines.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

logger = logging.getLogger(__name__)

MAX_SYSTEM_EVENTS = 20


@dataclass
class SystemEvent:
    text: str
    context_key: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class SystemEventQueue:
    """Bounded FIFO of pending system events. Oldest events drop first."""

    def __init__(self, max_events: int = MAX_SYSTEM_EVENTS):
        self._events: Deque[SystemEvent] = deque(maxlen=max_events)
        self._last_text: Optional[str] = None

    def enqueue(self, text: str, context_key: Optional[str] = None) -> bool:
        """Queue an event; consecutive duplicates are skipped. Returns True if queued."""
        cleaned = (text or "").strip()
        if not cleaned:
            return False
        if cleaned == self._last_text:
            return False
        self._last_text = cleaned
        self._events.append(SystemEvent(text=cleaned, context_key=context_key))
        logger.debug("system event queued: %s (%s)", cleaned, context_key or "-")
        return True

    def peek(self) -> List[SystemEvent]:
        return list(self._events)

    def drain(self) -> List[SystemEvent]:
        events = list(self._events)
        self._events.clear()
        self._last_text = None
        return events

    def has_context_key(self, context_key: str) -> bool:
        return any(event.context_key == context_key for event in self._events)

    def __len__(self) -> int:
        return len(self._events)


def render_system_lines(events: List[SystemEvent]) -> str:
    return "\n".join(f"System: {event.text}" for event in events)
