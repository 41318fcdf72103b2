"""
Platform adapters for messaging integrations.

Each adapter handles:
- Receiving messages and normalizing them against the allow-list policy
- Sending text and media replies back
- Reporting connection state to the runner
"""

from .base import BasePlatformAdapter, ConnectionState, MessageEvent, SendResult

__all__ = [
    "BasePlatformAdapter",
    "ConnectionState",
    "MessageEvent",
    "SendResult",
]
