"""
Relay Gateway - chat-provider relay for a personal assistant agent.

Connects the agent backend to messaging platforms (Telegram, Discord,
WhatsApp) with:
- Allow-list and mention-gating policy per DM, guild, channel and group
- Pending-history context for group turns the bot did not answer
- Session routing (the main session remembers the last reply route)
- Chunked, reply-threaded delivery of block and final replies
- A local WebSocket RPC surface for companion nodes and the CLI
"""

from .config import GatewayConfig, PlatformConfig, Platform, load_gateway_config
from .session import SessionSource, SessionStore, build_session_key
from .context import MessageContext, ReplyPayload
from .delivery import DeliveryTarget, ReplyThreadState, chunk_text, deliver_replies
from .reply import ReplyHooks, ReplyOrchestrator, TurnResult

__all__ = [
    # Config
    "GatewayConfig",
    "PlatformConfig",
    "Platform",
    "load_gateway_config",
    # Session
    "SessionSource",
    "SessionStore",
    "build_session_key",
    # Context
    "MessageContext",
    "ReplyPayload",
    # Delivery
    "DeliveryTarget",
    "ReplyThreadState",
    "chunk_text",
    "deliver_replies",
    # Replies
    "ReplyHooks",
    "ReplyOrchestrator",
    "TurnResult",
]
