"""
Gateway runner - entry point for messaging platform integrations.

This module provides:
- start_gateway(): Start all configured platform adapters and the RPC server
- GatewayRunner: Main class managing the gateway lifecycle and the per-turn
  pipeline (history, session routing, reply generation, delivery)

Usage:
    # Start the gateway
    python -m gateway.run

    # Or from the CLI
    relay gateway run
"""

import asyncio
import logging
import os
import signal
import sys
import time
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from gateway.agent import HttpReplyGenerator
from gateway.config import (
    Platform,
    GatewayConfig,
    PlatformConfig,
    get_relay_home,
    load_gateway_config,
)
from gateway.context import (
    MessageContext,
    ReplyPayload,
    format_agent_envelope,
    surface_label,
)
from gateway.delivery import ReplyThreadState, deliver_replies
from gateway.history import HistoryEntry, HistoryStore, RecentMessageCache, render_history_prefix
from gateway.nodes import NodeInvokeError, NodeRegistry
from gateway.pairing import NodePairingStore
from gateway.platforms.base import BasePlatformAdapter, MediaFetchError, MediaInfo, MessageEvent
from gateway.reply import ReplyOrchestrator
from gateway.rpc import INVALID_REQUEST, NOT_FOUND, UNAVAILABLE, GatewayRpcServer, RpcError
from gateway.session import SessionStore, build_session_key
from gateway.system_events import SystemEventQueue, render_system_lines

logger = logging.getLogger(__name__)


def load_environment() -> None:
    """Load <RELAY_HOME>/.env first, then the project .env as a fallback."""
    env_path = get_relay_home() / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    load_dotenv()


class GatewayRunner:
    """
    Main gateway controller.

    Owns the process-lifetime stores (history, sessions, system events,
    node pairing) and hands them to the adapters and the RPC surface.
    """

    def __init__(self, config: Optional[GatewayConfig] = None, generator: Any = None):
        self.config = config or load_gateway_config()
        self.adapters: Dict[Platform, BasePlatformAdapter] = {}

        self.session_store = SessionStore(self.config.sessions_dir)
        self.history = HistoryStore()
        self.recent = RecentMessageCache()
        self.system_events = SystemEventQueue()
        self.orchestrator = ReplyOrchestrator(generator or HttpReplyGenerator(self.config.agent))

        self.pairing = NodePairingStore()
        self.nodes = NodeRegistry(self.pairing)
        self.rpc = GatewayRpcServer(self.config.rpc, node_socket_handler=self.nodes.handle_socket)
        self._register_rpc_methods()

        self._running = False
        self._started_at = time.time()
        self._shutdown_event = asyncio.Event()
        self._watch_task: Optional[asyncio.Task] = None
        self.fatal_error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start the RPC server and every enabled platform adapter.

        Returns False when the RPC server cannot bind or when platforms are
        enabled but none of them connected.
        """
        logger.info("Starting relay gateway...")
        logger.info("Session storage: %s", self.config.sessions_dir)

        try:
            await self.rpc.start()
        except OSError as e:
            logger.error("RPC server failed to start on %s: %s", self.config.rpc.url, e)
            return False

        enabled = 0
        for platform, platform_config in self.config.platforms.items():
            if not platform_config.enabled or platform == Platform.WEBCHAT:
                continue
            enabled += 1

            adapter = self._create_adapter(platform, platform_config)
            if not adapter:
                logger.warning("No adapter available for %s", platform.value)
                continue

            adapter.set_message_handler(self._handle_message)
            adapter.system_events = self.system_events
            if hasattr(adapter, "set_slash_handler"):
                adapter.set_slash_handler(self.handle_slash_turn)

            logger.info("Connecting to %s...", platform.value)
            try:
                success = await adapter.connect()
            except Exception as e:
                logger.error("%s error: %s", platform.value, e)
                continue
            if success:
                self.adapters[platform] = adapter
                logger.info("%s connected", platform.value)
            else:
                logger.warning("%s failed to connect", platform.value)

        if enabled and not self.adapters:
            logger.error("No messaging platforms connected.")
            await self.rpc.stop()
            return False

        self._running = True
        self._started_at = time.time()
        if self.adapters:
            self._watch_task = asyncio.create_task(self._watch_failures())
            logger.info("Gateway running with %s platform(s)", len(self.adapters))
        logger.info("Press Ctrl+C to stop")
        return True

    async def _watch_failures(self) -> None:
        """Stop the whole gateway when any listener fails fatally."""
        waiters = {
            asyncio.create_task(adapter.wait_for_failure()): platform
            for platform, adapter in self.adapters.items()
        }
        try:
            done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            for task in waiters:
                task.cancel()
            raise
        for task in pending:
            task.cancel()
        for task in done:
            platform = waiters[task]
            self.fatal_error = task.result()
            logger.error("%s listener failed: %s", platform.value, self.fatal_error)
        await self.stop()

    async def stop(self) -> None:
        """Stop the gateway and disconnect all adapters."""
        if self._shutdown_event.is_set():
            return
        logger.info("Stopping gateway...")
        self._running = False

        if self._watch_task and self._watch_task is not asyncio.current_task():
            self._watch_task.cancel()

        for platform, adapter in self.adapters.items():
            try:
                await adapter.disconnect()
                adapter.cancel_pending()
                logger.info("%s disconnected", platform.value)
            except Exception as e:
                logger.error("%s disconnect error: %s", platform.value, e)

        self.adapters.clear()
        await self.rpc.stop()
        self._shutdown_event.set()
        logger.info("Gateway stopped")

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()

    def _create_adapter(
        self,
        platform: Platform,
        config: PlatformConfig
    ) -> Optional[BasePlatformAdapter]:
        """Create the appropriate adapter for a platform."""
        if platform == Platform.TELEGRAM:
            from gateway.platforms.telegram import TelegramAdapter, check_telegram_requirements
            if not check_telegram_requirements():
                logger.warning("Telegram: python-telegram-bot not installed")
                return None
            return TelegramAdapter(config)

        elif platform == Platform.DISCORD:
            from gateway.platforms.discord import DiscordAdapter, check_discord_requirements
            if not check_discord_requirements():
                logger.warning("Discord: discord.py not installed")
                return None
            return DiscordAdapter(config)

        elif platform == Platform.WHATSAPP:
            from gateway.platforms.whatsapp import WhatsAppAdapter, check_whatsapp_requirements
            if not check_whatsapp_requirements():
                logger.warning("WhatsApp: Node.js not installed or bridge not configured")
                return None
            return WhatsAppAdapter(config)

        return None

    # ------------------------------------------------------------------
    # Per-turn pipeline
    # ------------------------------------------------------------------

    def _history_key(self, event: MessageEvent) -> Optional[str]:
        if not event.history_key or event.source.is_direct:
            return None
        return f"{event.source.platform.value}:{event.history_key}"

    def _build_body(
        self,
        event: MessageEvent,
        previous: List[HistoryEntry],
        system_lines: str,
    ) -> str:
        source = event.source
        surface = surface_label(source.platform)
        body = format_agent_envelope(surface, event.from_label, event.timestamp, event.text)

        if not source.is_direct:
            body = render_history_prefix(
                previous,
                body,
                source.chat_id,
                lambda ts, text: format_agent_envelope(surface, event.from_label, ts, text),
            )
            sender = source.user_tag or source.user_name or source.user_id
            body = f"{body}\n[from: {sender} user id:{source.user_id}]"

        if event.reply_context:
            body = f"[Replied message - for context]\n{event.reply_context}\n\n{body}"
        if event.forwarded_context:
            body = f"[Forwarded message]\n{event.forwarded_context}\n\n{body}"
        if system_lines:
            body = f"{system_lines}\n\n{body}"
        return body

    def _session_key_for(self, event: MessageEvent) -> str:
        if event.session_key:
            return event.session_key
        return build_session_key(event.source, self.config.session_main_key)

    async def _handle_message(self, event: MessageEvent) -> None:
        """
        Run one admitted inbound event through history, generation and delivery.

        Observe-only events (mention missing, sender not on the group's list)
        only feed the conversation's history.
        """
        source = event.source
        adapter = self.adapters.get(source.platform)
        if adapter is None:
            logger.debug("No adapter for %s; dropping %s", source.platform.value, event.message_id)
            return

        if event.message_id:
            dedupe_key = f"{source.platform.value}:{source.chat_id}:{event.message_id}"
            if self.recent.seen(dedupe_key):
                logger.debug("Skipping redelivered message %s", dedupe_key)
                return

        history_key = self._history_key(event)
        history_limit = adapter.config.history_limit
        entry = HistoryEntry(
            sender=event.history_sender,
            body=event.text,
            timestamp=event.timestamp,
            message_id=event.message_id,
        )

        if event.observe_only:
            if history_key:
                await self.history.record(history_key, entry, history_limit)
            return

        media: Optional[MediaInfo] = None
        if event.media_urls:
            try:
                media = await adapter.resolve_media(event)
            except MediaFetchError as e:
                logger.error("[%s] media fetch failed for %s: %s", adapter.name, event.message_id, e)
                return

        previous: List[HistoryEntry] = []
        if history_key:
            previous = await self.history.record(history_key, entry, history_limit)

        if event.reply_context is None:
            event.reply_context = await adapter.resolve_reply_context(event)

        system_lines = ""
        if source.is_direct:
            system_lines = render_system_lines(self.system_events.drain())

        session_key = self._session_key_for(event)
        self.session_store.get_or_create_session(session_key, source)
        if source.is_direct:
            self.session_store.update_last_route(self.config.session_main_key, source.platform, event.to)

        context = MessageContext(
            body=self._build_body(event, previous, system_lines),
            from_id=event.from_id,
            to=event.to,
            surface=source.platform,
            chat_type=source.chat_type,
            sender_name=source.user_name,
            sender_username=source.username,
            sender_tag=source.user_tag,
            sender_id=source.user_id,
            was_mentioned=event.was_mentioned,
            message_sid=event.message_id or "",
            timestamp=event.timestamp,
            media_path=media.path if media else None,
            media_type=media.content_type if media else None,
            media_url=event.media_urls[0] if event.media_urls else None,
            group_subject=event.group_subject,
            group_room=event.group_room,
            group_space=event.group_space,
            session_key=session_key,
        )

        delivered = await self._run_turn(adapter, context, event)
        if delivered and history_key:
            await self.history.clear(history_key)

    async def _run_turn(self, adapter: BasePlatformAdapter, context: MessageContext, event: MessageEvent) -> bool:
        """Generate and deliver replies; True when at least one payload was attempted."""
        target = event.to or event.source.chat_id
        thread = ReplyThreadState(adapter.config.reply_to_mode, default_reply_to=event.message_id)
        # Forum topics: replies stay in the topic the message came from
        metadata = {"thread_id": event.source.thread_id} if event.source and event.source.thread_id else None
        typing_task: Optional[asyncio.Task] = None

        def start_typing() -> None:
            nonlocal typing_task
            if typing_task is None:
                typing_task = asyncio.create_task(adapter._keep_typing(target))

        async def deliver_block(payload: ReplyPayload) -> None:
            report = await deliver_replies(adapter, [payload], target, thread=thread, metadata=metadata)
            if report.failed:
                raise RuntimeError(f"block reply to {target} failed")

        try:
            result = await self.orchestrator.run(context, on_reply_start=start_typing, deliver_block=deliver_block)
        finally:
            if typing_task is not None:
                typing_task.cancel()

        if not result.ok:
            return result.blocks_delivered > 0

        report = await deliver_replies(adapter, result.replies, target, thread=thread, metadata=metadata)
        return report.attempted > 0 or result.blocks_delivered > 0

    async def handle_slash_turn(self, context: MessageContext) -> List[ReplyPayload]:
        """Structured (slash command) turns: no hooks, failures propagate to the caller."""
        self.session_store.get_or_create_session(context.session_key or self.config.session_main_key)
        result = await self.orchestrator.run(context)
        if result.error is not None:
            raise result.error
        return result.replies

    # ------------------------------------------------------------------
    # RPC methods
    # ------------------------------------------------------------------

    def _register_rpc_methods(self) -> None:
        self.rpc.register("health", self._rpc_health)
        self.rpc.register("status", self._rpc_status)
        self.rpc.register("send", self._rpc_send)
        self.rpc.register("chat.send", self._rpc_chat_send)
        self.rpc.register("node.list", self._rpc_node_list)
        self.rpc.register("node.pair.list", self._rpc_pair_list)
        self.rpc.register("node.pair.approve", self._rpc_pair_approve)
        self.rpc.register("node.pair.reject", self._rpc_pair_reject)
        self.rpc.register("node.invoke", self._rpc_node_invoke)

    async def _rpc_health(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"ok": True, "uptimeMs": int((time.time() - self._started_at) * 1000)}

    async def _rpc_status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        platforms = {}
        for platform, pconfig in self.config.platforms.items():
            if not pconfig.enabled or platform == Platform.WEBCHAT:
                continue
            adapter = self.adapters.get(platform)
            platforms[platform.value] = adapter.state.value if adapter else "disconnected"
        route = self.session_store.get_last_route(self.config.session_main_key)
        return {
            "running": self._running,
            "platforms": platforms,
            "nodes": len([n for n in self.nodes.list_nodes() if n.get("connected")]),
            "sessions": len(self.session_store.list_sessions()),
            "lastRoute": route.to_dict() if route else None,
            "pendingSystemEvents": len(self.system_events),
        }

    async def _rpc_send(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Proactive send; defaults to the main session's last route."""
        message = params.get("message") or ""
        media_url = params.get("mediaUrl")
        if not message.strip() and not media_url:
            raise RpcError(INVALID_REQUEST, "message or mediaUrl required")

        channel = params.get("channel")
        to = params.get("to")
        if not channel or not to:
            route = self.session_store.get_last_route(self.config.session_main_key)
            if route is None:
                raise RpcError(INVALID_REQUEST, "no target: pass channel and to, or message the gateway first")
            channel = channel or route.channel.value
            to = to or route.to

        try:
            platform = Platform(channel)
        except ValueError:
            raise RpcError(INVALID_REQUEST, f"unknown channel: {channel}")
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise RpcError(UNAVAILABLE, f"{platform.value} is not connected")

        payload = ReplyPayload(text=message or None, media_url=media_url)
        report = await deliver_replies(adapter, [payload], to, thread=ReplyThreadState("off"))
        if report.failed:
            raise RpcError(UNAVAILABLE, f"delivery to {platform.value} {to} failed")
        return {"channel": platform.value, "to": to, "sent": report.sent}

    async def _rpc_chat_send(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """A webchat turn: replies come back in the RPC result."""
        message = (params.get("message") or "").strip()
        if not message:
            raise RpcError(INVALID_REQUEST, "message required")

        blocks: List[ReplyPayload] = []

        async def collect_block(payload: ReplyPayload) -> None:
            blocks.append(payload)

        system_lines = render_system_lines(self.system_events.drain())
        now_ms = int(time.time() * 1000)
        body = format_agent_envelope("WebChat", params.get("from") or "webchat", now_ms, message)
        if system_lines:
            body = f"{system_lines}\n\n{body}"

        session_key = params.get("sessionKey") or self.config.session_main_key
        self.session_store.get_or_create_session(session_key)
        context = MessageContext(
            body=body,
            from_id=f"webchat:{params.get('from') or 'local'}",
            to="webchat",
            surface=Platform.WEBCHAT,
            chat_type="direct",
            sender_name=params.get("from") or "webchat",
            was_mentioned=True,
            message_sid=params.get("idempotencyKey") or "",
            timestamp=now_ms,
            session_key=session_key,
        )
        result = await self.orchestrator.run(context, deliver_block=collect_block)
        if result.error is not None:
            raise RpcError(UNAVAILABLE, f"reply generation failed: {result.error}")
        return {"replies": [p.to_dict() for p in blocks + result.replies]}

    async def _rpc_node_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"nodes": self.nodes.list_nodes()}

    async def _rpc_pair_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.pairing.snapshot()

    async def _rpc_pair_approve(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request_id = params.get("requestId")
        if not request_id:
            raise RpcError(INVALID_REQUEST, "requestId required")
        node = self.pairing.approve(request_id)
        if node is None:
            raise RpcError(NOT_FOUND, f"unknown requestId: {request_id}")
        await self.nodes.notify_approved(request_id, node)
        return {"requestId": request_id, "node": node.to_dict(include_token=False)}

    async def _rpc_pair_reject(self, params: Dict[str, Any]) -> Dict[str, Any]:
        request_id = params.get("requestId")
        if not request_id:
            raise RpcError(INVALID_REQUEST, "requestId required")
        request = self.pairing.reject(request_id)
        if request is None:
            raise RpcError(NOT_FOUND, f"unknown requestId: {request_id}")
        await self.nodes.notify_rejected(request_id)
        return {"requestId": request_id, "nodeId": request.node_id}

    async def _rpc_node_invoke(self, params: Dict[str, Any]) -> Dict[str, Any]:
        node_id = params.get("nodeId")
        command = params.get("command")
        if not node_id or not command:
            raise RpcError(INVALID_REQUEST, "nodeId and command required")
        node_params = params.get("params") or {}
        if not isinstance(node_params, dict):
            raise RpcError(INVALID_REQUEST, "params must be an object")
        try:
            return await self.nodes.invoke(
                node_id,
                command,
                node_params,
                timeout_ms=params.get("timeoutMs"),
                idempotency_key=params.get("idempotencyKey"),
            )
        except NodeInvokeError as e:
            raise RpcError(e.code, e.message)


def _configure_logging(verbose: bool = False) -> None:
    """Rotating file log under <RELAY_HOME>/logs plus the console."""
    log_dir = get_relay_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / "gateway.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
    )
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.addHandler(file_handler)
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(console)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


async def start_gateway(config: Optional[GatewayConfig] = None, verbose: bool = False) -> bool:
    """
    Start the gateway and run until interrupted.

    This is the main entry point for running the gateway.
    Returns True if the gateway ran and stopped cleanly, False if it failed
    to start or a listener failed. A False return causes a non-zero exit
    code so the process supervisor can restart it.
    """
    _configure_logging(verbose)

    runner = GatewayRunner(config)

    def signal_handler():
        asyncio.create_task(runner.stop())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    success = await runner.start()
    if not success:
        return False

    await runner.wait_for_shutdown()
    return runner.fatal_error is None


def main():
    """CLI entry point for the gateway."""
    import argparse

    parser = argparse.ArgumentParser(description="Relay Gateway - multi-surface messaging")
    parser.add_argument("--config", "-c", help="Path to gateway config file (JSON)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()
    load_environment()

    config = None
    if args.config:
        import json
        with open(os.path.expanduser(args.config), encoding="utf-8") as f:
            config = GatewayConfig.from_dict(json.load(f))

    # Exit with code 1 on failure so Restart=on-failure retries transient errors
    success = asyncio.run(start_gateway(config, verbose=args.verbose))
    if not success:
        sys.exit(1)


if __name__ == "__main__":
    main()
