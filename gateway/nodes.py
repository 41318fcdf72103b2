"""
Registry of connected companion nodes.

Nodes attach over the RPC server's /node WebSocket:

    node -> {"type": "hello", "nodeId", "displayName", "platform", "version", "token"}
    gw   -> {"type": "hello-ok"}                               (paired, token valid)
    gw   -> {"type": "pairing-pending", "requestId"}           (unknown node)
    gw   -> {"type": "paired", "token"}                        (after approval)
    gw   -> {"type": "invoke", "id", "command", "params", "idempotencyKey"}
    node -> {"type": "invoke-res", "id", "ok", "payload"?, "error"?: {"code", "message"}}

Timeouts are enforced here, by the caller, not by the device.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiohttp import WSMsgType, web

from gateway.pairing import NodePairingStore, PairedNode

logger = logging.getLogger(__name__)

DEFAULT_INVOKE_TIMEOUT_MS = 30000


class NodeInvokeError(Exception):
    """A node command failed. `code` is the device or gateway error code."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class NodeInvokeTimeout(NodeInvokeError):
    def __init__(self, node_id: str, command: str, timeout_ms: int):
        super().__init__("TIMEOUT", f"node {node_id} did not answer {command} within {timeout_ms}ms")


@dataclass
class NodeSession:
    """A live node connection. `transport` needs an async send_json(dict)."""
    node_id: str
    transport: Any
    display_name: Optional[str] = None
    platform: Optional[str] = None
    version: Optional[str] = None
    remote_ip: Optional[str] = None
    pending: Dict[str, asyncio.Future] = field(default_factory=dict)

    def describe(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "displayName": self.display_name,
            "platform": self.platform,
            "version": self.version,
            "remoteIp": self.remote_ip,
            "connected": True,
        }


class NodeRegistry:
    """Tracks connected nodes and relays invoke requests to them."""

    def __init__(self, pairing: NodePairingStore):
        self.pairing = pairing
        self._sessions: Dict[str, NodeSession] = {}
        # Connections waiting for operator approval, keyed by request id
        self._awaiting_approval: Dict[str, NodeSession] = {}

    def attach(self, session: NodeSession) -> None:
        previous = self._sessions.get(session.node_id)
        if previous is not None and previous is not session:
            self._fail_pending(previous, "UNAVAILABLE", "node reconnected")
        self._sessions[session.node_id] = session
        logger.info("Node %s connected (%s)", session.node_id, session.display_name or "unnamed")

    def detach(self, session: NodeSession) -> None:
        if self._sessions.get(session.node_id) is session:
            del self._sessions[session.node_id]
            logger.info("Node %s disconnected", session.node_id)
        for request_id, waiting in list(self._awaiting_approval.items()):
            if waiting is session:
                del self._awaiting_approval[request_id]
        self._fail_pending(session, "UNAVAILABLE", "node disconnected")

    def get(self, node_id: str) -> Optional[NodeSession]:
        return self._sessions.get(node_id)

    def list_nodes(self) -> List[Dict[str, Any]]:
        """Paired nodes (connected or not) plus any connected session."""
        nodes: Dict[str, Dict[str, Any]] = {}
        for paired in self.pairing.list_paired():
            entry = paired.to_dict(include_token=False)
            entry["connected"] = False
            nodes[paired.node_id] = entry
        for node_id, session in self._sessions.items():
            entry = nodes.get(node_id, {})
            entry.update({k: v for k, v in session.describe().items() if v is not None})
            nodes[node_id] = entry
        return list(nodes.values())

    @staticmethod
    def _fail_pending(session: NodeSession, code: str, message: str) -> None:
        for future in session.pending.values():
            if not future.done():
                future.set_exception(NodeInvokeError(code, message))
        session.pending.clear()

    async def invoke(
        self,
        node_id: str,
        command: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Run a command on a node and return {"ok": True, "payload": ...}.

        Raises NodeInvokeTimeout when the node does not answer in time and
        NodeInvokeError with the device's code when it answers with an error.
        """
        session = self._sessions.get(node_id)
        if session is None:
            raise NodeInvokeError("NOT_FOUND", f"node not connected: {node_id}")

        timeout_ms = timeout_ms or DEFAULT_INVOKE_TIMEOUT_MS
        invoke_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        session.pending[invoke_id] = future

        frame = {
            "type": "invoke",
            "id": invoke_id,
            "command": command,
            "params": params or {},
        }
        if idempotency_key:
            frame["idempotencyKey"] = idempotency_key

        try:
            await session.transport.send_json(frame)
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise NodeInvokeTimeout(node_id, command, timeout_ms)
        finally:
            session.pending.pop(invoke_id, None)

    def handle_frame(self, session: NodeSession, frame: Dict[str, Any]) -> None:
        """Route a frame received from a node."""
        if frame.get("type") != "invoke-res":
            logger.debug("Ignoring node frame type %r from %s", frame.get("type"), session.node_id)
            return
        future = session.pending.get(str(frame.get("id")))
        if future is None or future.done():
            logger.debug("Late invoke result %s from %s", frame.get("id"), session.node_id)
            return
        if frame.get("ok"):
            future.set_result({"ok": True, "payload": frame.get("payload")})
            return
        error = frame.get("error") or {}
        future.set_exception(NodeInvokeError(
            str(error.get("code") or "UNAVAILABLE"),
            str(error.get("message") or "node command failed"),
        ))

    async def notify_approved(self, request_id: str, node: PairedNode) -> None:
        """Hand the new token to a node still waiting on its pairing request."""
        session = self._awaiting_approval.pop(request_id, None)
        if session is None:
            return
        await session.transport.send_json({"type": "paired", "token": node.token})
        self.attach(session)

    async def notify_rejected(self, request_id: str) -> None:
        session = self._awaiting_approval.pop(request_id, None)
        if session is not None:
            await session.transport.send_json({"type": "pairing-rejected"})

    async def handle_socket(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler for the /node endpoint."""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        session: Optional[NodeSession] = None
        try:
            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    if msg.type == WSMsgType.ERROR:
                        logger.warning("Node socket error: %s", ws.exception())
                    continue
                try:
                    frame = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.debug("Ignoring malformed node frame")
                    continue

                if session is None:
                    session = await self._handshake(ws, request, frame)
                    if session is None:
                        break
                    continue
                self.handle_frame(session, frame)
        finally:
            if session is not None:
                self.detach(session)
        return ws

    async def _handshake(self, ws, request: web.Request, frame: Dict[str, Any]) -> Optional[NodeSession]:
        if frame.get("type") != "hello" or not frame.get("nodeId"):
            await ws.send_json({"type": "error", "code": "INVALID_REQUEST", "message": "hello required"})
            return None

        node_id = str(frame["nodeId"])
        session = NodeSession(
            node_id=node_id,
            transport=ws,
            display_name=frame.get("displayName"),
            platform=frame.get("platform"),
            version=frame.get("version"),
            remote_ip=request.remote,
        )

        if self.pairing.verify(node_id, frame.get("token")):
            await ws.send_json({"type": "hello-ok"})
            self.attach(session)
            return session

        pending = self.pairing.request(
            node_id,
            display_name=session.display_name,
            platform=session.platform,
            version=session.version,
            remote_ip=session.remote_ip,
        )
        self._awaiting_approval[pending.request_id] = session
        await ws.send_json({"type": "pairing-pending", "requestId": pending.request_id})
        return session
