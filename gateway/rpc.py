"""
Local WebSocket control surface.

Clients (the CLI, companion apps) connect to ws://<rpc.host>:<rpc.port>/ and
exchange JSON frames:

    -> {"id": "1", "method": "node.list", "params": {}}
    <- {"id": "1", "ok": true, "result": {...}}
    <- {"id": "1", "ok": false, "error": {"code": "NOT_FOUND", "message": "..."}}

Nodes attach on /node (see gateway.nodes). When rpc.token is set, clients
must send it as a Bearer token.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import aiohttp
from aiohttp import WSMsgType, web

from gateway.config import RpcConfig

logger = logging.getLogger(__name__)

RpcHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

INVALID_REQUEST = "INVALID_REQUEST"
METHOD_NOT_FOUND = "METHOD_NOT_FOUND"
UNAVAILABLE = "UNAVAILABLE"
NOT_FOUND = "NOT_FOUND"
TIMEOUT = "TIMEOUT"
INTERNAL = "INTERNAL"


class RpcError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


class GatewayRpcServer:
    """Method table plus the aiohttp app that serves it."""

    def __init__(self, config: RpcConfig, node_socket_handler: Optional[Callable] = None):
        self.config = config
        self._methods: Dict[str, RpcHandler] = {}
        self._node_socket_handler = node_socket_handler
        self._runner: Optional[web.AppRunner] = None
        self._tasks: Set[asyncio.Task] = set()

    def register(self, method: str, handler: RpcHandler) -> None:
        self._methods[method] = handler

    @property
    def methods(self):
        return sorted(self._methods)

    async def dispatch(self, frame: Any) -> Dict[str, Any]:
        """Run one request frame and build its response frame."""
        if not isinstance(frame, dict):
            return {"id": None, "ok": False, "error": RpcError(INVALID_REQUEST, "frame must be an object").to_dict()}

        request_id = frame.get("id")
        method = frame.get("method")
        params = frame.get("params") or {}
        if not isinstance(method, str) or not method:
            return {"id": request_id, "ok": False, "error": RpcError(INVALID_REQUEST, "method required").to_dict()}
        if not isinstance(params, dict):
            return {"id": request_id, "ok": False, "error": RpcError(INVALID_REQUEST, "params must be an object").to_dict()}

        handler = self._methods.get(method)
        if handler is None:
            return {"id": request_id, "ok": False, "error": RpcError(METHOD_NOT_FOUND, f"unknown method: {method}").to_dict()}

        try:
            result = await handler(params)
        except RpcError as e:
            return {"id": request_id, "ok": False, "error": e.to_dict()}
        except Exception as e:
            logger.error("RPC %s failed: %s", method, e, exc_info=True)
            return {"id": request_id, "ok": False, "error": RpcError(INTERNAL, str(e)).to_dict()}
        return {"id": request_id, "ok": True, "result": result}

    def _authorized(self, request: web.Request) -> bool:
        if not self.config.token:
            return True
        header = request.headers.get("Authorization", "")
        if header == f"Bearer {self.config.token}":
            return True
        return request.query.get("token") == self.config.token

    async def _handle_client(self, request: web.Request) -> web.StreamResponse:
        if not self._authorized(request):
            return web.Response(status=401, text="Unauthorized")

        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except json.JSONDecodeError:
                    await ws.send_json({"id": None, "ok": False, "error": RpcError(INVALID_REQUEST, "invalid JSON").to_dict()})
                    continue
                # Requests on one socket run concurrently; ids pair responses
                task = asyncio.create_task(self._respond(ws, frame))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("RPC socket error: %s", ws.exception())
        return ws

    async def _respond(self, ws: web.WebSocketResponse, frame: Any) -> None:
        response = await self.dispatch(frame)
        if ws.closed:
            return
        try:
            await ws.send_json(response)
        except ConnectionResetError:
            logger.debug("RPC client went away before response %s", response.get("id"))

    async def _handle_node(self, request: web.Request) -> web.StreamResponse:
        if self._node_socket_handler is None:
            return web.Response(status=404, text="Not found")
        return await self._node_socket_handler(request)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_client)
        app.router.add_get("/node", self._handle_node)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info("RPC server listening on %s", self.config.url)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None


class GatewayRpcClient:
    """WebSocket client for the gateway RPC surface."""

    def __init__(self, url: str = "ws://127.0.0.1:18789", token: Optional[str] = None):
        self.url = url
        self.token = token
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._recv_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url, headers=headers)
        except aiohttp.ClientError as e:
            await self._session.close()
            self._session = None
            raise RpcError(UNAVAILABLE, f"gateway not reachable at {self.url}: {e}") from e
        self._recv_task = asyncio.create_task(self._recv_loop())

    async def close(self) -> None:
        if self._recv_task:
            self._recv_task.cancel()
        if self._ws is not None:
            await self._ws.close()
        if self._session is not None:
            await self._session.close()
        self._ws = None
        self._session = None

    async def __aenter__(self) -> "GatewayRpcClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _recv_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type != WSMsgType.TEXT:
                    continue
                frame = json.loads(msg.data)
                future = self._pending.pop(str(frame.get("id")), None)
                if future is not None and not future.done():
                    future.set_result(frame)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("RPC receive loop exited: %s", e)
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(RpcError(UNAVAILABLE, "connection closed"))
            self._pending.clear()

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None, timeout_ms: int = 10000) -> Any:
        if self._ws is None:
            raise RpcError(UNAVAILABLE, "not connected")
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        await self._ws.send_str(json.dumps({"id": request_id, "method": method, "params": params or {}}))
        try:
            frame = await asyncio.wait_for(future, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise RpcError(TIMEOUT, f"gateway timeout after {timeout_ms}ms ({method})")
        finally:
            self._pending.pop(request_id, None)

        if not frame.get("ok"):
            error = frame.get("error") or {}
            raise RpcError(error.get("code") or INTERNAL, error.get("message") or "request failed")
        return frame.get("result")


async def call_gateway(
    method: str,
    params: Optional[Dict[str, Any]] = None,
    url: str = "ws://127.0.0.1:18789",
    token: Optional[str] = None,
    timeout_ms: int = 10000,
) -> Any:
    """One-shot RPC call: connect, call, close."""
    async with GatewayRpcClient(url=url, token=token) as client:
        return await client.call(method, params, timeout_ms=timeout_ms)
