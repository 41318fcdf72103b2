"""
Tests for node pairing (gateway/pairing.py) and the node registry
(gateway/nodes.py).

Covers: pending requests, approval tokens, invoke round trips, caller-side
timeouts, device error codes, disconnects, and the /node socket handshake.
"""

import asyncio
from unittest.mock import AsyncMock

import aiohttp
import pytest
from aiohttp import test_utils

from gateway.config import RpcConfig
from gateway.nodes import NodeInvokeError, NodeInvokeTimeout, NodeRegistry, NodeSession
from gateway.pairing import NodePairingStore
from gateway.rpc import GatewayRpcServer


@pytest.fixture
def pairing(tmp_path):
    return NodePairingStore(tmp_path / "pairing.json")


def _session(node_id="node-abc123"):
    transport = AsyncMock()
    session = NodeSession(node_id=node_id, transport=transport, display_name="Phone")
    return session


class TestPairingStore:
    def test_request_then_approve(self, pairing, tmp_path):
        request = pairing.request("node-1", display_name="iPhone", remote_ip="10.0.0.2")
        assert [r.request_id for r in pairing.list_pending()] == [request.request_id]
        assert request.is_repair is False

        node = pairing.approve(request.request_id)
        assert node.token
        assert pairing.list_pending() == []
        assert pairing.verify("node-1", node.token) is node
        assert pairing.verify("node-1", "wrong") is None
        assert pairing.verify("node-1", None) is None

        reloaded = NodePairingStore(tmp_path / "pairing.json")
        assert reloaded.get_paired("node-1").display_name == "iPhone"

    def test_repeat_request_is_refreshed(self, pairing):
        first = pairing.request("node-1")
        second = pairing.request("node-1", display_name="Renamed")
        assert first.request_id == second.request_id
        assert second.display_name == "Renamed"

    def test_repair_flag_for_paired_node(self, pairing):
        pairing.approve(pairing.request("node-1").request_id)
        assert pairing.request("node-1").is_repair is True

    def test_reject(self, pairing):
        request = pairing.request("node-1")
        assert pairing.reject(request.request_id).node_id == "node-1"
        assert pairing.reject(request.request_id) is None
        assert pairing.approve(request.request_id) is None

    def test_snapshot_hides_tokens(self, pairing):
        pairing.approve(pairing.request("node-1").request_id)
        pairing.request("node-2")
        snapshot = pairing.snapshot()
        assert len(snapshot["pending"]) == 1
        assert "token" not in snapshot["paired"][0]


class TestNodeRegistry:
    @pytest.mark.asyncio
    async def test_invoke_round_trip(self, pairing):
        registry = NodeRegistry(pairing)
        session = _session()

        async def answer(frame):
            registry.handle_frame(session, {
                "type": "invoke-res", "id": frame["id"], "ok": True, "payload": {"format": "jpg"},
            })

        session.transport.send_json.side_effect = answer
        registry.attach(session)

        result = await registry.invoke("node-abc123", "camera.snap", {"facing": "front"}, idempotency_key="k1")
        assert result == {"ok": True, "payload": {"format": "jpg"}}
        frame = session.transport.send_json.await_args.args[0]
        assert frame["command"] == "camera.snap"
        assert frame["idempotencyKey"] == "k1"
        assert session.pending == {}

    @pytest.mark.asyncio
    async def test_invoke_timeout_enforced_by_caller(self, pairing):
        registry = NodeRegistry(pairing)
        registry.attach(_session())

        with pytest.raises(NodeInvokeTimeout) as exc_info:
            await registry.invoke("node-abc123", "camera.clip", timeout_ms=20)
        assert exc_info.value.code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_device_error_code(self, pairing):
        registry = NodeRegistry(pairing)
        session = _session()

        async def answer(frame):
            registry.handle_frame(session, {
                "type": "invoke-res", "id": frame["id"], "ok": False,
                "error": {"code": "CAMERA_DISABLED", "message": "camera off"},
            })

        session.transport.send_json.side_effect = answer
        registry.attach(session)

        with pytest.raises(NodeInvokeError) as exc_info:
            await registry.invoke("node-abc123", "camera.snap")
        assert exc_info.value.code == "CAMERA_DISABLED"

    @pytest.mark.asyncio
    async def test_unknown_node(self, pairing):
        with pytest.raises(NodeInvokeError) as exc_info:
            await NodeRegistry(pairing).invoke("ghost", "camera.snap")
        assert exc_info.value.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_detach_fails_pending(self, pairing):
        registry = NodeRegistry(pairing)
        session = _session()
        registry.attach(session)

        task = asyncio.create_task(registry.invoke("node-abc123", "canvas.eval", timeout_ms=5000))
        await asyncio.sleep(0.01)
        registry.detach(session)

        with pytest.raises(NodeInvokeError) as exc_info:
            await task
        assert exc_info.value.code == "UNAVAILABLE"
        assert registry.get("node-abc123") is None

    def test_list_nodes_merges_paired_and_connected(self, pairing):
        pairing.approve(pairing.request("node-1", display_name="Mac").request_id)
        registry = NodeRegistry(pairing)
        registry.attach(_session("node-2"))

        nodes = {n["nodeId"]: n for n in registry.list_nodes()}
        assert nodes["node-1"]["connected"] is False
        assert nodes["node-2"]["connected"] is True
        assert "token" not in nodes["node-1"]


class TestNodeSocket:
    @pytest.mark.asyncio
    async def test_unknown_node_pairs_after_approval(self, pairing):
        registry = NodeRegistry(pairing)
        server = GatewayRpcServer(RpcConfig(), node_socket_handler=registry.handle_socket)

        async with test_utils.TestServer(server.build_app()) as test_server:
            url = str(test_server.make_url("/node")).replace("http://", "ws://")
            async with aiohttp.ClientSession() as http:
                async with http.ws_connect(url) as ws:
                    await ws.send_json({"type": "hello", "nodeId": "node-xyz789", "displayName": "iPad"})
                    pending = await ws.receive_json(timeout=5)
                    assert pending["type"] == "pairing-pending"

                    node = pairing.approve(pending["requestId"])
                    await registry.notify_approved(pending["requestId"], node)

                    paired = await ws.receive_json(timeout=5)
                    assert paired == {"type": "paired", "token": node.token}
                    assert registry.get("node-xyz789") is not None

                    invoke = asyncio.create_task(registry.invoke("node-xyz789", "canvas.eval", {"js": "1"}))
                    frame = await ws.receive_json(timeout=5)
                    assert frame["type"] == "invoke"
                    await ws.send_json({"type": "invoke-res", "id": frame["id"], "ok": True, "payload": 1})
                    assert await invoke == {"ok": True, "payload": 1}

    @pytest.mark.asyncio
    async def test_hello_required(self, pairing):
        registry = NodeRegistry(pairing)
        server = GatewayRpcServer(RpcConfig(), node_socket_handler=registry.handle_socket)

        async with test_utils.TestServer(server.build_app()) as test_server:
            url = str(test_server.make_url("/node")).replace("http://", "ws://")
            async with aiohttp.ClientSession() as http:
                async with http.ws_connect(url) as ws:
                    await ws.send_json({"type": "invoke-res"})
                    error = await ws.receive_json(timeout=5)
                    assert error["code"] == "INVALID_REQUEST"
