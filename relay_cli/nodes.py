"""
Node subcommands for the relay CLI.

Handles: relay nodes [list|pending|approve|reject|invoke|camera snap|camera clip]

Every subcommand talks to a running gateway over its RPC WebSocket.
"""

import asyncio
import base64
import json
import re
import sys
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from gateway.rpc import RpcError, call_gateway

DEFAULT_GATEWAY_URL = "ws://127.0.0.1:18789"
DEFAULT_RPC_TIMEOUT_MS = 10000


# =============================================================================
# Helpers
# =============================================================================

def format_age(ms: Optional[int]) -> str:
    """Compact age: 42s, 5m, 3h, 2d."""
    if ms is None or ms < 0:
        return ""
    seconds = int(ms // 1000)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    return f"{hours // 24}d"


def normalize_node_key(value: Optional[str]) -> str:
    """Lowercase, non-alphanumeric runs to "-", trimmed."""
    text = re.sub(r"[^a-z0-9]+", "-", (value or "").lower())
    return text.strip("-")


def resolve_node_id(nodes: List[Dict[str, Any]], query: Optional[str]) -> str:
    """
    Match a user-supplied node reference against known nodes.

    Tries the exact id, the remote IP, the normalized display name, then an
    id prefix of at least 6 characters.
    """
    q = (query or "").strip()
    if not q:
        raise ValueError("node required")

    q_norm = normalize_node_key(q)
    matches = []
    for node in nodes:
        node_id = str(node.get("nodeId") or "")
        if node_id == q:
            matches.append(node)
        elif node.get("remoteIp") and node.get("remoteIp") == q:
            matches.append(node)
        elif node.get("displayName") and q_norm and normalize_node_key(node["displayName"]) == q_norm:
            matches.append(node)
        elif len(q) >= 6 and node_id.startswith(q):
            matches.append(node)

    if len(matches) == 1:
        return str(matches[0]["nodeId"])
    if not matches:
        known = ", ".join(
            str(n.get("displayName") or n.get("remoteIp") or n.get("nodeId")) for n in nodes
        )
        suffix = f" (known: {known})" if known else ""
        raise ValueError(f"unknown node: {q}{suffix}")
    names = ", ".join(str(n.get("displayName") or n.get("remoteIp") or n.get("nodeId")) for n in matches)
    raise ValueError(f"ambiguous node: {q} (matches: {names})")


def _media_extension(fmt: Optional[str], default: str) -> str:
    fmt = (fmt or default).lower()
    return "jpg" if fmt == "jpeg" else fmt


def write_media_file(payload: Dict[str, Any], kind: str, facing: str, default_ext: str) -> Path:
    """Decode a camera payload's base64 body into a temp file."""
    data = payload.get("base64")
    if not isinstance(data, str) or not data:
        raise ValueError(f"invalid camera.{kind} payload")
    ext = _media_extension(payload.get("format"), default_ext)
    path = Path(tempfile.gettempdir()) / f"relay-camera-{kind}-{facing}-{uuid.uuid4().hex}.{ext}"
    path.write_bytes(base64.b64decode(data))
    return path


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2))


async def _call(args, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
    return await call_gateway(
        method,
        params or {},
        url=args.url,
        token=args.token,
        timeout_ms=int(args.timeout),
    )


async def _load_nodes(args) -> List[Dict[str, Any]]:
    """node.list, falling back to the paired list on older gateways."""
    try:
        result = await _call(args, "node.list")
        return list((result or {}).get("nodes") or [])
    except RpcError:
        result = await _call(args, "node.pair.list")
        return list((result or {}).get("paired") or [])


async def _invoke(args, node_id: str, command: str, params: Dict[str, Any], invoke_timeout: int) -> Any:
    result = await _call(args, "node.invoke", {
        "nodeId": node_id,
        "command": command,
        "params": params,
        "timeoutMs": invoke_timeout,
        "idempotencyKey": getattr(args, "idempotency_key", None) or uuid.uuid4().hex,
    })
    return result


# =============================================================================
# Commands
# =============================================================================

def _pending_line(request: Dict[str, Any], now_ms: int) -> str:
    name = request.get("displayName") or request.get("nodeId")
    repair = " (repair)" if request.get("isRepair") else ""
    ip = f" · {request['remoteIp']}" if request.get("remoteIp") else ""
    age = format_age(now_ms - request["ts"]) if request.get("ts") else ""
    age = f" · {age} ago" if age else ""
    return f"- {request.get('requestId')}: {name}{repair}{ip}{age}"


async def nodes_list(args) -> None:
    result = await _call(args, "node.pair.list")
    if args.json:
        _print_json(result)
        return
    pending = (result or {}).get("pending") or []
    paired = (result or {}).get("paired") or []
    print(f"Pending: {len(pending)} · Paired: {len(paired)}")
    now_ms = int(time.time() * 1000)
    if pending:
        print("\nPending:")
        for request in pending:
            print(_pending_line(request, now_ms))
    if paired:
        print("\nPaired:")
        for node in paired:
            name = node.get("displayName") or node.get("nodeId")
            ip = f" · {node['remoteIp']}" if node.get("remoteIp") else ""
            print(f"- {node.get('nodeId')}: {name}{ip}")


async def nodes_pending(args) -> None:
    result = await _call(args, "node.pair.list")
    pending = (result or {}).get("pending") or []
    if args.json:
        _print_json(pending)
        return
    if not pending:
        print("No pending pairing requests.")
        return
    now_ms = int(time.time() * 1000)
    for request in pending:
        print(_pending_line(request, now_ms))


async def nodes_approve(args) -> None:
    _print_json(await _call(args, "node.pair.approve", {"requestId": args.request_id}))


async def nodes_reject(args) -> None:
    _print_json(await _call(args, "node.pair.reject", {"requestId": args.request_id}))


async def nodes_invoke(args) -> None:
    node_id = resolve_node_id(await _load_nodes(args), args.node)
    command = (args.command_name or "").strip()
    if not command:
        raise ValueError("--command required")
    try:
        params = json.loads(args.params or "{}")
    except json.JSONDecodeError as e:
        raise ValueError(f"--params must be JSON: {e}")
    if not isinstance(params, dict):
        raise ValueError("--params must be a JSON object")
    _print_json(await _invoke(args, node_id, command, params, int(args.invoke_timeout)))


async def camera_snap(args) -> None:
    node_id = resolve_node_id(await _load_nodes(args), args.node)
    facings = ["front", "back"] if args.facing == "both" else [args.facing]

    files = []
    for facing in facings:
        params: Dict[str, Any] = {"facing": facing, "format": "jpg"}
        if args.max_width:
            params["maxWidth"] = int(args.max_width)
        if args.quality is not None:
            params["quality"] = float(args.quality)
        result = await _invoke(args, node_id, "camera.snap", params, int(args.invoke_timeout))
        payload = (result or {}).get("payload") or {}
        path = write_media_file(payload, "snap", facing, "jpg")
        files.append({
            "facing": facing,
            "path": str(path),
            "width": payload.get("width"),
            "height": payload.get("height"),
        })

    if args.json:
        _print_json({"files": files})
        return
    for item in files:
        print(f"MEDIA:{item['path']}")


async def camera_clip(args) -> None:
    node_id = resolve_node_id(await _load_nodes(args), args.node)
    include_audio = not args.no_audio
    params = {
        "facing": args.facing,
        "durationMs": int(args.duration),
        "includeAudio": include_audio,
        "format": "mp4",
    }
    result = await _invoke(args, node_id, "camera.clip", params, int(args.invoke_timeout))
    payload = (result or {}).get("payload") or {}
    path = write_media_file(payload, "clip", args.facing, "mp4")

    if args.json:
        _print_json({"file": {
            "facing": args.facing,
            "path": str(path),
            "durationMs": payload.get("durationMs", params["durationMs"]),
            "hasAudio": payload.get("hasAudio", include_audio),
        }})
        return
    print(f"MEDIA:{path}")


# =============================================================================
# Argument parsing
# =============================================================================

def _add_gateway_options(parser, timeout_ms: int = DEFAULT_RPC_TIMEOUT_MS) -> None:
    parser.add_argument("--url", default=DEFAULT_GATEWAY_URL, help=f"Gateway WebSocket URL (default: {DEFAULT_GATEWAY_URL})")
    parser.add_argument("--token", help="Gateway RPC token")
    parser.add_argument("--timeout", type=int, default=timeout_ms, help=f"RPC timeout in ms (default: {timeout_ms})")
    parser.add_argument("--json", action="store_true", help="Output JSON")


def add_nodes_parser(subparsers) -> None:
    """Register `relay nodes ...` on the top-level subparsers."""
    nodes_parser = subparsers.add_parser(
        "nodes",
        help="Manage companion nodes (pairing, invoke, camera)",
        description="Pair companion devices and run commands on them through the gateway"
    )
    nodes_sub = nodes_parser.add_subparsers(dest="nodes_command")

    list_parser = nodes_sub.add_parser("list", help="List pending and paired nodes")
    _add_gateway_options(list_parser)
    list_parser.set_defaults(nodes_func=nodes_list, nodes_label="list")

    pending_parser = nodes_sub.add_parser("pending", help="List pending pairing requests")
    _add_gateway_options(pending_parser)
    pending_parser.set_defaults(nodes_func=nodes_pending, nodes_label="pending")

    approve_parser = nodes_sub.add_parser("approve", help="Approve a pairing request")
    approve_parser.add_argument("request_id", help="Pending request id")
    _add_gateway_options(approve_parser)
    approve_parser.set_defaults(nodes_func=nodes_approve, nodes_label="approve")

    reject_parser = nodes_sub.add_parser("reject", help="Reject a pairing request")
    reject_parser.add_argument("request_id", help="Pending request id")
    _add_gateway_options(reject_parser)
    reject_parser.set_defaults(nodes_func=nodes_reject, nodes_label="reject")

    invoke_parser = nodes_sub.add_parser("invoke", help="Invoke a command on a paired node")
    invoke_parser.add_argument("--node", required=True, help="Node id, name, IP or id prefix")
    invoke_parser.add_argument("--command", dest="command_name", required=True, help="Command (e.g. canvas.eval)")
    invoke_parser.add_argument("--params", default="{}", help="JSON object string for params")
    invoke_parser.add_argument("--invoke-timeout", type=int, default=15000, help="Node invoke timeout in ms (default: 15000)")
    invoke_parser.add_argument("--idempotency-key", help="Idempotency key (optional)")
    _add_gateway_options(invoke_parser, timeout_ms=30000)
    invoke_parser.set_defaults(nodes_func=nodes_invoke, nodes_label="invoke")

    camera_parser = nodes_sub.add_parser("camera", help="Capture camera media from a paired node")
    camera_sub = camera_parser.add_subparsers(dest="camera_command")

    snap_parser = camera_sub.add_parser("snap", help="Capture a photo (prints MEDIA:<path>)")
    snap_parser.add_argument("--node", required=True, help="Node id, name, IP or id prefix")
    snap_parser.add_argument("--facing", choices=["front", "back", "both"], default="both", help="Camera facing (default: both)")
    snap_parser.add_argument("--max-width", type=int, help="Max width in px")
    snap_parser.add_argument("--quality", type=float, help="JPEG quality (0-1)")
    snap_parser.add_argument("--invoke-timeout", type=int, default=20000, help="Node invoke timeout in ms (default: 20000)")
    _add_gateway_options(snap_parser, timeout_ms=60000)
    snap_parser.set_defaults(nodes_func=camera_snap, nodes_label="camera snap")

    clip_parser = camera_sub.add_parser("clip", help="Capture a short video clip (prints MEDIA:<path>)")
    clip_parser.add_argument("--node", required=True, help="Node id, name, IP or id prefix")
    clip_parser.add_argument("--facing", choices=["front", "back"], default="front", help="Camera facing (default: front)")
    clip_parser.add_argument("--duration", type=int, default=3000, help="Duration in ms (default: 3000)")
    clip_parser.add_argument("--no-audio", action="store_true", help="Disable audio capture")
    clip_parser.add_argument("--invoke-timeout", type=int, default=45000, help="Node invoke timeout in ms (default: 45000)")
    _add_gateway_options(clip_parser, timeout_ms=90000)
    clip_parser.set_defaults(nodes_func=camera_clip, nodes_label="camera clip")

    nodes_parser.set_defaults(func=nodes_command, nodes_parser=nodes_parser)


def nodes_command(args) -> None:
    """Run the selected nodes subcommand; failures exit with status 1."""
    func = getattr(args, "nodes_func", None)
    if func is None:
        args.nodes_parser.print_help()
        return
    try:
        asyncio.run(func(args))
    except (RpcError, ValueError, OSError) as e:
        print(f"nodes {args.nodes_label} failed: {e}", file=sys.stderr)
        sys.exit(1)
