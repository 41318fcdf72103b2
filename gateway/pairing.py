"""
Node pairing store.

Companion devices (iOS/macOS nodes) must be approved before the gateway will
relay commands to them. Unknown nodes that connect create a pending request;
an operator approves or rejects it from the CLI. Approved nodes receive a
token they present on every later connection.

State lives in <RELAY_HOME>/nodes/pairing.json.
"""

import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from gateway.config import get_relay_home

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PendingRequest:
    request_id: str
    node_id: str
    display_name: Optional[str] = None
    platform: Optional[str] = None
    version: Optional[str] = None
    remote_ip: Optional[str] = None
    is_repair: bool = False
    ts: int = field(default_factory=_now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "nodeId": self.node_id,
            "displayName": self.display_name,
            "platform": self.platform,
            "version": self.version,
            "remoteIp": self.remote_ip,
            "isRepair": self.is_repair,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingRequest":
        return cls(
            request_id=data["requestId"],
            node_id=data["nodeId"],
            display_name=data.get("displayName"),
            platform=data.get("platform"),
            version=data.get("version"),
            remote_ip=data.get("remoteIp"),
            is_repair=bool(data.get("isRepair", False)),
            ts=int(data.get("ts") or _now_ms()),
        )


@dataclass
class PairedNode:
    node_id: str
    token: str
    display_name: Optional[str] = None
    platform: Optional[str] = None
    version: Optional[str] = None
    remote_ip: Optional[str] = None
    created_at_ms: Optional[int] = None
    approved_at_ms: Optional[int] = None

    def to_dict(self, include_token: bool = True) -> Dict[str, Any]:
        data = {
            "nodeId": self.node_id,
            "displayName": self.display_name,
            "platform": self.platform,
            "version": self.version,
            "remoteIp": self.remote_ip,
            "createdAtMs": self.created_at_ms,
            "approvedAtMs": self.approved_at_ms,
        }
        if include_token:
            data["token"] = self.token
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PairedNode":
        return cls(
            node_id=data["nodeId"],
            token=data.get("token") or "",
            display_name=data.get("displayName"),
            platform=data.get("platform"),
            version=data.get("version"),
            remote_ip=data.get("remoteIp"),
            created_at_ms=data.get("createdAtMs"),
            approved_at_ms=data.get("approvedAtMs"),
        )


class NodePairingStore:
    """Pending requests and paired nodes, written through to disk."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or (get_relay_home() / "nodes" / "pairing.json")
        self._pending: Dict[str, PendingRequest] = {}
        self._paired: Dict[str, PairedNode] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                for item in data.get("pending", []):
                    request = PendingRequest.from_dict(item)
                    self._pending[request.request_id] = request
                for item in data.get("paired", []):
                    node = PairedNode.from_dict(item)
                    self._paired[node.node_id] = node
            except Exception as e:
                logger.warning("Failed to load pairing state from %s: %s", self.path, e)
        self._loaded = True

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "pending": [r.to_dict() for r in self._pending.values()],
            "paired": [n.to_dict() for n in self._paired.values()],
        }
        tmp = self.path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self.path)

    def request(
        self,
        node_id: str,
        display_name: Optional[str] = None,
        platform: Optional[str] = None,
        version: Optional[str] = None,
        remote_ip: Optional[str] = None,
    ) -> PendingRequest:
        """Create (or refresh) the pending request for a node."""
        self._ensure_loaded()
        for existing in self._pending.values():
            if existing.node_id == node_id:
                existing.display_name = display_name or existing.display_name
                existing.remote_ip = remote_ip or existing.remote_ip
                existing.ts = _now_ms()
                self._save()
                return existing

        request = PendingRequest(
            request_id=uuid.uuid4().hex[:12],
            node_id=node_id,
            display_name=display_name,
            platform=platform,
            version=version,
            remote_ip=remote_ip,
            is_repair=node_id in self._paired,
        )
        self._pending[request.request_id] = request
        self._save()
        logger.info("Pairing requested by node %s (%s)", node_id, display_name or "unnamed")
        return request

    def approve(self, request_id: str) -> Optional[PairedNode]:
        self._ensure_loaded()
        request = self._pending.pop(request_id, None)
        if request is None:
            return None
        now = _now_ms()
        previous = self._paired.get(request.node_id)
        node = PairedNode(
            node_id=request.node_id,
            token=secrets.token_hex(16),
            display_name=request.display_name,
            platform=request.platform,
            version=request.version,
            remote_ip=request.remote_ip,
            created_at_ms=previous.created_at_ms if previous else now,
            approved_at_ms=now,
        )
        self._paired[node.node_id] = node
        self._save()
        logger.info("Approved node %s", node.node_id)
        return node

    def reject(self, request_id: str) -> Optional[PendingRequest]:
        self._ensure_loaded()
        request = self._pending.pop(request_id, None)
        if request is not None:
            self._save()
            logger.info("Rejected pairing request %s for node %s", request_id, request.node_id)
        return request

    def verify(self, node_id: str, token: Optional[str]) -> Optional[PairedNode]:
        """Return the paired node when the token matches."""
        self._ensure_loaded()
        node = self._paired.get(node_id)
        if node is None or not token:
            return None
        if not secrets.compare_digest(node.token, token):
            return None
        return node

    def get_paired(self, node_id: str) -> Optional[PairedNode]:
        self._ensure_loaded()
        return self._paired.get(node_id)

    def list_pending(self) -> List[PendingRequest]:
        self._ensure_loaded()
        return sorted(self._pending.values(), key=lambda r: r.ts)

    def list_paired(self) -> List[PairedNode]:
        self._ensure_loaded()
        return list(self._paired.values())

    def snapshot(self) -> Dict[str, Any]:
        """Wire form for node.pair.list (tokens are never exposed)."""
        return {
            "pending": [r.to_dict() for r in self.list_pending()],
            "paired": [n.to_dict(include_token=False) for n in self.list_paired()],
        }
