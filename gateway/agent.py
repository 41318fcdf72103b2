"""
HTTP client for the agent backend.

The gateway treats the agent as a black box reached at `agent.url`:

    POST <agent.url>
    {"context": {...MessageContext wire form...}}

The backend answers either with a JSON document

    {"replies": [{"text": "...", "mediaUrl": "..."}, ...]}

or with a newline-delimited JSON stream (Content-Type application/x-ndjson)
whose lines are one of

    {"type": "typing"}
    {"type": "block", "payload": {...}}
    {"type": "final", "replies": [...]}
"""

import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from gateway.config import AgentConfig
from gateway.context import MessageContext
from gateway.reply import ReplyGenerator, ReplyHooks, ReplyResult

logger = logging.getLogger(__name__)


class AgentBackendError(Exception):
    """The agent backend could not produce a reply."""


class HttpReplyGenerator(ReplyGenerator):
    """Reply generator that forwards each turn to the configured agent URL."""

    def __init__(self, config: AgentConfig):
        self.config = config

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    async def generate(self, context: MessageContext, hooks: ReplyHooks) -> ReplyResult:
        if not self.config.url:
            raise AgentBackendError("agent.url is not configured (set RELAY_AGENT_URL)")

        await hooks.on_reply_start()

        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self.config.url,
                    json={"context": context.to_dict()},
                    headers=self._headers(),
                ) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise AgentBackendError(f"agent returned HTTP {resp.status}: {body[:200]}")

                    content_type = resp.headers.get("content-type", "")
                    if "ndjson" in content_type:
                        return await self._read_stream(resp, hooks)

                    data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise AgentBackendError(f"agent request failed: {e}") from e

        return self._final_replies(data)

    async def _read_stream(self, resp: "aiohttp.ClientResponse", hooks: ReplyHooks) -> ReplyResult:
        final: Optional[List[Any]] = None
        async for raw_line in resp.content:
            line = raw_line.decode("utf-8").strip()
            if not line:
                continue
            try:
                frame = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed agent stream line: %r", line[:200])
                continue

            kind = frame.get("type")
            if kind == "typing":
                await hooks.on_reply_start()
            elif kind == "block":
                hooks.on_block_reply(frame.get("payload") or {})
            elif kind == "final":
                final = frame.get("replies") or []
            elif kind == "error":
                raise AgentBackendError(frame.get("message") or "agent reported an error")
        return final

    @staticmethod
    def _final_replies(data: Any) -> ReplyResult:
        if data is None:
            return None
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            if "replies" in data:
                return data.get("replies") or []
            if any(key in data for key in ("text", "mediaUrl", "mediaUrls")):
                return data
        raise AgentBackendError(f"unexpected agent response: {str(data)[:200]}")
