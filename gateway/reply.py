"""
Reply orchestration for one conversational turn.

The reply generator gets the turn's MessageContext plus two hooks:

    hooks.on_reply_start()        best-effort "typing" signal (awaitable)
    hooks.on_block_reply(payload) schedule an intermediate reply for delivery

Block replies are delivered one after another in the order they were
scheduled, and all of them have been delivered (or have failed) before the
final replies are returned to the caller. A generation failure ends the turn
after logging; block replies already delivered stand.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union

from gateway.context import MessageContext, ReplyPayload, SILENT_REPLY_TOKEN

logger = logging.getLogger(__name__)

ReplyResult = Union[None, ReplyPayload, dict, List[Union[ReplyPayload, dict]]]
BlockDelivery = Callable[[ReplyPayload], Awaitable[Any]]


def _coerce_payload(item: Any) -> Optional[ReplyPayload]:
    if item is None:
        return None
    if isinstance(item, ReplyPayload):
        return item
    if isinstance(item, dict):
        return ReplyPayload.from_dict(item)
    if isinstance(item, str):
        return ReplyPayload(text=item)
    raise TypeError(f"Unsupported reply payload: {type(item).__name__}")


def is_silent(payload: ReplyPayload) -> bool:
    if payload.media:
        return False
    text = (payload.text or "").strip()
    return not text or text == SILENT_REPLY_TOKEN


def normalize_replies(result: ReplyResult) -> List[ReplyPayload]:
    """None, a single payload, or a list -> ordered list without silent markers."""
    if result is None:
        return []
    items = result if isinstance(result, list) else [result]
    replies = []
    for item in items:
        payload = _coerce_payload(item)
        if payload is None or is_silent(payload):
            continue
        replies.append(payload)
    return replies


class ReplyHooks:
    """Callbacks handed to the reply generator for one turn."""

    def __init__(
        self,
        on_reply_start: Optional[Callable[[], Any]] = None,
        deliver_block: Optional[BlockDelivery] = None,
    ):
        self._on_reply_start = on_reply_start
        self._deliver_block = deliver_block
        self._chain: Optional[asyncio.Task] = None
        self.blocks_scheduled = 0
        self.blocks_delivered = 0
        self.blocks_failed = 0

    async def on_reply_start(self) -> None:
        if self._on_reply_start is None:
            return
        try:
            result = self._on_reply_start()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.debug("reply start hook failed: %s", e)

    def on_block_reply(self, payload: Union[ReplyPayload, dict]) -> None:
        """Queue an intermediate reply behind any earlier ones."""
        payload = _coerce_payload(payload)
        if payload is None or payload.is_empty or self._deliver_block is None:
            return
        self.blocks_scheduled += 1
        previous = self._chain
        self._chain = asyncio.create_task(self._deliver_after(previous, payload))

    async def _deliver_after(self, previous: Optional[asyncio.Task], payload: ReplyPayload) -> None:
        if previous is not None:
            await previous
        try:
            await self._deliver_block(payload)
            self.blocks_delivered += 1
        except Exception as e:
            self.blocks_failed += 1
            logger.error("block reply failed: %s", e)

    async def drain(self) -> None:
        """Wait until every scheduled block reply has been handled."""
        while self._chain is not None:
            current = self._chain
            await current
            if self._chain is current:
                break


@dataclass
class TurnResult:
    replies: List[ReplyPayload] = field(default_factory=list)
    error: Optional[BaseException] = None
    blocks_delivered: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class ReplyGenerator:
    """Interface for anything that can answer a MessageContext."""

    async def generate(self, context: MessageContext, hooks: ReplyHooks) -> ReplyResult:
        raise NotImplementedError


class ReplyOrchestrator:
    """Runs a reply generator for one turn and collects its output."""

    def __init__(self, generator: Union[ReplyGenerator, Callable[..., Awaitable[ReplyResult]]]):
        self.generator = generator

    async def _call_generator(self, context: MessageContext, hooks: ReplyHooks) -> ReplyResult:
        if hasattr(self.generator, "generate"):
            return await self.generator.generate(context, hooks)
        return await self.generator(context, hooks)

    async def run(
        self,
        context: MessageContext,
        on_reply_start: Optional[Callable[[], Any]] = None,
        deliver_block: Optional[BlockDelivery] = None,
    ) -> TurnResult:
        hooks = ReplyHooks(on_reply_start=on_reply_start, deliver_block=deliver_block)
        error = None
        raw = None
        try:
            raw = await self._call_generator(context, hooks)
        except Exception as e:
            error = e
            logger.error("reply generation failed for %s: %s", context.message_sid or context.from_id, e)

        await hooks.drain()

        if error is not None:
            return TurnResult(error=error, blocks_delivered=hooks.blocks_delivered)

        try:
            replies = normalize_replies(raw)
        except TypeError as e:
            logger.error("reply generator returned an invalid result: %s", e)
            return TurnResult(error=e, blocks_delivered=hooks.blocks_delivered)
        return TurnResult(replies=replies, blocks_delivered=hooks.blocks_delivered)
