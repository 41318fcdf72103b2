"""
Tests for gateway/reply.py: reply normalization and the per-turn
orchestrator (ordered block replies, generation failure handling).
"""

import asyncio

import pytest

from gateway.config import Platform
from gateway.context import MessageContext, ReplyPayload
from gateway.reply import (
    ReplyGenerator,
    ReplyOrchestrator,
    is_silent,
    normalize_replies,
)


def _context():
    return MessageContext(body="hi", from_id="discord:1", to="user:1", surface=Platform.DISCORD, message_sid="m1")


class TestNormalizeReplies:
    def test_none(self):
        assert normalize_replies(None) == []

    def test_single_payload(self):
        replies = normalize_replies(ReplyPayload(text="hello"))
        assert [r.text for r in replies] == ["hello"]

    def test_dicts_and_silent_markers(self):
        replies = normalize_replies([
            {"text": "one"},
            {"text": "NO_REPLY"},
            {"text": "  "},
            {"mediaUrl": "https://x/a.png"},
        ])
        assert len(replies) == 2
        assert replies[0].text == "one"
        assert replies[1].media == ["https://x/a.png"]

    def test_invalid_item(self):
        with pytest.raises(TypeError):
            normalize_replies([42])

    def test_silent_token_with_media_is_not_silent(self):
        assert is_silent(ReplyPayload(text="NO_REPLY")) is True
        assert is_silent(ReplyPayload(text="NO_REPLY", media_url="https://x/a.png")) is False


class TestReplyOrchestrator:
    @pytest.mark.asyncio
    async def test_blocks_delivered_in_order_before_final(self):
        delivered = []

        async def deliver_block(payload):
            # The first block is slower; order must still hold
            if payload.text == "one":
                await asyncio.sleep(0.01)
            delivered.append(payload.text)

        async def generate(context, hooks):
            await hooks.on_reply_start()
            hooks.on_block_reply(ReplyPayload(text="one"))
            hooks.on_block_reply({"text": "two"})
            return [ReplyPayload(text="final")]

        result = await ReplyOrchestrator(generate).run(_context(), deliver_block=deliver_block)

        assert delivered == ["one", "two"]
        assert result.ok
        assert [r.text for r in result.replies] == ["final"]
        assert result.blocks_delivered == 2

    @pytest.mark.asyncio
    async def test_reply_start_hook_called(self):
        started = []

        async def generate(context, hooks):
            await hooks.on_reply_start()
            return None

        result = await ReplyOrchestrator(generate).run(_context(), on_reply_start=lambda: started.append(True))
        assert started == [True]
        assert result.replies == []

    @pytest.mark.asyncio
    async def test_reply_start_failure_is_ignored(self):
        def on_start():
            raise RuntimeError("typing failed")

        async def generate(context, hooks):
            await hooks.on_reply_start()
            return "ok"

        result = await ReplyOrchestrator(generate).run(_context(), on_reply_start=on_start)
        assert result.ok
        assert result.replies[0].text == "ok"

    @pytest.mark.asyncio
    async def test_generation_failure_keeps_delivered_blocks(self):
        delivered = []

        async def deliver_block(payload):
            delivered.append(payload.text)

        async def generate(context, hooks):
            hooks.on_block_reply(ReplyPayload(text="partial"))
            raise RuntimeError("agent crashed")

        result = await ReplyOrchestrator(generate).run(_context(), deliver_block=deliver_block)

        assert not result.ok
        assert isinstance(result.error, RuntimeError)
        assert delivered == ["partial"]
        assert result.blocks_delivered == 1
        assert result.replies == []

    @pytest.mark.asyncio
    async def test_block_failure_does_not_stop_later_blocks(self):
        delivered = []

        async def deliver_block(payload):
            if payload.text == "bad":
                raise RuntimeError("send failed")
            delivered.append(payload.text)

        async def generate(context, hooks):
            hooks.on_block_reply(ReplyPayload(text="bad"))
            hooks.on_block_reply(ReplyPayload(text="good"))
            return None

        result = await ReplyOrchestrator(generate).run(_context(), deliver_block=deliver_block)
        assert result.ok
        assert delivered == ["good"]
        assert result.blocks_delivered == 1

    @pytest.mark.asyncio
    async def test_empty_block_ignored(self):
        delivered = []

        async def deliver_block(payload):
            delivered.append(payload)

        async def generate(context, hooks):
            hooks.on_block_reply(ReplyPayload())
            return None

        await ReplyOrchestrator(generate).run(_context(), deliver_block=deliver_block)
        assert delivered == []

    @pytest.mark.asyncio
    async def test_generator_object(self):
        class Echo(ReplyGenerator):
            async def generate(self, context, hooks):
                return {"text": f"echo: {context.body}"}

        result = await ReplyOrchestrator(Echo()).run(_context())
        assert result.replies[0].text == "echo: hi"

    @pytest.mark.asyncio
    async def test_invalid_result_is_a_failure(self):
        async def generate(context, hooks):
            return [object()]

        result = await ReplyOrchestrator(generate).run(_context())
        assert isinstance(result.error, TypeError)
