"""Tests for gateway/system_events.py."""

from gateway.system_events import SystemEventQueue, render_system_lines


class TestSystemEventQueue:
    def test_consecutive_duplicates_skipped(self):
        queue = SystemEventQueue()
        assert queue.enqueue("alice joined") is True
        assert queue.enqueue("alice joined") is False
        assert queue.enqueue("bob joined") is True
        assert queue.enqueue("alice joined") is True
        assert len(queue) == 3

    def test_blank_rejected(self):
        queue = SystemEventQueue()
        assert queue.enqueue("   ") is False
        assert len(queue) == 0

    def test_bounded(self):
        queue = SystemEventQueue(max_events=20)
        for n in range(25):
            queue.enqueue(f"event {n}")
        events = queue.peek()
        assert len(events) == 20
        assert events[0].text == "event 5"

    def test_drain_clears(self):
        queue = SystemEventQueue()
        queue.enqueue("pinned", context_key="discord:system:1:2")
        assert queue.has_context_key("discord:system:1:2")
        events = queue.drain()
        assert [e.text for e in events] == ["pinned"]
        assert len(queue) == 0
        # After a drain the same text may be queued again
        assert queue.enqueue("pinned") is True

    def test_render(self):
        queue = SystemEventQueue()
        queue.enqueue("a")
        queue.enqueue("b")
        assert render_system_lines(queue.drain()) == "System: a\nSystem: b"
