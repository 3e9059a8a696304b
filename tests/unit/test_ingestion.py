"""
Tests for the background ingestion channel.
"""

import queue
import threading

import pytest

from audis.errors import ChannelClosed, DuplicateEvent
from audis.events import Event
from audis.ingestion import BackgroundLogger


class TestBackgroundLogger:
    """Tests for BackgroundLogger with a plain sink."""

    def test_default_capacity(self):
        """Test that capacity 0 falls back to 100."""
        assert BackgroundLogger(lambda e: None).capacity == 100
        assert BackgroundLogger(lambda e: None, capacity=5).capacity == 5

    def test_negative_capacity_rejected(self):
        """Test that a negative capacity is refused."""
        with pytest.raises(ValueError):
            BackgroundLogger(lambda e: None, capacity=-1)

    def test_drains_on_close(self):
        """Test that close() lets every queued event through, in order."""
        seen = []
        channel = BackgroundLogger(lambda e: seen.append(e.id), capacity=2)
        channel.start()

        for i in range(10):
            channel.send(Event(id=f"e{i}", data="x", subjects=["a"]))
        channel.close()

        assert seen == [f"e{i}" for i in range(10)]
        assert channel.processed == 10
        assert channel.failed == 0

    def test_send_after_close(self):
        """Test that a closed channel refuses new events."""
        channel = BackgroundLogger(lambda e: None)
        channel.start()
        channel.close()

        assert channel.closed
        with pytest.raises(ChannelClosed):
            channel.send(Event(data="x", subjects=["a"]))

    def test_close_twice(self):
        """Test that closing is idempotent."""
        channel = BackgroundLogger(lambda e: None)
        channel.start()

        channel.close()
        channel.close()

    def test_backpressure(self):
        """Test that a full queue blocks producers."""
        release = threading.Event()
        started = threading.Event()

        def slow_sink(event):
            started.set()
            release.wait(5)

        channel = BackgroundLogger(slow_sink, capacity=1)
        channel.start()

        channel.send(Event(id="e0", data="x", subjects=["a"]))
        assert started.wait(5)
        # Worker is busy with e0; e1 fills the single slot
        channel.send(Event(id="e1", data="x", subjects=["a"]))

        with pytest.raises(queue.Full):
            channel.send(Event(id="e2", data="x", subjects=["a"]), timeout=0.05)

        release.set()
        channel.close()
        assert channel.processed == 2

    def test_failure_does_not_stop_worker(self):
        """Test that the worker logs a failure and moves on."""
        seen = []

        def flaky_sink(event):
            if event.id == "bad":
                raise DuplicateEvent(event.id)
            seen.append(event.id)

        with BackgroundLogger(flaky_sink) as channel:
            channel.send(Event(id="good1", data="x", subjects=["a"]))
            channel.send(Event(id="bad", data="x", subjects=["a"]))
            channel.send(Event(id="good2", data="x", subjects=["a"]))

        assert seen == ["good1", "good2"]
        assert channel.processed == 2
        assert channel.failed == 1

    def test_non_event_does_not_stop_worker(self):
        """Test that an item without an id is counted as a failure, not fatal."""
        seen = []

        def sink(event):
            seen.append(event.id)

        with BackgroundLogger(sink) as channel:
            channel.send({"data": "not an event"})
            channel.send(Event(id="after", data="x", subjects=["a"]))

        assert seen == ["after"]
        assert channel.failed == 1
        assert channel.processed == 1


class TestAuditLogBackground:
    """Tests for AuditLog.background."""

    def test_can_function_in_a_background_thread(self, audit, new_id):
        """Test that events sent to the channel end up in the log, in order."""
        ids = [new_id() for _ in range(3)]
        assert audit.retrieve("all") == []

        channel = audit.background(2)
        for event_id in ids:
            channel.send(Event(id=event_id, data=f"[{event_id} data]", subjects=["all"]))
        channel.close()

        assert [r.id for r in audit.retrieve("all")] == ids

    def test_uses_configured_capacity(self, audit):
        """Test that capacity 0 takes the configured default."""
        channel = audit.background()
        try:
            assert channel.capacity == audit.config.queue_capacity
        finally:
            channel.close()

    def test_duplicate_reported_and_skipped(self, audit):
        """Test that a rejected event does not block later ones."""
        audit.log(Event(id="e1", data="original", subjects=["a"]))

        with audit.background(4) as channel:
            channel.send(Event(id="e1", data="impostor", subjects=["a"]))
            channel.send(Event(id="e2", data="fine", subjects=["a"]))

        assert channel.failed == 1
        assert [r.data for r in audit.retrieve("a")] == ["original", "fine"]
