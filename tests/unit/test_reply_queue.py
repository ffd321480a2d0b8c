#!/usr/bin/env python3
"""
Unit tests for reply queue retry/backoff
"""

import asyncio
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from autopilot.clock import FakeClock
from autopilot.errors import (
    CircuitOpenError,
    InvalidReplyError,
    RateLimitExceeded,
    XApiError,
)
from autopilot.reply_queue import (
    AUTOPILOT_REPLY,
    CANCELLED,
    FAILED,
    PENDING,
    SENT,
    InMemoryReplyQueueStore,
    ReplyQueueItem,
    ReplyQueueProcessor,
    backoff_delay,
)


class Settings:
    def __init__(self, enabled=True):
        self.enabled = enabled

    async def is_autopilot_enabled(self, user_id):
        return self.enabled


class Submitter:
    """Raises the queued errors in order, then succeeds."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.jobs = []

    async def __call__(self, job):
        self.jobs.append(job)
        if self.errors:
            raise self.errors.pop(0)
        return {"data": {"id": "tweet-1"}}


def make_item(clock, item_id="r1", **overrides):
    fields = dict(
        id=item_id,
        user_id="u1",
        account_id="acct-1",
        target_id="tweet-42",
        content="Nice thread!",
        scheduled_for=clock.now,
    )
    fields.update(overrides)
    return ReplyQueueItem(**fields)


class TestBackoff:
    def test_delays_double(self):
        assert backoff_delay(1) == 120
        assert backoff_delay(2) == 240


class TestReplyQueueProcessor:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return InMemoryReplyQueueStore([make_item(clock)])

    def process(self, store, clock, submit, settings=None):
        processor = ReplyQueueProcessor(store, settings or Settings(), submit, clock=clock)
        return asyncio.run(processor.process_due())

    def test_success_marks_sent(self, store, clock):
        submit = Submitter()
        result = self.process(store, clock, submit)

        item = store.items["r1"]
        assert item.status == SENT
        assert item.sent_at == clock.now
        assert result.processed == 1
        assert submit.jobs[0].target_id == "tweet-42"

    def test_three_failures_backoff_then_fail(self, store, clock):
        submit = Submitter(XApiError(503), XApiError(503), XApiError(503))
        start = clock.now

        self.process(store, clock, submit)
        item = store.items["r1"]
        assert (item.status, item.retry_count) == (PENDING, 1)
        assert item.scheduled_for == start + 120

        clock.set(item.scheduled_for)
        failed_at = clock.now
        self.process(store, clock, submit)
        assert (item.status, item.retry_count) == (PENDING, 2)
        assert item.scheduled_for == failed_at + 240

        clock.set(item.scheduled_for)
        before = item.scheduled_for
        result = self.process(store, clock, submit)
        assert (item.status, item.retry_count) == (FAILED, 3)
        assert item.scheduled_for == before
        assert result.failed == 1
        assert "503" in item.error_message

    def test_item_at_retry_two_fails_with_schedule_unchanged(self, clock):
        store = InMemoryReplyQueueStore([make_item(clock, retry_count=2)])
        before = store.items["r1"].scheduled_for

        self.process(store, clock, Submitter(RuntimeError("timeout")))

        item = store.items["r1"]
        assert item.retry_count == 3
        assert item.status == FAILED
        assert item.scheduled_for == before

    def test_admission_denial_defers_without_spending_retry(self, store, clock):
        submit = Submitter(RateLimitExceeded("tweets/post", 300))
        result = self.process(store, clock, submit)

        item = store.items["r1"]
        assert item.status == PENDING
        assert item.retry_count == 0
        assert item.scheduled_for == clock.now + 300
        assert result.rescheduled == 1

    def test_open_circuit_defers(self, store, clock):
        self.process(store, clock, Submitter(CircuitOpenError("post_tweet", 90)))

        item = store.items["r1"]
        assert item.retry_count == 0
        assert item.scheduled_for == clock.now + 90
        assert "is OPEN" in item.error_message

    def test_configuration_error_fails_immediately(self, store, clock):
        self.process(store, clock, Submitter(InvalidReplyError("too long")))

        item = store.items["r1"]
        assert item.status == FAILED
        assert item.retry_count == 0

    def test_disabled_autopilot_cancels_autopilot_replies(self, clock):
        store = InMemoryReplyQueueStore([
            make_item(clock, "auto", reply_type=AUTOPILOT_REPLY),
            make_item(clock, "manual"),
        ])
        submit = Submitter()

        result = self.process(store, clock, submit, Settings(enabled=False))

        assert store.items["auto"].status == CANCELLED
        assert store.items["auto"].error_message == "Autopilot disabled by user"
        assert store.items["manual"].status == SENT
        assert [job.item_id for job in submit.jobs] == ["manual"]
        assert result.cancelled == 1

    def test_only_due_items_in_batch_order(self, clock):
        store = InMemoryReplyQueueStore([
            make_item(clock, "later", scheduled_for=clock.now - 10),
            make_item(clock, "first", scheduled_for=clock.now - 100),
            make_item(clock, "future", scheduled_for=clock.now + 100),
            make_item(clock, "exhausted", retry_count=3),
            make_item(clock, "sent", status=SENT),
        ])
        submit = Submitter()
        processor = ReplyQueueProcessor(store, Settings(), submit, batch_size=1, clock=clock)

        asyncio.run(processor.process_due())

        assert [job.item_id for job in submit.jobs] == ["first"]
        assert store.items["later"].status == PENDING
        assert store.items["future"].status == PENDING

    def test_one_bad_item_does_not_stop_batch(self, clock):
        store = InMemoryReplyQueueStore([
            make_item(clock, "a", scheduled_for=clock.now - 2),
            make_item(clock, "b", scheduled_for=clock.now - 1),
        ])
        result = self.process(store, clock, Submitter(RuntimeError("boom")))

        assert store.items["a"].status == PENDING
        assert store.items["b"].status == SENT
        assert result.to_dict()["rescheduled"] == 1
        assert result.processed == 1

    def test_store_failure_counted_as_error(self, clock):
        class BrokenStore(InMemoryReplyQueueStore):
            async def update(self, item_id, **fields):
                raise RuntimeError("database is locked")

        store = BrokenStore([make_item(clock)])
        result = self.process(store, clock, Submitter())

        assert result.errors == 1
        assert result.outcomes[0].status == "error"
