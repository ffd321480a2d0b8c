"""
Reply queue draining with bounded retry and exponential backoff.

Each pass picks up at most ``batch_size`` due items (pending, scheduled at or
before now, under the retry ceiling), oldest first, and hands each one to a
downstream submitter. Outcomes:

- autopilot reply whose owner switched autopilot off: cancelled, no retry spent
- submitted: sent
- refused by a gate (rate limit, open circuit): pending again after the
  gate's wait hint, no retry spent
- configuration/auth failure: failed immediately
- anything else: retry_count + 1, then either failed (ceiling reached,
  scheduled_for left alone) or pending again after 2**retry_count minutes
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .errors import AdmissionDenied, ConfigurationError
from .observability import ControlEventRecord, emit_event

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
SENT = "sent"
FAILED = "failed"
CANCELLED = "cancelled"

AUTOPILOT_REPLY = "autopilot_generated"
MAX_RETRIES = 3
BATCH_SIZE = 20


@dataclass
class ReplyQueueItem:
    id: str
    user_id: str
    account_id: str
    target_id: Optional[str]
    content: str
    scheduled_for: float
    status: str = PENDING
    retry_count: int = 0
    error_message: Optional[str] = None
    reply_type: str = "manual"
    sent_at: Optional[float] = None


@dataclass(frozen=True)
class ReplyJob:
    item_id: str
    user_id: str
    account_id: str
    target_id: Optional[str]
    content: str
    scheduled_for: float

    @classmethod
    def from_item(cls, item: ReplyQueueItem) -> "ReplyJob":
        return cls(
            item_id=item.id,
            user_id=item.user_id,
            account_id=item.account_id,
            target_id=item.target_id,
            content=item.content,
            scheduled_for=item.scheduled_for,
        )


@dataclass
class ItemOutcome:
    item_id: str
    status: str
    retry_count: int
    scheduled_for: Optional[float] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    cancelled: int = 0
    rescheduled: int = 0
    errors: int = 0
    outcomes: List[ItemOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "rescheduled": self.rescheduled,
            "errors": self.errors,
            "results": [vars(o) for o in self.outcomes],
        }


class ReplyQueueStore(Protocol):
    async def find_due(self, now: float, max_retries: int, limit: int) -> List[ReplyQueueItem]: ...

    async def update(self, item_id: str, **fields: Any) -> None: ...


class SettingsLookup(Protocol):
    async def is_autopilot_enabled(self, user_id: str) -> bool: ...


Submitter = Callable[[ReplyJob], Awaitable[Any]]


def backoff_delay(retry_count: int) -> float:
    """Seconds to wait before retry number ``retry_count``: 2, 4, 8... minutes."""
    return (2 ** retry_count) * 60.0


class InMemoryReplyQueueStore:
    """Dict-backed store with the same filtering the database query applies."""

    def __init__(self, items: Optional[List[ReplyQueueItem]] = None) -> None:
        self.items: Dict[str, ReplyQueueItem] = {item.id: item for item in items or []}

    def add(self, item: ReplyQueueItem) -> None:
        self.items[item.id] = item

    async def find_due(self, now: float, max_retries: int, limit: int) -> List[ReplyQueueItem]:
        due = [
            item for item in self.items.values()
            if item.status == PENDING
            and item.scheduled_for <= now
            and item.retry_count < max_retries
        ]
        due.sort(key=lambda item: item.scheduled_for)
        return [replace(item) for item in due[:limit]]

    async def update(self, item_id: str, **fields: Any) -> None:
        item = self.items[item_id]
        for key, value in fields.items():
            setattr(item, key, value)

    def counts(self) -> Dict[str, int]:
        stats: Dict[str, int] = {}
        for item in self.items.values():
            stats[item.status] = stats.get(item.status, 0) + 1
        return stats


class ReplyQueueProcessor:
    def __init__(
        self,
        store: ReplyQueueStore,
        settings: SettingsLookup,
        submit: Submitter,
        batch_size: int = BATCH_SIZE,
        max_retries: int = MAX_RETRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.submit = submit
        self.batch_size = batch_size
        self.max_retries = max_retries
        self._clock = clock

    async def process_due(self) -> BatchResult:
        now = self._clock()
        items = await self.store.find_due(now, self.max_retries, self.batch_size)
        logger.info("Processing %d due replies", len(items))

        result = BatchResult()
        for item in items:
            try:
                outcome = await self._process_item(item)
            except Exception as e:
                # the store itself failed while recording this item
                logger.error("Could not record outcome for reply %s: %s", item.id, e)
                outcome = ItemOutcome(item.id, "error", item.retry_count, error=str(e))
            result.outcomes.append(outcome)
            if outcome.status == SENT:
                result.processed += 1
            elif outcome.status == CANCELLED:
                result.cancelled += 1
            elif outcome.status == FAILED:
                result.failed += 1
            elif outcome.status == PENDING:
                result.rescheduled += 1
            else:
                result.errors += 1
        return result

    async def _process_item(self, item: ReplyQueueItem) -> ItemOutcome:
        if item.reply_type == AUTOPILOT_REPLY and not await self.settings.is_autopilot_enabled(item.user_id):
            await self.store.update(item.id, status=CANCELLED, error_message="Autopilot disabled by user")
            logger.info("Cancelled autopilot reply %s - autopilot disabled", item.id)
            emit_event(ControlEventRecord(kind="cancelled", subject=item.id, ok=True, reason="Autopilot disabled by user"))
            return ItemOutcome(item.id, CANCELLED, item.retry_count)

        await self.store.update(item.id, status=PROCESSING)
        try:
            await self.submit(ReplyJob.from_item(item))
        except AdmissionDenied as e:
            return await self._defer(item, e)
        except ConfigurationError as e:
            return await self._fail(item, str(e))
        except Exception as e:
            return await self._retry_or_fail(item, str(e) or type(e).__name__)

        await self.store.update(item.id, status=SENT, sent_at=self._clock(), error_message=None)
        logger.info("Processed reply job %s", item.id)
        return ItemOutcome(item.id, SENT, item.retry_count)

    async def _defer(self, item: ReplyQueueItem, denial: AdmissionDenied) -> ItemOutcome:
        scheduled_for = self._clock() + denial.wait_seconds
        await self.store.update(
            item.id,
            status=PENDING,
            scheduled_for=scheduled_for,
            error_message=denial.reason,
        )
        logger.warning("Reply %s deferred %.0fs: %s", item.id, denial.wait_seconds, denial.reason)
        emit_event(ControlEventRecord(
            kind="admission", subject=item.id, ok=False, reason=denial.reason,
            wait_seconds=denial.wait_seconds, detail={"code": denial.code},
        ))
        return ItemOutcome(item.id, PENDING, item.retry_count, scheduled_for, denial.reason)

    async def _fail(self, item: ReplyQueueItem, message: str, retry_count: Optional[int] = None) -> ItemOutcome:
        retry_count = item.retry_count if retry_count is None else retry_count
        await self.store.update(item.id, status=FAILED, retry_count=retry_count, error_message=message)
        logger.error("Reply %s failed permanently: %s", item.id, message)
        emit_event(ControlEventRecord(kind="terminal_failure", subject=item.id, ok=False, reason=message, retry_count=retry_count))
        return ItemOutcome(item.id, FAILED, retry_count, item.scheduled_for, message)

    async def _retry_or_fail(self, item: ReplyQueueItem, message: str) -> ItemOutcome:
        retry_count = item.retry_count + 1
        if retry_count >= self.max_retries:
            return await self._fail(item, message, retry_count)

        delay = backoff_delay(retry_count)
        scheduled_for = self._clock() + delay
        await self.store.update(
            item.id,
            status=PENDING,
            retry_count=retry_count,
            scheduled_for=scheduled_for,
            error_message=message,
        )
        logger.warning(
            "Reply %s failed (%s); retry %d/%d in %.0f min",
            item.id, message, retry_count, self.max_retries, delay / 60,
        )
        emit_event(ControlEventRecord(
            kind="retry", subject=item.id, ok=False, reason=message,
            wait_seconds=delay, retry_count=retry_count,
        ))
        return ItemOutcome(item.id, PENDING, retry_count, scheduled_for, message)
