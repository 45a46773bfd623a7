"""
Analysis queue manager.

Owns the lifecycle of queued analysis jobs per deal:

    queued -> processing -> completed | failed
    queued -> cancelled
    failed -> queued        (manual re-trigger via requeue)

Key invariants:
- One current item per deal; at most one item per deal is processing
  (single-flight). Enqueue while an item is queued or processing is a no-op
  that returns the existing item.
- Items are superseded, never mutated: every transition records a new
  version and the old one stays in the deal's history.
- A processing item can never be silently abandoned: reap_stale() fails
  items that exceeded the processing timeout, and is run on status polls.
- Finished items are kept in memory only for the retention window; prune()
  drops them once their versions have been drained from the outbox.

All transitions are synchronous and never suspend, so within one event
loop no two transitions can interleave. Changed versions accumulate in an
outbox that the caller drains (pop_changes) and persists.
"""

from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Callable

import structlog

from .config import config
from .errors import InvalidStateError, QueueItemNotFoundError
from .models.queue import (
    Priority,
    QueueItem,
    QueueStatus,
    TriggerReason,
    utcnow,
)

logger = structlog.get_logger(__name__)


class AnalysisQueueManager:
    """
    In-process registry of analysis queue items.

    Does not decide when to trigger analysis; it only records operator
    intent (auto-analysis flags) for whatever scheduler consults it.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        processing_timeout: timedelta | None = None,
        default_run_seconds: float | None = None,
        retention: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            max_attempts: Runs allowed per job chain before requeue is refused
            processing_timeout: Age after which a processing item is reaped
            default_run_seconds: ETA basis until real run durations exist
            retention: How long finished items stay in memory before prune()
            clock: Source of "now" (timezone-aware)
        """
        self.max_attempts = max_attempts or config.MAX_ATTEMPTS
        self.processing_timeout = processing_timeout or timedelta(
            minutes=config.PROCESSING_TIMEOUT_MINUTES
        )
        self.default_run_seconds = default_run_seconds or config.AVG_RUN_SECONDS
        self.retention = retention or timedelta(hours=config.QUEUE_RETENTION_HOURS)
        self._clock = clock

        self._items: dict[str, QueueItem] = {}
        self._current: dict[str, str] = {}
        self._history: dict[str, list[QueueItem]] = defaultdict(list)
        self._auto_analysis: dict[str, bool] = {}
        self._run_durations: deque[float] = deque(maxlen=50)
        self._outbox: list[QueueItem] = []

    # =========================================================================
    # Operations
    # =========================================================================

    def enqueue(
        self,
        deal_id: str,
        priority: Priority | str = Priority.NORMAL,
        trigger_reason: TriggerReason | str = TriggerReason.MANUAL_TRIGGER,
        delay: timedelta | None = None,
    ) -> QueueItem:
        """
        Queue an analysis for a deal.

        Idempotent: if the deal already has a queued or processing item,
        that item is returned unchanged.
        """
        priority = Priority(priority)
        reason = (
            trigger_reason.value
            if isinstance(trigger_reason, TriggerReason)
            else str(trigger_reason)
        )
        log = logger.bind(deal_id=deal_id)

        existing = self.current(deal_id)
        if existing is not None and existing.is_active:
            log.info(
                'queue.enqueue_deduplicated',
                queue_item_id=existing.id,
                status=existing.status.value,
            )
            return existing

        now = self._clock()
        item = QueueItem(
            deal_id=deal_id,
            priority=priority,
            trigger_reason=reason,
            scheduled_for=now + (delay or timedelta(0)),
            max_attempts=self.max_attempts,
            created_at=now,
            supersedes=existing.id if existing is not None else None,
        )
        self._record(item)
        log.info(
            'queue.enqueued',
            queue_item_id=item.id,
            priority=priority.value,
            trigger_reason=reason,
            scheduled_for=item.scheduled_for.isoformat(),
        )
        return item

    def cancel(self, queue_item_id: str) -> QueueItem:
        """
        Cancel a queued item.

        Raises:
            QueueItemNotFoundError: Unknown id
            InvalidStateError: Item is not queued
        """
        item = self.get(queue_item_id)
        self._require(item, QueueStatus.QUEUED, 'cancel')
        cancelled = item.transition(QueueStatus.CANCELLED, completed_at=self._clock())
        self._record(cancelled)
        logger.info('queue.cancelled', deal_id=item.deal_id, queue_item_id=item.id)
        return cancelled

    def force_now(self, deal_id: str) -> QueueItem:
        """
        Run a deal's analysis as soon as possible.

        A queued item is promoted to high priority and scheduled for now. A
        processing item is returned as is. Otherwise a new high-priority item
        is enqueued with no delay.
        """
        current = self.current(deal_id)
        if current is not None and current.status == QueueStatus.PROCESSING:
            return current

        if current is not None and current.status == QueueStatus.QUEUED:
            promoted = current.transition(
                QueueStatus.QUEUED,
                priority=Priority.HIGH,
                scheduled_for=min(current.scheduled_for, self._clock()),
            )
            self._record(promoted)
            logger.info('queue.promoted', deal_id=deal_id, queue_item_id=promoted.id)
            return promoted

        return self.enqueue(
            deal_id,
            priority=Priority.HIGH,
            trigger_reason=TriggerReason.MANUAL_FORCE,
        )

    def requeue(self, queue_item_id: str) -> QueueItem:
        """
        Manually re-trigger a failed item.

        Creates a new queued item that supersedes the failed one and carries
        its attempt count forward.

        Raises:
            InvalidStateError: Item is not failed, is no longer the deal's
                current item, or has used all its attempts
        """
        item = self.get(queue_item_id)
        self._require(item, QueueStatus.FAILED, 'requeue')

        current = self.current(item.deal_id)
        if current is not None and current.id != item.id:
            raise InvalidStateError(
                'Queue item was superseded by a newer item',
                context={'queue_item_id': item.id, 'current_item_id': current.id},
            )
        if item.attempts >= item.max_attempts:
            raise InvalidStateError(
                f'Queue item used all {item.max_attempts} attempts',
                context={'queue_item_id': item.id, 'attempts': item.attempts},
            )

        now = self._clock()
        retry = QueueItem(
            deal_id=item.deal_id,
            priority=item.priority,
            trigger_reason=TriggerReason.RETRY.value,
            scheduled_for=now,
            attempts=item.attempts,
            max_attempts=item.max_attempts,
            created_at=now,
            supersedes=item.id,
        )
        self._record(retry)
        logger.info(
            'queue.requeued',
            deal_id=item.deal_id,
            queue_item_id=retry.id,
            supersedes=item.id,
            attempts=retry.attempts,
        )
        return retry

    def mark_processing(self, queue_item_id: str) -> QueueItem:
        """Move a queued item to processing (single-flight per deal)."""
        item = self.get(queue_item_id)
        self._require(item, QueueStatus.QUEUED, 'start')

        current = self.current(item.deal_id)
        if current is not None and current.id != item.id:
            raise InvalidStateError(
                'Queue item was superseded by a newer item',
                context={'queue_item_id': item.id, 'current_item_id': current.id},
            )

        started = item.transition(
            QueueStatus.PROCESSING,
            attempts=item.attempts + 1,
            started_at=self._clock(),
            error_message=None,
            queue_position=None,
        )
        self._record(started)
        logger.info(
            'queue.processing',
            deal_id=item.deal_id,
            queue_item_id=item.id,
            attempt=started.attempts,
        )
        return started

    def mark_completed(self, queue_item_id: str) -> QueueItem:
        """Move a processing item to completed."""
        item = self.get(queue_item_id)
        self._require(item, QueueStatus.PROCESSING, 'complete')

        now = self._clock()
        completed = item.transition(QueueStatus.COMPLETED, completed_at=now)
        self._record(completed)
        if item.started_at is not None:
            self._run_durations.append((now - item.started_at).total_seconds())
        logger.info('queue.completed', deal_id=item.deal_id, queue_item_id=item.id)
        return completed

    def mark_failed(self, queue_item_id: str, error_message: str) -> QueueItem:
        """Move a processing item to failed with a human-readable message."""
        item = self.get(queue_item_id)
        self._require(item, QueueStatus.PROCESSING, 'fail')

        failed = item.transition(
            QueueStatus.FAILED,
            completed_at=self._clock(),
            error_message=error_message,
        )
        self._record(failed)
        logger.warning(
            'queue.failed',
            deal_id=item.deal_id,
            queue_item_id=item.id,
            error=error_message,
        )
        return failed

    def reap_stale(self) -> list[QueueItem]:
        """
        Fail processing items older than the processing timeout.

        Returns:
            The reconciled (failed) item versions
        """
        now = self._clock()
        reaped = []
        for item_id in list(self._current.values()):
            item = self._items[item_id]
            if item.status != QueueStatus.PROCESSING or item.started_at is None:
                continue
            if now - item.started_at < self.processing_timeout:
                continue
            minutes = int(self.processing_timeout.total_seconds() // 60)
            failed = item.transition(
                QueueStatus.FAILED,
                completed_at=now,
                error_message=f'Processing timed out after {minutes} minutes',
            )
            self._record(failed)
            reaped.append(failed)
            logger.warning(
                'queue.reaped',
                deal_id=item.deal_id,
                queue_item_id=item.id,
                started_at=item.started_at.isoformat(),
            )
        return reaped

    def prune(self, older_than: timedelta | None = None) -> int:
        """
        Forget finished items whose last transition is older than the
        retention window.

        Versions still waiting in the outbox are kept until drained. A deal's
        current item is kept when it failed, so it can still be requeued.

        Returns:
            Number of queue items dropped
        """
        cutoff = self._clock() - (older_than or self.retention)
        pending = {item.id for item in self._outbox}
        current_ids = set(self._current.values())

        dropped: set[str] = set()
        for item_id, item in self._items.items():
            if not item.is_terminal or item_id in pending:
                continue
            if item.completed_at is None or item.completed_at >= cutoff:
                continue
            if item_id in current_ids and item.status == QueueStatus.FAILED:
                continue
            dropped.add(item_id)

        if not dropped:
            return 0

        for item_id in dropped:
            del self._items[item_id]
        for deal_id in list(self._history):
            kept = [v for v in self._history[deal_id] if v.id not in dropped]
            if kept:
                self._history[deal_id] = kept
            else:
                del self._history[deal_id]
            if self._current.get(deal_id) in dropped:
                del self._current[deal_id]

        logger.info('queue.pruned', dropped=len(dropped), remaining=len(self._items))
        return len(dropped)

    def set_auto_analysis(self, deal_id: str, enabled: bool) -> None:
        """Remember whether the scheduler may auto-enqueue this deal."""
        self._auto_analysis[deal_id] = enabled
        logger.info('queue.auto_analysis_set', deal_id=deal_id, enabled=enabled)

    def is_auto_analysis_enabled(self, deal_id: str, default: bool = True) -> bool:
        return self._auto_analysis.get(deal_id, default)

    # =========================================================================
    # Queries
    # =========================================================================

    def find(self, queue_item_id: str) -> QueueItem | None:
        return self._items.get(queue_item_id)

    def get(self, queue_item_id: str) -> QueueItem:
        item = self._items.get(queue_item_id)
        if item is None:
            raise QueueItemNotFoundError(
                'Queue item not found', context={'queue_item_id': queue_item_id}
            )
        return item

    def current(self, deal_id: str) -> QueueItem | None:
        """Latest item for a deal, in any status."""
        item_id = self._current.get(deal_id)
        return self._items[item_id] if item_id is not None else None

    def get_status(self, deal_id: str) -> QueueItem | None:
        """
        Poll a deal's current item, reconciling stale processing first.

        The returned copy carries a fresh queue_position snapshot.
        """
        self.reap_stale()
        item = self.current(deal_id)
        if item is None:
            return None
        return item.model_copy(update={'queue_position': self.queue_position(deal_id)})

    def history(self, deal_id: str) -> list[QueueItem]:
        """Every recorded version for a deal, oldest first."""
        return list(self._history.get(deal_id, ()))

    def queue_position(self, deal_id: str) -> int | None:
        """
        Number of queued items ahead of this deal's queued item.

        Counts queued items with equal-or-higher priority and an earlier
        scheduled_for. An ETA heuristic only, not an ordering guarantee.
        """
        item = self.current(deal_id)
        if item is None or item.status != QueueStatus.QUEUED:
            return None
        return sum(
            1
            for other in self._queued()
            if other.id != item.id
            and other.priority.rank >= item.priority.rank
            and other.scheduled_for < item.scheduled_for
        )

    def estimated_wait(self, deal_id: str) -> timedelta | None:
        """Rough wait before this deal's run starts."""
        position = self.queue_position(deal_id)
        if position is None:
            return None
        return timedelta(seconds=position * self.average_run_seconds)

    @property
    def average_run_seconds(self) -> float:
        if not self._run_durations:
            return self.default_run_seconds
        return sum(self._run_durations) / len(self._run_durations)

    def due_items(self, limit: int | None = None) -> list[QueueItem]:
        """
        Queued items whose schedule has arrived, best first.

        Ordered by priority, then scheduled_for, then creation time. At most
        one item per deal, and never for a deal that is processing.
        """
        self.reap_stale()
        now = self._clock()
        due = sorted(
            (item for item in self._queued() if item.scheduled_for <= now),
            key=lambda i: (-i.priority.rank, i.scheduled_for, i.created_at),
        )
        return due[:limit] if limit is not None else due

    def stats(self) -> dict[str, int]:
        """Counts per status over every job, plus recent failures."""
        now = self._clock()
        counts = {status.value: 0 for status in QueueStatus}
        high_priority = 0
        recent_failures = 0
        for item in self._items.values():
            counts[item.status.value] += 1
            if item.is_active and item.priority == Priority.HIGH:
                high_priority += 1
            if (
                item.status == QueueStatus.FAILED
                and item.completed_at is not None
                and now - item.completed_at < timedelta(hours=24)
            ):
                recent_failures += 1
        return {
            'total': len(self._items),
            **counts,
            'high_priority': high_priority,
            'recent_failures': recent_failures,
        }

    def pop_changes(self) -> list[QueueItem]:
        """Drain item versions recorded since the last call."""
        changes, self._outbox = self._outbox, []
        return changes

    # =========================================================================
    # Internals
    # =========================================================================

    def _queued(self) -> list[QueueItem]:
        return [
            self._items[item_id]
            for item_id in self._current.values()
            if self._items[item_id].status == QueueStatus.QUEUED
        ]

    def _record(self, item: QueueItem) -> None:
        self._items[item.id] = item
        self._current[item.deal_id] = item.id
        self._history[item.deal_id].append(item)
        self._outbox.append(item)

    @staticmethod
    def _require(item: QueueItem, status: QueueStatus, action: str) -> None:
        if item.status != status:
            raise InvalidStateError(
                f'Cannot {action} queue item in status "{item.status.value}"',
                context={
                    'queue_item_id': item.id,
                    'status': item.status.value,
                    'required': status.value,
                },
            )
