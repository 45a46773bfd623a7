"""
Tests for the analysis queue manager.

Covers:
- Single-flight idempotent enqueue
- Lifecycle transitions and InvalidStateError on illegal ones
- force_now promotion, requeue limits, stale processing reaper
- Queue position, ETA, due ordering and stats
- Immutable item versions and the change outbox
- Retention pruning of finished items
"""

from datetime import timedelta

import pytest

from deal_analysis.errors import InvalidStateError, QueueItemNotFoundError
from deal_analysis.models import Priority, QueueStatus, TriggerReason
from deal_analysis.queue import AnalysisQueueManager


@pytest.fixture
def queue(clock):
    return AnalysisQueueManager(
        max_attempts=3,
        processing_timeout=timedelta(minutes=15),
        default_run_seconds=120,
        clock=clock,
    )


class TestEnqueue:
    def test_enqueue_creates_queued_item(self, queue, clock):
        item = queue.enqueue('deal_1', Priority.NORMAL, TriggerReason.NEW_DEAL)

        assert item.status == QueueStatus.QUEUED
        assert item.deal_id == 'deal_1'
        assert item.trigger_reason == 'new_deal'
        assert item.scheduled_for == clock.now
        assert item.attempts == 0
        assert item.max_attempts == 3

    def test_enqueue_twice_while_queued_returns_same_item(self, queue):
        first = queue.enqueue('deal_1')
        second = queue.enqueue('deal_1', Priority.HIGH, TriggerReason.DOCUMENT_UPLOAD)

        assert second.id == first.id
        assert second.priority == Priority.NORMAL

    def test_enqueue_twice_while_processing_returns_same_item(self, queue):
        first = queue.enqueue('deal_1')
        queue.mark_processing(first.id)

        second = queue.enqueue('deal_1')

        assert second.id == first.id
        assert second.status == QueueStatus.PROCESSING

    def test_enqueue_after_completion_creates_new_item(self, queue):
        first = queue.enqueue('deal_1')
        queue.mark_processing(first.id)
        queue.mark_completed(first.id)

        second = queue.enqueue('deal_1')

        assert second.id != first.id
        assert second.supersedes == first.id
        assert queue.find(first.id).status == QueueStatus.COMPLETED

    def test_different_deals_are_independent(self, queue):
        a = queue.enqueue('deal_a')
        b = queue.enqueue('deal_b')

        assert a.id != b.id

    def test_delay_schedules_in_future(self, queue, clock):
        item = queue.enqueue('deal_1', delay=timedelta(minutes=10))

        assert item.scheduled_for == clock.now + timedelta(minutes=10)
        assert queue.due_items() == []

    def test_accepts_plain_string_reason(self, queue):
        item = queue.enqueue('deal_1', 'low', 'webhook')

        assert item.priority == Priority.LOW
        assert item.trigger_reason == 'webhook'


class TestCancel:
    def test_cancel_queued(self, queue):
        item = queue.enqueue('deal_1')

        cancelled = queue.cancel(item.id)

        assert cancelled.status == QueueStatus.CANCELLED
        assert cancelled.completed_at is not None

    def test_cancel_processing_raises(self, queue):
        item = queue.enqueue('deal_1')
        queue.mark_processing(item.id)

        with pytest.raises(InvalidStateError):
            queue.cancel(item.id)

    @pytest.mark.parametrize('finish', ['completed', 'failed', 'cancelled'])
    def test_cancel_terminal_raises(self, queue, finish):
        item = queue.enqueue('deal_1')
        if finish == 'cancelled':
            queue.cancel(item.id)
        else:
            queue.mark_processing(item.id)
            if finish == 'completed':
                queue.mark_completed(item.id)
            else:
                queue.mark_failed(item.id, 'boom')

        with pytest.raises(InvalidStateError):
            queue.cancel(item.id)

    def test_cancel_unknown_raises_not_found(self, queue):
        with pytest.raises(QueueItemNotFoundError):
            queue.cancel('missing')


class TestTransitions:
    def test_processing_increments_attempts(self, queue, clock):
        item = queue.enqueue('deal_1')

        started = queue.mark_processing(item.id)

        assert started.status == QueueStatus.PROCESSING
        assert started.attempts == 1
        assert started.started_at == clock.now

    def test_cannot_start_twice(self, queue):
        item = queue.enqueue('deal_1')
        queue.mark_processing(item.id)

        with pytest.raises(InvalidStateError):
            queue.mark_processing(item.id)

    def test_complete_requires_processing(self, queue):
        item = queue.enqueue('deal_1')

        with pytest.raises(InvalidStateError):
            queue.mark_completed(item.id)

    def test_failed_carries_error_message(self, queue):
        item = queue.enqueue('deal_1')
        queue.mark_processing(item.id)

        failed = queue.mark_failed(item.id, 'Failed to save assessment')

        assert failed.status == QueueStatus.FAILED
        assert failed.error_message == 'Failed to save assessment'

    def test_versions_are_immutable(self, queue):
        item = queue.enqueue('deal_1')
        started = queue.mark_processing(item.id)

        assert item.status == QueueStatus.QUEUED
        assert item.version == 1
        assert started.version == 2
        assert [v.status for v in queue.history('deal_1')] == [
            QueueStatus.QUEUED,
            QueueStatus.PROCESSING,
        ]

    def test_pop_changes_drains_outbox(self, queue):
        item = queue.enqueue('deal_1')
        queue.mark_processing(item.id)

        changes = queue.pop_changes()

        assert [c.status for c in changes] == [QueueStatus.QUEUED, QueueStatus.PROCESSING]
        assert queue.pop_changes() == []


class TestForceNow:
    def test_promotes_queued_item(self, queue, clock):
        item = queue.enqueue('deal_1', Priority.LOW, delay=timedelta(hours=1))

        forced = queue.force_now('deal_1')

        assert forced.id == item.id
        assert forced.priority == Priority.HIGH
        assert forced.scheduled_for == clock.now
        assert queue.due_items()[0].id == item.id

    def test_enqueues_high_when_nothing_queued(self, queue, clock):
        forced = queue.force_now('deal_1')

        assert forced.status == QueueStatus.QUEUED
        assert forced.priority == Priority.HIGH
        assert forced.trigger_reason == TriggerReason.MANUAL_FORCE.value
        assert forced.scheduled_for == clock.now

    def test_processing_item_returned_unchanged(self, queue):
        item = queue.enqueue('deal_1')
        started = queue.mark_processing(item.id)

        assert queue.force_now('deal_1') == started


class TestRequeue:
    def _fail(self, queue, item_id):
        queue.mark_processing(item_id)
        return queue.mark_failed(item_id, 'engine outage')

    def test_requeue_failed_creates_superseding_item(self, queue):
        item = queue.enqueue('deal_1')
        self._fail(queue, item.id)

        retry = queue.requeue(item.id)

        assert retry.id != item.id
        assert retry.status == QueueStatus.QUEUED
        assert retry.supersedes == item.id
        assert retry.trigger_reason == TriggerReason.RETRY.value
        assert retry.attempts == 1

    def test_requeue_refused_after_max_attempts(self, queue):
        item = queue.enqueue('deal_1')
        self._fail(queue, item.id)
        item = queue.requeue(item.id)
        self._fail(queue, item.id)
        item = queue.requeue(item.id)
        failed = self._fail(queue, item.id)

        assert failed.attempts == 3
        with pytest.raises(InvalidStateError, match='attempts'):
            queue.requeue(item.id)

    def test_requeue_requires_failed(self, queue):
        item = queue.enqueue('deal_1')

        with pytest.raises(InvalidStateError):
            queue.requeue(item.id)

    def test_requeue_superseded_item_refused(self, queue):
        item = queue.enqueue('deal_1')
        self._fail(queue, item.id)
        queue.enqueue('deal_1')

        with pytest.raises(InvalidStateError):
            queue.requeue(item.id)


class TestReaper:
    def test_stale_processing_reaped_on_status_poll(self, queue, clock):
        item = queue.enqueue('deal_1')
        queue.mark_processing(item.id)
        clock.advance(minutes=16)

        status = queue.get_status('deal_1')

        assert status.status == QueueStatus.FAILED
        assert 'timed out' in status.error_message

    def test_recent_processing_not_reaped(self, queue, clock):
        item = queue.enqueue('deal_1')
        queue.mark_processing(item.id)
        clock.advance(minutes=5)

        assert queue.reap_stale() == []
        assert queue.get_status('deal_1').status == QueueStatus.PROCESSING

    def test_reaped_item_can_be_requeued(self, queue, clock):
        item = queue.enqueue('deal_1')
        queue.mark_processing(item.id)
        clock.advance(minutes=30)
        queue.reap_stale()

        retry = queue.requeue(item.id)

        assert retry.status == QueueStatus.QUEUED


class TestPositionAndOrdering:
    def test_queue_position_counts_higher_or_equal_earlier(self, queue, clock):
        queue.enqueue('deal_a', Priority.NORMAL)
        clock.advance(seconds=1)
        queue.enqueue('deal_b', Priority.HIGH)
        clock.advance(seconds=1)
        queue.enqueue('deal_c', Priority.LOW)
        clock.advance(seconds=1)
        queue.enqueue('deal_d', Priority.NORMAL)

        assert queue.queue_position('deal_a') == 0
        assert queue.queue_position('deal_b') == 0
        assert queue.queue_position('deal_c') == 2
        assert queue.queue_position('deal_d') == 2

    def test_position_none_when_not_queued(self, queue):
        item = queue.enqueue('deal_1')
        queue.mark_processing(item.id)

        assert queue.queue_position('deal_1') is None
        assert queue.queue_position('unknown') is None

    def test_status_snapshot_includes_position(self, queue, clock):
        queue.enqueue('deal_a')
        clock.advance(seconds=1)
        queue.enqueue('deal_b')

        assert queue.get_status('deal_b').queue_position == 1

    def test_estimated_wait_uses_default_then_history(self, queue, clock):
        queue.enqueue('deal_a')
        clock.advance(seconds=1)
        queue.enqueue('deal_b')

        assert queue.estimated_wait('deal_b') == timedelta(seconds=120)

        first = queue.due_items()[0]
        assert first.deal_id == 'deal_a'
        queue.mark_processing(first.id)
        clock.advance(seconds=60)
        queue.mark_completed(first.id)
        clock.advance(seconds=1)
        queue.enqueue('deal_c')

        assert queue.average_run_seconds == 60
        assert queue.estimated_wait('deal_c') == timedelta(seconds=60)
        assert queue.estimated_wait('deal_a') is None

    def test_due_items_priority_then_schedule(self, queue, clock):
        queue.enqueue('deal_a', Priority.LOW)
        clock.advance(seconds=1)
        queue.enqueue('deal_b', Priority.NORMAL)
        clock.advance(seconds=1)
        queue.enqueue('deal_c', Priority.HIGH)
        clock.advance(seconds=1)
        queue.enqueue('deal_d', Priority.NORMAL)

        assert [i.deal_id for i in queue.due_items()] == ['deal_c', 'deal_b', 'deal_d', 'deal_a']
        assert len(queue.due_items(limit=2)) == 2

    def test_due_items_exclude_processing(self, queue):
        item = queue.enqueue('deal_1')
        queue.mark_processing(item.id)

        assert queue.due_items() == []


class TestAutoAnalysisAndStats:
    def test_auto_analysis_flag(self, queue):
        assert queue.is_auto_analysis_enabled('deal_1') is True

        queue.set_auto_analysis('deal_1', False)

        assert queue.is_auto_analysis_enabled('deal_1') is False
        assert queue.is_auto_analysis_enabled('deal_2', default=False) is False

    def test_stats(self, queue):
        a = queue.enqueue('deal_a', Priority.HIGH)
        queue.enqueue('deal_b')
        c = queue.enqueue('deal_c')
        queue.mark_processing(a.id)
        queue.mark_processing(c.id)
        queue.mark_failed(c.id, 'boom')

        stats = queue.stats()

        assert stats['total'] == 3
        assert stats['queued'] == 1
        assert stats['processing'] == 1
        assert stats['failed'] == 1
        assert stats['high_priority'] == 1
        assert stats['recent_failures'] == 1


class TestRetention:
    def run_to(self, queue, deal_id, status):
        item = queue.enqueue(deal_id)
        queue.mark_processing(item.id)
        if status == 'completed':
            return queue.mark_completed(item.id)
        return queue.mark_failed(item.id, 'boom')

    def test_finished_items_dropped_after_retention(self, queue, clock):
        done = self.run_to(queue, 'deal_1', 'completed')
        queue.pop_changes()
        clock.advance(hours=25)

        assert queue.prune(timedelta(hours=24)) == 1

        assert queue.find(done.id) is None
        assert queue.current('deal_1') is None
        assert queue.history('deal_1') == []
        assert queue.stats()['total'] == 0

    def test_recent_items_kept(self, queue, clock):
        done = self.run_to(queue, 'deal_1', 'completed')
        queue.pop_changes()
        clock.advance(hours=23)

        assert queue.prune(timedelta(hours=24)) == 0
        assert queue.find(done.id) is not None

    def test_versions_not_yet_drained_are_kept(self, queue, clock):
        done = self.run_to(queue, 'deal_1', 'completed')
        clock.advance(hours=25)

        assert queue.prune(timedelta(hours=24)) == 0
        assert queue.find(done.id) is not None

    def test_active_items_never_dropped(self, queue, clock):
        queued = queue.enqueue('deal_1')
        started = queue.enqueue('deal_2')
        queue.mark_processing(started.id)
        queue.pop_changes()
        clock.advance(hours=48)

        assert queue.prune(timedelta(hours=24)) == 0
        assert queue.find(queued.id) is not None
        assert queue.find(started.id) is not None

    def test_current_failed_item_kept_for_requeue(self, queue, clock):
        failed = self.run_to(queue, 'deal_1', 'failed')
        queue.pop_changes()
        clock.advance(hours=25)

        assert queue.prune(timedelta(hours=24)) == 0
        assert queue.requeue(failed.id).status == QueueStatus.QUEUED

    def test_superseded_versions_dropped_from_history(self, queue, clock):
        old = self.run_to(queue, 'deal_1', 'completed')
        queue.pop_changes()
        clock.advance(hours=25)
        fresh = queue.enqueue('deal_1')
        queue.pop_changes()

        assert queue.prune(timedelta(hours=24)) == 1

        assert queue.find(old.id) is None
        assert [v.id for v in queue.history('deal_1')] == [fresh.id]
        assert queue.current('deal_1').id == fresh.id

    def test_default_window_from_constructor(self, clock):
        queue = AnalysisQueueManager(retention=timedelta(hours=1), clock=clock)
        self.run_to(queue, 'deal_1', 'completed')
        queue.pop_changes()
        clock.advance(hours=2)

        assert queue.prune() == 1
