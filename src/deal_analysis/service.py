"""
Deal analysis service: the surface the application layer calls.

Ties the queue manager, the coordinator, the store and the notification bus
together:

- queue operations are applied synchronously, then every changed queue item
  version is written through the store and announced on the bus
- process_item() drives one queued job through the coordinator and always
  leaves it completed or failed, announcing deal-analysis-complete once
  the item is completed
- run_pending() runs due jobs for different deals concurrently (single-flight
  per deal is enforced by the queue)
"""

import asyncio
from datetime import timedelta
from typing import Any

import structlog

from .config import config
from .errors import DealAnalysisError, InvalidStateError, RunBatchResult
from .logging import logging_context
from .models import Priority, QueueItem, QueueStatus, TriggerReason
from .notifications import (
    ANALYSIS_QUEUE_UPDATED,
    DEAL_ANALYSIS_COMPLETE,
    Handler,
    NotificationBus,
    Unsubscribe,
)
from .pipeline.coordinator import AnalysisCoordinator, AnalysisRunResult
from .queue import AnalysisQueueManager
from .store.base import AnalysisStore

logger = structlog.get_logger(__name__)


def _error_message(exc: BaseException) -> str:
    """Human-readable message for a failed queue item."""
    if isinstance(exc, DealAnalysisError):
        return exc.message
    return f'{type(exc).__name__}: {exc}'


class DealAnalysisService:
    """
    Facade over the analysis core.

    Usage:
        service = DealAnalysisService(queue, coordinator, store, bus)
        item = await service.enqueue_analysis(deal_id)
        await service.run_pending()
    """

    def __init__(
        self,
        queue: AnalysisQueueManager,
        coordinator: AnalysisCoordinator,
        store: AnalysisStore,
        bus: NotificationBus,
    ):
        self.queue = queue
        self.coordinator = coordinator
        self.store = store
        self.bus = bus

    # =========================================================================
    # Queue operations
    # =========================================================================

    async def enqueue_analysis(
        self,
        deal_id: str,
        priority: Priority | str = Priority.NORMAL,
        reason: TriggerReason | str = TriggerReason.MANUAL_TRIGGER,
        delay: timedelta | None = None,
    ) -> QueueItem:
        """Queue an analysis; returns the existing item if one is active."""
        item = self.queue.enqueue(deal_id, priority=priority, trigger_reason=reason, delay=delay)
        await self._flush()
        return item

    async def get_queue_status(self, deal_id: str) -> QueueItem | None:
        """Current queue item for a deal, after reconciling stale runs."""
        item = self.queue.get_status(deal_id)
        await self._flush()
        return item

    async def cancel_analysis(self, queue_item_id: str) -> QueueItem:
        """Cancel a queued item; InvalidStateError from any other state."""
        item = self.queue.cancel(queue_item_id)
        await self._flush()
        return item

    async def force_analysis_now(self, deal_id: str) -> QueueItem:
        item = self.queue.force_now(deal_id)
        await self._flush()
        return item

    async def retry_analysis(self, queue_item_id: str) -> QueueItem:
        """Manually re-trigger a failed item."""
        item = self.queue.requeue(queue_item_id)
        await self._flush()
        return item

    def set_auto_analysis(self, deal_id: str, enabled: bool) -> None:
        self.queue.set_auto_analysis(deal_id, enabled)

    async def on_deal_data_changed(
        self,
        deal_id: str,
        reason: TriggerReason | str = TriggerReason.AUTO_ANALYSIS,
        default_enabled: bool = True,
    ) -> QueueItem | None:
        """
        Hook for the external scheduler when a deal's data changes.

        Enqueues only when the deal's auto-analysis flag is on.
        """
        if not self.queue.is_auto_analysis_enabled(deal_id, default=default_enabled):
            logger.info('service.auto_analysis_disabled', deal_id=deal_id, reason=str(reason))
            return None
        return await self.enqueue_analysis(deal_id, priority=Priority.NORMAL, reason=reason)

    def subscribe(self, topic: str, handler: Handler) -> Unsubscribe:
        return self.bus.subscribe(topic, handler)

    async def prune_queue(self) -> int:
        """Mirror pending versions, then drop finished items past retention."""
        await self._flush()
        return self.queue.prune()

    def queue_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = dict(self.queue.stats())
        stats['average_run_seconds'] = round(self.queue.average_run_seconds, 1)
        return stats

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_item(
        self,
        queue_item_id: str,
        force_refresh: bool | None = None,
    ) -> AnalysisRunResult:
        """
        Run one queued job through the coordinator.

        The item ends completed when persistence succeeds, however many
        engines failed. Any exception from the run fails the item with a
        readable error_message and is re-raised. deal-analysis-complete is
        published only after the item is marked completed, so subscribers
        reading the queue see the final status.

        Raises:
            InvalidStateError: Item is not queued or was superseded
        """
        item = self.queue.mark_processing(queue_item_id)
        await self._flush()

        if force_refresh is None:
            force_refresh = item.trigger_reason == TriggerReason.MANUAL_FORCE.value
        log = logger.bind(deal_id=item.deal_id, queue_item_id=item.id)

        try:
            with logging_context(queue_item_id=item.id):
                result = await self.coordinator.run(item.deal_id, force_refresh=force_refresh)
        except Exception as exc:
            log.error(
                'service.run_failed',
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._finish(item, error=exc)
            await self._flush()
            raise

        completed = self._finish(item)
        await self._flush()
        if completed:
            self.bus.publish(
                DEAL_ANALYSIS_COMPLETE,
                {
                    'deal_id': item.deal_id,
                    'queue_item_id': item.id,
                    'assessment_id': result.assessment.id,
                    'overall_score': result.assessment.overall_score,
                    'rag_status': result.assessment.overall_status,
                },
            )
        log.info(
            'service.run_completed',
            assessment_id=result.assessment.id,
            analysis_completeness=result.analysis_completeness,
        )
        return result

    async def run_pending(self, max_concurrent: int | None = None) -> RunBatchResult:
        """
        Process every due item, at most max_concurrent at a time.

        Returns:
            Per-item success/failure record
        """
        limit = max_concurrent or config.MAX_CONCURRENT_RUNS
        due = self.queue.due_items()
        await self._flush()
        batch = RunBatchResult()
        if not due:
            return batch

        semaphore = asyncio.Semaphore(limit)

        async def run_one(item: QueueItem) -> AnalysisRunResult:
            async with semaphore:
                return await self.process_item(item.id)

        outcomes = await asyncio.gather(
            *(run_one(item) for item in due),
            return_exceptions=True,
        )
        for item, outcome in zip(due, outcomes):
            if isinstance(outcome, DealAnalysisError):
                batch.record_failure(item.id, item.deal_id, outcome)
            elif isinstance(outcome, Exception):
                batch.record_failure(
                    item.id, item.deal_id, DealAnalysisError(_error_message(outcome))
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                batch.record_success(item.id, item.deal_id, outcome.assessment.id)

        logger.info('service.run_pending_complete', **batch.to_dict())
        return batch

    # =========================================================================
    # Internals
    # =========================================================================

    def _finish(self, item: QueueItem, error: BaseException | None = None) -> bool:
        """Close out a processing item; True when it was marked completed."""
        current = self.queue.find(item.id)
        if current is None or current.status != QueueStatus.PROCESSING:
            # Reaped while running; the reaper's verdict stands
            logger.warning(
                'service.finished_after_reap',
                deal_id=item.deal_id,
                queue_item_id=item.id,
                status=current.status.value if current else None,
            )
            return False
        try:
            if error is None:
                self.queue.mark_completed(item.id)
                return True
            self.queue.mark_failed(item.id, _error_message(error))
        except InvalidStateError:
            logger.exception('service.finish_failed', queue_item_id=item.id)
        return False

    async def _flush(self) -> None:
        """Persist and announce queue item versions changed since the last flush."""
        for item in self.queue.pop_changes():
            try:
                await self.store.save_queue_item(item)
            except Exception as exc:
                # Queue state lives in memory; a failed mirror write must not
                # wedge the job in processing
                logger.error(
                    'service.queue_item_persist_failed',
                    queue_item_id=item.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            self.bus.publish(
                ANALYSIS_QUEUE_UPDATED,
                {
                    'deal_id': item.deal_id,
                    'queue_item_id': item.id,
                    'status': item.status.value,
                },
            )


class AnalysisWorker:
    """
    Polling loop that drains due queue items until stopped.

    Usage:
        worker = AnalysisWorker(service)
        task = asyncio.create_task(worker.run_forever())
        ...
        worker.stop()
        await task
    """

    def __init__(
        self,
        service: DealAnalysisService,
        poll_interval: float | None = None,
        max_concurrent: int | None = None,
    ):
        self.service = service
        self.poll_interval = poll_interval if poll_interval is not None else config.POLL_INTERVAL_SECONDS
        self.max_concurrent = max_concurrent or config.MAX_CONCURRENT_RUNS
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return not self._stopped.is_set()

    def stop(self) -> None:
        self._stopped.set()

    async def run_once(self) -> RunBatchResult:
        batch = await self.service.run_pending(self.max_concurrent)
        await self.service.prune_queue()
        return batch

    async def run_forever(self) -> None:
        logger.info('worker.started', poll_interval=self.poll_interval)
        while not self._stopped.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception('worker.poll_failed')
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info('worker.stopped')
