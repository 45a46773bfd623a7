"""
Notification bus: lightweight in-process publish/subscribe.

Used as a cache-invalidation signal so independently mounted views refresh
when a deal's analysis changes. Delivery is at-most-once per publish and
fire-and-forget; there is no persistence or replay. A subscriber attached
after a publish misses it and must re-fetch state on mount.

The bus is an explicit object injected where needed, never module state.
"""

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

# Topics published by the analysis core
DEAL_ANALYSIS_COMPLETE = 'deal-analysis-complete'
ANALYSIS_QUEUE_UPDATED = 'analysis-queue-updated'

Handler = Callable[[dict[str, Any]], None | Awaitable[None]]
Unsubscribe = Callable[[], None]


class NotificationBus:
    """
    Observer registry keyed by topic.

    Handlers may be plain callables or coroutine functions. Plain handlers run
    inline during publish(); coroutine handlers are scheduled on the running
    loop. A failing handler is logged and never affects the publisher or the
    other subscribers.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, topic: str, handler: Handler) -> Unsubscribe:
        """
        Register handler for topic.

        Returns:
            Idempotent function that removes this subscription
        """
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, ()))

    def publish(self, topic: str, payload: dict[str, Any]) -> int:
        """
        Deliver payload to the current subscribers of topic.

        Returns:
            Number of handlers the payload was handed to
        """
        # Snapshot so handlers may unsubscribe while being called
        handlers = list(self._handlers.get(topic, ()))
        delivered = 0
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    self._schedule(topic, handler(dict(payload)))
                else:
                    result = handler(dict(payload))
                    if inspect.isawaitable(result):
                        self._schedule(topic, result)
                delivered += 1
            except Exception as exc:
                logger.warning(
                    'bus.handler_failed',
                    topic=topic,
                    handler=getattr(handler, '__qualname__', repr(handler)),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        logger.debug('bus.published', topic=topic, delivered=delivered)
        return delivered

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, topic: str, awaitable: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RuntimeError('async handlers need a running event loop') from None
        task = loop.create_task(self._run_async(topic, awaitable))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_async(self, topic: str, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except Exception as exc:
            logger.warning(
                'bus.handler_failed',
                topic=topic,
                error=str(exc),
                error_type=type(exc).__name__,
            )
