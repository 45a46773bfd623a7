"""
Structured logging for the deal analysis engine.

Every event emitted inside an analysis run carries the ids of the job it
belongs to (trace, queue item, deal, fund). The ids live in context
variables, so they follow each coroutine through the engine fan-out without
being passed down explicitly.

Output is a coloured console stream in development and one JSON object per
line when DEAL_ANALYSIS_LOG_FORMAT=json.
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Generator

import structlog
from structlog.types import Processor

from .config import config

# Order here is the order the ids appear in rendered events
_RUN_IDS: dict[str, ContextVar[str | None]] = {
    name: ContextVar(name, default=None)
    for name in ('trace_id', 'queue_item_id', 'deal_id', 'fund_id')
}


def current_run_ids() -> dict[str, str]:
    """Run ids set in the current context, skipping unset ones."""
    ids = {}
    for name, var in _RUN_IDS.items():
        value = var.get()
        if value is not None:
            ids[name] = value
    return ids


def get_trace_id() -> str | None:
    return _RUN_IDS['trace_id'].get()


def get_queue_item_id() -> str | None:
    return _RUN_IDS['queue_item_id'].get()


def get_deal_id() -> str | None:
    return _RUN_IDS['deal_id'].get()


def get_fund_id() -> str | None:
    return _RUN_IDS['fund_id'].get()


def add_context_info(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Processor copying run ids onto the event. Explicitly bound fields win."""
    for name, value in current_run_ids().items():
        event_dict.setdefault(name, value)
    return event_dict


def configure_logging(
    json_output: bool | None = None,
    log_level: str | None = None,
) -> None:
    """
    Configure structlog for the application.

    Args:
        json_output: JSON lines when True, console rendering when False.
            Defaults to DEAL_ANALYSIS_LOG_FORMAT.
        log_level: Override log level (defaults to DEAL_ANALYSIS_LOG_LEVEL)
    """
    if json_output is None:
        json_output = config.LOG_FORMAT.lower() == 'json'
    level_num = logging.getLevelName((log_level or config.LOG_LEVEL).upper())
    if not isinstance(level_num, int):
        level_num = logging.INFO

    logging.basicConfig(format='%(message)s', stream=sys.stdout, level=level_num)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_context_info,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=False),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(
    trace_id: str | None = None,
    queue_item_id: str | None = None,
    deal_id: str | None = None,
    fund_id: str | None = None,
) -> Generator[None, None, None]:
    """
    Set run ids for the duration of the block. None leaves an id unchanged.

    Usage:
        with logging_context(deal_id=deal.id, fund_id=deal.fund_id):
            logger.info('coordinator.started')  # carries deal_id and fund_id
    """
    values = {
        'trace_id': trace_id,
        'queue_item_id': queue_item_id,
        'deal_id': deal_id,
        'fund_id': fund_id,
    }
    tokens = [
        (_RUN_IDS[name], _RUN_IDS[name].set(value))
        for name, value in values.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class PipelineTimer:
    """
    Wall-clock durations of the stages of one analysis run, in milliseconds.

    Usage:
        timer = PipelineTimer()
        with timer.stage('engines'):
            await fan_out()
        log.info('coordinator.complete', **timer.summary())
    """

    def __init__(self):
        self.stages: dict[str, float] = {}
        self._started = time.perf_counter()

    @contextmanager
    def stage(self, name: str) -> Generator[None, None, None]:
        """Time the block; the duration is kept even if the block raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record(name, (time.perf_counter() - started) * 1000)

    def record(self, name: str, duration_ms: float) -> None:
        self.stages[name] = duration_ms

    @property
    def total_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000

    @property
    def slowest_stage(self) -> str | None:
        if not self.stages:
            return None
        return max(self.stages, key=self.stages.__getitem__)

    def summary(self) -> dict[str, Any]:
        return {
            'total_ms': round(self.total_ms, 2),
            'slowest_stage': self.slowest_stage,
            'stages': {name: round(ms, 2) for name, ms in self.stages.items()},
        }


configure_logging()
