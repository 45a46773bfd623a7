"""
Resilience retry wrapper for unreliable downstream analysis calls.

Single retry authority for the engine: every enrichment, engine and
persistence call goes through run_resilient(); nothing above it retries.

Semantics:
- Transient failures (TransientEngineError, timeouts) are retried up to
  max_retries times with a fixed or exponential delay.
- A nominal success whose self-reported quality is below quality_threshold
  is also retried, from the same budget, and logged under a different event.
- Exhausting the budget returns the last result (possibly low quality) or the
  last transient error in a RetryOutcome instead of raising.
- Any other exception propagates immediately without retry.
"""

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Mapping, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from .config import config
from .errors import TransientEngineError

logger = structlog.get_logger(__name__)

T = TypeVar('T')

QualityReader = Callable[[Any], float | None]


def read_quality(result: Any) -> float | None:
    """
    Default quality reader.

    Looks for a quality_score (attribute or mapping key), falling back to
    confidence. Returns None when the result reports no quality at all, or
    when it carries a score field left empty: a result with no source data
    has nothing to judge and is accepted as is.
    """
    if result is None:
        return None
    if isinstance(result, Mapping):
        if 'score' in result and result['score'] is None:
            return None
    elif hasattr(result, 'score') and result.score is None:
        return None
    for key in ('quality_score', 'confidence'):
        if isinstance(result, Mapping):
            value = result.get(key)
        else:
            value = getattr(result, key, None)
        if value is not None:
            return float(value)
    return None


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and quality bar for one wrapped call."""

    max_retries: int = 3
    retry_delay_ms: int = 2000
    quality_threshold: float | None = 50
    timeout_ms: int | None = None
    backoff: str = 'fixed'
    max_delay_ms: int = 30_000
    retry_on: tuple[type[BaseException], ...] = (
        TransientEngineError,
        TimeoutError,
        asyncio.TimeoutError,
    )

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError('max_retries must be >= 0')
        if self.backoff not in ('fixed', 'exponential'):
            raise ValueError(f'unknown backoff "{self.backoff}"')

    @classmethod
    def from_config(cls, **overrides: Any) -> 'RetryPolicy':
        """Policy seeded from environment configuration."""
        values: dict[str, Any] = {
            'max_retries': config.MAX_RETRIES,
            'retry_delay_ms': config.RETRY_DELAY_MS,
            'quality_threshold': config.QUALITY_THRESHOLD,
            'timeout_ms': config.ENGINE_TIMEOUT_MS or None,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def wait_strategy(self):
        delay = self.retry_delay_ms / 1000
        if self.backoff == 'exponential':
            return wait_exponential(multiplier=delay, max=self.max_delay_ms / 1000)
        return wait_fixed(delay)


@dataclass
class RetryOutcome(Generic[T]):
    """What happened across all attempts of one wrapped call."""

    name: str
    result: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    transient_retries: int = 0
    quality_retries: int = 0
    degraded: bool = False
    quality: float | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """True when a result was produced (possibly degraded)."""
        return self.error is None

    def unwrap(self) -> T:
        """Return the result, or raise the final error."""
        if self.error is not None:
            raise self.error
        return self.result  # type: ignore[return-value]


async def run_resilient(
    task: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    name: str = 'task',
    quality_of: QualityReader = read_quality,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """
    Execute task under the retry policy.

    Args:
        task: Zero-argument coroutine factory; called once per attempt
        policy: Retry budget and quality bar (defaults from config)
        name: Label used in logs and on the outcome
        quality_of: Reads the self-reported quality (0-100) from a result
        sleep: Sleep function between attempts

    Returns:
        RetryOutcome holding the final result or the final transient error

    Raises:
        Any exception not listed in policy.retry_on, unchanged
    """
    policy = policy or RetryPolicy.from_config()
    outcome: RetryOutcome[T] = RetryOutcome(name=name)
    log = logger.bind(task=name, max_retries=policy.max_retries)
    exhausted: list[RetryCallState] = []

    def is_low_quality(result: Any) -> bool:
        if policy.quality_threshold is None:
            return False
        quality = quality_of(result)
        return quality is not None and quality < policy.quality_threshold

    def before_sleep(state: RetryCallState) -> None:
        attempt = state.outcome
        if attempt is None:
            return
        if attempt.failed:
            exc = attempt.exception()
            outcome.transient_retries += 1
            outcome.errors.append(f'{type(exc).__name__}: {exc}')
            log.warning(
                'resilience.retry_transient',
                attempt=state.attempt_number,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        else:
            outcome.quality_retries += 1
            log.info(
                'resilience.retry_low_quality',
                attempt=state.attempt_number,
                quality=quality_of(attempt.result()),
                threshold=policy.quality_threshold,
            )

    def on_exhausted(state: RetryCallState) -> None:
        exhausted.append(state)

    async def attempt() -> T:
        outcome.attempts += 1
        if policy.timeout_ms:
            return await asyncio.wait_for(task(), timeout=policy.timeout_ms / 1000)
        return await task()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait_strategy(),
        retry=retry_if_exception_type(policy.retry_on) | retry_if_result(is_low_quality),
        before_sleep=before_sleep,
        retry_error_callback=on_exhausted,
        sleep=sleep,
    )

    value = await retrying(attempt)

    if not exhausted:
        outcome.result = value
        outcome.quality = quality_of(value)
        return outcome

    final = exhausted[-1].outcome
    if final is not None and final.failed:
        exc = final.exception()
        outcome.error = exc
        outcome.errors.append(f'{type(exc).__name__}: {exc}')
        log.error(
            'resilience.exhausted',
            attempts=outcome.attempts,
            error=str(exc),
            error_type=type(exc).__name__,
        )
    elif final is not None:
        outcome.result = final.result()
        outcome.quality = quality_of(outcome.result)
        outcome.degraded = True
        log.warning(
            'resilience.low_quality_accepted',
            attempts=outcome.attempts,
            quality=outcome.quality,
            threshold=policy.quality_threshold,
        )
    return outcome


def resilient(
    policy: RetryPolicy | None = None,
    name: str | None = None,
    quality_of: QualityReader = read_quality,
):
    """
    Decorator form of run_resilient for async callables.

    The decorated function returns a RetryOutcome instead of its raw value.

    Usage:
        @resilient(RetryPolicy(max_retries=2, retry_delay_ms=500))
        async def fetch_market(deal_id: str) -> EngineResult:
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[RetryOutcome[T]]]:
        label = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> RetryOutcome[T]:
            return await run_resilient(
                lambda: func(*args, **kwargs),
                policy=policy,
                name=label,
                quality_of=quality_of,
            )

        return wrapper

    return decorator
