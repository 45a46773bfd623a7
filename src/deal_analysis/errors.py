"""
Exception hierarchy for the deal analysis engine.

Two families matter to callers:

- Engine errors stay inside a run. TransientEngineError subclasses are
  retried by the resilience wrapper; anything else marks that one engine
  failed and the run carries on with the others.
- ConfigError and PersistenceError fail the whole run. The worker turns
  them into the queue item's error_message.

Queue errors (InvalidStateError, QueueItemNotFoundError) are raised
synchronously to whoever asked for the transition.
"""

from dataclasses import dataclass, field
from typing import Any


class DealAnalysisError(Exception):
    """Base exception for all deal analysis errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


# =============================================================================
# Engine Errors
# =============================================================================


class EngineError(DealAnalysisError):
    """Non-retryable failure inside an analysis engine or enrichment call."""


class TransientEngineError(EngineError):
    """Retryable engine failure (timeouts, throttling, dropped connections)."""


class EnrichmentError(EngineError):
    """Enrichment service failed to augment the deal facts."""


class OpenAIError(EngineError):
    """OpenAI call failed in a way retrying will not fix."""


class OpenAIRateLimitError(OpenAIError, TransientEngineError):
    """429 from OpenAI."""


class OpenAITimeoutError(OpenAIError, TransientEngineError):
    """OpenAI request timed out or the connection dropped."""


class OpenAIUnavailableError(OpenAIError, TransientEngineError):
    """OpenAI answered with a 5xx."""


class OpenAIModelError(OpenAIError):
    """Model refused the request or returned nothing parseable."""


# =============================================================================
# Fatal Run Errors
# =============================================================================


class ConfigError(DealAnalysisError):
    """Invalid thresholds or weights. Fatal, never retried."""


class PersistenceError(DealAnalysisError):
    """Store read/write failed. Fatal for the run; prior assessment untouched."""


class DealNotFoundError(PersistenceError):
    """The store has no deal with the requested id."""


# =============================================================================
# Queue Errors
# =============================================================================


class InvalidStateError(DealAnalysisError):
    """Illegal queue item transition. Caller must re-check state."""


class QueueItemNotFoundError(DealAnalysisError):
    """No queue item exists with the requested id."""


# =============================================================================
# Worker Batches
# =============================================================================


@dataclass
class BatchItem:
    """Outcome of one queue item in a worker pass."""

    queue_item_id: str
    deal_id: str
    assessment_id: str | None = None
    error: DealAnalysisError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunBatchResult:
    """
    Outcome of one worker pass over the due queue items.

    A failing deal never stops the pass; each failure keeps its error so it
    can be logged next to the deal it belongs to.
    """

    items: list[BatchItem] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def succeeded(self) -> list[BatchItem]:
        return [item for item in self.items if item.ok]

    @property
    def failed(self) -> list[BatchItem]:
        return [item for item in self.items if not item.ok]

    @property
    def all_succeeded(self) -> bool:
        return all(item.ok for item in self.items)

    @property
    def partial_success(self) -> bool:
        return any(item.ok for item in self.items) and not self.all_succeeded

    def record_success(self, queue_item_id: str, deal_id: str, assessment_id: str) -> None:
        self.items.append(
            BatchItem(queue_item_id=queue_item_id, deal_id=deal_id, assessment_id=assessment_id)
        )

    def record_failure(self, queue_item_id: str, deal_id: str, error: DealAnalysisError) -> None:
        self.items.append(BatchItem(queue_item_id=queue_item_id, deal_id=deal_id, error=error))

    def to_dict(self) -> dict[str, Any]:
        """Summary for the end-of-pass log event."""
        return {
            'processed': len(self.items),
            'succeeded': len(self.succeeded),
            'failed': len(self.failed),
            'failures': [
                {'queue_item_id': i.queue_item_id, 'deal_id': i.deal_id, 'error': i.error.message}
                for i in self.failed
            ],
        }
