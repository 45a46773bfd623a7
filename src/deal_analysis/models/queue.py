"""
QueueItem model and its lifecycle enums.

State machine:
    queued -> processing -> completed | failed
    queued -> cancelled
    failed -> queued            (manual re-trigger, new superseding item)

Every transition produces a new QueueItem version; the previous version is
kept in the deal's history for audit and is never mutated.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class QueueStatus(str, Enum):
    """Lifecycle status for analysis queue items."""

    QUEUED = 'queued'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


ACTIVE_STATUSES = frozenset({QueueStatus.QUEUED, QueueStatus.PROCESSING})
TERMINAL_STATUSES = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED}
)


class Priority(str, Enum):
    """Queue priority. Higher rank runs first."""

    HIGH = 'high'
    NORMAL = 'normal'
    LOW = 'low'

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 2, Priority.NORMAL: 1, Priority.LOW: 0}


class TriggerReason(str, Enum):
    """Why an analysis was requested."""

    NEW_DEAL = 'new_deal'
    DOCUMENT_UPLOAD = 'document_upload'
    MANUAL_TRIGGER = 'manual_trigger'
    MANUAL_FORCE = 'manual_force'
    ENRICHMENT_COMPLETE = 'enrichment_complete'
    AUTO_ANALYSIS = 'auto_analysis'
    RETRY = 'retry'


class QueueItem(BaseModel):
    """One queued analysis job for a deal."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    deal_id: str
    status: QueueStatus = Field(default=QueueStatus.QUEUED)
    priority: Priority = Field(default=Priority.NORMAL)
    trigger_reason: str = Field(default=TriggerReason.MANUAL_TRIGGER.value)
    scheduled_for: datetime
    attempts: int = Field(default=0, ge=0, description='Runs started for this job')
    max_attempts: int = Field(default=3, ge=1)
    error_message: str | None = Field(default=None)
    queue_position: int | None = Field(
        default=None, description='Snapshot of the ETA position when last read'
    )
    created_at: datetime
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)
    supersedes: str | None = Field(
        default=None, description='Id of the failed item this one re-triggers'
    )
    version: int = Field(default=1, ge=1)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: QueueStatus, **changes: Any) -> 'QueueItem':
        """Return the next version of this item with the given status."""
        return self.model_copy(
            update={'status': status, 'version': self.version + 1, **changes}
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging / API responses."""
        return self.model_dump(mode='json')


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)
