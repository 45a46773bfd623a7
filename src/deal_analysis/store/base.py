"""
Collaborator interfaces the analysis core calls into.

The core never owns deal storage or fund configuration; it consumes them
through these protocols so the in-memory and Postgres backends (or a test
double) are interchangeable.
"""

from typing import Protocol, runtime_checkable

from ..models import Assessment, Deal, DealUpdate, FundType, QueueItem, RAGBand


@runtime_checkable
class AnalysisStore(Protocol):
    """
    Deal, assessment and queue item persistence.

    Implementations must offer read-your-writes consistency for a single
    caller, and save_assessment must be atomic: either the assessment and
    the deal update both become visible, or neither does.
    """

    async def load_deal(self, deal_id: str) -> Deal:
        """Raises DealNotFoundError for an unknown id."""
        ...

    async def save_assessment(
        self,
        deal_id: str,
        assessment: Assessment,
        deal_update: DealUpdate | None = None,
    ) -> None: ...

    async def save_queue_item(self, item: QueueItem) -> None: ...

    async def latest_assessment(self, deal_id: str) -> Assessment | None: ...


@runtime_checkable
class ConfigService(Protocol):
    """Per-fund RAG thresholds and per-fund-type criterion weights."""

    async def get_thresholds(self, fund_id: str) -> list[RAGBand]: ...

    async def get_weights(self, fund_type: FundType | str) -> dict[str, int]: ...
