"""
In-memory store and static configuration service.

Used by tests, local runs and the API when no DATABASE_URL is configured.
"""

from collections import defaultdict
from typing import Mapping, Sequence

import structlog

from ..errors import ConfigError, DealNotFoundError
from ..models import Assessment, Deal, DealUpdate, FundType, QueueItem, RAGBand
from ..scoring import validate_thresholds, validate_weights

logger = structlog.get_logger(__name__)


DEFAULT_BANDS: tuple[RAGBand, ...] = (
    RAGBand(name='exciting', label='Exciting', min_score=85),
    RAGBand(name='promising', label='Promising', min_score=70),
    RAGBand(name='needs_development', label='Needs Development', min_score=50),
    RAGBand(name='not_aligned', label='Not Aligned', min_score=0),
)

# Weights keyed by specialized engine name
DEFAULT_WEIGHTS: dict[FundType, dict[str, int]] = {
    FundType.VC: {
        'investment_thesis_alignment': 25,
        'market_attractiveness': 20,
        'product_strength_ip': 20,
        'financial_feasibility': 20,
        'founder_team_strength': 15,
    },
    # PE leans on financial performance and operations over thesis fit
    FundType.PE: {
        'financial_feasibility': 30,
        'product_strength_ip': 25,
        'market_attractiveness': 20,
        'founder_team_strength': 15,
        'investment_thesis_alignment': 10,
    },
}


class InMemoryAnalysisStore:
    """
    Dict-backed AnalysisStore.

    Writes are applied without suspending, so a save_assessment is seen
    entirely or not at all by any other coroutine on the same loop.
    """

    def __init__(self, deals: Sequence[Deal] = ()):
        self._deals: dict[str, Deal] = {deal.id: deal for deal in deals}
        self._assessments: dict[str, list[Assessment]] = defaultdict(list)
        self._queue_items: dict[str, QueueItem] = {}

    def put_deal(self, deal: Deal) -> None:
        """Insert or replace a deal (owned by the surrounding application)."""
        self._deals[deal.id] = deal

    async def load_deal(self, deal_id: str) -> Deal:
        deal = self._deals.get(deal_id)
        if deal is None:
            raise DealNotFoundError('Deal not found', context={'deal_id': deal_id})
        return deal

    async def save_assessment(
        self,
        deal_id: str,
        assessment: Assessment,
        deal_update: DealUpdate | None = None,
    ) -> None:
        deal = await self.load_deal(deal_id)
        update = deal_update or assessment.to_deal_update()
        changes = update.model_dump(exclude_none=True)
        # overall_score=None is meaningful (no scored criteria)
        changes['overall_score'] = update.overall_score
        updated = deal.model_copy(update=changes)

        self._assessments[deal_id].append(assessment)
        self._deals[deal_id] = updated
        logger.debug(
            'memory_store.assessment_saved',
            deal_id=deal_id,
            assessment_id=assessment.id,
        )

    async def save_queue_item(self, item: QueueItem) -> None:
        self._queue_items[item.id] = item

    async def latest_assessment(self, deal_id: str) -> Assessment | None:
        history = self._assessments.get(deal_id)
        return history[-1] if history else None

    def assessment_history(self, deal_id: str) -> list[Assessment]:
        return list(self._assessments.get(deal_id, ()))

    def queue_item(self, queue_item_id: str) -> QueueItem | None:
        return self._queue_items.get(queue_item_id)


class StaticConfigService:
    """
    ConfigService with the product defaults and optional per-fund overrides.

    Overrides are validated up front so a bad threshold set fails at
    construction instead of mid-run.
    """

    def __init__(
        self,
        bands: Sequence[RAGBand] = DEFAULT_BANDS,
        weights: Mapping[FundType | str, Mapping[str, int]] | None = None,
        fund_bands: Mapping[str, Sequence[RAGBand]] | None = None,
    ):
        self._bands = validate_thresholds(bands)
        self._fund_bands = {
            fund_id: validate_thresholds(fund_specific)
            for fund_id, fund_specific in (fund_bands or {}).items()
        }
        self._weights: dict[FundType, dict[str, int]] = {
            fund_type: dict(values) for fund_type, values in DEFAULT_WEIGHTS.items()
        }
        for fund_type, values in (weights or {}).items():
            self._weights[FundType(fund_type)] = validate_weights(values)

    async def get_thresholds(self, fund_id: str) -> list[RAGBand]:
        return list(self._fund_bands.get(fund_id, self._bands))

    async def get_weights(self, fund_type: FundType | str) -> dict[str, int]:
        try:
            return dict(self._weights[FundType(fund_type)])
        except (KeyError, ValueError):
            raise ConfigError(
                f'No criterion weights for fund type "{fund_type}"',
                context={'fund_type': str(fund_type)},
            )
