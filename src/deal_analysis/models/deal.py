"""
Deal, EngineResult, EnrichmentResult and Assessment models.

Deal is owned by the persistence layer; the analysis core only reads the
facts it needs and writes back overall_score, rag_status and
enhanced_analysis through a DealUpdate.

Assessment is created once per analysis pass and superseded (never mutated)
by the next pass, so history stays inspectable and concurrent readers never
observe a half-written record.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .criteria import Criterion


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class FundType(str, Enum):
    """Fund strategy type; selects the criterion weight map."""

    VC = 'vc'
    PE = 'pe'


class EngineStatus(str, Enum):
    """Outcome of a single specialized engine within a run."""

    PENDING = 'pending'
    PARTIAL = 'partial'
    COMPLETE = 'complete'
    ERROR = 'error'


class Deal(BaseModel):
    """Investment deal as seen by the analysis core."""

    id: str = Field(..., description='Deal identifier')
    fund_id: str = Field(..., description='Owning fund; selects RAG thresholds')
    fund_type: FundType = Field(default=FundType.VC)
    company_name: str = Field(default='')
    industry: str | None = Field(default=None)
    round_size: float | None = Field(default=None, ge=0)
    valuation: float | None = Field(default=None, ge=0)
    description: str | None = Field(default=None)
    website: str | None = Field(default=None)

    # Fields written by the analysis core
    overall_score: int | None = Field(default=None, ge=0, le=100)
    rag_status: str | None = Field(default=None)
    enhanced_analysis: dict[str, Any] = Field(default_factory=dict)
    auto_analysis_enabled: bool = Field(default=True)

    # Enrichment bookkeeping
    enrichment: dict[str, Any] = Field(default_factory=dict)
    last_enriched_at: datetime | None = Field(default=None)
    updated_at: datetime = Field(default_factory=_utcnow)

    def facts(self) -> dict[str, Any]:
        """Raw deal facts handed to enrichment and engines."""
        return {
            'company_name': self.company_name,
            'industry': self.industry,
            'round_size': self.round_size,
            'valuation': self.valuation,
            'description': self.description,
            'website': self.website,
            'fund_type': self.fund_type.value,
        }


class DealUpdate(BaseModel):
    """The deal fields the analysis core is allowed to write."""

    model_config = ConfigDict(frozen=True)

    overall_score: int | None = None
    rag_status: str | None = None
    enhanced_analysis: dict[str, Any] = Field(default_factory=dict)
    enrichment: dict[str, Any] | None = None
    last_enriched_at: datetime | None = None


class EnrichmentResult(BaseModel):
    """Output of the enrichment service for one deal."""

    deal_id: str
    facts: dict[str, Any] = Field(default_factory=dict)
    sources: list[str] = Field(default_factory=list)
    quality_score: float | None = Field(
        default=None, ge=0, le=100, description='Self-reported data quality 0-100'
    )
    retrieved_at: datetime = Field(default_factory=_utcnow)


class EngineResult(BaseModel):
    """
    Output of one specialized analysis engine.

    The coordinator treats each result as an opaque, possibly-absent input to
    aggregation. score is None whenever the engine had no source data.
    """

    engine_name: str
    status: EngineStatus = Field(default=EngineStatus.PENDING)
    score: float | None = Field(default=None, ge=0, le=100)
    confidence: float = Field(default=0.0, ge=0, le=100)
    quality_score: float | None = Field(
        default=None, ge=0, le=100, description='Self-reported result quality 0-100'
    )
    last_run: datetime | None = Field(default=None)
    analysis: str = Field(default='')
    insights: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    error_message: str | None = Field(default=None)
    attempts: int = Field(default=0, ge=0)

    @property
    def contributes(self) -> bool:
        """True when the result can feed aggregation (not an error)."""
        return self.status != EngineStatus.ERROR

    @classmethod
    def failed(cls, engine_name: str, error: BaseException | str, attempts: int = 0) -> 'EngineResult':
        """Build an Error result for an engine that could not produce output."""
        return cls(
            engine_name=engine_name,
            status=EngineStatus.ERROR,
            error_message=str(error),
            last_run=_utcnow(),
            attempts=attempts,
        )


class Assessment(BaseModel):
    """
    One analysis pass for a deal.

    Superseded by the next pass rather than updated in place.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    deal_id: str
    fund_id: str | None = None
    checks: list[Criterion] = Field(default_factory=list)
    overall_score: int = Field(default=0, ge=0, le=100)
    overall_status: str = Field(default='unknown', description='RAG band name')
    rag_label: str = Field(default='Unknown')
    total_weight: int = Field(default=0, ge=0)
    confidence: int = Field(default=0, ge=0, le=100)
    confidence_level: str = Field(default='low', description='"high", "medium" or "low"')
    analysis_completeness: int = Field(
        default=0, ge=0, le=100, description='Percent of engines that produced a result'
    )
    engine_results: dict[str, EngineResult] = Field(default_factory=dict)
    recommendation: str = Field(default='')
    reasoning: str = Field(default='')
    executive_summary: str = Field(default='')
    strengths: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)

    def to_enhanced_analysis(self) -> dict[str, Any]:
        """Snapshot stored on the deal's enhanced_analysis field."""
        return {
            'assessment_id': self.id,
            'overall_score': self.overall_score,
            'rag_status': self.overall_status,
            'confidence': self.confidence,
            'confidence_level': self.confidence_level,
            'analysis_completeness': self.analysis_completeness,
            'recommendation': self.recommendation,
            'executive_summary': self.executive_summary,
            'engine_scores': {
                name: result.score for name, result in self.engine_results.items()
            },
            'engine_status': {
                name: result.status.value for name, result in self.engine_results.items()
            },
            'risk_factors': list(self.risk_factors),
            'next_steps': list(self.next_steps),
            'analyzed_at': self.created_at.isoformat(),
        }

    def to_deal_update(self) -> DealUpdate:
        """Deal fields to write alongside this assessment."""
        # No scored criteria: leave the deal unscored instead of writing 0
        scored = any(check.is_scored for check in self.checks)
        return DealUpdate(
            overall_score=self.overall_score if scored else None,
            rag_status=self.overall_status,
            enhanced_analysis=self.to_enhanced_analysis(),
        )
