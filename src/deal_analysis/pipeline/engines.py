"""
Specialized analysis engines and the enrichment collaborator.

The coordinator only depends on the AnalysisEngine and EnrichmentService
protocols. LLMAnalysisEngine is the stock OpenAI-backed engine; any object
with a matching name and analyze() can be registered instead.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from ..clients.openai_client import OpenAIClient
from ..models import Deal, EngineResult, EngineStatus, EnrichmentResult
from ..prompts.engine_prompts import build_engine_prompt, build_summary_prompt

logger = structlog.get_logger(__name__)


DEFAULT_ENGINES: tuple[str, ...] = (
    'investment_thesis_alignment',
    'market_attractiveness',
    'product_strength_ip',
    'financial_feasibility',
    'founder_team_strength',
)


@dataclass
class EngineContext:
    """Everything an engine may read about the deal under analysis."""

    deal: Deal
    enrichment: dict[str, Any] = field(default_factory=dict)
    weights: dict[str, int] = field(default_factory=dict)

    @property
    def facts(self) -> dict[str, Any]:
        return self.deal.facts()


@runtime_checkable
class AnalysisEngine(Protocol):
    """One specialized engine (team, market, product/IP, financial, thesis)."""

    name: str

    async def analyze(self, deal_id: str, context: EngineContext) -> EngineResult: ...


@runtime_checkable
class EnrichmentService(Protocol):
    """Augments raw deal facts from external sources."""

    async def enrich(self, deal_id: str, hints: dict[str, Any]) -> EnrichmentResult: ...


@runtime_checkable
class Summarizer(Protocol):
    """Writes the executive summary for a finished assessment."""

    async def summarize(
        self,
        company_name: str,
        overall_score: int,
        rag_label: str,
        engine_scores: dict[str, float | None],
        risk_factors: list[str],
    ) -> str: ...


# =============================================================================
# LLM-backed engine
# =============================================================================


class EngineAssessment(BaseModel):
    """Structured output returned by the LLM for one engine."""

    has_evidence: bool = Field(
        ..., description='False when the facts say nothing about this dimension'
    )
    score: int | None = Field(
        default=None, description='0-100, or null when there is no evidence'
    )
    confidence: int = Field(default=0, description='0-100 coverage of the focus areas')
    quality_score: int = Field(default=0, description='0-100 specificity of the facts')
    analysis: str = Field(default='', description='2-4 sentence assessment')
    insights: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)


def _clamp(value: float | None) -> float | None:
    if value is None:
        return None
    return float(min(100, max(0, value)))


class LLMAnalysisEngine:
    """
    Specialized engine scoring one dimension with OpenAI structured output.

    Missing evidence yields score=None and status PARTIAL, never a guessed
    number. API errors propagate (rate limits and timeouts as transient)
    so the resilience wrapper decides whether to retry.
    """

    def __init__(self, name: str, openai_client: OpenAIClient):
        """
        Args:
            name: Engine name, also the criterion name it scores
            openai_client: OpenAI client for LLM calls
        """
        self.name = name
        self.openai = openai_client

    async def analyze(self, deal_id: str, context: EngineContext) -> EngineResult:
        messages = build_engine_prompt(
            engine_name=self.name,
            company_name=context.deal.company_name,
            facts=context.facts,
            enrichment=context.enrichment,
            fund_type=context.deal.fund_type.value,
        )
        output = await self.openai.chat_completion_structured(
            messages=messages,
            response_model=EngineAssessment,
        )

        score = _clamp(output.score) if output.has_evidence else None
        status = EngineStatus.COMPLETE if score is not None else EngineStatus.PARTIAL

        logger.info(
            'engine.analyzed',
            engine=self.name,
            deal_id=deal_id,
            score=score,
            has_evidence=output.has_evidence,
            quality_score=output.quality_score,
        )

        return EngineResult(
            engine_name=self.name,
            status=status,
            score=score,
            confidence=_clamp(output.confidence) if score is not None else 0.0,
            quality_score=_clamp(output.quality_score),
            last_run=datetime.now(tz=timezone.utc),
            analysis=output.analysis,
            insights=output.insights,
            strengths=output.strengths,
            concerns=output.concerns,
            sources=output.sources,
        )


def build_llm_engines(
    openai_client: OpenAIClient,
    names: tuple[str, ...] = DEFAULT_ENGINES,
) -> list[LLMAnalysisEngine]:
    """One LLM engine per name, sharing the client."""
    return [LLMAnalysisEngine(name, openai_client) for name in names]


class LLMSummarizer:
    """Executive summary writer backed by a plain chat completion."""

    def __init__(self, openai_client: OpenAIClient):
        self.openai = openai_client

    async def summarize(
        self,
        company_name: str,
        overall_score: int,
        rag_label: str,
        engine_scores: dict[str, float | None],
        risk_factors: list[str],
    ) -> str:
        messages = build_summary_prompt(
            company_name=company_name,
            overall_score=overall_score,
            rag_label=rag_label,
            engine_scores=engine_scores,
            risk_factors=risk_factors,
        )
        return (await self.openai.chat_completion(messages=messages, max_tokens=300)).strip()
