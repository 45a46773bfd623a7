"""
Orchestration pipeline coordinator.

Runs one analysis pass for one deal, in strict stage order:

1. Load deal + fund configuration
2. Enrichment (skipped while the previous enrichment is fresh)
3. Specialized engines, fanned out concurrently with per-engine isolation
4. Aggregation (weighted score + RAG band) and executive summary
5. Persistence: one atomic write of the assessment and deal fields

The deal-analysis-complete event is published by the service once the
queue item is marked completed, not here.

Every external call goes through run_resilient(); the coordinator itself
never retries. Only ConfigError and PersistenceError fail the run; engine
and enrichment failures are recorded and the run proceeds.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Sequence

import structlog

from ..config import config
from ..errors import ConfigError, PersistenceError, TransientEngineError
from ..logging import PipelineTimer, logging_context
from ..models import Assessment, Deal, DealUpdate, EngineResult, EngineStatus, RAGBand
from ..models.queue import utcnow
from ..resilience import RetryPolicy, run_resilient
from ..scoring import validate_thresholds, validate_weights
from ..store.base import AnalysisStore, ConfigService
from .aggregator import aggregate, has_errors
from .engines import AnalysisEngine, EngineContext, EnrichmentService, Summarizer

logger = structlog.get_logger(__name__)


@dataclass
class AnalysisRunResult:
    """Result of one coordinator run."""

    deal_id: str
    assessment: Assessment
    engine_results: dict[str, EngineResult] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    enrichment_skipped: bool = False
    timing: dict[str, Any] = field(default_factory=dict)

    @property
    def analysis_completeness(self) -> int:
        return self.assessment.analysis_completeness

    @property
    def overall_score(self) -> int:
        return self.assessment.overall_score

    @property
    def failed_engines(self) -> list[str]:
        return [
            name
            for name, result in self.engine_results.items()
            if result.status == EngineStatus.ERROR
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'deal_id': self.deal_id,
            'assessment_id': self.assessment.id,
            'overall_score': self.assessment.overall_score,
            'rag_status': self.assessment.overall_status,
            'analysis_completeness': self.analysis_completeness,
            'engine_status': {
                name: result.status.value for name, result in self.engine_results.items()
            },
            'failed_engines': self.failed_engines,
            'warnings': self.warnings,
            'enrichment_skipped': self.enrichment_skipped,
            'timing': self.timing,
        }


class AnalysisCoordinator:
    """
    Runs the analysis pipeline for a deal.

    Usage:
        coordinator = AnalysisCoordinator(
            store=store,
            config_service=config_service,
            engines=build_llm_engines(openai_client),
        )
        result = await coordinator.run(deal_id)
    """

    def __init__(
        self,
        store: AnalysisStore,
        config_service: ConfigService,
        engines: Sequence[AnalysisEngine],
        enrichment: EnrichmentService | None = None,
        summarizer: Summarizer | None = None,
        engine_policy: RetryPolicy | None = None,
        enrichment_policy: RetryPolicy | None = None,
        persistence_policy: RetryPolicy | None = None,
        enrichment_freshness: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        names = [engine.name for engine in engines]
        if len(set(names)) != len(names):
            raise ValueError(f'Duplicate engine names: {names}')

        self.store = store
        self.config_service = config_service
        self.engines = list(engines)
        self.enrichment = enrichment
        self.summarizer = summarizer
        self.engine_policy = engine_policy or RetryPolicy.from_config()
        self.enrichment_policy = enrichment_policy or RetryPolicy.from_config()
        self.persistence_policy = persistence_policy or RetryPolicy.from_config(
            quality_threshold=None,
            retry_on=(TransientEngineError, TimeoutError, asyncio.TimeoutError, ConnectionError),
        )
        self.enrichment_freshness = enrichment_freshness or timedelta(
            hours=config.ENRICHMENT_FRESHNESS_HOURS
        )
        self._clock = clock
        self._sleep = sleep

    async def run(self, deal_id: str, force_refresh: bool = False) -> AnalysisRunResult:
        """
        Run every stage for one deal.

        Args:
            deal_id: Deal to analyze
            force_refresh: Re-run enrichment even if the last one is fresh

        Returns:
            AnalysisRunResult with the persisted assessment

        Raises:
            ConfigError: Fund thresholds or weights are unusable
            PersistenceError: The deal could not be loaded or the assessment
                could not be written (the previous assessment stays visible)
        """
        timer = PipelineTimer()
        warnings: list[str] = []

        with logging_context(deal_id=deal_id):
            log = logger.bind(deal_id=deal_id, force_refresh=force_refresh)
            log.info('coordinator.started', engines=[e.name for e in self.engines])

            # Stage 1: deal + configuration
            with timer.stage('load'):
                deal = await self._load_deal(deal_id)
                bands, weights = await self._load_config(deal)

            with logging_context(fund_id=deal.fund_id):
                # Stage 2: enrichment
                with timer.stage('enrichment'):
                    enrichment, enriched_at, skipped = await self._enrich(
                        deal, force_refresh, warnings
                    )

                # Stage 3: engines (fan-out / gather)
                context = EngineContext(deal=deal, enrichment=enrichment, weights=weights)
                with timer.stage('engines'):
                    engine_results = await self._run_engines(deal_id, context)

                # Stage 4: aggregation
                with timer.stage('aggregation'):
                    assessment = aggregate(
                        deal_id=deal_id,
                        engine_results=engine_results,
                        weights=weights,
                        bands=bands,
                        fund_id=deal.fund_id,
                        company_name=deal.company_name,
                        expected_engines=len(self.engines),
                        warnings=warnings,
                    )
                    assessment = await self._summarize(deal, assessment, warnings)

                # Stage 5: persistence
                with timer.stage('persistence'):
                    update = assessment.to_deal_update()
                    if not skipped and enriched_at is not None:
                        update = update.model_copy(
                            update={'enrichment': enrichment, 'last_enriched_at': enriched_at}
                        )
                    await self._persist(deal_id, assessment, update)

            result = AnalysisRunResult(
                deal_id=deal_id,
                assessment=assessment,
                engine_results=engine_results,
                warnings=warnings,
                enrichment_skipped=skipped,
                timing=timer.summary(),
            )
            log.info(
                'coordinator.complete',
                assessment_id=assessment.id,
                overall_score=assessment.overall_score,
                rag_status=assessment.overall_status,
                analysis_completeness=assessment.analysis_completeness,
                failed_engines=result.failed_engines,
                warnings=len(warnings),
                total_ms=result.timing['total_ms'],
            )
            return result

    # =========================================================================
    # Stages
    # =========================================================================

    async def _load_deal(self, deal_id: str) -> Deal:
        try:
            outcome = await run_resilient(
                lambda: self.store.load_deal(deal_id),
                policy=self.persistence_policy,
                name='store.load_deal',
                sleep=self._sleep,
            )
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                f'Failed to load deal: {exc}', context={'deal_id': deal_id}
            ) from exc
        if not outcome.succeeded:
            raise PersistenceError(
                f'Failed to load deal: {outcome.error}', context={'deal_id': deal_id}
            ) from outcome.error
        return outcome.result

    async def _load_config(self, deal: Deal) -> tuple[tuple[RAGBand, ...], dict[str, int]]:
        try:
            bands = await self.config_service.get_thresholds(deal.fund_id)
            weights = await self.config_service.get_weights(deal.fund_type)
        except ConfigError:
            raise
        except Exception as exc:
            raise ConfigError(
                f'Failed to load fund configuration: {exc}',
                context={'fund_id': deal.fund_id, 'fund_type': deal.fund_type.value},
            ) from exc
        try:
            weights = validate_weights(weights or {})
        except ConfigError as exc:
            exc.context.setdefault('fund_type', deal.fund_type.value)
            raise
        return validate_thresholds(bands), weights

    async def _enrich(
        self,
        deal: Deal,
        force_refresh: bool,
        warnings: list[str],
    ) -> tuple[dict[str, Any], datetime | None, bool]:
        """
        Returns:
            (enrichment facts, retrieval time, skipped)
        """
        if self.enrichment is None:
            return dict(deal.enrichment), deal.last_enriched_at, True

        if (
            not force_refresh
            and deal.last_enriched_at is not None
            and self._clock() - deal.last_enriched_at < self.enrichment_freshness
        ):
            logger.info(
                'coordinator.enrichment_skipped',
                deal_id=deal.id,
                last_enriched_at=deal.last_enriched_at.isoformat(),
            )
            return dict(deal.enrichment), deal.last_enriched_at, True

        enrichment = self.enrichment
        try:
            outcome = await run_resilient(
                lambda: enrichment.enrich(deal.id, deal.facts()),
                policy=self.enrichment_policy,
                name='enrichment',
                sleep=self._sleep,
            )
        except ConfigError:
            raise
        except Exception as exc:
            outcome = None
            error: BaseException | None = exc
        else:
            error = outcome.error

        if outcome is None or not outcome.succeeded or outcome.result is None:
            warnings.append(f'Enrichment failed, using raw deal facts: {error}')
            logger.warning(
                'coordinator.enrichment_failed',
                deal_id=deal.id,
                error=str(error),
                error_type=type(error).__name__ if error else None,
            )
            return dict(deal.enrichment), deal.last_enriched_at, True

        if outcome.degraded:
            warnings.append(
                f'Enrichment quality {outcome.quality} below threshold after '
                f'{outcome.attempts} attempts'
            )
        return dict(outcome.result.facts), outcome.result.retrieved_at, False

    async def _run_engines(
        self,
        deal_id: str,
        context: EngineContext,
    ) -> dict[str, EngineResult]:
        """Fan out every engine; one failing engine never blocks the others."""
        gathered = await asyncio.gather(
            *(self._run_engine(engine, deal_id, context) for engine in self.engines),
            return_exceptions=True,
        )

        results: dict[str, EngineResult] = {}
        for engine, item in zip(self.engines, gathered):
            if isinstance(item, ConfigError):
                raise item
            if isinstance(item, Exception):
                logger.warning(
                    'coordinator.engine_failed',
                    engine=engine.name,
                    error=str(item),
                    error_type=type(item).__name__,
                )
                results[engine.name] = EngineResult.failed(engine.name, item)
            elif isinstance(item, BaseException):
                raise item
            else:
                results[engine.name] = item

        if has_errors(results):
            logger.info(
                'coordinator.partial_engine_failure',
                deal_id=deal_id,
                failed=[n for n, r in results.items() if r.status == EngineStatus.ERROR],
            )
        return results

    async def _run_engine(
        self,
        engine: AnalysisEngine,
        deal_id: str,
        context: EngineContext,
    ) -> EngineResult:
        try:
            outcome = await run_resilient(
                lambda: engine.analyze(deal_id, context),
                policy=self.engine_policy,
                name=f'engine.{engine.name}',
                sleep=self._sleep,
            )
        except ConfigError:
            raise
        except Exception as exc:
            logger.warning(
                'coordinator.engine_failed',
                engine=engine.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return EngineResult.failed(engine.name, exc, attempts=1)

        if not outcome.succeeded:
            logger.warning(
                'coordinator.engine_failed',
                engine=engine.name,
                error=str(outcome.error),
                attempts=outcome.attempts,
            )
            return EngineResult.failed(engine.name, outcome.error, attempts=outcome.attempts)

        result = outcome.result
        if result is None:
            return EngineResult.failed(
                engine.name, 'Engine returned no result', attempts=outcome.attempts
            )

        changes: dict[str, Any] = {'engine_name': engine.name, 'attempts': outcome.attempts}
        if result.status == EngineStatus.PENDING:
            # A returned result is finished; no score means no evidence
            changes['status'] = (
                EngineStatus.COMPLETE if result.score is not None else EngineStatus.PARTIAL
            )
        if outcome.degraded and result.status != EngineStatus.ERROR:
            # Low quality accepted: mark partial and cap confidence at quality
            changes['status'] = EngineStatus.PARTIAL
            if outcome.quality is not None:
                changes['confidence'] = min(result.confidence, outcome.quality)
            logger.info(
                'coordinator.engine_degraded',
                engine=engine.name,
                quality=outcome.quality,
                attempts=outcome.attempts,
            )
        return result.model_copy(update=changes)

    async def _summarize(
        self,
        deal: Deal,
        assessment: Assessment,
        warnings: list[str],
    ) -> Assessment:
        if self.summarizer is None or assessment.total_weight == 0:
            return assessment

        summarizer = self.summarizer
        try:
            outcome = await run_resilient(
                lambda: summarizer.summarize(
                    company_name=deal.company_name,
                    overall_score=assessment.overall_score,
                    rag_label=assessment.rag_label,
                    engine_scores={
                        name: result.score for name, result in assessment.engine_results.items()
                    },
                    risk_factors=assessment.risk_factors,
                ),
                policy=RetryPolicy(
                    max_retries=self.engine_policy.max_retries,
                    retry_delay_ms=self.engine_policy.retry_delay_ms,
                    quality_threshold=None,
                    timeout_ms=self.engine_policy.timeout_ms,
                ),
                name='summary',
                sleep=self._sleep,
            )
            summary = outcome.unwrap()
        except Exception as exc:
            summary = None
            logger.warning('coordinator.summary_failed', error=str(exc))
            warnings.append(f'Executive summary unavailable: {exc}')

        if not summary:
            return assessment.model_copy(update={'warnings': list(warnings)})
        return assessment.model_copy(
            update={'executive_summary': summary, 'warnings': list(warnings)}
        )

    async def _persist(
        self,
        deal_id: str,
        assessment: Assessment,
        update: DealUpdate,
    ) -> None:
        try:
            outcome = await run_resilient(
                lambda: self.store.save_assessment(deal_id, assessment, update),
                policy=self.persistence_policy,
                name='store.save_assessment',
                sleep=self._sleep,
            )
            outcome.unwrap()
        except PersistenceError as exc:
            logger.error('coordinator.persist_failed', deal_id=deal_id, error=str(exc))
            raise
        except Exception as exc:
            logger.error('coordinator.persist_failed', deal_id=deal_id, error=str(exc))
            raise PersistenceError(
                f'Failed to save assessment: {exc}',
                context={'deal_id': deal_id, 'assessment_id': assessment.id},
            ) from exc
