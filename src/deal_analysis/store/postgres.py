"""
Postgres store for deals, assessments and analysis queue items.

SQLAlchemy 2.0 async engine + asyncpg executing raw SQL.

Tables:
- deals (read; analysis columns UPDATEd)
- deal_assessments (INSERT, one row per analysis pass)
- analysis_queue (UPSERT on id, one row per job holding its latest version)

save_assessment writes the assessment row and the deal update in a single
transaction, so a failed write leaves the previous assessment visible.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..errors import DealNotFoundError, PersistenceError
from ..models import Assessment, Deal, DealUpdate, QueueItem

logger = structlog.get_logger(__name__)


def _sanitize_url(url: str) -> str:
    """Remove URL query params that asyncpg does not understand.

    Hosted Postgres URLs often carry ``channel_binding`` and ``sslmode``
    which are libpq parameters; asyncpg rejects them.
    """
    strip_params = {'channel_binding', 'sslmode'}
    parsed = urlparse(url)
    if not parsed.query:
        return url
    params = parse_qs(parsed.query)
    filtered = {k: v for k, v in params.items() if k not in strip_params}
    return urlunparse(parsed._replace(query=urlencode(filtered, doseq=True)))


def _asyncpg_url(url: str) -> str:
    url = _sanitize_url(url)
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql+asyncpg://', 1)
    if url.startswith('postgresql://') and '+asyncpg' not in url:
        return url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    return url


def _to_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _from_json(value: Any) -> dict[str, Any]:
    """asyncpg returns jsonb as str unless a codec is registered."""
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class PostgresAnalysisStore:
    """
    AnalysisStore backed by Postgres.

    Every database failure surfaces as PersistenceError so the run that
    triggered it fails with a readable message.
    """

    def __init__(self, database_url: str | None = None):
        self._engine: AsyncEngine | None = None
        self._database_url = database_url

    async def connect(self, database_url: str | None = None) -> None:
        """Create the async engine. No-op if already connected."""
        if self._engine is not None:
            return

        url = database_url or self._database_url
        if not url:
            raise ValueError('database_url is required')

        self._engine = create_async_engine(
            _asyncpg_url(url),
            pool_size=5,
            max_overflow=5,
            pool_pre_ping=True,
            pool_timeout=30,
            # PgBouncer-style poolers don't support prepared statements
            connect_args={'prepared_statement_cache_size': 0},
        )
        logger.info('postgres_store.connected')

    async def close(self) -> None:
        """Dispose of the engine and connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info('postgres_store.closed')

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError('PostgresAnalysisStore not connected, call connect() first')
        return self._engine

    async def verify_connectivity(self) -> bool:
        """Return True if we can execute a simple query."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text('SELECT 1'))
            return True
        except Exception:
            logger.exception('postgres_store.connectivity_check_failed')
            return False

    # =========================================================================
    # Deals
    # =========================================================================

    async def load_deal(self, deal_id: str) -> Deal:
        sql = text("""
            SELECT id, fund_id, fund_type, company_name, industry, round_size,
                   valuation, description, website, overall_score, rag_status,
                   enhanced_analysis, auto_analysis_enabled, enrichment,
                   last_enriched_at, updated_at
            FROM deals
            WHERE id = :id
        """)
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(sql, {'id': deal_id})
                row = result.mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f'Failed to load deal: {exc}', context={'deal_id': deal_id}
            ) from exc

        if row is None:
            raise DealNotFoundError('Deal not found', context={'deal_id': deal_id})

        data = dict(row)
        data['id'] = str(data['id'])
        data['fund_id'] = str(data['fund_id'])
        data['enhanced_analysis'] = _from_json(data.get('enhanced_analysis'))
        data['enrichment'] = _from_json(data.get('enrichment'))
        return Deal.model_validate({k: v for k, v in data.items() if v is not None})

    # =========================================================================
    # Assessments
    # =========================================================================

    async def save_assessment(
        self,
        deal_id: str,
        assessment: Assessment,
        deal_update: DealUpdate | None = None,
    ) -> None:
        """
        INSERT the assessment and UPDATE the deal in one transaction.
        """
        update = deal_update or assessment.to_deal_update()
        insert_sql = text("""
            INSERT INTO deal_assessments (
                id, deal_id, fund_id, overall_score, overall_status,
                confidence, analysis_completeness, payload, created_at
            ) VALUES (
                :id, :deal_id, :fund_id, :overall_score, :overall_status,
                :confidence, :analysis_completeness, CAST(:payload AS jsonb),
                :created_at
            )
        """)
        update_sql = text("""
            UPDATE deals SET
                overall_score = :overall_score,
                rag_status = :rag_status,
                enhanced_analysis = CAST(:enhanced_analysis AS jsonb),
                enrichment = COALESCE(CAST(:enrichment AS jsonb), enrichment),
                last_enriched_at = COALESCE(:last_enriched_at, last_enriched_at),
                updated_at = now()
            WHERE id = :deal_id
        """)
        insert_params = {
            'id': assessment.id,
            'deal_id': deal_id,
            'fund_id': assessment.fund_id,
            'overall_score': assessment.overall_score,
            'overall_status': assessment.overall_status,
            'confidence': assessment.confidence,
            'analysis_completeness': assessment.analysis_completeness,
            'payload': assessment.model_dump_json(),
            'created_at': assessment.created_at,
        }
        update_params = {
            'deal_id': deal_id,
            'overall_score': update.overall_score,
            'rag_status': update.rag_status,
            'enhanced_analysis': _to_json(update.enhanced_analysis),
            'enrichment': _to_json(update.enrichment),
            'last_enriched_at': update.last_enriched_at,
        }

        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert_sql, insert_params)
                result = await conn.execute(update_sql, update_params)
                if result.rowcount == 0:
                    # Raising inside the block rolls back the assessment insert
                    raise DealNotFoundError('Deal not found', context={'deal_id': deal_id})
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f'Failed to save assessment: {exc}',
                context={'deal_id': deal_id, 'assessment_id': assessment.id},
            ) from exc

        logger.info(
            'postgres_store.assessment_saved',
            deal_id=deal_id,
            assessment_id=assessment.id,
            overall_score=assessment.overall_score,
        )

    async def latest_assessment(self, deal_id: str) -> Assessment | None:
        sql = text("""
            SELECT payload
            FROM deal_assessments
            WHERE deal_id = :deal_id
            ORDER BY created_at DESC
            LIMIT 1
        """)
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(sql, {'deal_id': deal_id})
                row = result.fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f'Failed to load assessment: {exc}', context={'deal_id': deal_id}
            ) from exc

        if row is None:
            return None
        return Assessment.model_validate(_from_json(row[0]))

    # =========================================================================
    # Queue items
    # =========================================================================

    async def save_queue_item(self, item: QueueItem) -> None:
        """
        UPSERT the latest version of a queue item.

        Older versions never overwrite newer ones.
        """
        sql = text("""
            INSERT INTO analysis_queue (
                id, deal_id, status, priority, trigger_reason, scheduled_for,
                attempts, max_attempts, error_message, created_at, started_at,
                completed_at, supersedes, version
            ) VALUES (
                :id, :deal_id, :status, :priority, :trigger_reason, :scheduled_for,
                :attempts, :max_attempts, :error_message, :created_at, :started_at,
                :completed_at, :supersedes, :version
            )
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                priority = EXCLUDED.priority,
                scheduled_for = EXCLUDED.scheduled_for,
                attempts = EXCLUDED.attempts,
                error_message = EXCLUDED.error_message,
                started_at = EXCLUDED.started_at,
                completed_at = EXCLUDED.completed_at,
                version = EXCLUDED.version
            WHERE analysis_queue.version < EXCLUDED.version
        """)
        params = {
            'id': item.id,
            'deal_id': item.deal_id,
            'status': item.status.value,
            'priority': item.priority.value,
            'trigger_reason': item.trigger_reason,
            'scheduled_for': _to_pg_ts(item.scheduled_for),
            'attempts': item.attempts,
            'max_attempts': item.max_attempts,
            'error_message': item.error_message,
            'created_at': _to_pg_ts(item.created_at),
            'started_at': _to_pg_ts(item.started_at),
            'completed_at': _to_pg_ts(item.completed_at),
            'supersedes': item.supersedes,
            'version': item.version,
        }
        try:
            async with self.engine.begin() as conn:
                await conn.execute(sql, params)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f'Failed to save queue item: {exc}',
                context={'queue_item_id': item.id, 'deal_id': item.deal_id},
            ) from exc


def _to_pg_ts(val: datetime | str | None) -> datetime | None:
    """asyncpg needs native datetimes, not ISO strings."""
    if val is None or isinstance(val, datetime):
        return val
    return datetime.fromisoformat(val)
