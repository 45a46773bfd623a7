"""FastAPI application for the deal analysis service."""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from deal_analysis.clients.openai_client import OpenAIClient
from deal_analysis.notifications import NotificationBus
from deal_analysis.pipeline import AnalysisCoordinator, LLMSummarizer, build_llm_engines
from deal_analysis.queue import AnalysisQueueManager
from deal_analysis.service import AnalysisWorker, DealAnalysisService
from deal_analysis.store import InMemoryAnalysisStore, PostgresAnalysisStore, StaticConfigService

from .config import get_settings
from .routes.analysis import router as analysis_router
from .routes.health import router as health_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the analysis core at startup, stop the worker at shutdown."""
    settings = get_settings()

    logger.info("lifespan.startup", postgres=bool(settings.DATABASE_URL))

    # Store: Postgres when configured and reachable, otherwise in-memory
    store: InMemoryAnalysisStore | PostgresAnalysisStore = InMemoryAnalysisStore()
    postgres: PostgresAnalysisStore | None = None
    if settings.DATABASE_URL:
        pg = PostgresAnalysisStore(settings.DATABASE_URL)
        await pg.connect()
        if await pg.verify_connectivity():
            postgres = pg
            store = pg
            logger.info("lifespan.postgres_ready")
        else:
            logger.warning("lifespan.postgres_connectivity_failed")
            await pg.close()

    openai = OpenAIClient(api_key=settings.OPENAI_API_KEY, chat_model=settings.OPENAI_CHAT_MODEL)
    bus = NotificationBus()
    coordinator = AnalysisCoordinator(
        store=store,
        config_service=StaticConfigService(),
        engines=build_llm_engines(openai),
        summarizer=LLMSummarizer(openai),
    )
    service = DealAnalysisService(
        queue=AnalysisQueueManager(),
        coordinator=coordinator,
        store=store,
        bus=bus,
    )

    worker: AnalysisWorker | None = None
    worker_task: asyncio.Task | None = None
    if settings.RUN_WORKER:
        worker = AnalysisWorker(
            service,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            max_concurrent=settings.MAX_CONCURRENT_RUNS,
        )
        worker_task = asyncio.create_task(worker.run_forever())

    # Store on app.state for request handlers
    app.state.store = store
    app.state.bus = bus
    app.state.service = service
    app.state.openai = openai

    logger.info("lifespan.ready", run_worker=settings.RUN_WORKER)
    yield

    # Shutdown
    logger.info("lifespan.shutdown")
    if worker is not None and worker_task is not None:
        worker.stop()
        await worker_task
    await bus.drain()
    await openai.close()
    if postgres is not None:
        await postgres.close()


app = FastAPI(
    title="deal-analysis",
    description="Deal analysis queue, orchestration and scoring service",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(analysis_router)
