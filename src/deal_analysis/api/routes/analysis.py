"""Deal analysis queue routes."""

from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from deal_analysis.errors import (
    ConfigError,
    DealNotFoundError,
    InvalidStateError,
    QueueItemNotFoundError,
)
from deal_analysis.models import Priority, QueueItem, TriggerReason
from deal_analysis.service import DealAnalysisService

from ..auth import verify_worker_token

logger = structlog.get_logger(__name__)

router = APIRouter()


class AnalysisRequest(BaseModel):
    """Body for POST /deals/{deal_id}/analysis."""

    priority: Priority = Priority.NORMAL
    reason: TriggerReason = TriggerReason.MANUAL_TRIGGER
    delay_seconds: int | None = Field(default=None, ge=0)


class AutoAnalysisRequest(BaseModel):
    """Body for PUT /deals/{deal_id}/auto-analysis."""

    enabled: bool


def get_service(request: Request) -> DealAnalysisService:
    return request.app.state.service


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map core exceptions onto HTTP status codes."""
    try:
        yield
    except (QueueItemNotFoundError, DealNotFoundError) as e:
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=e.message)


def _item_response(item: QueueItem) -> dict:
    return item.to_dict()


@router.post("/deals/{deal_id}/analysis", status_code=202)
async def enqueue_analysis(
    deal_id: str,
    body: AnalysisRequest | None = None,
    service: DealAnalysisService = Depends(get_service),
    _auth: None = Depends(verify_worker_token),
):
    """Queue an analysis; returns the existing item if one is already active."""
    body = body or AnalysisRequest()
    delay = timedelta(seconds=body.delay_seconds) if body.delay_seconds else None
    with _translate_errors():
        item = await service.enqueue_analysis(
            deal_id, priority=body.priority, reason=body.reason, delay=delay
        )
    return _item_response(item)


@router.get("/deals/{deal_id}/analysis/status")
async def analysis_status(
    deal_id: str,
    service: DealAnalysisService = Depends(get_service),
):
    """Current queue item for the deal, or null when none exists."""
    item = await service.get_queue_status(deal_id)
    wait = service.queue.estimated_wait(deal_id)
    return {
        "deal_id": deal_id,
        "item": _item_response(item) if item is not None else None,
        "estimated_wait_seconds": int(wait.total_seconds()) if wait is not None else None,
    }


@router.post("/deals/{deal_id}/analysis/force")
async def force_analysis(
    deal_id: str,
    service: DealAnalysisService = Depends(get_service),
    _auth: None = Depends(verify_worker_token),
):
    with _translate_errors():
        item = await service.force_analysis_now(deal_id)
    return _item_response(item)


@router.put("/deals/{deal_id}/auto-analysis")
async def set_auto_analysis(
    deal_id: str,
    body: AutoAnalysisRequest,
    service: DealAnalysisService = Depends(get_service),
    _auth: None = Depends(verify_worker_token),
):
    service.set_auto_analysis(deal_id, body.enabled)
    return {"deal_id": deal_id, "auto_analysis_enabled": body.enabled}


@router.post("/queue/{item_id}/cancel")
async def cancel_analysis(
    item_id: str,
    service: DealAnalysisService = Depends(get_service),
    _auth: None = Depends(verify_worker_token),
):
    with _translate_errors():
        item = await service.cancel_analysis(item_id)
    logger.info("analysis_api.cancelled", queue_item_id=item_id)
    return _item_response(item)


@router.post("/queue/{item_id}/retry")
async def retry_analysis(
    item_id: str,
    service: DealAnalysisService = Depends(get_service),
    _auth: None = Depends(verify_worker_token),
):
    with _translate_errors():
        item = await service.retry_analysis(item_id)
    return _item_response(item)


@router.get("/queue/stats")
async def queue_stats(service: DealAnalysisService = Depends(get_service)):
    return service.queue_stats()
