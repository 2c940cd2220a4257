"""Voice billing callbacks and student credit summary."""

from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.student import Student
from routers.auth_scope import get_current_student, require_internal_secret
from services.billing_metrics import BillingMetrics
from services.credits import get_credit_summary
from services.voice_billing import VoiceBillingService

router = APIRouter()
logger = logging.getLogger(__name__)

BodyT = TypeVar("BodyT", bound=BaseModel)


class VoiceMinuteRequest(BaseModel):
    correlation_token: Optional[str] = None
    conversation_id: str = Field(min_length=1)
    minute: int = Field(ge=1)
    timestamp: Optional[datetime] = None


class SessionEndRequest(BaseModel):
    correlation_token: Optional[str] = None
    conversation_id: str = Field(min_length=1)
    total_minutes: int = Field(ge=0)
    total_seconds: Optional[int] = Field(default=None, ge=0)
    timestamp: Optional[datetime] = None


def get_billing_metrics(request: Request) -> BillingMetrics:
    metrics = getattr(request.app.state, "billing_metrics", None)
    if metrics is None:
        metrics = BillingMetrics()
        request.app.state.billing_metrics = metrics
    return metrics


def _validation_details(exc: ValidationError) -> List[Dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in error.get("loc", ())), "message": str(error.get("msg", ""))}
        for error in exc.errors()
    ]


async def _parse_body(request: Request, model: Type[BodyT]) -> BodyT:
    """Validate the JSON body; the voice agent expects 400 rather than 422."""
    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail={"error": "Invalid request", "details": []}) from exc
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid request", "details": _validation_details(exc)},
        ) from exc


def _timed_response(
    payload: Dict[str, Any],
    *,
    request_id: str,
    started: float,
    status_code: int = 200,
    credits_remaining: Optional[int] = None,
) -> JSONResponse:
    headers = {
        "X-Request-ID": request_id,
        "X-Processing-Time-MS": f"{(time.perf_counter() - started) * 1000:.2f}",
    }
    if credits_remaining is not None:
        headers["X-Credits-Remaining"] = str(credits_remaining)
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


@router.post("/voice-minute")
async def bill_voice_minute(
    request: Request,
    _secret: None = Depends(require_internal_secret),
    db: AsyncSession = Depends(get_db),
    metrics: BillingMetrics = Depends(get_billing_metrics),
):
    started = time.perf_counter()
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    body = await _parse_body(request, VoiceMinuteRequest)

    service = VoiceBillingService.from_settings(db, metrics, settings)
    try:
        result = await service.handle_minute_billing(
            conversation_id=body.conversation_id,
            minute=body.minute,
            correlation_token=body.correlation_token,
        )
    except Exception:
        metrics.failed_billings += 1
        logger.exception(
            "Voice minute billing failed",
            extra={"request_id": request_id, "conversation_id": body.conversation_id, "minute": body.minute},
        )
        return _timed_response(
            {"status": "error", "message": "Internal billing error", "shouldTerminate": False},
            request_id=request_id,
            started=started,
            status_code=500,
        )

    return _timed_response(
        result,
        request_id=request_id,
        started=started,
        credits_remaining=result.get("creditsRemaining"),
    )


@router.post("/end-session")
async def end_voice_session(
    request: Request,
    _secret: None = Depends(require_internal_secret),
    db: AsyncSession = Depends(get_db),
    metrics: BillingMetrics = Depends(get_billing_metrics),
):
    started = time.perf_counter()
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    body = await _parse_body(request, SessionEndRequest)

    service = VoiceBillingService.from_settings(db, metrics, settings)
    try:
        result = await service.handle_session_end(
            conversation_id=body.conversation_id,
            total_minutes=body.total_minutes,
            correlation_token=body.correlation_token,
            total_seconds=body.total_seconds,
            ended_at=body.timestamp,
        )
    except Exception:
        logger.exception(
            "Session end processing failed",
            extra={"request_id": request_id, "conversation_id": body.conversation_id},
        )
        return _timed_response(
            {"success": False, "error": "Internal billing error"},
            request_id=request_id,
            started=started,
            status_code=500,
        )

    return _timed_response(result, request_id=request_id, started=started)


@router.get("/metrics")
async def billing_metrics(metrics: BillingMetrics = Depends(get_billing_metrics)):
    return metrics.snapshot()


@router.post("/metrics/reset")
async def reset_billing_metrics(
    _secret: None = Depends(require_internal_secret),
    metrics: BillingMetrics = Depends(get_billing_metrics),
):
    metrics.reset()
    logger.info("Billing metrics reset")
    return {"success": True, "metrics": metrics.snapshot()}


@router.get("/health")
async def billing_health(metrics: BillingMetrics = Depends(get_billing_metrics)):
    success_rate = metrics.success_rate
    # Low success rate usually means students running out of credits, not an outage.
    status = "healthy" if success_rate is None or success_rate >= 50 else "degraded"
    return {
        "status": status,
        "successRate": success_rate,
        "totalRequests": metrics.total_requests,
        "lastProcessedAt": metrics.last_processed_at.isoformat() if metrics.last_processed_at else None,
    }


@router.get("/credits")
async def credits_summary(
    student: Student = Depends(get_current_student),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(student.id, db)
