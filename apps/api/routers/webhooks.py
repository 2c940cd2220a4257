"""Stripe webhook endpoint.

No user authentication: Stripe calls this directly and the signature over the
raw body is the only credential.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.email import Mailer
from services.errors import SignatureInvalid, WebhookNotConfigured
from services.stripe_webhook import StripeWebhookService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_mailer(request: Request) -> Optional[Mailer]:
    return getattr(request.app.state, "mailer", None)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
    mailer: Optional[Mailer] = Depends(get_mailer),
):
    started = time.perf_counter()
    raw_body = await request.body()

    if not raw_body:
        logger.error("Missing raw body for Stripe webhook")
        return JSONResponse(status_code=400, content={"error": "Missing request body"})
    if not stripe_signature:
        logger.error("Missing Stripe signature header")
        return JSONResponse(status_code=400, content={"error": "Missing stripe-signature header"})

    service = StripeWebhookService(db, settings.STRIPE_WEBHOOK_SECRET, mailer=mailer)
    try:
        event = service.verify_signature(raw_body, stripe_signature)
    except WebhookNotConfigured as exc:
        logger.error(str(exc))
        return JSONResponse(status_code=500, content={"error": "Webhook not configured"})
    except SignatureInvalid as exc:
        logger.error("Stripe signature rejected", extra={"error": str(exc)})
        return JSONResponse(status_code=400, content={"error": "Invalid signature"})

    try:
        processed = await service.handle(event)
    except Exception:
        # Stripe retries on 5xx; the failure is already recorded with the event.
        return JSONResponse(status_code=500, content={"error": "Event processing failed"})

    if not processed:
        return {"received": True, "message": "Event already processed"}

    logger.info(
        "Stripe webhook processed",
        extra={
            "event_id": event["id"],
            "event_type": event["type"],
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return {"received": True}
