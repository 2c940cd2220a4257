"""Credit purchase checkout router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.student import Student
from routers.auth_scope import get_current_student
from routers.rate_limit import rate_limit
from services.errors import StripeNotConfigured
from services.stripe_checkout import StripeCheckoutService, StripeGateway

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditCheckoutRequest(BaseModel):
    package_id: str = Field(min_length=1)


def get_stripe_gateway(request: Request) -> StripeGateway:
    gateway = getattr(request.app.state, "stripe_gateway", None)
    if gateway is None:
        gateway = StripeGateway(settings.STRIPE_SECRET_KEY)
    return gateway


@router.post("/credit-checkout", status_code=201)
async def create_credit_checkout(
    body: CreditCheckoutRequest,
    _rate_limit: None = Depends(rate_limit("credit_checkout", limit=20, window_seconds=3600)),
    student: Student = Depends(get_current_student),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db),
):
    service = StripeCheckoutService(db, gateway, settings)
    try:
        return await service.create_credit_checkout_session(student.id, body.package_id)
    except StripeNotConfigured as exc:
        logger.error("Checkout requested without Stripe configuration")
        raise HTTPException(status_code=503, detail="Payment processing is not configured.") from exc


@router.get("/checkout-status/{session_id}")
async def checkout_status(
    session_id: str,
    student: Student = Depends(get_current_student),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db),
):
    service = StripeCheckoutService(db, gateway, settings)
    return await service.get_checkout_session_status(session_id, student.id)


@router.get("/checkout-sessions")
async def checkout_sessions(
    student: Student = Depends(get_current_student),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db),
):
    service = StripeCheckoutService(db, gateway, settings)
    return {"sessions": await service.list_student_checkout_sessions(student.id)}
