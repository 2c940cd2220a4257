"""Stripe Checkout session creation for credit purchases."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import stripe
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import Settings
from models.credit_package import CreditPackage
from models.stripe_checkout_session import CheckoutSessionStatus, StripeCheckoutSession
from models.student import Student
from services.errors import (
    CheckoutSessionNotFound,
    CreditPackageInactive,
    CreditPackageNotFound,
    StripeNotConfigured,
    StudentNotFound,
)

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin async wrapper over the blocking Stripe SDK calls used for checkout."""

    def __init__(self, api_key: str):
        self.api_key = (api_key or "").strip()

    def _require_key(self) -> str:
        if not self.api_key:
            raise StripeNotConfigured("STRIPE_SECRET_KEY is not configured")
        return self.api_key

    async def create_customer(self, **params: Any) -> Any:
        return await asyncio.to_thread(stripe.Customer.create, api_key=self._require_key(), **params)

    async def customer_exists(self, customer_id: str) -> bool:
        """False when the id belongs to another Stripe mode (test vs live) or was deleted."""
        try:
            customer = await asyncio.to_thread(stripe.Customer.retrieve, customer_id, api_key=self._require_key())
        except stripe.InvalidRequestError:
            return False
        return not bool(getattr(customer, "deleted", False))

    async def create_checkout_session(self, **params: Any) -> Any:
        return await asyncio.to_thread(stripe.checkout.Session.create, api_key=self._require_key(), **params)


def serialize_checkout_session(session: StripeCheckoutSession) -> Dict[str, Any]:
    package = session.credit_package
    return {
        "sessionId": session.session_id,
        "status": session.status,
        "amountInCents": session.amount_in_cents,
        "creditsQuantity": session.credits_quantity,
        "currency": session.currency,
        "expiresAt": session.expires_at.isoformat() if session.expires_at else None,
        "completedAt": session.completed_at.isoformat() if session.completed_at else None,
        "createdAt": session.created_at.isoformat() if session.created_at else None,
        "package": {"name": package.name, "description": package.description, "credits": package.credits}
        if package
        else None,
    }


class StripeCheckoutService:
    def __init__(self, db: AsyncSession, gateway: StripeGateway, settings: Settings):
        self.db = db
        self.gateway = gateway
        self.currency = (settings.STRIPE_CURRENCY or "gbp").lower()
        self.expiry_hours = max(int(settings.STRIPE_CHECKOUT_EXPIRY_HOURS), 1)
        self.frontend_url = settings.FRONTEND_URL.rstrip("/")

    async def _ensure_customer(self, student: Student) -> str:
        customer_id = student.stripe_customer_id
        if customer_id and not await self.gateway.customer_exists(customer_id):
            logger.warning(
                "Stripe customer missing in current environment, creating a new one",
                extra={"student_id": student.id},
            )
            customer_id = None

        if not customer_id:
            customer = await self.gateway.create_customer(
                email=student.user.email,
                name=student.full_name,
                metadata={"studentId": student.id, "userId": str(student.user_id)},
            )
            customer_id = customer["id"]
            student.stripe_customer_id = customer_id
            await self.db.flush()
        return customer_id

    async def create_credit_checkout_session(self, student_id: str, package_id: str) -> Dict[str, Any]:
        result = await self.db.execute(
            select(Student).where(Student.id == student_id).options(selectinload(Student.user))
        )
        student = result.scalar_one_or_none()
        if student is None:
            raise StudentNotFound("Student not found")

        package = await self.db.get(CreditPackage, package_id)
        if package is None:
            raise CreditPackageNotFound("Credit package not found")
        if not package.is_active:
            raise CreditPackageInactive("This credit package is no longer available")

        customer_id = await self._ensure_customer(student)
        expires_at = datetime.now(timezone.utc) + timedelta(hours=self.expiry_hours)

        checkout = await self.gateway.create_checkout_session(
            customer=customer_id,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": package.name,
                            "description": package.description or f"{package.credits} credits for your account",
                        },
                        "unit_amount": package.price_in_cents,
                    },
                    "quantity": 1,
                }
            ],
            success_url=f"{self.frontend_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.frontend_url}/checkout/cancel",
            metadata={
                "studentId": student.id,
                "creditPackageId": package.id,
                "credits": str(package.credits),
            },
            expires_at=int(expires_at.timestamp()),
        )

        saved = StripeCheckoutSession(
            session_id=checkout["id"],
            student_id=student.id,
            credit_package_id=package.id,
            status=CheckoutSessionStatus.PENDING.value,
            amount_in_cents=package.price_in_cents,
            credits_quantity=package.credits,
            currency=self.currency,
            expires_at=expires_at,
            metadata_json={"stripeCustomerId": customer_id, "checkoutUrl": checkout["url"]},
        )
        self.db.add(saved)
        await self.db.commit()

        logger.info(
            "Checkout session created",
            extra={"student_id": student.id, "session_id": saved.session_id, "credits": package.credits},
        )
        return {
            "sessionId": saved.session_id,
            "sessionUrl": checkout["url"],
            "expiresAt": expires_at.isoformat(),
            "amount": package.price_in_cents,
            "credits": package.credits,
        }

    async def get_checkout_session(self, session_id: str) -> StripeCheckoutSession:
        result = await self.db.execute(
            select(StripeCheckoutSession)
            .where(StripeCheckoutSession.session_id == session_id)
            .options(selectinload(StripeCheckoutSession.credit_package))
        )
        session = result.scalar_one_or_none()
        if session is None:
            raise CheckoutSessionNotFound("Checkout session not found")
        return session

    async def get_checkout_session_status(self, session_id: str, student_id: str) -> Dict[str, Any]:
        """Status of one of the student's own sessions; other students' sessions read as missing."""
        session = await self.get_checkout_session(session_id)
        if session.student_id != student_id:
            raise CheckoutSessionNotFound("Checkout session not found")
        return serialize_checkout_session(session)

    async def list_student_checkout_sessions(self, student_id: str) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(StripeCheckoutSession)
            .where(StripeCheckoutSession.student_id == student_id)
            .options(selectinload(StripeCheckoutSession.credit_package))
            .order_by(StripeCheckoutSession.created_at.desc())
        )
        return [serialize_checkout_session(item) for item in result.scalars().all()]
