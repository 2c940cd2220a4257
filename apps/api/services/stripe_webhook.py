"""Stripe webhook verification, deduplication and credit fulfillment."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from models.credit_transaction import CreditTransaction, CreditTransactionSource
from models.stripe_checkout_session import CheckoutSessionStatus, StripeCheckoutSession
from models.stripe_webhook_event import StripeWebhookEvent
from models.student import Student
from services.credits import apply_credit
from services.email import Mailer
from services.errors import CheckoutSessionNotFound, InvalidSessionState, SignatureInvalid, WebhookNotConfigured

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"


class StripeWebhookService:
    """Handles one Stripe webhook delivery against a request-scoped session."""

    def __init__(self, db: AsyncSession, webhook_secret: str, mailer: Optional[Mailer] = None):
        self.db = db
        self.webhook_secret = (webhook_secret or "").strip()
        self.mailer = mailer

    def verify_signature(self, raw_body: bytes, signature: str) -> Dict[str, Any]:
        """Verify ``stripe-signature`` over the exact raw bytes and decode the event."""
        if not self.webhook_secret:
            raise WebhookNotConfigured("STRIPE_WEBHOOK_SECRET is not configured")

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
            event = json.loads(payload)
        except (UnicodeDecodeError, ValueError, stripe.SignatureVerificationError) as exc:
            raise SignatureInvalid(f"Webhook signature verification failed: {exc}") from exc

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise SignatureInvalid("Webhook payload is not a Stripe event")
        return event

    async def is_already_processed(self, event_id: str) -> bool:
        result = await self.db.execute(
            select(StripeWebhookEvent.id).where(
                StripeWebhookEvent.event_id == event_id,
                StripeWebhookEvent.processed.is_(True),
            )
        )
        return result.scalar_one_or_none() is not None

    async def record_event(
        self,
        event_id: str,
        event_type: str,
        payload: Dict[str, Any],
        error: Optional[str] = None,
    ) -> StripeWebhookEvent:
        """Upsert the event row; failed deliveries keep the error inside the payload."""
        stored_payload = dict(payload)
        if error:
            stored_payload["processingError"] = error

        result = await self.db.execute(
            select(StripeWebhookEvent).where(StripeWebhookEvent.event_id == event_id)
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = StripeWebhookEvent(event_id=event_id, event_type=event_type)
            self.db.add(record)
        record.payload = stored_payload
        record.processed = error is None
        record.processing_error = error
        await self.db.commit()
        return record

    async def handle(self, event: Dict[str, Any]) -> bool:
        """Process a verified event once. Returns False for an already processed event."""
        event_id = str(event["id"])
        event_type = str(event["type"])

        if await self.is_already_processed(event_id):
            logger.info("Stripe event already processed", extra={"event_id": event_id})
            return False

        try:
            await self.process(event)
        except Exception as exc:
            await self.db.rollback()
            logger.exception(
                "Stripe event processing failed",
                extra={"event_id": event_id, "event_type": event_type},
            )
            await self.record_event(event_id, event_type, event, error=str(exc))
            raise

        await self.record_event(event_id, event_type, event)
        return True

    async def process(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        data_object = (event.get("data") or {}).get("object") or {}
        logger.info("Processing Stripe event", extra={"event_id": event.get("id"), "event_type": event_type})

        if event_type == CHECKOUT_COMPLETED:
            await self.fulfill_credits(str(data_object["id"]))
        elif event_type == CHECKOUT_EXPIRED:
            await self.handle_expired_session(str(data_object["id"]))
        else:
            logger.info("Unhandled Stripe event type", extra={"event_type": event_type})

    async def fulfill_credits(self, session_id: str) -> Optional[CreditTransaction]:
        """Credit the student for a paid checkout session exactly once."""
        result = await self.db.execute(
            select(StripeCheckoutSession)
            .where(StripeCheckoutSession.session_id == session_id)
            .options(
                selectinload(StripeCheckoutSession.student).selectinload(Student.user),
                selectinload(StripeCheckoutSession.credit_package),
            )
        )
        checkout_session = result.scalar_one_or_none()
        if checkout_session is None:
            raise CheckoutSessionNotFound(f"Checkout session not found: {session_id}")

        if checkout_session.status == CheckoutSessionStatus.COMPLETED.value:
            logger.info("Checkout session already fulfilled", extra={"session_id": session_id})
            return None
        if checkout_session.status != CheckoutSessionStatus.PENDING.value:
            raise InvalidSessionState(
                f"Session {session_id} has status {checkout_session.status}, cannot fulfill"
            )

        credits_to_add = int(checkout_session.credits_quantity)
        package = checkout_session.credit_package
        student = checkout_session.student

        try:
            flipped = await self.db.execute(
                update(StripeCheckoutSession)
                .where(
                    StripeCheckoutSession.session_id == session_id,
                    StripeCheckoutSession.status == CheckoutSessionStatus.PENDING.value,
                )
                .values(
                    status=CheckoutSessionStatus.COMPLETED.value,
                    completed_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount == 0:
                # Another delivery completed the session first.
                await self.db.rollback()
                return None

            entry = await apply_credit(
                checkout_session.student_id,
                self.db,
                amount=credits_to_add,
                source_type=CreditTransactionSource.PURCHASE,
                source_id=session_id,
                description=f"Purchased {package.name} ({credits_to_add} credits)",
                metadata={
                    "stripeSessionId": session_id,
                    "creditPackageId": checkout_session.credit_package_id,
                    "packageName": package.name,
                    "amountPaid": checkout_session.amount_in_cents,
                    "currency": (checkout_session.currency or "gbp").upper(),
                },
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Credits fulfilled",
            extra={
                "session_id": session_id,
                "student_id": checkout_session.student_id,
                "credits": credits_to_add,
                "balance_after": entry.balance_after,
            },
        )

        if self.mailer is not None:
            try:
                await self.mailer.send_credit_purchase_confirmation(
                    student.user.email,
                    student.full_name,
                    credits_to_add,
                    checkout_session.amount_in_cents,
                    package.name,
                    currency=checkout_session.currency or "gbp",
                )
            except Exception as exc:
                logger.warning(
                    "Failed to send purchase confirmation email",
                    extra={"session_id": session_id, "error": str(exc)},
                )
        return entry

    async def handle_expired_session(self, session_id: str) -> bool:
        """Mark a still-pending session EXPIRED. Returns True when a transition happened."""
        result = await self.db.execute(
            update(StripeCheckoutSession)
            .where(
                StripeCheckoutSession.session_id == session_id,
                StripeCheckoutSession.status == CheckoutSessionStatus.PENDING.value,
            )
            .values(status=CheckoutSessionStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount == 0:
            logger.warning("Expired checkout session not pending or not found", extra={"session_id": session_id})
            return False
        logger.info("Checkout session marked expired", extra={"session_id": session_id})
        return True
