"""StripeWebhookEvent model: idempotency record and audit log."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text, false
from sqlalchemy.sql import func

from database import Base


class StripeWebhookEvent(Base):
    """One row per Stripe event id."""

    __tablename__ = "stripe_webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String, nullable=False, unique=True, index=True)
    event_type = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, nullable=False, default=False, server_default=false())
    processing_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
