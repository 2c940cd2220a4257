"""StripeCheckoutSession model tracking pending credit purchases."""

import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CheckoutSessionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


class StripeCheckoutSession(Base):
    """Local mirror of a Stripe Checkout Session. Leaves PENDING at most once."""

    __tablename__ = "stripe_checkout_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, nullable=False, unique=True, index=True)
    student_id = Column(String, ForeignKey("students.id"), nullable=False, index=True)
    credit_package_id = Column(String, ForeignKey("credit_packages.id"), nullable=False)
    status = Column(String, nullable=False, default=CheckoutSessionStatus.PENDING.value)
    amount_in_cents = Column(Integer, nullable=False)
    credits_quantity = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="gbp")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    student = relationship("Student", back_populates="checkout_sessions")
    credit_package = relationship("CreditPackage")
