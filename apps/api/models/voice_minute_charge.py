"""VoiceMinuteCharge model: one row per billed (conversation, minute)."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class VoiceMinuteCharge(Base):
    """Idempotency key for per-minute billing webhooks."""

    __tablename__ = "voice_minute_charges"
    __table_args__ = (
        UniqueConstraint("conversation_id", "minute", name="uq_voice_minute_charges_conversation_minute"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String, nullable=False, index=True)
    minute = Column(Integer, nullable=False)
    attempt_id = Column(String, ForeignKey("simulation_attempts.id"), nullable=False, index=True)
    credit_transaction_id = Column(String, ForeignKey("credit_transactions.id"), nullable=True)
    credits_charged = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    attempt = relationship("SimulationAttempt", back_populates="minute_charges")
