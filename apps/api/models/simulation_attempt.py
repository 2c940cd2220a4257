"""SimulationAttempt model (billing-relevant columns only)."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, false
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class SimulationAttempt(Base):
    """A voice practice session billed per minute."""

    __tablename__ = "simulation_attempts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id = Column(String, ForeignKey("students.id"), nullable=False, index=True)
    simulation_id = Column(String, nullable=True)
    correlation_token = Column(String, nullable=True, unique=True, index=True)
    conversation_id = Column(String, nullable=True, unique=True, index=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now())
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    minutes_billed = Column(Integer, nullable=False, default=0, server_default="0")
    billing_terminated = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    student = relationship("Student", back_populates="simulation_attempts")
    minute_charges = relationship("VoiceMinuteCharge", back_populates="attempt")
