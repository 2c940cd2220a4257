"""Student model carrying the cached credit balance."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Student(Base):
    """Student profile. ``credit_balance`` caches the ledger total."""

    __tablename__ = "students"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_students_credit_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    credit_balance = Column(Integer, nullable=False, default=0, server_default="0")
    stripe_customer_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="student")
    credit_transactions = relationship(
        "CreditTransaction", back_populates="student", cascade="all, delete-orphan"
    )
    checkout_sessions = relationship("StripeCheckoutSession", back_populates="student")
    simulation_attempts = relationship("SimulationAttempt", back_populates="student")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
