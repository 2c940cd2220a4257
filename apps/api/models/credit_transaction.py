"""CreditTransaction model: the append-only credit ledger."""

import enum
from datetime import datetime, timezone
import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditTransactionType(str, enum.Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class CreditTransactionSource(str, enum.Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    PURCHASE = "PURCHASE"
    SIMULATION = "SIMULATION"
    MANUAL = "MANUAL"


class CreditTransaction(Base):
    """Immutable ledger entry; ``balance_after`` is the student's balance once applied."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id = Column(String, ForeignKey("students.id"), nullable=False, index=True)
    transaction_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source_type = Column(String, nullable=False)
    source_id = Column(String, nullable=True, index=True)
    description = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )

    student = relationship("Student", back_populates="credit_transactions")

    @property
    def signed_amount(self) -> int:
        if self.transaction_type == CreditTransactionType.DEBIT.value:
            return -int(self.amount)
        return int(self.amount)
