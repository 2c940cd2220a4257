"""Credit ledger and balance accounting helpers.

Every balance mutation is a conditional ``UPDATE`` on ``students`` followed by
a ledger insert carrying the balance read back inside the same transaction.
Callers own the transaction boundary: these helpers flush but never commit.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction, CreditTransactionSource, CreditTransactionType
from models.student import Student
from services.errors import InsufficientCredits, StudentNotFound


async def get_student_balance(student_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(Student.credit_balance).where(Student.id == student_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise StudentNotFound(f"Student not found: {student_id}")
    return int(balance)


async def _insert_transaction(
    db: AsyncSession,
    *,
    student_id: str,
    transaction_type: CreditTransactionType,
    amount: int,
    balance_after: int,
    source_type: CreditTransactionSource,
    source_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> CreditTransaction:
    entry = CreditTransaction(
        student_id=student_id,
        transaction_type=transaction_type.value,
        amount=int(amount),
        balance_after=int(balance_after),
        source_type=source_type.value,
        source_id=source_id,
        description=description,
        metadata_json=metadata,
    )
    db.add(entry)
    await db.flush()
    return entry


async def apply_credit(
    student_id: str,
    db: AsyncSession,
    *,
    amount: int,
    source_type: CreditTransactionSource,
    source_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> CreditTransaction:
    """Increment the balance and append a CREDIT entry."""
    grant = int(amount)
    if grant <= 0:
        raise ValueError("credit amount must be greater than 0")

    result = await db.execute(
        update(Student)
        .where(Student.id == student_id)
        .values(credit_balance=Student.credit_balance + grant)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise StudentNotFound(f"Student not found: {student_id}")

    balance_after = await get_student_balance(student_id, db)
    return await _insert_transaction(
        db,
        student_id=student_id,
        transaction_type=CreditTransactionType.CREDIT,
        amount=grant,
        balance_after=balance_after,
        source_type=source_type,
        source_id=source_id,
        description=description,
        metadata=metadata,
    )


async def apply_debit(
    student_id: str,
    db: AsyncSession,
    *,
    amount: int,
    source_type: CreditTransactionSource,
    source_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> CreditTransaction:
    """Decrement the balance only if it stays non-negative, then append a DEBIT entry."""
    cost = int(amount)
    if cost <= 0:
        raise ValueError("debit amount must be greater than 0")

    result = await db.execute(
        update(Student)
        .where(Student.id == student_id, Student.credit_balance >= cost)
        .values(credit_balance=Student.credit_balance - cost)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        available = await get_student_balance(student_id, db)
        raise InsufficientCredits(required=cost, available=available)

    balance_after = await get_student_balance(student_id, db)
    return await _insert_transaction(
        db,
        student_id=student_id,
        transaction_type=CreditTransactionType.DEBIT,
        amount=cost,
        balance_after=balance_after,
        source_type=source_type,
        source_id=source_id,
        description=description,
        metadata=metadata,
    )


async def list_transactions(
    student_id: str,
    db: AsyncSession,
    *,
    limit: Optional[int] = None,
    newest_first: bool = True,
) -> List[CreditTransaction]:
    order = CreditTransaction.created_at.desc() if newest_first else CreditTransaction.created_at.asc()
    query = select(CreditTransaction).where(CreditTransaction.student_id == student_id).order_by(order)
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def verify_ledger(student_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Replay the ledger in causal order and compare it with the cached balance."""
    cached_balance = await get_student_balance(student_id, db)
    entries = await list_transactions(student_id, db, newest_first=False)

    running = 0
    first_mismatch: Optional[str] = None
    for entry in entries:
        running += entry.signed_amount
        if first_mismatch is None and running != entry.balance_after:
            first_mismatch = entry.id

    return {
        "consistent": first_mismatch is None and running == cached_balance,
        "transaction_count": len(entries),
        "ledger_balance": running,
        "cached_balance": cached_balance,
        "first_mismatch_id": first_mismatch,
    }


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "transaction_type": entry.transaction_type,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "source_type": entry.source_type,
        "source_id": entry.source_id,
        "description": entry.description,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_credit_summary(student_id: str, db: AsyncSession, *, limit: int = 30) -> Dict[str, Any]:
    balance = await get_student_balance(student_id, db)
    entries = await list_transactions(student_id, db, limit=limit)
    ledger = await verify_ledger(student_id, db)
    return {
        "student_id": student_id,
        "balance": balance,
        "costs": {
            "voice_minute": max(int(settings.BILLING_CREDITS_PER_MINUTE), 1),
        },
        "ledger_consistent": ledger["consistent"],
        "recent_transactions": [serialize_transaction(entry) for entry in entries],
    }
