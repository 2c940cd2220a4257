"""Per-minute credit billing for voice practice sessions.

The voice agent calls back once per elapsed minute and once when the session
ends. Each ``(conversation_id, minute)`` pair is charged at most once: a row in
``voice_minute_charges`` is inserted in the same transaction as the debit, so a
retried delivery hits the unique constraint instead of billing twice.
"""

from __future__ import annotations

import enum
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import Settings
from models.credit_transaction import CreditTransactionSource
from models.simulation_attempt import SimulationAttempt
from models.student import Student
from models.voice_minute_charge import VoiceMinuteCharge
from services.billing_metrics import BillingMetrics
from services.credits import apply_debit, get_student_balance
from services.errors import ConversationConflict, InsufficientCredits

logger = logging.getLogger(__name__)

ADMIN_UNLIMITED_CREDITS = 999999


class BillingStatus(str, enum.Enum):
    CONTINUE = "continue"
    WARNING = "warning"
    TERMINATE = "terminate"
    ERROR = "error"


class ChargeOutcome(str, enum.Enum):
    CHARGED = "charged"
    DUPLICATE = "duplicate"
    INSUFFICIENT = "insufficient"


@dataclass
class AttemptContext:
    """Plain snapshot of the attempt so nothing depends on ORM state after a rollback."""

    attempt_id: str
    student_id: str
    conversation_id: str
    minutes_billed: int
    billing_terminated: bool
    is_admin: bool


def billable_minutes(total_minutes: int, total_seconds: Optional[int] = None, minute_seconds: int = 60) -> int:
    """Whole billable minutes for a session; a started minute counts as a full one."""
    minutes = max(int(total_minutes), 0)
    if total_seconds is not None and int(total_seconds) > 0:
        minutes = max(minutes, math.ceil(int(total_seconds) / max(minute_seconds, 1)))
    return minutes


class VoiceBillingService:
    def __init__(
        self,
        db: AsyncSession,
        metrics: BillingMetrics,
        *,
        credits_per_minute: int = 1,
        warning_threshold: int = 2,
        grace_period_seconds: int = 60,
        minute_duration_seconds: int = 60,
    ):
        self.db = db
        self.metrics = metrics
        self.credits_per_minute = max(int(credits_per_minute), 1)
        self.warning_threshold = max(int(warning_threshold), 0)
        self.grace_period_seconds = max(int(grace_period_seconds), 0)
        self.minute_duration_seconds = max(int(minute_duration_seconds), 1)

    @classmethod
    def from_settings(cls, db: AsyncSession, metrics: BillingMetrics, settings: Settings) -> "VoiceBillingService":
        return cls(
            db,
            metrics,
            credits_per_minute=settings.BILLING_CREDITS_PER_MINUTE,
            warning_threshold=settings.BILLING_WARNING_THRESHOLD_CREDITS,
            grace_period_seconds=settings.BILLING_GRACE_PERIOD_SECONDS,
            minute_duration_seconds=settings.BILLING_MINUTE_DURATION_SECONDS,
        )

    async def _resolve_attempt(
        self,
        conversation_id: str,
        correlation_token: Optional[str],
    ) -> Optional[AttemptContext]:
        """Load the attempt and bind ``conversation_id`` to it on first use.

        Charges are keyed by conversation, so a conversation that already
        belongs to another attempt raises ``ConversationConflict``.
        """
        query = select(SimulationAttempt).options(
            selectinload(SimulationAttempt.student).selectinload(Student.user)
        )
        if correlation_token:
            query = query.where(SimulationAttempt.correlation_token == correlation_token)
        else:
            query = query.where(SimulationAttempt.conversation_id == conversation_id)
        result = await self.db.execute(query)
        attempt = result.scalar_one_or_none()
        if attempt is None:
            return None

        ctx = AttemptContext(
            attempt_id=attempt.id,
            student_id=attempt.student_id,
            conversation_id=attempt.conversation_id or conversation_id,
            minutes_billed=int(attempt.minutes_billed or 0),
            billing_terminated=bool(attempt.billing_terminated),
            is_admin=bool(attempt.student and attempt.student.user and attempt.student.user.is_admin),
        )

        if attempt.conversation_id is None:
            try:
                await self.db.execute(
                    update(SimulationAttempt)
                    .where(SimulationAttempt.id == ctx.attempt_id, SimulationAttempt.conversation_id.is_(None))
                    .values(conversation_id=conversation_id)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
            except IntegrityError as exc:
                await self.db.rollback()
                raise ConversationConflict(
                    f"Conversation {conversation_id} is already bound to another attempt"
                ) from exc
        elif attempt.conversation_id != conversation_id:
            logger.warning(
                "Conversation id differs from the one bound to the attempt",
                extra={"conversation_id": conversation_id, "bound_conversation_id": attempt.conversation_id},
            )

        return ctx

    async def _is_minute_charged(self, conversation_id: str, minute: int) -> bool:
        result = await self.db.execute(
            select(VoiceMinuteCharge.id).where(
                VoiceMinuteCharge.conversation_id == conversation_id,
                VoiceMinuteCharge.minute == minute,
            )
        )
        return result.scalar_one_or_none() is not None

    async def _mark_terminated(self, attempt_id: str) -> None:
        await self.db.execute(
            update(SimulationAttempt)
            .where(SimulationAttempt.id == attempt_id)
            .values(billing_terminated=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _charge_minute(self, ctx: AttemptContext, minute: int) -> Tuple[ChargeOutcome, Optional[int]]:
        """Charge one minute in a single transaction. Returns the outcome and balance after."""
        cost = 0 if ctx.is_admin else self.credits_per_minute
        balance_after: Optional[int] = None
        try:
            charge = VoiceMinuteCharge(
                conversation_id=ctx.conversation_id,
                minute=minute,
                attempt_id=ctx.attempt_id,
                credits_charged=cost,
            )
            self.db.add(charge)
            await self.db.flush()

            if cost:
                entry = await apply_debit(
                    ctx.student_id,
                    self.db,
                    amount=cost,
                    source_type=CreditTransactionSource.SIMULATION,
                    source_id=ctx.attempt_id,
                    description=f"Voice conversation minute {minute}",
                    metadata={"conversationId": ctx.conversation_id, "minute": minute},
                )
                charge.credit_transaction_id = entry.id
                balance_after = entry.balance_after

            await self.db.execute(
                update(SimulationAttempt)
                .where(SimulationAttempt.id == ctx.attempt_id, SimulationAttempt.minutes_billed < minute)
                .values(minutes_billed=minute, duration_seconds=minute * self.minute_duration_seconds)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return ChargeOutcome.DUPLICATE, None
        except InsufficientCredits:
            await self.db.rollback()
            return ChargeOutcome.INSUFFICIENT, None
        except Exception:
            await self.db.rollback()
            raise

        ctx.minutes_billed = max(ctx.minutes_billed, minute)
        return ChargeOutcome.CHARGED, balance_after

    def _response(
        self,
        status: BillingStatus,
        *,
        credits_remaining: int,
        minute: int,
        total_minutes_billed: int,
        should_terminate: bool,
        attempt_id: Optional[str] = None,
        message: Optional[str] = None,
        grace_period: bool = False,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": status.value,
            "creditsRemaining": int(credits_remaining),
            "minuteBilled": int(minute),
            "totalMinutesBilled": int(total_minutes_billed),
            "shouldTerminate": should_terminate,
        }
        if attempt_id:
            payload["attemptId"] = attempt_id
        if message:
            payload["message"] = message
        if grace_period:
            payload["gracePeriodSeconds"] = self.grace_period_seconds
        return payload

    async def _duplicate_response(self, ctx: AttemptContext, minute: int) -> Dict[str, Any]:
        self.metrics.duplicate_requests += 1
        balance = ADMIN_UNLIMITED_CREDITS if ctx.is_admin else await get_student_balance(ctx.student_id, self.db)
        logger.warning(
            "Minute already billed, returning idempotent response",
            extra={"attempt_id": ctx.attempt_id, "minute": minute, "minutes_billed": ctx.minutes_billed},
        )
        return self._response(
            BillingStatus.CONTINUE,
            credits_remaining=balance,
            minute=minute,
            total_minutes_billed=max(ctx.minutes_billed, minute),
            should_terminate=False,
            attempt_id=ctx.attempt_id,
            message="Already billed (idempotent response)",
        )

    async def _terminate_response(self, ctx: AttemptContext, minute: int, message: str) -> Dict[str, Any]:
        self.metrics.insufficient_credit_events += 1
        if not ctx.billing_terminated:
            await self._mark_terminated(ctx.attempt_id)
            ctx.billing_terminated = True
        balance = await get_student_balance(ctx.student_id, self.db)
        logger.warning(
            "Insufficient credits, instructing voice agent to terminate",
            extra={"attempt_id": ctx.attempt_id, "student_id": ctx.student_id, "balance": balance},
        )
        return self._response(
            BillingStatus.TERMINATE,
            credits_remaining=balance,
            minute=minute,
            total_minutes_billed=ctx.minutes_billed,
            should_terminate=True,
            attempt_id=ctx.attempt_id,
            message=message,
            grace_period=True,
        )

    async def handle_minute_billing(
        self,
        *,
        conversation_id: str,
        minute: int,
        correlation_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Decide whether the conversation may continue and debit the elapsed minute."""
        self.metrics.record_request()
        logger.info(
            "Processing billing request",
            extra={"conversation_id": conversation_id, "minute": minute},
        )

        try:
            ctx = await self._resolve_attempt(conversation_id, correlation_token)
        except ConversationConflict as exc:
            self.metrics.failed_billings += 1
            logger.error(str(exc), extra={"conversation_id": conversation_id})
            return self._response(
                BillingStatus.ERROR,
                credits_remaining=0,
                minute=minute,
                total_minutes_billed=0,
                should_terminate=True,
                message="Conversation is linked to a different session",
            )
        if ctx is None:
            self.metrics.failed_billings += 1
            logger.error(
                "No simulation attempt for billing request",
                extra={"conversation_id": conversation_id},
            )
            return self._response(
                BillingStatus.ERROR,
                credits_remaining=0,
                minute=minute,
                total_minutes_billed=0,
                should_terminate=True,
                message="Invalid correlation token - session not found",
            )

        if minute <= ctx.minutes_billed or await self._is_minute_charged(ctx.conversation_id, minute):
            return await self._duplicate_response(ctx, minute)

        if ctx.billing_terminated:
            return await self._terminate_response(ctx, minute, "Billing already terminated for this session")

        if minute > ctx.minutes_billed + 1:
            logger.warning(
                "Non-sequential minute billing detected",
                extra={"attempt_id": ctx.attempt_id, "minute": minute, "expected_minute": ctx.minutes_billed + 1},
            )

        if not ctx.is_admin:
            balance = await get_student_balance(ctx.student_id, self.db)
            if balance < self.credits_per_minute:
                return await self._terminate_response(ctx, minute, "Insufficient credits to continue")

        started = time.perf_counter()
        outcome, balance_after = await self._charge_minute(ctx, minute)
        elapsed_ms = (time.perf_counter() - started) * 1000

        if outcome is ChargeOutcome.DUPLICATE:
            return await self._duplicate_response(ctx, minute)
        if outcome is ChargeOutcome.INSUFFICIENT:
            return await self._terminate_response(ctx, minute, "Insufficient credits")

        self.metrics.record_success(elapsed_ms)

        if ctx.is_admin:
            return self._response(
                BillingStatus.CONTINUE,
                credits_remaining=ADMIN_UNLIMITED_CREDITS,
                minute=minute,
                total_minutes_billed=ctx.minutes_billed,
                should_terminate=False,
                attempt_id=ctx.attempt_id,
                message="Admin user - unlimited usage",
            )

        logger.info(
            "Minute billed",
            extra={
                "attempt_id": ctx.attempt_id,
                "minute": minute,
                "balance_after": balance_after,
                "transaction_ms": round(elapsed_ms, 2),
            },
        )

        if balance_after < self.credits_per_minute:
            return self._response(
                BillingStatus.TERMINATE,
                credits_remaining=balance_after,
                minute=minute,
                total_minutes_billed=ctx.minutes_billed,
                should_terminate=True,
                attempt_id=ctx.attempt_id,
                message="Last credit used - conversation will end",
                grace_period=True,
            )
        if balance_after <= self.warning_threshold:
            return self._response(
                BillingStatus.WARNING,
                credits_remaining=balance_after,
                minute=minute,
                total_minutes_billed=ctx.minutes_billed,
                should_terminate=False,
                attempt_id=ctx.attempt_id,
                message=f"Low credits warning: {balance_after} credit(s) remaining",
            )
        return self._response(
            BillingStatus.CONTINUE,
            credits_remaining=balance_after,
            minute=minute,
            total_minutes_billed=ctx.minutes_billed,
            should_terminate=False,
            attempt_id=ctx.attempt_id,
        )

    async def handle_session_end(
        self,
        *,
        conversation_id: str,
        total_minutes: int,
        correlation_token: Optional[str] = None,
        total_seconds: Optional[int] = None,
        ended_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Reconcile the reported duration with the minutes already billed and close the attempt."""
        logger.info(
            "Processing session end",
            extra={"conversation_id": conversation_id, "total_minutes": total_minutes},
        )

        try:
            ctx = await self._resolve_attempt(conversation_id, correlation_token)
        except ConversationConflict as exc:
            logger.error(str(exc), extra={"conversation_id": conversation_id})
            return {"success": False, "totalMinutesBilled": 0, "attemptFound": True, "message": str(exc)}
        if ctx is None:
            logger.warning("Session end for unknown attempt", extra={"conversation_id": conversation_id})
            return {"success": False, "totalMinutesBilled": 0, "attemptFound": False}

        final_minutes = billable_minutes(total_minutes, total_seconds, self.minute_duration_seconds)
        reconciled = 0
        unbilled = 0

        if ctx.billing_terminated:
            unbilled = max(final_minutes - ctx.minutes_billed, 0)
        else:
            for minute in range(ctx.minutes_billed + 1, final_minutes + 1):
                outcome, _ = await self._charge_minute(ctx, minute)
                if outcome is ChargeOutcome.INSUFFICIENT:
                    unbilled = final_minutes - minute + 1
                    await self._mark_terminated(ctx.attempt_id)
                    break
                if outcome is ChargeOutcome.CHARGED:
                    reconciled += 1
                ctx.minutes_billed = max(ctx.minutes_billed, minute)

        if reconciled:
            self.metrics.total_minutes_billed += reconciled
        if unbilled:
            logger.warning(
                "Session ended with minutes that could not be billed",
                extra={"attempt_id": ctx.attempt_id, "unbilled_minutes": unbilled},
            )

        closed_at = ended_at or datetime.now(timezone.utc)
        if closed_at.tzinfo is None:
            closed_at = closed_at.replace(tzinfo=timezone.utc)
        await self.db.execute(
            update(SimulationAttempt)
            .where(SimulationAttempt.id == ctx.attempt_id)
            .values(
                ended_at=closed_at,
                minutes_billed=ctx.minutes_billed,
                duration_seconds=ctx.minutes_billed * self.minute_duration_seconds,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        final_balance = (
            ADMIN_UNLIMITED_CREDITS if ctx.is_admin else await get_student_balance(ctx.student_id, self.db)
        )
        logger.info(
            "Session end processed",
            extra={
                "attempt_id": ctx.attempt_id,
                "total_minutes_billed": ctx.minutes_billed,
                "minutes_reconciled": reconciled,
                "final_balance": final_balance,
            },
        )
        return {
            "success": True,
            "totalMinutesBilled": ctx.minutes_billed,
            "attemptFound": True,
            "finalBalance": final_balance,
            "minutesReconciled": reconciled,
            "unbilledMinutes": unbilled,
        }
