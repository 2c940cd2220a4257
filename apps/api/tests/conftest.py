from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from models.credit_package import CreditPackage
from models.credit_transaction import CreditTransactionSource
from models.simulation_attempt import SimulationAttempt
from models.stripe_checkout_session import CheckoutSessionStatus, StripeCheckoutSession
from models.student import Student
from models.user import User
from routers import rate_limit
from services.billing_metrics import BillingMetrics
from services.credits import apply_credit


TEST_VOICE_SECRET = "test-voice-agent-shared-secret-0123456789"
TEST_WEBHOOK_SECRET = "whsec_test_webhook_signing_secret"
TEST_JWT_SECRET = "test-jwt-secret-for-student-sessions-0123"


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def billing_secrets(monkeypatch):
    monkeypatch.setattr(settings, "VOICE_AGENT_SHARED_SECRET", TEST_VOICE_SECRET)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "JWT_SECRET", TEST_JWT_SECRET)


@pytest.fixture(autouse=True)
def billing_metrics():
    previous = app.state.billing_metrics
    app.state.billing_metrics = BillingMetrics()
    yield app.state.billing_metrics
    app.state.billing_metrics = previous


class FakeMailer:
    configured = True

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    async def send_credit_purchase_confirmation(self, to_email, student_name, credits, amount_in_cents, package_name, currency="gbp"):
        if self.fail:
            raise ConnectionRefusedError("smtp down")
        self.sent.append(
            {
                "to": to_email,
                "name": student_name,
                "credits": credits,
                "amount_in_cents": amount_in_cents,
                "package": package_name,
                "currency": currency,
            }
        )
        return True


@pytest.fixture
def fake_mailer():
    previous = app.state.mailer
    mailer = FakeMailer()
    app.state.mailer = mailer
    yield mailer
    app.state.mailer = previous


@pytest_asyncio.fixture
async def billing_env(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest.fixture
def seed_student(billing_env):
    """Create a user and student. ``balance`` goes through the ledger unless ``raw_balance`` is set."""
    _, session_maker = billing_env
    counter = {"n": 0}

    async def _seed(
        balance: int = 0,
        *,
        is_admin: bool = False,
        raw_balance: Optional[int] = None,
    ) -> Student:
        counter["n"] += 1
        suffix = counter["n"]
        async with session_maker() as session:
            user = User(id=f"user-{suffix}", email=f"student{suffix}@example.com", name=f"Student {suffix}", is_admin=is_admin)
            student = Student(
                id=f"student-{suffix}",
                user_id=user.id,
                first_name="Student",
                last_name=str(suffix),
                credit_balance=raw_balance or 0,
            )
            session.add_all([user, student])
            await session.flush()
            if balance:
                await apply_credit(
                    student.id,
                    session,
                    amount=balance,
                    source_type=CreditTransactionSource.MANUAL,
                    description="Opening balance",
                )
            await session.commit()
            return student

    return _seed


@pytest.fixture
def seed_attempt(billing_env):
    _, session_maker = billing_env

    async def _seed(
        student_id: str,
        *,
        correlation_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
        minutes_billed: int = 0,
    ) -> SimulationAttempt:
        async with session_maker() as session:
            attempt = SimulationAttempt(
                student_id=student_id,
                simulation_id="sim-1",
                correlation_token=correlation_token,
                conversation_id=conversation_id,
                minutes_billed=minutes_billed,
            )
            session.add(attempt)
            await session.commit()
            return attempt

    return _seed


@pytest.fixture
def seed_checkout(billing_env):
    _, session_maker = billing_env
    counter = {"n": 0}

    async def _seed(
        student_id: str,
        *,
        credits: int = 100,
        price_in_cents: int = 1999,
        status: str = CheckoutSessionStatus.PENDING.value,
        session_id: Optional[str] = None,
    ) -> StripeCheckoutSession:
        counter["n"] += 1
        async with session_maker() as session:
            package = CreditPackage(
                name=f"Pack {counter['n']}",
                description="Practice credits",
                credits=credits,
                price_in_cents=price_in_cents,
            )
            session.add(package)
            await session.flush()
            checkout = StripeCheckoutSession(
                session_id=session_id or f"cs_test_{counter['n']}",
                student_id=student_id,
                credit_package_id=package.id,
                status=status,
                amount_in_cents=price_in_cents,
                credits_quantity=credits,
                currency="gbp",
            )
            session.add(checkout)
            await session.commit()
            return checkout

    return _seed

