from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.future import select

from main import app
from models.credit_package import CreditPackage
from models.stripe_checkout_session import StripeCheckoutSession
from models.student import Student
from services.session_token import create_session_token
from services.stripe_checkout import StripeGateway


def _auth(student):
    return {"Authorization": f"Bearer {create_session_token(student.user_id)['token']}"}


@pytest.fixture
def stripe_gateway():
    previous = app.state.stripe_gateway
    gateway = MagicMock()
    gateway.customer_exists = AsyncMock(return_value=True)
    gateway.create_customer = AsyncMock(return_value={"id": "cus_new"})
    gateway.create_checkout_session = AsyncMock(
        return_value={"id": "cs_test_new", "url": "https://checkout.stripe.com/c/pay/cs_test_new"}
    )
    app.state.stripe_gateway = gateway
    yield gateway
    app.state.stripe_gateway = previous


@pytest_asyncio.fixture
async def packages(billing_env):
    _, session_maker = billing_env
    async with session_maker() as session:
        active = CreditPackage(name="Starter", description="60 minutes of practice", credits=60, price_in_cents=999)
        retired = CreditPackage(name="Legacy", credits=10, price_in_cents=199, is_active=False)
        session.add_all([active, retired])
        await session.commit()
        return {"active": active, "retired": retired}


@pytest.mark.asyncio
async def test_credit_checkout_creates_pending_session(billing_env, seed_student, packages, stripe_gateway):
    client, session_maker = billing_env
    student = await seed_student(0)

    response = await client.post(
        "/payments/credit-checkout",
        json={"package_id": packages["active"].id},
        headers=_auth(student),
    )

    assert response.status_code == 201
    payload = response.json()
    assert payload["sessionId"] == "cs_test_new"
    assert payload["sessionUrl"].startswith("https://checkout.stripe.com/")
    assert payload["amount"] == 999
    assert payload["credits"] == 60
    assert payload["expiresAt"]

    stripe_gateway.create_customer.assert_awaited_once()
    params = stripe_gateway.create_checkout_session.await_args.kwargs
    assert params["mode"] == "payment"
    assert params["customer"] == "cus_new"
    assert params["metadata"] == {
        "studentId": student.id,
        "creditPackageId": packages["active"].id,
        "credits": "60",
    }
    assert params["line_items"][0]["price_data"]["currency"] == "gbp"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 999

    async with session_maker() as session:
        saved = await session.execute(
            select(StripeCheckoutSession).where(StripeCheckoutSession.session_id == "cs_test_new")
        )
        checkout = saved.scalar_one()
        assert checkout.status == "PENDING"
        assert checkout.credits_quantity == 60
        assert checkout.student_id == student.id
        refreshed = await session.get(Student, student.id)
        assert refreshed.stripe_customer_id == "cus_new"


@pytest.mark.asyncio
async def test_stale_stripe_customer_is_replaced(billing_env, seed_student, packages, stripe_gateway):
    client, session_maker = billing_env
    student = await seed_student(0)
    async with session_maker() as session:
        row = await session.get(Student, student.id)
        row.stripe_customer_id = "cus_from_test_mode"
        await session.commit()
    stripe_gateway.customer_exists.return_value = False

    response = await client.post(
        "/payments/credit-checkout",
        json={"package_id": packages["active"].id},
        headers=_auth(student),
    )

    assert response.status_code == 201
    stripe_gateway.customer_exists.assert_awaited_once_with("cus_from_test_mode")
    stripe_gateway.create_customer.assert_awaited_once()
    async with session_maker() as session:
        assert (await session.get(Student, student.id)).stripe_customer_id == "cus_new"


@pytest.mark.asyncio
async def test_existing_customer_is_reused(billing_env, seed_student, packages, stripe_gateway):
    client, session_maker = billing_env
    student = await seed_student(0)
    async with session_maker() as session:
        row = await session.get(Student, student.id)
        row.stripe_customer_id = "cus_existing"
        await session.commit()

    response = await client.post(
        "/payments/credit-checkout",
        json={"package_id": packages["active"].id},
        headers=_auth(student),
    )

    assert response.status_code == 201
    stripe_gateway.create_customer.assert_not_awaited()
    assert stripe_gateway.create_checkout_session.await_args.kwargs["customer"] == "cus_existing"


@pytest.mark.asyncio
async def test_checkout_rejects_inactive_and_unknown_packages(billing_env, seed_student, packages, stripe_gateway):
    client, _ = billing_env
    student = await seed_student(0)

    inactive = await client.post(
        "/payments/credit-checkout",
        json={"package_id": packages["retired"].id},
        headers=_auth(student),
    )
    unknown = await client.post(
        "/payments/credit-checkout",
        json={"package_id": "no-such-package"},
        headers=_auth(student),
    )

    assert inactive.status_code == 400
    assert inactive.json() == {"detail": "This credit package is no longer available"}
    assert unknown.status_code == 404
    assert unknown.json() == {"detail": "Credit package not found"}
    stripe_gateway.create_checkout_session.assert_not_awaited()


@pytest.mark.asyncio
async def test_checkout_without_stripe_key_returns_503(billing_env, seed_student, packages):
    client, _ = billing_env
    student = await seed_student(0)
    previous = app.state.stripe_gateway
    app.state.stripe_gateway = StripeGateway("")
    try:
        response = await client.post(
            "/payments/credit-checkout",
            json={"package_id": packages["active"].id},
            headers=_auth(student),
        )
    finally:
        app.state.stripe_gateway = previous

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_checkout_requires_student_session(billing_env, packages, stripe_gateway):
    client, _ = billing_env
    response = await client.post("/payments/credit-checkout", json={"package_id": packages["active"].id})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_checkout_status_is_scoped_to_owner(billing_env, seed_student, seed_checkout, stripe_gateway):
    client, _ = billing_env
    owner = await seed_student(0)
    other = await seed_student(0)
    checkout = await seed_checkout(owner.id, credits=30, price_in_cents=499)

    own = await client.get(f"/payments/checkout-status/{checkout.session_id}", headers=_auth(owner))
    foreign = await client.get(f"/payments/checkout-status/{checkout.session_id}", headers=_auth(other))
    missing = await client.get("/payments/checkout-status/cs_missing", headers=_auth(owner))

    assert own.status_code == 200
    assert own.json()["status"] == "PENDING"
    assert own.json()["creditsQuantity"] == 30
    assert own.json()["package"]["credits"] == 30
    assert foreign.status_code == 404
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_checkout_sessions_lists_only_own_sessions(billing_env, seed_student, seed_checkout, stripe_gateway):
    client, _ = billing_env
    owner = await seed_student(0)
    other = await seed_student(0)
    await seed_checkout(owner.id, session_id="cs_owner_1")
    await seed_checkout(owner.id, session_id="cs_owner_2")
    await seed_checkout(other.id, session_id="cs_other")

    response = await client.get("/payments/checkout-sessions", headers=_auth(owner))

    assert response.status_code == 200
    session_ids = {item["sessionId"] for item in response.json()["sessions"]}
    assert session_ids == {"cs_owner_1", "cs_owner_2"}
