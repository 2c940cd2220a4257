import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock, patch

import pytest

from routers import rate_limit
from routers.auth_scope import verify_shared_secret
from services.billing_metrics import BillingMetrics
from services.email import Mailer
from services.errors import SharedSecretInvalid, SignatureInvalid, WebhookNotConfigured
from services.session_token import create_session_token, decode_session_token
from services.stripe_webhook import StripeWebhookService


SECRET = "whsec_unit_test_secret"


def _sign(payload: str, secret: str = SECRET, timestamp: int = None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def test_metrics_snapshot_and_reset():
    metrics = BillingMetrics()
    metrics.record_request()
    metrics.record_success(12.0)
    metrics.record_request()
    metrics.record_success(8.0)
    metrics.record_request()
    metrics.insufficient_credit_events += 1

    snapshot = metrics.snapshot()
    assert snapshot["totalRequests"] == 3
    assert snapshot["successfulBillings"] == 2
    assert snapshot["totalMinutesBilled"] == 2
    assert snapshot["averageTransactionTime"] == 10.0
    assert snapshot["totalTransactionTime"] == 20.0
    assert snapshot["uptime"] >= 0
    assert metrics.success_rate == pytest.approx(66.67)

    metrics.reset()
    assert metrics.snapshot()["totalRequests"] == 0
    assert metrics.snapshot()["lastProcessedAt"] is None
    assert metrics.success_rate is None
    assert metrics.average_transaction_time_ms == 0.0


def test_verify_signature_accepts_valid_header():
    service = StripeWebhookService(db=None, webhook_secret=SECRET)
    payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {"id": "cs_1"}}})

    event = service.verify_signature(payload.encode("utf-8"), _sign(payload))

    assert event["id"] == "evt_1"
    assert event["data"]["object"]["id"] == "cs_1"


def test_verify_signature_rejects_stale_and_wrong_signatures():
    service = StripeWebhookService(db=None, webhook_secret=SECRET)
    payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed"})

    with pytest.raises(SignatureInvalid):
        service.verify_signature(payload.encode("utf-8"), _sign(payload, secret="whsec_other"))
    with pytest.raises(SignatureInvalid):
        service.verify_signature(payload.encode("utf-8"), _sign(payload, timestamp=int(time.time()) - 3600))
    with pytest.raises(SignatureInvalid):
        service.verify_signature(payload.encode("utf-8"), "garbage")


def test_verify_signature_rejects_non_event_payload():
    service = StripeWebhookService(db=None, webhook_secret=SECRET)
    payload = json.dumps({"hello": "world"})
    with pytest.raises(SignatureInvalid):
        service.verify_signature(payload.encode("utf-8"), _sign(payload))


def test_verify_signature_requires_configured_secret():
    service = StripeWebhookService(db=None, webhook_secret="")
    with pytest.raises(WebhookNotConfigured):
        service.verify_signature(b"{}", "t=1,v1=abc")


def test_shared_secret_comparison():
    verify_shared_secret("expected-secret", "expected-secret")
    with pytest.raises(SharedSecretInvalid):
        verify_shared_secret("wrong", "expected-secret")
    with pytest.raises(SharedSecretInvalid):
        verify_shared_secret(None, "expected-secret")
    with pytest.raises(SharedSecretInvalid):
        verify_shared_secret("anything", "")


def test_session_token_round_trip_and_rejection():
    issued = create_session_token("user-9", "nine@example.com")
    claims = decode_session_token(issued["token"])
    assert claims.user_id == "user-9"
    assert claims.email == "nine@example.com"
    assert claims.expires_at == issued["expires_at"]

    with pytest.raises(ValueError):
        decode_session_token(issued["token"] + "tampered")


@pytest.mark.asyncio
async def test_mailer_skips_when_smtp_not_configured():
    mailer = Mailer(host="", port=587)
    with patch("services.email.smtplib.SMTP") as smtp:
        sent = await mailer.send_credit_purchase_confirmation(
            "student@example.com", "Sam Student", 100, 1999, "Value Pack"
        )
    assert sent is False
    smtp.assert_not_called()


@pytest.mark.asyncio
async def test_mailer_sends_purchase_confirmation():
    mailer = Mailer(host="smtp.example.com", port=587, username="user", password="pass", from_email="billing@example.com")
    server = MagicMock()
    with patch("services.email.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value = server
        sent = await mailer.send_credit_purchase_confirmation(
            "student@example.com", "Sam Student", 100, 1999, "Value Pack"
        )

    assert sent is True
    smtp.assert_called_once_with("smtp.example.com", 587, timeout=10)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("user", "pass")
    message = server.send_message.call_args.args[0]
    assert message["To"] == "student@example.com"
    assert "100 credits" in message["Subject"]
    assert "19.99 GBP" in message.get_payload()[0].get_payload()
    assert "Each credit covers one minute of voice practice." in message.get_payload()[0].get_payload()


@pytest.mark.asyncio
async def test_mailer_describes_per_minute_cost():
    mailer = Mailer(host="smtp.example.com", port=587, use_tls=False, credits_per_minute=2)
    server = MagicMock()
    with patch("services.email.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value = server
        await mailer.send_credit_purchase_confirmation("student@example.com", "Sam Student", 100, 1999, "Value Pack")

    body = server.send_message.call_args.args[0].get_payload()[0].get_payload()
    assert "Each minute of voice practice uses 2 credits." in body
    assert "Each credit covers one minute" not in body
    server.starttls.assert_not_called()


@pytest.mark.asyncio
async def test_local_quota_blocks_after_limit_and_resets():
    rate_limit._local_counters.clear()
    results = [await rate_limit._consume_local_quota("billing:rate:test:ip:1", 2, 60) for _ in range(3)]

    assert [allowed for allowed, _ in results] == [True, True, False]
    assert 1 <= results[-1][1] <= 60

    count, _ = rate_limit._local_counters["billing:rate:test:ip:1"]
    rate_limit._local_counters["billing:rate:test:ip:1"] = (count, time.time() - 1)
    allowed, _ = await rate_limit._consume_local_quota("billing:rate:test:ip:1", 2, 60)
    assert allowed is True
