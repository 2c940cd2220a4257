"""Billing domain errors shared by services and routers.

``status_code`` is the HTTP status the API answers with when one of these
reaches the app-level handler in ``main.py``.
"""

from __future__ import annotations


class BillingError(RuntimeError):
    """Base class for billing domain failures."""

    status_code = 400


class SignatureInvalid(BillingError):
    """Stripe signature header did not verify against the raw body."""


class WebhookNotConfigured(BillingError):
    """STRIPE_WEBHOOK_SECRET is missing; not retryable."""

    status_code = 500


class StripeNotConfigured(BillingError):
    """STRIPE_SECRET_KEY is missing."""

    status_code = 503


class SharedSecretInvalid(BillingError):
    """Missing or wrong x-internal-secret header on a service-to-service call."""

    status_code = 401


class StudentNotFound(BillingError):
    status_code = 404


class CreditPackageNotFound(BillingError):
    status_code = 404


class CreditPackageInactive(BillingError):
    pass


class DuplicateCreditPackage(BillingError):
    status_code = 409


class CheckoutSessionNotFound(BillingError):
    status_code = 404


class InvalidSessionState(BillingError):
    """Checkout session is in a state that forbids the requested transition."""

    status_code = 409


class ConversationConflict(BillingError):
    """The conversation id is already bound to a different simulation attempt."""

    status_code = 409


class InsufficientCredits(BillingError):
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}.")
        self.required = required
        self.available = available
