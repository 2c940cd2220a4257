"""Models package."""

from .user import User
from .student import Student
from .credit_package import CreditPackage
from .credit_transaction import CreditTransaction, CreditTransactionSource, CreditTransactionType
from .stripe_checkout_session import CheckoutSessionStatus, StripeCheckoutSession
from .stripe_webhook_event import StripeWebhookEvent
from .simulation_attempt import SimulationAttempt
from .voice_minute_charge import VoiceMinuteCharge
