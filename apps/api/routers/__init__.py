"""Routers package."""

from . import (
    health,
    webhooks,
    billing,
    payments,
    credit_packages,
)
