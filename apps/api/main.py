"""
Practice Credits Billing API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    webhooks,
    billing,
    payments,
    credit_packages,
)
from services.billing_metrics import BillingMetrics
from services.email import Mailer
from services.errors import BillingError
from services.stripe_checkout import StripeGateway


logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Practice Credits Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.STRIPE_WEBHOOK_SECRET:
        print("⚠️ STRIPE_WEBHOOK_SECRET is not set; Stripe webhooks will be rejected.")
    if not app.state.mailer.configured:
        print("⚠️ SMTP is not configured; purchase confirmation emails are disabled.")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Practice Credits Billing API",
    description="Credit purchases through Stripe and per-minute billing of voice practice sessions",
    version="0.1.0",
    lifespan=lifespan,
)

# Shared process state; the test transport does not run the lifespan.
app.state.billing_metrics = BillingMetrics()
app.state.mailer = Mailer.from_settings(settings)
app.state.stripe_gateway = StripeGateway(settings.STRIPE_SECRET_KEY)


@app.exception_handler(BillingError)
async def billing_error_handler(_: Request, exc: BillingError):
    """Domain errors that escape a router map to their own status code."""
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(credit_packages.router, prefix="/credit-packages", tags=["Credit Packages"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Practice Credits Billing API",
        "version": "0.1.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT, log_level=settings.LOG_LEVEL.lower())
