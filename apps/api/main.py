"""
ShortsOS API - FastAPI Backend
Entitlements, metering and billing for the ShortsOS creator tools.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    accounts,
    credits,
    usage,
    entitlements,
    billing,
    webhooks,
    admin,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logging.basicConfig(
        level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print("🚀 Starting ShortsOS API...")
    validate_security_settings()
    if engine is None:
        print("⚠️ DATABASE_URL is not set; account endpoints will return configuration errors.")
    elif settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except (SQLAlchemyError, OSError) as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.STRIPE_WEBHOOK_SECRET:
        print("⚠️ STRIPE_WEBHOOK_SECRET is not set; Stripe webhooks will be rejected.")
    if not settings.RAZORPAY_WEBHOOK_SECRET:
        print("⚠️ RAZORPAY_WEBHOOK_SECRET is not set; Razorpay webhooks will be rejected.")
    yield
    # Shutdown
    if engine is not None:
        await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="ShortsOS API",
    description="Plan entitlements, credit metering and payment reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

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
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(accounts.router, prefix="/accounts", tags=["Accounts"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(usage.router, prefix="/usage", tags=["Usage"])
app.include_router(entitlements.router, prefix="/entitlements", tags=["Entitlements"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "ShortsOS API",
        "version": "0.1.0",
        "status": "running"
    }
