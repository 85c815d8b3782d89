"""
Genova AI Gateway - FastAPI Backend
Question-answering gateway: request routing, credential pool, credit ledger and vouchers.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    gateway,
    sessions,
    api_keys,
    billing,
    vouchers,
    payments,
    admin,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Genova AI Gateway...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.OPENROUTER_API_KEY:
        print("⚠️ OPENROUTER_API_KEY is not set; premium mode will be unavailable.")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Genova AI Gateway",
    description="Routes quiz questions to upstream models and settles credits, balance and vouchers",
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
app.include_router(gateway.router, prefix="/gateway", tags=["Gateway"])
app.include_router(sessions.router, prefix="/sessions", tags=["Sessions"])
app.include_router(api_keys.router, prefix="/api-keys", tags=["API Keys"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(vouchers.router, prefix="/vouchers", tags=["Vouchers"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Genova AI Gateway",
        "version": "0.1.0",
        "status": "running"
    }
