"""Budgetline API: main entry point."""

from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from budgetline.config import settings
from budgetline.core.database import engine, get_db
from budgetline.core.middleware import RequestLoggingMiddleware

logger = structlog.get_logger()

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    logger.info("Starting Budgetline API", env=settings.app_env)
    yield
    logger.info("Shutting down Budgetline API")
    await engine.dispose()


app = FastAPI(
    title="Budgetline API",
    description="Transaction categorisation: rules, similar transactions and AI fallback",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    redirect_slashes=False,
)

# ── Middleware ─────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


# ── Health Check ──────────────────────────────────
@app.get("/health", tags=["system"])
async def health_check():
    """Liveness probe: always returns healthy if the process is running."""
    return {"status": "healthy", "version": VERSION}


@app.get("/ready", tags=["system"])
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness probe: checks DB connectivity."""
    checks = {"database": "unknown", "api": "ok"}
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        checks["database"] = f"error: {e}"
        return {"status": "degraded", "checks": checks}

    return {"status": "ready", "checks": checks}


# ── API Routes ────────────────────────────────────
from budgetline.api.v1 import categorisation, corrections, rules  # noqa: E402

app.include_router(categorisation.router, prefix="/api/v1/categorisation", tags=["categorisation"])
app.include_router(rules.router, prefix="/api/v1/rules", tags=["rules"])
app.include_router(corrections.router, prefix="/api/v1/corrections", tags=["corrections"])
