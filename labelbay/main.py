"""
LabelBay API
FastAPI application entry point

- Rate limiting with SlowAPI
- Domain errors mapped to status codes, unexpected errors sanitized
- Background reconciliation sweep with heartbeat for the health endpoint
- Health endpoint with DB ping
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from labelbay.api.routes import account, addresses, payment_methods, rates, shipments
from labelbay.core.config import settings
from labelbay.core.database import AsyncSessionLocal
from labelbay.core.error_handler import ErrorSanitizationMiddleware, labelbay_error_handler
from labelbay.core.exceptions import LabelBayError
from labelbay.core.rate_limit import limiter, rate_limit_exceeded_handler
from labelbay.services.purchase_service import PurchaseService

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_reconcile_task: Optional[asyncio.Task] = None
_reconcile_heartbeat: dict = {
    "last_run": None,
    "last_success": None,
    "repaired": 0,
    "unresolved": 0,
    "errors": 0,
}


# ============== RECONCILIATION SCHEDULER ==============

async def run_reconciliation():
    """Sweep flagged shipments once and update heartbeat metrics."""
    _reconcile_heartbeat["last_run"] = datetime.now(timezone.utc).isoformat()

    try:
        report = await PurchaseService().reconcile(limit=settings.RECONCILE_BATCH_SIZE)
        _reconcile_heartbeat["last_success"] = datetime.now(timezone.utc).isoformat()
        _reconcile_heartbeat["repaired"] += report["repaired"]
        _reconcile_heartbeat["unresolved"] = report["unresolved"]
    except (LabelBayError, SQLAlchemyError) as e:
        _reconcile_heartbeat["errors"] += 1
        logger.error(f"[RECONCILE] sweep failed: {e}")


async def reconcile_scheduler():
    """Runs the sweep at the configured interval until cancelled."""
    interval_seconds = settings.RECONCILE_INTERVAL_MINUTES * 60
    logger.info(f"Reconciliation scheduler started (interval: {settings.RECONCILE_INTERVAL_MINUTES} minutes)")

    while True:
        await run_reconciliation()
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _reconcile_task

    if settings.RECONCILE_SCHEDULER_ENABLED:
        _reconcile_task = asyncio.create_task(reconcile_scheduler())
        logger.info("Reconciliation scheduler ENABLED")
    else:
        logger.info("Reconciliation scheduler DISABLED via config")

    yield

    if _reconcile_task and not _reconcile_task.done():
        _reconcile_task.cancel()
        try:
            await _reconcile_task
        except asyncio.CancelledError:
            logger.info("Reconciliation scheduler cancelled")


app = FastAPI(
    lifespan=lifespan,
    title=f"{settings.APP_NAME} API",
    description="Prepaid shipping labels: multi-provider rates, account balance and label purchase.",
    version="1.0.0",
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Domain errors -> status codes
app.add_exception_handler(LabelBayError, labelbay_error_handler)

# Error sanitization (catches unhandled exceptions)
app.add_middleware(ErrorSanitizationMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rates.router, prefix="/api")
app.include_router(shipments.router, prefix="/api")
app.include_router(account.router, prefix="/api")
app.include_router(addresses.router, prefix="/api")
app.include_router(payment_methods.router, prefix="/api")


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": f"{settings.APP_NAME} API",
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check with DB ping and reconciliation heartbeat. 503 if the database is unreachable."""
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "reconciliation": _reconcile_heartbeat,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except (SQLAlchemyError, OSError) as e:
        health_status["database"] = f"error: {type(e).__name__}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
