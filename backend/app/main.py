"""Campus Ledger — FastAPI Application."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from datetime import date
import logging

from app.config import settings
from app.database import async_engine, AsyncSessionLocal
from app.errors import register_exception_handlers
from app.services.audit_service import get_audit_writer, system_event

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def run_period_close_sweep():
    """Reconcile and lock open periods whose grace window has passed."""
    from app.services.reconciliation_service import run_close_sweep

    system_event("system.scheduler.period_close_sweep", {"status": "started"})
    try:
        async with AsyncSessionLocal() as db:
            locked = await run_close_sweep(db, date.today(), settings.PERIOD_CLOSE_GRACE_DAYS)
            await db.commit()
        logger.info(f"Period close sweep locked: {locked}")
        system_event("system.scheduler.period_close_sweep", {
            "status": "completed", "locked": locked,
        })
    except Exception as e:
        logger.exception("Period close sweep failed")
        system_event("system.scheduler.period_close_sweep", {
            "status": "failed", "error": str(e),
        })


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Campus Ledger API...")
    system_event("system.startup")

    # Verify DB connection
    try:
        async with async_engine.begin() as conn:
            await conn.exec_driver_sql("SELECT 1")
        logger.info("Database connection verified")
    except Exception as e:
        logger.error(f"Database connection failed: {e}")

    if settings.PERIOD_CLOSE_SWEEP_ENABLED:
        scheduler.add_job(
            run_period_close_sweep,
            "interval",
            hours=settings.PERIOD_CLOSE_SWEEP_HOURS,
            id="period_close_sweep",
        )
        scheduler.start()
        logger.info("Scheduled jobs started (period close sweep)")

    logger.info("Campus Ledger API started successfully")
    yield

    # Shutdown
    system_event("system.shutdown")
    if scheduler.running:
        scheduler.shutdown()
    await async_engine.dispose()
    logger.info("Campus Ledger API shut down")


app = FastAPI(
    title="Campus Ledger",
    description="General Ledger posting and subledger reconciliation for the school ERP",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Read-access audit middleware for sensitive endpoints
from app.middleware.audit_middleware import AuditReadAccessMiddleware

LEDGER_SENSITIVE_PREFIXES = [
    "/api/finance/student-ledger/",
    "/api/finance/ar-aging",
    "/api/gl/trial-balance",
]
app.add_middleware(
    AuditReadAccessMiddleware,
    writer=get_audit_writer(),
    prefixes=LEDGER_SENSITIVE_PREFIXES,
)

register_exception_handlers(app)

# Import and register routers
from app.routes import ap, ar, fiscal, gl

app.include_router(gl.router)
app.include_router(fiscal.router)
app.include_router(ar.router)
app.include_router(ap.router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "Campus Ledger API", "version": "1.0.0"}
