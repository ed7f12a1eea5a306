"""
TradeIt Credits - FastAPI Backend
Usage metering and idempotent credit ledger for search and AI enrichment.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import auth, billing, enrichment, health, search
from services.credit_errors import CreditError
from services.fingerprint_dedup import purge_stale_search_sessions


async def _periodic_search_session_cleanup() -> None:
    interval_minutes = max(int(settings.SEARCH_SESSION_CLEANUP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            async with async_session_maker() as db:
                purged = await purge_stale_search_sessions(db, settings.SEARCH_SESSION_RETENTION_HOURS)
            if purged:
                print(f"🧹 Search session cleanup: purged={purged}")
        except Exception as exc:
            print(f"⚠️ Search session cleanup tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting TradeIt Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    cleanup_task = None
    if int(settings.SEARCH_SESSION_CLEANUP_INTERVAL_MINUTES) > 0:
        cleanup_task = asyncio.create_task(_periodic_search_session_cleanup())
        print(
            "📅 Search session cleanup loop enabled "
            f"(every {int(settings.SEARCH_SESSION_CLEANUP_INTERVAL_MINUTES)} min, "
            f"retention {int(settings.SEARCH_SESSION_RETENTION_HOURS)} h)."
        )
    yield
    # Shutdown
    if cleanup_task is not None:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="TradeIt Credits API",
    description="Metered search and AI enrichment billed through an idempotent credit ledger",
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


@app.exception_handler(CreditError)
async def credit_error_handler(request: Request, exc: CreditError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(search.router, prefix="/search", tags=["Search"])
app.include_router(enrichment.router, prefix="/enrichment", tags=["Enrichment"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "TradeIt Credits API",
        "version": "0.1.0",
        "status": "running"
    }
