"""
PhotoX - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    edits,
    history,
    subscription,
)
from services.blob_storage import UPLOADS_URL_PREFIX
from services.edits import recover_stalled_edits
from services.errors import PhotoEditError, RateLimitedError
from services.subscriptions import expire_lapsed_subscriptions


async def _run_maintenance() -> None:
    recovered = await recover_stalled_edits()
    if recovered:
        print(f"♻️ Recovered {recovered} stalled edits.")
    async with async_session_maker() as db:
        expired = await expire_lapsed_subscriptions(db)
    if expired:
        print(f"📆 Expired {expired} lapsed subscriptions.")


async def _periodic_maintenance() -> None:
    interval_minutes = max(int(settings.MAINTENANCE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            await _run_maintenance()
        except Exception as exc:
            print(f"⚠️ Maintenance tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting PhotoX API...")
    validate_security_settings()
    Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        await _run_maintenance()
    except Exception as exc:
        print(f"⚠️ Startup maintenance skipped: {exc}")
    maintenance_task = None
    if int(settings.MAINTENANCE_INTERVAL_MINUTES) > 0:
        maintenance_task = asyncio.create_task(_periodic_maintenance())
        print(f"📅 Maintenance loop enabled (every {int(settings.MAINTENANCE_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    if maintenance_task is not None:
        maintenance_task.cancel()
        try:
            await maintenance_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="PhotoX API",
    description="AI photo editing with credit-metered access and PRO subscriptions",
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


@app.exception_handler(PhotoEditError)
async def photo_edit_error_handler(request: Request, exc: PhotoEditError):
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(edits.router, prefix="/edits", tags=["Edits"])
app.include_router(history.router, prefix="/history", tags=["History"])
app.include_router(subscription.router, prefix="/subscription", tags=["Subscription"])

app.mount(
    UPLOADS_URL_PREFIX,
    StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False),
    name="uploads",
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "PhotoX API",
        "version": "0.1.0",
        "status": "running"
    }
