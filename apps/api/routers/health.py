"""
Health and readiness probes.
"""

import os
from pathlib import Path
from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import ai_provider_configured, settings, validate_security_settings
from database import engine

router = APIRouter()


def _upload_dir_writable() -> bool:
    """The upload root, or the directory it will be created in, accepts writes."""
    path = Path(settings.UPLOAD_DIR)
    target = path if path.exists() else path.parent
    return target.is_dir() and os.access(target, os.W_OK)


def _missing_configuration() -> List[str]:
    missing = []
    if not ai_provider_configured():
        missing.append("OPENROUTER_API_KEY")
    try:
        validate_security_settings()
    except ValueError:
        missing.append("JWT_SECRET")
    if not _upload_dir_writable():
        missing.append("UPLOAD_DIR")
    return missing


@router.get("/health")
async def health_check():
    """
    Overall system health: database, Redis, AI provider and upload storage.
    Any failing dependency marks the service degraded.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "ai_provider": "configured" if ai_provider_configured() else "passthrough",
        "storage": "writable" if _upload_dir_writable() else "unavailable",
    }
    if health_status["storage"] != "writable":
        health_status["status"] = "degraded"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        # Rate limiting falls back to in-process counters without Redis.
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready only when edits can reach a real provider with secure settings."""
    missing = _missing_configuration()
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
