# /flowbot/routes/public.py

from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from flowbot.config.settings import settings
from flowbot.services.cache_service import cache_service
from flowbot.services.db_service import db_service
from flowbot.utils.dependencies import verify_api_key

# Unauthenticated health endpoints; /metrics is behind the API key when one is set.

router = APIRouter()


@router.get("/")
async def root():
    return {
        "service": "flowbot",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Health Check")
async def health_check():
    """Reports MongoDB and Redis reachability; 503 when the database is down."""
    database = await db_service.health_check()
    cache = await cache_service.health_check()
    body = {
        "status": "healthy" if database and cache else ("degraded" if database else "unhealthy"),
        "services": {"database": "connected" if database else "error", "cache": "connected" if cache else "error"},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(body, status_code=200 if database else 503)


@router.get("/metrics", dependencies=[Depends(verify_api_key)])
async def metrics():
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
