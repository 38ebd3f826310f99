# /convoflow/routes/public.py

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from convoflow.config.settings import settings
from convoflow.services.db_service import db_service
from convoflow.services.flow_service import redis_client
from convoflow.utils.dependencies import verify_metrics_access

# Health probes and the Prometheus endpoint. /metrics is protected by an API
# key when one is configured.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Convoflow flow engine",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Readiness probe checking MongoDB and, when enabled, Redis."""
    if not await db_service.health_check():
        raise HTTPException(status_code=503, detail="Service not ready: database unavailable")
    if redis_client is not None:
        try:
            await redis_client.ping()
        except RedisError as e:
            raise HTTPException(status_code=503, detail=f"Service not ready: {e}")
    return {"status": "ready"}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
