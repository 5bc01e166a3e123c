"""
Health Endpoints
================

Probes for Docker/Kubernetes and load balancers, plus the detailed cache
report used by the monitoring page.
"""

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

# Will be set from main server
services = None

router = APIRouter(prefix="/health", tags=["health"])


def set_services(svc):
    """Set the service context (called from main server)."""
    global services
    services = svc


def _unavailable() -> JSONResponse:
    return JSONResponse({"status": "unhealthy", "error": "Services not initialized"}, status_code=503)


@router.get("/live")
async def liveness():
    """Process is up. Touches no dependency."""
    if not services:
        return {"status": "alive"}
    return services.health.check_liveness()


@router.get("/ready")
async def readiness():
    """Ready to serve traffic: 200 when ready, 503 otherwise."""
    if not services:
        return _unavailable()
    result = await services.health.check_readiness()
    return JSONResponse(result, status_code=200 if result["status"] == "ready" else 503)


@router.get("")
async def health():
    """Full health across database, cache and executor."""
    if not services:
        return _unavailable()
    status_code, body = await services.health.generate_health_response()
    return JSONResponse(body, status_code=status_code)


@router.get("/cache")
async def cache_health(stats: bool = Query(default=True, description="Include per-family key statistics")):
    """Redis connection, hit rate, key statistics and pub/sub state."""
    if not services:
        return _unavailable()
    status_code, body = await services.health.check_cache(include_statistics=stats)
    return JSONResponse(body, status_code=status_code)
