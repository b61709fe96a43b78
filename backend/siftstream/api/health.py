"""
Health check endpoints for SIFT Stream.

Liveness and readiness probes for container orchestration, a detailed
status view covering providers, circuit breakers and live streams, and
the Prometheus scrape endpoint.
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from siftstream.api.analysis import get_gateway
from siftstream.core.config import settings
from siftstream.core.database import get_db, ping_db
from siftstream.core.enums import ProviderType
from siftstream.core.logging import get_logger
from siftstream.core.metrics import get_metrics
from siftstream.services.analysis_gateway import AnalysisGateway
from siftstream.services.circuit_breaker import get_provider_breaker, provider_circuit_breakers

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _provider_status() -> Dict[str, str]:
    """``unconfigured``, ``available`` or ``circuit_open`` per provider."""
    configured = settings.configured_providers
    result = {}
    for provider in ProviderType:
        if provider.value not in configured:
            result[provider.value] = "unconfigured"
        elif get_provider_breaker(provider.value).is_available():
            result[provider.value] = "available"
        else:
            result[provider.value] = "circuit_open"
    return result


@router.get("/health")
async def health_check():
    """Process is up."""
    return {"status": "healthy", "timestamp": _now()}


@router.get("/api/health")
async def api_health_check():
    """Same as ``/health``, under the prefix the browser client proxies."""
    return {"status": "healthy"}


@router.get("/health/live")
async def liveness_probe():
    """Liveness probe. A failure triggers container restart."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_probe(db: AsyncSession = Depends(get_db)):
    """
    Ready when some provider can take a stream and, with persistence on,
    the database answers. 503 otherwise.
    """
    providers = _provider_status()
    checks = {"providers": "available" in providers.values()}
    errors: List[str] = []
    if not checks["providers"]:
        errors.append("Providers: none configured with a closed circuit")

    if settings.persistence_enabled:
        try:
            await ping_db(db)
            checks["database"] = True
        except Exception as e:
            checks["database"] = False
            errors.append(f"Database: {e}")
            logger.error(f"Readiness check failed - database: {e}")

    if errors:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "not ready", "checks": checks, "errors": errors},
        )
    return {"status": "ready", "checks": checks}


@router.get("/health/detailed")
async def detailed_health_check(gateway: AnalysisGateway = Depends(get_gateway)):
    """Status for monitoring dashboards."""
    uptime_seconds = time.time() - _start_time
    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": settings.version,
        "environment": settings.environment,
        "uptime": {"seconds": int(uptime_seconds), "formatted": _format_uptime(uptime_seconds)},
        "system": {"python_version": sys.version.split()[0], "platform": platform.system()},
        "providers": _provider_status(),
        "circuit_breakers": provider_circuit_breakers.get_all_stats(),
        "sessions": gateway.get_stats(),
        "persistence": settings.persistence_enabled,
        "metrics": get_metrics().get_summary(),
    }


@router.get("/metrics")
@router.get("/health/metrics")
async def metrics_endpoint():
    """Prometheus text exposition."""
    return PlainTextResponse(
        content=get_metrics().export_prometheus(),
        media_type="text/plain; version=0.0.4",
    )


def _format_uptime(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    parts = [f"{value}{unit}" for value, unit in ((days, "d"), (hours, "h"), (minutes, "m")) if value]
    parts.append(f"{secs}s")
    return " ".join(parts)
