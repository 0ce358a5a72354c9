"""Health check endpoints.

- /health - Service status and whether email delivery is configured
- /health/db - Database connection pool health
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from brainbits.config import APP_VERSION, ENV

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Service status, version and delivery readiness (presence checks only, no API call)."""
    return {
        "status": "healthy",
        "service": "Brain Bits API",
        "version": APP_VERSION,
        "environment": ENV,
        "timestamp": datetime.now(UTC).isoformat(),
        "email": {
            "resend_api_key": bool(os.getenv("RESEND_API_KEY")),
            "webhook_secret": bool(os.getenv("RESEND_WEBHOOK_SECRET")),
        },
    }


@router.get("/health/db")
async def database_health() -> dict[str, Any]:
    """
    Database health check endpoint.

    Alerts if pool usage exceeds 80%.
    """
    from brainbits.infrastructure.database import get_pool_stats

    stats = get_pool_stats()
    usage_percent = stats["usage_percent"]

    return {
        "status": "degraded" if usage_percent > 80 else "healthy",
        "pool": stats,
        "warning": "Pool usage high" if usage_percent > 80 else None,
    }
