"""Health-check endpoint.

Always returns HTTP 200 so load-balancers see the service as alive; the
``db`` field reports whether the state store answered a trivial query.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text

from cascade_api import __version__
from cascade_api.dependencies import ServicesDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: ServicesDep) -> dict[str, Any]:
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "active_operations": len(services.runtime.registry.list_active()),
    }
    try:
        async with services.runtime.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Health check database query failed: %s", exc)
        result["db"] = "unavailable"
        result["status"] = "degraded"
    return result
