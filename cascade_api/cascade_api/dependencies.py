"""FastAPI dependency injection for services and the caller's security context.

Authentication is handled upstream; the gateway forwards the verified
identity in ``X-Actor-Id`` / ``X-Actor-Role`` headers, plus
``X-Last-Authenticated-At`` when the user recently re-entered credentials.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Annotated, TypeVar

from fastapi import Depends, HTTPException, Request

from cascade_api.container import AppServices
from cascade_api.security.context import Refusal, SecurityContext, parse_role
from cascade_api.services.deletion_service import DeletionService

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"
SESSION_HEADER = "X-Session-Id"
REAUTH_HEADER = "X-Last-Authenticated-At"


def get_services(request: Request) -> AppServices:
    services: AppServices | None = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Application services not initialised. Is the lifespan running?")
    return services


ServicesDep = Annotated[AppServices, Depends(get_services)]


def get_deletion_service(services: ServicesDep) -> DeletionService:
    return services.service


DeletionServiceDep = Annotated[DeletionService, Depends(get_deletion_service)]


def _client_origin(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    return request.client.host if request.client else "unknown"


def _parse_timestamp(raw: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {REAUTH_HEADER} header") from None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def get_security_context(request: Request, services: ServicesDep) -> SecurityContext:
    actor_id = request.headers.get(ACTOR_ID_HEADER)
    raw_role = request.headers.get(ACTOR_ROLE_HEADER)
    if not actor_id or not raw_role:
        raise HTTPException(status_code=401, detail="Missing actor identity")
    try:
        role = parse_role(raw_role)
    except ValueError:
        logger.warning("Rejected unknown role %r for actor %s", raw_role, actor_id)
        raise HTTPException(status_code=401, detail="Unknown actor role") from None

    reauth = request.headers.get(REAUTH_HEADER)
    return SecurityContext(
        actor_id=actor_id,
        actor_role=role,
        session_id=request.headers.get(SESSION_HEADER),
        origin=_client_origin(request),
        user_agent=request.headers.get("user-agent", ""),
        timestamp=services.now(),
        last_authenticated_at=_parse_timestamp(reauth) if reauth else None,
    )


SecurityContextDep = Annotated[SecurityContext, Depends(get_security_context)]


def admitted(result: T | Refusal) -> T:
    """Unwrap a facade result, raising the refusal's error if it was denied."""
    if isinstance(result, Refusal):
        raise result.to_error()
    return result
