"""Audit log, export, chain verification and security analytics endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from cascade_engine.models.audit import AuditQuery, PagedAuditEntries
from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from cascade_api.dependencies import DeletionServiceDep, SecurityContextDep, admitted
from cascade_api.services.audit_service import AuditExportFormat

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=PagedAuditEntries)
async def query_audit_log(
    service: DeletionServiceDep,
    ctx: SecurityContextDep,
    actor_id: str | None = Query(default=None, description="Filter by actor."),
    operation: str | None = Query(default=None, description="Filter by operation name."),
    entity_type: str | None = Query(default=None, description="Filter by entity type."),
    entity_id: str | None = Query(default=None, description="Filter by entity ID."),
    since: datetime | None = Query(default=None, description="Only entries at or after this timestamp."),
    until: datetime | None = Query(default=None, description="Only entries at or before this timestamp."),
    success: bool | None = Query(default=None, description="Filter by outcome."),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
) -> PagedAuditEntries:
    query = AuditQuery(
        actor_id=actor_id,
        operation=operation,
        entity_type=entity_type,
        entity_id=entity_id,
        since=since,
        until=until,
        success=success,
        page=page,
        limit=limit,
    )
    return admitted(await service.get_audit_log(query, ctx))


@router.get("/export")
async def export_audit_log(
    service: DeletionServiceDep,
    ctx: SecurityContextDep,
    fmt: AuditExportFormat = Query(default=AuditExportFormat.JSON, alias="format", description="json or csv"),
    actor_id: str | None = Query(default=None),
    operation: str | None = Query(default=None),
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    success: bool | None = Query(default=None),
) -> StreamingResponse:
    """Download every matching audit entry as a JSON or CSV file."""
    query = AuditQuery(
        actor_id=actor_id,
        operation=operation,
        entity_type=entity_type,
        entity_id=entity_id,
        since=since,
        until=until,
        success=success,
    )
    export = admitted(await service.export_audit_log(query, ctx, fmt))
    return StreamingResponse(
        iter([export.data]),
        media_type=export.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{export.filename}"',
            "X-Record-Count": str(export.record_count),
            "X-Export-Truncated": str(export.truncated).lower(),
        },
    )


@router.get("/verify")
async def verify_audit_chain(service: DeletionServiceDep, ctx: SecurityContextDep) -> dict[str, Any]:
    """Recompute the hash chain and report whether it is intact."""
    return admitted(await service.verify_audit_chain(ctx))


@router.get("/security/summary")
async def security_summary(service: DeletionServiceDep, ctx: SecurityContextDep) -> dict[str, Any]:
    return admitted(await service.security_summary(ctx))


@router.post("/security/unblock/{origin}")
async def unblock_origin(origin: str, service: DeletionServiceDep, ctx: SecurityContextDep) -> dict[str, Any]:
    was_blocked = admitted(await service.unblock_origin(origin, ctx))
    return {"origin": origin, "was_blocked": was_blocked}
