"""Cascade deletion endpoints: preview, execute, cancel, active operations, rollback."""

from __future__ import annotations

import logging
from typing import Any

from cascade_engine.models.impact import DeletionImpact
from cascade_engine.models.operation import DeletionOptions, OperationResult, OperationSummary
from cascade_engine.models.snapshot import RollbackResult, SnapshotInfo
from fastapi import APIRouter, Body

from cascade_api.dependencies import DeletionServiceDep, SecurityContextDep, admitted

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deletion", tags=["deletion"])


@router.get("/operations", response_model=list[OperationSummary])
async def list_active_operations(service: DeletionServiceDep, ctx: SecurityContextDep) -> list[OperationSummary]:
    return admitted(await service.get_active_operations(ctx))


@router.post("/rollback/{snapshot_id}", response_model=RollbackResult)
async def rollback_deletion(snapshot_id: str, service: DeletionServiceDep, ctx: SecurityContextDep) -> RollbackResult:
    return admitted(await service.rollback_deletion(snapshot_id, ctx))


@router.get("/{entity_type}/{entity_id}/preview", response_model=DeletionImpact)
async def preview_deletion(
    entity_type: str,
    entity_id: str,
    service: DeletionServiceDep,
    ctx: SecurityContextDep,
) -> DeletionImpact:
    """Return the blast radius of deleting the entity.  Read-only."""
    return admitted(await service.preview_deletion(entity_type, entity_id, ctx))


@router.post("/{entity_type}/{entity_id}", response_model=OperationResult)
async def execute_delete(
    entity_type: str,
    entity_id: str,
    service: DeletionServiceDep,
    ctx: SecurityContextDep,
    options: DeletionOptions | None = Body(default=None),
) -> OperationResult:
    """Run the cascade deletion to completion.

    A failed or cancelled run is still a 200 response; inspect ``status``
    and ``error_code``.  When the entity already has an active operation
    the existing ``operation_id`` is returned with ``duplicate=true``.
    """
    result = admitted(await service.execute_delete(entity_type, entity_id, ctx, options))
    logger.info(
        "Delete %s:%s by %s -> %s (operation=%s)",
        entity_type,
        entity_id,
        ctx.actor_id,
        result.status.value,
        result.operation_id,
    )
    return result


@router.post("/{entity_type}/{entity_id}/cancel")
async def cancel_operation(
    entity_type: str,
    entity_id: str,
    service: DeletionServiceDep,
    ctx: SecurityContextDep,
) -> dict[str, Any]:
    cancelled = admitted(await service.cancel_operation(entity_type, entity_id, ctx))
    return {"entity_type": entity_type, "entity_id": entity_id, "cancelled": cancelled}


@router.get("/{entity_type}/{entity_id}/snapshots", response_model=list[SnapshotInfo])
async def list_snapshots(
    entity_type: str,
    entity_id: str,
    service: DeletionServiceDep,
    ctx: SecurityContextDep,
) -> list[SnapshotInfo]:
    """Snapshots recorded for an entity, newest first."""
    return admitted(await service.list_snapshots(entity_type, entity_id, ctx))
