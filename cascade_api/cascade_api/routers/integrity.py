"""Orphan cleanup and integrity validation/repair endpoints."""

from __future__ import annotations

from cascade_engine.models.issues import CleanupResult, RepairResult, ValidationResult
from fastapi import APIRouter
from pydantic import BaseModel, Field

from cascade_api.dependencies import DeletionServiceDep, SecurityContextDep, admitted

router = APIRouter(prefix="/integrity", tags=["integrity"])


class CleanupRequest(BaseModel):
    collections: list[str] | None = None
    issue_ids: list[str] | None = None
    dry_run: bool = False
    batch_size: int | None = Field(default=None, ge=1)
    create_backup: bool = True


class RepairRequest(BaseModel):
    issue_ids: list[str] | None = None
    dry_run: bool = False
    create_backup: bool = True


@router.post("/orphans/cleanup", response_model=CleanupResult)
async def cleanup_orphans(
    body: CleanupRequest,
    service: DeletionServiceDep,
    ctx: SecurityContextDep,
) -> CleanupResult:
    """Remove dangling references, or report them when ``dry_run`` is set."""
    return admitted(
        await service.cleanup_orphaned(
            ctx,
            collections=body.collections,
            issue_ids=body.issue_ids,
            dry_run=body.dry_run,
            batch_size=body.batch_size,
            create_backup=body.create_backup,
        )
    )


@router.get("/validate", response_model=ValidationResult)
async def validate_integrity(service: DeletionServiceDep, ctx: SecurityContextDep) -> ValidationResult:
    return admitted(await service.validate_integrity(ctx))


@router.post("/repair", response_model=RepairResult)
async def repair_integrity(body: RepairRequest, service: DeletionServiceDep, ctx: SecurityContextDep) -> RepairResult:
    return admitted(
        await service.repair_integrity(
            ctx,
            issue_ids=body.issue_ids,
            create_backup=body.create_backup,
            dry_run=body.dry_run,
        )
    )
