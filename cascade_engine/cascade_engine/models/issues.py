"""Orphan and integrity issue models, plus cleanup/repair outcomes."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    IssueSeverity.LOW: 0,
    IssueSeverity.MEDIUM: 1,
    IssueSeverity.HIGH: 2,
    IssueSeverity.CRITICAL: 3,
}


class CleanupMethod(str, Enum):
    DELETE = "delete"
    NULLIFY = "nullify"


class OrphanIssue(BaseModel):
    """A set of references in ``table.field`` pointing at missing owners."""

    id: str = Field(..., description="Deterministic ``<table>.<field>`` identifier.")
    table: str
    field: str | None = None
    owner_table: str
    count: int = Field(default=0, ge=0)
    severity: IssueSeverity = IssueSeverity.LOW
    can_auto_fix: bool = True
    cleanup_method: CleanupMethod = CleanupMethod.DELETE
    description: str = ""
    sample_ids: list[str] = Field(default_factory=list)


class CleanupResult(BaseModel):
    dry_run: bool = False
    issues: list[OrphanIssue] = Field(default_factory=list)
    cleaned: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    by_issue: dict[str, int] = Field(default_factory=dict)
    backup_snapshot_id: str | None = None
    batches: int = 0


class OverallStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class IntegrityIssue(BaseModel):
    """One finding produced by an integrity check."""

    id: str
    check: str
    table: str
    field: str | None = None
    severity: IssueSeverity = IssueSeverity.LOW
    count: int = 0
    description: str = ""
    fix: str = Field(default="delete", description="Narrowest repair: delete, nullify, set_default or recompute.")
    record_ids: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    passed: int = 0
    failed: int = 0
    issues: list[IntegrityIssue] = Field(default_factory=list)
    overall_status: OverallStatus = OverallStatus.HEALTHY
    checks: dict[str, int] = Field(default_factory=dict, description="Issue count per check.")
    duration_ms: int = 0


class RepairOutcome(BaseModel):
    issue_id: str
    success: bool
    records_affected: int = 0
    error: str | None = None


class RepairResult(BaseModel):
    dry_run: bool = False
    repaired: int = 0
    failed: int = 0
    skipped: list[str] = Field(default_factory=list, description="High-severity issue ids left for explicit selection.")
    outcomes: list[RepairOutcome] = Field(default_factory=list)
    backup_snapshot_id: str | None = None
