"""Deletion impact preview models.

A :class:`DeletionImpact` is computed fresh for every preview request and is
never cached: another writer may change the dependents the instant after it
is produced.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from cascade_engine.models.refs import EntityRef


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CascadeAction(str, Enum):
    """What the executor does to a dependent record."""

    DELETE = "delete"
    NULLIFY = "nullify"


class WarningType(str, Enum):
    DATA_LOSS = "data_loss"
    ACTIVE_DEPENDENCIES = "active_dependencies"
    INTEGRITY_RISK = "integrity_risk"
    OPERATION_IN_PROGRESS = "operation_in_progress"


class DeletionWarning(BaseModel):
    type: WarningType
    severity: RiskLevel
    message: str
    collection: str | None = None


class DependencyInfo(BaseModel):
    """Per-collection summary of the records a cascade would touch."""

    collection: str = Field(..., description="Logical collection name shown to operators.")
    table: str = Field(..., description="Backing table.")
    count: int = Field(default=0, ge=0)
    hard_count: int = Field(default=0, ge=0, description="Records counted as active/hard dependents.")
    action: CascadeAction = CascadeAction.DELETE


class DeletionImpact(BaseModel):
    """Structured preview of the blast radius of deleting one entity."""

    target: EntityRef
    total_records: int = Field(default=0, ge=0)
    affected_collections: list[str] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)
    details: dict[str, list[dict[str, Any]]] = Field(
        default_factory=dict,
        description="Sample records per collection, bounded by the preview sample size.",
    )
    warnings: list[DeletionWarning] = Field(default_factory=list)
    dependencies: list[DependencyInfo] = Field(default_factory=list)
    can_proceed: bool = True
    requires_confirmation: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    estimated_duration_seconds: float = Field(default=0.0, ge=0)

    @property
    def has_hard_dependents(self) -> bool:
        return any(dep.hard_count > 0 for dep in self.dependencies)
