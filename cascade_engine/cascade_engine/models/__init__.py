"""Domain models for the cascade engine."""

from cascade_engine.models.audit import Actor, AuditEntry, AuditQuery, PagedAuditEntries
from cascade_engine.models.impact import (
    CascadeAction,
    DeletionImpact,
    DeletionWarning,
    DependencyInfo,
    RiskLevel,
    WarningType,
)
from cascade_engine.models.issues import (
    CleanupMethod,
    CleanupResult,
    IntegrityIssue,
    IssueSeverity,
    OrphanIssue,
    OverallStatus,
    RepairOutcome,
    RepairResult,
    ValidationResult,
)
from cascade_engine.models.operation import (
    TERMINAL_STATUSES,
    DeletionOperation,
    DeletionOptions,
    OperationResult,
    OperationStatus,
    OperationSummary,
)
from cascade_engine.models.refs import EntityRef, EntityType
from cascade_engine.models.snapshot import RollbackResult, SnapshotInfo, SnapshotKind

__all__ = [
    "TERMINAL_STATUSES",
    "Actor",
    "AuditEntry",
    "AuditQuery",
    "CascadeAction",
    "CleanupMethod",
    "CleanupResult",
    "DeletionImpact",
    "DeletionOperation",
    "DeletionOptions",
    "DeletionWarning",
    "DependencyInfo",
    "EntityRef",
    "EntityType",
    "IntegrityIssue",
    "IssueSeverity",
    "OperationResult",
    "OperationStatus",
    "OperationSummary",
    "OrphanIssue",
    "OverallStatus",
    "PagedAuditEntries",
    "RepairOutcome",
    "RepairResult",
    "RiskLevel",
    "RollbackResult",
    "SnapshotInfo",
    "SnapshotKind",
    "ValidationResult",
]
