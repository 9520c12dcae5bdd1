"""Orphan cleanup and integrity validation."""

from cascade_engine.checks.base import BaseIntegrityCheck
from cascade_engine.checks.engine import IntegrityValidator, create_default_validator
from cascade_engine.checks.models import CheckContext, CheckName
from cascade_engine.checks.orphans import OrphanCleanupEngine
from cascade_engine.checks.registry import CheckRegistry

__all__ = [
    "BaseIntegrityCheck",
    "CheckContext",
    "CheckName",
    "CheckRegistry",
    "IntegrityValidator",
    "OrphanCleanupEngine",
    "create_default_validator",
]
