"""Shared types for integrity checks."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from cascade_engine.config import EngineSettings
from cascade_engine.models.issues import IntegrityIssue, IssueSeverity, OverallStatus, ValidationResult


class CheckName(str, Enum):
    """Identifiers of the built-in integrity checks."""

    REQUIRED_FIELDS = "required_fields"
    ENUM_DOMAINS = "enum_domains"
    MEMBER_COUNTS = "member_counts"
    DUPLICATE_MEMBERSHIPS = "duplicate_memberships"
    REFERENTIAL = "referential"


@dataclass
class CheckContext:
    session: AsyncSession
    settings: EngineSettings


def classify_severity(count: int, settings: EngineSettings) -> IssueSeverity:
    """Severity from blast radius alone."""
    if count >= settings.orphan_high_threshold:
        return IssueSeverity.HIGH
    if count >= settings.orphan_medium_threshold:
        return IssueSeverity.MEDIUM
    return IssueSeverity.LOW


def summarize(
    issues: list[IntegrityIssue],
    checks_run: list[str],
    duration_ms: int = 0,
) -> ValidationResult:
    """Build a :class:`ValidationResult` from the issues of *checks_run*.

    Issues are sorted deterministically by id.
    """
    ordered = sorted(issues, key=lambda i: i.id)
    per_check = {name: 0 for name in checks_run}
    for issue in ordered:
        per_check[issue.check] = per_check.get(issue.check, 0) + 1

    if any(i.severity.rank >= IssueSeverity.HIGH.rank for i in ordered):
        overall = OverallStatus.CRITICAL
    elif ordered:
        overall = OverallStatus.WARNING
    else:
        overall = OverallStatus.HEALTHY

    return ValidationResult(
        passed=sum(1 for count in per_check.values() if count == 0),
        failed=sum(1 for count in per_check.values() if count > 0),
        issues=ordered,
        overall_status=overall,
        checks=per_check,
        duration_ms=duration_ms,
    )


class Timer:
    """Simple monotonic timer for measuring check duration."""

    def __init__(self) -> None:
        self._start: float = 0.0

    def start(self) -> None:
        self._start = time.monotonic()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)
