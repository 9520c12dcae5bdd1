"""Caller context and typed admission refusals."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from cascade_engine.errors import AdmissionError, PermissionDenied, RateLimited, SuspiciousActivity
from cascade_engine.models.audit import Actor
from pydantic import BaseModel, Field


class Role(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


def parse_role(raw: str) -> Role:
    """Convert a role claim string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return Role(raw.strip().lower())
    except ValueError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(r.value for r in Role)}") from None


class SecurityContext(BaseModel):
    """Who is calling, from where, and when."""

    actor_id: str = Field(..., min_length=1)
    actor_role: Role
    session_id: str | None = None
    origin: str = "unknown"
    user_agent: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_authenticated_at: datetime | None = None

    @property
    def actor(self) -> Actor:
        return Actor(actor_id=self.actor_id, actor_role=self.actor_role.value)


class RefusalCode(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RATE_LIMITED = "RATE_LIMITED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    ORIGIN_BLOCKED = "ORIGIN_BLOCKED"


class Refusal(BaseModel):
    """A non-throwing admission denial.

    Callers render ``reason`` to the user; :meth:`to_error` converts the
    refusal into an exception at the edge (HTTP, CLI) when needed.
    """

    code: RefusalCode
    reason: str
    operation: str
    retry_after_seconds: float | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    def to_error(self) -> AdmissionError:
        details = {"operation": self.operation, **self.details}
        if self.retry_after_seconds is not None:
            details["retry_after_seconds"] = round(self.retry_after_seconds, 1)
        if self.code is RefusalCode.RATE_LIMITED:
            return RateLimited(self.reason, details=details)
        if self.code is RefusalCode.PERMISSION_DENIED:
            return PermissionDenied(self.reason, details=details)
        return SuspiciousActivity(self.reason, code=self.code.value, details=details)
