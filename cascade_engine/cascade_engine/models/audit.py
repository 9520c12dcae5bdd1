"""Audit trail models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator


class Actor(BaseModel):
    """Who performed an operation, as recorded in the audit log."""

    actor_id: str
    actor_role: str


class AuditEntry(BaseModel):
    """Immutable audit record.  ``id`` and hashes are assigned on append."""

    id: str | None = None
    timestamp: datetime | None = None
    operation: str
    actor_id: str
    actor_role: str
    success: bool
    duration_ms: int | None = None
    error: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    entry_hash: str | None = None


class AuditQuery(BaseModel):
    """Filters for paginated audit log queries."""

    actor_id: str | None = None
    operation: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    success: bool | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=500)

    @model_validator(mode="after")
    def _check_range(self) -> AuditQuery:
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must be <= until")
        return self

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class PagedAuditEntries(BaseModel):
    entries: list[AuditEntry] = Field(default_factory=list)
    page: int = 1
    limit: int = 50
    total_count: int = 0
    has_more: bool = False
