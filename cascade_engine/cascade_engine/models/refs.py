"""Entity references: the unit of deletion."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EntityType(str, Enum):
    """Entity kinds that can be the target of a cascade deletion."""

    STUDENT = "student"
    TEACHER = "teacher"
    ORCHESTRA = "orchestra"


class EntityRef(BaseModel):
    """Immutable ``(entity_type, entity_id)`` pair naming one record."""

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType = Field(..., description="Kind of the referenced entity.")
    entity_id: str = Field(..., min_length=1, max_length=64, description="Primary key of the entity.")

    @property
    def key(self) -> str:
        """Stable string key used by the active-operation registry."""
        return f"{self.entity_type.value}:{self.entity_id}"

    def __str__(self) -> str:
        return self.key
