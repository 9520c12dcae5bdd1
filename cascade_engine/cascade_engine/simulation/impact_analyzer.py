"""Read-only impact analysis for cascade deletions.

Given an :class:`EntityRef`, the analyzer walks the fixed relationship
schema outward from the target, one relation at a time (parents before
their own dependents), and gathers every record a cascade would touch.
:meth:`ImpactAnalyzer.preview` turns that into a :class:`DeletionImpact`;
the executor reuses :meth:`ImpactAnalyzer.collect` to build its snapshot.

No method here writes to the database, so previews are safe to run
repeatedly and concurrently.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cascade_engine.config import EngineSettings
from cascade_engine.errors import EntityNotFoundError, ValidationError
from cascade_engine.graph.relations import TARGET, EntitySchema, collection_order, get_schema
from cascade_engine.models.impact import (
    CascadeAction,
    DeletionImpact,
    DeletionWarning,
    DependencyInfo,
    RiskLevel,
    WarningType,
)
from cascade_engine.models.refs import EntityRef, EntityType
from cascade_engine.state.repository import RecordRepository, serialize_row

if TYPE_CHECKING:
    from cascade_engine.executor.registry import ActiveOperationRegistry

logger = logging.getLogger(__name__)


@dataclass
class CascadeSet:
    """Every record reachable from one target, grouped by relation name."""

    target: EntityRef
    schema: EntitySchema
    target_row: dict[str, Any] | None
    records: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def ids(self, relation: str) -> list[str]:
        if relation == TARGET:
            return [self.target.entity_id]
        return [row["id"] for row in self.records.get(relation, [])]

    @property
    def total(self) -> int:
        return sum(len(rows) for rows in self.records.values())

    def collection_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for rel in self.schema.relations:
            counts[rel.collection] = counts.get(rel.collection, 0) + len(self.records.get(rel.name, []))
        return counts

    def snapshot_payload(self) -> dict[str, list[dict[str, Any]]]:
        """Serialized rows keyed by table, including the target row itself."""
        payload: dict[str, dict[str, dict[str, Any]]] = {}
        for rel in self.schema.relations:
            bucket = payload.setdefault(rel.table, {})
            for row in self.records.get(rel.name, []):
                bucket[row["id"]] = serialize_row(row)
        if self.target_row is not None:
            payload.setdefault(self.schema.table, {})[self.target.entity_id] = serialize_row(self.target_row)
        return {table: [rows[k] for k in sorted(rows)] for table, rows in payload.items() if rows}


def parse_ref(entity_type: str | EntityType, entity_id: str) -> EntityRef:
    """Build an :class:`EntityRef`, raising ``ValidationError`` on bad input."""
    try:
        etype = EntityType(entity_type)
    except ValueError:
        raise ValidationError(
            f"Unknown entity type: {entity_type!r}",
            details={"allowed": [t.value for t in EntityType]},
        ) from None
    if not entity_id or not entity_id.strip():
        raise ValidationError("Entity id must not be empty")
    return EntityRef(entity_type=etype, entity_id=entity_id.strip())


class ImpactAnalyzer:
    """Computes the blast radius of deleting an entity."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EngineSettings,
        registry: ActiveOperationRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._registry = registry

    async def collect(self, session: AsyncSession, ref: EntityRef, *, require_target: bool = True) -> CascadeSet:
        """Gather the target row and all dependent rows.

        With ``require_target=False`` a missing target is tolerated and
        only its leftover dependents are collected.

        Raises
        ------
        EntityNotFoundError
            If the target record does not exist and ``require_target`` is set.
        """
        schema = get_schema(ref.entity_type)
        records = RecordRepository(session)

        target_row = await records.get(schema.table, ref.entity_id)
        if target_row is None and require_target:
            raise EntityNotFoundError(
                f"{ref.entity_type.value} {ref.entity_id} not found",
                details={"entity_type": ref.entity_type.value, "entity_id": ref.entity_id},
            )

        found = CascadeSet(target=ref, schema=schema, target_row=target_row)
        for name in collection_order(ref.entity_type):
            rel = schema.relation(name)
            rows: dict[str, dict[str, Any]] = {}
            for parent, column in rel.links:
                parent_ids = found.ids(parent)
                for row in await records.fetch_where_in(rel.table, column, parent_ids):
                    rows[row["id"]] = row
            found.records[name] = [rows[k] for k in sorted(rows)]
        return found

    async def preview(self, ref: EntityRef) -> DeletionImpact:
        """Return a fresh :class:`DeletionImpact` for *ref*."""
        async with self._session_factory() as session:
            found = await self.collect(session, ref)
        impact = self.assess(found)
        logger.info(
            "Preview %s: total=%d risk=%s confirm=%s",
            ref.key,
            impact.total_records,
            impact.risk_level.value,
            impact.requires_confirmation,
        )
        return impact

    def assess(self, found: CascadeSet) -> DeletionImpact:
        settings = self._settings
        schema = found.schema
        counts = found.collection_counts()
        total = found.total

        dependencies: list[DependencyInfo] = []
        details: dict[str, list[dict[str, Any]]] = {}
        warnings: list[DeletionWarning] = []
        for rel in schema.relations:
            rows = found.records.get(rel.name, [])
            hard = sum(1 for row in rows if rel.hard_when is not None and rel.hard_when(row))
            dependencies.append(
                DependencyInfo(
                    collection=rel.collection,
                    table=rel.table,
                    count=len(rows),
                    hard_count=hard,
                    action=rel.action,
                )
            )
            if rows and settings.preview_sample_size:
                sample = details.setdefault(rel.collection, [])
                room = settings.preview_sample_size - len(sample)
                sample.extend(serialize_row(row) for row in rows[: max(room, 0)])
            if hard:
                warnings.append(
                    DeletionWarning(
                        type=WarningType.ACTIVE_DEPENDENCIES,
                        severity=RiskLevel.HIGH,
                        message=f"{hard} active record(s) in {rel.collection}",
                        collection=rel.collection,
                    )
                )
            if rows and rel.action is CascadeAction.NULLIFY:
                warnings.append(
                    DeletionWarning(
                        type=WarningType.INTEGRITY_RISK,
                        severity=RiskLevel.LOW,
                        message=f"{len(rows)} record(s) in {rel.collection} will lose their reference",
                        collection=rel.collection,
                    )
                )

        has_hard = any(dep.hard_count for dep in dependencies)
        risk = self._risk_level(total, has_hard)
        if total:
            warnings.insert(
                0,
                DeletionWarning(
                    type=WarningType.DATA_LOSS,
                    severity=risk,
                    message=f"{total} dependent record(s) will be removed or detached",
                ),
            )

        can_proceed = True
        if self._registry is not None:
            active = self._registry.get(found.target)
            if active is not None:
                can_proceed = False
                warnings.append(
                    DeletionWarning(
                        type=WarningType.OPERATION_IN_PROGRESS,
                        severity=RiskLevel.CRITICAL,
                        message=f"Operation {active.operation_id} is already deleting this entity",
                    )
                )

        batch = settings.default_batch_size
        batches = sum(math.ceil(dep.count / batch) for dep in dependencies) + 1
        return DeletionImpact(
            target=found.target,
            total_records=total,
            affected_collections=[name for name in schema.collections if counts.get(name)],
            counts=counts,
            details=details,
            warnings=warnings,
            dependencies=dependencies,
            can_proceed=can_proceed,
            requires_confirmation=has_hard or total > settings.confirmation_threshold,
            risk_level=risk,
            estimated_duration_seconds=round(batches * settings.seconds_per_batch_estimate, 2),
        )

    def _risk_level(self, total: int, has_hard: bool) -> RiskLevel:
        settings = self._settings
        if total >= settings.critical_risk_threshold:
            return RiskLevel.CRITICAL
        if total >= settings.high_risk_threshold:
            return RiskLevel.HIGH
        if has_hard or total > settings.confirmation_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW
