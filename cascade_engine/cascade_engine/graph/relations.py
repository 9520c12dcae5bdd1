"""Fixed relationship schema of the conservatory data model.

Each deletable entity type owns a declarative list of :class:`Relation`
rows describing which records depend on it and what a cascade does to
them.  A relation's records are found by following its ``links``: each
link names a parent (the target itself or another relation) and the
column in the relation's table that holds the parent's id.

Deletion order is derived from the relation graph built with NetworkX:
an edge ``child -> parent`` means the child must be processed first, so a
topological sort yields the deepest dependents first and the target last.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import cache
from typing import Any

import networkx as nx

from cascade_engine.models.impact import CascadeAction
from cascade_engine.models.issues import CleanupMethod
from cascade_engine.models.refs import EntityType

logger = logging.getLogger(__name__)

TARGET = "__target__"

HardPredicate = Callable[[dict[str, Any]], bool]


def _always(row: dict[str, Any]) -> bool:
    return True


def _status_is(value: str) -> HardPredicate:
    def predicate(row: dict[str, Any]) -> bool:
        return row.get("status") == value

    predicate.__name__ = f"status_is_{value}"
    return predicate


class CyclicRelationError(Exception):
    """Raised when a relation schema contains a dependency cycle."""

    def __init__(self, cycles: list[list[str]]) -> None:
        self.cycles = cycles
        super().__init__(f"Relation schema contains cycles: {cycles}")


@dataclass(frozen=True)
class Relation:
    """One dependent record set of a deletable entity."""

    name: str
    collection: str
    table: str
    links: tuple[tuple[str, str], ...]
    action: CascadeAction = CascadeAction.DELETE
    hard_when: HardPredicate | None = None

    @property
    def parents(self) -> list[str]:
        return [parent for parent, _ in self.links]


@dataclass(frozen=True)
class EntitySchema:
    entity_type: EntityType
    table: str
    relations: tuple[Relation, ...] = field(default_factory=tuple)

    def relation(self, name: str) -> Relation:
        for rel in self.relations:
            if rel.name == name:
                return rel
        raise KeyError(name)

    @property
    def collections(self) -> list[str]:
        """Reported collection names in declaration order, de-duplicated."""
        seen: list[str] = []
        for rel in self.relations:
            if rel.collection not in seen:
                seen.append(rel.collection)
        return seen


@dataclass(frozen=True)
class ReferenceRule:
    """A reference column and the table its values must exist in."""

    table: str
    column: str
    owner_table: str
    method: CleanupMethod = CleanupMethod.DELETE

    @property
    def issue_id(self) -> str:
        return f"{self.table}.{self.column}"


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

SCHEMAS: dict[EntityType, EntitySchema] = {
    EntityType.STUDENT: EntitySchema(
        entity_type=EntityType.STUDENT,
        table="students",
        relations=(
            Relation(
                "lessons", "lessons", "lessons", ((TARGET, "student_id"),), hard_when=_status_is("scheduled")
            ),
            Relation(
                "attendance",
                "attendance",
                "attendance",
                (("lessons", "lesson_id"), (TARGET, "student_id")),
            ),
            Relation("orchestras", "orchestras", "orchestra_members", ((TARGET, "student_id"),), hard_when=_always),
            Relation("rehearsal_attendance", "rehearsal_attendance", "rehearsal_attendance", ((TARGET, "student_id"),)),
            Relation("theory_classes", "theory_classes", "theory_enrollments", ((TARGET, "student_id"),)),
            Relation(
                "bagruts", "bagruts", "bagruts", ((TARGET, "student_id"),), hard_when=_status_is("in_progress")
            ),
            Relation("documents", "documents", "documents", ((TARGET, "student_id"),)),
            Relation("payments", "payments", "payments", ((TARGET, "student_id"),), action=CascadeAction.NULLIFY),
        ),
    ),
    EntityType.TEACHER: EntitySchema(
        entity_type=EntityType.TEACHER,
        table="teachers",
        relations=(
            Relation("lessons", "lessons", "lessons", ((TARGET, "teacher_id"),), action=CascadeAction.NULLIFY),
            Relation(
                "theory_classes",
                "theory_classes",
                "theory_classes",
                ((TARGET, "teacher_id"),),
                action=CascadeAction.NULLIFY,
            ),
            Relation("bagruts", "bagruts", "bagruts", ((TARGET, "teacher_id"),), action=CascadeAction.NULLIFY),
            Relation(
                "orchestras",
                "orchestras",
                "orchestras",
                ((TARGET, "conductor_id"),),
                action=CascadeAction.NULLIFY,
                hard_when=lambda row: bool(row.get("is_active")),
            ),
        ),
    ),
    EntityType.ORCHESTRA: EntitySchema(
        entity_type=EntityType.ORCHESTRA,
        table="orchestras",
        relations=(
            Relation("members", "members", "orchestra_members", ((TARGET, "orchestra_id"),), hard_when=_always),
            Relation("rehearsals", "rehearsals", "rehearsals", ((TARGET, "orchestra_id"),)),
            Relation(
                "rehearsal_attendance",
                "rehearsal_attendance",
                "rehearsal_attendance",
                (("rehearsals", "rehearsal_id"),),
            ),
        ),
    ),
}


REFERENCE_RULES: tuple[ReferenceRule, ...] = (
    ReferenceRule("attendance", "lesson_id", "lessons"),
    ReferenceRule("attendance", "student_id", "students"),
    ReferenceRule("bagruts", "student_id", "students"),
    ReferenceRule("bagruts", "teacher_id", "teachers", CleanupMethod.NULLIFY),
    ReferenceRule("documents", "student_id", "students"),
    ReferenceRule("lessons", "student_id", "students"),
    ReferenceRule("lessons", "teacher_id", "teachers", CleanupMethod.NULLIFY),
    ReferenceRule("orchestra_members", "orchestra_id", "orchestras"),
    ReferenceRule("orchestra_members", "student_id", "students"),
    ReferenceRule("orchestras", "conductor_id", "teachers", CleanupMethod.NULLIFY),
    ReferenceRule("payments", "student_id", "students", CleanupMethod.NULLIFY),
    ReferenceRule("rehearsal_attendance", "rehearsal_id", "rehearsals"),
    ReferenceRule("rehearsal_attendance", "student_id", "students"),
    ReferenceRule("rehearsals", "orchestra_id", "orchestras"),
    ReferenceRule("theory_classes", "teacher_id", "teachers", CleanupMethod.NULLIFY),
    ReferenceRule("theory_enrollments", "student_id", "students"),
    ReferenceRule("theory_enrollments", "theory_class_id", "theory_classes"),
)


def get_schema(entity_type: EntityType | str) -> EntitySchema:
    return SCHEMAS[EntityType(entity_type)]


def rules_for_tables(tables: list[str] | None) -> list[ReferenceRule]:
    """Reference rules restricted to *tables* (all rules when ``None``)."""
    if tables is None:
        return list(REFERENCE_RULES)
    wanted = set(tables)
    return [rule for rule in REFERENCE_RULES if rule.table in wanted]


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


def build_relation_graph(schema: EntitySchema) -> nx.DiGraph:
    """Build the ``child -> parent`` graph for *schema*."""
    graph = nx.DiGraph()
    graph.add_node(TARGET)
    for rel in schema.relations:
        graph.add_node(rel.name)
        for parent in rel.parents:
            if parent != TARGET and parent not in {r.name for r in schema.relations}:
                raise ValueError(f"Relation {rel.name!r} links to unknown parent {parent!r}")
            graph.add_edge(rel.name, parent)
    return graph


def _lexicographic_topological_sort(graph: nx.DiGraph) -> list[str]:
    """Kahn's algorithm with a min-heap for deterministic tie-breaking."""
    in_degree = dict(graph.in_degree())
    heap = sorted(n for n, d in in_degree.items() if d == 0)
    heapq.heapify(heap)
    result: list[str] = []
    while heap:
        node = heapq.heappop(heap)
        result.append(node)
        for successor in sorted(graph.successors(node)):
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(heap, successor)
    if len(result) != len(graph):
        raise nx.NetworkXUnfeasible("Graph contains a cycle")
    return result


@cache
def deletion_order(entity_type: EntityType) -> tuple[str, ...]:
    """Relation names in processing order, ending with :data:`TARGET`."""
    graph = build_relation_graph(SCHEMAS[entity_type])
    try:
        order = _lexicographic_topological_sort(graph)
    except nx.NetworkXUnfeasible:
        cycles = list(nx.simple_cycles(graph))
        raise CyclicRelationError(cycles) from None
    # Every relation reaches the target, so it is always last.
    assert order[-1] == TARGET
    return tuple(order)


def collection_order(entity_type: EntityType) -> tuple[str, ...]:
    """Relation names in discovery order (parents before children)."""
    return tuple(name for name in reversed(deletion_order(entity_type)) if name != TARGET)
