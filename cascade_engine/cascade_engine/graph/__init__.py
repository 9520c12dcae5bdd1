"""Relationship schema and deletion ordering."""

from cascade_engine.graph.relations import (
    REFERENCE_RULES,
    SCHEMAS,
    TARGET,
    EntitySchema,
    ReferenceRule,
    Relation,
    collection_order,
    deletion_order,
    get_schema,
    rules_for_tables,
)

__all__ = [
    "REFERENCE_RULES",
    "SCHEMAS",
    "TARGET",
    "EntitySchema",
    "ReferenceRule",
    "Relation",
    "collection_order",
    "deletion_order",
    "get_schema",
    "rules_for_tables",
]
