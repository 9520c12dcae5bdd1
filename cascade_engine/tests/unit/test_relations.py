"""Unit tests for the relationship schema and deletion ordering."""

from __future__ import annotations

import pytest
from cascade_engine.graph.relations import (
    REFERENCE_RULES,
    SCHEMAS,
    TARGET,
    CyclicRelationError,
    EntitySchema,
    Relation,
    build_relation_graph,
    collection_order,
    deletion_order,
    get_schema,
    rules_for_tables,
)
from cascade_engine.models.impact import CascadeAction
from cascade_engine.models.issues import CleanupMethod
from cascade_engine.models.refs import EntityType


class TestDeletionOrder:
    def test_student_dependents_before_target(self):
        order = deletion_order(EntityType.STUDENT)
        assert order == (
            "attendance",
            "bagruts",
            "documents",
            "lessons",
            "orchestras",
            "payments",
            "rehearsal_attendance",
            "theory_classes",
            TARGET,
        )

    def test_attendance_processed_before_lessons(self):
        order = deletion_order(EntityType.STUDENT)
        assert order.index("attendance") < order.index("lessons")

    def test_orchestra_chain(self):
        assert deletion_order(EntityType.ORCHESTRA) == ("members", "rehearsal_attendance", "rehearsals", TARGET)

    @pytest.mark.parametrize("entity_type", list(EntityType))
    def test_target_is_always_last(self, entity_type: EntityType):
        order = deletion_order(entity_type)
        assert order[-1] == TARGET
        assert len(order) == len(SCHEMAS[entity_type].relations) + 1

    def test_collection_order_is_reverse_without_target(self):
        order = collection_order(EntityType.ORCHESTRA)
        assert order == ("rehearsals", "rehearsal_attendance", "members")

    def test_order_is_stable_across_calls(self):
        deletion_order.cache_clear()
        first = deletion_order(EntityType.TEACHER)
        deletion_order.cache_clear()
        assert deletion_order(EntityType.TEACHER) == first


class TestSchemaGraph:
    def test_unknown_parent_rejected(self):
        schema = EntitySchema(
            entity_type=EntityType.ORCHESTRA,
            table="orchestras",
            relations=(Relation("a", "a", "rehearsals", (("missing", "orchestra_id"),)),),
        )
        with pytest.raises(ValueError, match="unknown parent"):
            build_relation_graph(schema)

    def test_cycle_detected(self, monkeypatch):
        cyclic = EntitySchema(
            entity_type=EntityType.ORCHESTRA,
            table="orchestras",
            relations=(
                Relation("a", "a", "rehearsals", (("b", "orchestra_id"),)),
                Relation("b", "b", "rehearsals", (("a", "orchestra_id"), (TARGET, "orchestra_id"))),
            ),
        )
        monkeypatch.setitem(SCHEMAS, EntityType.ORCHESTRA, cyclic)
        deletion_order.cache_clear()
        try:
            with pytest.raises(CyclicRelationError) as exc_info:
                deletion_order(EntityType.ORCHESTRA)
            assert exc_info.value.cycles
        finally:
            monkeypatch.undo()
            deletion_order.cache_clear()

    def test_collections_deduplicated_in_declaration_order(self):
        schema = get_schema("student")
        assert schema.collections[0] == "lessons"
        assert len(schema.collections) == len(set(schema.collections))

    def test_teacher_relations_only_nullify(self):
        schema = get_schema(EntityType.TEACHER)
        assert {rel.action for rel in schema.relations} == {CascadeAction.NULLIFY}

    def test_active_orchestra_is_hard_dependent_of_conductor(self):
        rel = get_schema(EntityType.TEACHER).relation("orchestras")
        assert rel.hard_when is not None
        assert rel.hard_when({"is_active": True})
        assert not rel.hard_when({"is_active": False})

    def test_unknown_relation_name(self):
        with pytest.raises(KeyError):
            get_schema(EntityType.STUDENT).relation("nope")


class TestReferenceRules:
    def test_issue_ids_unique(self):
        ids = [rule.issue_id for rule in REFERENCE_RULES]
        assert len(ids) == len(set(ids))

    def test_rules_for_tables_filters(self):
        rules = rules_for_tables(["payments", "lessons"])
        assert {rule.issue_id for rule in rules} == {
            "lessons.student_id",
            "lessons.teacher_id",
            "payments.student_id",
        }

    def test_rules_for_none_returns_all(self):
        assert len(rules_for_tables(None)) == len(REFERENCE_RULES)

    def test_financial_references_are_nullified(self):
        (rule,) = rules_for_tables(["payments"])
        assert rule.method is CleanupMethod.NULLIFY
