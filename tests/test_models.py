"""
Tests for the data models.

Tests validate:
- Enum values
- Input validation on domains, objects and rules
- Domain status transitions
- Relationship observation arithmetic and the self-loop check
- Rule applicability, validity window and specificity
"""

import pytest
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from iou.models import (
    AIMetadataSuggestion,
    BusinessRule,
    Classification,
    DiscoveryMethod,
    DomainCreate,
    DomainRelation,
    DomainStatus,
    DomainType,
    EntityRelationship,
    InformationDomain,
    InformationObject,
    ObjectCreate,
    ObjectType,
    PatternTrust,
    PrivacyLevel,
    RelationshipType,
    RuleCreate,
    RuleExecution,
    SuggestionSource,
    SuggestionStatus,
    SuggestionTarget,
)


SET_WOO = {
    "when": {"op": "literal", "value": True},
    "actions": [
        {"kind": "set_field", "field": "is_woo_relevant", "value": {"op": "literal", "value": True}}
    ],
}


class TestEnums:
    """Test enumeration values used on the wire."""

    def test_domain_types(self):
        assert {t.value for t in DomainType} == {"case", "project", "policy", "expertise"}

    def test_privacy_levels(self):
        assert PrivacyLevel.SPECIAL.value == "special"
        assert PrivacyLevel.CRIMINAL.value == "criminal"

    def test_relationship_types_are_upper_case(self):
        assert RelationshipType.LOCATED_IN.value == "LOCATED_IN"
        assert all(t.value == t.value.upper() for t in RelationshipType)

    def test_discovery_methods(self):
        assert DiscoveryMethod.AI_SUGGESTION.value == "ai_suggestion"


class TestInformationDomain:
    """Test domain creation input and lifecycle."""

    def test_name_is_stripped(self):
        spec = DomainCreate(name="  Woo requests  ", domain_type=DomainType.CASE, organization_id=uuid4())
        assert spec.name == "Woo requests"

    def test_blank_name_rejected(self):
        with pytest.raises(PydanticValidationError):
            DomainCreate(name="   ", domain_type=DomainType.CASE, organization_id=uuid4())

    def test_cannot_create_archived(self):
        with pytest.raises(PydanticValidationError):
            DomainCreate(
                name="Old", domain_type=DomainType.CASE,
                organization_id=uuid4(), status=DomainStatus.ARCHIVED,
            )

    def test_transitions(self):
        domain = InformationDomain(name="N", domain_type=DomainType.CASE, organization_id=uuid4())
        assert domain.status == DomainStatus.ACTIVE
        assert domain.can_transition(DomainStatus.DRAFT)
        assert domain.can_transition(DomainStatus.CLOSED)

        domain.status = DomainStatus.CLOSED
        assert domain.can_transition(DomainStatus.ARCHIVED)
        assert not domain.can_transition(DomainStatus.ACTIVE)

        domain.status = DomainStatus.ARCHIVED
        assert not any(domain.can_transition(s) for s in DomainStatus)


class TestInformationObject:
    """Test object input and explicit-field tracking."""

    def test_explicit_fields_only_lists_supplied_values(self):
        spec = ObjectCreate(
            domain_id=uuid4(),
            object_type=ObjectType.DOCUMENT,
            title="Memo",
            classification=Classification.PUBLIC,
            is_woo_relevant=None,
        )
        assert spec.explicit_compliance_fields() == ["classification"]

    def test_to_object_defaults(self):
        obj = ObjectCreate(domain_id=uuid4(), object_type=ObjectType.EMAIL, title="Mail").to_object()
        assert obj.classification == Classification.INTERNAL
        assert obj.privacy_level == PrivacyLevel.NONE
        assert obj.is_woo_relevant is None
        assert obj.explicit_fields == []
        assert obj.version == 1

    def test_blank_title_rejected(self):
        with pytest.raises(PydanticValidationError):
            ObjectCreate(domain_id=uuid4(), object_type=ObjectType.EMAIL, title="  ")

    def test_tags_deduplicated_case_insensitively(self):
        obj = InformationObject(
            domain_id=uuid4(), object_type=ObjectType.DATA, title="T",
            tags=["Woo", "woo", " budget ", ""],
        )
        assert obj.tags == ["Woo", "budget"]
        obj.add_tag("BUDGET")
        assert obj.tags == ["Woo", "budget"]

    def test_field_value_dotted_path(self):
        obj = InformationObject(
            domain_id=uuid4(), object_type=ObjectType.DATA, title="T",
            metadata={"source": {"system": "dms"}},
        )
        assert obj.field_value("metadata.source.system") == "dms"
        assert obj.field_value("title") == "T"
        with pytest.raises(KeyError):
            obj.field_value("metadata.missing")
        with pytest.raises(KeyError):
            obj.field_value("nonexistent")


class TestEntityRelationship:
    """Test relationship observation bookkeeping."""

    def _rel(self):
        return EntityRelationship(
            source_entity_id=uuid4(),
            target_entity_id=uuid4(),
            relationship_type=RelationshipType.LOCATED_IN,
        )

    def test_self_loop_rejected(self):
        entity_id = uuid4()
        with pytest.raises(ValueError):
            EntityRelationship(
                source_entity_id=entity_id,
                target_entity_id=entity_id,
                relationship_type=RelationshipType.RELATES_TO,
            )

    def test_observe_sums_weight_per_object(self):
        rel = self._rel()
        assert rel.observe("a", 1.0, 0.8)
        assert rel.observe("b", 0.5, 0.5)
        assert rel.weight == pytest.approx(1.5)
        assert rel.confidence == pytest.approx((1.0 * 0.8 + 0.5 * 0.5) / 1.5)

    def test_observe_same_object_is_idempotent(self):
        rel = self._rel()
        rel.observe("a", 1.0, 0.8)
        assert rel.observe("a", 1.0, 0.8) is False
        assert rel.observe("a", 0.4, 0.9) is False
        assert rel.weight == pytest.approx(1.0)

    def test_observe_larger_contribution_replaces(self):
        rel = self._rel()
        rel.observe("a", 1.0, 0.8)
        assert rel.observe("a", 1.5, 0.8)
        assert rel.weight == pytest.approx(1.5)


class TestDomainRelation:
    """Test domain relation invariants."""

    def test_distinct_domains_required(self):
        domain_id = uuid4()
        with pytest.raises(ValueError):
            DomainRelation(from_domain_id=domain_id, to_domain_id=domain_id)

    def test_key_includes_discovery_method(self):
        rel = DomainRelation(
            from_domain_id=uuid4(), to_domain_id=uuid4(), discovery_method=DiscoveryMethod.MANUAL
        )
        assert rel.key[2] == DiscoveryMethod.MANUAL


class TestBusinessRule:
    """Test rule input, applicability and specificity."""

    def test_rule_create_parses_logic(self):
        rule = RuleCreate(name="Woo", rule_logic=SET_WOO).to_rule()
        assert rule.rule_logic["actions"][0]["field"] == "is_woo_relevant"
        assert rule.parsed_logic().when.value is True

    def test_rule_create_rejects_unknown_operator(self):
        with pytest.raises(PydanticValidationError):
            RuleCreate(name="Bad", rule_logic={"when": {"op": "xor"}, "actions": SET_WOO["actions"]})

    def test_rule_create_requires_actions(self):
        with pytest.raises(PydanticValidationError):
            RuleCreate(name="Bad", rule_logic={"when": {"op": "literal", "value": True}, "actions": []})

    def test_validity_window_must_be_ordered(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(PydanticValidationError):
            RuleCreate(name="W", rule_logic=SET_WOO, valid_from=now, valid_until=now)

    def test_applies_to_filters(self):
        rule = BusinessRule(
            name="R", rule_logic=SET_WOO,
            applies_to_domain_types=[DomainType.CASE],
            applies_to_object_types=[ObjectType.DECISION, ObjectType.DOCUMENT],
        )
        assert rule.applies_to(DomainType.CASE, ObjectType.DECISION)
        assert not rule.applies_to(DomainType.PROJECT, ObjectType.DECISION)
        assert not rule.applies_to(DomainType.CASE, ObjectType.EMAIL)

    def test_empty_filters_match_everything(self):
        rule = BusinessRule(name="R", rule_logic=SET_WOO)
        assert all(rule.applies_to(d, o) for d in DomainType for o in ObjectType)

    def test_validity_window(self):
        now = datetime.now(timezone.utc)
        rule = BusinessRule(
            name="R", rule_logic=SET_WOO,
            valid_from=now, valid_until=now + timedelta(days=1),
        )
        assert rule.is_valid_at(now)
        assert not rule.is_valid_at(now - timedelta(seconds=1))
        assert not rule.is_valid_at(now + timedelta(days=1))

    def test_specificity_ordering(self):
        general = BusinessRule(name="G", rule_logic=SET_WOO)
        three_types = BusinessRule(
            name="T", rule_logic=SET_WOO,
            applies_to_object_types=[ObjectType.DOCUMENT, ObjectType.EMAIL, ObjectType.CHAT],
        )
        one_type = BusinessRule(
            name="O", rule_logic=SET_WOO, applies_to_object_types=[ObjectType.DOCUMENT],
        )
        both = BusinessRule(
            name="B", rule_logic=SET_WOO,
            applies_to_domain_types=[DomainType.CASE],
            applies_to_object_types=[ObjectType.DOCUMENT],
        )
        assert both.specificity() > one_type.specificity() > three_types.specificity()
        assert three_types.specificity() > general.specificity()

    def test_execution_is_frozen(self):
        execution = RuleExecution(rule_id=uuid4(), object_id=uuid4(), domain_id=uuid4(), success=True)
        with pytest.raises(PydanticValidationError):
            execution.success = False


class TestSuggestionModels:
    """Test suggestion and trust helpers."""

    def test_new_suggestion_is_open(self):
        suggestion = AIMetadataSuggestion(
            target_kind=SuggestionTarget.OBJECT,
            target_id=uuid4(),
            field="privacy_level",
            suggested_value="special",
            confidence=0.6,
            source=SuggestionSource.CLASSIFICATION,
            pattern_key="privacy:special",
        )
        assert suggestion.is_open
        suggestion.status = SuggestionStatus.REJECTED
        assert not suggestion.is_open

    def test_total_reviews(self):
        trust = PatternTrust(pattern_key="p", accepted=2, modified=1, rejected=3)
        assert trust.total_reviews == 6
