"""
Tests for the compliance layer.

Tests cover:
- Expression evaluation and its faults
- Rule selection (applicability, activity, validity window)
- Conflict resolution by specificity and age
- Fault isolation between rules
- Explicit fields and low-confidence proposals
- The built-in Woo, AVG and retention rules
- Content-based assessment
"""

from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest

from iou.compliance.assessor import ComplianceAssessor, RegimeStatus
from iou.compliance.defaults import default_rules, retention_for
from iou.compliance.engine import precedence
from iou.compliance.expressions import (
    EvaluationContext,
    add_years,
    coerce_field_value,
    evaluate,
    truthy,
)
from iou.errors import RuleFault
from iou.models import (
    BusinessRule,
    Classification,
    DomainType,
    InformationDomain,
    InformationObject,
    IssueSeverity,
    ObjectType,
    PrivacyLevel,
    SuggestionSource,
)
from iou.models.rules import (
    CompareExpr,
    ContainsExpr,
    DateAddExpr,
    ExistsExpr,
    FieldExpr,
    NowExpr,
    ValueExpr,
)

CREATED = datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)


def _literal(value):
    return {"op": "literal", "value": value}


def _set(field, value):
    return {"kind": "set_field", "field": field, "value": _literal(value)}


def _rule(name, *actions, when=None, **kwargs):
    return BusinessRule(
        name=name,
        rule_logic={"when": when or _literal(True), "actions": list(actions)},
        **kwargs,
    )


def _domain(domain_type=DomainType.CASE):
    return InformationDomain(name="Bezwaar 2024-17", domain_type=domain_type, organization_id=uuid4())


def _object(domain, object_type=ObjectType.DOCUMENT, **kwargs):
    kwargs.setdefault("title", "Memo")
    kwargs.setdefault("created_at", CREATED)
    return InformationObject(domain_id=domain.id, object_type=object_type, **kwargs)


async def _store(service, domain, obj):
    await service.repo.add_domain(domain)
    await service.repo.add_object(obj)


# ============================================================================
# Expressions
# ============================================================================

class TestExpressions:
    """Test the expression interpreter."""

    @pytest.fixture
    def ctx(self):
        domain = _domain()
        obj = _object(
            domain,
            classification=Classification.PUBLIC,
            tags=["woo", "Budget"],
            retention_period=5,
        )
        return EvaluationContext(obj=obj, domain=domain, now=CREATED + timedelta(days=1))

    def test_compare_enum_with_literal(self, ctx):
        node = CompareExpr(op="eq", left=FieldExpr(path="classification"), right=ValueExpr(value="public"))
        assert evaluate(node, ctx) is True

    def test_domain_fields(self, ctx):
        node = CompareExpr(op="eq", left=FieldExpr(path="domain.domain_type"), right=ValueExpr(value="case"))
        assert evaluate(node, ctx) is True

    def test_compare_datetime_with_iso_string(self, ctx):
        node = CompareExpr(op="lt", left=FieldExpr(path="created_at"), right=ValueExpr(value="2030-01-01T00:00:00"))
        assert evaluate(node, ctx) is True

    def test_now(self, ctx):
        node = CompareExpr(op="gt", left=NowExpr(), right=FieldExpr(path="created_at"))
        assert evaluate(node, ctx) is True

    def test_incomparable_values_fault(self, ctx):
        node = CompareExpr(op="lt", left=ValueExpr(value="a"), right=ValueExpr(value=1))
        with pytest.raises(RuleFault):
            evaluate(node, ctx)

    def test_contains_is_case_insensitive(self, ctx):
        node = ContainsExpr(collection=FieldExpr(path="tags"), item=ValueExpr(value="BUDGET"))
        assert evaluate(node, ctx) is True

    def test_contains_in_text(self, ctx):
        node = ContainsExpr(collection=FieldExpr(path="title"), item=ValueExpr(value="mem"))
        assert evaluate(node, ctx) is True

    def test_exists(self, ctx):
        assert evaluate(ExistsExpr(path="retention_period"), ctx) is True
        assert evaluate(ExistsExpr(path="woo_publication_date"), ctx) is False
        assert evaluate(ExistsExpr(path="nonexistent"), ctx) is False

    def test_unknown_field_faults(self, ctx):
        with pytest.raises(RuleFault) as exc_info:
            evaluate(FieldExpr(path="nonexistent"), ctx)
        assert str(exc_info.value) == "unknown field 'nonexistent' (at field)"

    def test_date_add_with_years_field(self, ctx):
        node = DateAddExpr(base=FieldExpr(path="created_at"), years_field="retention_period")
        assert evaluate(node, ctx).date() == date(2029, 2, 28)

    def test_date_add_with_unset_years_field(self, ctx):
        node = DateAddExpr(base=FieldExpr(path="created_at"), years_field="woo_publication_date")
        with pytest.raises(RuleFault):
            evaluate(node, ctx)

    def test_truthy_requires_boolean(self, ctx):
        assert truthy(ValueExpr(value=None), ctx) is False
        with pytest.raises(RuleFault):
            truthy(ValueExpr(value="yes"), ctx)

    def test_add_years_leap_day(self):
        assert add_years(date(2024, 2, 29), 1) == date(2025, 2, 28)
        assert add_years(date(2024, 2, 29), 4) == date(2028, 2, 29)
        assert add_years(date(2024, 3, 1), 20) == date(2044, 3, 1)

    def test_coerce_field_value(self):
        assert coerce_field_value("classification", "public") == Classification.PUBLIC
        assert coerce_field_value("destruction_date", CREATED) == date(2024, 2, 29)
        assert coerce_field_value("destruction_date", None) is None
        with pytest.raises(RuleFault):
            coerce_field_value("title", "New title")
        with pytest.raises(RuleFault):
            coerce_field_value("classification", "top secret")


# ============================================================================
# Engine
# ============================================================================

class TestRuleSelection:
    """Test which rules run against an object."""

    @pytest.mark.asyncio
    async def test_filters_activity_and_window(self, service):
        domain = _domain(DomainType.CASE)
        obj = _object(domain)
        await _store(service, domain, obj)
        now = datetime.now(timezone.utc)

        runs = _rule("Runs", _set("retention_period", 3))
        await service.repo.add_rule(runs)
        await service.repo.add_rule(
            _rule("Decisions only", _set("retention_period", 4),
                  applies_to_object_types=[ObjectType.DECISION])
        )
        await service.repo.add_rule(
            _rule("Policy only", _set("retention_period", 4),
                  applies_to_domain_types=[DomainType.POLICY])
        )
        await service.repo.add_rule(_rule("Inactive", _set("retention_period", 4), is_active=False))
        await service.repo.add_rule(
            _rule("Expired", _set("retention_period", 4), valid_until=now - timedelta(days=1))
        )
        await service.repo.add_rule(
            _rule("Not yet", _set("retention_period", 4), valid_from=now + timedelta(days=1))
        )

        report = await service.rules.evaluate_object(obj, domain, now)

        assert [e.rule_id for e in report.executions] == [runs.id]
        assert report.applied == {"retention_period": 3}
        stored = await service.repo.get_object(obj.id)
        assert stored.retention_period == 3

    @pytest.mark.asyncio
    async def test_executions_are_appended(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        await service.repo.add_rule(_rule("Runs", _set("retention_period", 3)))

        await service.rules.evaluate_object(obj, domain)
        second = await service.rules.evaluate_object(obj, domain)

        assert second.applied == {}
        assert len(await service.repo.list_executions(object_id=obj.id)) == 2


class TestConflicts:
    """Test conflict resolution between rules deriving the same field."""

    def test_precedence_order(self):
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        general = _rule("G", _set("retention_period", 1), created_at=t0)
        narrow = _rule("N", _set("retention_period", 1), created_at=t0 + timedelta(days=1),
                       applies_to_object_types=[ObjectType.DOCUMENT])
        wide = _rule("W", _set("retention_period", 1), created_at=t0,
                     applies_to_object_types=[ObjectType.DOCUMENT, ObjectType.EMAIL])
        ordered = sorted([general, wide, narrow], key=precedence)
        assert [r.name for r in ordered] == ["N", "W", "G"]

    @pytest.mark.asyncio
    async def test_specific_rule_wins(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        general = _rule("Default retention", _set("retention_period", 7))
        specific = _rule("Document retention", _set("retention_period", 10),
                         applies_to_object_types=[ObjectType.DOCUMENT])
        await service.repo.add_rule(general)
        await service.repo.add_rule(specific)

        report = await service.rules.evaluate_object(obj, domain)

        assert report.applied == {"retention_period": 10}
        assert report.conflicts == 1
        by_rule = {e.rule_id: e.result for e in report.executions}
        assert by_rule[general.id]["overridden_by"] == {"retention_period": str(specific.id)}
        assert by_rule[specific.id]["applied"] == ["retention_period"]

        conflicts = await service.audit.entries(action="rule_conflict")
        assert len(conflicts) == 1
        assert conflicts[0].details["winner_rule_id"] == str(specific.id)
        assert conflicts[0].details["loser_value"] == 7

    @pytest.mark.asyncio
    async def test_older_rule_wins_a_tie(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        newer = _rule("Newer", _set("retention_period", 2), created_at=t0 + timedelta(hours=1))
        older = _rule("Older", _set("retention_period", 1), created_at=t0)
        await service.repo.add_rule(newer)
        await service.repo.add_rule(older)

        report = await service.rules.evaluate_object(obj, domain)
        assert report.applied == {"retention_period": 1}

    @pytest.mark.asyncio
    async def test_agreeing_rules_do_not_conflict(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        await service.repo.add_rule(_rule("A", _set("is_woo_relevant", True)))
        await service.repo.add_rule(_rule("B", _set("is_woo_relevant", True),
                                          applies_to_object_types=[ObjectType.DOCUMENT]))

        report = await service.rules.evaluate_object(obj, domain)
        assert report.conflicts == 0
        assert all(e.result["overridden_by"] == {} for e in report.executions)


class TestFaults:
    """Test that a failing rule never affects the others."""

    @pytest.mark.asyncio
    async def test_fault_is_captured_per_rule(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        broken = _rule(
            "Broken",
            _set("retention_period", 99),
            when={"op": "eq", "left": {"op": "field", "path": "nonexistent"}, "right": _literal(1)},
        )
        healthy = _rule("Healthy", _set("is_woo_relevant", True))
        await service.repo.add_rule(broken)
        await service.repo.add_rule(healthy)

        report = await service.rules.evaluate_object(obj, domain)

        by_rule = {e.rule_id: e for e in report.executions}
        assert by_rule[broken.id].success is False
        assert by_rule[broken.id].result["error"] == "unknown field 'nonexistent' (at field)"
        assert by_rule[healthy.id].success is True
        assert report.applied == {"is_woo_relevant": True}

    @pytest.mark.asyncio
    async def test_fault_in_action_discards_partial_values(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        rule = _rule(
            "Half done",
            _set("retention_period", 5),
            {"kind": "set_field", "field": "title", "value": _literal("Renamed")},
        )
        await service.repo.add_rule(rule)

        report = await service.rules.evaluate_object(obj, domain)

        assert report.applied == {}
        assert report.executions[0].result["derived"] == {}
        assert "cannot be derived" in report.executions[0].result["error"]

    @pytest.mark.asyncio
    async def test_malformed_logic(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        await service.repo.add_rule(
            BusinessRule(name="Garbled", rule_logic={"when": {"op": "xor"}, "actions": []})
        )

        report = await service.rules.evaluate_object(obj, domain)

        assert report.executions[0].success is False
        assert report.executions[0].result["error"].startswith("malformed rule logic")


class TestDerivedValues:
    """Test explicit fields, proposals and flags."""

    @pytest.mark.asyncio
    async def test_explicit_field_is_never_overwritten(self, service):
        domain = _domain()
        obj = _object(domain, is_woo_relevant=False, explicit_fields=["is_woo_relevant"])
        await _store(service, domain, obj)
        await service.repo.add_rule(_rule("Woo", _set("is_woo_relevant", True)))

        report = await service.rules.evaluate_object(obj, domain)

        assert obj.is_woo_relevant is False
        assert report.applied == {}
        assert report.executions[0].result["skipped_explicit"] == ["is_woo_relevant"]

    @pytest.mark.asyncio
    async def test_low_confidence_suggest_becomes_suggestion(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        rule = _rule("Maybe public", {
            "kind": "suggest",
            "field": "classification",
            "value": _literal("public"),
            "confidence": 0.5,
            "reasoning": "Looks like a press release",
        })
        await service.repo.add_rule(rule)

        report = await service.rules.evaluate_object(obj, domain)

        assert obj.classification == Classification.INTERNAL
        assert len(report.suggestions) == 1
        suggestion = report.suggestions[0]
        assert suggestion.source == SuggestionSource.RULE
        assert suggestion.pattern_key == f"rule:{rule.id}:classification"
        assert suggestion.suggested_value == "public"
        assert report.executions[0].result["suggestions"][0]["suggestion_id"] == str(suggestion.id)

        # Re-evaluation does not propose the same value twice
        await service.rules.evaluate_object(obj, domain)
        assert len(await service.suggestions.list()) == 1

    @pytest.mark.asyncio
    async def test_confident_suggest_is_applied(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        await service.repo.add_rule(_rule("Surely public", {
            "kind": "suggest",
            "field": "classification",
            "value": _literal("public"),
            "confidence": 0.9,
        }))

        report = await service.rules.evaluate_object(obj, domain)
        assert report.applied == {"classification": Classification.PUBLIC}
        assert report.suggestions == []

    @pytest.mark.asyncio
    async def test_flags_are_reported(self, service):
        domain = _domain()
        obj = _object(domain)
        await _store(service, domain, obj)
        await service.repo.add_rule(_rule("Check", {
            "kind": "flag",
            "severity": "high",
            "category": "Archiefwet",
            "message": "Missing retention",
        }))

        report = await service.rules.evaluate_object(obj, domain)
        assert report.flags[0]["category"] == "Archiefwet"
        assert report.flags[0]["severity"] == IssueSeverity.HIGH.value

    @pytest.mark.asyncio
    async def test_privacy_terms_become_classification_suggestion(self, service):
        domain = _domain()
        obj = _object(domain, content_text="Het dossier bevat een strafblad.")
        await _store(service, domain, obj)

        report = await service.rules.evaluate_object(obj, domain)

        assert obj.privacy_level == PrivacyLevel.NONE
        assert len(report.suggestions) == 1
        assert report.suggestions[0].field == "privacy_level"
        assert report.suggestions[0].pattern_key == "privacy:criminal"
        assert report.suggestions[0].source == SuggestionSource.CLASSIFICATION


# ============================================================================
# Built-in rules
# ============================================================================

class TestDefaultRules:
    """Test the built-in Woo, AVG and retention rule set."""

    @pytest.mark.asyncio
    async def test_install_only_once(self, service):
        installed = await service.install_default_rules()
        assert len(installed) == len(default_rules())
        assert await service.install_default_rules() == []

    def test_creation_times_strictly_increase(self):
        rules = default_rules()
        assert all(a.created_at < b.created_at for a, b in zip(rules, rules[1:]))

    def test_retention_table_lookup(self):
        assert retention_for(DomainType.CASE, ObjectType.DECISION).years == 20
        assert retention_for(DomainType.CASE, ObjectType.EMAIL).years == 5
        assert retention_for(DomainType.POLICY, ObjectType.DOCUMENT).years == 15
        assert retention_for(DomainType.CASE, ObjectType.CHAT).years == 7

    @pytest.mark.asyncio
    async def test_public_document_is_woo_relevant(self, service):
        await service.install_default_rules()
        domain = _domain(DomainType.PROJECT)
        obj = _object(domain, classification=Classification.PUBLIC, explicit_fields=["classification"])
        await _store(service, domain, obj)

        await service.rules.evaluate_object(obj, domain)

        assert obj.is_woo_relevant is True
        assert obj.retention_period == 10
        assert obj.retention_trigger == "project_closed"
        assert obj.destruction_date == date(2034, 2, 28)

    @pytest.mark.asyncio
    async def test_case_email_retention(self, service):
        await service.install_default_rules()
        domain = _domain(DomainType.CASE)
        obj = _object(domain, object_type=ObjectType.EMAIL)
        await _store(service, domain, obj)

        await service.rules.evaluate_object(obj, domain)

        assert obj.retention_period == 5
        assert obj.retention_trigger == "case_closed"
        assert obj.destruction_date == add_years(CREATED, 5).date()
        assert obj.is_woo_relevant is None

    @pytest.mark.asyncio
    async def test_decision_is_archived_permanently(self, service):
        await service.install_default_rules()
        domain = _domain(DomainType.CASE)
        obj = _object(domain, object_type=ObjectType.DECISION)
        await _store(service, domain, obj)

        report = await service.rules.evaluate_object(obj, domain)

        assert obj.is_woo_relevant is True
        assert obj.retention_period == 20
        assert obj.retention_trigger == "transfer_to_archive"
        assert obj.destruction_date is None
        assert report.conflicts >= 3

        # Once Woo relevant, the missing publication date is flagged
        again = await service.rules.evaluate_object(obj, domain)
        assert [f["category"] for f in again.flags] == ["Woo"]

    @pytest.mark.asyncio
    async def test_special_data_is_not_public(self, service):
        await service.install_default_rules()
        domain = _domain(DomainType.CASE)
        obj = _object(
            domain,
            classification=Classification.PUBLIC,
            privacy_level=PrivacyLevel.SPECIAL,
            explicit_fields=["privacy_level"],
        )
        await _store(service, domain, obj)

        report = await service.rules.evaluate_object(obj, domain)

        assert obj.classification == Classification.CONFIDENTIAL
        assert any(f["category"] == "AVG" and f["severity"] == "high" for f in report.flags)


# ============================================================================
# Assessment
# ============================================================================

class TestComplianceAssessor:
    """Test advisory content scoring."""

    @pytest.fixture
    def assessor(self):
        return ComplianceAssessor()

    def test_decision_is_woo_relevant(self, assessor):
        result = assessor.assess_woo_relevance("", ObjectType.DECISION, Classification.INTERNAL)
        assert result.is_relevant
        assert result.confidence >= 0.8

    def test_plain_memo_is_not(self, assessor):
        result = assessor.assess_woo_relevance("Notulen", ObjectType.DOCUMENT, Classification.INTERNAL)
        assert not result.is_relevant

    def test_privacy_level_prefers_most_sensitive(self, assessor):
        assert assessor.assess_privacy_level("medisch dossier met strafblad") == PrivacyLevel.SPECIAL
        assert assessor.assess_privacy_level("een strafblad") == PrivacyLevel.CRIMINAL
        assert assessor.assess_privacy_level("het BSN van de aanvrager") == PrivacyLevel.NORMAL
        assert assessor.assess_privacy_level("Notulen") == PrivacyLevel.NONE

    def test_full_assessment(self, assessor):
        domain = _domain()
        obj = _object(domain, object_type=ObjectType.DECISION, content_text="Besluit op de aanvraag")
        result = assessor.assess(obj)

        assert result.woo == RegimeStatus.ACTION_REQUIRED
        assert result.avg == RegimeStatus.COMPLIANT
        assert result.archive == RegimeStatus.MISSING_RETENTION_PERIOD
        assert result.overall_score == pytest.approx(1.0 - 0.15 - 0.05)

    def test_compliant_record(self, assessor):
        domain = _domain()
        obj = _object(domain, title="Notulen", is_woo_relevant=False, retention_period=7)
        result = assessor.assess(obj)
        assert result.issues == []
        assert result.overall_score == pytest.approx(1.0)
