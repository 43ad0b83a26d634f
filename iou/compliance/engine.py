"""
Compliance Rule Engine

Runs the active business rules against one information object:

1. Select rules whose applicability filters match the object's domain
   type and object type and whose validity window contains "now".
2. Evaluate every rule independently and concurrently. A fault in one
   rule is captured on that rule's execution and never affects the
   others or the object.
3. Resolve conflicts on derived fields. The most specific rule wins
   (more restricted filter dimensions, then fewer allowed values), ties
   go to the older rule, then the lower rule id. Losers are recorded in
   their execution payload and in the audit log.
4. Apply winning values to fields the creator did not state explicitly,
   persist low-confidence proposals as suggestions, and append one
   RuleExecution per rule.

Execution payload::

    {
      "matched": bool,
      "derived": {field: value},
      "suggestions": [{"field", "value", "confidence", "suggestion_id"}],
      "flags": [{"severity", "category", "message", "recommended_action"}],
      "applied": [field, ...],
      "skipped_explicit": [field, ...],
      "overridden_by": {field: rule_id},
      "error": str | None
    }
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from iou.compliance.assessor import ComplianceAssessor
from iou.compliance.expressions import (
    EvaluationContext,
    coerce_field_value,
    evaluate,
    truthy,
)
from iou.errors import RuleFault
from iou.feedback.suggestions import SuggestionService
from iou.feedback.trust import TrustWeighting
from iou.models import (
    AIMetadataSuggestion,
    BusinessRule,
    InformationDomain,
    InformationObject,
    PrivacyLevel,
    RuleExecution,
    SuggestionSource,
    SuggestionTarget,
)
from iou.models.rules import FlagAction, SetFieldAction, SuggestAction
from iou.pipeline.audit import AuditLog
from iou.storage.base import Repository

logger = logging.getLogger(__name__)

PRIVACY_RANK: dict[PrivacyLevel, int] = {
    PrivacyLevel.NONE: 0,
    PrivacyLevel.NORMAL: 1,
    PrivacyLevel.CRIMINAL: 2,
    PrivacyLevel.SPECIAL: 3,
}

# Base confidence of a privacy level detected from content terms
PRIVACY_DETECTION_CONFIDENCE: dict[PrivacyLevel, float] = {
    PrivacyLevel.NORMAL: 0.5,
    PrivacyLevel.CRIMINAL: 0.6,
    PrivacyLevel.SPECIAL: 0.6,
}


@dataclass
class RuleOutcome:
    """Result of evaluating one rule, before conflict resolution."""
    rule: BusinessRule
    matched: bool = False
    derived: dict[str, Any] = field(default_factory=dict)
    proposals: list[dict[str, Any]] = field(default_factory=list)
    flags: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class EvaluationReport:
    """What one engine pass did to an object."""
    object_id: UUID
    executions: list[RuleExecution] = field(default_factory=list)
    applied: dict[str, Any] = field(default_factory=dict)
    suggestions: list[AIMetadataSuggestion] = field(default_factory=list)
    flags: list[dict[str, Any]] = field(default_factory=list)
    conflicts: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def precedence(rule: BusinessRule) -> tuple:
    """Sort key: the first rule wins a conflict."""
    restricted, negated_allowed = rule.specificity()
    return -restricted, -negated_allowed, rule.created_at, str(rule.id)


class RuleEngine:
    """Evaluates business rules and applies their derived compliance metadata."""

    def __init__(
        self,
        repo: Repository,
        trust: TrustWeighting,
        suggestions: SuggestionService,
        audit: AuditLog,
        assessor: Optional[ComplianceAssessor] = None,
    ):
        self._repo = repo
        self._trust = trust
        self._suggestions = suggestions
        self._audit = audit
        self._assessor = assessor or ComplianceAssessor()

    async def applicable_rules(
        self, obj: InformationObject, domain: InformationDomain, now: datetime
    ) -> list[BusinessRule]:
        return [
            rule
            for rule in await self._repo.list_rules(active_only=True)
            if rule.applies_to(domain.domain_type, obj.object_type) and rule.is_valid_at(now)
        ]

    async def evaluate_object(
        self,
        obj: InformationObject,
        domain: InformationDomain,
        now: Optional[datetime] = None,
    ) -> EvaluationReport:
        """
        Run every applicable rule against *obj* and persist the outcome.

        *obj* is updated in place and written back when a derived field
        changed.
        """
        now = now or datetime.now(timezone.utc)
        report = EvaluationReport(object_id=obj.id)
        rules = await self.applicable_rules(obj, domain, now)
        ctx = EvaluationContext(obj=obj, domain=domain, now=now)

        outcomes: list[RuleOutcome] = list(
            await asyncio.gather(*(self._evaluate(rule, ctx) for rule in rules))
        )

        winners, overridden = self._resolve_conflicts(outcomes)
        applied_by: dict[UUID, list[str]] = defaultdict(list)
        skipped_by: dict[UUID, list[str]] = defaultdict(list)

        for field_name, winner in winners.items():
            if field_name in obj.explicit_fields:
                skipped_by[winner.rule.id].append(field_name)
                continue
            value = winner.derived[field_name]
            applied_by[winner.rule.id].append(field_name)
            if getattr(obj, field_name) != value:
                setattr(obj, field_name, value)
                report.applied[field_name] = value

        # Content classification only fills what neither the creator nor a rule set
        if "privacy_level" not in obj.explicit_fields and "privacy_level" not in winners:
            suggestion = await self._classify_privacy(obj, report)
            if suggestion is not None:
                report.suggestions.append(suggestion)

        if report.applied:
            obj.updated_at = datetime.now(timezone.utc)
            await self._repo.update_object(obj)

        proposal_ids: dict[UUID, list[dict[str, Any]]] = defaultdict(list)
        for outcome in outcomes:
            for proposal in outcome.proposals:
                if proposal["field"] in obj.explicit_fields:
                    continue
                suggestion = await self._suggestions.propose(
                    target_kind=SuggestionTarget.OBJECT,
                    target_id=obj.id,
                    field=proposal["field"],
                    suggested_value=to_jsonable_python(proposal["value"]),
                    confidence=proposal["confidence"],
                    source=SuggestionSource.RULE,
                    pattern_key=proposal["pattern_key"],
                    reasoning=proposal["reasoning"] or outcome.rule.name,
                )
                report.suggestions.append(suggestion)
                proposal_ids[outcome.rule.id].append(
                    {
                        "field": proposal["field"],
                        "value": to_jsonable_python(proposal["value"]),
                        "confidence": round(proposal["confidence"], 4),
                        "suggestion_id": str(suggestion.id),
                    }
                )

        for outcome in outcomes:
            rule_id = outcome.rule.id
            execution = RuleExecution(
                rule_id=rule_id,
                object_id=obj.id,
                domain_id=domain.id,
                success=outcome.error is None,
                executed_at=now,
                result={
                    "matched": outcome.matched,
                    "derived": to_jsonable_python(outcome.derived),
                    "suggestions": proposal_ids.get(rule_id, []),
                    "flags": outcome.flags,
                    "applied": applied_by.get(rule_id, []),
                    "skipped_explicit": skipped_by.get(rule_id, []),
                    "overridden_by": overridden.get(rule_id, {}),
                    "error": outcome.error,
                },
            )
            await self._repo.add_execution(execution)
            report.executions.append(execution)
            report.flags.extend(outcome.flags)

        report.conflicts = await self._audit_conflicts(obj, winners, outcomes, overridden)
        await self._audit.record(
            "rules.evaluated",
            "rule_engine",
            "information_object",
            obj.id,
            details={
                "rules": len(rules),
                "failed": sum(1 for o in outcomes if o.error is not None),
                "applied": sorted(report.applied),
                "conflicts": report.conflicts,
            },
        )
        return report

    # ------------------------------------------------------------------ #
    # Single rule
    # ------------------------------------------------------------------ #

    async def _evaluate(self, rule: BusinessRule, ctx: EvaluationContext) -> RuleOutcome:
        outcome = RuleOutcome(rule=rule)
        try:
            logic = rule.parsed_logic()
        except PydanticValidationError as e:
            outcome.error = f"malformed rule logic: {e.error_count()} error(s)"
            logger.warning("Rule %s (%s) has malformed logic", rule.id, rule.name)
            return outcome

        try:
            outcome.matched = truthy(logic.when, ctx)
            if not outcome.matched:
                return outcome
            for action in logic.actions:
                await self._run_action(rule, action, ctx, outcome)
        except RuleFault as e:
            outcome.error = str(e)
            outcome.derived.clear()
            outcome.proposals.clear()
            logger.warning("Rule %s (%s) faulted: %s", rule.id, rule.name, e)
        except Exception as e:
            outcome.error = f"{type(e).__name__}: {e}"
            outcome.derived.clear()
            outcome.proposals.clear()
            logger.exception("Rule %s (%s) failed unexpectedly", rule.id, rule.name)
        return outcome

    async def _run_action(
        self,
        rule: BusinessRule,
        action: Any,
        ctx: EvaluationContext,
        outcome: RuleOutcome,
    ) -> None:
        if isinstance(action, SetFieldAction):
            outcome.derived[action.field] = coerce_field_value(
                action.field, evaluate(action.value, ctx)
            )
        elif isinstance(action, SuggestAction):
            value = coerce_field_value(action.field, evaluate(action.value, ctx))
            pattern_key = f"rule:{rule.id}:{action.field}"
            confident, confidence = await self._trust.is_confident(pattern_key, action.confidence)
            if confident:
                outcome.derived[action.field] = value
            else:
                outcome.proposals.append({
                    "field": action.field,
                    "value": value,
                    "confidence": confidence,
                    "pattern_key": pattern_key,
                    "reasoning": action.reasoning,
                })
        elif isinstance(action, FlagAction):
            outcome.flags.append({
                "rule_id": str(rule.id),
                "severity": action.severity.value,
                "category": action.category,
                "message": action.message,
                "recommended_action": action.recommended_action,
            })

    # ------------------------------------------------------------------ #
    # Conflicts
    # ------------------------------------------------------------------ #

    @staticmethod
    def _resolve_conflicts(
        outcomes: list[RuleOutcome],
    ) -> tuple[dict[str, RuleOutcome], dict[UUID, dict[str, str]]]:
        """Pick one rule per derived field; report which rules lost."""
        winners: dict[str, RuleOutcome] = {}
        overridden: dict[UUID, dict[str, str]] = defaultdict(dict)

        ranked = sorted(
            (o for o in outcomes if o.error is None and o.derived),
            key=lambda o: precedence(o.rule),
        )
        for outcome in ranked:
            for field_name, value in outcome.derived.items():
                winner = winners.get(field_name)
                if winner is None:
                    winners[field_name] = outcome
                elif winner.derived[field_name] != value:
                    overridden[outcome.rule.id][field_name] = str(winner.rule.id)
        return winners, dict(overridden)

    async def _audit_conflicts(
        self,
        obj: InformationObject,
        winners: dict[str, RuleOutcome],
        outcomes: list[RuleOutcome],
        overridden: dict[UUID, dict[str, str]],
    ) -> int:
        count = 0
        by_id = {o.rule.id: o for o in outcomes}
        for loser_id, fields in overridden.items():
            loser = by_id[loser_id]
            for field_name, winner_id in fields.items():
                count += 1
                await self._audit.record(
                    "rule_conflict",
                    "rule_engine",
                    "information_object",
                    obj.id,
                    details={
                        "field": field_name,
                        "winner_rule_id": winner_id,
                        "loser_rule_id": str(loser_id),
                        "winner_value": to_jsonable_python(winners[field_name].derived[field_name]),
                        "loser_value": to_jsonable_python(loser.derived[field_name]),
                    },
                )
        if count:
            logger.info("Resolved %d rule conflict(s) on object %s", count, obj.id)
        return count

    # ------------------------------------------------------------------ #
    # Content classification
    # ------------------------------------------------------------------ #

    async def _classify_privacy(
        self, obj: InformationObject, report: EvaluationReport
    ) -> Optional[AIMetadataSuggestion]:
        """Raise the privacy level when the content suggests a stricter one."""
        text = " ".join(p for p in (obj.title, obj.description, obj.content_text) if p)
        detected = self._assessor.assess_privacy_level(text)
        if PRIVACY_RANK[detected] <= PRIVACY_RANK[obj.privacy_level]:
            return None

        pattern_key = f"privacy:{detected.value}"
        confident, confidence = await self._trust.is_confident(
            pattern_key, PRIVACY_DETECTION_CONFIDENCE[detected]
        )
        if confident:
            obj.privacy_level = detected
            report.applied["privacy_level"] = detected
            return None

        return await self._suggestions.propose(
            target_kind=SuggestionTarget.OBJECT,
            target_id=obj.id,
            field="privacy_level",
            suggested_value=detected.value,
            confidence=confidence,
            source=SuggestionSource.CLASSIFICATION,
            pattern_key=pattern_key,
            reasoning=f"Content mentions {detected.value} personal data terms",
        )
