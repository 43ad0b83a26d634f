"""
Built-in compliance rules.

The retention table follows the provincial selection list: decisions are
kept 20 years and transferred to the archive, policy documents 15 years
(permanent), everything else is destroyed after its period. Each table
row becomes one rule scoped to its (domain type, object type); the rule
engine's specificity ordering then picks the most specific row, exactly
as a first-match walk over the table would.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from iou.models import (
    ArchivalValue,
    BusinessRule,
    Classification,
    DomainType,
    IssueSeverity,
    ObjectType,
    PrivacyLevel,
)

SELECTION_LIST_REF = "Selectielijst provincies 2024"


@dataclass(frozen=True)
class RetentionPolicy:
    years: int
    archival_value: ArchivalValue
    selection_list_ref: str = SELECTION_LIST_REF


# (domain type, object type) -> policy, most specific first. None matches any.
RETENTION_TABLE: list[tuple[Optional[DomainType], Optional[ObjectType], RetentionPolicy]] = [
    (None, ObjectType.DECISION, RetentionPolicy(20, ArchivalValue.PERMANENT)),
    (DomainType.CASE, ObjectType.DOCUMENT, RetentionPolicy(10, ArchivalValue.TEMPORARY)),
    (DomainType.CASE, ObjectType.EMAIL, RetentionPolicy(5, ArchivalValue.TEMPORARY)),
    (DomainType.PROJECT, ObjectType.DOCUMENT, RetentionPolicy(10, ArchivalValue.TEMPORARY)),
    (DomainType.PROJECT, None, RetentionPolicy(7, ArchivalValue.TEMPORARY)),
    (DomainType.POLICY, ObjectType.DOCUMENT, RetentionPolicy(15, ArchivalValue.PERMANENT)),
    (DomainType.POLICY, None, RetentionPolicy(10, ArchivalValue.TEMPORARY)),
    (DomainType.EXPERTISE, None, RetentionPolicy(5, ArchivalValue.TEMPORARY)),
]

FALLBACK_RETENTION = RetentionPolicy(7, ArchivalValue.TEMPORARY)

# Event that starts the retention clock per domain type
RETENTION_TRIGGERS: dict[DomainType, str] = {
    DomainType.CASE: "case_closed",
    DomainType.PROJECT: "project_closed",
    DomainType.POLICY: "policy_superseded",
    DomainType.EXPERTISE: "creation",
}


def retention_for(domain_type: DomainType, object_type: ObjectType) -> RetentionPolicy:
    """First matching row of the retention table."""
    for table_domain, table_object, policy in RETENTION_TABLE:
        if table_domain not in (None, domain_type):
            continue
        if table_object not in (None, object_type):
            continue
        return policy
    return FALLBACK_RETENTION


# ---------------------------------------------------------------------------
# Expression helpers
# ---------------------------------------------------------------------------

def _field(path: str) -> dict[str, Any]:
    return {"op": "field", "path": path}


def _literal(value: Any) -> dict[str, Any]:
    return {"op": "literal", "value": value}


def _eq(path: str, value: Any) -> dict[str, Any]:
    return {"op": "eq", "left": _field(path), "right": _literal(value)}


def _set(field: str, value: dict[str, Any]) -> dict[str, Any]:
    return {"kind": "set_field", "field": field, "value": value}


def _retention_rule(
    domain_type: Optional[DomainType],
    object_type: Optional[ObjectType],
    policy: RetentionPolicy,
) -> BusinessRule:
    scope = " ".join(
        part.value for part in (domain_type, object_type) if part is not None
    ) or "all"
    actions = [_set("retention_period", _literal(policy.years))]
    if policy.archival_value == ArchivalValue.PERMANENT:
        # Explicit None so a less specific temporary row cannot set one.
        actions.append(_set("retention_trigger", _literal("transfer_to_archive")))
        actions.append(_set("destruction_date", _literal(None)))
    else:
        trigger = RETENTION_TRIGGERS.get(domain_type, "creation") if domain_type else "creation"
        actions.append(_set("retention_trigger", _literal(trigger)))
        actions.append(
            _set(
                "destruction_date",
                {
                    "op": "date_add",
                    "base": _field("created_at"),
                    "years": policy.years,
                },
            )
        )

    return BusinessRule(
        name=f"Retention: {scope}",
        description=(
            f"{policy.years} years, {policy.archival_value.value} "
            f"({policy.selection_list_ref})"
        ),
        rule_logic={"when": _literal(True), "actions": actions},
        applies_to_domain_types=[domain_type] if domain_type else [],
        applies_to_object_types=[object_type] if object_type else [],
    )


def default_rules(base_time: Optional[datetime] = None) -> list[BusinessRule]:
    """
    The built-in rule set, with strictly increasing creation times.

    Creation order matters: rules with equally specific filters are
    ordered by age, so the decision row outranks a domain-wide row.
    """
    rules: list[BusinessRule] = [
        BusinessRule(
            name="Public information is Woo relevant",
            rule_logic={
                "when": _eq("classification", Classification.PUBLIC.value),
                "actions": [_set("is_woo_relevant", _literal(True))],
            },
        ),
        BusinessRule(
            name="Decisions are Woo relevant",
            rule_logic={
                "when": _literal(True),
                "actions": [_set("is_woo_relevant", _literal(True))],
            },
            applies_to_object_types=[ObjectType.DECISION],
        ),
        BusinessRule(
            name="Special personal data is not public",
            description="Art. 9/10 AVG data must not carry an open classification",
            rule_logic={
                "when": {
                    "op": "and",
                    "args": [
                        {
                            "op": "in",
                            "value": _field("privacy_level"),
                            "options": [PrivacyLevel.SPECIAL.value, PrivacyLevel.CRIMINAL.value],
                        },
                        _eq("classification", Classification.PUBLIC.value),
                    ],
                },
                "actions": [
                    _set("classification", _literal(Classification.CONFIDENTIAL.value)),
                    {
                        "kind": "flag",
                        "severity": IssueSeverity.HIGH.value,
                        "category": "AVG",
                        "message": "Special category personal data in a public record",
                        "recommended_action": "Restrict the classification or redact the data",
                    },
                ],
            },
        ),
        BusinessRule(
            name="Woo relevant decisions need a publication date",
            rule_logic={
                "when": {
                    "op": "and",
                    "args": [
                        _eq("is_woo_relevant", True),
                        {"op": "not", "arg": {"op": "exists", "path": "woo_publication_date"}},
                    ],
                },
                "actions": [
                    {
                        "kind": "flag",
                        "severity": IssueSeverity.MEDIUM.value,
                        "category": "Woo",
                        "message": "Woo relevant decision has no publication date",
                        "recommended_action": "Schedule publication under the Woo",
                    }
                ],
            },
            applies_to_object_types=[ObjectType.DECISION],
        ),
    ]
    rules.extend(_retention_rule(d, o, p) for d, o, p in RETENTION_TABLE)
    rules.append(_retention_rule(None, None, FALLBACK_RETENTION))

    start = base_time or datetime.now(timezone.utc)
    for offset, rule in enumerate(rules):
        rule.created_at = start + timedelta(microseconds=offset)
    return rules
