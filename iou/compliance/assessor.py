"""
Content-based Compliance Assessment

Scores an information object against the three regimes it must satisfy:

- Woo (Wet open overheid): is the record subject to active disclosure?
- AVG (GDPR): does the content carry personal data, and of which kind?
- Archiefwet: is a retention period set?

The assessment is advisory. It produces issues with a severity and an
overall score; the rule engine turns detected privacy levels into
suggestions, but never overrides what the creator stated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from iou.models import (
    Classification,
    InformationObject,
    IssueSeverity,
    ObjectType,
    PrivacyLevel,
)


# ---------------------------------------------------------------------------
# Term lists
# ---------------------------------------------------------------------------

WOO_TERMS: list[tuple[str, float]] = [
    ("besluit", 0.15),
    ("vergunning", 0.12),
    ("beschikking", 0.12),
    ("bezwaar", 0.10),
    ("subsidie", 0.08),
    ("aanvraag", 0.05),
    ("beleid", 0.05),
    ("advies", 0.05),
]

# Art. 9 AVG
SPECIAL_CATEGORY_TERMS = [
    "gezondheidsgegeven", "medisch", "religie", "geloof", "politieke",
    "vakbond", "seksueel", "biometrisch", "genetisch", "ras", "etnisch",
]

# Art. 10 AVG
CRIMINAL_TERMS = [
    "strafblad", "veroordeling", "delict", "strafrechtelijk", "verdacht", "boete",
]

PERSONAL_DATA_TERMS = [
    "bsn", "burgerservicenummer", "geboortedatum", "adres",
    "telefoonnummer", "e-mail", "persoonsgegevens",
]

ISSUE_WEIGHTS: dict[IssueSeverity, float] = {
    IssueSeverity.CRITICAL: 0.4,
    IssueSeverity.HIGH: 0.25,
    IssueSeverity.MEDIUM: 0.15,
    IssueSeverity.LOW: 0.05,
}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class DisclosureClass(str, Enum):
    PUBLIC = "public"
    PARTIALLY_PUBLIC = "partially_public"
    NOT_ASSESSED = "not_assessed"


class RegimeStatus(str, Enum):
    COMPLIANT = "compliant"
    ACTION_REQUIRED = "action_required"
    PENDING_REVIEW = "pending_review"
    NOT_APPLICABLE = "not_applicable"
    MISSING_RETENTION_PERIOD = "missing_retention_period"


@dataclass
class WooAssessment:
    is_relevant: bool
    confidence: float
    suggested_class: DisclosureClass
    reasons: list[str] = field(default_factory=list)


@dataclass
class ComplianceIssue:
    severity: IssueSeverity
    category: str
    description: str
    recommended_action: str


@dataclass
class ComplianceAssessment:
    """Outcome of a full assessment of one object."""
    object_id: str
    woo: RegimeStatus
    avg: RegimeStatus
    archive: RegimeStatus
    detected_privacy_level: PrivacyLevel
    woo_score: float
    overall_score: float
    issues: list[ComplianceIssue] = field(default_factory=list)
    assessed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Assessor
# ---------------------------------------------------------------------------

def _content_of(obj: InformationObject) -> str:
    return " ".join(p for p in (obj.title, obj.description, obj.content_text) if p)


class ComplianceAssessor:
    """Stateless scorer; safe to share between workers."""

    def assess_woo_relevance(
        self,
        content: str,
        object_type: ObjectType,
        classification: Classification,
    ) -> WooAssessment:
        score = 0.0
        reasons: list[str] = []

        if object_type == ObjectType.DECISION:
            score += 0.8
            reasons.append("decisions are Woo relevant by default")
        if classification == Classification.PUBLIC:
            score += 0.3
            reasons.append("public classification")

        lowered = content.lower()
        for term, weight in WOO_TERMS:
            if term in lowered:
                score += weight
                reasons.append(term)

        score = min(score, 1.0)
        if score > 0.7:
            suggested = DisclosureClass.PUBLIC
        elif score > 0.4:
            suggested = DisclosureClass.PARTIALLY_PUBLIC
        else:
            suggested = DisclosureClass.NOT_ASSESSED

        return WooAssessment(
            is_relevant=score > 0.5,
            confidence=score,
            suggested_class=suggested,
            reasons=reasons,
        )

    def assess_privacy_level(self, content: str) -> PrivacyLevel:
        """Most sensitive level whose terms occur in *content*."""
        lowered = content.lower()
        if any(t in lowered for t in SPECIAL_CATEGORY_TERMS):
            return PrivacyLevel.SPECIAL
        if any(t in lowered for t in CRIMINAL_TERMS):
            return PrivacyLevel.CRIMINAL
        if any(t in lowered for t in PERSONAL_DATA_TERMS):
            return PrivacyLevel.NORMAL
        return PrivacyLevel.NONE

    def assess(
        self, obj: InformationObject, content: Optional[str] = None
    ) -> ComplianceAssessment:
        """Full Woo/AVG/Archiefwet assessment with an overall score in [0, 1]."""
        text = content if content is not None else _content_of(obj)
        issues: list[ComplianceIssue] = []

        woo = self.assess_woo_relevance(text, obj.object_type, obj.classification)
        if woo.is_relevant and not obj.is_woo_relevant:
            issues.append(ComplianceIssue(
                severity=IssueSeverity.MEDIUM,
                category="Woo",
                description="Record looks Woo relevant but is not marked as such",
                recommended_action="Mark the record as Woo relevant",
            ))
            woo_status = RegimeStatus.ACTION_REQUIRED
        elif obj.is_woo_relevant:
            woo_status = RegimeStatus.PENDING_REVIEW
        else:
            woo_status = RegimeStatus.NOT_APPLICABLE

        privacy = self.assess_privacy_level(text)
        if privacy != PrivacyLevel.NONE and obj.privacy_level == PrivacyLevel.NONE:
            issues.append(ComplianceIssue(
                severity=IssueSeverity.HIGH if privacy == PrivacyLevel.SPECIAL else IssueSeverity.MEDIUM,
                category="AVG",
                description=f"Record may contain {privacy.value} personal data",
                recommended_action="Review and set the privacy level",
            ))
            avg_status = RegimeStatus.ACTION_REQUIRED
        else:
            avg_status = RegimeStatus.COMPLIANT

        if obj.retention_period is None:
            issues.append(ComplianceIssue(
                severity=IssueSeverity.LOW,
                category="Archiefwet",
                description="No retention period set",
                recommended_action="Set a retention period from the selection list",
            ))
            archive_status = RegimeStatus.MISSING_RETENTION_PERIOD
        else:
            archive_status = RegimeStatus.COMPLIANT

        penalty = sum(ISSUE_WEIGHTS[i.severity] for i in issues)
        return ComplianceAssessment(
            object_id=str(obj.id),
            woo=woo_status,
            avg=avg_status,
            archive=archive_status,
            detected_privacy_level=privacy,
            woo_score=woo.confidence,
            overall_score=max(0.0, 1.0 - penalty),
            issues=issues,
        )
