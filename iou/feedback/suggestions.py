"""
Suggestion review state machine.

States:
- PROPOSED: persisted, waiting for a reviewer
- ACCEPTED: applied with the suggested value
- MODIFIED: applied with a reviewer-supplied value
- REJECTED: discarded

Terminal states are final. Every terminal outcome is also fed to the
pattern trust weighting, which is a separate step from applying.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from iou.errors import InvalidTransition, NotFound, ValidationError
from iou.feedback.trust import TrustWeighting
from iou.models import (
    AIMetadataSuggestion,
    SuggestionSource,
    SuggestionStatus,
    SuggestionTarget,
)
from iou.pipeline.audit import AuditLog
from iou.storage.base import Repository

logger = logging.getLogger(__name__)


# Valid review transitions
REVIEW_TRANSITIONS: dict[SuggestionStatus, set[SuggestionStatus]] = {
    SuggestionStatus.PROPOSED: {
        SuggestionStatus.ACCEPTED,
        SuggestionStatus.REJECTED,
        SuggestionStatus.MODIFIED,
    },
    SuggestionStatus.ACCEPTED: set(),
    SuggestionStatus.REJECTED: set(),
    SuggestionStatus.MODIFIED: set(),
}

# Applies an accepted/modified suggestion with its final value
Applier = Callable[[AIMetadataSuggestion, Any], Awaitable[None]]


def can_transition(from_status: SuggestionStatus, to_status: SuggestionStatus) -> bool:
    return to_status in REVIEW_TRANSITIONS[from_status]


class SuggestionService:
    """
    Persists low-confidence proposals and runs their review.

    Appliers are registered per target kind, optionally narrowed to one
    field; the most specific registration wins.
    """

    def __init__(self, repo: Repository, trust: TrustWeighting, audit: AuditLog):
        self._repo = repo
        self._trust = trust
        self._audit = audit
        self._appliers: dict[tuple[SuggestionTarget, Optional[str]], Applier] = {}

    def register_applier(
        self,
        target_kind: SuggestionTarget,
        applier: Applier,
        field: Optional[str] = None,
    ) -> None:
        self._appliers[(target_kind, field)] = applier

    def _applier_for(self, suggestion: AIMetadataSuggestion) -> Optional[Applier]:
        return self._appliers.get(
            (suggestion.target_kind, suggestion.field)
        ) or self._appliers.get((suggestion.target_kind, None))

    async def propose(
        self,
        target_kind: SuggestionTarget,
        target_id: UUID,
        field: str,
        suggested_value: Any,
        confidence: float,
        source: SuggestionSource,
        pattern_key: str,
        reasoning: str = "",
    ) -> AIMetadataSuggestion:
        """Persist a suggestion unless the same one already exists for the target."""
        for existing in await self._repo.list_suggestions(target_id=target_id):
            if existing.field == field and existing.pattern_key == pattern_key:
                return existing

        suggestion = AIMetadataSuggestion(
            target_kind=target_kind,
            target_id=target_id,
            field=field,
            suggested_value=suggested_value,
            confidence=confidence,
            source=source,
            pattern_key=pattern_key,
            reasoning=reasoning,
        )
        await self._repo.add_suggestion(suggestion)
        await self._audit.record(
            "suggestion.proposed",
            "feedback",
            "ai_metadata_suggestion",
            suggestion.id,
            details={
                "target": str(target_id),
                "field": field,
                "source": source.value,
                "confidence": round(confidence, 4),
            },
        )
        return suggestion

    async def review(
        self,
        suggestion_id: UUID,
        outcome: SuggestionStatus,
        final_value: Any = None,
        reviewer_id: Optional[UUID] = None,
    ) -> AIMetadataSuggestion:
        """
        Move a suggestion to a terminal state.

        Raises:
            NotFound: Unknown suggestion.
            InvalidTransition: Suggestion already reviewed, or *outcome*
                is not a terminal state.
            ValidationError: MODIFIED without a final value.
        """
        suggestion = await self._repo.get_suggestion(suggestion_id)
        if suggestion is None:
            raise NotFound("suggestion", suggestion_id)
        if not can_transition(suggestion.status, outcome):
            raise InvalidTransition("suggestion", suggestion.status.value, outcome.value)
        if outcome == SuggestionStatus.MODIFIED and final_value is None:
            raise ValidationError("a modified suggestion needs a final value", "final_value")

        if outcome == SuggestionStatus.ACCEPTED:
            final_value = suggestion.suggested_value
        elif outcome == SuggestionStatus.REJECTED:
            final_value = None

        if outcome in (SuggestionStatus.ACCEPTED, SuggestionStatus.MODIFIED):
            applier = self._applier_for(suggestion)
            if applier is None:
                logger.warning(
                    "No applier for %s.%s; recording review only",
                    suggestion.target_kind.value, suggestion.field,
                )
            else:
                await applier(suggestion, final_value)

        suggestion.status = outcome
        suggestion.final_value = final_value
        suggestion.reviewed_by = reviewer_id
        suggestion.reviewed_at = datetime.now(timezone.utc)
        await self._repo.update_suggestion(suggestion)

        await self._trust.record_outcome(suggestion.pattern_key, outcome)
        await self._audit.record(
            f"suggestion.{outcome.value}",
            "feedback",
            "ai_metadata_suggestion",
            suggestion.id,
            details={"pattern_key": suggestion.pattern_key, "field": suggestion.field},
            actor_id=reviewer_id,
        )
        logger.info("Suggestion %s %s", suggestion.id, outcome.value)
        return suggestion

    async def list(self, status: Optional[SuggestionStatus] = None) -> list[AIMetadataSuggestion]:
        return await self._repo.list_suggestions(status=status)
