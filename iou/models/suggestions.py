"""AI metadata suggestions and the per-pattern trust they feed."""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from iou.models.enums import SuggestionSource, SuggestionStatus, SuggestionTarget


class AIMetadataSuggestion(BaseModel):
    """
    A proposed value that was not confident enough to apply directly.

    Lifecycle: ``proposed`` until a reviewer moves it to ``accepted``,
    ``rejected`` or ``modified``. Terminal states are final.
    """

    id: UUID = Field(default_factory=uuid4)
    target_kind: SuggestionTarget
    target_id: UUID
    field: str = Field(..., min_length=1)
    suggested_value: Any = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: SuggestionSource
    pattern_key: str = Field(
        ...,
        min_length=1,
        description="Groups similar suggestions for trust weighting",
    )
    reasoning: str = ""
    status: SuggestionStatus = SuggestionStatus.PROPOSED
    final_value: Any = None
    reviewed_by: Optional[UUID] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_open(self) -> bool:
        return self.status == SuggestionStatus.PROPOSED


class PatternTrust(BaseModel):
    """Accumulated reviewer feedback for one suggestion pattern."""

    pattern_key: str
    accepted: int = Field(default=0, ge=0)
    modified: int = Field(default=0, ge=0)
    rejected: int = Field(default=0, ge=0)
    adjustment: float = Field(
        default=0.0,
        description="Confidence shift applied to future candidates of this pattern",
    )
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_reviews(self) -> int:
        return self.accepted + self.modified + self.rejected
