"""Suggestion review and pattern trust weighting."""

from iou.feedback.suggestions import REVIEW_TRANSITIONS, SuggestionService
from iou.feedback.trust import TrustWeighting, compute_adjustment

__all__ = [
    "REVIEW_TRANSITIONS",
    "SuggestionService",
    "TrustWeighting",
    "compute_adjustment",
]
