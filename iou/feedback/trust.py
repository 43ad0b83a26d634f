"""
Pattern trust weighting.

Each reviewed suggestion feeds a counter for its pattern. The trust
adjustment shifts the confidence given to future candidates of the same
pattern:

    adjustment = clamp(step * (accepted + modified - rejected), -max, +max)

The adjustment is monotone in the number of accepts, so an acceptance
never lowers the confidence of future identical candidates.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from iou.config import EngineConfig, get_engine_config
from iou.models import PatternTrust, SuggestionStatus
from iou.storage.base import Repository

logger = logging.getLogger(__name__)


def compute_adjustment(trust: PatternTrust, step: float, limit: float) -> float:
    raw = step * (trust.accepted + trust.modified - trust.rejected)
    return max(-limit, min(limit, raw))


class TrustWeighting:
    """Reads and updates per-pattern trust."""

    def __init__(self, repo: Repository, config: Optional[EngineConfig] = None):
        self._repo = repo
        self._config = config or get_engine_config()

    @property
    def threshold(self) -> float:
        return self._config.suggestion_threshold

    async def adjustment(self, pattern_key: str) -> float:
        trust = await self._repo.get_pattern_trust(pattern_key)
        return 0.0 if trust is None else trust.adjustment

    async def adjusted_confidence(self, pattern_key: str, base: float) -> float:
        """*base* shifted by the pattern's trust, kept within [0, 1]."""
        return max(0.0, min(1.0, base + await self.adjustment(pattern_key)))

    async def is_confident(self, pattern_key: str, base: float) -> tuple[bool, float]:
        """Whether a candidate clears the threshold, and its adjusted confidence."""
        confidence = await self.adjusted_confidence(pattern_key, base)
        return confidence >= self.threshold, confidence

    async def record_outcome(self, pattern_key: str, outcome: SuggestionStatus) -> PatternTrust:
        """Fold one terminal review outcome into the pattern's trust."""
        trust = await self._repo.get_pattern_trust(pattern_key) or PatternTrust(
            pattern_key=pattern_key
        )
        if outcome == SuggestionStatus.ACCEPTED:
            trust.accepted += 1
        elif outcome == SuggestionStatus.MODIFIED:
            trust.modified += 1
        elif outcome == SuggestionStatus.REJECTED:
            trust.rejected += 1
        else:
            raise ValueError(f"Not a terminal outcome: {outcome.value}")

        trust.adjustment = compute_adjustment(
            trust, self._config.trust_step, self._config.max_trust_adjustment
        )
        trust.updated_at = datetime.now(timezone.utc)
        await self._repo.save_pattern_trust(trust)
        logger.debug(
            "Trust for %s now %+.3f (%d/%d/%d)",
            pattern_key, trust.adjustment, trust.accepted, trust.modified, trust.rejected,
        )
        return trust
