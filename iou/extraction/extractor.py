"""
Entity Extractor

Finds candidate named entities in an information object's text.
Matching runs on NFKC-normalized, case-folded text; every reported span
refers back to the original string. No external model is involved:
candidates come from the gazetteer and the fixed pattern set.
"""

import logging
import re
from typing import Iterable, Iterator, Optional

from iou.errors import ExtractionSkipped
from iou.extraction.gazetteer import (
    ACT_PATTERN,
    ARTICLE_PATTERN,
    DATE_PATTERNS,
    MONEY_PATTERNS,
    PERSON_PATTERN,
    CompiledGazetteer,
    GazetteerEntry,
    compile_gazetteer,
    default_entries,
)
from iou.models.enums import ENTITY_TYPE_PRIORITY, EntityType
from iou.models.graph import CandidateEntity
from iou.utils.text import collapse_whitespace, normalize_with_offsets

logger = logging.getLogger(__name__)

# Confidence per pattern class (gazetteer entries carry their own)
DATE_CONFIDENCE = 0.9
MONEY_CONFIDENCE = 0.85
ACT_CONFIDENCE = 0.75
PERSON_CONFIDENCE = 0.65
ARTICLE_CONFIDENCE = 0.6

_TEXT_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/xhtml+xml",
    "application/x-yaml",
}


class EntityExtractor:
    """
    Extracts candidate entities from free text.

    Overlapping matches are resolved by longest match, then by entity
    type priority (law > organization > location > person > date >
    money > policy), then by earliest start.
    """

    def __init__(self, entries: Optional[list[GazetteerEntry]] = None):
        self._gazetteer: CompiledGazetteer = compile_gazetteer(
            entries if entries is not None else default_entries()
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def extract(
        self,
        text: Optional[str],
        mime_type: Optional[str] = "text/plain",
    ) -> Iterator[CandidateEntity]:
        """
        Yield candidates in order of appearance.

        Unsupported (binary) content yields nothing rather than raising.

        Args:
            text:      The object's text content.
            mime_type: Declared MIME type of the content.
        """
        try:
            self.check_supported(mime_type)
        except ExtractionSkipped as exc:
            logger.info("Extraction skipped: %s", exc)
            return
        if not text or not text.strip():
            return

        normalized, offsets = normalize_with_offsets(text)
        matches = list(self._raw_matches(text, normalized, offsets))
        yield from self._resolve_overlaps(matches)

    @staticmethod
    def check_supported(mime_type: Optional[str]) -> None:
        """Raise ExtractionSkipped unless *mime_type* is textual."""
        if mime_type is None:
            return
        base = mime_type.split(";", 1)[0].strip().lower()
        if base.startswith("text/") or base in _TEXT_MIME_TYPES or base.endswith("+json"):
            return
        raise ExtractionSkipped(mime_type)

    # ------------------------------------------------------------------ #
    # Matching
    # ------------------------------------------------------------------ #

    def _raw_matches(
        self, text: str, normalized: str, offsets: list[int]
    ) -> Iterator[CandidateEntity]:
        def span(start: int, end: int) -> tuple[int, int]:
            # Map a normalized [start, end) back onto the original string.
            return offsets[start], offsets[end - 1] + 1

        for entity_type, pattern in self._gazetteer.patterns.items():
            for match in pattern.finditer(normalized):
                entry = self._gazetteer.entry_for(entity_type, match.group(0))
                if entry is None:
                    continue
                start, end = span(match.start(), match.end())
                yield CandidateEntity(
                    surface_form=text[start:end],
                    entity_type=entity_type,
                    start=start,
                    end=end,
                    confidence=entry.confidence,
                    canonical_hint=entry.canonical_name,
                )

        yield from self._pattern_matches(text, normalized, span, DATE_PATTERNS,
                                         EntityType.DATE, DATE_CONFIDENCE)
        yield from self._pattern_matches(text, normalized, span, MONEY_PATTERNS,
                                         EntityType.MONEY, MONEY_CONFIDENCE)
        yield from self._pattern_matches(text, normalized, span, (ARTICLE_PATTERN,),
                                         EntityType.LAW, ARTICLE_CONFIDENCE)
        yield from self._acts(text, normalized, span)
        yield from self._persons(text, normalized, span)

    @staticmethod
    def _pattern_matches(
        text: str,
        normalized: str,
        span,
        patterns: Iterable[re.Pattern],
        entity_type: EntityType,
        confidence: float,
    ) -> Iterator[CandidateEntity]:
        for pattern in patterns:
            for match in pattern.finditer(normalized):
                start, end = span(match.start(), match.end())
                surface = text[start:end]
                yield CandidateEntity(
                    surface_form=surface,
                    entity_type=entity_type,
                    start=start,
                    end=end,
                    confidence=confidence,
                    canonical_hint=collapse_whitespace(surface),
                )

    @staticmethod
    def _acts(text: str, normalized: str, span) -> Iterator[CandidateEntity]:
        """Capitalised "... Act" names; leading lower-case words are dropped."""
        for match in ACT_PATTERN.finditer(normalized):
            start, end = span(match.start(), match.end())
            words = list(re.finditer(r"\S+", text[start:end]))
            while words and not words[0].group(0)[0].isupper():
                words.pop(0)
            if len(words) < 2 or not words[-1].group(0).startswith("A"):
                continue
            start += words[0].start()
            surface = text[start:end]
            yield CandidateEntity(
                surface_form=surface,
                entity_type=EntityType.LAW,
                start=start,
                end=end,
                confidence=ACT_CONFIDENCE,
                canonical_hint=collapse_whitespace(surface),
            )

    @staticmethod
    def _persons(text: str, normalized: str, span) -> Iterator[CandidateEntity]:
        """Honorific followed by a capitalised name."""
        for match in PERSON_PATTERN.finditer(normalized):
            start, end = span(match.start(), match.end())
            name_start, name_end = span(match.start("name"), match.end("name"))
            name = text[name_start:name_end]
            surname = name.split()[-1]
            if not surname[:1].isupper():
                continue
            yield CandidateEntity(
                surface_form=text[start:end],
                entity_type=EntityType.PERSON,
                start=start,
                end=end,
                confidence=PERSON_CONFIDENCE,
                canonical_hint=collapse_whitespace(name),
            )

    # ------------------------------------------------------------------ #
    # Overlap resolution
    # ------------------------------------------------------------------ #

    @staticmethod
    def _resolve_overlaps(matches: list[CandidateEntity]) -> Iterator[CandidateEntity]:
        ranked = sorted(
            matches,
            key=lambda c: (-c.length, ENTITY_TYPE_PRIORITY[c.entity_type], c.start),
        )
        accepted: list[CandidateEntity] = []
        for candidate in ranked:
            if any(candidate.start < a.end and a.start < candidate.end for a in accepted):
                continue
            accepted.append(candidate)
        accepted.sort(key=lambda c: (c.start, c.end))
        yield from accepted
