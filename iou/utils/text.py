"""
Text Normalization & Canonical Key Utilities

Provides:
- Offset-preserving Unicode normalization so the extractor can match on
  NFKC-normalized, case-folded text while reporting spans in the
  original string.
- A single ``canonical_key()`` function used everywhere an entity name
  is turned into a deduplication key.
- Sentence-boundary-aware truncation for relationship context snippets.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_END_RE = re.compile(r'[.!?](?:\s|$)')


def normalize_with_offsets(text: str) -> tuple[str, list[int]]:
    """NFKC-normalize and case-fold *text*, keeping a map back to the source.

    Each character of the original string is normalized on its own, so
    one source character may expand into several output characters
    (``"ß"`` becomes ``"ss"``, ``"ﬁ"`` becomes ``"fi"``). The returned
    offsets list has one entry per output character, holding the index
    of the source character it came from.

    Examples
    --------
    >>> normalize_with_offsets("Straße")
    ('strasse', [0, 1, 2, 3, 4, 4, 5])
    """
    out: list[str] = []
    offsets: list[int] = []
    for idx, char in enumerate(text):
        folded = unicodedata.normalize("NFKC", char).casefold()
        out.append(folded)
        offsets.extend([idx] * len(folded))
    return "".join(out), offsets


def strip_diacritics(text: str) -> str:
    """Remove combining marks (``"Financiën"`` becomes ``"Financien"``)."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_name(name: str) -> str:
    """Lower-case, strip diacritics and collapse whitespace."""
    return collapse_whitespace(strip_diacritics(name).casefold())


def canonical_key(name: str, entity_type: str) -> str:
    """Build the deduplication key for an entity.

    This is the **single source of truth** for entity identity. The
    resolver, the feedback loop and the merge policy all go through it.

    Examples
    --------
    >>> canonical_key("  Province of   Utrecht ", "location")
    'location:province of utrecht'
    >>> canonical_key("Ministerie van Financiën", "organization")
    'organization:ministerie van financien'
    """
    return f"{entity_type}:{normalize_name(name)}"


def truncate_at_sentence_boundary(
    text: str,
    max_chars: int,
    *,
    suffix: str = " [...]",
    min_chars: int = 40,
) -> str:
    """Truncate *text* at a sentence boundary without cutting a word.

    Falls back to the last word boundary, then to a hard cut, when no
    sentence end lies within the budget.

    Examples
    --------
    >>> truncate_at_sentence_boundary("Short", 100)
    'Short'
    """
    if not text or len(text) <= max_chars:
        return text

    budget = max_chars - len(suffix)
    if budget <= 0:
        budget = max_chars

    candidate = text[:budget]
    best_end: Optional[int] = None
    for match in _SENTENCE_END_RE.finditer(candidate):
        pos = match.start() + 1
        if pos >= min_chars:
            best_end = pos

    if best_end is not None:
        return text[:best_end].rstrip() + suffix

    space_idx = candidate.rfind(' ')
    if space_idx > min_chars:
        return text[:space_idx].rstrip() + suffix

    return candidate.rstrip() + suffix
