"""
Read-side views.

Pure functions over base records. Nothing here touches storage; callers
fetch the records and pass them in.
"""

from collections import Counter
from typing import Any, Iterable, Optional

from iou.models import (
    AIMetadataSuggestion,
    Classification,
    Entity,
    EntityRelationship,
    InformationObject,
    PrivacyLevel,
    SuggestionStatus,
)
from iou.utils.text import normalize_name

# Relative weight of a term hit per searchable field
SEARCH_FIELD_WEIGHTS: dict[str, float] = {
    "title": 3.0,
    "tags": 2.0,
    "description": 1.5,
    "content_text": 1.0,
}


def searchable_text(obj: InformationObject) -> str:
    """Title, description, content and tags as one normalized string."""
    parts = [obj.title, obj.description or "", obj.content_text or "", " ".join(obj.tags)]
    return normalize_name(" ".join(p for p in parts if p))


def _field_texts(obj: InformationObject) -> dict[str, str]:
    return {
        "title": normalize_name(obj.title),
        "tags": normalize_name(" ".join(obj.tags)),
        "description": normalize_name(obj.description or ""),
        "content_text": normalize_name(obj.content_text or ""),
    }


def search_score(obj: InformationObject, terms: list[str]) -> float:
    """Weighted number of term occurrences across the searchable fields.

    Every term must occur somewhere in the object, otherwise the score
    is 0.
    """
    if not terms:
        return 0.0
    if any(term not in searchable_text(obj) for term in terms):
        return 0.0

    score = 0.0
    for field, text in _field_texts(obj).items():
        weight = SEARCH_FIELD_WEIGHTS[field]
        for term in terms:
            score += weight * text.count(term)
    return score


def rank_objects(
    objects: Iterable[InformationObject],
    query_text: str,
    limit: Optional[int] = None,
) -> list[tuple[InformationObject, float]]:
    """Objects matching every query term, best first.

    Ties go to the most recently created object.
    """
    terms = normalize_name(query_text).split()
    scored = [(obj, search_score(obj, terms)) for obj in objects]
    ranked = sorted(
        ((o, s) for o, s in scored if s > 0),
        key=lambda pair: (-pair[1], -pair[0].created_at.timestamp(), str(pair[0].id)),
    )
    return ranked[:limit] if limit is not None else ranked


def compliance_overview(
    objects: Iterable[InformationObject],
    suggestions: Iterable[AIMetadataSuggestion] = (),
) -> dict[str, Any]:
    """Aggregate compliance statistics over the given objects."""
    objects = list(objects)
    classification = Counter(o.classification.value for o in objects)
    privacy = Counter(o.privacy_level.value for o in objects)

    return {
        "total_objects": len(objects),
        "by_classification": {c.value: classification.get(c.value, 0) for c in Classification},
        "by_privacy_level": {p.value: privacy.get(p.value, 0) for p in PrivacyLevel},
        "woo_relevant": sum(1 for o in objects if o.is_woo_relevant is True),
        "woo_not_relevant": sum(1 for o in objects if o.is_woo_relevant is False),
        "woo_undetermined": sum(1 for o in objects if o.is_woo_relevant is None),
        "missing_retention": sum(1 for o in objects if o.retention_period is None),
        "open_suggestions": sum(
            1 for s in suggestions if s.status == SuggestionStatus.PROPOSED
        ),
    }


def network_edges(
    entities: Iterable[Entity],
    relationships: Iterable[EntityRelationship],
) -> list[dict[str, Any]]:
    """Flat edge list for graph visualisation, heaviest first."""
    names = {e.id: e.canonical_name for e in entities}
    edges = [
        {
            "source": str(r.source_entity_id),
            "source_name": names.get(r.source_entity_id),
            "target": str(r.target_entity_id),
            "target_name": names.get(r.target_entity_id),
            "type": r.relationship_type.value,
            "weight": r.weight,
            "confidence": r.confidence,
        }
        for r in relationships
    ]
    edges.sort(key=lambda e: (-e["weight"], e["source"], e["target"], e["type"]))
    return edges
