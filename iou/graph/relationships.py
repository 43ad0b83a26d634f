"""
Relationship Builder

Turns co-occurring entity mentions into typed, weighted, directed
entity relationships, and aggregates entities and relationships that
cross domain boundaries into automatic domain relations.

Type and direction come from a fixed rule table; the first rule that
matches the pair (in either orientation) wins. When a rule matches
both orientations the pair is ordered by entity id, so the result does
not depend on mention order.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from itertools import combinations
from typing import Callable, Optional
from uuid import UUID

from iou.config import EngineConfig, get_engine_config
from iou.graph.locks import KeyedLock
from iou.graph.resolver import ResolvedMention, entity_domains
from iou.models import (
    DiscoveryMethod,
    DomainRelation,
    DomainRelationType,
    Entity,
    EntityRelationship,
    EntityType,
    RelationshipType,
)
from iou.pipeline.audit import AuditLog
from iou.storage.base import Repository
from iou.utils.text import truncate_at_sentence_boundary

logger = logging.getLogger(__name__)

CONTEXT_MAX_CHARS = 240


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

def _is_type(*types: EntityType) -> Callable[[Entity], bool]:
    return lambda e: e.entity_type in types


def _any(_: Entity) -> bool:
    return True


# (source predicate, target predicate, relationship type), in priority order
RELATIONSHIP_RULES: list[tuple[Callable[[Entity], bool], Callable[[Entity], bool], RelationshipType]] = [
    (_is_type(EntityType.PERSON), _is_type(EntityType.ORGANIZATION), RelationshipType.WORKS_FOR),
    (_any, _is_type(EntityType.LAW), RelationshipType.SUBJECT_TO),
    (
        _is_type(EntityType.ORGANIZATION, EntityType.PERSON),
        _is_type(EntityType.LOCATION),
        RelationshipType.LOCATED_IN,
    ),
    (_any, _is_type(EntityType.POLICY), RelationshipType.RELATES_TO),
    (_any, _is_type(EntityType.DATE, EntityType.MONEY), RelationshipType.REFERS_TO),
    (
        _is_type(EntityType.ORGANIZATION),
        _is_type(EntityType.ORGANIZATION),
        RelationshipType.COLLABORATES_WITH,
    ),
    (_is_type(EntityType.LOCATION), _is_type(EntityType.LOCATION), RelationshipType.PART_OF),
]


def _is_province(entity: Entity) -> bool:
    return entity.canonical_name.lower().startswith("province of")


def classify_pair(a: Entity, b: Entity) -> tuple[Entity, Entity, RelationshipType]:
    """Direction and type for two distinct co-occurring entities."""
    by_id = sorted([a, b], key=lambda e: str(e.id))

    for source_ok, target_ok, rel_type in RELATIONSHIP_RULES:
        forward = source_ok(a) and target_ok(b)
        backward = source_ok(b) and target_ok(a)
        if not (forward or backward):
            continue
        if rel_type == RelationshipType.PART_OF and _is_province(a) != _is_province(b):
            # The province contains the other location.
            return (b, a, rel_type) if _is_province(a) else (a, b, rel_type)
        if forward and backward:
            return by_id[0], by_id[1], rel_type
        return (a, b, rel_type) if forward else (b, a, rel_type)

    return by_id[0], by_id[1], RelationshipType.RELATES_TO


def span_distance(a: ResolvedMention, b: ResolvedMention) -> int:
    """Characters between two spans (0 when they touch or overlap)."""
    first, second = sorted([a.candidate, b.candidate], key=lambda c: c.start)
    return max(0, second.start - first.end)


def proximity(distance: int, window: int) -> float:
    """1.0 for adjacent mentions, falling linearly to 0.5 at the window edge."""
    return 1.0 - 0.5 * (distance / window)


@dataclass
class _PairAggregate:
    source: Entity
    target: Entity
    rel_type: RelationshipType
    weight: float = 0.0
    confidences: list[float] = field(default_factory=list)
    first_span: tuple[int, int] = (0, 0)


class RelationshipBuilder:
    """Builds entity relationships per object and derives domain relations."""

    def __init__(
        self,
        repo: Repository,
        audit: AuditLog,
        locks: Optional[KeyedLock] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._repo = repo
        self._audit = audit
        self._config = config or get_engine_config()
        self._locks = locks or KeyedLock(self._config.lock_shards)
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # Per-object edges
    # ------------------------------------------------------------------ #

    def aggregate_pairs(self, mentions: list[ResolvedMention]) -> list[_PairAggregate]:
        """Group co-occurring mention pairs by (source, target, type)."""
        window = self._config.cooccurrence_window
        groups: dict[tuple[UUID, UUID, RelationshipType], _PairAggregate] = {}

        ordered = sorted(mentions, key=lambda m: (m.candidate.start, m.candidate.end))
        for m1, m2 in combinations(ordered, 2):
            if m1.entity.id == m2.entity.id:
                continue
            distance = span_distance(m1, m2)
            if distance > window:
                continue
            source, target, rel_type = classify_pair(m1.entity, m2.entity)
            key = (source.id, target.id, rel_type)
            agg = groups.get(key)
            if agg is None:
                agg = groups[key] = _PairAggregate(
                    source=source,
                    target=target,
                    rel_type=rel_type,
                    first_span=(m1.candidate.start, max(m1.candidate.end, m2.candidate.end)),
                )
            agg.weight += proximity(distance, window)
            agg.confidences.append((m1.confidence + m2.confidence) / 2)

        return list(groups.values())

    async def build(
        self,
        mentions: list[ResolvedMention],
        object_id: UUID,
        domain_id: Optional[UUID] = None,
        text: Optional[str] = None,
    ) -> list[EntityRelationship]:
        """
        Emit or strengthen relationships for one object.

        Each object contributes at most one observation per relationship,
        so running this twice for the same object changes nothing.

        Returns:
            The relationships that were created or changed.
        """
        changed: list[EntityRelationship] = []
        for agg in self.aggregate_pairs(mentions):
            confidence = min(1.0, sum(agg.confidences) / len(agg.confidences))
            lock_key = f"rel:{agg.source.id}:{agg.target.id}:{agg.rel_type.value}"
            async with self._locks.hold(lock_key):
                rel = await self._repo.find_relationship(agg.source.id, agg.target.id, agg.rel_type)
                if rel is None:
                    rel = EntityRelationship(
                        source_entity_id=agg.source.id,
                        target_entity_id=agg.target.id,
                        relationship_type=agg.rel_type,
                        source_domain_id=domain_id,
                        context=self._context(text, agg.first_span),
                    )
                    rel.observe(str(object_id), agg.weight, confidence, domain_id)
                    await self._repo.add_relationship(rel)
                elif rel.observe(str(object_id), agg.weight, confidence, domain_id):
                    await self._repo.update_relationship(rel)
                else:
                    continue
            changed.append(rel)

        if changed:
            await self._audit.record(
                "relationships.built",
                "relationship_builder",
                "information_object",
                object_id,
                details={"changed": len(changed)},
            )
        return changed

    @staticmethod
    def _context(text: Optional[str], span: tuple[int, int]) -> Optional[str]:
        if not text:
            return None
        start, end = span
        return truncate_at_sentence_boundary(text[start:end].strip(), CONTEXT_MAX_CHARS) or None

    # ------------------------------------------------------------------ #
    # Domain relations
    # ------------------------------------------------------------------ #

    @staticmethod
    def derive_domain_relations(
        entities: list[Entity],
        relationships: list[EntityRelationship],
    ) -> dict[tuple[UUID, UUID], DomainRelation]:
        """
        Aggregate cross-domain links into automatic domain relations.

        Two kinds of link count:

        - an entity seen in several domains links every pair of them
          and adds its confidence to their strength;
        - a relationship touches every domain that an endpoint
          originates from or that an observing object belongs to, and
          adds its weight.

        Each pair of distinct domains gets one relation, oriented from
        the originating domain when it is part of the pair, otherwise
        by id.
        """
        provenance = {e.id: e.source_domain_id for e in entities}
        strength: dict[tuple[UUID, UUID], float] = defaultdict(float)
        links: dict[tuple[UUID, UUID], int] = defaultdict(int)
        shared: dict[tuple[UUID, UUID], set[UUID]] = defaultdict(set)

        for entity in entities:
            for pair in _domain_pairs(entity_domains(entity), entity.source_domain_id):
                strength[pair] += entity.confidence
                links[pair] += 1
                shared[pair].add(entity.id)

        for rel in relationships:
            touched = {
                provenance.get(rel.source_entity_id),
                provenance.get(rel.target_entity_id),
                *(o.domain_id for o in rel.observations.values()),
            }
            touched.discard(None)
            for pair in _domain_pairs(touched, provenance.get(rel.source_entity_id)):
                strength[pair] += rel.weight
                links[pair] += 1
                shared[pair].update({rel.source_entity_id, rel.target_entity_id})

        names = {e.id: e.canonical_name for e in entities}
        relations: dict[tuple[UUID, UUID], DomainRelation] = {}
        for pair, total in strength.items():
            entity_ids = sorted(shared[pair], key=str)
            sample = ", ".join(sorted(names.get(i, str(i)) for i in entity_ids)[:5])
            relations[pair] = DomainRelation(
                from_domain_id=pair[0],
                to_domain_id=pair[1],
                relation_type=DomainRelationType.SHARED_ENTITIES,
                strength=total,
                discovery_method=DiscoveryMethod.AUTOMATIC,
                shared_entities=entity_ids,
                link_count=links[pair],
                explanation=f"{links[pair]} cross-domain link(s) via {sample}",
            )
        return relations

    async def refresh_domain_relations(self) -> list[DomainRelation]:
        """Recompute every automatic domain relation from current relationships.

        Only rows whose values changed are written; automatic rows with
        no remaining support are removed. Manual and ai_suggestion rows
        are never touched.
        """
        async with self._refresh_lock:
            entities, relationships = await self._repo.graph_snapshot()
            derived = self.derive_domain_relations(entities, relationships)
            existing = {
                (r.from_domain_id, r.to_domain_id): r
                for r in await self._repo.list_domain_relations(
                    discovery_method=DiscoveryMethod.AUTOMATIC
                )
            }

            written: list[DomainRelation] = []
            for pair, relation in derived.items():
                current = existing.get(pair)
                if current is not None and _same_support(current, relation):
                    continue
                await self._repo.upsert_domain_relation(relation)
                written.append(relation)

            for pair, stale in existing.items():
                if pair not in derived:
                    await self._repo.delete_domain_relation(stale.id)

        if written:
            logger.info("Updated %d automatic domain relation(s)", len(written))
        return written


def _domain_pairs(
    domains: set[UUID], origin: Optional[UUID]
) -> list[tuple[UUID, UUID]]:
    pairs = []
    for d1, d2 in combinations(sorted(domains, key=str), 2):
        if origin == d2:
            d1, d2 = d2, d1
        pairs.append((d1, d2))
    return pairs


def _same_support(a: DomainRelation, b: DomainRelation) -> bool:
    return (
        abs(a.strength - b.strength) < 1e-9
        and a.link_count == b.link_count
        and sorted(map(str, a.shared_entities)) == sorted(map(str, b.shared_entities))
    )
