"""
Entity Resolver

Maps extracted candidates onto canonical entities, keeping one entity
per canonical key. Read-then-create and merges run under the keyed lock
table, so concurrent workers resolving the same name never create
duplicates.

Merge policy when two entities come to share a key: the older entity
(lower created_at, then lower id) survives. The newer one's
relationships are re-pointed onto the survivor (self-loops dropped,
parallel edges of the same type combined), its memberships move over and
its keys become aliases of the survivor.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from iou.config import EngineConfig, get_engine_config
from iou.errors import NotFound, ResolutionConflict
from iou.feedback.suggestions import SuggestionService
from iou.feedback.trust import TrustWeighting
from iou.graph.locks import KeyedLock
from iou.models import (
    CandidateEntity,
    Entity,
    EntityRelationship,
    EntityType,
    SuggestionSource,
    SuggestionTarget,
)
from iou.pipeline.audit import AuditLog
from iou.storage.base import Repository
from iou.utils.text import canonical_key

logger = logging.getLogger(__name__)

# Field name used for entity-creation suggestions on an object
ENTITY_SUGGESTION_FIELD = "entity"


@dataclass
class ResolvedMention:
    """A candidate together with the entity it resolved to."""
    entity: Entity
    candidate: CandidateEntity
    confidence: float


def candidate_key(candidate: CandidateEntity) -> str:
    return canonical_key(candidate.canonical_name, candidate.entity_type.value)


def entity_domains(entity: Entity) -> set[UUID]:
    """Every domain the entity originates from or was seen in."""
    domains = {UUID(d) for d in entity.metadata.get("source_domains", [])}
    if entity.source_domain_id is not None:
        domains.add(entity.source_domain_id)
    return domains


def _age(entity: Entity) -> tuple[datetime, str]:
    return entity.created_at, str(entity.id)


class EntityResolver:
    """Canonicalizes candidates against the stored entity set."""

    def __init__(
        self,
        repo: Repository,
        trust: TrustWeighting,
        suggestions: SuggestionService,
        audit: AuditLog,
        locks: Optional[KeyedLock] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._repo = repo
        self._trust = trust
        self._suggestions = suggestions
        self._audit = audit
        self._config = config or get_engine_config()
        self._locks = locks or KeyedLock(self._config.lock_shards)

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    # ------------------------------------------------------------------ #
    # Resolution
    # ------------------------------------------------------------------ #

    async def resolve(
        self,
        candidate: CandidateEntity,
        object_id: UUID,
        source_domain_id: Optional[UUID] = None,
    ) -> Optional[ResolvedMention]:
        """
        Resolve one candidate seen in object *object_id*.

        Returns None when the trust-adjusted confidence is below the
        threshold; the candidate is then persisted as a suggestion on
        the object instead.
        """
        key = candidate_key(candidate)
        confident, confidence = await self._trust.is_confident(key, candidate.confidence)

        if not confident:
            await self._suggestions.propose(
                target_kind=SuggestionTarget.OBJECT,
                target_id=object_id,
                field=ENTITY_SUGGESTION_FIELD,
                suggested_value={
                    "canonical_name": candidate.canonical_name,
                    "entity_type": candidate.entity_type.value,
                    "surface_form": candidate.surface_form,
                    "source_domain_id": None if source_domain_id is None else str(source_domain_id),
                },
                confidence=confidence,
                source=SuggestionSource.NER,
                pattern_key=key,
                reasoning=f"'{candidate.surface_form}' recognised as {candidate.entity_type.value}",
            )
            return None

        entity = await self.upsert(
            name=candidate.canonical_name,
            entity_type=candidate.entity_type,
            confidence=confidence,
            object_id=object_id,
            source_domain_id=source_domain_id,
        )
        return ResolvedMention(entity=entity, candidate=candidate, confidence=confidence)

    async def upsert(
        self,
        name: str,
        entity_type: EntityType,
        confidence: float,
        object_id: Optional[UUID] = None,
        source_domain_id: Optional[UUID] = None,
    ) -> Entity:
        """Find the entity for (name, type) or create it. Idempotent per object."""
        key = canonical_key(name, entity_type.value)
        async with self._locks.hold(key):
            existing = await self._repo.find_entity_by_key(key)
            if existing is not None:
                if self._observe(existing, confidence, object_id, source_domain_id):
                    await self._repo.update_entity(existing)
                return existing

            entity = Entity(
                entity_type=entity_type,
                canonical_name=name.strip(),
                canonical_key=key,
                confidence=confidence,
                source_domain_id=source_domain_id,
            )
            self._observe(entity, confidence, object_id, source_domain_id)
            await self._repo.add_entity(entity)

        await self._audit.record(
            "entity.created",
            "resolver",
            "entity",
            entity.id,
            details={"key": key, "confidence": round(confidence, 4)},
        )
        return entity

    @staticmethod
    def _observe(
        entity: Entity,
        confidence: float,
        object_id: Optional[UUID],
        domain_id: Optional[UUID] = None,
    ) -> bool:
        """Fold one sighting into *entity*; return True if it changed."""
        changed = False
        if confidence > entity.confidence:
            entity.confidence = confidence
            changed = True
        if object_id is not None:
            seen = entity.metadata.setdefault("source_objects", [])
            if str(object_id) not in seen:
                seen.append(str(object_id))
                entity.mention_count = len(seen)
                changed = True
        if domain_id is not None:
            domains = entity.metadata.setdefault("source_domains", [])
            if str(domain_id) not in domains:
                domains.append(str(domain_id))
                changed = True
        if changed:
            entity.updated_at = datetime.now(timezone.utc)
        return changed

    # ------------------------------------------------------------------ #
    # Rename & merge
    # ------------------------------------------------------------------ #

    async def rename(self, entity_id: UUID, new_name: str) -> Entity:
        """
        Give an entity a new canonical name.

        The old key stays registered as an alias. If another entity
        already owns the new key, the two are merged.
        """
        entity = await self._repo.get_entity(entity_id)
        if entity is None:
            raise NotFound("entity", entity_id)

        new_key = canonical_key(new_name, entity.entity_type.value)
        try:
            async with self._locks.hold_many([entity.canonical_key, new_key]):
                owner = await self._repo.find_entity_by_key(new_key)
                if owner is not None and owner.id != entity.id:
                    winner, loser = sorted([owner, entity], key=_age)
                    raise ResolutionConflict(new_key, winner.id, loser.id)

                old_key = entity.canonical_key
                entity.canonical_name = new_name.strip()
                entity.canonical_key = new_key
                if old_key != new_key and old_key not in entity.aliases:
                    entity.aliases.append(old_key)
                entity.updated_at = datetime.now(timezone.utc)
                await self._repo.register_entity_key(new_key, entity.id)
                await self._repo.update_entity(entity)
        except ResolutionConflict as conflict:
            logger.info("Resolving conflict on %s by merging", conflict.key)
            return await self.merge(conflict.winner_id, conflict.loser_id)

        await self._audit.record(
            "entity.renamed", "resolver", "entity", entity.id,
            details={"name": entity.canonical_name, "key": new_key},
        )
        return entity

    async def merge(self, winner_id: UUID, loser_id: UUID) -> Entity:
        """Fold *loser_id* into *winner_id*. Returns the surviving entity."""
        winner = await self._repo.get_entity(winner_id)
        loser = await self._repo.get_entity(loser_id)
        if winner is None:
            raise NotFound("entity", winner_id)
        if loser is None:
            raise NotFound("entity", loser_id)

        keys = [winner.canonical_key, loser.canonical_key, *winner.aliases, *loser.aliases]
        async with self._locks.hold_many(keys):
            dropped, combined, moved = await self._repoint_relationships(loser.id, winner.id)
            await self._repo.repoint_memberships(loser.id, winner.id)

            for key in [loser.canonical_key, *loser.aliases]:
                await self._repo.register_entity_key(key, winner.id)
                if key != winner.canonical_key and key not in winner.aliases:
                    winner.aliases.append(key)

            winner.confidence = max(winner.confidence, loser.confidence)
            seen = winner.metadata.setdefault("source_objects", [])
            for object_id in loser.metadata.get("source_objects", []):
                if object_id not in seen:
                    seen.append(object_id)
            domains = winner.metadata.setdefault("source_domains", [])
            loser_domains = loser.metadata.get("source_domains", [])
            if loser.source_domain_id is not None:
                loser_domains = [*loser_domains, str(loser.source_domain_id)]
            for domain_id in loser_domains:
                if domain_id not in domains:
                    domains.append(domain_id)
            winner.mention_count = max(len(seen), winner.mention_count)
            winner.updated_at = datetime.now(timezone.utc)
            await self._repo.update_entity(winner)
            await self._repo.delete_entity(loser.id)

        await self._audit.record(
            "entity.merged",
            "resolver",
            "entity",
            winner.id,
            details={
                "merged": str(loser.id),
                "relationships_moved": moved,
                "relationships_combined": combined,
                "self_loops_dropped": dropped,
            },
        )
        logger.info("Merged entity %s into %s", loser.id, winner.id)
        return winner

    async def _repoint_relationships(self, old_id: UUID, new_id: UUID) -> tuple[int, int, int]:
        dropped = combined = moved = 0
        for rel in await self._repo.list_relationships(entity_id=old_id):
            source = new_id if rel.source_entity_id == old_id else rel.source_entity_id
            target = new_id if rel.target_entity_id == old_id else rel.target_entity_id

            if source == target:
                await self._repo.delete_relationship(rel.id)
                dropped += 1
                continue

            parallel = await self._repo.find_relationship(source, target, rel.relationship_type)
            if parallel is not None:
                _combine(parallel, rel)
                await self._repo.update_relationship(parallel)
                await self._repo.delete_relationship(rel.id)
                combined += 1
                continue

            repointed = EntityRelationship(
                **{
                    **rel.model_dump(),
                    "source_entity_id": source,
                    "target_entity_id": target,
                }
            )
            await self._repo.delete_relationship(rel.id)
            await self._repo.add_relationship(repointed)
            moved += 1
        return dropped, combined, moved


def _combine(into: EntityRelationship, other: EntityRelationship) -> None:
    """Merge *other*'s observations into *into*, keeping the larger per object."""
    for object_id, observation in other.observations.items():
        current = into.observations.get(object_id)
        if current is None or observation.weight > current.weight:
            into.observations[object_id] = observation
    into.recompute()
