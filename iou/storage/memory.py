"""
In-process Repository.

Used by the test suite and as the default backend. Records are kept as
deep copies so callers cannot mutate stored state by accident. All
methods run without awaiting anything, which makes every call atomic
with respect to other coroutines on the same event loop.
"""

import logging
from datetime import datetime
from typing import Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel

from iou.models import (
    AIMetadataSuggestion,
    AuditEntry,
    BusinessRule,
    Community,
    CommunityGeneration,
    DiscoveryMethod,
    DomainRelation,
    DomainStatus,
    DomainType,
    Entity,
    EntityCommunityMembership,
    EntityRelationship,
    EntityType,
    InformationDomain,
    InformationObject,
    ObjectType,
    PatternTrust,
    RelationshipType,
    RuleExecution,
    SuggestionStatus,
)
from iou.storage.base import Repository

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _copy(model: M) -> M:
    return model.model_copy(deep=True)


def _copy_optional(model: Optional[M]) -> Optional[M]:
    return None if model is None else _copy(model)


class MemoryRepository(Repository):
    """Dictionary-backed implementation of the storage boundary."""

    def __init__(self) -> None:
        self._domains: dict[UUID, InformationDomain] = {}
        self._objects: dict[UUID, InformationObject] = {}
        self._rules: dict[UUID, BusinessRule] = {}
        self._executions: list[RuleExecution] = []
        self._entities: dict[UUID, Entity] = {}
        self._entity_keys: dict[str, UUID] = {}
        self._relationships: dict[UUID, EntityRelationship] = {}
        self._domain_relations: dict[tuple, DomainRelation] = {}
        self._generation: Optional[CommunityGeneration] = None
        self._communities: list[Community] = []
        self._memberships: list[EntityCommunityMembership] = []
        self._suggestions: dict[UUID, AIMetadataSuggestion] = {}
        self._trust: dict[str, PatternTrust] = {}
        self._audit: list[AuditEntry] = []

    # ----- Domains -----

    async def add_domain(self, domain: InformationDomain) -> None:
        self._domains[domain.id] = _copy(domain)

    async def get_domain(self, domain_id: UUID) -> Optional[InformationDomain]:
        return _copy_optional(self._domains.get(domain_id))

    async def list_domains(
        self,
        domain_type: Optional[DomainType] = None,
        status: Optional[DomainStatus] = None,
        organization_id: Optional[UUID] = None,
        parent_domain_id: Optional[UUID] = None,
    ) -> list[InformationDomain]:
        result = [
            d for d in self._domains.values()
            if (domain_type is None or d.domain_type == domain_type)
            and (status is None or d.status == status)
            and (organization_id is None or d.organization_id == organization_id)
            and (parent_domain_id is None or d.parent_domain_id == parent_domain_id)
        ]
        result.sort(key=lambda d: (d.created_at, str(d.id)))
        return [_copy(d) for d in result]

    async def update_domain(self, domain: InformationDomain) -> None:
        self._domains[domain.id] = _copy(domain)

    # ----- Information objects -----

    async def add_object(self, obj: InformationObject) -> None:
        self._objects[obj.id] = _copy(obj)

    async def get_object(self, object_id: UUID) -> Optional[InformationObject]:
        return _copy_optional(self._objects.get(object_id))

    async def update_object(self, obj: InformationObject) -> None:
        self._objects[obj.id] = _copy(obj)

    async def list_objects(
        self,
        domain_id: Optional[UUID] = None,
        object_type: Optional[ObjectType] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[InformationObject]:
        result = [
            o for o in self._objects.values()
            if (domain_id is None or o.domain_id == domain_id)
            and (object_type is None or o.object_type == object_type)
            and (created_after is None or o.created_at >= created_after)
            and (created_before is None or o.created_at < created_before)
        ]
        result.sort(key=lambda o: (o.created_at, str(o.id)))
        return [_copy(o) for o in result]

    async def get_successor(self, object_id: UUID) -> Optional[InformationObject]:
        for obj in self._objects.values():
            if obj.previous_version_id == object_id:
                return _copy(obj)
        return None

    # ----- Rules & executions -----

    async def add_rule(self, rule: BusinessRule) -> None:
        self._rules[rule.id] = _copy(rule)

    async def get_rule(self, rule_id: UUID) -> Optional[BusinessRule]:
        return _copy_optional(self._rules.get(rule_id))

    async def update_rule(self, rule: BusinessRule) -> None:
        self._rules[rule.id] = _copy(rule)

    async def list_rules(self, active_only: bool = False) -> list[BusinessRule]:
        result = [r for r in self._rules.values() if r.is_active or not active_only]
        result.sort(key=lambda r: (r.created_at, str(r.id)))
        return [_copy(r) for r in result]

    async def add_execution(self, execution: RuleExecution) -> None:
        # Frozen model: safe to share.
        self._executions.append(execution)

    async def list_executions(
        self,
        object_id: Optional[UUID] = None,
        rule_id: Optional[UUID] = None,
    ) -> list[RuleExecution]:
        return [
            e for e in self._executions
            if (object_id is None or e.object_id == object_id)
            and (rule_id is None or e.rule_id == rule_id)
        ]

    # ----- Entities -----

    async def add_entity(self, entity: Entity) -> None:
        self._entities[entity.id] = _copy(entity)
        self._entity_keys[entity.canonical_key] = entity.id

    async def get_entity(self, entity_id: UUID) -> Optional[Entity]:
        return _copy_optional(self._entities.get(entity_id))

    async def find_entity_by_key(self, key: str) -> Optional[Entity]:
        entity_id = self._entity_keys.get(key)
        if entity_id is None:
            return None
        return _copy_optional(self._entities.get(entity_id))

    async def register_entity_key(self, key: str, entity_id: UUID) -> None:
        self._entity_keys[key] = entity_id

    async def update_entity(self, entity: Entity) -> None:
        self._entities[entity.id] = _copy(entity)

    async def delete_entity(self, entity_id: UUID) -> None:
        self._entities.pop(entity_id, None)
        for key in [k for k, v in self._entity_keys.items() if v == entity_id]:
            del self._entity_keys[key]

    async def list_entities(
        self,
        entity_type: Optional[EntityType] = None,
        source_domain_id: Optional[UUID] = None,
    ) -> list[Entity]:
        result = [
            e for e in self._entities.values()
            if (entity_type is None or e.entity_type == entity_type)
            and (source_domain_id is None or e.source_domain_id == source_domain_id)
        ]
        result.sort(key=lambda e: (e.created_at, str(e.id)))
        return [_copy(e) for e in result]

    # ----- Entity relationships -----

    async def find_relationship(
        self,
        source_entity_id: UUID,
        target_entity_id: UUID,
        relationship_type: RelationshipType,
    ) -> Optional[EntityRelationship]:
        wanted = (source_entity_id, target_entity_id, relationship_type)
        for rel in self._relationships.values():
            if rel.key == wanted:
                return _copy(rel)
        return None

    async def add_relationship(self, relationship: EntityRelationship) -> None:
        self._relationships[relationship.id] = _copy(relationship)

    async def update_relationship(self, relationship: EntityRelationship) -> None:
        self._relationships[relationship.id] = _copy(relationship)

    async def delete_relationship(self, relationship_id: UUID) -> None:
        self._relationships.pop(relationship_id, None)

    async def list_relationships(
        self, entity_id: Optional[UUID] = None
    ) -> list[EntityRelationship]:
        result = [
            r for r in self._relationships.values()
            if entity_id is None
            or entity_id in (r.source_entity_id, r.target_entity_id)
        ]
        result.sort(key=lambda r: (r.created_at, str(r.id)))
        return [_copy(r) for r in result]

    # ----- Domain relations -----

    async def upsert_domain_relation(self, relation: DomainRelation) -> None:
        existing = self._domain_relations.get(relation.key)
        stored = _copy(relation)
        if existing is not None:
            stored.id = existing.id
            stored.created_at = existing.created_at
        self._domain_relations[relation.key] = stored

    async def list_domain_relations(
        self,
        domain_id: Optional[UUID] = None,
        discovery_method: Optional[DiscoveryMethod] = None,
    ) -> list[DomainRelation]:
        result = [
            r for r in self._domain_relations.values()
            if (domain_id is None or domain_id in (r.from_domain_id, r.to_domain_id))
            and (discovery_method is None or r.discovery_method == discovery_method)
        ]
        result.sort(key=lambda r: (r.created_at, str(r.id)))
        return [_copy(r) for r in result]

    async def delete_domain_relation(self, relation_id: UUID) -> None:
        for key in [k for k, r in self._domain_relations.items() if r.id == relation_id]:
            del self._domain_relations[key]

    # ----- Communities -----

    async def get_active_generation(self) -> Optional[CommunityGeneration]:
        return _copy_optional(self._generation)

    async def list_communities(self, level: Optional[int] = None) -> list[Community]:
        return [
            _copy(c) for c in self._communities
            if level is None or c.level == level
        ]

    async def list_memberships(
        self,
        entity_id: Optional[UUID] = None,
        community_id: Optional[UUID] = None,
    ) -> list[EntityCommunityMembership]:
        return [
            _copy(m) for m in self._memberships
            if (entity_id is None or m.entity_id == entity_id)
            and (community_id is None or m.community_id == community_id)
        ]

    async def replace_community_generation(
        self,
        generation: CommunityGeneration,
        communities: list[Community],
        memberships: list[EntityCommunityMembership],
    ) -> None:
        # Build everything first, then swap the three references together.
        new_communities = [_copy(c) for c in communities]
        new_memberships = [_copy(m) for m in memberships]
        self._generation, self._communities, self._memberships = (
            _copy(generation), new_communities, new_memberships,
        )
        logger.debug(
            "Community generation %s active (%d communities)",
            generation.id, len(new_communities),
        )

    async def repoint_memberships(self, old_entity_id: UUID, new_entity_id: UUID) -> None:
        kept: dict[UUID, EntityCommunityMembership] = {
            m.community_id: m for m in self._memberships if m.entity_id == new_entity_id
        }
        result: list[EntityCommunityMembership] = []
        for m in self._memberships:
            if m.entity_id != old_entity_id:
                result.append(m)
                continue
            survivor = kept.get(m.community_id)
            if survivor is not None:
                survivor.membership_score = max(survivor.membership_score, m.membership_score)
                survivor.is_primary = survivor.is_primary or m.is_primary
            else:
                moved = m.model_copy(update={"entity_id": new_entity_id})
                kept[m.community_id] = moved
                result.append(moved)
        self._memberships = result

    # ----- Suggestions & trust -----

    async def add_suggestion(self, suggestion: AIMetadataSuggestion) -> None:
        self._suggestions[suggestion.id] = _copy(suggestion)

    async def get_suggestion(self, suggestion_id: UUID) -> Optional[AIMetadataSuggestion]:
        return _copy_optional(self._suggestions.get(suggestion_id))

    async def update_suggestion(self, suggestion: AIMetadataSuggestion) -> None:
        self._suggestions[suggestion.id] = _copy(suggestion)

    async def list_suggestions(
        self,
        status: Optional[SuggestionStatus] = None,
        target_id: Optional[UUID] = None,
    ) -> list[AIMetadataSuggestion]:
        result = [
            s for s in self._suggestions.values()
            if (status is None or s.status == status)
            and (target_id is None or s.target_id == target_id)
        ]
        result.sort(key=lambda s: (s.created_at, str(s.id)))
        return [_copy(s) for s in result]

    async def get_pattern_trust(self, pattern_key: str) -> Optional[PatternTrust]:
        return _copy_optional(self._trust.get(pattern_key))

    async def save_pattern_trust(self, trust: PatternTrust) -> None:
        self._trust[trust.pattern_key] = _copy(trust)

    # ----- Audit -----

    async def append_audit(self, entry: AuditEntry) -> None:
        self._audit.append(_copy(entry))

    async def list_audit(
        self,
        action: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> list[AuditEntry]:
        return [
            _copy(e) for e in self._audit
            if (action is None or e.action == action)
            and (record_id is None or e.record_id == record_id)
        ]

    # ----- Snapshots -----

    async def graph_snapshot(self) -> tuple[list[Entity], list[EntityRelationship]]:
        # No await between the two reads, so the view is consistent.
        entities = sorted(self._entities.values(), key=lambda e: (e.created_at, str(e.id)))
        relationships = sorted(
            self._relationships.values(), key=lambda r: (r.created_at, str(r.id))
        )
        return [_copy(e) for e in entities], [_copy(r) for r in relationships]
