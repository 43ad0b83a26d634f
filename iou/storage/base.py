"""
Storage boundary.

Every component reads and writes through a ``Repository``. Records go in
and come out as pydantic models; implementations must hand out copies so
that mutating a returned model never changes stored state until it is
written back with the matching ``update_*`` call.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from uuid import UUID

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


class Repository(ABC):
    """Async storage interface shared by the memory and SQL backends."""

    # ----- Domains -----

    @abstractmethod
    async def add_domain(self, domain: InformationDomain) -> None: ...

    @abstractmethod
    async def get_domain(self, domain_id: UUID) -> Optional[InformationDomain]: ...

    @abstractmethod
    async def list_domains(
        self,
        domain_type: Optional[DomainType] = None,
        status: Optional[DomainStatus] = None,
        organization_id: Optional[UUID] = None,
        parent_domain_id: Optional[UUID] = None,
    ) -> list[InformationDomain]: ...

    @abstractmethod
    async def update_domain(self, domain: InformationDomain) -> None: ...

    # ----- Information objects -----

    @abstractmethod
    async def add_object(self, obj: InformationObject) -> None: ...

    @abstractmethod
    async def get_object(self, object_id: UUID) -> Optional[InformationObject]: ...

    @abstractmethod
    async def update_object(self, obj: InformationObject) -> None:
        """Metadata refresh of an existing row (content is never changed here)."""

    @abstractmethod
    async def list_objects(
        self,
        domain_id: Optional[UUID] = None,
        object_type: Optional[ObjectType] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[InformationObject]: ...

    @abstractmethod
    async def get_successor(self, object_id: UUID) -> Optional[InformationObject]:
        """The version whose ``previous_version_id`` is *object_id*, if any."""

    # ----- Rules & executions -----

    @abstractmethod
    async def add_rule(self, rule: BusinessRule) -> None: ...

    @abstractmethod
    async def get_rule(self, rule_id: UUID) -> Optional[BusinessRule]: ...

    @abstractmethod
    async def update_rule(self, rule: BusinessRule) -> None: ...

    @abstractmethod
    async def list_rules(self, active_only: bool = False) -> list[BusinessRule]: ...

    @abstractmethod
    async def add_execution(self, execution: RuleExecution) -> None: ...

    @abstractmethod
    async def list_executions(
        self,
        object_id: Optional[UUID] = None,
        rule_id: Optional[UUID] = None,
    ) -> list[RuleExecution]: ...

    # ----- Entities -----

    @abstractmethod
    async def add_entity(self, entity: Entity) -> None:
        """Store a new entity and register its canonical key."""

    @abstractmethod
    async def get_entity(self, entity_id: UUID) -> Optional[Entity]: ...

    @abstractmethod
    async def find_entity_by_key(self, key: str) -> Optional[Entity]:
        """Look up an entity by canonical key or alias."""

    @abstractmethod
    async def register_entity_key(self, key: str, entity_id: UUID) -> None:
        """Point *key* at *entity_id*, replacing any previous owner."""

    @abstractmethod
    async def update_entity(self, entity: Entity) -> None: ...

    @abstractmethod
    async def delete_entity(self, entity_id: UUID) -> None: ...

    @abstractmethod
    async def list_entities(
        self,
        entity_type: Optional[EntityType] = None,
        source_domain_id: Optional[UUID] = None,
    ) -> list[Entity]: ...

    # ----- Entity relationships -----

    @abstractmethod
    async def find_relationship(
        self,
        source_entity_id: UUID,
        target_entity_id: UUID,
        relationship_type: RelationshipType,
    ) -> Optional[EntityRelationship]: ...

    @abstractmethod
    async def add_relationship(self, relationship: EntityRelationship) -> None: ...

    @abstractmethod
    async def update_relationship(self, relationship: EntityRelationship) -> None: ...

    @abstractmethod
    async def delete_relationship(self, relationship_id: UUID) -> None: ...

    @abstractmethod
    async def list_relationships(
        self, entity_id: Optional[UUID] = None
    ) -> list[EntityRelationship]:
        """All relationships, or those touching *entity_id* in either direction."""

    # ----- Domain relations -----

    @abstractmethod
    async def upsert_domain_relation(self, relation: DomainRelation) -> None:
        """Insert or replace the row with the same (from, to, discovery_method)."""

    @abstractmethod
    async def list_domain_relations(
        self,
        domain_id: Optional[UUID] = None,
        discovery_method: Optional[DiscoveryMethod] = None,
    ) -> list[DomainRelation]: ...

    @abstractmethod
    async def delete_domain_relation(self, relation_id: UUID) -> None: ...

    # ----- Communities -----

    @abstractmethod
    async def get_active_generation(self) -> Optional[CommunityGeneration]: ...

    @abstractmethod
    async def list_communities(self, level: Optional[int] = None) -> list[Community]:
        """Communities of the active generation."""

    @abstractmethod
    async def list_memberships(
        self,
        entity_id: Optional[UUID] = None,
        community_id: Optional[UUID] = None,
    ) -> list[EntityCommunityMembership]:
        """Memberships of the active generation."""

    @abstractmethod
    async def replace_community_generation(
        self,
        generation: CommunityGeneration,
        communities: list[Community],
        memberships: list[EntityCommunityMembership],
    ) -> None:
        """Atomically make *generation* the active one, dropping the previous one."""

    @abstractmethod
    async def repoint_memberships(self, old_entity_id: UUID, new_entity_id: UUID) -> None:
        """Move memberships of a merged-away entity onto the surviving one."""

    # ----- Suggestions & trust -----

    @abstractmethod
    async def add_suggestion(self, suggestion: AIMetadataSuggestion) -> None: ...

    @abstractmethod
    async def get_suggestion(self, suggestion_id: UUID) -> Optional[AIMetadataSuggestion]: ...

    @abstractmethod
    async def update_suggestion(self, suggestion: AIMetadataSuggestion) -> None: ...

    @abstractmethod
    async def list_suggestions(
        self,
        status: Optional[SuggestionStatus] = None,
        target_id: Optional[UUID] = None,
    ) -> list[AIMetadataSuggestion]: ...

    @abstractmethod
    async def get_pattern_trust(self, pattern_key: str) -> Optional[PatternTrust]: ...

    @abstractmethod
    async def save_pattern_trust(self, trust: PatternTrust) -> None: ...

    # ----- Audit -----

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None: ...

    @abstractmethod
    async def list_audit(
        self,
        action: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> list[AuditEntry]: ...

    # ----- Snapshots -----

    async def graph_snapshot(self) -> tuple[list[Entity], list[EntityRelationship]]:
        """Entities and relationships as one consistent view."""
        entities = await self.list_entities()
        relationships = await self.list_relationships()
        return entities, relationships
