"""Knowledge graph models: entities, relationships, domain relations, communities."""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

from iou.models.enums import (
    DiscoveryMethod,
    DomainRelationType,
    EntityType,
    REFLEXIVE_RELATIONSHIP_TYPES,
    RelationshipType,
)


class CandidateEntity(BaseModel):
    """A named-entity mention found by the extractor. Not yet resolved."""

    surface_form: str = Field(..., min_length=1)
    entity_type: EntityType
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    canonical_hint: Optional[str] = Field(
        default=None,
        description="Gazetteer display name, used instead of the surface form when set",
    )

    @property
    def canonical_name(self) -> str:
        return self.canonical_hint or self.surface_form

    @property
    def length(self) -> int:
        return self.end - self.start


class Entity(BaseModel):
    """Canonical, deduplicated entity node."""

    id: UUID = Field(default_factory=uuid4)
    entity_type: EntityType
    canonical_name: str = Field(..., min_length=1)
    canonical_key: str = Field(..., min_length=1)
    aliases: list[str] = Field(
        default_factory=list,
        description="Other canonical keys that resolve to this entity",
    )
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source_domain_id: Optional[UUID] = Field(
        default=None,
        description="Domain of the object that first produced this entity",
    )
    mention_count: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Observation(BaseModel):
    """One object's contribution to a relationship."""

    weight: float = Field(..., ge=0.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    domain_id: Optional[UUID] = Field(
        default=None,
        description="Domain of the observing object",
    )


class EntityRelationship(BaseModel):
    """Directed, typed, weighted edge between two distinct entities."""

    id: UUID = Field(default_factory=uuid4)
    source_entity_id: UUID
    target_entity_id: UUID
    relationship_type: RelationshipType
    weight: float = Field(default=0.0, ge=0.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source_domain_id: Optional[UUID] = None
    observations: dict[str, Observation] = Field(
        default_factory=dict,
        description="Contribution per source object id",
    )
    context: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def no_self_loop(self) -> "EntityRelationship":
        if (
            self.source_entity_id == self.target_entity_id
            and self.relationship_type not in REFLEXIVE_RELATIONSHIP_TYPES
        ):
            raise ValueError(
                f"{self.relationship_type.value} cannot link an entity to itself"
            )
        return self

    @property
    def key(self) -> tuple[UUID, UUID, RelationshipType]:
        return self.source_entity_id, self.target_entity_id, self.relationship_type

    def observe(
        self,
        object_id: str,
        weight: float,
        confidence: float,
        domain_id: Optional[UUID] = None,
    ) -> bool:
        """Record one object's contribution; return True if anything changed.

        Weight never decreases: an object seen again keeps the larger of
        its old and new contribution, so re-processing unchanged text is a
        no-op. Confidence is re-averaged over all observations, weighted
        by their contribution.
        """
        previous = self.observations.get(object_id)
        if previous is not None and previous.weight >= weight:
            return False

        self.observations[object_id] = Observation(
            weight=weight, confidence=confidence, domain_id=domain_id
        )
        self.recompute()
        return True

    def recompute(self) -> None:
        total = sum(o.weight for o in self.observations.values())
        self.weight = total
        if total > 0:
            self.confidence = min(
                1.0,
                sum(o.weight * o.confidence for o in self.observations.values()) / total,
            )
        self.updated_at = datetime.now(timezone.utc)


class DomainRelation(BaseModel):
    """Directed relation between two domains."""

    id: UUID = Field(default_factory=uuid4)
    from_domain_id: UUID
    to_domain_id: UUID
    relation_type: DomainRelationType = DomainRelationType.SHARED_ENTITIES
    strength: float = Field(default=0.0, ge=0.0)
    discovery_method: DiscoveryMethod = DiscoveryMethod.AUTOMATIC
    shared_entities: list[UUID] = Field(default_factory=list)
    link_count: int = Field(default=0, ge=0)
    explanation: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def distinct_domains(self) -> "DomainRelation":
        if self.from_domain_id == self.to_domain_id:
            raise ValueError("a domain relation needs two distinct domains")
        return self

    @property
    def key(self) -> tuple[UUID, UUID, DiscoveryMethod]:
        return self.from_domain_id, self.to_domain_id, self.discovery_method


class Community(BaseModel):
    """Hierarchical cluster of entities from one detection generation."""

    id: UUID = Field(default_factory=uuid4)
    generation_id: UUID
    name: str
    description: Optional[str] = None
    level: int = Field(..., ge=0)
    parent_community_id: Optional[UUID] = None
    keywords: list[str] = Field(default_factory=list)
    member_count: int = Field(default=0, ge=0)
    modularity: float = Field(
        default=0.0,
        description="Modularity of the partition at this community's level",
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EntityCommunityMembership(BaseModel):
    """Entity-to-community membership; overlapping memberships are allowed."""

    entity_id: UUID
    community_id: UUID
    membership_score: float = Field(..., ge=0.0, le=1.0)
    is_primary: bool = True


class CommunityGeneration(BaseModel):
    """Bookkeeping for one detection run."""

    id: UUID = Field(default_factory=uuid4)
    levels: int = Field(default=0, ge=0)
    community_count: int = Field(default=0, ge=0)
    merges: int = Field(default=0, ge=0)
    budget_exceeded: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
