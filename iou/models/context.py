"""Read models returned by the query surface."""

from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from iou.models.domains import InformationDomain, InformationObject
from iou.models.enums import DomainType
from iou.models.graph import DomainRelation, Entity, EntityRelationship


class RelatedDomain(BaseModel):
    """A neighbouring domain and the relation that links it."""
    domain: InformationDomain
    relation: DomainRelation


class DomainContext(BaseModel):
    """A domain with everything needed to work inside it."""
    domain: InformationDomain
    parent: Optional[InformationDomain] = None
    children: list[InformationDomain] = Field(default_factory=list)
    related_domains: list[RelatedDomain] = Field(default_factory=list)
    objects: list[InformationObject] = Field(
        default_factory=list,
        description="Latest version of every object in the domain, newest first",
    )


class RelatedEntity(BaseModel):
    """One relationship of an entity, seen from that entity."""
    relationship: EntityRelationship
    direction: Literal["outgoing", "incoming"]
    entity: Entity


class AppContext(BaseModel):
    """What the caller is working on when asking for app recommendations."""
    domain_id: Optional[UUID] = None
    domain_type: Optional[DomainType] = None
    role: Optional[str] = Field(default=None, description="e.g. 'archivist', 'analyst'")


class AppRecommendation(BaseModel):
    app_type: str
    name: str
    description: str
    endpoint_url: str
    relevance_score: float = Field(..., ge=0.0, le=1.0)
    reason: str
