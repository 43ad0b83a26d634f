"""
Data Models

Core Pydantic models for the IOU engine.
All modules import from here - no circular dependencies allowed.
"""

from iou.models.enums import (
    ArchivalValue,
    Classification,
    DiscoveryMethod,
    DomainRelationType,
    DomainStatus,
    DomainType,
    EntityType,
    IssueSeverity,
    ObjectType,
    PrivacyLevel,
    RelationshipType,
    SuggestionSource,
    SuggestionStatus,
    SuggestionTarget,
)
from iou.models.domains import (
    DERIVABLE_FIELDS,
    DomainCreate,
    InformationDomain,
    InformationObject,
    ObjectCreate,
    ObjectUpdate,
)
from iou.models.rules import (
    BusinessRule,
    RuleCreate,
    RuleExecution,
    RuleLogic,
)
from iou.models.graph import (
    CandidateEntity,
    Community,
    CommunityGeneration,
    DomainRelation,
    Entity,
    EntityCommunityMembership,
    EntityRelationship,
    Observation,
)
from iou.models.suggestions import AIMetadataSuggestion, PatternTrust
from iou.models.audit import AuditEntry
from iou.models.context import (
    AppContext,
    AppRecommendation,
    DomainContext,
    RelatedDomain,
    RelatedEntity,
)

__all__ = [
    # Enums
    "ArchivalValue",
    "Classification",
    "DiscoveryMethod",
    "DomainRelationType",
    "DomainStatus",
    "DomainType",
    "EntityType",
    "IssueSeverity",
    "ObjectType",
    "PrivacyLevel",
    "RelationshipType",
    "SuggestionSource",
    "SuggestionStatus",
    "SuggestionTarget",
    # Domains & objects
    "DERIVABLE_FIELDS",
    "DomainCreate",
    "InformationDomain",
    "InformationObject",
    "ObjectCreate",
    "ObjectUpdate",
    # Rules
    "BusinessRule",
    "RuleCreate",
    "RuleExecution",
    "RuleLogic",
    # Graph
    "CandidateEntity",
    "Community",
    "CommunityGeneration",
    "DomainRelation",
    "Entity",
    "EntityCommunityMembership",
    "EntityRelationship",
    "Observation",
    # Feedback
    "AIMetadataSuggestion",
    "PatternTrust",
    # Audit
    "AuditEntry",
    # Read models
    "AppContext",
    "AppRecommendation",
    "DomainContext",
    "RelatedDomain",
    "RelatedEntity",
]
