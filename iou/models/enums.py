"""Enumeration types for the IOU engine."""

from enum import Enum


class DomainType(str, Enum):
    """Type of information domain."""
    CASE = "case"            # Executive work: permits, subsidies, objections
    PROJECT = "project"      # Temporary collaborative initiative
    POLICY = "policy"        # Policy development and evaluation
    EXPERTISE = "expertise"  # Knowledge sharing


class DomainStatus(str, Enum):
    """Lifecycle status of an information domain."""
    DRAFT = "draft"
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class ObjectType(str, Enum):
    """Type of information object."""
    DOCUMENT = "document"
    EMAIL = "email"
    CHAT = "chat"
    DECISION = "decision"
    DATA = "data"


class Classification(str, Enum):
    """Information security classification, from most to least open."""
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    SECRET = "secret"


class PrivacyLevel(str, Enum):
    """Personal data level under the AVG (GDPR)."""
    NONE = "none"
    NORMAL = "normal"
    SPECIAL = "special"      # Art. 9 special category data
    CRIMINAL = "criminal"    # Art. 10 criminal data


class ArchivalValue(str, Enum):
    """Archival value under the Archiefwet selection list."""
    PERMANENT = "permanent"
    TEMPORARY = "temporary"


class EntityType(str, Enum):
    """Fixed entity taxonomy."""
    PERSON = "person"
    ORGANIZATION = "organization"
    LOCATION = "location"
    LAW = "law"
    DATE = "date"
    MONEY = "money"
    POLICY = "policy"


# Overlap resolution order for the extractor: lower wins.
ENTITY_TYPE_PRIORITY: dict[EntityType, int] = {
    EntityType.LAW: 0,
    EntityType.ORGANIZATION: 1,
    EntityType.LOCATION: 2,
    EntityType.PERSON: 3,
    EntityType.DATE: 4,
    EntityType.MONEY: 5,
    EntityType.POLICY: 6,
}


class RelationshipType(str, Enum):
    """Type of a directed entity-to-entity relationship."""
    WORKS_FOR = "WORKS_FOR"
    LOCATED_IN = "LOCATED_IN"
    SUBJECT_TO = "SUBJECT_TO"
    REFERS_TO = "REFERS_TO"
    RELATES_TO = "RELATES_TO"
    COLLABORATES_WITH = "COLLABORATES_WITH"
    PART_OF = "PART_OF"


# Relationship types that may connect an entity to itself. Empty by default.
REFLEXIVE_RELATIONSHIP_TYPES: frozenset[RelationshipType] = frozenset()


class DomainRelationType(str, Enum):
    """Why two domains are related."""
    SHARED_ENTITIES = "shared_entities"
    SAME_COMMUNITY = "same_community"
    MANUAL_LINK = "manual_link"


class DiscoveryMethod(str, Enum):
    """How a domain relation came into existence."""
    AUTOMATIC = "automatic"          # Relationship builder aggregation
    MANUAL = "manual"                # Explicit caller action only
    AI_SUGGESTION = "ai_suggestion"  # Accepted ranking suggestion


class SuggestionStatus(str, Enum):
    """Review state of an AI metadata suggestion."""
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    MODIFIED = "modified"


class SuggestionSource(str, Enum):
    """Component that produced a suggestion."""
    NER = "ner"
    RESOLUTION = "resolution"
    RULE = "rule"
    CLASSIFICATION = "classification"
    PATTERN_MATCHING = "pattern_matching"
    RANKING = "ranking"


class SuggestionTarget(str, Enum):
    """Kind of record a suggestion applies to."""
    OBJECT = "object"
    ENTITY = "entity"
    DOMAIN = "domain"


class IssueSeverity(str, Enum):
    """Severity of a compliance flag."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
