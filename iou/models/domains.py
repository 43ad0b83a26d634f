"""Information domains and the information objects they own."""

from datetime import date, datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from iou.models.enums import (
    Classification,
    DomainStatus,
    DomainType,
    ObjectType,
    PrivacyLevel,
)


# Allowed status transitions. ACTIVE <-> DRAFT is the only way back.
DOMAIN_STATUS_TRANSITIONS: dict[DomainStatus, set[DomainStatus]] = {
    DomainStatus.DRAFT: {DomainStatus.ACTIVE, DomainStatus.CLOSED, DomainStatus.ARCHIVED},
    DomainStatus.ACTIVE: {DomainStatus.DRAFT, DomainStatus.CLOSED, DomainStatus.ARCHIVED},
    DomainStatus.CLOSED: {DomainStatus.ARCHIVED},
    DomainStatus.ARCHIVED: set(),
}

# Object fields the rule engine may derive and refresh in place.
DERIVABLE_FIELDS: frozenset[str] = frozenset({
    "classification",
    "is_woo_relevant",
    "woo_publication_date",
    "privacy_level",
    "retention_period",
    "retention_trigger",
    "destruction_date",
})


class InformationDomain(BaseModel):
    """A typed working context (case, project, policy or expertise)."""

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=512)
    description: Optional[str] = None
    domain_type: DomainType
    status: DomainStatus = DomainStatus.ACTIVE
    organization_id: UUID
    owner_user_id: Optional[UUID] = None
    parent_domain_id: Optional[UUID] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def can_transition(self, to_status: DomainStatus) -> bool:
        return to_status in DOMAIN_STATUS_TRANSITIONS[self.status]


class DomainCreate(BaseModel):
    """Input for creating a domain."""

    name: str = Field(..., min_length=1, max_length=512)
    domain_type: DomainType
    organization_id: UUID
    description: Optional[str] = None
    status: DomainStatus = DomainStatus.ACTIVE
    owner_user_id: Optional[UUID] = None
    parent_domain_id: Optional[UUID] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("status")
    @classmethod
    def not_archived_on_create(cls, v: DomainStatus) -> DomainStatus:
        if v == DomainStatus.ARCHIVED:
            raise ValueError("a domain cannot be created archived")
        return v


def _dedupe_tags(tags: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag.casefold() not in seen:
            seen.add(tag.casefold())
            result.append(tag)
    return result


class InformationObject(BaseModel):
    """
    A single record owned by one domain.

    Immutable once written, except for the compliance metadata listed in
    DERIVABLE_FIELDS. Content changes create a new version that points
    back to its predecessor through ``previous_version_id``.
    """

    id: UUID = Field(default_factory=uuid4)
    domain_id: UUID
    object_type: ObjectType
    title: str = Field(..., min_length=1, max_length=1024)
    description: Optional[str] = None
    content_text: Optional[str] = None
    mime_type: Optional[str] = "text/plain"

    # Compliance metadata
    classification: Classification = Classification.INTERNAL
    retention_period: Optional[int] = Field(default=None, ge=0, description="Years")
    retention_trigger: Optional[str] = Field(
        default=None,
        description="Event starting the retention clock (e.g. 'case_closed')",
    )
    destruction_date: Optional[date] = None
    is_woo_relevant: Optional[bool] = Field(
        default=None,
        description="None until supplied by the creator or derived by a rule",
    )
    woo_publication_date: Optional[date] = None
    privacy_level: PrivacyLevel = PrivacyLevel.NONE

    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    explicit_fields: list[str] = Field(
        default_factory=list,
        description="Compliance fields supplied by the creator; rules never overwrite these",
    )

    # Versioning
    version: int = Field(default=1, ge=1)
    previous_version_id: Optional[UUID] = None

    created_by: Optional[UUID] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("tags")
    @classmethod
    def unique_tags(cls, v: list[str]) -> list[str]:
        return _dedupe_tags(v)

    def add_tag(self, tag: str) -> None:
        """Add a tag (case-insensitive, no duplicates)."""
        self.tags = _dedupe_tags([*self.tags, tag])

    def field_value(self, path: str) -> Any:
        """Resolve a dotted path such as ``classification`` or ``metadata.source``."""
        head, _, rest = path.partition(".")
        if head not in type(self).model_fields:
            raise KeyError(path)
        value: Any = getattr(self, head)
        for part in rest.split(".") if rest else []:
            if not isinstance(value, dict) or part not in value:
                raise KeyError(path)
            value = value[part]
        return value


class ObjectCreate(BaseModel):
    """Input for creating an information object."""

    domain_id: UUID
    object_type: ObjectType
    title: str = Field(..., min_length=1, max_length=1024)
    description: Optional[str] = None
    content_text: Optional[str] = None
    mime_type: Optional[str] = "text/plain"
    classification: Optional[Classification] = None
    retention_period: Optional[int] = Field(default=None, ge=0)
    retention_trigger: Optional[str] = None
    destruction_date: Optional[date] = None
    is_woo_relevant: Optional[bool] = None
    privacy_level: Optional[PrivacyLevel] = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[UUID] = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be blank")
        return v

    def explicit_compliance_fields(self) -> list[str]:
        """Compliance fields the caller actually supplied."""
        return sorted(
            f for f in DERIVABLE_FIELDS
            if f in self.model_fields_set and getattr(self, f, None) is not None
        )

    def to_object(self) -> InformationObject:
        data = self.model_dump(exclude_none=True)
        return InformationObject(**data, explicit_fields=self.explicit_compliance_fields())


class ObjectUpdate(BaseModel):
    """Changes that produce a new version of an object."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=1024)
    description: Optional[str] = None
    content_text: Optional[str] = None
    mime_type: Optional[str] = None
    classification: Optional[Classification] = None
    retention_period: Optional[int] = Field(default=None, ge=0)
    retention_trigger: Optional[str] = None
    destruction_date: Optional[date] = None
    is_woo_relevant: Optional[bool] = None
    privacy_level: Optional[PrivacyLevel] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None
    created_by: Optional[UUID] = None

    def explicit_compliance_fields(self) -> list[str]:
        return sorted(
            f for f in DERIVABLE_FIELDS
            if f in self.model_fields_set and getattr(self, f, None) is not None
        )
