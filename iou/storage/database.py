"""
Database layer using SQLAlchemy 2.0 with async support.

Provides:
- SQLAlchemy ORM models for all records
- Async session management
- CRUD operations via DatabaseService
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncGenerator, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from iou.config import get_settings


# Base class for all ORM models
class Base(DeclarativeBase):
    """Base class for SQLAlchemy ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# ORM Models
# -----------------------------------------------------------------------------

class InformationDomainDB(Base):
    """Information domains table."""

    __tablename__ = "information_domains"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    domain_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    organization_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False)
    owner_user_id: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    parent_domain_id: Mapped[Optional[UUID]] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("information_domains.id"),
        nullable=True,
    )
    metadata_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_domains_type", "domain_type"),
        Index("idx_domains_status", "status"),
        Index("idx_domains_org", "organization_id"),
    )


class InformationObjectDB(Base):
    """Information objects table. One row per version."""

    __tablename__ = "information_objects"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    domain_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("information_domains.id"),
        nullable=False,
    )
    object_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(1024), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Compliance metadata
    classification: Mapped[str] = mapped_column(String(32), nullable=False, default="internal")
    retention_period: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    retention_trigger: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    destruction_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_woo_relevant: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    woo_publication_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    privacy_level: Mapped[str] = mapped_column(String(32), nullable=False, default="none")

    tags: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    metadata_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    explicit_fields: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    # Versioning
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    previous_version_id: Mapped[Optional[UUID]] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("information_objects.id"),
        nullable=True,
        unique=True,
    )

    created_by: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_objects_domain", "domain_id"),
        Index("idx_objects_type", "object_type"),
        Index("idx_objects_created", "created_at"),
    )


class BusinessRuleDB(Base):
    """Business rules table."""

    __tablename__ = "business_rules"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    rule_logic: Mapped[dict] = mapped_column(JSONB, nullable=False)
    applies_to_domain_types: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    applies_to_object_types: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_rules_active", "is_active"),
    )


class RuleExecutionDB(Base):
    """Rule executions table (append-only)."""

    __tablename__ = "rule_executions"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    rule_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("business_rules.id"),
        nullable=False,
    )
    object_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("information_objects.id"),
        nullable=False,
    )
    domain_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    result: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_executions_object", "object_id"),
        Index("idx_executions_rule", "rule_id"),
    )


class EntityDB(Base):
    """Canonical entities table."""

    __tablename__ = "entities"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    canonical_name: Mapped[str] = mapped_column(String(512), nullable=False)
    canonical_key: Mapped[str] = mapped_column(String(600), nullable=False)
    aliases: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    source_domain_id: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    mention_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_entities_type", "entity_type"),
        Index("idx_entities_source_domain", "source_domain_id"),
    )


class EntityKeyDB(Base):
    """Canonical key and alias registry: one owner per key."""

    __tablename__ = "entity_keys"

    key: Mapped[str] = mapped_column(String(600), primary_key=True)
    entity_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_entity_keys_entity", "entity_id"),
    )


class EntityRelationshipDB(Base):
    """Typed entity-to-entity edges."""

    __tablename__ = "entity_relationships"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    source_entity_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_entity_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship_type: Mapped[str] = mapped_column(String(32), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    source_domain_id: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    observations: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "source_entity_id", "target_entity_id", "relationship_type",
            name="uq_entity_relationship",
        ),
        Index("idx_rel_source", "source_entity_id"),
        Index("idx_rel_target", "target_entity_id"),
    )


class DomainRelationDB(Base):
    """Directed domain-to-domain relations, one row per discovery method."""

    __tablename__ = "domain_relations"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    from_domain_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("information_domains.id"),
        nullable=False,
    )
    to_domain_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("information_domains.id"),
        nullable=False,
    )
    relation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    strength: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    discovery_method: Mapped[str] = mapped_column(String(32), nullable=False)
    shared_entities: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    link_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "from_domain_id", "to_domain_id", "discovery_method",
            name="uq_domain_relation",
        ),
        Index("idx_domain_rel_from", "from_domain_id"),
        Index("idx_domain_rel_to", "to_domain_id"),
    )


class CommunityGenerationDB(Base):
    """Community detection runs. Exactly one row is active."""

    __tablename__ = "community_generations"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    levels: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    community_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    merges: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    budget_exceeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class CommunityDB(Base):
    """Hierarchical communities."""

    __tablename__ = "communities"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    generation_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("community_generations.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_community_id: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    keywords: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    modularity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_communities_generation", "generation_id"),
        Index("idx_communities_level", "level"),
    )


class EntityCommunityMembershipDB(Base):
    """Entity-to-community membership."""

    __tablename__ = "entity_community_memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False)
    community_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("communities.id", ondelete="CASCADE"),
        nullable=False,
    )
    generation_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("community_generations.id", ondelete="CASCADE"),
        nullable=False,
    )
    membership_score: Mapped[float] = mapped_column(Float, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("entity_id", "community_id", name="uq_membership"),
        Index("idx_membership_entity", "entity_id"),
        Index("idx_membership_community", "community_id"),
    )


class AIMetadataSuggestionDB(Base):
    """AI metadata suggestions awaiting or past review."""

    __tablename__ = "ai_metadata_suggestions"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    target_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False)
    field: Mapped[str] = mapped_column(String(128), nullable=False)
    suggested_value: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    pattern_key: Mapped[str] = mapped_column(String(600), nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="proposed")
    final_value: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    reviewed_by: Mapped[Optional[UUID]] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_suggestions_status", "status"),
        Index("idx_suggestions_target", "target_id"),
        Index("idx_suggestions_pattern", "pattern_key"),
    )


class PatternTrustDB(Base):
    """Reviewer feedback aggregated per suggestion pattern."""

    __tablename__ = "pattern_trust"

    pattern_key: Mapped[str] = mapped_column(String(600), primary_key=True)
    accepted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    modified: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rejected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    adjustment: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AuditLogDB(Base):
    """Audit log table (append-only)."""

    __tablename__ = "audit_log"

    audit_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        index=True
    )
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    component: Mapped[str] = mapped_column(String(64), nullable=False)
    record_type: Mapped[str] = mapped_column(String(64), nullable=False)
    record_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    details: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_audit_action", "action"),
        Index("idx_audit_record", "record_id"),
    )


# -----------------------------------------------------------------------------
# Database Engine & Session
# -----------------------------------------------------------------------------

_engine = None
_async_session_factory = None


def get_engine():
    """Get or create the async engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            echo=settings.debug,
        )
    return _engine


def get_session_factory():
    """Get or create the session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session; commits on success, rolls back on error."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database - create all tables."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db() -> None:
    """Drop all tables (for testing)."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# -----------------------------------------------------------------------------
# Database Service (CRUD operations)
# -----------------------------------------------------------------------------

class DatabaseService:
    """Service class for database CRUD operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ----- Generic -----

    async def add(self, row: Base) -> Base:
        """Insert a row and flush so defaults are populated."""
        self.session.add(row)
        await self.session.flush()
        return row

    async def get(self, row_cls: type[Base], pk: Any) -> Optional[Base]:
        return await self.session.get(row_cls, pk)

    async def update_fields(self, row_cls: type[Base], pk: Any, **kwargs) -> Optional[Base]:
        """Update columns on an existing row."""
        row = await self.session.get(row_cls, pk)
        if row:
            for k, v in kwargs.items():
                if hasattr(row, k):
                    setattr(row, k, v)
            await self.session.flush()
        return row

    async def delete(self, row_cls: type[Base], pk: Any) -> None:
        row = await self.session.get(row_cls, pk)
        if row is not None:
            await self.session.delete(row)
            await self.session.flush()

    # ----- Domains & objects -----

    async def list_domains(self, **filters) -> list[InformationDomainDB]:
        stmt = select(InformationDomainDB)
        for column, value in filters.items():
            if value is not None:
                stmt = stmt.where(getattr(InformationDomainDB, column) == value)
        result = await self.session.execute(
            stmt.order_by(InformationDomainDB.created_at, InformationDomainDB.id)
        )
        return list(result.scalars().all())

    async def list_objects(
        self,
        domain_id: Optional[UUID] = None,
        object_type: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[InformationObjectDB]:
        stmt = select(InformationObjectDB)
        if domain_id is not None:
            stmt = stmt.where(InformationObjectDB.domain_id == domain_id)
        if object_type is not None:
            stmt = stmt.where(InformationObjectDB.object_type == object_type)
        if created_after is not None:
            stmt = stmt.where(InformationObjectDB.created_at >= created_after)
        if created_before is not None:
            stmt = stmt.where(InformationObjectDB.created_at < created_before)
        result = await self.session.execute(
            stmt.order_by(InformationObjectDB.created_at, InformationObjectDB.id)
        )
        return list(result.scalars().all())

    async def get_successor(self, object_id: UUID) -> Optional[InformationObjectDB]:
        result = await self.session.execute(
            select(InformationObjectDB).where(InformationObjectDB.previous_version_id == object_id)
        )
        return result.scalar_one_or_none()

    # ----- Rules & executions -----

    async def list_rules(self, active_only: bool = False) -> list[BusinessRuleDB]:
        stmt = select(BusinessRuleDB)
        if active_only:
            stmt = stmt.where(BusinessRuleDB.is_active.is_(True))
        result = await self.session.execute(stmt.order_by(BusinessRuleDB.created_at, BusinessRuleDB.id))
        return list(result.scalars().all())

    async def list_executions(
        self,
        object_id: Optional[UUID] = None,
        rule_id: Optional[UUID] = None,
    ) -> list[RuleExecutionDB]:
        stmt = select(RuleExecutionDB)
        if object_id is not None:
            stmt = stmt.where(RuleExecutionDB.object_id == object_id)
        if rule_id is not None:
            stmt = stmt.where(RuleExecutionDB.rule_id == rule_id)
        result = await self.session.execute(stmt.order_by(RuleExecutionDB.executed_at))
        return list(result.scalars().all())

    # ----- Entities -----

    async def find_entity_by_key(self, key: str) -> Optional[EntityDB]:
        result = await self.session.execute(
            select(EntityDB)
            .join(EntityKeyDB, EntityKeyDB.entity_id == EntityDB.id)
            .where(EntityKeyDB.key == key)
        )
        return result.scalar_one_or_none()

    async def set_entity_key(self, key: str, entity_id: UUID) -> None:
        row = await self.session.get(EntityKeyDB, key)
        if row is None:
            self.session.add(EntityKeyDB(key=key, entity_id=entity_id))
        else:
            row.entity_id = entity_id
        await self.session.flush()

    async def list_entities(
        self,
        entity_type: Optional[str] = None,
        source_domain_id: Optional[UUID] = None,
    ) -> list[EntityDB]:
        stmt = select(EntityDB)
        if entity_type is not None:
            stmt = stmt.where(EntityDB.entity_type == entity_type)
        if source_domain_id is not None:
            stmt = stmt.where(EntityDB.source_domain_id == source_domain_id)
        result = await self.session.execute(stmt.order_by(EntityDB.created_at, EntityDB.id))
        return list(result.scalars().all())

    async def find_relationship(
        self,
        source_entity_id: UUID,
        target_entity_id: UUID,
        relationship_type: str,
    ) -> Optional[EntityRelationshipDB]:
        result = await self.session.execute(
            select(EntityRelationshipDB).where(
                EntityRelationshipDB.source_entity_id == source_entity_id,
                EntityRelationshipDB.target_entity_id == target_entity_id,
                EntityRelationshipDB.relationship_type == relationship_type,
            )
        )
        return result.scalar_one_or_none()

    async def list_relationships(self, entity_id: Optional[UUID] = None) -> list[EntityRelationshipDB]:
        stmt = select(EntityRelationshipDB)
        if entity_id is not None:
            stmt = stmt.where(
                or_(
                    EntityRelationshipDB.source_entity_id == entity_id,
                    EntityRelationshipDB.target_entity_id == entity_id,
                )
            )
        result = await self.session.execute(
            stmt.order_by(EntityRelationshipDB.created_at, EntityRelationshipDB.id)
        )
        return list(result.scalars().all())

    # ----- Domain relations -----

    async def get_domain_relation(
        self, from_domain_id: UUID, to_domain_id: UUID, discovery_method: str
    ) -> Optional[DomainRelationDB]:
        result = await self.session.execute(
            select(DomainRelationDB).where(
                DomainRelationDB.from_domain_id == from_domain_id,
                DomainRelationDB.to_domain_id == to_domain_id,
                DomainRelationDB.discovery_method == discovery_method,
            )
        )
        return result.scalar_one_or_none()

    async def list_domain_relations(
        self,
        domain_id: Optional[UUID] = None,
        discovery_method: Optional[str] = None,
    ) -> list[DomainRelationDB]:
        stmt = select(DomainRelationDB)
        if domain_id is not None:
            stmt = stmt.where(
                or_(
                    DomainRelationDB.from_domain_id == domain_id,
                    DomainRelationDB.to_domain_id == domain_id,
                )
            )
        if discovery_method is not None:
            stmt = stmt.where(DomainRelationDB.discovery_method == discovery_method)
        result = await self.session.execute(stmt.order_by(DomainRelationDB.created_at, DomainRelationDB.id))
        return list(result.scalars().all())

    # ----- Communities -----

    async def get_active_generation(self) -> Optional[CommunityGenerationDB]:
        result = await self.session.execute(
            select(CommunityGenerationDB).where(CommunityGenerationDB.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def list_communities(
        self, generation_id: UUID, level: Optional[int] = None
    ) -> list[CommunityDB]:
        stmt = select(CommunityDB).where(CommunityDB.generation_id == generation_id)
        if level is not None:
            stmt = stmt.where(CommunityDB.level == level)
        result = await self.session.execute(stmt.order_by(CommunityDB.level, CommunityDB.name))
        return list(result.scalars().all())

    async def list_memberships(
        self,
        generation_id: UUID,
        entity_id: Optional[UUID] = None,
        community_id: Optional[UUID] = None,
    ) -> list[EntityCommunityMembershipDB]:
        stmt = select(EntityCommunityMembershipDB).where(
            EntityCommunityMembershipDB.generation_id == generation_id
        )
        if entity_id is not None:
            stmt = stmt.where(EntityCommunityMembershipDB.entity_id == entity_id)
        if community_id is not None:
            stmt = stmt.where(EntityCommunityMembershipDB.community_id == community_id)
        result = await self.session.execute(stmt.order_by(EntityCommunityMembershipDB.id))
        return list(result.scalars().all())

    async def activate_generation(self, generation_id: UUID) -> None:
        """Drop every other generation and mark *generation_id* active.

        Must run in the same session (transaction) that inserted the new
        generation's rows.
        """
        await self.session.execute(
            delete(EntityCommunityMembershipDB).where(
                EntityCommunityMembershipDB.generation_id != generation_id
            )
        )
        await self.session.execute(
            delete(CommunityDB).where(CommunityDB.generation_id != generation_id)
        )
        await self.session.execute(
            delete(CommunityGenerationDB).where(CommunityGenerationDB.id != generation_id)
        )
        await self.session.execute(
            update(CommunityGenerationDB)
            .where(CommunityGenerationDB.id == generation_id)
            .values(is_active=True)
        )
        await self.session.flush()

    # ----- Suggestions -----

    async def list_suggestions(
        self,
        status: Optional[str] = None,
        target_id: Optional[UUID] = None,
    ) -> list[AIMetadataSuggestionDB]:
        stmt = select(AIMetadataSuggestionDB)
        if status is not None:
            stmt = stmt.where(AIMetadataSuggestionDB.status == status)
        if target_id is not None:
            stmt = stmt.where(AIMetadataSuggestionDB.target_id == target_id)
        result = await self.session.execute(
            stmt.order_by(AIMetadataSuggestionDB.created_at, AIMetadataSuggestionDB.id)
        )
        return list(result.scalars().all())

    # ----- Audit Log -----

    async def create_audit_entry(self, **kwargs) -> AuditLogDB:
        """Create a new audit log entry."""
        entry = AuditLogDB(**kwargs)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_audit(
        self,
        action: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> list[AuditLogDB]:
        stmt = select(AuditLogDB)
        if action is not None:
            stmt = stmt.where(AuditLogDB.action == action)
        if record_id is not None:
            stmt = stmt.where(AuditLogDB.record_id == record_id)
        result = await self.session.execute(stmt.order_by(AuditLogDB.timestamp))
        return list(result.scalars().all())
