"""
Repository backed by PostgreSQL through the async SQLAlchemy layer.

Each call runs in its own session (one transaction). Multi-row writes
that must be atomic, such as a community generation swap, happen inside
a single call.
"""

import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

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
from iou.storage.database import (
    AIMetadataSuggestionDB,
    AuditLogDB,
    Base,
    BusinessRuleDB,
    CommunityDB,
    CommunityGenerationDB,
    DatabaseService,
    DomainRelationDB,
    EntityCommunityMembershipDB,
    EntityDB,
    EntityRelationshipDB,
    InformationDomainDB,
    InformationObjectDB,
    PatternTrustDB,
    RuleExecutionDB,
    get_db_session,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

SessionProvider = Callable[[], AbstractAsyncContextManager[AsyncSession]]


# -----------------------------------------------------------------------------
# Row <-> model conversion
# -----------------------------------------------------------------------------

def _column_for(field: str) -> str:
    # "metadata" is reserved on declarative classes.
    return "metadata_json" if field == "metadata" else field


def to_columns(model: BaseModel, row_cls: type[Base]) -> dict[str, Any]:
    """Column values for *row_cls* taken from *model*.

    JSONB columns get the JSON-mode dump (UUIDs and dates as strings);
    every other column gets the Python value with enums unwrapped.
    """
    table = row_cls.__table__
    json_columns = {c.name for c in table.columns if isinstance(c.type, JSONB)}
    python_values = model.model_dump()
    json_values = model.model_dump(mode="json")

    values: dict[str, Any] = {}
    for field, value in python_values.items():
        column = _column_for(field)
        if column not in table.c:
            continue
        if column in json_columns:
            value = json_values[field]
        elif isinstance(value, Enum):
            value = value.value
        values[column] = value
    return values


def from_row(row: Base, model_cls: type[M]) -> M:
    data = {
        field: getattr(row, _column_for(field))
        for field in model_cls.model_fields
        if hasattr(row, _column_for(field))
    }
    return model_cls.model_validate(data)


def _enum_value(value: Optional[Enum]) -> Optional[str]:
    return None if value is None else value.value


class SqlRepository(Repository):
    """PostgreSQL implementation of the storage boundary."""

    def __init__(self, session_provider: SessionProvider = get_db_session):
        self._session = session_provider

    async def _insert(self, model: BaseModel, row_cls: type[Base]) -> None:
        async with self._session() as session:
            await DatabaseService(session).add(row_cls(**to_columns(model, row_cls)))

    async def _get(self, row_cls: type[Base], pk: Any, model_cls: type[M]) -> Optional[M]:
        async with self._session() as session:
            row = await DatabaseService(session).get(row_cls, pk)
            return None if row is None else from_row(row, model_cls)

    async def _update(self, model: BaseModel, row_cls: type[Base], pk: Any) -> None:
        async with self._session() as session:
            await DatabaseService(session).update_fields(row_cls, pk, **to_columns(model, row_cls))

    # ----- Domains -----

    async def add_domain(self, domain: InformationDomain) -> None:
        await self._insert(domain, InformationDomainDB)

    async def get_domain(self, domain_id: UUID) -> Optional[InformationDomain]:
        return await self._get(InformationDomainDB, domain_id, InformationDomain)

    async def list_domains(
        self,
        domain_type: Optional[DomainType] = None,
        status: Optional[DomainStatus] = None,
        organization_id: Optional[UUID] = None,
        parent_domain_id: Optional[UUID] = None,
    ) -> list[InformationDomain]:
        async with self._session() as session:
            rows = await DatabaseService(session).list_domains(
                domain_type=_enum_value(domain_type),
                status=_enum_value(status),
                organization_id=organization_id,
                parent_domain_id=parent_domain_id,
            )
            return [from_row(r, InformationDomain) for r in rows]

    async def update_domain(self, domain: InformationDomain) -> None:
        await self._update(domain, InformationDomainDB, domain.id)

    # ----- Information objects -----

    async def add_object(self, obj: InformationObject) -> None:
        await self._insert(obj, InformationObjectDB)

    async def get_object(self, object_id: UUID) -> Optional[InformationObject]:
        return await self._get(InformationObjectDB, object_id, InformationObject)

    async def update_object(self, obj: InformationObject) -> None:
        await self._update(obj, InformationObjectDB, obj.id)

    async def list_objects(
        self,
        domain_id: Optional[UUID] = None,
        object_type: Optional[ObjectType] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[InformationObject]:
        async with self._session() as session:
            rows = await DatabaseService(session).list_objects(
                domain_id=domain_id,
                object_type=_enum_value(object_type),
                created_after=created_after,
                created_before=created_before,
            )
            return [from_row(r, InformationObject) for r in rows]

    async def get_successor(self, object_id: UUID) -> Optional[InformationObject]:
        async with self._session() as session:
            row = await DatabaseService(session).get_successor(object_id)
            return None if row is None else from_row(row, InformationObject)

    # ----- Rules & executions -----

    async def add_rule(self, rule: BusinessRule) -> None:
        await self._insert(rule, BusinessRuleDB)

    async def get_rule(self, rule_id: UUID) -> Optional[BusinessRule]:
        return await self._get(BusinessRuleDB, rule_id, BusinessRule)

    async def update_rule(self, rule: BusinessRule) -> None:
        await self._update(rule, BusinessRuleDB, rule.id)

    async def list_rules(self, active_only: bool = False) -> list[BusinessRule]:
        async with self._session() as session:
            rows = await DatabaseService(session).list_rules(active_only=active_only)
            return [from_row(r, BusinessRule) for r in rows]

    async def add_execution(self, execution: RuleExecution) -> None:
        await self._insert(execution, RuleExecutionDB)

    async def list_executions(
        self,
        object_id: Optional[UUID] = None,
        rule_id: Optional[UUID] = None,
    ) -> list[RuleExecution]:
        async with self._session() as session:
            rows = await DatabaseService(session).list_executions(object_id=object_id, rule_id=rule_id)
            return [from_row(r, RuleExecution) for r in rows]

    # ----- Entities -----

    async def add_entity(self, entity: Entity) -> None:
        async with self._session() as session:
            db = DatabaseService(session)
            await db.add(EntityDB(**to_columns(entity, EntityDB)))
            await db.set_entity_key(entity.canonical_key, entity.id)

    async def get_entity(self, entity_id: UUID) -> Optional[Entity]:
        return await self._get(EntityDB, entity_id, Entity)

    async def find_entity_by_key(self, key: str) -> Optional[Entity]:
        async with self._session() as session:
            row = await DatabaseService(session).find_entity_by_key(key)
            return None if row is None else from_row(row, Entity)

    async def register_entity_key(self, key: str, entity_id: UUID) -> None:
        async with self._session() as session:
            await DatabaseService(session).set_entity_key(key, entity_id)

    async def update_entity(self, entity: Entity) -> None:
        await self._update(entity, EntityDB, entity.id)

    async def delete_entity(self, entity_id: UUID) -> None:
        async with self._session() as session:
            await DatabaseService(session).delete(EntityDB, entity_id)

    async def list_entities(
        self,
        entity_type: Optional[EntityType] = None,
        source_domain_id: Optional[UUID] = None,
    ) -> list[Entity]:
        async with self._session() as session:
            rows = await DatabaseService(session).list_entities(
                entity_type=_enum_value(entity_type),
                source_domain_id=source_domain_id,
            )
            return [from_row(r, Entity) for r in rows]

    # ----- Entity relationships -----

    async def find_relationship(
        self,
        source_entity_id: UUID,
        target_entity_id: UUID,
        relationship_type: RelationshipType,
    ) -> Optional[EntityRelationship]:
        async with self._session() as session:
            row = await DatabaseService(session).find_relationship(
                source_entity_id, target_entity_id, relationship_type.value
            )
            return None if row is None else from_row(row, EntityRelationship)

    async def add_relationship(self, relationship: EntityRelationship) -> None:
        await self._insert(relationship, EntityRelationshipDB)

    async def update_relationship(self, relationship: EntityRelationship) -> None:
        await self._update(relationship, EntityRelationshipDB, relationship.id)

    async def delete_relationship(self, relationship_id: UUID) -> None:
        async with self._session() as session:
            await DatabaseService(session).delete(EntityRelationshipDB, relationship_id)

    async def list_relationships(
        self, entity_id: Optional[UUID] = None
    ) -> list[EntityRelationship]:
        async with self._session() as session:
            rows = await DatabaseService(session).list_relationships(entity_id=entity_id)
            return [from_row(r, EntityRelationship) for r in rows]

    # ----- Domain relations -----

    async def upsert_domain_relation(self, relation: DomainRelation) -> None:
        async with self._session() as session:
            db = DatabaseService(session)
            existing = await db.get_domain_relation(
                relation.from_domain_id,
                relation.to_domain_id,
                relation.discovery_method.value,
            )
            values = to_columns(relation, DomainRelationDB)
            if existing is None:
                await db.add(DomainRelationDB(**values))
                return
            values.pop("id")
            values.pop("created_at")
            await db.update_fields(DomainRelationDB, existing.id, **values)

    async def list_domain_relations(
        self,
        domain_id: Optional[UUID] = None,
        discovery_method: Optional[DiscoveryMethod] = None,
    ) -> list[DomainRelation]:
        async with self._session() as session:
            rows = await DatabaseService(session).list_domain_relations(
                domain_id=domain_id,
                discovery_method=_enum_value(discovery_method),
            )
            return [from_row(r, DomainRelation) for r in rows]

    async def delete_domain_relation(self, relation_id: UUID) -> None:
        async with self._session() as session:
            await DatabaseService(session).delete(DomainRelationDB, relation_id)

    # ----- Communities -----

    async def get_active_generation(self) -> Optional[CommunityGeneration]:
        async with self._session() as session:
            row = await DatabaseService(session).get_active_generation()
            return None if row is None else from_row(row, CommunityGeneration)

    async def list_communities(self, level: Optional[int] = None) -> list[Community]:
        async with self._session() as session:
            db = DatabaseService(session)
            generation = await db.get_active_generation()
            if generation is None:
                return []
            rows = await db.list_communities(generation.id, level=level)
            return [from_row(r, Community) for r in rows]

    async def list_memberships(
        self,
        entity_id: Optional[UUID] = None,
        community_id: Optional[UUID] = None,
    ) -> list[EntityCommunityMembership]:
        async with self._session() as session:
            db = DatabaseService(session)
            generation = await db.get_active_generation()
            if generation is None:
                return []
            rows = await db.list_memberships(
                generation.id, entity_id=entity_id, community_id=community_id
            )
            return [from_row(r, EntityCommunityMembership) for r in rows]

    async def replace_community_generation(
        self,
        generation: CommunityGeneration,
        communities: list[Community],
        memberships: list[EntityCommunityMembership],
    ) -> None:
        async with self._session() as session:
            db = DatabaseService(session)
            await db.add(CommunityGenerationDB(**to_columns(generation, CommunityGenerationDB)))
            session.add_all(CommunityDB(**to_columns(c, CommunityDB)) for c in communities)
            await session.flush()
            session.add_all(
                EntityCommunityMembershipDB(
                    generation_id=generation.id,
                    **to_columns(m, EntityCommunityMembershipDB),
                )
                for m in memberships
            )
            await session.flush()
            await db.activate_generation(generation.id)
        logger.info(
            "Activated community generation %s (%d communities, %d memberships)",
            generation.id, len(communities), len(memberships),
        )

    async def repoint_memberships(self, old_entity_id: UUID, new_entity_id: UUID) -> None:
        async with self._session() as session:
            db = DatabaseService(session)
            generation = await db.get_active_generation()
            if generation is None:
                return
            survivors = {
                m.community_id: m
                for m in await db.list_memberships(generation.id, entity_id=new_entity_id)
            }
            for row in await db.list_memberships(generation.id, entity_id=old_entity_id):
                survivor = survivors.get(row.community_id)
                if survivor is None:
                    row.entity_id = new_entity_id
                    survivors[row.community_id] = row
                    continue
                survivor.membership_score = max(survivor.membership_score, row.membership_score)
                survivor.is_primary = survivor.is_primary or row.is_primary
                await session.delete(row)
            await session.flush()

    # ----- Suggestions & trust -----

    async def add_suggestion(self, suggestion: AIMetadataSuggestion) -> None:
        await self._insert(suggestion, AIMetadataSuggestionDB)

    async def get_suggestion(self, suggestion_id: UUID) -> Optional[AIMetadataSuggestion]:
        return await self._get(AIMetadataSuggestionDB, suggestion_id, AIMetadataSuggestion)

    async def update_suggestion(self, suggestion: AIMetadataSuggestion) -> None:
        await self._update(suggestion, AIMetadataSuggestionDB, suggestion.id)

    async def list_suggestions(
        self,
        status: Optional[SuggestionStatus] = None,
        target_id: Optional[UUID] = None,
    ) -> list[AIMetadataSuggestion]:
        async with self._session() as session:
            rows = await DatabaseService(session).list_suggestions(
                status=_enum_value(status), target_id=target_id
            )
            return [from_row(r, AIMetadataSuggestion) for r in rows]

    async def get_pattern_trust(self, pattern_key: str) -> Optional[PatternTrust]:
        return await self._get(PatternTrustDB, pattern_key, PatternTrust)

    async def save_pattern_trust(self, trust: PatternTrust) -> None:
        async with self._session() as session:
            db = DatabaseService(session)
            values = to_columns(trust, PatternTrustDB)
            if await db.get(PatternTrustDB, trust.pattern_key) is None:
                await db.add(PatternTrustDB(**values))
            else:
                await db.update_fields(PatternTrustDB, trust.pattern_key, **values)

    # ----- Audit -----

    async def append_audit(self, entry: AuditEntry) -> None:
        async with self._session() as session:
            await DatabaseService(session).create_audit_entry(**to_columns(entry, AuditLogDB))

    async def list_audit(
        self,
        action: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> list[AuditEntry]:
        async with self._session() as session:
            rows = await DatabaseService(session).list_audit(action=action, record_id=record_id)
            return [from_row(r, AuditEntry) for r in rows]

    # ----- Snapshots -----

    async def graph_snapshot(self) -> tuple[list[Entity], list[EntityRelationship]]:
        async with self._session() as session:
            db = DatabaseService(session)
            entities = await db.list_entities()
            relationships = await db.list_relationships()
            return (
                [from_row(r, Entity) for r in entities],
                [from_row(r, EntityRelationship) for r in relationships],
            )
