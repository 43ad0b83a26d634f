"""
IOU Service

Single facade over the engine. Owns the component graph (extractor,
resolver, relationship builder, community detector, rule engine,
feedback loop, audit log) and exposes the query surface used by the API.

Per-object pipeline, run by the ingestion workers after an object is
stored:

    extract -> resolve -> build relationships -> refresh domain relations
            -> evaluate compliance rules

The pipeline is idempotent: processing the same object twice leaves
entities, relationships and suggestions unchanged. Rule executions are
always appended.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

from iou.compliance.assessor import ComplianceAssessment, ComplianceAssessor
from iou.compliance.defaults import default_rules
from iou.compliance.engine import EvaluationReport, RuleEngine
from iou.compliance.expressions import coerce_field_value
from iou.config import EngineConfig, get_engine_config
from iou.errors import InvalidTransition, NotFound, RuleFault, ValidationError
from iou.extraction.extractor import EntityExtractor
from iou.feedback.suggestions import SuggestionService
from iou.feedback.trust import TrustWeighting
from iou.graph.community import CommunityDetector
from iou.graph.locks import KeyedLock
from iou.graph.relationships import RelationshipBuilder
from iou.graph.resolver import (
    ENTITY_SUGGESTION_FIELD,
    EntityResolver,
    ResolvedMention,
    entity_domains,
)
from iou.models import (
    AIMetadataSuggestion,
    AppContext,
    AppRecommendation,
    BusinessRule,
    Community,
    CommunityGeneration,
    DiscoveryMethod,
    DomainContext,
    DomainCreate,
    DomainRelation,
    DomainRelationType,
    DomainStatus,
    DomainType,
    Entity,
    EntityRelationship,
    EntityType,
    InformationDomain,
    InformationObject,
    ObjectCreate,
    ObjectUpdate,
    RelatedDomain,
    RelatedEntity,
    RuleCreate,
    RuleExecution,
    SuggestionSource,
    SuggestionStatus,
    SuggestionTarget,
)
from iou.pipeline.apps import rank_apps
from iou.pipeline.audit import AuditLog
from iou.pipeline.worker import WorkerPool
from iou.storage import create_repository
from iou.storage.base import Repository
from iou.storage.views import compliance_overview, network_edges, rank_objects

logger = logging.getLogger(__name__)

# Domains that no longer accept new objects or versions
READ_ONLY_STATUSES = {DomainStatus.CLOSED, DomainStatus.ARCHIVED}

# Manual links override suggested ones, which override automatic ones
DISCOVERY_PRECEDENCE = {
    DiscoveryMethod.MANUAL: 0,
    DiscoveryMethod.AI_SUGGESTION: 1,
    DiscoveryMethod.AUTOMATIC: 2,
}

RELATED_DOMAIN_FIELD = "related_domain"
RELATED_DOMAIN_DISCOUNT = 0.7


def latest_versions(objects: list[InformationObject]) -> list[InformationObject]:
    """Objects that have no successor."""
    superseded = {o.previous_version_id for o in objects if o.previous_version_id}
    return [o for o in objects if o.id not in superseded]


def object_text(obj: InformationObject) -> str:
    return "\n\n".join(p for p in (obj.title, obj.description, obj.content_text) if p)


class IouService:
    """
    Facade over the IOU engine.

    All mutating operations validate their input before the first write;
    only ValidationError (InvalidTransition included) and NotFound reach
    callers.
    """

    def __init__(
        self,
        repo: Optional[Repository] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.repo = repo or create_repository()
        self.config = config or get_engine_config()

        self.audit = AuditLog(self.repo)
        self.trust = TrustWeighting(self.repo, self.config)
        self.suggestions = SuggestionService(self.repo, self.trust, self.audit)
        self.locks = KeyedLock(self.config.lock_shards)

        self.extractor = EntityExtractor()
        self.resolver = EntityResolver(
            self.repo, self.trust, self.suggestions, self.audit, self.locks, self.config
        )
        self.relationships = RelationshipBuilder(self.repo, self.audit, self.locks, self.config)
        self.detector = CommunityDetector(self.config)
        self.assessor = ComplianceAssessor()
        self.rules = RuleEngine(
            self.repo, self.trust, self.suggestions, self.audit, self.assessor
        )
        self.workers = WorkerPool(self.process_object, self.config.worker_count)

        self._register_appliers()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        await self.workers.start()

    async def stop(self) -> None:
        await self.workers.stop()

    async def drain(self) -> None:
        """Wait for every queued object to finish its pipeline."""
        await self.workers.drain()

    async def install_default_rules(self) -> list[BusinessRule]:
        """Store the built-in rule set unless rules already exist."""
        if await self.repo.list_rules():
            return []
        rules = default_rules()
        for rule in rules:
            await self.repo.add_rule(rule)
        logger.info("Installed %d default rule(s)", len(rules))
        return rules

    # ------------------------------------------------------------------ #
    # Domains
    # ------------------------------------------------------------------ #

    async def create_domain(self, spec: DomainCreate) -> UUID:
        if spec.parent_domain_id is not None:
            parent = await self.repo.get_domain(spec.parent_domain_id)
            if parent is None:
                raise ValidationError("parent domain does not exist", "parent_domain_id")
            if parent.organization_id != spec.organization_id:
                raise ValidationError(
                    "parent domain belongs to another organization", "parent_domain_id"
                )

        domain = InformationDomain(**spec.model_dump())
        await self.repo.add_domain(domain)
        await self.audit.record(
            "domain.created", "service", "information_domain", domain.id,
            details={"type": domain.domain_type.value, "name": domain.name},
        )
        return domain.id

    async def get_domain(self, domain_id: UUID) -> InformationDomain:
        domain = await self.repo.get_domain(domain_id)
        if domain is None:
            raise NotFound("domain", domain_id)
        return domain

    async def list_domains(
        self,
        domain_type: Optional[DomainType] = None,
        status: Optional[DomainStatus] = None,
        organization_id: Optional[UUID] = None,
        parent_domain_id: Optional[UUID] = None,
    ) -> list[InformationDomain]:
        return await self.repo.list_domains(
            domain_type=domain_type,
            status=status,
            organization_id=organization_id,
            parent_domain_id=parent_domain_id,
        )

    async def update_domain_status(
        self, domain_id: UUID, status: DomainStatus, actor_id: Optional[UUID] = None
    ) -> InformationDomain:
        domain = await self.get_domain(domain_id)
        if domain.status == status:
            return domain
        if not domain.can_transition(status):
            raise InvalidTransition("domain", domain.status.value, status.value)

        previous = domain.status
        domain.status = status
        domain.updated_at = datetime.now(timezone.utc)
        await self.repo.update_domain(domain)
        await self.audit.record(
            "domain.status_changed", "service", "information_domain", domain.id,
            details={"from": previous.value, "to": status.value},
            actor_id=actor_id,
        )
        return domain

    async def get_domain_context(self, domain_id: UUID) -> DomainContext:
        """The domain, its parent and children, related domains and objects."""
        domain = await self.get_domain(domain_id)
        parent = (
            await self.repo.get_domain(domain.parent_domain_id)
            if domain.parent_domain_id else None
        )
        children = await self.repo.list_domains(parent_domain_id=domain.id)

        # One relation per neighbour, the most authoritative discovery method first
        best: dict[UUID, DomainRelation] = {}
        for relation in await self.repo.list_domain_relations(domain_id=domain.id):
            other = (
                relation.to_domain_id
                if relation.from_domain_id == domain.id else relation.from_domain_id
            )
            current = best.get(other)
            if current is None or (
                DISCOVERY_PRECEDENCE[relation.discovery_method],
                -relation.strength,
            ) < (DISCOVERY_PRECEDENCE[current.discovery_method], -current.strength):
                best[other] = relation

        related: list[RelatedDomain] = []
        for other_id, relation in best.items():
            other = await self.repo.get_domain(other_id)
            if other is not None:
                related.append(RelatedDomain(domain=other, relation=relation))
        related.sort(
            key=lambda r: (
                DISCOVERY_PRECEDENCE[r.relation.discovery_method],
                -r.relation.strength,
                r.domain.name,
            )
        )

        objects = latest_versions(await self.repo.list_objects(domain_id=domain.id))
        objects.sort(key=lambda o: o.created_at, reverse=True)
        return DomainContext(
            domain=domain,
            parent=parent,
            children=children,
            related_domains=related,
            objects=objects,
        )

    async def link_domains(
        self,
        from_domain_id: UUID,
        to_domain_id: UUID,
        explanation: Optional[str] = None,
        strength: float = 1.0,
        actor_id: Optional[UUID] = None,
    ) -> DomainRelation:
        """Create or replace a manual link between two domains."""
        if from_domain_id == to_domain_id:
            raise ValidationError("a domain cannot be linked to itself", "to_domain_id")
        if strength < 0:
            raise ValidationError("strength must not be negative", "strength")
        await self.get_domain(from_domain_id)
        await self.get_domain(to_domain_id)

        relation = DomainRelation(
            from_domain_id=from_domain_id,
            to_domain_id=to_domain_id,
            relation_type=DomainRelationType.MANUAL_LINK,
            strength=strength,
            discovery_method=DiscoveryMethod.MANUAL,
            explanation=explanation,
        )
        await self.repo.upsert_domain_relation(relation)
        await self.audit.record(
            "domain.linked", "service", "domain_relation", relation.id,
            details={"from": str(from_domain_id), "to": str(to_domain_id)},
            actor_id=actor_id,
        )
        return relation

    async def suggest_related_domains(
        self, domain_id: UUID, limit: int = 3
    ) -> list[AIMetadataSuggestion]:
        """
        Propose links to domains that share entities with *domain_id*.

        Domains already linked by hand or by an accepted suggestion are
        skipped; automatic links are what this asks a reviewer to confirm.
        Suggestions are ranked by confidence; accepting one creates an
        ``ai_suggestion`` domain relation.
        """
        domain = await self.get_domain(domain_id)
        objects = await self.repo.list_objects()
        object_domain = {str(o.id): o.domain_id for o in objects}

        linked = {
            r.to_domain_id if r.from_domain_id == domain.id else r.from_domain_id
            for r in await self.repo.list_domain_relations(domain_id=domain.id)
            if r.discovery_method != DiscoveryMethod.AUTOMATIC
        }

        own: list[Entity] = []
        others: dict[UUID, list[Entity]] = {}
        for entity in await self.repo.list_entities():
            domains = entity_domains(entity) | {
                object_domain[oid]
                for oid in entity.metadata.get("source_objects", [])
                if oid in object_domain
            }
            if domain.id not in domains:
                continue
            own.append(entity)
            for other in domains - {domain.id} - linked:
                others.setdefault(other, []).append(entity)

        ranked = sorted(
            others.items(),
            key=lambda item: (
                -max(e.confidence for e in item[1]) * RELATED_DOMAIN_DISCOUNT,
                -len(item[1]),
                str(item[0]),
            ),
        )[:limit]

        proposed: list[AIMetadataSuggestion] = []
        for other_id, shared in ranked:
            names = sorted(e.canonical_name for e in shared)
            proposed.append(await self.suggestions.propose(
                target_kind=SuggestionTarget.DOMAIN,
                target_id=domain.id,
                field=RELATED_DOMAIN_FIELD,
                suggested_value={
                    "domain_id": str(other_id),
                    "shared_entities": [str(e.id) for e in shared],
                    "strength": round(len(shared) / max(1, len(own)), 4),
                },
                confidence=max(e.confidence for e in shared) * RELATED_DOMAIN_DISCOUNT,
                source=SuggestionSource.RANKING,
                pattern_key=f"{RELATED_DOMAIN_FIELD}:{domain.id}:{other_id}",
                reasoning=f"Shares {len(shared)} entity(ies): {', '.join(names[:5])}",
            ))
        return proposed

    # ------------------------------------------------------------------ #
    # Objects
    # ------------------------------------------------------------------ #

    async def _writable_domain(self, domain_id: UUID) -> InformationDomain:
        domain = await self.get_domain(domain_id)
        if domain.status in READ_ONLY_STATUSES:
            raise ValidationError(
                f"domain is {domain.status.value} and accepts no new objects", "domain_id"
            )
        return domain

    async def create_object(self, spec: ObjectCreate) -> UUID:
        """Store an object and queue it for the per-object pipeline."""
        await self._writable_domain(spec.domain_id)
        obj = spec.to_object()
        await self.repo.add_object(obj)
        await self.audit.record(
            "object.created", "service", "information_object", obj.id,
            details={"domain": str(obj.domain_id), "type": obj.object_type.value},
            actor_id=obj.created_by,
        )
        await self.workers.submit(obj.id)
        return obj.id

    async def get_object(self, object_id: UUID) -> InformationObject:
        obj = await self.repo.get_object(object_id)
        if obj is None:
            raise NotFound("object", object_id)
        return obj

    async def update_object(self, object_id: UUID, changes: ObjectUpdate) -> UUID:
        """
        Create a new version of an object.

        Only the latest version can be updated. The new version keeps
        every field not in *changes*, including derived compliance
        metadata, and is queued for the pipeline like a new object.
        """
        async with self.locks.hold(f"object:{object_id}"):
            current = await self.get_object(object_id)
            if await self.repo.get_successor(object_id) is not None:
                raise InvalidTransition(
                    "object version", f"v{current.version}", f"v{current.version + 1}"
                )
            await self._writable_domain(current.domain_id)

            data = current.model_dump(
                exclude={"id", "version", "previous_version_id", "created_at", "updated_at"}
            )
            data.update(changes.model_dump(exclude_unset=True, exclude_none=True))
            data["explicit_fields"] = sorted(
                set(current.explicit_fields) | set(changes.explicit_compliance_fields())
            )

            now = datetime.now(timezone.utc)
            created_at = max(now, current.created_at + timedelta(microseconds=1))
            successor = InformationObject(
                **data,
                version=current.version + 1,
                previous_version_id=current.id,
                created_at=created_at,
                updated_at=created_at,
            )
            await self.repo.add_object(successor)

        await self.audit.record(
            "object.versioned", "service", "information_object", successor.id,
            details={"previous": str(current.id), "version": successor.version},
            actor_id=changes.created_by,
        )
        await self.workers.submit(successor.id)
        return successor.id

    async def version_history(self, object_id: UUID) -> list[InformationObject]:
        """The version chain ending at *object_id*, newest first."""
        chain = [await self.get_object(object_id)]
        seen = {chain[0].id}
        while chain[-1].previous_version_id is not None:
            previous = await self.repo.get_object(chain[-1].previous_version_id)
            if previous is None or previous.id in seen:
                break
            seen.add(previous.id)
            chain.append(previous)
        return chain

    async def search(
        self,
        query_text: str,
        domain_id: Optional[UUID] = None,
        limit: int = 20,
    ) -> list[tuple[InformationObject, float]]:
        """Rank the latest object versions against *query_text*."""
        if not query_text or not query_text.strip():
            raise ValidationError("query must not be empty", "query_text")
        objects = latest_versions(await self.repo.list_objects(domain_id=domain_id))
        return rank_objects(objects, query_text, limit=limit)

    async def assess_object(self, object_id: UUID) -> ComplianceAssessment:
        return self.assessor.assess(await self.get_object(object_id))

    async def compliance_overview(self, domain_id: Optional[UUID] = None) -> dict[str, Any]:
        if domain_id is not None:
            await self.get_domain(domain_id)
        objects = latest_versions(await self.repo.list_objects(domain_id=domain_id))
        object_ids = {o.id for o in objects}
        suggestions = [
            s for s in await self.repo.list_suggestions(status=SuggestionStatus.PROPOSED)
            if domain_id is None or s.target_id in object_ids or s.target_id == domain_id
        ]
        return compliance_overview(objects, suggestions)

    # ------------------------------------------------------------------ #
    # Per-object pipeline
    # ------------------------------------------------------------------ #

    async def process_object(self, object_id: UUID) -> Optional[EvaluationReport]:
        """Run extraction, resolution, relationship building and rules for one object."""
        obj = await self.repo.get_object(object_id)
        if obj is None:
            logger.warning("Object %s vanished before processing", object_id)
            return None
        if await self.repo.get_successor(obj.id) is not None:
            logger.info("Object %s was superseded; skipping", obj.id)
            return None
        domain = await self.repo.get_domain(obj.domain_id)
        if domain is None:
            logger.warning("Domain %s of object %s not found", obj.domain_id, obj.id)
            return None

        mentions: list[ResolvedMention] = []
        changed: list[EntityRelationship] = []
        graph_error: Optional[str] = None
        try:
            text = object_text(obj)
            for candidate in self.extractor.extract(text, obj.mime_type):
                mention = await self.resolver.resolve(candidate, obj.id, domain.id)
                if mention is not None:
                    mentions.append(mention)

            changed = await self.relationships.build(mentions, obj.id, domain.id, text)
            shared = any(len(entity_domains(m.entity)) > 1 for m in mentions)
            if changed or shared:
                await self.relationships.refresh_domain_relations()
        except Exception as e:
            graph_error = f"{type(e).__name__}: {e}"
            logger.exception("Graph stage failed for object %s", obj.id)

        # Rules run on the stored version; a review may have landed meanwhile
        async with self.locks.hold(f"object:{obj.id}"):
            current = await self.repo.get_object(obj.id)
            if current is None:
                logger.warning("Object %s vanished before rule evaluation", obj.id)
                return None
            report = await self.rules.evaluate_object(current, domain)

        await self.audit.record(
            "object.processed", "pipeline", "information_object", obj.id,
            details={
                "mentions": len(mentions),
                "relationships_changed": len(changed),
                "rules": len(report.executions),
                "applied": sorted(report.applied),
            },
            success=graph_error is None,
            error=graph_error,
        )
        return report

    # ------------------------------------------------------------------ #
    # Entities & communities
    # ------------------------------------------------------------------ #

    async def get_entity(self, entity_id: UUID) -> Entity:
        entity = await self.repo.get_entity(entity_id)
        if entity is None:
            raise NotFound("entity", entity_id)
        return entity

    async def list_entities(
        self,
        entity_type: Optional[EntityType] = None,
        source_domain_id: Optional[UUID] = None,
        min_confidence: float = 0.0,
    ) -> list[Entity]:
        entities = await self.repo.list_entities(
            entity_type=entity_type, source_domain_id=source_domain_id
        )
        return [e for e in entities if e.confidence >= min_confidence]

    async def get_entity_relations(self, entity_id: UUID) -> list[RelatedEntity]:
        """Relationships of an entity in both directions, heaviest first."""
        await self.get_entity(entity_id)
        related: list[RelatedEntity] = []
        for rel in await self.repo.list_relationships(entity_id=entity_id):
            outgoing = rel.source_entity_id == entity_id
            other = await self.repo.get_entity(
                rel.target_entity_id if outgoing else rel.source_entity_id
            )
            if other is None:
                continue
            related.append(RelatedEntity(
                relationship=rel,
                direction="outgoing" if outgoing else "incoming",
                entity=other,
            ))
        related.sort(key=lambda r: (-r.relationship.weight, r.entity.canonical_name))
        return related

    async def rename_entity(self, entity_id: UUID, new_name: str) -> Entity:
        """Rename an entity; merges it when another entity owns the new name."""
        if not new_name or not new_name.strip():
            raise ValidationError("name must not be blank", "canonical_name")
        await self.get_entity(entity_id)
        return await self.resolver.rename(entity_id, new_name)

    async def network(self) -> list[dict[str, Any]]:
        entities, relationships = await self.repo.graph_snapshot()
        return network_edges(entities, relationships)

    async def list_communities(self, level: Optional[int] = None) -> list[Community]:
        if level is not None and level < 0:
            raise ValidationError("level must not be negative", "level")
        return await self.repo.list_communities(level=level)

    async def run_community_detection(
        self, cancel_event: Optional[threading.Event] = None
    ) -> CommunityGeneration:
        return await self.detector.run(self.repo, self.audit, cancel_event)

    # ------------------------------------------------------------------ #
    # Rules
    # ------------------------------------------------------------------ #

    async def create_rule(self, spec: RuleCreate) -> BusinessRule:
        rule = spec.to_rule()
        await self.repo.add_rule(rule)
        await self.audit.record(
            "rule.created", "service", "business_rule", rule.id,
            details={"name": rule.name}, actor_id=rule.created_by,
        )
        return rule

    async def get_rule(self, rule_id: UUID) -> BusinessRule:
        rule = await self.repo.get_rule(rule_id)
        if rule is None:
            raise NotFound("rule", rule_id)
        return rule

    async def list_rules(self, active_only: bool = False) -> list[BusinessRule]:
        return await self.repo.list_rules(active_only=active_only)

    async def deactivate_rule(self, rule_id: UUID, actor_id: Optional[UUID] = None) -> BusinessRule:
        rule = await self.get_rule(rule_id)
        if not rule.is_active:
            return rule
        rule.is_active = False
        await self.repo.update_rule(rule)
        await self.audit.record(
            "rule.deactivated", "service", "business_rule", rule.id, actor_id=actor_id,
        )
        return rule

    async def list_rule_executions(self, object_id: UUID) -> list[RuleExecution]:
        await self.get_object(object_id)
        return await self.repo.list_executions(object_id=object_id)

    # ------------------------------------------------------------------ #
    # Suggestions
    # ------------------------------------------------------------------ #

    async def list_suggestions(
        self, status: Optional[SuggestionStatus] = None
    ) -> list[AIMetadataSuggestion]:
        return await self.suggestions.list(status)

    async def review_suggestion(
        self,
        suggestion_id: UUID,
        outcome: SuggestionStatus,
        final_value: Any = None,
        reviewer_id: Optional[UUID] = None,
    ) -> AIMetadataSuggestion:
        return await self.suggestions.review(suggestion_id, outcome, final_value, reviewer_id)

    async def recommend_apps(self, context: Optional[AppContext] = None) -> list[AppRecommendation]:
        """Catalog apps ranked for the domain (or domain type) and role in *context*."""
        context = context or AppContext()
        domain_type = context.domain_type
        if context.domain_id is not None:
            domain_type = (await self.get_domain(context.domain_id)).domain_type
        return rank_apps(domain_type, context.role)

    # ------------------------------------------------------------------ #
    # Appliers
    # ------------------------------------------------------------------ #

    def _register_appliers(self) -> None:
        self.suggestions.register_applier(SuggestionTarget.OBJECT, self._apply_object_field)
        self.suggestions.register_applier(
            SuggestionTarget.OBJECT, self._apply_entity, field=ENTITY_SUGGESTION_FIELD
        )
        self.suggestions.register_applier(
            SuggestionTarget.DOMAIN, self._apply_related_domain, field=RELATED_DOMAIN_FIELD
        )

    async def _apply_object_field(self, suggestion: AIMetadataSuggestion, value: Any) -> None:
        """Write a reviewed compliance value; it then counts as explicit."""
        try:
            coerced = coerce_field_value(suggestion.field, value)
        except RuleFault as e:
            raise ValidationError(str(e), "final_value") from e
        async with self.locks.hold(f"object:{suggestion.target_id}"):
            obj = await self.get_object(suggestion.target_id)
            setattr(obj, suggestion.field, coerced)
            if suggestion.field not in obj.explicit_fields:
                obj.explicit_fields = sorted([*obj.explicit_fields, suggestion.field])
            obj.updated_at = datetime.now(timezone.utc)
            await self.repo.update_object(obj)

    async def _apply_entity(self, suggestion: AIMetadataSuggestion, value: Any) -> None:
        """Create (or find) the entity a reviewer confirmed in an object."""
        proposed = dict(suggestion.suggested_value or {})
        if isinstance(value, dict):
            proposed.update(value)
        elif isinstance(value, str):
            proposed["canonical_name"] = value

        name = str(proposed.get("canonical_name") or "").strip()
        if not name:
            raise ValidationError("entity name must not be blank", "final_value")
        try:
            entity_type = EntityType(proposed.get("entity_type"))
        except ValueError as e:
            raise ValidationError(f"unknown entity type {proposed.get('entity_type')!r}",
                                  "final_value") from e

        domain_id = proposed.get("source_domain_id")
        await self.resolver.upsert(
            name=name,
            entity_type=entity_type,
            confidence=max(suggestion.confidence, self.trust.threshold),
            object_id=suggestion.target_id,
            source_domain_id=UUID(domain_id) if domain_id else None,
        )

    async def _apply_related_domain(self, suggestion: AIMetadataSuggestion, value: Any) -> None:
        data = value if isinstance(value, dict) else suggestion.suggested_value
        try:
            other_id = UUID(str(data["domain_id"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError("related domain id is missing or invalid", "final_value") from e
        await self.get_domain(other_id)

        try:
            strength = float(data.get("strength", suggestion.confidence))
        except (TypeError, ValueError) as e:
            raise ValidationError("strength must be a number", "final_value") from e
        if not strength >= 0:
            raise ValidationError("strength must not be negative", "final_value")
        try:
            shared = [UUID(str(i)) for i in data.get("shared_entities", [])]
        except (TypeError, ValueError) as e:
            raise ValidationError("shared entity ids must be UUIDs", "final_value") from e

        await self.repo.upsert_domain_relation(DomainRelation(
            from_domain_id=suggestion.target_id,
            to_domain_id=other_id,
            relation_type=DomainRelationType.SHARED_ENTITIES,
            strength=strength,
            discovery_method=DiscoveryMethod.AI_SUGGESTION,
            shared_entities=shared,
            link_count=len(shared),
            explanation=suggestion.reasoning or None,
        ))
