"""
API Routes

REST surface over IouService:
- Domains: create, list, context, status, manual links, related-domain suggestions
- Objects: create, version, history, rule executions, compliance assessment
- Search and compliance overview
- Knowledge graph: entities, relations, edges, communities, detection
- Rules and suggestion review
- App recommendations and the audit trail

Engine errors are mapped to HTTP status codes in ``iou.api.main``.
"""

import logging
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from iou.compliance.assessor import ComplianceAssessment
from iou.models import (
    AIMetadataSuggestion,
    AppContext,
    AppRecommendation,
    AuditEntry,
    BusinessRule,
    Community,
    CommunityGeneration,
    DomainContext,
    DomainCreate,
    DomainRelation,
    DomainStatus,
    DomainType,
    Entity,
    EntityType,
    InformationDomain,
    InformationObject,
    ObjectCreate,
    ObjectUpdate,
    RelatedEntity,
    RuleCreate,
    RuleExecution,
    SuggestionStatus,
)
from iou.pipeline.service import IouService

logger = logging.getLogger(__name__)

router = APIRouter()

# Global service instance (initialized lazily)
_service: Optional[IouService] = None


def get_service() -> IouService:
    """Get or create the service singleton."""
    global _service
    if _service is None:
        _service = IouService()
    return _service


def set_service(service: Optional[IouService]) -> None:
    """Replace the service singleton (tests and embedding applications)."""
    global _service
    _service = service


# ===== Request/Response Models =====

class CreatedResponse(BaseModel):
    id: UUID


class StatusChangeRequest(BaseModel):
    status: DomainStatus
    actor_id: Optional[UUID] = None


class LinkDomainsRequest(BaseModel):
    to_domain_id: UUID
    explanation: Optional[str] = None
    strength: float = Field(default=1.0, ge=0.0)
    actor_id: Optional[UUID] = None


class RenameEntityRequest(BaseModel):
    canonical_name: str = Field(..., min_length=1)


class ReviewRequest(BaseModel):
    outcome: SuggestionStatus
    final_value: Any = None
    reviewer_id: Optional[UUID] = None


class SearchHit(BaseModel):
    object: InformationObject
    score: float


class SearchResponse(BaseModel):
    query: str
    total_results: int
    results: list[SearchHit]


# ===== Domain Endpoints =====

@router.post("/domains", response_model=CreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_domain(request: DomainCreate):
    return CreatedResponse(id=await get_service().create_domain(request))


@router.get("/domains", response_model=list[InformationDomain])
async def list_domains(
    domain_type: Optional[DomainType] = None,
    domain_status: Optional[DomainStatus] = Query(default=None, alias="status"),
    organization_id: Optional[UUID] = None,
    parent_domain_id: Optional[UUID] = None,
):
    return await get_service().list_domains(
        domain_type=domain_type,
        status=domain_status,
        organization_id=organization_id,
        parent_domain_id=parent_domain_id,
    )


@router.get("/domains/{domain_id}/context", response_model=DomainContext)
async def get_domain_context(domain_id: UUID):
    return await get_service().get_domain_context(domain_id)


@router.patch("/domains/{domain_id}/status", response_model=InformationDomain)
async def update_domain_status(domain_id: UUID, request: StatusChangeRequest):
    return await get_service().update_domain_status(domain_id, request.status, request.actor_id)


@router.post(
    "/domains/{domain_id}/links",
    response_model=DomainRelation,
    status_code=status.HTTP_201_CREATED,
)
async def link_domains(domain_id: UUID, request: LinkDomainsRequest):
    return await get_service().link_domains(
        domain_id,
        request.to_domain_id,
        explanation=request.explanation,
        strength=request.strength,
        actor_id=request.actor_id,
    )


@router.post("/domains/{domain_id}/related-suggestions", response_model=list[AIMetadataSuggestion])
async def suggest_related_domains(domain_id: UUID, limit: int = Query(default=3, ge=1, le=20)):
    return await get_service().suggest_related_domains(domain_id, limit=limit)


# ===== Object Endpoints =====

@router.post("/objects", response_model=CreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_object(request: ObjectCreate):
    """Store an object; extraction and rule evaluation run in the background."""
    return CreatedResponse(id=await get_service().create_object(request))


@router.get("/objects/{object_id}", response_model=InformationObject)
async def get_object(object_id: UUID):
    return await get_service().get_object(object_id)


@router.post(
    "/objects/{object_id}/versions",
    response_model=CreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def update_object(object_id: UUID, request: ObjectUpdate):
    return CreatedResponse(id=await get_service().update_object(object_id, request))


@router.get("/objects/{object_id}/history", response_model=list[InformationObject])
async def version_history(object_id: UUID):
    return await get_service().version_history(object_id)


@router.get("/objects/{object_id}/executions", response_model=list[RuleExecution])
async def list_rule_executions(object_id: UUID):
    return await get_service().list_rule_executions(object_id)


@router.get("/objects/{object_id}/assessment", response_model=ComplianceAssessment)
async def assess_object(object_id: UUID):
    return await get_service().assess_object(object_id)


@router.get("/search", response_model=SearchResponse)
async def search(
    q: str = Query(..., min_length=1),
    domain_id: Optional[UUID] = None,
    limit: int = Query(default=20, ge=1, le=100),
):
    hits = await get_service().search(q, domain_id=domain_id, limit=limit)
    return SearchResponse(
        query=q,
        total_results=len(hits),
        results=[SearchHit(object=obj, score=score) for obj, score in hits],
    )


@router.get("/compliance/overview")
async def compliance_overview(domain_id: Optional[UUID] = None) -> dict[str, Any]:
    return await get_service().compliance_overview(domain_id)


# ===== Knowledge Graph Endpoints =====

@router.get("/entities", response_model=list[Entity])
async def list_entities(
    entity_type: Optional[EntityType] = None,
    source_domain_id: Optional[UUID] = None,
    min_confidence: float = Query(default=0.0, ge=0.0, le=1.0),
):
    return await get_service().list_entities(
        entity_type=entity_type,
        source_domain_id=source_domain_id,
        min_confidence=min_confidence,
    )


@router.get("/entities/{entity_id}/relations", response_model=list[RelatedEntity])
async def get_entity_relations(entity_id: UUID):
    return await get_service().get_entity_relations(entity_id)


@router.patch("/entities/{entity_id}", response_model=Entity)
async def rename_entity(entity_id: UUID, request: RenameEntityRequest):
    return await get_service().rename_entity(entity_id, request.canonical_name)


@router.get("/graph/edges")
async def network_edges() -> list[dict[str, Any]]:
    return await get_service().network()


@router.get("/communities", response_model=list[Community])
async def list_communities(level: Optional[int] = Query(default=None, ge=0)):
    return await get_service().list_communities(level)


@router.post("/communities/detect", response_model=CommunityGeneration)
async def run_community_detection():
    return await get_service().run_community_detection()


# ===== Rule Endpoints =====

@router.post("/rules", response_model=BusinessRule, status_code=status.HTTP_201_CREATED)
async def create_rule(request: RuleCreate):
    return await get_service().create_rule(request)


@router.get("/rules", response_model=list[BusinessRule])
async def list_rules(active_only: bool = False):
    return await get_service().list_rules(active_only=active_only)


@router.post("/rules/{rule_id}/deactivate", response_model=BusinessRule)
async def deactivate_rule(rule_id: UUID):
    return await get_service().deactivate_rule(rule_id)


# ===== Suggestion Endpoints =====

@router.get("/suggestions", response_model=list[AIMetadataSuggestion])
async def list_suggestions(suggestion_status: Optional[SuggestionStatus] = Query(
    default=None, alias="status"
)):
    return await get_service().list_suggestions(suggestion_status)


@router.post("/suggestions/{suggestion_id}/review", response_model=AIMetadataSuggestion)
async def review_suggestion(suggestion_id: UUID, request: ReviewRequest):
    return await get_service().review_suggestion(
        suggestion_id, request.outcome, request.final_value, request.reviewer_id
    )


# ===== Apps & Audit =====

@router.get("/apps/recommended", response_model=list[AppRecommendation])
async def recommended_apps(
    domain_id: Optional[UUID] = None,
    domain_type: Optional[DomainType] = None,
    role: Optional[str] = None,
):
    context = AppContext(domain_id=domain_id, domain_type=domain_type, role=role)
    return await get_service().recommend_apps(context)


@router.get("/audit", response_model=list[AuditEntry])
async def list_audit(action: Optional[str] = None, record_id: Optional[str] = None):
    return await get_service().audit.entries(action=action, record_id=record_id)
