"""
App recommendation catalog.

Every app has a base relevance; the domain type being worked on and the
caller's role add a boost. Scores are capped at 1.0 and the list is
ordered by score, then name.
"""

from dataclasses import dataclass
from typing import Optional

from iou.models import AppRecommendation, DomainType


@dataclass(frozen=True)
class CatalogApp:
    app_type: str
    name: str
    description: str
    endpoint_url: str
    base_score: float
    reason: str


APP_CATALOG: list[CatalogApp] = [
    CatalogApp(
        "data_explorer", "Data Explorer",
        "Explore and visualise provincial datasets",
        "/apps/data-explorer", 0.95, "Popular in similar contexts",
    ),
    CatalogApp(
        "document_generator", "Document Generator",
        "Generate documents with compliance metadata filled in",
        "/apps/document-generator", 0.90, "Often used in this type of domain",
    ),
    CatalogApp(
        "compliance_checker", "Compliance Checker",
        "Monitor Woo, AVG and Archiefwet compliance",
        "/apps/compliance-checker", 0.85, "Recommended for compliance monitoring",
    ),
    CatalogApp(
        "timeline", "Timeline",
        "Follow the activity in a domain over time",
        "/apps/timeline", 0.80, "Useful for a project overview",
    ),
    CatalogApp(
        "stakeholder_map", "Stakeholder Map",
        "Show stakeholders on a map",
        "/apps/stakeholder-map", 0.75, "Suited to spatial projects",
    ),
    CatalogApp(
        "collaboration", "Collaboration Hub",
        "Work with colleagues and external parties",
        "/apps/collaboration", 0.70, "For work with many parties involved",
    ),
    CatalogApp(
        "graph_explorer", "GraphRAG Explorer",
        "Discover relations through the knowledge graph",
        "/apps/graphrag-explorer", 0.65, "Uncovers hidden connections",
    ),
]

DOMAIN_TYPE_BOOSTS: dict[DomainType, dict[str, float]] = {
    DomainType.CASE: {"compliance_checker": 0.12, "timeline": 0.08, "document_generator": 0.05},
    DomainType.PROJECT: {"collaboration": 0.2, "timeline": 0.1, "stakeholder_map": 0.15},
    DomainType.POLICY: {"graph_explorer": 0.2, "document_generator": 0.05, "data_explorer": 0.03},
    DomainType.EXPERTISE: {"graph_explorer": 0.25, "collaboration": 0.15},
}

ROLE_BOOSTS: dict[str, dict[str, float]] = {
    "archivist": {"compliance_checker": 0.15, "timeline": 0.05},
    "privacy_officer": {"compliance_checker": 0.15},
    "analyst": {"data_explorer": 0.05, "graph_explorer": 0.15},
    "project_manager": {"timeline": 0.1, "collaboration": 0.1},
}


def rank_apps(
    domain_type: Optional[DomainType] = None,
    role: Optional[str] = None,
) -> list[AppRecommendation]:
    domain_boost = DOMAIN_TYPE_BOOSTS.get(domain_type, {}) if domain_type else {}
    role_boost = ROLE_BOOSTS.get(role.strip().lower(), {}) if role else {}

    ranked = []
    for app in APP_CATALOG:
        boost = domain_boost.get(app.app_type, 0.0) + role_boost.get(app.app_type, 0.0)
        reason = app.reason
        if domain_type and app.app_type in domain_boost:
            reason = f"Fits {domain_type.value} domains"
        elif role and app.app_type in role_boost:
            reason = f"Fits the {role} role"
        ranked.append(AppRecommendation(
            app_type=app.app_type,
            name=app.name,
            description=app.description,
            endpoint_url=app.endpoint_url,
            relevance_score=round(min(1.0, app.base_score + boost), 4),
            reason=reason,
        ))

    ranked.sort(key=lambda a: (-a.relevance_score, a.name))
    return ranked
