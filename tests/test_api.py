"""
Tests for the REST API.

Tests cover:
- Health endpoint
- Domain and object endpoints
- Engine error to HTTP status mapping
- Default rules installed on startup
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from iou import __version__
from iou.api import routes
from iou.api.main import app
from iou.config import EngineConfig
from iou.pipeline.service import IouService
from iou.storage.memory import MemoryRepository


@pytest.fixture
def client():
    routes.set_service(IouService(MemoryRepository(), EngineConfig(worker_count=1)))
    with TestClient(app) as c:
        yield c
    routes.set_service(None)


def _create_domain(client, **overrides):
    body = {
        "name": "Ring road north",
        "domain_type": "project",
        "organization_id": str(uuid4()),
    }
    body.update(overrides)
    response = client.post("/api/v1/domains", json=body)
    assert response.status_code == 201
    return response.json()["id"]


def _create_object(client, domain_id, **overrides):
    body = {"domain_id": domain_id, "object_type": "document", "title": "Project plan"}
    body.update(overrides)
    return client.post("/api/v1/objects", json=body)


# =============================================================================
# Basic endpoints
# =============================================================================

class TestHealth:
    """Test service endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__

    def test_default_rules_installed(self, client):
        response = client.get("/api/v1/rules")
        assert response.status_code == 200
        assert len(response.json()) > 0


# =============================================================================
# Domains and objects
# =============================================================================

class TestDomains:
    """Test domain endpoints."""

    def test_create_and_list(self, client):
        domain_id = _create_domain(client)

        response = client.get("/api/v1/domains", params={"domain_type": "project"})
        assert response.status_code == 200
        assert [d["id"] for d in response.json()] == [domain_id]

        assert client.get("/api/v1/domains", params={"domain_type": "case"}).json() == []

    def test_context(self, client):
        domain_id = _create_domain(client)
        response = client.get(f"/api/v1/domains/{domain_id}/context")
        assert response.status_code == 200
        assert response.json()["domain"]["name"] == "Ring road north"

    def test_blank_name_rejected(self, client):
        response = client.post(
            "/api/v1/domains",
            json={"name": "   ", "domain_type": "project", "organization_id": str(uuid4())},
        )
        assert response.status_code == 422

    def test_status_change(self, client):
        domain_id = _create_domain(client)
        response = client.patch(f"/api/v1/domains/{domain_id}/status", json={"status": "closed"})
        assert response.status_code == 200
        assert response.json()["status"] == "closed"


class TestObjects:
    """Test object endpoints."""

    def test_create_and_get(self, client):
        domain_id = _create_domain(client)
        response = _create_object(client, domain_id)
        assert response.status_code == 201

        object_id = response.json()["id"]
        fetched = client.get(f"/api/v1/objects/{object_id}")
        assert fetched.status_code == 200
        assert fetched.json()["title"] == "Project plan"
        assert fetched.json()["version"] == 1

    def test_new_version(self, client):
        domain_id = _create_domain(client)
        object_id = _create_object(client, domain_id).json()["id"]

        response = client.post(f"/api/v1/objects/{object_id}/versions", json={"title": "Plan v2"})
        assert response.status_code == 201

        history = client.get(f"/api/v1/objects/{response.json()['id']}/history").json()
        assert [o["version"] for o in history] == [2, 1]

    def test_search_requires_query(self, client):
        assert client.get("/api/v1/search").status_code == 422


# =============================================================================
# Error mapping
# =============================================================================

class TestErrorMapping:
    """Test engine errors mapped to HTTP responses."""

    def test_unknown_domain_is_404(self, client):
        response = client.get(f"/api/v1/domains/{uuid4()}/context")
        assert response.status_code == 404
        assert response.json()["kind"] == "domain"

    def test_unknown_object_is_404(self, client):
        response = client.get(f"/api/v1/objects/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["kind"] == "object"

    def test_closed_domain_rejects_objects(self, client):
        domain_id = _create_domain(client)
        client.patch(f"/api/v1/domains/{domain_id}/status", json={"status": "closed"})

        response = _create_object(client, domain_id)
        assert response.status_code == 422
        assert response.json()["field"] == "domain_id"

    def test_self_link_is_422(self, client):
        domain_id = _create_domain(client)
        response = client.post(
            f"/api/v1/domains/{domain_id}/links", json={"to_domain_id": domain_id}
        )
        assert response.status_code == 422
        assert response.json()["field"] == "to_domain_id"

    def test_archived_domain_cannot_reopen(self, client):
        domain_id = _create_domain(client)
        client.patch(f"/api/v1/domains/{domain_id}/status", json={"status": "archived"})

        response = client.patch(f"/api/v1/domains/{domain_id}/status", json={"status": "active"})
        assert response.status_code == 409
        assert response.json() == {
            "detail": response.json()["detail"],
            "from": "archived",
            "to": "active",
        }

    def test_stale_version_is_409(self, client):
        domain_id = _create_domain(client)
        object_id = _create_object(client, domain_id).json()["id"]
        client.post(f"/api/v1/objects/{object_id}/versions", json={"title": "Plan v2"})

        response = client.post(f"/api/v1/objects/{object_id}/versions", json={"title": "Plan v3"})
        assert response.status_code == 409
