"""Shared fixtures: an in-memory repository and a fresh service per test."""

from uuid import uuid4

import pytest
import pytest_asyncio

from iou.config import EngineConfig
from iou.models import DomainCreate, DomainType, ObjectCreate, ObjectType
from iou.pipeline.service import IouService
from iou.storage.memory import MemoryRepository


@pytest.fixture
def config():
    """Engine config with a small worker pool and lock table."""
    return EngineConfig(
        worker_count=2,
        lock_shards=8,
        detection_time_budget_seconds=10,
    )


@pytest.fixture
def repo():
    return MemoryRepository()


@pytest.fixture
def org_id():
    return uuid4()


@pytest_asyncio.fixture
async def service(repo, config):
    """Service without any rules installed; workers are stopped afterwards."""
    svc = IouService(repo, config)
    yield svc
    await svc.stop()


@pytest.fixture
def domain_spec(org_id):
    """Factory for DomainCreate inputs in the test organization."""
    def make(name="Ring road north", domain_type=DomainType.PROJECT, **kwargs):
        return DomainCreate(name=name, domain_type=domain_type, organization_id=org_id, **kwargs)
    return make


@pytest.fixture
def object_spec():
    """Factory for ObjectCreate inputs."""
    def make(domain_id, title="Project plan", object_type=ObjectType.DOCUMENT, **kwargs):
        return ObjectCreate(domain_id=domain_id, object_type=object_type, title=title, **kwargs)
    return make
