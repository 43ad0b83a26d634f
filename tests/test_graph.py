"""
Tests for the knowledge graph layer.

Tests cover:
- Keyed lock table
- Entity resolution, deduplication, rename and merge
- Relationship typing, co-occurrence weighting and idempotence
- Automatic domain relations
- Hierarchical community detection and generation swap
- Previous generation kept when a run is cancelled or fails
"""

import asyncio
import random
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from iou.config import EngineConfig
from iou.errors import DetectionCancelled
from iou.graph.community import CommunityDetector, build_entity_graph
from iou.graph.locks import KeyedLock
from iou.graph.relationships import RelationshipBuilder, classify_pair, proximity
from iou.graph.resolver import ResolvedMention, entity_domains
from iou.models import (
    CandidateEntity,
    DiscoveryMethod,
    DomainRelation,
    Entity,
    EntityRelationship,
    EntityType,
    RelationshipType,
    SuggestionStatus,
)
from iou.pipeline.audit import AuditLog
from iou.pipeline.service import IouService
from iou.storage.memory import MemoryRepository
from iou.utils.text import canonical_key


def _entity(name, entity_type=EntityType.ORGANIZATION, **kwargs):
    return Entity(
        entity_type=entity_type,
        canonical_name=name,
        canonical_key=canonical_key(name, entity_type.value),
        **kwargs,
    )


def _mention(entity, start, end, confidence=0.9):
    candidate = CandidateEntity(
        surface_form=entity.canonical_name,
        entity_type=entity.entity_type,
        start=start,
        end=end,
        confidence=confidence,
    )
    return ResolvedMention(entity=entity, candidate=candidate, confidence=confidence)


def _edge(source, target, weight, rel_type=RelationshipType.RELATES_TO):
    rel = EntityRelationship(
        source_entity_id=source.id,
        target_entity_id=target.id,
        relationship_type=rel_type,
    )
    rel.observe(str(uuid4()), weight, 0.9)
    return rel


class _YieldingRepository(MemoryRepository):
    """Gives other tasks a turn between the key lookup and the insert."""

    async def find_entity_by_key(self, key):
        await asyncio.sleep(0)
        return await super().find_entity_by_key(key)


# ============================================================================
# Locks
# ============================================================================

class TestKeyedLock:
    """Test the sharded lock table."""

    def test_needs_at_least_one_shard(self):
        with pytest.raises(ValueError):
            KeyedLock(0)

    def test_shard_is_stable(self):
        locks = KeyedLock(8)
        assert locks.shard_for("location:utrecht") == locks.shard_for("location:utrecht")
        assert 0 <= locks.shard_for("anything") < 8

    @pytest.mark.asyncio
    async def test_hold_many_tolerates_duplicate_keys(self):
        locks = KeyedLock(4)
        async with locks.hold_many(["a", "a", "b"]):
            pass
        async with locks.hold("a"):
            pass

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock(4)
        inside = 0
        peak = 0

        async def critical():
            nonlocal inside, peak
            async with locks.hold("k"):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0)
                inside -= 1

        await asyncio.gather(*(critical() for _ in range(5)))
        assert peak == 1


# ============================================================================
# Resolver
# ============================================================================

class TestEntityResolver:
    """Test canonicalization against the stored entity set."""

    @pytest.mark.asyncio
    async def test_upsert_deduplicates(self, service):
        first = await service.resolver.upsert("Rijkswaterstaat", EntityType.ORGANIZATION, 0.9, uuid4())
        second = await service.resolver.upsert("rijkswaterstaat ", EntityType.ORGANIZATION, 0.8, uuid4())

        assert first.id == second.id
        assert second.mention_count == 2
        assert len(await service.repo.list_entities()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_upserts_create_one_entity(self, config):
        service = IouService(_YieldingRepository(), config)

        await asyncio.gather(*(
            service.resolver.upsert("Rijkswaterstaat", EntityType.ORGANIZATION, 0.9, uuid4())
            for _ in range(10)
        ))

        [entity] = await service.repo.list_entities()
        assert entity.mention_count == 10
        assert len(await service.audit.entries(action="entity.created")) == 1

    @pytest.mark.asyncio
    async def test_upsert_records_domains(self, service):
        d1, d2 = uuid4(), uuid4()
        await service.resolver.upsert("Rijkswaterstaat", EntityType.ORGANIZATION, 0.9, uuid4(), d1)
        entity = await service.resolver.upsert(
            "Rijkswaterstaat", EntityType.ORGANIZATION, 0.9, uuid4(), d2
        )
        assert entity.source_domain_id == d1
        assert entity_domains(entity) == {d1, d2}

    @pytest.mark.asyncio
    async def test_mention_count_counts_objects(self, service):
        object_id = uuid4()
        await service.resolver.upsert("Utrecht", EntityType.LOCATION, 0.9, object_id)
        entity = await service.resolver.upsert("Utrecht", EntityType.LOCATION, 0.9, object_id)
        assert entity.mention_count == 1

    @pytest.mark.asyncio
    async def test_same_name_different_type_is_a_different_entity(self, service):
        org = await service.resolver.upsert("Delta", EntityType.ORGANIZATION, 0.9)
        place = await service.resolver.upsert("Delta", EntityType.LOCATION, 0.9)
        assert org.id != place.id

    @pytest.mark.asyncio
    async def test_confident_candidate_resolves(self, service):
        candidate = CandidateEntity(
            surface_form="Rijkswaterstaat",
            entity_type=EntityType.ORGANIZATION,
            start=0, end=15, confidence=0.95,
        )
        source_domain = uuid4()
        mention = await service.resolver.resolve(candidate, uuid4(), source_domain)

        assert mention is not None
        assert mention.entity.canonical_key == "organization:rijkswaterstaat"
        assert mention.entity.source_domain_id == source_domain
        assert await service.suggestions.list() == []

    @pytest.mark.asyncio
    async def test_weak_candidate_becomes_suggestion(self, service):
        candidate = CandidateEntity(
            surface_form="Jansen", entity_type=EntityType.PERSON,
            start=0, end=6, confidence=0.5,
        )
        object_id = uuid4()
        assert await service.resolver.resolve(candidate, object_id) is None
        assert await service.repo.list_entities() == []

        suggestions = await service.suggestions.list(SuggestionStatus.PROPOSED)
        assert len(suggestions) == 1
        assert suggestions[0].target_id == object_id
        assert suggestions[0].field == "entity"
        assert suggestions[0].pattern_key == "person:jansen"

        # Seeing the same candidate again does not duplicate the proposal
        await service.resolver.resolve(candidate, object_id)
        assert len(await service.suggestions.list()) == 1

    @pytest.mark.asyncio
    async def test_rename_keeps_old_key_as_alias(self, service):
        entity = await service.resolver.upsert("Utreht", EntityType.LOCATION, 0.9)
        renamed = await service.resolver.rename(entity.id, "Utrecht")

        assert renamed.canonical_name == "Utrecht"
        assert "location:utreht" in renamed.aliases
        found = await service.repo.find_entity_by_key("location:utreht")
        assert found.id == entity.id

        # Later sightings of the old spelling land on the renamed entity
        again = await service.resolver.upsert("Utreht", EntityType.LOCATION, 0.9)
        assert again.id == entity.id

    @pytest.mark.asyncio
    async def test_rename_collision_merges_into_older(self, service):
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        older = _entity("Utrecht", EntityType.LOCATION, created_at=t0)
        newer = _entity("Utreht", EntityType.LOCATION, created_at=t0 + timedelta(seconds=1))
        office = _entity("Rijkswaterstaat")
        for entity in (older, newer, office):
            await service.repo.add_entity(entity)

        await service.repo.add_relationship(_edge(office, newer, 1.0, RelationshipType.LOCATED_IN))
        await service.repo.add_relationship(_edge(office, older, 0.5, RelationshipType.LOCATED_IN))
        await service.repo.add_relationship(_edge(newer, older, 1.0, RelationshipType.PART_OF))

        survivor = await service.resolver.rename(newer.id, "Utrecht")

        assert survivor.id == older.id
        assert "location:utreht" in survivor.aliases
        assert await service.repo.get_entity(newer.id) is None
        assert (await service.repo.find_entity_by_key("location:utreht")).id == older.id

        relationships = await service.repo.list_relationships()
        assert len(relationships) == 1
        assert relationships[0].source_entity_id == office.id
        assert relationships[0].target_entity_id == older.id
        assert relationships[0].weight == pytest.approx(1.5)

        merged = await service.audit.entries(action="entity.merged")
        assert merged[0].details["self_loops_dropped"] == 1
        assert merged[0].details["relationships_combined"] == 1


# ============================================================================
# Relationships
# ============================================================================

class TestClassifyPair:
    """Test relationship typing and direction."""

    def test_organization_located_in_location(self):
        org = _entity("Rijkswaterstaat")
        place = _entity("Utrecht", EntityType.LOCATION)
        for a, b in ((org, place), (place, org)):
            source, target, rel_type = classify_pair(a, b)
            assert (source.id, target.id, rel_type) == (org.id, place.id, RelationshipType.LOCATED_IN)

    def test_city_part_of_province(self):
        city = _entity("Utrecht", EntityType.LOCATION)
        province = _entity("Province of Utrecht", EntityType.LOCATION)
        for a, b in ((city, province), (province, city)):
            source, target, rel_type = classify_pair(a, b)
            assert rel_type == RelationshipType.PART_OF
            assert (source.id, target.id) == (city.id, province.id)

    def test_person_works_for_organization(self):
        person = _entity("Jansen", EntityType.PERSON)
        org = _entity("Gemeente Almere")
        source, target, rel_type = classify_pair(org, person)
        assert rel_type == RelationshipType.WORKS_FOR
        assert source.id == person.id

    def test_anything_subject_to_law(self):
        law = _entity("Wet open overheid", EntityType.LAW)
        org = _entity("Gemeente Almere")
        source, target, rel_type = classify_pair(law, org)
        assert rel_type == RelationshipType.SUBJECT_TO
        assert target.id == law.id

    def test_symmetric_pair_ordered_by_id(self):
        a, b = _entity("Gemeente Almere"), _entity("Rijkswaterstaat")
        first = classify_pair(a, b)
        second = classify_pair(b, a)
        assert first[2] == RelationshipType.COLLABORATES_WITH
        assert (first[0].id, first[1].id) == (second[0].id, second[1].id)
        assert str(first[0].id) < str(first[1].id)

    def test_fallback_relates_to(self):
        a, b = _entity("Jansen", EntityType.PERSON), _entity("De Vries", EntityType.PERSON)
        assert classify_pair(a, b)[2] == RelationshipType.RELATES_TO


class TestRelationshipBuilder:
    """Test co-occurrence aggregation and per-object idempotence."""

    @pytest.fixture
    def builder(self, repo):
        return RelationshipBuilder(repo, AuditLog(repo), config=EngineConfig(cooccurrence_window=50))

    def test_proximity(self):
        assert proximity(0, 200) == pytest.approx(1.0)
        assert proximity(200, 200) == pytest.approx(0.5)

    def test_pairs_outside_window_are_ignored(self, builder):
        org, place = _entity("Rijkswaterstaat"), _entity("Utrecht", EntityType.LOCATION)
        assert builder.aggregate_pairs([_mention(org, 0, 15), _mention(place, 100, 107)]) == []

    def test_pair_weight_follows_distance(self, builder):
        org, place = _entity("Rijkswaterstaat"), _entity("Utrecht", EntityType.LOCATION)
        pairs = builder.aggregate_pairs([_mention(org, 0, 15), _mention(place, 40, 47)])
        assert len(pairs) == 1
        assert pairs[0].weight == pytest.approx(1.0 - 0.5 * 25 / 50)

    def test_repeated_mentions_accumulate(self, builder):
        org, place = _entity("Rijkswaterstaat"), _entity("Utrecht", EntityType.LOCATION)
        mentions = [_mention(org, 0, 15), _mention(place, 15, 22), _mention(place, 22, 29)]
        pairs = builder.aggregate_pairs(mentions)
        assert len(pairs) == 1
        assert pairs[0].weight > 1.0

    def test_same_entity_twice_is_not_a_pair(self, builder):
        org = _entity("Rijkswaterstaat")
        assert builder.aggregate_pairs([_mention(org, 0, 15), _mention(org, 20, 35)]) == []

    @pytest.mark.asyncio
    async def test_build_is_idempotent_per_object(self, builder, repo):
        org, place = _entity("Rijkswaterstaat"), _entity("Utrecht", EntityType.LOCATION)
        text = "Rijkswaterstaat Utrecht"
        mentions = [_mention(org, 0, 15), _mention(place, 16, 23)]
        object_id = uuid4()

        first = await builder.build(mentions, object_id, uuid4(), text)
        second = await builder.build(mentions, object_id, None, text)

        assert len(first) == 1
        assert first[0].context == text
        assert second == []
        stored = await repo.list_relationships()
        assert len(stored) == 1
        assert stored[0].weight == pytest.approx(proximity(1, 50))

    @pytest.mark.asyncio
    async def test_second_object_strengthens(self, builder, repo):
        org, place = _entity("Rijkswaterstaat"), _entity("Utrecht", EntityType.LOCATION)
        mentions = [_mention(org, 0, 15), _mention(place, 16, 23)]
        await builder.build(mentions, uuid4())
        changed = await builder.build(mentions, uuid4())

        assert len(changed) == 1
        assert changed[0].weight == pytest.approx(2 * proximity(1, 50))
        assert len(changed[0].observations) == 2


class TestDomainRelations:
    """Test aggregation of cross-domain links."""

    def test_cross_domain_relationship_links_domains(self):
        d1, d2 = uuid4(), uuid4()
        org = _entity("Rijkswaterstaat", source_domain_id=d1)
        place = _entity("Utrecht", EntityType.LOCATION, source_domain_id=d2)
        rel = _edge(org, place, 1.0, RelationshipType.LOCATED_IN)

        relations = RelationshipBuilder.derive_domain_relations([org, place], [rel])

        assert list(relations) == [(d1, d2)]
        relation = relations[(d1, d2)]
        assert relation.discovery_method == DiscoveryMethod.AUTOMATIC
        assert relation.strength == pytest.approx(1.0)
        assert relation.link_count == 1
        assert set(relation.shared_entities) == {org.id, place.id}

    def test_observing_domain_counts(self):
        d1, d2 = uuid4(), uuid4()
        org = _entity("Rijkswaterstaat", source_domain_id=d1)
        place = _entity("Utrecht", EntityType.LOCATION, source_domain_id=d1)
        rel = EntityRelationship(
            source_entity_id=org.id,
            target_entity_id=place.id,
            relationship_type=RelationshipType.LOCATED_IN,
        )
        rel.observe("o1", 1.0, 0.9, d1)
        rel.observe("o2", 0.5, 0.9, d2)

        relations = RelationshipBuilder.derive_domain_relations([org, place], [rel])
        assert (d1, d2) in relations
        assert relations[(d1, d2)].strength == pytest.approx(1.5)

    def test_entity_seen_in_two_domains_links_them(self):
        d1, d2 = uuid4(), uuid4()
        place = _entity(
            "Province of Utrecht", EntityType.LOCATION,
            source_domain_id=d2, confidence=0.95,
            metadata={"source_domains": [str(d1), str(d2)]},
        )

        relations = RelationshipBuilder.derive_domain_relations([place], [])

        assert list(relations) == [(d2, d1)]
        relation = relations[(d2, d1)]
        assert relation.strength == pytest.approx(0.95)
        assert relation.link_count == 1
        assert relation.shared_entities == [place.id]

    def test_single_domain_yields_nothing(self):
        d1 = uuid4()
        org = _entity("Rijkswaterstaat", source_domain_id=d1)
        place = _entity("Utrecht", EntityType.LOCATION, source_domain_id=d1)
        rel = _edge(org, place, 1.0)
        assert RelationshipBuilder.derive_domain_relations([org, place], [rel]) == {}

    @pytest.mark.asyncio
    async def test_refresh_writes_only_changes(self, repo):
        builder = RelationshipBuilder(repo, AuditLog(repo), config=EngineConfig())
        d1, d2 = uuid4(), uuid4()
        org = _entity("Rijkswaterstaat", source_domain_id=d1)
        place = _entity("Utrecht", EntityType.LOCATION, source_domain_id=d2)
        await repo.add_entity(org)
        await repo.add_entity(place)
        await repo.add_relationship(_edge(org, place, 1.0, RelationshipType.LOCATED_IN))
        manual = DomainRelation(
            from_domain_id=d1, to_domain_id=d2,
            strength=5.0, discovery_method=DiscoveryMethod.MANUAL,
        )
        await repo.upsert_domain_relation(manual)

        assert len(await builder.refresh_domain_relations()) == 1
        assert await builder.refresh_domain_relations() == []

        rows = await repo.list_domain_relations(domain_id=d1)
        methods = {r.discovery_method: r.strength for r in rows}
        assert methods == {DiscoveryMethod.MANUAL: 5.0, DiscoveryMethod.AUTOMATIC: 1.0}

    @pytest.mark.asyncio
    async def test_refresh_drops_unsupported_rows(self, repo):
        builder = RelationshipBuilder(repo, AuditLog(repo), config=EngineConfig())
        stale = DomainRelation(from_domain_id=uuid4(), to_domain_id=uuid4(), strength=1.0)
        await repo.upsert_domain_relation(stale)

        await builder.refresh_domain_relations()
        assert await repo.list_domain_relations() == []


# ============================================================================
# Communities
# ============================================================================

def _two_triangles():
    """Two tight triangles joined by weaker all-to-all cross edges."""
    left = [_entity(f"West {i}") for i in range(3)]
    right = [_entity(f"East {i}") for i in range(3)]
    relationships = []
    for group in (left, right):
        for i in range(3):
            for j in range(i + 1, 3):
                relationships.append(_edge(group[i], group[j], 1.0))
    for a in left:
        for b in right:
            relationships.append(_edge(a, b, 0.4))
    return left, right, relationships


def _partition(result, level):
    """Community member sets at *level*, from primary memberships."""
    ids = {c.id for c in result.communities if c.level == level}
    groups = {}
    for m in result.memberships:
        if m.is_primary and m.community_id in ids:
            groups.setdefault(m.community_id, set()).add(m.entity_id)
    return sorted(frozenset(g) for g in groups.values())


class TestCommunityDetector:
    """Test hierarchical clustering of the entity graph."""

    @pytest.fixture
    def detector(self):
        return CommunityDetector(EngineConfig())

    def test_graph_skips_isolated_entities(self):
        left, right, relationships = _two_triangles()
        loner = _entity("Nobody")
        graph, ordered = build_entity_graph([*left, *right, loner], relationships)
        assert graph.number_of_nodes() == 6
        assert len(ordered) == 7

    def test_empty_graph(self, detector):
        result = detector.detect([], [])
        assert result.communities == []
        assert result.generation.levels == 0

    def test_triangles_become_level_zero_communities(self, detector):
        left, right, relationships = _two_triangles()
        result = detector.detect([*left, *right], relationships)

        assert _partition(result, 0) == sorted([
            frozenset(e.id for e in left),
            frozenset(e.id for e in right),
        ])
        assert result.generation.levels == 2
        assert result.generation.community_count == 3
        assert not result.generation.budget_exceeded

    def test_every_child_has_a_parent_one_level_up(self, detector):
        left, right, relationships = _two_triangles()
        result = detector.detect([*left, *right], relationships)
        by_id = {c.id: c for c in result.communities}

        top = max(c.level for c in result.communities)
        for community in result.communities:
            if community.level == top:
                assert community.parent_community_id is None
            else:
                parent = by_id[community.parent_community_id]
                assert parent.level == community.level + 1

    def test_straddling_entities_get_secondary_membership(self, detector):
        left, right, relationships = _two_triangles()
        result = detector.detect([*left, *right], relationships)

        secondary = [m for m in result.memberships if not m.is_primary]
        assert {m.entity_id for m in secondary} == {e.id for e in [*left, *right]}
        assert all(m.membership_score == pytest.approx(1.2 / 3.2) for m in secondary)

    def test_deterministic_regardless_of_input_order(self, detector):
        left, right, relationships = _two_triangles()
        entities = [*left, *right]
        first = detector.detect(entities, relationships)

        shuffled_entities = entities[:]
        shuffled_relationships = relationships[:]
        random.Random(7).shuffle(shuffled_entities)
        random.Random(7).shuffle(shuffled_relationships)
        second = detector.detect(shuffled_entities, shuffled_relationships)

        for level in range(first.generation.levels):
            assert _partition(first, level) == _partition(second, level)

    def test_merge_budget_keeps_partial_result(self):
        detector = CommunityDetector(EngineConfig(detection_max_merges=0))
        left, right, relationships = _two_triangles()
        result = detector.detect([*left, *right], relationships)

        assert result.generation.budget_exceeded
        assert len(result.communities) == 6
        assert all(c.level == 0 for c in result.communities)

    def test_cancel_event_aborts(self, detector):
        left, right, relationships = _two_triangles()
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DetectionCancelled):
            detector.detect([*left, *right], relationships, cancel)

    def test_names_use_member_keywords(self, detector):
        left, right, relationships = _two_triangles()
        result = detector.detect([*left, *right], relationships)
        level0 = [c for c in result.communities if c.level == 0]
        assert all(c.name.startswith("Organization: ") for c in level0)
        assert all(len(c.keywords) == 3 for c in level0)

    @pytest.mark.asyncio
    async def test_run_swaps_generation(self, detector, repo):
        left, right, relationships = _two_triangles()
        for entity in [*left, *right]:
            await repo.add_entity(entity)
        for rel in relationships:
            await repo.add_relationship(rel)
        audit = AuditLog(repo)

        first = await detector.run(repo, audit)
        second = await detector.run(repo, audit)

        active = await repo.get_active_generation()
        assert active.id == second.id != first.id
        assert len(await repo.list_communities()) == 3
        assert len(await repo.list_communities(level=0)) == 2
        assert len(await audit.entries(action="communities.generated")) == 2

    @pytest.mark.asyncio
    async def test_cancelled_run_keeps_previous_generation(self, detector, repo):
        left, right, relationships = _two_triangles()
        for entity in [*left, *right]:
            await repo.add_entity(entity)
        for rel in relationships:
            await repo.add_relationship(rel)
        first = await detector.run(repo)
        communities = await repo.list_communities()

        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DetectionCancelled):
            await detector.run(repo, cancel_event=cancel)

        assert (await repo.get_active_generation()).id == first.id
        assert await repo.list_communities() == communities

    @pytest.mark.asyncio
    async def test_failed_commit_keeps_previous_generation(self, detector, repo, monkeypatch):
        left, right, relationships = _two_triangles()
        for entity in [*left, *right]:
            await repo.add_entity(entity)
        for rel in relationships:
            await repo.add_relationship(rel)
        audit = AuditLog(repo)
        first = await detector.run(repo, audit)
        communities = await repo.list_communities()

        monkeypatch.setattr(
            repo, "replace_community_generation", AsyncMock(side_effect=RuntimeError("disk full"))
        )
        with pytest.raises(RuntimeError):
            await detector.run(repo, audit)

        assert (await repo.get_active_generation()).id == first.id
        assert await repo.list_communities() == communities
        assert len(await audit.entries(action="communities.generated")) == 1
