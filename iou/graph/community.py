"""
Community Detector

Hierarchical greedy agglomerative modularity clustering over a snapshot
of the entity graph.

Level 0 starts from single entities and repeatedly merges the pair of
adjacent clusters with the largest positive modularity gain. The final
level-0 clusters become the nodes of an aggregated graph and the same
procedure runs again for level 1, with the resolution multiplied by the
configured decay, and so on until one root remains, no merge improves
modularity, or the level limit is reached.

Graphs are integer-indexed: entity i is node i of a networkx Graph, in
ascending order of entity id, so an unchanged graph always produces the
same partition.
"""

import asyncio
import logging
import threading
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

import networkx as nx

from iou.config import EngineConfig, get_engine_config
from iou.errors import DetectionBudgetExceeded, DetectionCancelled
from iou.models import (
    Community,
    CommunityGeneration,
    Entity,
    EntityCommunityMembership,
    EntityRelationship,
    EntityType,
)
from iou.pipeline.audit import AuditLog
from iou.storage.base import Repository

logger = logging.getLogger(__name__)

_GAIN_EPSILON = 1e-12
_MAX_KEYWORDS = 5

# Preferred keyword sources, most descriptive first
_KEYWORD_TYPE_ORDER = {
    EntityType.POLICY: 0,
    EntityType.LAW: 1,
    EntityType.ORGANIZATION: 2,
    EntityType.LOCATION: 3,
    EntityType.PERSON: 4,
    EntityType.MONEY: 5,
    EntityType.DATE: 6,
}


@dataclass
class DetectionResult:
    """A complete generation, ready to be swapped in."""
    generation: CommunityGeneration
    communities: list[Community] = field(default_factory=list)
    memberships: list[EntityCommunityMembership] = field(default_factory=list)


@dataclass
class _Budget:
    max_merges: int
    deadline: float
    cancel_event: Optional[threading.Event] = None
    merges: int = 0
    started: float = field(default_factory=time.monotonic)
    exceeded: bool = False

    def allow_merge(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise DetectionCancelled("community detection cancelled")
        if self.merges >= self.max_merges or time.monotonic() >= self.deadline:
            self.exceeded = True
            return False
        return True


@dataclass
class _Cluster:
    members: list[int]      # entity node indices
    inner: float            # internal edge weight
    total: float            # summed weighted degree
    label: str              # smallest entity id in the cluster


def build_entity_graph(
    entities: list[Entity],
    relationships: list[EntityRelationship],
) -> tuple[nx.Graph, list[Entity]]:
    """Undirected graph with integer nodes; edge weight summed across types.

    Entities without any edge are left out.
    """
    ordered = sorted(entities, key=lambda e: str(e.id))
    index = {e.id: i for i, e in enumerate(ordered)}

    graph = nx.Graph()
    for rel in relationships:
        u = index.get(rel.source_entity_id)
        v = index.get(rel.target_entity_id)
        if u is None or v is None or u == v or rel.weight <= 0:
            continue
        if graph.has_edge(u, v):
            graph[u][v]["weight"] += rel.weight
        else:
            graph.add_edge(u, v, weight=rel.weight)
    return graph, ordered


def _greedy_merge(
    level_graph: nx.Graph,
    total_weight: float,
    resolution: float,
    budget: _Budget,
) -> tuple[list[_Cluster], int]:
    """Merge clusters of *level_graph* while modularity improves.

    Returns the resulting clusters (in order of their smallest entity
    id) and the number of merges performed at this level.
    """
    clusters: dict[int, _Cluster] = {
        n: _Cluster(
            members=list(data["members"]),
            inner=data["inner"],
            total=data["total"],
            label=data["label"],
        )
        for n, data in level_graph.nodes(data=True)
    }
    adjacency: dict[int, dict[int, float]] = {n: {} for n in clusters}
    for u, v, w in level_graph.edges(data="weight"):
        adjacency[u][v] = adjacency[u].get(v, 0.0) + w
        adjacency[v][u] = adjacency[v].get(u, 0.0) + w

    scale = 2.0 * total_weight * total_weight
    merges = 0
    while True:
        best: Optional[tuple[float, tuple[str, ...]]] = None
        pair: Optional[tuple[int, int]] = None
        for c, neighbours in adjacency.items():
            for d, w in neighbours.items():
                if d <= c:
                    continue
                gain = w / total_weight - resolution * clusters[c].total * clusters[d].total / scale
                if gain <= _GAIN_EPSILON:
                    continue
                # Highest gain first; ties go to the lowest combined entity id.
                rank = (-round(gain, 12), tuple(sorted((clusters[c].label, clusters[d].label))))
                if best is None or rank < best:
                    best, pair = rank, (c, d)
        if pair is None or not budget.allow_merge():
            break

        keep, gone = pair
        _absorb(clusters, adjacency, keep, gone)
        budget.merges += 1
        merges += 1

    ordered = sorted(clusters.values(), key=lambda c: c.label)
    return ordered, merges


def _absorb(
    clusters: dict[int, _Cluster],
    adjacency: dict[int, dict[int, float]],
    keep: int,
    gone: int,
) -> None:
    kept, merged = clusters[keep], clusters.pop(gone)
    kept.inner += merged.inner + adjacency[keep].pop(gone)
    kept.total += merged.total
    kept.members.extend(merged.members)
    kept.label = min(kept.label, merged.label)

    for other, w in adjacency.pop(gone).items():
        if other == keep:
            continue
        del adjacency[other][gone]
        adjacency[keep][other] = adjacency[keep].get(other, 0.0) + w
        adjacency[other][keep] = adjacency[other].get(keep, 0.0) + w


def _aggregate(graph: nx.Graph, clusters: list[_Cluster]) -> nx.Graph:
    """Collapse *clusters* of the entity graph into one node each."""
    owner = {m: i for i, c in enumerate(clusters) for m in c.members}
    level_graph = nx.Graph()
    for i, c in enumerate(clusters):
        level_graph.add_node(i, members=c.members, inner=c.inner, total=c.total, label=c.label)
    for u, v, w in graph.edges(data="weight"):
        cu, cv = owner[u], owner[v]
        if cu == cv:
            continue
        if level_graph.has_edge(cu, cv):
            level_graph[cu][cv]["weight"] += w
        else:
            level_graph.add_edge(cu, cv, weight=w)
    return level_graph


class CommunityDetector:
    """Batch hierarchical clustering of the entity graph."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self._config = config or get_engine_config()

    def detect(
        self,
        entities: list[Entity],
        relationships: list[EntityRelationship],
        cancel_event: Optional[threading.Event] = None,
    ) -> DetectionResult:
        """
        Cluster a graph snapshot. Pure: nothing is written.

        Raises:
            DetectionCancelled: *cancel_event* was set during the run.
        """
        cfg = self._config
        budget = _Budget(
            max_merges=cfg.detection_max_merges,
            deadline=time.monotonic() + cfg.detection_time_budget_seconds,
            cancel_event=cancel_event,
        )
        generation = CommunityGeneration()
        graph, ordered = build_entity_graph(entities, relationships)
        total_weight = graph.size(weight="weight")
        if total_weight <= 0:
            return DetectionResult(generation=generation)

        degree = dict(graph.degree(weight="weight"))
        level_graph = nx.Graph()
        for n in sorted(graph.nodes):
            level_graph.add_node(n, members=[n], inner=0.0, total=degree[n], label=str(ordered[n].id))
        for u, v, w in graph.edges(data="weight"):
            level_graph.add_edge(u, v, weight=w)

        levels: list[list[_Cluster]] = []
        resolution = cfg.detection_resolution
        while len(levels) < cfg.detection_max_levels:
            clusters, merges = _greedy_merge(level_graph, total_weight, resolution, budget)
            if levels and merges == 0:
                break
            levels.append(clusters)
            if len(clusters) <= 1 or budget.exceeded:
                break
            level_graph = _aggregate(graph, clusters)
            resolution *= cfg.detection_resolution_decay

        if budget.exceeded:
            exc = DetectionBudgetExceeded(budget.merges, time.monotonic() - budget.started)
            logger.warning("%s; keeping the current partition", exc)

        result = self._materialize(graph, ordered, levels, generation)
        generation.levels = len(levels)
        generation.community_count = len(result.communities)
        generation.merges = budget.merges
        generation.budget_exceeded = budget.exceeded
        return result

    # ------------------------------------------------------------------ #
    # Output rows
    # ------------------------------------------------------------------ #

    def _materialize(
        self,
        graph: nx.Graph,
        ordered: list[Entity],
        levels: list[list[_Cluster]],
        generation: CommunityGeneration,
    ) -> DetectionResult:
        result = DetectionResult(generation=generation)
        degree = dict(graph.degree(weight="weight"))
        resolution = self._config.detection_resolution

        level_ids: list[dict[frozenset[int], Community]] = []
        for level, clusters in enumerate(levels):
            partition = [set(c.members) for c in clusters]
            modularity = nx.community.modularity(
                graph, partition, weight="weight", resolution=resolution
            )
            by_members: dict[frozenset[int], Community] = {}
            for cluster in clusters:
                members = [ordered[m] for m in cluster.members]
                name, description, keywords = self._describe(members, cluster.members, degree)
                community = Community(
                    generation_id=generation.id,
                    name=name,
                    description=description,
                    level=level,
                    keywords=keywords,
                    member_count=len(cluster.members),
                    modularity=modularity,
                )
                by_members[frozenset(cluster.members)] = community
                result.communities.append(community)
            level_ids.append(by_members)
            resolution *= self._config.detection_resolution_decay

        # Parent links: every level-k community sits inside exactly one level-(k+1) one.
        for level in range(len(level_ids) - 1):
            parents = level_ids[level + 1]
            for members, child in level_ids[level].items():
                parent = next(p for pm, p in parents.items() if members <= pm)
                child.parent_community_id = parent.id

        for by_members in level_ids:
            for members, community in by_members.items():
                for node in sorted(members):
                    result.memberships.append(EntityCommunityMembership(
                        entity_id=ordered[node].id,
                        community_id=community.id,
                        membership_score=self._share(graph, node, members, degree),
                        is_primary=True,
                    ))

        if level_ids:
            result.memberships.extend(self._overlaps(graph, ordered, level_ids[0], degree))
        return result

    @staticmethod
    def _share(graph: nx.Graph, node: int, members: frozenset[int], degree: dict) -> float:
        """Fraction of the entity's edge weight that stays inside *members*."""
        if len(members) == 1 or degree[node] <= 0:
            return 1.0
        inside = sum(w for _, other, w in graph.edges(node, data="weight") if other in members)
        return max(0.0, min(1.0, inside / degree[node]))

    def _overlaps(
        self,
        graph: nx.Graph,
        ordered: list[Entity],
        level0: dict[frozenset[int], Community],
        degree: dict,
    ) -> list[EntityCommunityMembership]:
        """Secondary level-0 memberships for entities that straddle clusters."""
        owner = {n: (members, c) for members, c in level0.items() for n in members}
        threshold = self._config.membership_overlap_threshold
        extra: list[EntityCommunityMembership] = []
        for node in sorted(graph.nodes):
            if degree[node] <= 0:
                continue
            own_members, _ = owner[node]
            weight_into: dict[UUID, float] = defaultdict(float)
            communities: dict[UUID, Community] = {}
            for _, other, w in graph.edges(node, data="weight"):
                members, community = owner[other]
                if members == own_members:
                    continue
                weight_into[community.id] += w
                communities[community.id] = community
            for community_id in sorted(weight_into, key=str):
                share = weight_into[community_id] / degree[node]
                if share >= threshold:
                    extra.append(EntityCommunityMembership(
                        entity_id=ordered[node].id,
                        community_id=community_id,
                        membership_score=min(1.0, share),
                        is_primary=False,
                    ))
        return extra

    @staticmethod
    def _describe(
        members: list[Entity],
        nodes: list[int],
        degree: dict,
    ) -> tuple[str, str, list[str]]:
        """Name from the dominant entity type plus the most central keywords."""
        types = Counter(e.entity_type for e in members)
        dominant, _ = min(types.items(), key=lambda kv: (-kv[1], kv[0].value))
        ranked = sorted(
            zip(members, nodes),
            key=lambda pair: (
                _KEYWORD_TYPE_ORDER[pair[0].entity_type],
                -degree.get(pair[1], 0.0),
                pair[0].canonical_name.lower(),
            ),
        )
        keywords: list[str] = []
        for entity, _ in ranked:
            if entity.canonical_name not in keywords:
                keywords.append(entity.canonical_name)
            if len(keywords) == _MAX_KEYWORDS:
                break
        name = f"{dominant.value.capitalize()}: {', '.join(keywords[:3])}"
        description = (
            f"{len(members)} entities, mostly {dominant.value} "
            f"({types[dominant]} of {len(members)})"
        )
        return name, description, keywords

    # ------------------------------------------------------------------ #
    # Job
    # ------------------------------------------------------------------ #

    async def run(
        self,
        repo: Repository,
        audit: Optional[AuditLog] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CommunityGeneration:
        """
        Detect on a snapshot in a worker thread and swap the result in.

        The previous generation stays active until the new one is fully
        written; on cancellation nothing is written at all.
        """
        entities, relationships = await repo.graph_snapshot()
        result = await asyncio.to_thread(self.detect, entities, relationships, cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            raise DetectionCancelled("community detection cancelled before commit")

        await repo.replace_community_generation(
            result.generation, result.communities, result.memberships
        )
        if audit is not None:
            await audit.record(
                "communities.generated",
                "community_detector",
                "community_generation",
                result.generation.id,
                details={
                    "levels": result.generation.levels,
                    "communities": result.generation.community_count,
                    "merges": result.generation.merges,
                    "budget_exceeded": result.generation.budget_exceeded,
                },
            )
        logger.info(
            "Community generation %s: %d levels, %d communities%s",
            result.generation.id,
            result.generation.levels,
            result.generation.community_count,
            " (budget exceeded)" if result.generation.budget_exceeded else "",
        )
        return result.generation
