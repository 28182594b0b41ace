"""
Query Algorithms
================

Pure functions over a (possibly filtered) roll-up graph snapshot. Same
graph and parameters always produce the same output set and ordering:
neighbours are expanded in sorted id order and ties are broken by
discovery order.

Graphs are networkx multigraphs keyed by EdgeKey, with edge attributes
weight, confidence, rollup_id and relation_type.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
import math

import networkx as nx

from ..contracts.entities import CanonicalRelation, RollupLevel
from ..contracts.events import ImpactDirection, QueryEdge, QueryPath
from ..core.graph_index import EdgeKey

DEFAULT_MAX_HOPS = 6
DEFAULT_TOP_K = 3
DEFAULT_MAX_VISITED = 20000
EXPLORATION_FACTOR = 10


def calculate_path_score(avg_confidence: float, min_edge_weight: float, hops: int) -> float:
    """
    Deterministic path score.

    Increasing in confidence and in the weakest link's weight, decreasing
    in hop count: avg_confidence * ln(1 + min_weight) / (1 + 0.1 * (hops - 1)).
    """
    hop_penalty = 1 + (max(hops, 1) - 1) * 0.1
    return avg_confidence * math.log1p(max(min_edge_weight, 0)) / hop_penalty


def _edge_rank(item: Tuple[EdgeKey, Dict[str, Any]]) -> Tuple[float, float, str]:
    key, data = item
    confidence = data.get("confidence")
    return (
        -(confidence if confidence is not None else 0.0),
        -data.get("weight", 0),
        key.relation_type.value,
    )


def best_hop_edge(graph: nx.MultiDiGraph, u: str, v: str) -> Tuple[EdgeKey, Dict[str, Any]]:
    """Among parallel u->v edges, the one with the highest (confidence, weight)."""
    return min(graph[u][v].items(), key=_edge_rank)


def to_query_edge(
    u: str,
    v: str,
    key: EdgeKey,
    data: Dict[str, Any],
    level: RollupLevel,
) -> QueryEdge:
    return QueryEdge(
        subject_id=u,
        target_id=v,
        relation_type=key.relation_type,
        level=level,
        edge_weight=data.get("weight", 1),
        confidence=data.get("confidence"),
        rollup_id=data.get("rollup_id"),
    )


# =============================================================================
# PATH DISCOVERY
# =============================================================================

@dataclass(frozen=True)
class PathSearch:
    paths: Tuple[QueryPath, ...] = field(default_factory=tuple)
    edges: Tuple[QueryEdge, ...] = field(default_factory=tuple)
    truncated: bool = False

    @property
    def node_ids(self) -> List[str]:
        seen: Dict[str, None] = {}
        for path in self.paths:
            for node_id in path.node_ids:
                seen.setdefault(node_id, None)
        return list(seen)


def _hops_to_target(graph: nx.MultiDiGraph, to_id: str, max_hops: int) -> Dict[str, int]:
    """Fewest edges from each node to to_id, for nodes within max_hops of it."""
    distances = {to_id: 0}
    frontier = deque([to_id])
    while frontier:
        node = frontier.popleft()
        if distances[node] >= max_hops:
            continue
        for predecessor in graph.predecessors(node):
            if predecessor not in distances:
                distances[predecessor] = distances[node] + 1
                frontier.append(predecessor)
    return distances


def find_paths(
    graph: nx.MultiDiGraph,
    from_id: str,
    to_id: str,
    level: RollupLevel,
    max_hops: int = DEFAULT_MAX_HOPS,
    top_k: int = DEFAULT_TOP_K,
    max_visited: int = DEFAULT_MAX_VISITED,
) -> PathSearch:
    """
    Breadth-first enumeration of simple paths from_id -> to_id.

    At most max_hops edges per path. Only nodes that can still reach to_id
    within the remaining hops are expanded. The search stops once top_k * 10
    paths have been discovered or max_visited partial paths were expanded
    (truncated is set when candidates remained).
    Returns the top_k paths by score, ties kept in discovery order.
    """
    if from_id == to_id or from_id not in graph or to_id not in graph or top_k <= 0:
        return PathSearch()

    remaining = _hops_to_target(graph, to_id, max_hops)
    if from_id not in remaining:
        return PathSearch()

    cap = top_k * EXPLORATION_FACTOR
    found: List[Tuple[str, ...]] = []
    truncated = False
    expanded = 0
    queue = deque([(from_id, (from_id,))])

    while queue:
        if len(found) >= cap or expanded >= max_visited:
            truncated = True
            break
        node, path = queue.popleft()
        if node == to_id:
            found.append(path)
            continue
        expanded += 1
        for neighbor in sorted(graph.successors(node)):
            if neighbor in path or neighbor not in remaining:
                continue
            # path + neighbor uses len(path) edges
            if len(path) + remaining[neighbor] <= max_hops:
                queue.append((neighbor, path + (neighbor,)))

    scored = []
    for index, node_ids in enumerate(found):
        hops = [best_hop_edge(graph, u, v) for u, v in zip(node_ids, node_ids[1:])]
        confidences = [data.get("confidence") or 0.0 for _, data in hops]
        avg_confidence = sum(confidences) / len(confidences)
        min_weight = min(data.get("weight", 0) for _, data in hops)
        score = calculate_path_score(avg_confidence, min_weight, len(hops))
        scored.append(QueryPath(path_id=f"p{index + 1}", node_ids=node_ids, score=score))

    # sorted() is stable, so equal scores keep discovery order
    ranked = sorted(scored, key=lambda p: -p.score)[:top_k]

    edges: Dict[EdgeKey, QueryEdge] = {}
    for path in ranked:
        for u, v in zip(path.node_ids, path.node_ids[1:]):
            key, data = best_hop_edge(graph, u, v)
            edges.setdefault(key, to_query_edge(u, v, key, data, level))

    return PathSearch(paths=tuple(ranked), edges=tuple(edges.values()), truncated=truncated)


# =============================================================================
# IMPACT ANALYSIS
# =============================================================================

@dataclass(frozen=True)
class ImpactSearch:
    depths: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)
    edges: Tuple[QueryEdge, ...] = field(default_factory=tuple)
    truncated: bool = False


def _adjacent_edges(
    graph: nx.MultiDiGraph,
    node: str,
    direction: ImpactDirection,
) -> List[Tuple[str, str, EdgeKey, Dict[str, Any], str]]:
    """(u, v, key, data, neighbour) for the edges followed from node."""
    adjacent = []
    if direction in (ImpactDirection.UPSTREAM, ImpactDirection.BOTH):
        incoming = sorted(
            graph.in_edges(node, keys=True, data=True),
            key=lambda e: (e[0], e[2].relation_type.value),
        )
        adjacent.extend((u, v, k, d, u) for u, v, k, d in incoming)
    if direction in (ImpactDirection.DOWNSTREAM, ImpactDirection.BOTH):
        outgoing = sorted(
            graph.out_edges(node, keys=True, data=True),
            key=lambda e: (e[1], e[2].relation_type.value),
        )
        adjacent.extend((u, v, k, d, v) for u, v, k, d in outgoing)
    return adjacent


def analyze_impact(
    graph: nx.MultiDiGraph,
    target_id: str,
    level: RollupLevel,
    direction: ImpactDirection = ImpactDirection.DOWNSTREAM,
    max_depth: int = DEFAULT_MAX_HOPS,
    max_visited: int = DEFAULT_MAX_VISITED,
) -> ImpactSearch:
    """
    Bounded BFS from target_id.

    UPSTREAM follows in-edges (what depends on the target), DOWNSTREAM
    follows out-edges (what the target depends on). Each node is visited at
    most once; nodes are expanded only while their depth < max_depth.
    Edges between visited nodes are collected even when the neighbour was
    already reached by another route.
    """
    depths: Dict[str, int] = {target_id: 0}
    edges: Dict[EdgeKey, QueryEdge] = {}
    truncated = False
    queue = deque([target_id])

    while queue:
        node = queue.popleft()
        depth = depths[node]
        if depth >= max_depth or node not in graph:
            continue
        for u, v, key, data, neighbor in _adjacent_edges(graph, node, direction):
            if neighbor not in depths:
                if len(depths) >= max_visited:
                    truncated = True
                    continue
                depths[neighbor] = depth + 1
                queue.append(neighbor)
            edges.setdefault(key, to_query_edge(u, v, key, data, level))

    return ImpactSearch(depths=tuple(depths.items()), edges=tuple(edges.values()), truncated=truncated)


# =============================================================================
# USAGE DISCOVERY
# =============================================================================

@dataclass(frozen=True)
class UsageSearch:
    node_ids: Tuple[str, ...] = field(default_factory=tuple)
    edges: Tuple[QueryEdge, ...] = field(default_factory=tuple)


def discover_usage(
    graph: nx.MultiDiGraph,
    object_id: str,
    level: RollupLevel,
    atomic_relations: Iterable[CanonicalRelation] = (),
) -> UsageSearch:
    """
    Union of roll-up in-edges of object_id and canonical relations targeting it.

    An atomic relation whose (subject, target, type) is already present
    from the roll-up graph is not counted again.
    """
    nodes: Dict[str, None] = {}
    edges: Dict[EdgeKey, QueryEdge] = {}

    if object_id in graph:
        nodes[object_id] = None
        incoming = sorted(
            graph.in_edges(object_id, keys=True, data=True),
            key=lambda e: (e[0], e[2].relation_type.value),
        )
        for u, v, key, data in incoming:
            nodes.setdefault(u, None)
            edges.setdefault(key, to_query_edge(u, v, key, data, level))

    relations = sorted(
        (r for r in atomic_relations if r.target_id == object_id),
        key=lambda r: (r.subject_id, r.relation_type.value),
    )
    for relation in relations:
        nodes.setdefault(relation.target_id, None)
        nodes.setdefault(relation.subject_id, None)
        key = EdgeKey(relation.subject_id, relation.target_id, relation.relation_type)
        if key in edges:
            continue
        edges[key] = QueryEdge(
            subject_id=relation.subject_id,
            target_id=relation.target_id,
            relation_type=relation.relation_type,
            level=level,
            edge_weight=1,
            confidence=relation.confidence,
            base_relation_id=relation.relation_id,
        )

    return UsageSearch(node_ids=tuple(nodes), edges=tuple(edges.values()))
