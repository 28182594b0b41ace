"""
Graph Index
===========

In-memory directed multigraphs of roll-up edges, cached per
(workspace, generation, level).

CONSISTENCY:
============
- A cached graph is frozen; readers can share it without copying.
- Builds run outside the cache lock. Two callers racing on the same key
  may both build; the first one to finish is cached and returned to both.
- invalidate() bumps a per-workspace epoch. A build that started before
  the bump is returned to its caller but never cached.
"""

from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging
import threading

import networkx as nx

from ..contracts.base import normalize_workspace_id
from ..contracts.entities import RelationType, RollupLevel
from ..contracts.events import AuditEventType, AuditLogEntry
from ..storage import RelationStore
from ..observability import DEFAULT_AUDIT_LIMIT, AuditTrail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EdgeKey:
    """Composite identity of a roll-up edge inside one graph."""
    subject: str
    target: str
    relation_type: RelationType


@dataclass(frozen=True)
class CacheKey:
    workspace_id: str
    generation_version: int
    level: RollupLevel


@dataclass
class GraphIndexConfig:
    """Configuration for the graph cache."""
    max_entries: int = 256


class GraphIndex:
    """
    Explicit cache service for roll-up graphs.

    Edge attributes: weight (int), confidence (float or None),
    rollup_id (str), relation_type (RelationType).
    """

    def __init__(
        self,
        store: RelationStore,
        config: Optional[GraphIndexConfig] = None,
        audit_limit: int = DEFAULT_AUDIT_LIMIT,
    ):
        self._store = store
        self._config = config or GraphIndexConfig()
        self._lock = threading.Lock()
        self._cache: "OrderedDict[CacheKey, nx.MultiDiGraph]" = OrderedDict()
        self._epochs: Dict[str, int] = {}
        self._hits = 0
        self._misses = 0
        self._builds = 0
        self._invalidations = 0
        self._audit_log = AuditTrail(audit_limit)

    def get_or_build(
        self,
        workspace_id: str,
        generation_version: int,
        level: RollupLevel,
    ) -> nx.MultiDiGraph:
        key = CacheKey(normalize_workspace_id(workspace_id), generation_version, level)

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._hits += 1
                self._cache.move_to_end(key)
                return cached
            self._misses += 1
            epoch = self._epochs.get(key.workspace_id, 0)

        graph = self._build(key)

        with self._lock:
            self._builds += 1
            if self._epochs.get(key.workspace_id, 0) != epoch:
                logger.debug("Discarding graph %s built across an invalidation", key)
                return graph
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            self._cache[key] = graph
            while len(self._cache) > self._config.max_entries:
                self._cache.popitem(last=False)
        return graph

    def _build(self, key: CacheKey) -> nx.MultiDiGraph:
        graph = nx.MultiDiGraph()
        edges = self._store.list_rollup_edges(key.workspace_id, key.generation_version, key.level)
        for edge in edges:
            edge_key = EdgeKey(edge.subject_id, edge.target_id, edge.relation_type)
            if graph.has_edge(edge.subject_id, edge.target_id, key=edge_key):
                continue
            graph.add_edge(
                edge.subject_id,
                edge.target_id,
                key=edge_key,
                weight=edge.edge_weight,
                confidence=edge.confidence,
                rollup_id=edge.rollup_id,
                relation_type=edge.relation_type,
            )
        logger.debug(
            "Built graph %s: %d nodes, %d edges",
            key, graph.number_of_nodes(), graph.number_of_edges(),
        )
        return nx.freeze(graph)

    def invalidate(self, workspace_id: str) -> int:
        """Drop every cached graph of a workspace. Returns the number dropped."""
        workspace_id = normalize_workspace_id(workspace_id)
        with self._lock:
            self._epochs[workspace_id] = self._epochs.get(workspace_id, 0) + 1
            stale = [k for k in self._cache if k.workspace_id == workspace_id]
            for k in stale:
                del self._cache[k]
            self._invalidations += 1
        self._audit_log.append(AuditLogEntry.create(
            layer="core",
            event_type=AuditEventType.CACHE,
            action="invalidate",
            workspace_id=workspace_id,
            metadata=(("dropped", str(len(stale))),),
        ))
        logger.debug("Invalidated %d cached graphs for workspace %s", len(stale), workspace_id)
        return len(stale)

    def cached_keys(self) -> List[CacheKey]:
        with self._lock:
            return list(self._cache)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._cache),
                "hits": self._hits,
                "misses": self._misses,
                "builds": self._builds,
                "invalidations": self._invalidations,
            }

    def get_audit_log(self) -> List[AuditLogEntry]:
        """Return copy of the retained audit log entries."""
        return self._audit_log.entries()

    @property
    def audit_trail(self) -> AuditTrail:
        return self._audit_log
