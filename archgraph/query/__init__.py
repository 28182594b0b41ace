"""
Query & Analysis Interfaces

RESPONSIBILITY: Read-only structural queries over a pinned roll-up generation
ALLOWED INPUTS: QueryRequest with explicit generation, parameters and scope
OUTPUTS: Deterministic QueryResult with explicit error states

WHAT THIS LAYER MUST NOT DO:
============================
- Mutate any state
- Invalidate the graph cache
- Read a BUILDING generation
- Resolve the generation more than once per request

BOUNDARY ENFORCEMENT:
=====================
- The generation is pinned on the request before execution
- All errors are explicit and queryable
- An absent path or empty neighbourhood is an empty success, not an error
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
import hashlib
import logging
import time

import networkx as nx

from ..contracts.base import ErrorCode, Timestamp, normalize_workspace_id
from ..contracts.entities import ArchObject, GenerationStatus, Visibility
from ..contracts.events import (
    AuditEventType, AuditLogEntry, QueryError, QueryMeta, QueryNode,
    QueryParams, QueryRequest, QueryResult, QueryScope, QueryType
)
from ..core.graph_index import GraphIndex
from ..storage import RelationStore
from ..observability import DEFAULT_AUDIT_LIMIT, AuditTrail
from .algorithms import (
    DEFAULT_MAX_HOPS, DEFAULT_MAX_VISITED, DEFAULT_TOP_K,
    analyze_impact, calculate_path_score, discover_usage, find_paths
)

logger = logging.getLogger(__name__)


@dataclass
class QueryEngineConfig:
    """Configuration for query engine."""
    max_hops: int = DEFAULT_MAX_HOPS
    max_depth: int = DEFAULT_MAX_HOPS
    top_k: int = DEFAULT_TOP_K
    max_visited: int = DEFAULT_MAX_VISITED


# =============================================================================
# QUERY CONTEXT (one per request)
# =============================================================================

class QueryContext:
    """
    Read access for one request: the scoped graph snapshot of the pinned
    generation plus registry lookups.
    """

    def __init__(
        self,
        request: QueryRequest,
        store: RelationStore,
        graph_index: GraphIndex,
        config: QueryEngineConfig,
    ):
        self.request = request
        self.store = store
        self.config = config
        self._graph_index = graph_index
        self._graph: Optional[nx.MultiDiGraph] = None
        self._objects: Dict[str, ArchObject] = {}

    @property
    def workspace_id(self) -> str:
        return self.request.workspace_id

    @property
    def scope(self) -> QueryScope:
        return self.request.scope

    @property
    def graph(self) -> nx.MultiDiGraph:
        if self._graph is None:
            base = self._graph_index.get_or_build(
                self.workspace_id, self.request.generation_version, self.scope.level
            )
            self._objects.update(self.store.get_objects(self.workspace_id, base.nodes))
            self._graph = self._scoped(base)
        return self._graph

    def _scoped(self, graph: nx.MultiDiGraph) -> nx.MultiDiGraph:
        scope = self.scope
        if scope.include_hidden and scope.relation_types is None:
            return graph
        allowed = set(scope.relation_types) if scope.relation_types is not None else None

        def filter_node(node_id):
            return scope.include_hidden or not self.is_hidden(node_id)

        def filter_edge(u, v, key):
            return allowed is None or key.relation_type in allowed

        return nx.subgraph_view(graph, filter_node=filter_node, filter_edge=filter_edge)

    def is_hidden(self, object_id: str) -> bool:
        obj = self._objects.get(object_id)
        return obj is not None and obj.visibility is Visibility.HIDDEN

    def in_scope(self, subject_id: str, relation_type) -> bool:
        scope = self.scope
        if scope.relation_types is not None and relation_type not in scope.relation_types:
            return False
        return scope.include_hidden or not self.is_hidden(subject_id)

    def resolve(self, reference: Optional[str]) -> Optional[str]:
        """Internal id for an id or URN; graph node ids are accepted as-is."""
        if not reference:
            return None
        resolved = self.store.resolve_reference(self.workspace_id, reference)
        if resolved is not None:
            return resolved
        return reference if reference in self.graph else None

    def load_objects(self, object_ids: Iterable[str]):
        missing = [i for i in object_ids if i not in self._objects]
        if missing:
            self._objects.update(self.store.get_objects(self.workspace_id, missing))

    def node(self, object_id: str, depth: Optional[int] = None) -> QueryNode:
        obj = self._objects.get(object_id)
        if obj is None:
            return QueryNode(node_id=object_id, depth=depth)
        return QueryNode(node_id=object_id, object_type=obj.object_type, name=obj.label, depth=depth)


# =============================================================================
# QUERY HANDLERS (Single Responsibility)
# =============================================================================

class QueryHandler:
    """Base class for query handlers."""

    @property
    def query_type(self) -> QueryType:
        raise NotImplementedError

    def handle(self, context: QueryContext, start_time: float) -> QueryResult:
        raise NotImplementedError

    def _meta(self, context: QueryContext, start_time: float, truncated: bool = False) -> QueryMeta:
        return QueryMeta(
            generation_version=context.request.generation_version,
            computed_at=Timestamp.now(),
            execution_ms=(time.time() - start_time) * 1000,
            truncated=truncated,
        )

    def _invalid(self, context: QueryContext, start_time: float, message: str) -> QueryResult:
        return QueryResult.failed(
            query_id=context.request.query_id,
            query_type=self.query_type,
            meta=self._meta(context, start_time),
            error=QueryError(
                error_code=ErrorCode.QUERY_PARAMS_INVALID,
                message=message,
                query_id=context.request.query_id,
                timestamp=Timestamp.now(),
            ),
        )

    @staticmethod
    def _limit(value: Optional[int], default: int) -> int:
        return default if value is None else value


class PathDiscoveryHandler(QueryHandler):
    """
    Handler for path discovery.

    Returns the top-K scored simple paths between two objects.
    """

    @property
    def query_type(self) -> QueryType:
        return QueryType.PATH_DISCOVERY

    def handle(self, context: QueryContext, start_time: float) -> QueryResult:
        params = context.request.params
        if not params.from_id or not params.to_id:
            return self._invalid(context, start_time, "from_id and to_id are required for path discovery")
        max_hops = self._limit(params.max_hops, context.config.max_hops)
        top_k = self._limit(params.top_k, context.config.top_k)
        if max_hops < 1 or top_k < 1:
            return self._invalid(context, start_time, "max_hops and top_k must be positive")

        from_id = context.resolve(params.from_id)
        to_id = context.resolve(params.to_id)
        if from_id is None or to_id is None:
            return QueryResult.empty(
                context.request.query_id, self.query_type, self._meta(context, start_time)
            )

        search = find_paths(
            context.graph, from_id, to_id, context.scope.level, max_hops, top_k, context.config.max_visited
        )
        node_ids = search.node_ids
        context.load_objects(node_ids)
        return QueryResult(
            query_id=context.request.query_id,
            query_type=self.query_type,
            success=True,
            meta=self._meta(context, start_time, search.truncated),
            nodes=tuple(context.node(n) for n in node_ids),
            edges=search.edges,
            paths=search.paths,
        )


class ImpactAnalysisHandler(QueryHandler):
    """
    Handler for impact analysis.

    Returns the bounded upstream/downstream neighbourhood of an object.
    Nodes carry their BFS depth.
    """

    @property
    def query_type(self) -> QueryType:
        return QueryType.IMPACT_ANALYSIS

    def handle(self, context: QueryContext, start_time: float) -> QueryResult:
        params = context.request.params
        reference = params.target_id or params.object_id
        if not reference:
            return self._invalid(context, start_time, "target_id is required for impact analysis")
        max_depth = self._limit(params.max_depth, context.config.max_depth)
        if max_depth < 0:
            return self._invalid(context, start_time, "max_depth must not be negative")

        target_id = context.resolve(reference)
        if target_id is None:
            return QueryResult.empty(
                context.request.query_id, self.query_type, self._meta(context, start_time)
            )

        search = analyze_impact(
            context.graph, target_id, context.scope.level,
            params.direction, max_depth, context.config.max_visited,
        )
        context.load_objects(node_id for node_id, _ in search.depths)
        return QueryResult(
            query_id=context.request.query_id,
            query_type=self.query_type,
            success=True,
            meta=self._meta(context, start_time, search.truncated),
            nodes=tuple(context.node(n, depth) for n, depth in search.depths),
            edges=search.edges,
        )


class UsageDiscoveryHandler(QueryHandler):
    """
    Handler for usage discovery.

    Unions roll-up in-edges with canonical relations targeting the object,
    so atomic objects absent from every roll-up level still report referrers.
    """

    @property
    def query_type(self) -> QueryType:
        return QueryType.USAGE_DISCOVERY

    def handle(self, context: QueryContext, start_time: float) -> QueryResult:
        params = context.request.params
        reference = params.object_id or params.target_id
        if not reference:
            return self._invalid(context, start_time, "object_id is required for usage discovery")

        object_id = context.resolve(reference)
        if object_id is None:
            return QueryResult.empty(
                context.request.query_id, self.query_type, self._meta(context, start_time)
            )

        relations = context.store.list_relations_targeting(context.workspace_id, object_id)
        context.load_objects({object_id, *(r.subject_id for r in relations)})
        relations = [r for r in relations if context.in_scope(r.subject_id, r.relation_type)]

        search = discover_usage(context.graph, object_id, context.scope.level, relations)
        context.load_objects(search.node_ids)
        return QueryResult(
            query_id=context.request.query_id,
            query_type=self.query_type,
            success=True,
            meta=self._meta(context, start_time),
            nodes=tuple(context.node(n) for n in search.node_ids),
            edges=search.edges,
        )


# =============================================================================
# QUERY ENGINE (Orchestrates handlers)
# =============================================================================

class QueryEngine:
    """
    Main Query Engine.

    Routes each request to its handler against the request's pinned
    generation. Stateless apart from the audit log and a query counter.
    """

    def __init__(
        self,
        store: RelationStore,
        graph_index: GraphIndex,
        config: Optional[QueryEngineConfig] = None,
        audit_limit: int = DEFAULT_AUDIT_LIMIT,
    ):
        self._store = store
        self._graph_index = graph_index
        self._config = config or QueryEngineConfig()
        self._handlers: Dict[QueryType, QueryHandler] = {}
        self._audit_log = AuditTrail(audit_limit)
        self._query_counter = 0

        self._register_default_handlers()

    def _register_default_handlers(self):
        for handler in (PathDiscoveryHandler(), ImpactAnalysisHandler(), UsageDiscoveryHandler()):
            self.register_handler(handler)

    def register_handler(self, handler: QueryHandler):
        self._handlers[handler.query_type] = handler

    @property
    def config(self) -> QueryEngineConfig:
        return self._config

    def execute(self, request: QueryRequest) -> QueryResult:
        """
        Execute a query request.

        Same request against the same generation always produces the same
        result set and ordering.
        """
        start_time = time.time()
        handler = self._handlers.get(request.query_type)

        if handler is None:
            result = self._failed(
                request, start_time, ErrorCode.QUERY_TYPE_UNSUPPORTED,
                f"No handler registered for query type: {request.query_type}",
            )
        elif not self._generation_readable(request):
            result = self._failed(
                request, start_time, ErrorCode.GENERATION_NOT_FOUND,
                f"generation {request.generation_version} is not readable",
            )
        else:
            context = QueryContext(request, self._store, self._graph_index, self._config)
            try:
                result = handler.handle(context, start_time)
            except Exception as e:
                logger.exception("Query %s failed", request.query_id)
                result = self._failed(
                    request, start_time, ErrorCode.QUERY_FAILED, f"Query execution failed: {e}"
                )

        self._log_audit(
            action="query_executed",
            workspace_id=request.workspace_id,
            entity_id=request.query_id,
            metadata=(
                ("query_type", request.query_type.value),
                ("generation_version", str(request.generation_version)),
                ("success", str(result.success)),
                ("result_count", str(result.result_count)),
                ("execution_ms", f"{result.meta.execution_ms:.2f}"),
            ),
        )
        self._query_counter += 1
        return result

    def _generation_readable(self, request: QueryRequest) -> bool:
        # version 0 is the empty graph before the first activation
        if request.generation_version == 0:
            return True
        generation = self._store.get_generation(request.workspace_id, request.generation_version)
        return generation is not None and generation.status is not GenerationStatus.BUILDING

    def _failed(
        self,
        request: QueryRequest,
        start_time: float,
        code: ErrorCode,
        message: str,
    ) -> QueryResult:
        return QueryResult.failed(
            query_id=request.query_id,
            query_type=request.query_type,
            meta=QueryMeta(
                generation_version=request.generation_version,
                computed_at=Timestamp.now(),
                execution_ms=(time.time() - start_time) * 1000,
            ),
            error=QueryError(
                error_code=code,
                message=message,
                query_id=request.query_id,
                timestamp=Timestamp.now(),
            ),
        )

    def build_request(
        self,
        query_type: QueryType,
        workspace_id: str,
        generation_version: int,
        params: Optional[QueryParams] = None,
        scope: Optional[QueryScope] = None,
    ) -> QueryRequest:
        return QueryRequest(
            query_id=self._generate_query_id(query_type.value.lower()),
            query_type=query_type,
            workspace_id=normalize_workspace_id(workspace_id),
            generation_version=generation_version,
            params=params or QueryParams(),
            scope=scope or QueryScope(),
        )

    def _generate_query_id(self, prefix: str) -> str:
        """Generate query ID."""
        self._query_counter += 1
        content = f"{prefix}|{self._query_counter}|{Timestamp.now().value.timestamp()}"
        hash_val = hashlib.sha256(content.encode()).hexdigest()[:12]
        return f"qry_{prefix}_{hash_val}"

    def _log_audit(
        self,
        action: str,
        workspace_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Tuple[Tuple[str, str], ...] = (),
    ):
        """Add entry to internal audit log."""
        self._audit_log.append(AuditLogEntry.create(
            layer="query",
            event_type=AuditEventType.QUERY,
            action=action,
            workspace_id=workspace_id,
            entity_id=entity_id,
            metadata=metadata,
        ))

    def get_audit_log(self) -> List[AuditLogEntry]:
        """Return copy of the retained audit log entries."""
        return self._audit_log.entries()

    @property
    def audit_trail(self) -> AuditTrail:
        return self._audit_log


__all__ = [
    "ImpactAnalysisHandler",
    "PathDiscoveryHandler",
    "QueryContext",
    "QueryEngine",
    "QueryEngineConfig",
    "QueryHandler",
    "UsageDiscoveryHandler",
    "calculate_path_score",
]
