"""
Query and Observability Contracts

Defines the immutable request/response types of the query layer and the
audit/metric records collected by the observability layer.

Query responses always carry the generation they were computed against,
so a caller can tell which snapshot answered.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from enum import Enum
import hashlib
import itertools

from .base import ErrorCode, Timestamp
from .entities import RelationType, RollupLevel


# =============================================================================
# QUERY LAYER CONTRACTS
# =============================================================================

class QueryType(Enum):
    """Explicit query types."""
    PATH_DISCOVERY = "PATH_DISCOVERY"
    IMPACT_ANALYSIS = "IMPACT_ANALYSIS"
    USAGE_DISCOVERY = "USAGE_DISCOVERY"


class ImpactDirection(Enum):
    UPSTREAM = "UPSTREAM"      # what depends on this (in-edges)
    DOWNSTREAM = "DOWNSTREAM"  # what this depends on (out-edges)
    BOTH = "BOTH"


@dataclass(frozen=True)
class QueryScope:
    """Which roll-up level to query and which edges/nodes are in view."""
    level: RollupLevel = RollupLevel.SERVICE_TO_SERVICE
    relation_types: Optional[Tuple[RelationType, ...]] = None
    include_hidden: bool = False


@dataclass(frozen=True)
class QueryParams:
    """
    Query parameters. Object references may be internal ids or URNs.
    Unset limits fall back to the engine configuration.
    """
    from_id: Optional[str] = None
    to_id: Optional[str] = None
    target_id: Optional[str] = None
    object_id: Optional[str] = None
    direction: ImpactDirection = ImpactDirection.DOWNSTREAM
    max_hops: Optional[int] = None
    max_depth: Optional[int] = None
    top_k: Optional[int] = None


@dataclass(frozen=True)
class QueryRequest:
    """
    Immutable query request.

    generation_version is pinned by the caller before execution; a single
    request never reads two generations.
    """
    query_id: str
    query_type: QueryType
    workspace_id: str
    generation_version: int
    params: QueryParams = field(default_factory=QueryParams)
    scope: QueryScope = field(default_factory=QueryScope)


@dataclass(frozen=True)
class QueryNode:
    node_id: str
    object_type: str = "unknown"
    name: str = ""
    depth: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.node_id, "type": self.object_type, "name": self.name or self.node_id}
        if self.depth is not None:
            data["depth"] = self.depth
        return data


@dataclass(frozen=True)
class QueryEdge:
    """
    One edge of a query result.

    rollup_id is set for edges read from the roll-up graph,
    base_relation_id for edges read from canonical relations.
    """
    subject_id: str
    target_id: str
    relation_type: RelationType
    level: RollupLevel
    edge_weight: int
    confidence: Optional[float]
    rollup_id: Optional[str] = None
    base_relation_id: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, RelationType]:
        return (self.subject_id, self.target_id, self.relation_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "objectId": self.target_id,
            "relationType": self.relation_type.value,
            "level": self.level.value,
            "edgeWeight": self.edge_weight,
            "confidence": self.confidence,
            "provenance": {
                "rollupId": self.rollup_id,
                "baseRelationIds": [self.base_relation_id] if self.base_relation_id else [],
            },
        }


@dataclass(frozen=True)
class QueryPath:
    path_id: str
    node_ids: Tuple[str, ...]
    score: float

    @property
    def hops(self) -> int:
        return len(self.node_ids) - 1

    def to_dict(self) -> Dict[str, Any]:
        return {"pathId": self.path_id, "nodeIds": list(self.node_ids), "score": self.score}


@dataclass(frozen=True)
class QueryMeta:
    generation_version: int
    computed_at: Timestamp
    execution_ms: float
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generationVersion": self.generation_version,
            "computedAt": self.computed_at.to_iso(),
            "executionMs": round(self.execution_ms, 3),
            "truncated": self.truncated,
        }


@dataclass(frozen=True)
class QueryError:
    """Explicit query error with full context."""
    error_code: ErrorCode
    message: str
    query_id: str
    timestamp: Timestamp


@dataclass(frozen=True)
class QueryResult:
    """
    IMMUTABLE query result.

    Contains explicit success/failure state, never implicit.
    Empty results are distinct from errors.
    """
    query_id: str
    query_type: QueryType
    success: bool
    meta: QueryMeta
    nodes: Tuple[QueryNode, ...] = field(default_factory=tuple)
    edges: Tuple[QueryEdge, ...] = field(default_factory=tuple)
    paths: Tuple[QueryPath, ...] = field(default_factory=tuple)
    error: Optional[QueryError] = None

    @property
    def result_count(self) -> int:
        return len(self.nodes)

    @staticmethod
    def empty(query_id: str, query_type: QueryType, meta: QueryMeta) -> QueryResult:
        """Create an empty but successful result."""
        return QueryResult(
            query_id=query_id,
            query_type=query_type,
            success=True,
            meta=meta,
        )

    @staticmethod
    def failed(query_id: str, query_type: QueryType, meta: QueryMeta, error: QueryError) -> QueryResult:
        """Create a failed result with explicit error."""
        return QueryResult(
            query_id=query_id,
            query_type=query_type,
            success=False,
            meta=meta,
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "queryType": self.query_type.value,
            "success": self.success,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "meta": self.meta.to_dict(),
        }
        if self.query_type is QueryType.PATH_DISCOVERY:
            data["paths"] = [p.to_dict() for p in self.paths]
        if self.error is not None:
            data["error"] = {"code": self.error.error_code.value, "message": self.error.message}
        return data


# =============================================================================
# OBSERVABILITY LAYER CONTRACTS
# =============================================================================

class AuditEventType(Enum):
    """Explicit audit event types."""
    CHANGE_REQUEST = "change_request"
    APPROVAL = "approval"
    ROLLUP_BUILD = "rollup_build"
    GENERATION = "generation"
    CACHE = "cache"
    QUERY = "query"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: Timestamp
    layer: str  # Which layer generated this
    action: str
    workspace_id: Optional[str] = None
    entity_id: Optional[str] = None
    actor: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @staticmethod
    def create(
        layer: str,
        event_type: AuditEventType,
        action: str,
        workspace_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        actor: Optional[str] = None,
        metadata: Tuple[Tuple[str, str], ...] = (),
    ) -> AuditLogEntry:
        """Create an entry stamped now, with an id unique to this process."""
        timestamp = Timestamp.now()
        entry_id = hashlib.sha256(
            f"{layer}_{action}|{entity_id}|{next(_AUDIT_SEQUENCE)}|{timestamp.value.timestamp()}".encode()
        ).hexdigest()[:16]
        return AuditLogEntry(
            entry_id=f"audit_{entry_id}",
            event_type=event_type,
            timestamp=timestamp,
            layer=layer,
            action=action,
            workspace_id=workspace_id,
            entity_id=entity_id,
            actor=actor,
            metadata=tuple((k, str(v)) for k, v in metadata),
        )

    def metadata_dict(self) -> Dict[str, str]:
        return dict(self.metadata)


_AUDIT_SEQUENCE = itertools.count(1)


@dataclass(frozen=True)
class MetricPoint:
    """Immutable metric data point."""
    metric_name: str
    value: float
    timestamp: Timestamp
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
