"""
Engine Orchestration Module

This module provides the unified interface for coordinating all
backend layers while maintaining strict boundary separation.

DESIGN PRINCIPLES:
==================
1. Layers communicate ONLY through contracts
2. Engine orchestrates flow without creating coupling
3. All operations are traceable through observability
4. The generation a query reads is resolved once, here, before execution
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import os
import threading

from .contracts.base import (
    ArchGraphError, BuildError, ErrorCode, ResolutionError, TimeRange, normalize_workspace_id
)
from .contracts.entities import (
    ApplyOutcome, ArchObject, BulkApplyResult, ChangeRequest, ChangeRequestStatus,
    DomainAffinity, Generation, Granularity, GraphStat, RelationSource, RollupEdge,
    RollupLevel, Visibility
)
from .contracts.events import (
    AuditEventType, QueryParams, QueryResult, QueryScope, QueryType
)
from .storage import RelationStore, StoreConfig
from .gate import ApprovalGate, ChangeRequestStore, GateConfig
from .rollup import BuildReport, GenerationManager, RollupBuilder, RollupConfig
from .core import GraphIndex, GraphIndexConfig
from .query import QueryEngine, QueryEngineConfig
from .observability import ObservabilityConfig, ObservabilityEngine

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "ARCHGRAPH_LOG_LEVEL"


@dataclass
class BackendConfig:
    """Unified configuration for the entire backend."""
    store: StoreConfig = None
    gate: GateConfig = None
    rollup: RollupConfig = None
    graph_index: GraphIndexConfig = None
    query: QueryEngineConfig = None
    observability: ObservabilityConfig = None

    def __post_init__(self):
        self.store = self.store or StoreConfig()
        self.gate = self.gate or GateConfig()
        self.rollup = self.rollup or RollupConfig()
        self.graph_index = self.graph_index or GraphIndexConfig()
        self.query = self.query or QueryEngineConfig()
        self.observability = self.observability or ObservabilityConfig()

    @classmethod
    def from_env(cls) -> BackendConfig:
        """Read ARCHGRAPH_DB_PATH and ARCHGRAPH_LOG_LEVEL."""
        return cls(
            store=StoreConfig.from_env(),
            observability=ObservabilityConfig(
                log_level=os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
            ),
        )


class ArchGraphBackend:
    """
    Unified backend for the architecture dependency graph.

    LAYER FLOW:
    ===========
    1. Gate: change request -> validated, approved canonical relation
    2. Roll-up: canonical relations -> new ACTIVE generation
    3. Core: generation -> cached graph (on demand)
    4. Query: pinned generation -> deterministic QueryResult
    5. Observability: records all layer activity

    NO LAYER BYPASSES THIS FLOW.
    """

    def __init__(self, config: Optional[BackendConfig] = None):
        self._config = config or BackendConfig()

        # Initialize layers (shared store, otherwise independent)
        self._store = RelationStore(self._config.store)
        audit_limit = self._config.observability.max_audit_entries
        self._requests = ChangeRequestStore(self._store, self._config.gate)
        self._gate = ApprovalGate(self._store, audit_limit)
        self._generations = GenerationManager(self._store)
        self._graph_index = GraphIndex(self._store, self._config.graph_index, audit_limit)
        self._builder = RollupBuilder(
            self._store, self._generations, self._graph_index, self._config.rollup, audit_limit
        )
        self._query = QueryEngine(self._store, self._graph_index, self._config.query, audit_limit)
        self._observability = ObservabilityEngine(self._config.observability)

        self._sync_lock = threading.Lock()
        self._audit_offsets: Dict[str, int] = {}

    @property
    def config(self) -> BackendConfig:
        return self._config

    def close(self):
        self._store.close()

    # =========================================================================
    # CHANGE REQUEST INTERFACE
    # =========================================================================

    def create_change_request(
        self,
        workspace_id: str,
        request_type: Any,
        payload: Any,
        requested_by: Optional[str] = None,
        default_source: RelationSource = RelationSource.MANUAL,
        dedupe_pending: Optional[bool] = None,
    ) -> ChangeRequest:
        """Validate and queue a change request. Raises PayloadValidationError."""
        request = self._requests.create(
            workspace_id, request_type, payload, requested_by, default_source, dedupe_pending
        )
        self._observability.collect_metric(
            "change_requests_created_total", 1.0,
            {"request_type": request.request_type.value}
        )
        return request

    def get_change_request(self, workspace_id: str, request_id: int) -> Optional[ChangeRequest]:
        return self._requests.get(workspace_id, request_id)

    def list_change_requests(
        self,
        workspace_id: str,
        status: Any = ChangeRequestStatus.PENDING,
        limit: Optional[int] = None,
    ) -> List[ChangeRequest]:
        return self._requests.list(workspace_id, status, limit)

    def list_pending_ids(self, workspace_id: str, exclude_ids: Iterable[int] = ()) -> List[int]:
        return self._requests.list_pending_ids(workspace_id, exclude_ids)

    def apply_change_request(
        self,
        workspace_id: str,
        request_id: int,
        next_status: Any,
        reviewed_by: Optional[str] = None,
    ) -> ApplyOutcome:
        """
        Approve or reject one request, rebuilding roll-ups when the approval
        changed relations or ownership.

        Gate errors propagate unchanged. A rebuild failure does not undo the
        committed approval; it is reported on the outcome instead.
        """
        workspace_id = normalize_workspace_id(workspace_id)
        try:
            outcome = self._gate.apply(workspace_id, request_id, next_status, reviewed_by)
        except ArchGraphError as exc:
            self._observability.collect_metric(
                "change_requests_applied_total", 1.0,
                {"status": str(next_status), "outcome": exc.reason}
            )
            raise

        self._observability.collect_metric(
            "change_requests_applied_total", 1.0,
            {"status": outcome.request.status.value, "outcome": "success"}
        )
        if not outcome.affects_rollups:
            return outcome

        version, error = self._rebuild_after_apply(workspace_id, (request_id,))
        return replace(outcome, rollup_version=version, rebuild_error=error)

    def apply_bulk(
        self,
        workspace_id: str,
        request_ids: Optional[Iterable[int]],
        next_status: Any,
        reviewed_by: Optional[str] = None,
        exclude_ids: Iterable[int] = (),
    ) -> BulkApplyResult:
        """
        Apply each id independently, then rebuild once if any item affected
        roll-ups. request_ids=None means every pending request minus exclude_ids.
        """
        workspace_id = normalize_workspace_id(workspace_id)
        if request_ids is None:
            request_ids = self._requests.list_pending_ids(workspace_id, exclude_ids)
        else:
            excluded = set(exclude_ids)
            request_ids = [i for i in request_ids if i not in excluded]

        result = self._gate.apply_bulk(workspace_id, request_ids, next_status, reviewed_by)
        self._observability.collect_metric(
            "change_requests_applied_total", float(result.succeeded),
            {"status": str(next_status), "outcome": "success"}
        )
        if len(result.failed):
            self._observability.collect_metric(
                "change_requests_applied_total", float(len(result.failed)),
                {"status": str(next_status), "outcome": "failed"}
            )
        if not result.affects_rollups:
            return result

        version, error = self._rebuild_after_apply(workspace_id, request_ids)
        return replace(result, rollup_version=version, rebuild_error=error)

    def _rebuild_after_apply(
        self,
        workspace_id: str,
        request_ids: Iterable[int],
    ) -> Tuple[Optional[int], Optional[str]]:
        try:
            return self.rebuild(workspace_id), None
        except BuildError as exc:
            logger.error(
                "Roll-up rebuild after approval failed in workspace %s; approvals are kept: %s",
                workspace_id, exc.error.message,
            )
            self._observability.log_audit(
                action="rebuild_after_apply",
                entity_id=",".join(str(i) for i in request_ids),
                outcome="failure",
                details=exc.error.message,
                workspace_id=workspace_id,
                event_type=AuditEventType.ERROR,
            )
            return None, str(exc)

    # =========================================================================
    # ROLL-UP INTERFACE
    # =========================================================================

    def rebuild(self, workspace_id: str) -> int:
        """Rebuild every roll-up level; returns the new ACTIVE version."""
        return self.build(workspace_id).version

    def build(self, workspace_id: str) -> BuildReport:
        try:
            report = self._builder.build(workspace_id)
        except BuildError:
            self._observability.collect_metric("rollup_build_failures_total", 1.0)
            raise

        self._observability.collect_metric("rollup_build_duration_ms", report.duration_ms)
        for level, count in report.edge_counts:
            self._observability.collect_metric("rollup_edges", float(count), {"level": level.value})
        return report

    def get_active_generation(self, workspace_id: str) -> Optional[int]:
        return self._generations.get_active(normalize_workspace_id(workspace_id))

    def list_generations(self, workspace_id: str) -> List[Generation]:
        return self._generations.list_generations(normalize_workspace_id(workspace_id))

    def get_rollup_edges(
        self,
        workspace_id: str,
        version: Optional[int] = None,
        level: Optional[RollupLevel] = None,
    ) -> List[RollupEdge]:
        return self._builder.get_rollup_edges(normalize_workspace_id(workspace_id), version, level)

    def get_graph_stats(
        self,
        workspace_id: str,
        level: RollupLevel,
        version: Optional[int] = None,
    ) -> List[GraphStat]:
        return self._builder.get_graph_stats(normalize_workspace_id(workspace_id), level, version)

    # =========================================================================
    # QUERY INTERFACE
    # =========================================================================

    def execute_query(
        self,
        query_type: QueryType,
        workspace_id: str,
        params: Optional[QueryParams] = None,
        scope: Optional[QueryScope] = None,
        generation_version: Optional[int] = None,
    ) -> QueryResult:
        """
        Run a query against one generation.

        Without an explicit generation_version the ACTIVE one is resolved
        here, once; 0 stands for "nothing built yet".
        """
        workspace_id = normalize_workspace_id(workspace_id)
        if generation_version is None:
            generation_version = self._generations.get_active(workspace_id) or 0

        request = self._query.build_request(
            query_type, workspace_id, generation_version, params, scope
        )
        result = self._query.execute(request)

        self._observability.collect_metric(
            "query_execution_time_ms", result.meta.execution_ms,
            {"query_type": query_type.value}
        )
        self._observability.collect_metric(
            "graph_cache_entries", float(self._graph_index.stats()["entries"])
        )
        if not result.success and result.error is not None:
            logger.info(
                "Query %s (%s) failed: %s",
                request.query_id, query_type.value, result.error.error_code.value,
            )
        return result

    # =========================================================================
    # OBJECT REGISTRY INTERFACE
    # =========================================================================

    def register_object(
        self,
        workspace_id: str,
        urn: str,
        object_type: str,
        name: Optional[str] = None,
        parent: Optional[str] = None,
        display_name: Optional[str] = None,
        visibility: Visibility = Visibility.VISIBLE,
        metadata: Optional[Dict[str, Any]] = None,
        granularity: Optional[Granularity] = None,
    ) -> ArchObject:
        """Register an object; parent may be an internal id or a URN."""
        workspace_id = normalize_workspace_id(workspace_id)
        parent_id = self._resolve_required(workspace_id, parent) if parent else None
        return self._store.register_object(
            workspace_id, urn, object_type,
            name=name,
            parent_id=parent_id,
            display_name=display_name,
            visibility=visibility,
            metadata=metadata,
            granularity=granularity,
        )

    def resolve(self, workspace_id: str, reference: str) -> Optional[str]:
        return self._store.resolve_reference(normalize_workspace_id(workspace_id), reference)

    def get_object(self, workspace_id: str, reference: str) -> Optional[ArchObject]:
        workspace_id = normalize_workspace_id(workspace_id)
        object_id = self._store.resolve_reference(workspace_id, reference)
        return self._store.get_object(workspace_id, object_id) if object_id else None

    def set_domain_affinity(
        self,
        workspace_id: str,
        object_ref: str,
        domain_ref: str,
        affinity: float,
        source: str = "MANUAL",
    ) -> DomainAffinity:
        """Record an object's membership weight in a domain. Takes effect on the next rebuild."""
        workspace_id = normalize_workspace_id(workspace_id)
        record = DomainAffinity(
            workspace_id=workspace_id,
            object_id=self._resolve_required(workspace_id, object_ref),
            domain_id=self._resolve_required(workspace_id, domain_ref),
            affinity=affinity,
            source=source,
        )
        self._store.set_domain_affinity(record)
        return record

    def reassign_parent(
        self,
        workspace_id: str,
        object_ref: str,
        parent_ref: Optional[str],
    ) -> int:
        """Move an object under a new parent (None detaches it) and rebuild."""
        workspace_id = normalize_workspace_id(workspace_id)
        object_id = self._resolve_required(workspace_id, object_ref)
        parent_id = self._resolve_required(workspace_id, parent_ref) if parent_ref else None
        self._store.update_object(workspace_id, object_id, parent_id=parent_id, change_parent=True)
        logger.info("Object %s reassigned to parent %s in workspace %s", object_id, parent_id, workspace_id)
        self._observability.log_audit(
            action="reassign_parent",
            entity_id=object_id,
            details=parent_id or "",
            workspace_id=workspace_id,
        )
        return self.rebuild(workspace_id)

    def _resolve_required(self, workspace_id: str, reference: str) -> str:
        object_id = self._store.resolve_reference(workspace_id, reference)
        if object_id is None:
            raise ResolutionError(ErrorCode.OBJECT_NOT_FOUND, f"unknown object: {reference}", reference=reference)
        return object_id

    # =========================================================================
    # OBSERVABILITY INTERFACE
    # =========================================================================

    def get_audit_log(
        self,
        time_range: Optional[TimeRange] = None,
        layers: Optional[List[str]] = None
    ) -> List:
        """Get unified audit log."""
        self._sync_audit_logs()
        return self._observability.get_unified_log(time_range, layers)

    def get_audit_report(self, time_range: Optional[TimeRange] = None) -> Dict:
        """Generate audit report."""
        self._sync_audit_logs()
        return self._observability.generate_audit_report(time_range)

    def get_metrics(self):
        """Get metrics collector."""
        return self._observability.get_metrics()

    def _sync_audit_logs(self):
        """Forward entries each layer recorded since the last sync."""
        sources = (
            ("gate", self._gate),
            ("rollup", self._builder),
            ("core", self._graph_index),
            ("query", self._query),
        )
        with self._sync_lock:
            for name, layer in sources:
                entries, offset = layer.audit_trail.since(self._audit_offsets.get(name, 0))
                for entry in entries:
                    self._observability.collect_audit(entry)
                self._audit_offsets[name] = offset

    # =========================================================================
    # DIRECT LAYER ACCESS (for advanced use cases)
    # =========================================================================

    @property
    def storage_layer(self) -> RelationStore:
        """Direct access to the relation store."""
        return self._store

    @property
    def gate_layer(self) -> ApprovalGate:
        return self._gate

    @property
    def rollup_layer(self) -> RollupBuilder:
        return self._builder

    @property
    def graph_index(self) -> GraphIndex:
        return self._graph_index

    @property
    def query_layer(self) -> QueryEngine:
        """Direct access to query layer."""
        return self._query

    @property
    def observability_layer(self) -> ObservabilityEngine:
        """Direct access to observability layer."""
        return self._observability
