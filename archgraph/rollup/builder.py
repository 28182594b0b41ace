"""
Roll-up Builder

Recomputes every derived level from the current canonical relations and
writes them under a new generation:

    1. create BUILDING generation
    2. SERVICE_TO_SERVICE
    3. SERVICE_TO_DATABASE / SERVICE_TO_BROKER
    4. DOMAIN_TO_DOMAIN
    5. per-level degree statistics
    6. activate
    7. invalidate the graph cache of the workspace

A failure anywhere before step 6 leaves the generation BUILDING and the
previous ACTIVE generation untouched.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import logging
import threading
import time

from ..contracts.base import ArchGraphError, BuildError, ErrorCode, normalize_workspace_id
from ..contracts.entities import GraphStat, RelationType, RollupEdge, RollupLevel
from ..contracts.events import AuditEventType, AuditLogEntry
from ..core.graph_index import GraphIndex
from ..storage import RelationStore, make_id
from ..observability import DEFAULT_AUDIT_LIMIT, AuditTrail
from .aggregation import (
    BROKER_RELATION_TYPES, DATABASE_RELATION_TYPES, DEFAULT_MEMBERSHIP_FLOOR,
    AggregatedEdge, aggregate_by_parent, aggregate_domain_to_domain,
    aggregate_service_to_service, compute_degree_stats
)
from .generations import GenerationManager

logger = logging.getLogger(__name__)


@dataclass
class RollupConfig:
    """Configuration for roll-up computation."""
    membership_floor: float = DEFAULT_MEMBERSHIP_FLOOR


@dataclass(frozen=True)
class BuildReport:
    """Outcome of one successful rebuild."""
    workspace_id: str
    version: int
    edge_counts: Tuple[Tuple[RollupLevel, int], ...] = field(default_factory=tuple)
    duration_ms: float = 0.0

    def edge_count(self, level: RollupLevel) -> int:
        return dict(self.edge_counts).get(level, 0)


class RollupBuilder:
    """
    Rebuilds roll-ups per workspace.

    Rebuilds of the same workspace are serialized so two rebuilds never
    claim the same version.
    """

    def __init__(
        self,
        store: RelationStore,
        generations: GenerationManager,
        graph_index: Optional[GraphIndex] = None,
        config: Optional[RollupConfig] = None,
        audit_limit: int = DEFAULT_AUDIT_LIMIT,
    ):
        self._store = store
        self._generations = generations
        self._graph_index = graph_index
        self._config = config or RollupConfig()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._audit_log = AuditTrail(audit_limit)

    def _workspace_lock(self, workspace_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(workspace_id, threading.Lock())

    def rebuild(self, workspace_id: str) -> int:
        """Rebuild every level and return the newly ACTIVE version."""
        return self.build(workspace_id).version

    def build(self, workspace_id: str) -> BuildReport:
        """
        Rebuild every level and report per-level edge counts.

        Raises BuildError(BUILD_FAILED) chained to the underlying failure.
        """
        workspace_id = normalize_workspace_id(workspace_id)
        with self._workspace_lock(workspace_id):
            start_time = time.time()
            version: Optional[int] = None
            try:
                version = self._generations.create_new(workspace_id)
                counts = self._build_levels(workspace_id, version)
                self._generations.activate(workspace_id, version)
            except Exception as exc:
                logger.error(
                    "Rollup build failed for workspace %s (generation %s): %s",
                    workspace_id, version, exc, exc_info=True,
                )
                self._log_audit(
                    AuditEventType.ERROR, "build_failed", workspace_id, version,
                    (("error", str(exc) or type(exc).__name__),),
                )
                if isinstance(exc, BuildError):
                    raise
                message = exc.error.message if isinstance(exc, ArchGraphError) else str(exc)
                raise BuildError(
                    ErrorCode.BUILD_FAILED,
                    message or type(exc).__name__,
                    workspace_id=workspace_id,
                    version=version,
                ) from exc

            if self._graph_index is not None:
                self._graph_index.invalidate(workspace_id)

            report = BuildReport(
                workspace_id=workspace_id,
                version=version,
                edge_counts=tuple(counts),
                duration_ms=(time.time() - start_time) * 1000,
            )

        logger.info(
            "Rollup generation %s active for workspace %s in %.1f ms (%s)",
            version, workspace_id, report.duration_ms,
            ", ".join(f"{level.value}={count}" for level, count in report.edge_counts),
        )
        self._log_audit(
            AuditEventType.ROLLUP_BUILD, "build", workspace_id, version,
            tuple((level.value, str(count)) for level, count in report.edge_counts),
        )
        return report

    def _build_levels(self, workspace_id: str, version: int) -> List[Tuple[RollupLevel, int]]:
        relations = self._store.list_relations(workspace_id)
        by_type: Dict[RelationType, list] = {}
        for relation in relations:
            by_type.setdefault(relation.relation_type, []).append(relation)

        objects = self._store.get_objects(workspace_id)
        parent_of = {object_id: obj.parent_id for object_id, obj in objects.items()}

        service_edges = aggregate_service_to_service(
            by_type.get(RelationType.CALL, []), by_type.get(RelationType.EXPOSE, [])
        )
        database_edges = aggregate_by_parent(
            relations, parent_of, RollupLevel.SERVICE_TO_DATABASE, DATABASE_RELATION_TYPES
        )
        broker_edges = aggregate_by_parent(
            relations, parent_of, RollupLevel.SERVICE_TO_BROKER, BROKER_RELATION_TYPES
        )
        domain_edges = aggregate_domain_to_domain(
            service_edges,
            self._store.list_domain_affinities(workspace_id),
            self._config.membership_floor,
        )

        levels = (
            (RollupLevel.SERVICE_TO_SERVICE, service_edges),
            (RollupLevel.SERVICE_TO_DATABASE, database_edges),
            (RollupLevel.SERVICE_TO_BROKER, broker_edges),
            (RollupLevel.DOMAIN_TO_DOMAIN, domain_edges),
        )
        counts = []
        for level, edges in levels:
            with self._store.transaction():
                self._store.insert_rollup_edges(self._to_rollup_edges(workspace_id, version, edges))
            counts.append((level, len(edges)))

        for level, edges in levels:
            stats = [
                GraphStat(
                    workspace_id=workspace_id,
                    generation_version=version,
                    level=level,
                    object_id=object_id,
                    in_degree=in_degree,
                    out_degree=out_degree,
                )
                for object_id, (in_degree, out_degree) in compute_degree_stats(edges).items()
            ]
            with self._store.transaction():
                self._store.insert_graph_stats(stats)
        return counts

    @staticmethod
    def _to_rollup_edges(
        workspace_id: str,
        version: int,
        edges: List[AggregatedEdge],
    ) -> List[RollupEdge]:
        return [
            RollupEdge(
                rollup_id=make_id(
                    "rlp", workspace_id, version, e.level.value,
                    e.relation_type.value, e.subject_id, e.target_id,
                ),
                workspace_id=workspace_id,
                level=e.level,
                relation_type=e.relation_type,
                subject_id=e.subject_id,
                target_id=e.target_id,
                edge_weight=e.edge_weight,
                confidence=e.confidence,
                generation_version=version,
            )
            for e in edges
        ]

    # -------------------------------------------------------------------------
    # Generation reads
    # -------------------------------------------------------------------------

    def get_rollup_edges(
        self,
        workspace_id: str,
        version: Optional[int] = None,
        level: Optional[RollupLevel] = None,
    ) -> List[RollupEdge]:
        """Edges of a generation; the ACTIVE one when version is None."""
        if version is None:
            version = self._generations.get_active(workspace_id)
            if version is None:
                return []
        return self._store.list_rollup_edges(workspace_id, version, level)

    def get_graph_stats(
        self,
        workspace_id: str,
        level: RollupLevel,
        version: Optional[int] = None,
    ) -> List[GraphStat]:
        if version is None:
            version = self._generations.get_active(workspace_id)
            if version is None:
                return []
        return self._store.list_graph_stats(workspace_id, version, level)

    def _log_audit(
        self,
        event_type: AuditEventType,
        action: str,
        workspace_id: str,
        version: Optional[int],
        metadata: tuple = (),
    ):
        """Add entry to internal audit log."""
        self._audit_log.append(AuditLogEntry.create(
            layer="rollup",
            event_type=event_type,
            action=action,
            workspace_id=workspace_id,
            entity_id=str(version) if version is not None else None,
            metadata=metadata,
        ))

    def get_audit_log(self) -> List[AuditLogEntry]:
        """Return copy of the retained audit log entries."""
        return self._audit_log.entries()

    @property
    def audit_trail(self) -> AuditTrail:
        return self._audit_log
