"""
Relational Storage Layer

RESPONSIBILITY: Durable, workspace-scoped persistence of objects, canonical
relations, change requests, roll-up generations and their derived rows
ALLOWED INPUTS: Typed contract values from the gate and roll-up layers
OUTPUTS: Immutable contract records (never raw rows)

WHAT THIS LAYER MUST NOT DO:
============================
- Validate change request payloads
- Decide which generation is authoritative
- Compute aggregates
- Join across workspaces

BOUNDARY ENFORCEMENT:
=====================
- One SQLite connection per store, guarded by a re-entrant lock
- transaction() is the only way to group writes; partial writes are
  rolled back before the lock is released
- Canonical relation uniqueness is enforced by a UNIQUE index, not by
  read-then-write logic
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
import hashlib
import json
import logging
import os
import sqlite3
import threading

from ..contracts.base import Timestamp, normalize_workspace_id
from ..contracts.entities import (
    ArchObject, CanonicalRelation, ChangeRequest, ChangeRequestStatus,
    ChangeRequestType, DomainAffinity, Generation, GenerationStatus,
    GraphStat, Granularity, OBJECT_TYPE_GRANULARITY, RelationSource,
    RelationType, RollupEdge, RollupLevel, Visibility
)
from .schema import SCHEMA_STATEMENTS

logger = logging.getLogger(__name__)

DB_PATH_ENV = "ARCHGRAPH_DB_PATH"
MEMORY_DATABASE = ":memory:"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class StoreConfig:
    """Configuration for the relational store."""
    database_path: str = MEMORY_DATABASE
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StoreConfig:
        return cls(database_path=os.environ.get(DB_PATH_ENV) or MEMORY_DATABASE)


def make_id(prefix: str, *parts: Any) -> str:
    """Deterministic identifier derived from the identifying tuple."""
    content = "\x1f".join(str(p) for p in parts)
    return f"{prefix}_{hashlib.sha256(content.encode()).hexdigest()[:16]}"


def _name_from_urn(urn: str) -> str:
    for sep in ("/", ":"):
        if sep in urn:
            urn = urn.rsplit(sep, 1)[-1]
    return urn or "unnamed"


def _loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        logger.warning("Unreadable JSON column value %r", value[:80])
        return default


# =============================================================================
# ROW MAPPING
# =============================================================================

def _ts(value: Optional[str]) -> Optional[Timestamp]:
    return Timestamp.from_iso(value) if value else None


def _row_to_object(row: sqlite3.Row) -> ArchObject:
    return ArchObject(
        object_id=row["id"],
        workspace_id=row["workspace_id"],
        urn=row["urn"],
        object_type=row["object_type"],
        name=row["name"],
        granularity=Granularity(row["granularity"]),
        parent_id=row["parent_id"],
        display_name=row["display_name"],
        visibility=Visibility(row["visibility"]),
        metadata=_loads(row["metadata"], {}),
    )


def _row_to_relation(row: sqlite3.Row) -> CanonicalRelation:
    evidence = _loads(row["evidence"], [])
    if isinstance(evidence, str):
        evidence = [evidence]
    return CanonicalRelation(
        relation_id=row["id"],
        workspace_id=row["workspace_id"],
        subject_id=row["subject_object_id"],
        relation_type=RelationType(row["relation_type"]),
        target_id=row["target_object_id"],
        source=RelationSource(row["source"]),
        confidence=row["confidence"],
        evidence=tuple(str(e) for e in evidence),
        approved=bool(row["approved"]),
        is_derived=bool(row["is_derived"]),
        score_version=row["score_version"],
        review_tag=row["review_tag"],
        tags=tuple(_loads(row["tags"], [])),
    )


def _row_to_request(row: sqlite3.Row) -> ChangeRequest:
    return ChangeRequest(
        request_id=row["id"],
        workspace_id=row["workspace_id"],
        request_type=ChangeRequestType(row["request_type"]),
        payload=_loads(row["payload"], {}),
        status=ChangeRequestStatus(row["status"]),
        requested_by=row["requested_by"],
        reviewed_by=row["reviewed_by"],
        reviewed_at=_ts(row["reviewed_at"]),
        created_at=_ts(row["created_at"]),
    )


def _row_to_generation(row: sqlite3.Row) -> Generation:
    return Generation(
        workspace_id=row["workspace_id"],
        version=row["version"],
        status=GenerationStatus(row["status"]),
        built_at=_ts(row["built_at"]),
        created_at=_ts(row["created_at"]),
    )


def _row_to_rollup(row: sqlite3.Row) -> RollupEdge:
    return RollupEdge(
        rollup_id=row["id"],
        workspace_id=row["workspace_id"],
        level=RollupLevel(row["rollup_level"]),
        relation_type=RelationType(row["relation_type"]),
        subject_id=row["subject_object_id"],
        target_id=row["target_object_id"],
        edge_weight=row["edge_weight"],
        confidence=row["confidence"],
        generation_version=row["generation_version"],
    )


# =============================================================================
# RELATIONAL STORE
# =============================================================================

class RelationStore:
    """
    SQLite-backed store for every persisted state of the dependency graph.

    All public methods are thread-safe. Methods called inside transaction()
    join that transaction.
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        self._config = config or StoreConfig()
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._conn = sqlite3.connect(
            self._config.database_path,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self):
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute(f"PRAGMA busy_timeout = {int(self._config.busy_timeout_ms)}")
        if self._config.database_path != MEMORY_DATABASE:
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")

    def _create_schema(self):
        with self.transaction():
            for statement in SCHEMA_STATEMENTS:
                self._conn.execute(statement)
        logger.debug("Schema ready at %s", self._config.database_path)

    @property
    def database_path(self) -> str:
        return self._config.database_path

    def close(self):
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[RelationStore]:
        """
        Group writes into one atomic unit.

        BEGIN IMMEDIATE takes the write lock up front; any exception rolls
        back and re-raises. Nested use joins the outer transaction.
        """
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._tx_depth = 0

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    # -------------------------------------------------------------------------
    # Object registry
    # -------------------------------------------------------------------------

    def register_object(
        self,
        workspace_id: str,
        urn: str,
        object_type: str,
        name: Optional[str] = None,
        parent_id: Optional[str] = None,
        display_name: Optional[str] = None,
        visibility: Visibility = Visibility.VISIBLE,
        metadata: Optional[Dict[str, Any]] = None,
        granularity: Optional[Granularity] = None,
    ) -> ArchObject:
        """Insert or refresh an object keyed by (workspace, urn)."""
        workspace_id = normalize_workspace_id(workspace_id)
        if granularity is None:
            granularity = OBJECT_TYPE_GRANULARITY.get(
                object_type,
                Granularity.ATOMIC if parent_id else Granularity.COMPOUND,
            )
        now = Timestamp.now().to_iso()
        with self.transaction():
            self._execute(
                """
                INSERT INTO objects (id, workspace_id, urn, object_type, name, granularity,
                                     parent_id, display_name, visibility, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (workspace_id, urn) DO UPDATE SET
                    object_type = excluded.object_type,
                    name = excluded.name,
                    granularity = excluded.granularity,
                    parent_id = excluded.parent_id,
                    display_name = COALESCE(excluded.display_name, objects.display_name),
                    updated_at = excluded.updated_at
                """,
                (
                    make_id("obj", workspace_id, urn), workspace_id, urn, object_type,
                    name or _name_from_urn(urn), granularity.value, parent_id, display_name,
                    visibility.value, json.dumps(metadata or {}, sort_keys=True), now, now,
                ),
            )
            row = self._fetchone(
                "SELECT * FROM objects WHERE workspace_id = ? AND urn = ?", (workspace_id, urn)
            )
        return _row_to_object(row)

    def resolve_reference(self, workspace_id: str, reference: str) -> Optional[str]:
        """Resolve an internal id or a URN to an internal id."""
        row = self._fetchone(
            "SELECT id FROM objects WHERE workspace_id = ? AND (id = ? OR urn = ?) ORDER BY id = ? DESC LIMIT 1",
            (normalize_workspace_id(workspace_id), reference, reference, reference),
        )
        return row["id"] if row else None

    def get_object(self, workspace_id: str, object_id: str) -> Optional[ArchObject]:
        row = self._fetchone(
            "SELECT * FROM objects WHERE workspace_id = ? AND id = ?",
            (normalize_workspace_id(workspace_id), object_id),
        )
        return _row_to_object(row) if row else None

    def get_objects(
        self,
        workspace_id: str,
        object_ids: Optional[Iterable[str]] = None,
    ) -> Dict[str, ArchObject]:
        """Objects of a workspace keyed by id, optionally restricted to ids."""
        workspace_id = normalize_workspace_id(workspace_id)
        if object_ids is None:
            rows = self._fetchall("SELECT * FROM objects WHERE workspace_id = ?", (workspace_id,))
        else:
            ids = sorted(set(object_ids))
            rows = []
            # stay below SQLite's bound-parameter limit
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                placeholders = ",".join("?" for _ in chunk)
                rows.extend(self._fetchall(
                    f"SELECT * FROM objects WHERE workspace_id = ? AND id IN ({placeholders})",
                    (workspace_id, *chunk),
                ))
        return {row["id"]: _row_to_object(row) for row in rows}

    def update_object(
        self,
        workspace_id: str,
        object_id: str,
        display_name: Optional[str] = None,
        visibility: Optional[Visibility] = None,
        metadata: Optional[Dict[str, Any]] = None,
        parent_id: Optional[str] = None,
        change_parent: bool = False,
    ) -> Optional[ArchObject]:
        """Patch an object; metadata is shallow-merged into the stored map."""
        workspace_id = normalize_workspace_id(workspace_id)
        with self.transaction():
            current = self.get_object(workspace_id, object_id)
            if current is None:
                return None
            merged = dict(current.metadata)
            if metadata:
                merged.update(metadata)
            self._execute(
                """
                UPDATE objects SET display_name = ?, visibility = ?, metadata = ?,
                                   parent_id = ?, updated_at = ?
                WHERE workspace_id = ? AND id = ?
                """,
                (
                    display_name if display_name is not None else current.display_name,
                    (visibility or current.visibility).value,
                    json.dumps(merged, sort_keys=True),
                    parent_id if change_parent else current.parent_id,
                    Timestamp.now().to_iso(),
                    workspace_id,
                    object_id,
                ),
            )
            return self.get_object(workspace_id, object_id)

    def set_domain_affinity(self, affinity: DomainAffinity):
        workspace_id = normalize_workspace_id(affinity.workspace_id)
        with self.transaction():
            self._execute(
                """
                INSERT INTO object_domain_affinities (workspace_id, object_id, domain_id, affinity, source)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (workspace_id, object_id, domain_id) DO UPDATE SET
                    affinity = excluded.affinity, source = excluded.source
                """,
                (workspace_id, affinity.object_id, affinity.domain_id, affinity.affinity, affinity.source),
            )

    def list_domain_affinities(self, workspace_id: str) -> List[DomainAffinity]:
        workspace_id = normalize_workspace_id(workspace_id)
        rows = self._fetchall(
            "SELECT * FROM object_domain_affinities WHERE workspace_id = ? ORDER BY object_id, domain_id",
            (workspace_id,),
        )
        return [
            DomainAffinity(
                workspace_id=workspace_id,
                object_id=row["object_id"],
                domain_id=row["domain_id"],
                affinity=row["affinity"],
                source=row["source"],
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Canonical relations
    # -------------------------------------------------------------------------

    def upsert_relation(
        self,
        workspace_id: str,
        subject_id: str,
        target_id: str,
        relation_type: RelationType,
        source: RelationSource,
        confidence: Optional[float] = None,
        evidence: Tuple[str, ...] = (),
        score_version: Optional[str] = None,
        review_tag: Optional[str] = None,
        tags: Tuple[str, ...] = (),
    ) -> CanonicalRelation:
        """Insert a canonical relation, or overwrite the existing tuple in place."""
        workspace_id = normalize_workspace_id(workspace_id)
        now = Timestamp.now().to_iso()
        with self.transaction():
            self._execute(
                """
                INSERT INTO object_relations (id, workspace_id, relation_type, subject_object_id,
                                              target_object_id, source, confidence, evidence, approved,
                                              is_derived, score_version, review_tag, tags,
                                              created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, 0, ?, ?, ?, ?, ?)
                ON CONFLICT (workspace_id, relation_type, subject_object_id, target_object_id, is_derived)
                DO UPDATE SET
                    source = excluded.source,
                    confidence = excluded.confidence,
                    evidence = excluded.evidence,
                    approved = 1,
                    score_version = excluded.score_version,
                    review_tag = excluded.review_tag,
                    tags = excluded.tags,
                    updated_at = excluded.updated_at
                """,
                (
                    make_id("rel", workspace_id, relation_type.value, subject_id, target_id, 0),
                    workspace_id, relation_type.value, subject_id, target_id, source.value,
                    confidence, json.dumps(list(evidence)), score_version, review_tag,
                    json.dumps(list(tags)), now, now,
                ),
            )
            return self.get_relation(workspace_id, subject_id, target_id, relation_type)

    def delete_relation(
        self,
        workspace_id: str,
        subject_id: str,
        target_id: str,
        relation_type: RelationType,
    ) -> bool:
        """Delete the canonical, non-derived tuple. Returns False when absent."""
        cursor = self._execute(
            """
            DELETE FROM object_relations
            WHERE workspace_id = ? AND relation_type = ? AND subject_object_id = ?
              AND target_object_id = ? AND is_derived = 0
            """,
            (normalize_workspace_id(workspace_id), relation_type.value, subject_id, target_id),
        )
        return cursor.rowcount > 0

    def get_relation(
        self,
        workspace_id: str,
        subject_id: str,
        target_id: str,
        relation_type: RelationType,
    ) -> Optional[CanonicalRelation]:
        row = self._fetchone(
            """
            SELECT * FROM object_relations
            WHERE workspace_id = ? AND relation_type = ? AND subject_object_id = ?
              AND target_object_id = ? AND is_derived = 0
            """,
            (normalize_workspace_id(workspace_id), relation_type.value, subject_id, target_id),
        )
        return _row_to_relation(row) if row else None

    def list_relations(
        self,
        workspace_id: str,
        relation_types: Optional[Iterable[RelationType]] = None,
    ) -> List[CanonicalRelation]:
        """Approved, non-derived relations of a workspace in a stable order."""
        sql = "SELECT * FROM object_relations WHERE workspace_id = ? AND is_derived = 0 AND approved = 1"
        params: List[Any] = [normalize_workspace_id(workspace_id)]
        if relation_types is not None:
            values = [t.value for t in relation_types]
            if not values:
                return []
            sql += f" AND relation_type IN ({','.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY relation_type, subject_object_id, target_object_id"
        return [_row_to_relation(row) for row in self._fetchall(sql, params)]

    def list_relations_targeting(self, workspace_id: str, target_id: str) -> List[CanonicalRelation]:
        rows = self._fetchall(
            """
            SELECT * FROM object_relations
            WHERE workspace_id = ? AND target_object_id = ? AND is_derived = 0 AND approved = 1
            ORDER BY subject_object_id, relation_type
            """,
            (normalize_workspace_id(workspace_id), target_id),
        )
        return [_row_to_relation(row) for row in rows]

    # -------------------------------------------------------------------------
    # Change requests
    # -------------------------------------------------------------------------

    def insert_change_request(
        self,
        workspace_id: str,
        request_type: ChangeRequestType,
        payload: Dict[str, Any],
        requested_by: Optional[str] = None,
    ) -> ChangeRequest:
        workspace_id = normalize_workspace_id(workspace_id)
        with self.transaction():
            cursor = self._execute(
                """
                INSERT INTO change_requests (workspace_id, request_type, payload, status, requested_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    workspace_id, request_type.value, json.dumps(payload, sort_keys=True),
                    ChangeRequestStatus.PENDING.value, requested_by, Timestamp.now().to_iso(),
                ),
            )
            return self.get_change_request(workspace_id, cursor.lastrowid)

    def get_change_request(self, workspace_id: str, request_id: int) -> Optional[ChangeRequest]:
        row = self._fetchone(
            "SELECT * FROM change_requests WHERE workspace_id = ? AND id = ?",
            (normalize_workspace_id(workspace_id), request_id),
        )
        return _row_to_request(row) if row else None

    def list_change_requests(
        self,
        workspace_id: str,
        status: Optional[ChangeRequestStatus] = ChangeRequestStatus.PENDING,
        limit: Optional[int] = 200,
        request_types: Optional[Iterable[ChangeRequestType]] = None,
    ) -> List[ChangeRequest]:
        sql = "SELECT * FROM change_requests WHERE workspace_id = ?"
        params: List[Any] = [normalize_workspace_id(workspace_id)]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if request_types is not None:
            values = [t.value for t in request_types]
            sql += f" AND request_type IN ({','.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY created_at, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, int(limit)))
        return [_row_to_request(row) for row in self._fetchall(sql, params)]

    def list_pending_ids(self, workspace_id: str, exclude_ids: Iterable[int] = ()) -> List[int]:
        excluded = set(exclude_ids)
        rows = self._fetchall(
            "SELECT id FROM change_requests WHERE workspace_id = ? AND status = ? ORDER BY id",
            (normalize_workspace_id(workspace_id), ChangeRequestStatus.PENDING.value),
        )
        return [row["id"] for row in rows if row["id"] not in excluded]

    def mark_change_request(
        self,
        workspace_id: str,
        request_id: int,
        status: ChangeRequestStatus,
        reviewed_by: Optional[str],
        reviewed_at: Timestamp,
    ) -> bool:
        """Move a PENDING request to a terminal status. False if it was not PENDING."""
        cursor = self._execute(
            """
            UPDATE change_requests SET status = ?, reviewed_by = ?, reviewed_at = ?
            WHERE workspace_id = ? AND id = ? AND status = ?
            """,
            (
                status.value, reviewed_by, reviewed_at.to_iso(),
                normalize_workspace_id(workspace_id), request_id, ChangeRequestStatus.PENDING.value,
            ),
        )
        return cursor.rowcount == 1

    # -------------------------------------------------------------------------
    # Generations
    # -------------------------------------------------------------------------

    def get_active_version(self, workspace_id: str) -> Optional[int]:
        row = self._fetchone(
            "SELECT MAX(version) AS version FROM rollup_generations WHERE workspace_id = ? AND status = ?",
            (normalize_workspace_id(workspace_id), GenerationStatus.ACTIVE.value),
        )
        return row["version"] if row and row["version"] is not None else None

    def get_generation(self, workspace_id: str, version: int) -> Optional[Generation]:
        row = self._fetchone(
            "SELECT * FROM rollup_generations WHERE workspace_id = ? AND version = ?",
            (normalize_workspace_id(workspace_id), version),
        )
        return _row_to_generation(row) if row else None

    def list_generations(self, workspace_id: str) -> List[Generation]:
        rows = self._fetchall(
            "SELECT * FROM rollup_generations WHERE workspace_id = ? ORDER BY version DESC",
            (normalize_workspace_id(workspace_id),),
        )
        return [_row_to_generation(row) for row in rows]

    def insert_generation(self, workspace_id: str, version: int, status: GenerationStatus):
        self._execute(
            "INSERT INTO rollup_generations (workspace_id, version, status, created_at) VALUES (?, ?, ?, ?)",
            (normalize_workspace_id(workspace_id), version, status.value, Timestamp.now().to_iso()),
        )

    def set_generation_status(
        self,
        workspace_id: str,
        version: int,
        status: GenerationStatus,
        built_at: Optional[Timestamp] = None,
    ) -> bool:
        cursor = self._execute(
            """
            UPDATE rollup_generations SET status = ?, built_at = COALESCE(?, built_at)
            WHERE workspace_id = ? AND version = ?
            """,
            (status.value, built_at.to_iso() if built_at else None, normalize_workspace_id(workspace_id), version),
        )
        return cursor.rowcount == 1

    def archive_active_generations(self, workspace_id: str) -> int:
        cursor = self._execute(
            "UPDATE rollup_generations SET status = ? WHERE workspace_id = ? AND status = ?",
            (GenerationStatus.ARCHIVED.value, normalize_workspace_id(workspace_id), GenerationStatus.ACTIVE.value),
        )
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Roll-up rows
    # -------------------------------------------------------------------------

    def insert_rollup_edges(self, edges: Iterable[RollupEdge]) -> int:
        now = Timestamp.now().to_iso()
        rows = [
            (
                e.rollup_id, normalize_workspace_id(e.workspace_id), e.generation_version, e.level.value,
                e.relation_type.value, e.subject_id, e.target_id, e.edge_weight, e.confidence, now,
            )
            for e in edges
        ]
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO object_rollups (id, workspace_id, generation_version, rollup_level, relation_type,
                                            subject_object_id, target_object_id, edge_weight, confidence,
                                            created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def list_rollup_edges(
        self,
        workspace_id: str,
        version: int,
        level: Optional[RollupLevel] = None,
    ) -> List[RollupEdge]:
        sql = "SELECT * FROM object_rollups WHERE workspace_id = ? AND generation_version = ?"
        params: List[Any] = [normalize_workspace_id(workspace_id), version]
        if level is not None:
            sql += " AND rollup_level = ?"
            params.append(level.value)
        sql += " ORDER BY rollup_level, subject_object_id, target_object_id, relation_type"
        return [_row_to_rollup(row) for row in self._fetchall(sql, params)]

    def insert_graph_stats(self, stats: Iterable[GraphStat]) -> int:
        rows = [
            (
                normalize_workspace_id(s.workspace_id), s.generation_version, s.level.value,
                s.object_id, s.in_degree, s.out_degree,
            )
            for s in stats
        ]
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO object_graph_stats (workspace_id, generation_version, rollup_level, object_id,
                                                in_degree, out_degree)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def list_graph_stats(
        self,
        workspace_id: str,
        version: int,
        level: Optional[RollupLevel] = None,
    ) -> List[GraphStat]:
        sql = "SELECT * FROM object_graph_stats WHERE workspace_id = ? AND generation_version = ?"
        params: List[Any] = [normalize_workspace_id(workspace_id), version]
        if level is not None:
            sql += " AND rollup_level = ?"
            params.append(level.value)
        sql += " ORDER BY rollup_level, object_id"
        return [
            GraphStat(
                workspace_id=row["workspace_id"],
                generation_version=row["generation_version"],
                level=RollupLevel(row["rollup_level"]),
                object_id=row["object_id"],
                in_degree=row["in_degree"],
                out_degree=row["out_degree"],
            )
            for row in self._fetchall(sql, params)
        ]

    def clear_generation_rows(self, workspace_id: str, version: int) -> int:
        """Delete the roll-up edges and stats written under one generation."""
        workspace_id = normalize_workspace_id(workspace_id)
        with self.transaction():
            removed = self._execute(
                "DELETE FROM object_rollups WHERE workspace_id = ? AND generation_version = ?",
                (workspace_id, version),
            ).rowcount
            self._execute(
                "DELETE FROM object_graph_stats WHERE workspace_id = ? AND generation_version = ?",
                (workspace_id, version),
            )
        return removed


__all__ = [
    "DB_PATH_ENV",
    "MEMORY_DATABASE",
    "RelationStore",
    "StoreConfig",
    "make_id",
]
