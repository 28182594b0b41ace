"""
Entity Contracts

Immutable records for every persisted concept of the dependency graph:
objects, canonical relations, change requests, roll-up edges, generations,
domain affinities and graph statistics.

Rows read from storage are converted into these records at the storage
boundary; no other layer sees raw rows.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from enum import Enum

from .base import Timestamp


# =============================================================================
# ENUMERATIONS
# =============================================================================

class RelationType(Enum):
    """Fixed set of atomic relation types."""
    CALL = "call"
    EXPOSE = "expose"
    READ = "read"
    WRITE = "write"
    PRODUCE = "produce"
    CONSUME = "consume"
    DEPEND_ON = "depend_on"


class RelationSource(Enum):
    """
    Who asserted a relation.

    ROLLUP is provenance for derived roll-up edges only and is never a
    valid source for a canonical relation.
    """
    MANUAL = "manual"
    SCAN = "scan"
    INFERENCE = "inference"
    ROLLUP = "rollup"

    @property
    def is_automated(self) -> bool:
        return self in (RelationSource.SCAN, RelationSource.INFERENCE)


class Granularity(Enum):
    COMPOUND = "COMPOUND"
    ATOMIC = "ATOMIC"


class Visibility(Enum):
    VISIBLE = "VISIBLE"
    HIDDEN = "HIDDEN"


class ChangeRequestType(Enum):
    RELATION_UPSERT = "RELATION_UPSERT"
    RELATION_DELETE = "RELATION_DELETE"
    OBJECT_PATCH = "OBJECT_PATCH"

    @property
    def is_relation(self) -> bool:
        return self is not ChangeRequestType.OBJECT_PATCH


class ChangeRequestStatus(Enum):
    """PENDING -> APPROVED | REJECTED. Terminal states are one-way."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self is not ChangeRequestStatus.PENDING


class RollupLevel(Enum):
    SERVICE_TO_SERVICE = "SERVICE_TO_SERVICE"
    SERVICE_TO_DATABASE = "SERVICE_TO_DATABASE"
    SERVICE_TO_BROKER = "SERVICE_TO_BROKER"
    DOMAIN_TO_DOMAIN = "DOMAIN_TO_DOMAIN"


class GenerationStatus(Enum):
    """BUILDING -> ACTIVE -> ARCHIVED. Only ACTIVE is visible to queries."""
    BUILDING = "BUILDING"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


# Object types known to the registry and their default granularity.
OBJECT_TYPE_GRANULARITY: Dict[str, Granularity] = {
    "service": Granularity.COMPOUND,
    "api_endpoint": Granularity.ATOMIC,
    "function": Granularity.ATOMIC,
    "database": Granularity.COMPOUND,
    "db_table": Granularity.ATOMIC,
    "db_view": Granularity.ATOMIC,
    "cache_instance": Granularity.COMPOUND,
    "cache_key": Granularity.ATOMIC,
    "message_broker": Granularity.COMPOUND,
    "topic": Granularity.ATOMIC,
    "queue": Granularity.ATOMIC,
    "domain": Granularity.COMPOUND,
}


# =============================================================================
# RECORDS
# =============================================================================

@dataclass(frozen=True)
class ArchObject:
    """An architectural entity identified by a stable URN within a workspace."""
    object_id: str
    workspace_id: str
    urn: str
    object_type: str
    name: str
    granularity: Granularity
    parent_id: Optional[str] = None
    display_name: Optional[str] = None
    visibility: Visibility = Visibility.VISIBLE
    metadata: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def label(self) -> str:
        return self.display_name or self.name


@dataclass(frozen=True)
class CanonicalRelation:
    """
    Approved, directed edge (subject, relation_type, target).

    Unique per (workspace, relation_type, subject, target, is_derived).
    """
    relation_id: str
    workspace_id: str
    subject_id: str
    relation_type: RelationType
    target_id: str
    source: RelationSource
    confidence: Optional[float] = None
    evidence: Tuple[str, ...] = field(default_factory=tuple)
    approved: bool = True
    is_derived: bool = False
    score_version: Optional[str] = None
    review_tag: Optional[str] = None
    tags: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ChangeRequest:
    """A proposed mutation awaiting review, with its audit fields."""
    request_id: int
    workspace_id: str
    request_type: ChangeRequestType
    payload: Dict[str, Any] = field(hash=False, compare=False)
    status: ChangeRequestStatus
    requested_by: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[Timestamp] = None
    created_at: Optional[Timestamp] = None


@dataclass(frozen=True)
class RollupEdge:
    """Derived, weighted edge tagged with the generation that produced it."""
    rollup_id: str
    workspace_id: str
    level: RollupLevel
    relation_type: RelationType
    subject_id: str
    target_id: str
    edge_weight: int
    confidence: Optional[float]
    generation_version: int


@dataclass(frozen=True)
class Generation:
    workspace_id: str
    version: int
    status: GenerationStatus
    built_at: Optional[Timestamp] = None
    created_at: Optional[Timestamp] = None


@dataclass(frozen=True)
class DomainAffinity:
    """Soft membership weight of an object in a domain object."""
    workspace_id: str
    object_id: str
    domain_id: str
    affinity: float
    source: str = "MANUAL"

    def __post_init__(self):
        if not 0.0 <= self.affinity <= 1.0:
            raise ValueError("affinity must be between 0.0 and 1.0")


@dataclass(frozen=True)
class GraphStat:
    """Per-level node degree statistics for hub detection."""
    workspace_id: str
    generation_version: int
    level: RollupLevel
    object_id: str
    in_degree: int
    out_degree: int


# =============================================================================
# GATE RESULTS
# =============================================================================

@dataclass(frozen=True)
class ApplyOutcome:
    """
    Result of applying one change request.

    affects_rollups is True when canonical relations or object ownership
    changed, i.e. when the caller must rebuild roll-ups.
    """
    request: ChangeRequest
    affects_rollups: bool = False
    rollup_version: Optional[int] = None
    rebuild_error: Optional[str] = None


@dataclass(frozen=True)
class BulkFailure:
    request_id: int
    reason: str


@dataclass(frozen=True)
class BulkApplyResult:
    processed: int
    succeeded: int
    failed: Tuple[BulkFailure, ...] = field(default_factory=tuple)
    affects_rollups: bool = False
    rollup_version: Optional[int] = None
    rebuild_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": [{"id": f.request_id, "reason": f.reason} for f in self.failed],
            "rollupVersion": self.rollup_version,
            "rebuildError": self.rebuild_error,
        }
