"""
Roll-up Aggregation Formulas
============================

Pure functions from canonical relations (plus ownership and domain
affinities) to aggregated edges. No storage access here, so every formula
can be exercised on plain records.

SERVICE_TO_SERVICE
    A --call--> E and B --expose--> E  =>  A --call--> B  (A != B)
    weight = number of contributing call relations
    confidence = mean of the call relations' confidences (None if none)

SERVICE_TO_DATABASE / SERVICE_TO_BROKER
    S --read|write--> T, parent(T) = D  =>  S --read|write--> D
    S --produce|consume--> T, parent(T) = B  =>  S --produce|consume--> B
    same weight/confidence rule, one aggregate set per relation type

DOMAIN_TO_DOMAIN
    for each S2S edge A->B (w, c) and domains X, Y with
    affinity(A, X) >= floor and affinity(B, Y) >= floor:
        contribution = w * affinity(A, X) * affinity(B, Y)
    weight(X, Y) = round(sum(contribution))
    confidence(X, Y) = sum(c * contribution) / sum(contribution)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import math

from ..contracts.entities import (
    CanonicalRelation, DomainAffinity, RelationType, RollupLevel
)

DEFAULT_MEMBERSHIP_FLOOR = 0.2

DATABASE_RELATION_TYPES = (RelationType.READ, RelationType.WRITE)
BROKER_RELATION_TYPES = (RelationType.PRODUCE, RelationType.CONSUME)


def round_half_up(value: float) -> int:
    """round() with halves away from zero for the non-negative sums used here."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class AggregatedEdge:
    """An aggregate before it is tagged with a generation."""
    level: RollupLevel
    relation_type: RelationType
    subject_id: str
    target_id: str
    edge_weight: int
    confidence: Optional[float]


@dataclass
class _Accumulator:
    edge_weight: int = 0
    confidences: List[float] = field(default_factory=list)

    def add(self, confidence: Optional[float]):
        self.edge_weight += 1
        if confidence is not None:
            self.confidences.append(confidence)

    @property
    def confidence(self) -> Optional[float]:
        if not self.confidences:
            return None
        return sum(self.confidences) / len(self.confidences)


def _emit(
    level: RollupLevel,
    relation_type: RelationType,
    accumulators: Mapping[Tuple[str, str], _Accumulator],
) -> List[AggregatedEdge]:
    return [
        AggregatedEdge(
            level=level,
            relation_type=relation_type,
            subject_id=subject_id,
            target_id=target_id,
            edge_weight=acc.edge_weight,
            confidence=acc.confidence,
        )
        for (subject_id, target_id), acc in sorted(accumulators.items())
    ]


def aggregate_service_to_service(
    calls: Iterable[CanonicalRelation],
    exposes: Iterable[CanonicalRelation],
) -> List[AggregatedEdge]:
    """
    Join call relations with expose relations on the shared endpoint.

    Only the call side contributes confidence. An endpoint exposed by more
    than one service is attributed to the smallest exposing service id.
    """
    exposer_of: Dict[str, str] = {}
    for expose in exposes:
        if expose.is_derived:
            continue
        current = exposer_of.get(expose.target_id)
        if current is None or expose.subject_id < current:
            exposer_of[expose.target_id] = expose.subject_id

    accumulators: Dict[Tuple[str, str], _Accumulator] = {}
    for call in calls:
        if call.is_derived:
            continue
        exposer = exposer_of.get(call.target_id)
        if exposer is None or exposer == call.subject_id:
            continue
        accumulators.setdefault((call.subject_id, exposer), _Accumulator()).add(call.confidence)

    return _emit(RollupLevel.SERVICE_TO_SERVICE, RelationType.CALL, accumulators)


def aggregate_by_parent(
    relations: Iterable[CanonicalRelation],
    parent_of: Mapping[str, Optional[str]],
    level: RollupLevel,
    relation_types: Sequence[RelationType],
) -> List[AggregatedEdge]:
    """Lift relations onto the parent container of their target."""
    per_type: Dict[RelationType, Dict[Tuple[str, str], _Accumulator]] = {t: {} for t in relation_types}
    for relation in relations:
        if relation.is_derived or relation.relation_type not in per_type:
            continue
        parent_id = parent_of.get(relation.target_id)
        if not parent_id:
            continue
        per_type[relation.relation_type].setdefault(
            (relation.subject_id, parent_id), _Accumulator()
        ).add(relation.confidence)

    edges: List[AggregatedEdge] = []
    for relation_type in relation_types:
        edges.extend(_emit(level, relation_type, per_type[relation_type]))
    return edges


def aggregate_domain_to_domain(
    service_edges: Iterable[AggregatedEdge],
    affinities: Iterable[DomainAffinity],
    membership_floor: float = DEFAULT_MEMBERSHIP_FLOOR,
) -> List[AggregatedEdge]:
    """Affinity-weighted, confidence-weighted sum of service edges per domain pair."""
    affinity_of: Dict[str, Dict[str, float]] = {}
    for affinity in affinities:
        affinity_of.setdefault(affinity.object_id, {})[affinity.domain_id] = affinity.affinity

    # (domain_x, domain_y) -> [sum(contribution), sum(c * contribution)]
    sums: Dict[Tuple[str, str], List[float]] = {}
    for edge in service_edges:
        a_domains = affinity_of.get(edge.subject_id)
        b_domains = affinity_of.get(edge.target_id)
        if not a_domains or not b_domains:
            continue
        confidence = edge.confidence if edge.confidence is not None else 0.0
        for domain_x, ax in sorted(a_domains.items()):
            if ax < membership_floor:
                continue
            for domain_y, by in sorted(b_domains.items()):
                if by < membership_floor:
                    continue
                contribution = edge.edge_weight * ax * by
                totals = sums.setdefault((domain_x, domain_y), [0.0, 0.0])
                totals[0] += contribution
                totals[1] += confidence * contribution

    return [
        AggregatedEdge(
            level=RollupLevel.DOMAIN_TO_DOMAIN,
            relation_type=RelationType.CALL,
            subject_id=domain_x,
            target_id=domain_y,
            edge_weight=round_half_up(weighted),
            confidence=(weighted_conf / weighted) if weighted > 0 else None,
        )
        for (domain_x, domain_y), (weighted, weighted_conf) in sorted(sums.items())
    ]


def compute_degree_stats(edges: Iterable[AggregatedEdge]) -> Dict[str, Tuple[int, int]]:
    """node id -> (in_degree, out_degree) over one level's edge set."""
    in_degree: Dict[str, int] = {}
    out_degree: Dict[str, int] = {}
    for edge in edges:
        out_degree[edge.subject_id] = out_degree.get(edge.subject_id, 0) + 1
        in_degree[edge.target_id] = in_degree.get(edge.target_id, 0) + 1
    nodes = sorted(set(in_degree) | set(out_degree))
    return {node: (in_degree.get(node, 0), out_degree.get(node, 0)) for node in nodes}
