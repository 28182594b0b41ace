"""
Roll-up Layer

RESPONSIBILITY: Derive multi-level aggregate edges under versioned generations
ALLOWED INPUTS: Canonical relations, object ownership, domain affinities
OUTPUTS: Generation versions, RollupEdge and GraphStat rows

WHAT THIS LAYER MUST NOT DO:
============================
- Mutate canonical relations
- Activate a partially written generation
- Touch the previously ACTIVE generation when a build fails
"""

from .aggregation import (
    AggregatedEdge, aggregate_by_parent, aggregate_domain_to_domain,
    aggregate_service_to_service, compute_degree_stats, round_half_up
)
from .generations import GenerationManager
from .builder import BuildReport, RollupBuilder, RollupConfig

__all__ = [
    "AggregatedEdge",
    "BuildReport",
    "GenerationManager",
    "RollupBuilder",
    "RollupConfig",
    "aggregate_by_parent",
    "aggregate_domain_to_domain",
    "aggregate_service_to_service",
    "compute_degree_stats",
    "round_half_up",
]
