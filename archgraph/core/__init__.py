"""
Graph Core

RESPONSIBILITY: Materialize roll-up generations as cached in-memory graphs
ALLOWED INPUTS: (workspace, generation, level) keys
OUTPUTS: Frozen networkx.MultiDiGraph snapshots

WHAT THIS LAYER MUST NOT DO:
============================
- Decide which generation a query reads
- Invalidate on behalf of a query
- Mutate a cached graph
"""

from .graph_index import CacheKey, EdgeKey, GraphIndex, GraphIndexConfig

__all__ = [
    "CacheKey",
    "EdgeKey",
    "GraphIndex",
    "GraphIndexConfig",
]
