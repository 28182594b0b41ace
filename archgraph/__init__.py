"""
ArchGraph: Architecture Dependency Graph Backend

Stores atomic dependency relations between architectural objects, admits
every mutation through a change-request approval gate, derives multi-level
roll-up graphs under versioned generations, and answers structural queries
against a pinned generation.

LAYER STRUCTURE:
================

1. CONTRACTS (contracts/)
   - Immutable entities, payload contract, query and audit records
   - ErrorCode enum and the ArchGraphError hierarchy

2. STORAGE (storage/)
   - Responsibility: Workspace-scoped SQLite persistence, object registry
   - MUST NOT: Validate payloads, decide approval outcomes

3. APPROVAL GATE (gate/)
   - Responsibility: Queue, validate and apply change requests
   - Outputs: ApplyOutcome, BulkApplyResult
   - MUST NOT: Rebuild roll-ups, auto-create objects

4. ROLL-UP (rollup/)
   - Responsibility: Generation lifecycle, aggregation of canonical relations
   - Outputs: Roll-up edges and degree stats under an ACTIVE generation
   - MUST NOT: Expose a generation before it is fully written

5. GRAPH CORE (core/)
   - Responsibility: Cached in-memory graphs per (workspace, generation, level)
   - MUST NOT: Choose the generation a query reads

6. QUERY & ANALYSIS INTERFACES (query/)
   - Responsibility: Path, impact and usage queries over a pinned generation
   - Outputs: Deterministic QueryResult with explicit error states
   - MUST NOT: Mutate state

7. OBSERVABILITY & AUDIT (observability/)
   - Responsibility: Audit trail, metrics, logging setup
   - MUST NOT: Modify system behavior

The engine (engine.py) wires the layers together; api/ and cli.py are thin
surfaces over it.
"""

__version__ = "0.1.0"

from .engine import ArchGraphBackend, BackendConfig

__all__ = [
    "ArchGraphBackend",
    "BackendConfig",
]
