"""
Change Request Gate

RESPONSIBILITY: Queue proposed mutations and apply them, once, after review
ALLOWED INPUTS: Untyped change request payloads, review decisions
OUTPUTS: ChangeRequest, ApplyOutcome, BulkApplyResult

WHAT THIS LAYER MUST NOT DO:
============================
- Trust a payload validated at creation time
- Create objects for unresolvable URNs
- Rebuild roll-ups (it reports affects_rollups instead)
"""

from .requests import ChangeRequestStore, GateConfig, parse_status
from .approval import ApprovalGate, split_evidence

__all__ = [
    "ApprovalGate",
    "ChangeRequestStore",
    "GateConfig",
    "parse_status",
    "split_evidence",
]
