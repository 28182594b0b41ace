"""
API Mapper
==========

Transforms internal records into JSON DTOs with camelCase keys.
"""
from typing import Any, Dict, Optional

from ..contracts.base import ArchGraphError, Timestamp
from ..contracts.entities import ApplyOutcome, ChangeRequest, Generation, RollupEdge


def _iso(ts: Optional[Timestamp]) -> Optional[str]:
    return ts.to_iso() if ts is not None else None


def map_change_request(request: ChangeRequest) -> Dict[str, Any]:
    return {
        "id": request.request_id,
        "workspaceId": request.workspace_id,
        "requestType": request.request_type.value,
        "payload": request.payload,
        "status": request.status.value,
        "requestedBy": request.requested_by,
        "reviewedBy": request.reviewed_by,
        "reviewedAt": _iso(request.reviewed_at),
        "createdAt": _iso(request.created_at),
    }


def map_apply_outcome(outcome: ApplyOutcome) -> Dict[str, Any]:
    return {
        "request": map_change_request(outcome.request),
        "affectsRollups": outcome.affects_rollups,
        "rollupVersion": outcome.rollup_version,
        "rebuildError": outcome.rebuild_error,
    }


def map_generation(generation: Generation) -> Dict[str, Any]:
    return {
        "version": generation.version,
        "status": generation.status.value,
        "builtAt": _iso(generation.built_at),
        "createdAt": _iso(generation.created_at),
    }


def map_rollup_edge(edge: RollupEdge) -> Dict[str, Any]:
    return {
        "id": edge.rollup_id,
        "level": edge.level.value,
        "relationType": edge.relation_type.value,
        "subjectId": edge.subject_id,
        "objectId": edge.target_id,
        "edgeWeight": edge.edge_weight,
        "confidence": edge.confidence,
        "generationVersion": edge.generation_version,
    }


def map_error(exc: ArchGraphError) -> Dict[str, Any]:
    """Error body: reason code, message and context pairs."""
    return {
        "code": exc.reason,
        "message": exc.error.message,
        "context": dict(exc.error.context),
    }
