"""
ArchGraph API Server
====================

Thin HTTP surface over ArchGraphBackend.

Endpoints:
- GET  /health
- POST /api/v1/change-requests                 -> queue a change request
- GET  /api/v1/change-requests                 -> list requests by status
- POST /api/v1/change-requests/{id}/apply      -> approve / reject one request
- POST /api/v1/change-requests/bulk            -> approve / reject many
- POST /api/v1/rollups/rebuild                 -> rebuild roll-ups
- GET  /api/v1/rollups/generations             -> generation lifecycle
- GET  /api/v1/rollups/edges                   -> roll-up edges of a generation
- POST /api/v1/query                           -> path / impact / usage query

Usage:
    uvicorn archgraph.api.server:app
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..contracts.base import (
    ArchGraphError, BuildError, ErrorCode, PayloadValidationError, ResolutionError, StateError
)
from ..contracts.entities import RelationSource, RollupLevel
from ..contracts.events import ImpactDirection, QueryParams, QueryScope, QueryType
from ..contracts.payloads import normalize_relation_type
from ..engine import ArchGraphBackend, BackendConfig
from ..observability import configure_logging
from .mapper import (
    map_apply_outcome, map_change_request, map_error, map_generation, map_rollup_edge
)

logger = logging.getLogger(__name__)

# =============================================================================
# INFRASTRUCTURE SETUP
# =============================================================================

# Global Backend Instance
backend_instance: Optional[ArchGraphBackend] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize backend on startup."""
    global backend_instance

    config = BackendConfig.from_env()
    configure_logging(config.observability.log_level)
    logger.info("Initializing backend at %s", config.store.database_path)
    backend_instance = ArchGraphBackend(config)

    yield

    logger.info("Shutting down backend")
    backend_instance.close()
    backend_instance = None


app = FastAPI(
    title="ArchGraph API",
    version="0.1.0",
    description="Change-request gate, roll-up generations and structural queries",
    lifespan=lifespan
)


def get_backend() -> ArchGraphBackend:
    if backend_instance is None:
        raise HTTPException(status_code=503, detail="Backend not initialized")
    return backend_instance


_STATE_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.GENERATION_NOT_FOUND: 404,
    ErrorCode.ALREADY_PROCESSED: 409,
}

_QUERY_STATUS = {
    ErrorCode.QUERY_PARAMS_INVALID: 400,
    ErrorCode.QUERY_TYPE_UNSUPPORTED: 400,
    ErrorCode.GENERATION_NOT_FOUND: 404,
    ErrorCode.QUERY_FAILED: 500,
}


def status_for(exc: ArchGraphError) -> int:
    if isinstance(exc, PayloadValidationError):
        return 400
    if isinstance(exc, StateError):
        return _STATE_STATUS.get(exc.code, 409)
    if isinstance(exc, ResolutionError):
        return 422
    if isinstance(exc, BuildError):
        return 500
    return 400


@app.exception_handler(ArchGraphError)
async def archgraph_error_handler(request: Request, exc: ArchGraphError):
    return JSONResponse(status_code=status_for(exc), content={"error": map_error(exc)})


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ChangeRequestCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workspace_id: Optional[str] = Field(default=None, alias="workspaceId")
    request_type: str = Field(..., alias="requestType")
    payload: Dict[str, Any] = Field(default_factory=dict)
    requested_by: Optional[str] = Field(default=None, alias="requestedBy")
    default_source: Optional[str] = Field(default=None, alias="defaultSource")
    dedupe_pending: Optional[bool] = Field(default=None, alias="dedupePending")


class ApplyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workspace_id: Optional[str] = Field(default=None, alias="workspaceId")
    status: str
    reviewed_by: Optional[str] = Field(default=None, alias="reviewedBy")


class BulkApplyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workspace_id: Optional[str] = Field(default=None, alias="workspaceId")
    ids: Optional[List[int]] = None
    exclude_ids: List[int] = Field(default_factory=list, alias="excludeIds")
    status: str
    reviewed_by: Optional[str] = Field(default=None, alias="reviewedBy")


class RebuildRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workspace_id: Optional[str] = Field(default=None, alias="workspaceId")


class QueryParamsModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_id: Optional[str] = Field(default=None, alias="from")
    to_id: Optional[str] = Field(default=None, alias="to")
    target_id: Optional[str] = Field(default=None, alias="targetId")
    object_id: Optional[str] = Field(default=None, alias="objectId")
    direction: str = "DOWNSTREAM"
    max_hops: Optional[int] = Field(default=None, alias="maxHops")
    max_depth: Optional[int] = Field(default=None, alias="maxDepth")
    top_k: Optional[int] = Field(default=None, alias="topK")


class QueryScopeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    level: str = RollupLevel.SERVICE_TO_SERVICE.value
    relation_types: Optional[List[str]] = Field(default=None, alias="relationTypes")
    include_hidden: bool = Field(default=False, alias="includeHidden")


class QueryRequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workspace_id: Optional[str] = Field(default=None, alias="workspaceId")
    query_type: str = Field(..., alias="queryType")
    generation_version: Optional[int] = Field(default=None, alias="generationVersion")
    params: QueryParamsModel = Field(default_factory=QueryParamsModel)
    scope: QueryScopeModel = Field(default_factory=QueryScopeModel)


def _parse_source(value: Optional[str]) -> RelationSource:
    if value is None:
        return RelationSource.MANUAL
    try:
        return RelationSource(value.strip().lower())
    except ValueError:
        raise PayloadValidationError(ErrorCode.SOURCE_INVALID, f"unknown source {value!r}")


def _parse_query(body: QueryRequestModel):
    try:
        query_type = QueryType(body.query_type.strip().upper())
    except ValueError:
        raise PayloadValidationError(
            ErrorCode.QUERY_TYPE_UNSUPPORTED, f"unknown query type {body.query_type!r}"
        )
    try:
        direction = ImpactDirection(body.params.direction.strip().upper())
        level = RollupLevel(body.scope.level.strip().upper())
    except ValueError as exc:
        raise PayloadValidationError(ErrorCode.QUERY_PARAMS_INVALID, str(exc))

    params = QueryParams(
        from_id=body.params.from_id,
        to_id=body.params.to_id,
        target_id=body.params.target_id,
        object_id=body.params.object_id,
        direction=direction,
        max_hops=body.params.max_hops,
        max_depth=body.params.max_depth,
        top_k=body.params.top_k,
    )
    relation_types = None
    if body.scope.relation_types is not None:
        relation_types = tuple(normalize_relation_type(t) for t in body.scope.relation_types)
    scope = QueryScope(level=level, relation_types=relation_types, include_hidden=body.scope.include_hidden)
    return query_type, params, scope


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health")
async def health_check():
    """System status."""
    if not backend_instance:
        raise HTTPException(status_code=503, detail="Backend not initialized")
    return {"status": "online"}


@app.post("/api/v1/change-requests", status_code=201)
def create_change_request(body: ChangeRequestCreate):
    backend = get_backend()
    request = backend.create_change_request(
        body.workspace_id,
        body.request_type,
        body.payload,
        requested_by=body.requested_by,
        default_source=_parse_source(body.default_source),
        dedupe_pending=body.dedupe_pending,
    )
    return map_change_request(request)


@app.get("/api/v1/change-requests")
def list_change_requests(
    workspace_id: Optional[str] = Query(default=None, alias="workspaceId"),
    status: str = "PENDING",
    limit: Optional[int] = None,
):
    """List requests; status=ALL lists every status."""
    backend = get_backend()
    requests = backend.list_change_requests(
        workspace_id,
        status=None if status.upper() == "ALL" else status,
        limit=limit,
    )
    return {"items": [map_change_request(r) for r in requests]}


@app.post("/api/v1/change-requests/bulk")
def apply_bulk(body: BulkApplyRequest):
    backend = get_backend()
    result = backend.apply_bulk(
        body.workspace_id,
        body.ids,
        body.status,
        reviewed_by=body.reviewed_by,
        exclude_ids=body.exclude_ids,
    )
    return result.to_dict()


@app.post("/api/v1/change-requests/{request_id}/apply")
def apply_change_request(request_id: int, body: ApplyRequest):
    backend = get_backend()
    outcome = backend.apply_change_request(
        body.workspace_id, request_id, body.status, reviewed_by=body.reviewed_by
    )
    return map_apply_outcome(outcome)


@app.post("/api/v1/rollups/rebuild")
def rebuild_rollups(body: Optional[RebuildRequest] = None):
    backend = get_backend()
    report = backend.build(body.workspace_id if body else None)
    return {
        "workspaceId": report.workspace_id,
        "version": report.version,
        "edgeCounts": {level.value: count for level, count in report.edge_counts},
        "durationMs": report.duration_ms,
    }


@app.get("/api/v1/rollups/generations")
def list_generations(workspace_id: Optional[str] = Query(default=None, alias="workspaceId")):
    backend = get_backend()
    return {"items": [map_generation(g) for g in backend.list_generations(workspace_id)]}


@app.get("/api/v1/rollups/edges")
def list_rollup_edges(
    workspace_id: Optional[str] = Query(default=None, alias="workspaceId"),
    level: Optional[str] = None,
    version: Optional[int] = None,
):
    """Edges of one generation; the ACTIVE one when version is omitted."""
    backend = get_backend()
    rollup_level = None
    if level is not None:
        try:
            rollup_level = RollupLevel(level.strip().upper())
        except ValueError:
            raise PayloadValidationError(ErrorCode.QUERY_PARAMS_INVALID, f"unknown level {level!r}")
    edges = backend.get_rollup_edges(workspace_id, version, rollup_level)
    return {"items": [map_rollup_edge(e) for e in edges]}


@app.post("/api/v1/query")
def execute_query(body: QueryRequestModel):
    backend = get_backend()
    query_type, params, scope = _parse_query(body)
    result = backend.execute_query(
        query_type, body.workspace_id, params, scope, body.generation_version
    )
    if not result.success and result.error is not None:
        return JSONResponse(
            status_code=_QUERY_STATUS.get(result.error.error_code, 400),
            content=result.to_dict(),
        )
    return result.to_dict()
