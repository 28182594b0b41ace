"""
Change Request Store

Durable queue of proposed mutations. The only legal entry point for writes
that affect the canonical relation set.

Payloads are validated and stored in their normalized form. Producers that
resubmit the same findings on every run can ask for pending dedupe: a
pending upsert for the same (fromId, toId, type) is then returned instead
of queuing a duplicate. Interactive callers always get a new request.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional
import logging

from ..contracts.base import ErrorCode, PayloadValidationError, normalize_workspace_id
from ..contracts.entities import ChangeRequest, ChangeRequestStatus, ChangeRequestType, RelationSource
from ..contracts.payloads import (
    RelationUpsertPayload, ensure_canonical_source, parse_payload, parse_request_type
)
from ..storage import RelationStore

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 200


@dataclass
class GateConfig:
    """Configuration for the change request store and approval gate."""
    dedupe_pending: bool = False
    default_list_limit: int = DEFAULT_LIST_LIMIT


def parse_status(value: Any) -> ChangeRequestStatus:
    if isinstance(value, ChangeRequestStatus):
        return value
    try:
        return ChangeRequestStatus(str(value).strip().upper())
    except ValueError:
        raise PayloadValidationError(ErrorCode.STATUS_INVALID, f"unknown status {value!r}")


class ChangeRequestStore:
    """Create and list change requests."""

    def __init__(self, store: RelationStore, config: Optional[GateConfig] = None):
        self._store = store
        self._config = config or GateConfig()

    def create(
        self,
        workspace_id: str,
        request_type: Any,
        payload: Any,
        requested_by: Optional[str] = None,
        default_source: RelationSource = RelationSource.MANUAL,
        dedupe_pending: Optional[bool] = None,
    ) -> ChangeRequest:
        """
        Validate and queue a change request.

        dedupe_pending overrides GateConfig.dedupe_pending for this call.

        Raises PayloadValidationError before anything is written.
        """
        workspace_id = normalize_workspace_id(workspace_id)
        kind = parse_request_type(request_type)
        typed = parse_payload(kind, payload, default_source)
        ensure_canonical_source(typed)
        normalized = typed.to_json()

        with self._store.transaction():
            if dedupe_pending is None:
                dedupe_pending = self._config.dedupe_pending
            if dedupe_pending and isinstance(typed, RelationUpsertPayload):
                existing = self._find_pending_duplicate(workspace_id, kind, typed)
                if existing is not None:
                    logger.info(
                        "Change request %s already pending for %s -[%s]-> %s",
                        existing.request_id, typed.from_id, typed.relation_type.value, typed.to_id,
                    )
                    return existing
            request = self._store.insert_change_request(workspace_id, kind, normalized, requested_by)

        logger.info(
            "Queued change request %s (%s) in workspace %s",
            request.request_id, kind.value, workspace_id,
        )
        return request

    def _find_pending_duplicate(
        self,
        workspace_id: str,
        kind: ChangeRequestType,
        typed: RelationUpsertPayload,
    ) -> Optional[ChangeRequest]:
        pending = self._store.list_change_requests(
            workspace_id,
            status=ChangeRequestStatus.PENDING,
            limit=None,
            request_types=(kind,),
        )
        for request in pending:
            payload = request.payload
            if (
                payload.get("fromId") == typed.from_id
                and payload.get("toId") == typed.to_id
                and payload.get("type") == typed.relation_type.value
            ):
                return request
        return None

    def get(self, workspace_id: str, request_id: int) -> Optional[ChangeRequest]:
        return self._store.get_change_request(workspace_id, request_id)

    def list(
        self,
        workspace_id: str,
        status: Any = ChangeRequestStatus.PENDING,
        limit: Optional[int] = None,
    ) -> List[ChangeRequest]:
        """List requests ordered by creation. status=None lists every status."""
        parsed = parse_status(status) if status is not None else None
        return self._store.list_change_requests(
            workspace_id,
            status=parsed,
            limit=self._config.default_list_limit if limit is None else limit,
        )

    def list_pending_ids(self, workspace_id: str, exclude_ids: Iterable[int] = ()) -> List[int]:
        return self._store.list_pending_ids(workspace_id, exclude_ids)
