"""
Approval Gate

Applies a PENDING change request to the canonical relation set inside one
transaction and records who reviewed it and when.

INVARIANTS:
- A request is applied at most once (PENDING -> APPROVED | REJECTED).
- The stored payload is re-validated at apply time.
- Validation and resolution failures roll back every write of the apply.
- Bulk apply isolates each id in its own transaction.
"""

from __future__ import annotations
from typing import Any, Iterable, List, Optional, Tuple
import logging

from ..contracts.base import (
    ArchGraphError, ErrorCode, PayloadValidationError, ResolutionError,
    StateError, Timestamp, normalize_workspace_id
)
from ..contracts.entities import (
    ApplyOutcome, BulkApplyResult, BulkFailure, ChangeRequest,
    ChangeRequestStatus, ChangeRequestType
)
from ..contracts.events import AuditEventType, AuditLogEntry
from ..contracts.payloads import (
    ChangePayload, ObjectPatchPayload,
    ensure_canonical_source, parse_payload
)
from ..storage import RelationStore
from ..observability import DEFAULT_AUDIT_LIMIT, AuditTrail
from .requests import parse_status

logger = logging.getLogger(__name__)


def split_evidence(evidence: Optional[str]) -> Tuple[str, ...]:
    """Evidence is persisted as a list of pointers, one per line."""
    if not evidence:
        return ()
    return tuple(line.strip() for line in evidence.split("\n") if line.strip())


class ApprovalGate:
    """
    Validates and applies change requests.

    The gate does not rebuild roll-ups; ApplyOutcome.affects_rollups tells
    the caller whether a rebuild is needed.
    """

    def __init__(self, store: RelationStore, audit_limit: int = DEFAULT_AUDIT_LIMIT):
        self._store = store
        self._audit_log = AuditTrail(audit_limit)

    def apply(
        self,
        workspace_id: str,
        request_id: int,
        next_status: Any,
        reviewed_by: Optional[str] = None,
    ) -> ApplyOutcome:
        """
        Move a PENDING request to APPROVED or REJECTED.

        Raises StateError (NOT_FOUND, ALREADY_PROCESSED),
        PayloadValidationError or ResolutionError. Nothing is written when
        any of them is raised.
        """
        workspace_id = normalize_workspace_id(workspace_id)
        try:
            status = parse_status(next_status)
            if status is ChangeRequestStatus.PENDING:
                raise PayloadValidationError(
                    ErrorCode.STATUS_INVALID, "next status must be APPROVED or REJECTED"
                )
            with self._store.transaction():
                request = self._load_pending(workspace_id, request_id)
                affects_rollups = False
                if status is ChangeRequestStatus.APPROVED:
                    affects_rollups = self._apply_payload(workspace_id, request)
                reviewed_at = Timestamp.now()
                if not self._store.mark_change_request(
                    workspace_id, request_id, status, reviewed_by, reviewed_at
                ):
                    raise StateError(ErrorCode.ALREADY_PROCESSED, f"change request {request_id} is not pending")
                updated = self._store.get_change_request(workspace_id, request_id)
        except ArchGraphError as exc:
            logger.warning(
                "Change request %s not applied in workspace %s: %s (%s)",
                request_id, workspace_id, exc.reason, exc.error.message,
            )
            self._log_audit(
                AuditEventType.ERROR, "apply_failed", workspace_id, request_id, reviewed_by,
                (("reason", exc.reason), ("next_status", str(next_status))),
            )
            raise

        logger.info(
            "Change request %s %s by %s (affects_rollups=%s)",
            request_id, status.value, reviewed_by or "unknown", affects_rollups,
        )
        self._log_audit(
            AuditEventType.APPROVAL, "apply", workspace_id, request_id, reviewed_by,
            (
                ("status", status.value),
                ("request_type", updated.request_type.value),
                ("affects_rollups", str(affects_rollups)),
            ),
        )
        return ApplyOutcome(request=updated, affects_rollups=affects_rollups)

    def apply_bulk(
        self,
        workspace_id: str,
        request_ids: Iterable[int],
        next_status: Any,
        reviewed_by: Optional[str] = None,
    ) -> BulkApplyResult:
        """Apply each id independently; a failing id never blocks the rest."""
        processed = 0
        succeeded = 0
        affects_rollups = False
        failures: List[BulkFailure] = []

        for request_id in request_ids:
            processed += 1
            try:
                outcome = self.apply(workspace_id, request_id, next_status, reviewed_by)
            except ArchGraphError as exc:
                failures.append(BulkFailure(request_id=request_id, reason=str(exc)))
                continue
            except Exception as exc:
                logger.exception("Unexpected failure applying change request %s", request_id)
                failures.append(BulkFailure(request_id=request_id, reason=str(exc) or type(exc).__name__))
                continue
            succeeded += 1
            affects_rollups = affects_rollups or outcome.affects_rollups

        logger.info(
            "Bulk apply in workspace %s: processed=%d succeeded=%d failed=%d",
            normalize_workspace_id(workspace_id), processed, succeeded, len(failures),
        )
        return BulkApplyResult(
            processed=processed,
            succeeded=succeeded,
            failed=tuple(failures),
            affects_rollups=affects_rollups,
        )

    # -------------------------------------------------------------------------
    # Internals (run inside the apply transaction)
    # -------------------------------------------------------------------------

    def _load_pending(self, workspace_id: str, request_id: int) -> ChangeRequest:
        request = self._store.get_change_request(workspace_id, request_id)
        if request is None:
            raise StateError(ErrorCode.NOT_FOUND, f"change request {request_id} not found")
        if request.status is not ChangeRequestStatus.PENDING:
            raise StateError(
                ErrorCode.ALREADY_PROCESSED,
                f"change request {request_id} is already {request.status.value}",
            )
        return request

    def _apply_payload(self, workspace_id: str, request: ChangeRequest) -> bool:
        payload = parse_payload(request.request_type, request.payload)
        ensure_canonical_source(payload)
        if isinstance(payload, ObjectPatchPayload):
            return self._apply_object_patch(workspace_id, payload)
        return self._apply_relation(workspace_id, payload)

    def _resolve(self, workspace_id: str, urn: str, role: str) -> str:
        object_id = self._store.resolve_reference(workspace_id, urn)
        if object_id is None:
            raise ResolutionError(ErrorCode.OBJECT_NOT_FOUND, f"{role} {urn!r} does not resolve", urn=urn)
        return object_id

    def _apply_relation(self, workspace_id: str, payload: ChangePayload) -> bool:
        subject_id = self._resolve(workspace_id, payload.from_id, "fromId")
        target_id = self._resolve(workspace_id, payload.to_id, "toId")

        if payload.request_type is ChangeRequestType.RELATION_DELETE:
            removed = self._store.delete_relation(workspace_id, subject_id, target_id, payload.relation_type)
            if not removed:
                logger.debug(
                    "No %s relation %s -> %s to delete", payload.relation_type.value, subject_id, target_id
                )
            return True

        self._store.upsert_relation(
            workspace_id,
            subject_id,
            target_id,
            payload.relation_type,
            payload.source,
            confidence=payload.confidence,
            evidence=split_evidence(payload.evidence),
            score_version=payload.score_version,
            review_tag=payload.review_tag,
            tags=payload.tags,
        )
        return True

    def _apply_object_patch(self, workspace_id: str, payload: ObjectPatchPayload) -> bool:
        object_id = self._resolve(workspace_id, payload.object_id, "objectId")
        current = self._store.get_object(workspace_id, object_id)

        parent_id = None
        if payload.changes_parent and payload.parent_id is not None:
            parent_id = self._resolve(workspace_id, payload.parent_id, "parentId")

        self._store.update_object(
            workspace_id,
            object_id,
            display_name=payload.display_name,
            visibility=payload.visibility,
            metadata=payload.metadata,
            parent_id=parent_id,
            change_parent=payload.changes_parent,
        )
        return payload.changes_parent and current.parent_id != parent_id

    def _log_audit(
        self,
        event_type: AuditEventType,
        action: str,
        workspace_id: str,
        request_id: Any,
        actor: Optional[str],
        metadata: tuple = (),
    ):
        """Add entry to internal audit log."""
        self._audit_log.append(AuditLogEntry.create(
            layer="gate",
            event_type=event_type,
            action=action,
            workspace_id=workspace_id,
            entity_id=str(request_id),
            actor=actor,
            metadata=metadata,
        ))

    def get_audit_log(self) -> List[AuditLogEntry]:
        """Return copy of the retained audit log entries."""
        return self._audit_log.entries()

    @property
    def audit_trail(self) -> AuditTrail:
        return self._audit_log
