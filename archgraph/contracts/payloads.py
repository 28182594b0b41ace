"""
Change Request Payload Contract
===============================

Change request payloads arrive as untyped JSON. This module is the ONLY
place that turns them into typed values:

    RelationUpsertPayload | RelationDeletePayload | ObjectPatchPayload

INVARIANT: parse_payload() runs identically at creation and at approval.
A payload validated once is never trusted again - the stored row may have
been altered between creation and review.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple, Union
import math

from .base import ErrorCode, PayloadValidationError
from .entities import (
    ChangeRequestType, RelationSource, RelationType, Visibility
)


LOW_CONFIDENCE_THRESHOLD = 0.65
DEFAULT_SCORE_VERSION = "v1.0"

REVIEW_TAG_LOW_CONFIDENCE = "LOW_CONFIDENCE"
REVIEW_TAG_NORMAL = "NORMAL"
REVIEW_TAGS = (REVIEW_TAG_LOW_CONFIDENCE, REVIEW_TAG_NORMAL)

# Legacy edge labels from older producers, mapped onto the fixed set.
RELATION_TYPE_SYNONYMS: Dict[str, RelationType] = {
    "http": RelationType.CALL,
    "https": RelationType.CALL,
    "rest": RelationType.CALL,
    "grpc": RelationType.CALL,
    "rpc": RelationType.CALL,
    "calls": RelationType.CALL,
    "sql": RelationType.READ,
    "db": RelationType.READ,
    "jdbc": RelationType.READ,
    "query": RelationType.READ,
    "reads": RelationType.READ,
    "writes": RelationType.WRITE,
    "kafka": RelationType.PRODUCE,
    "amqp": RelationType.PRODUCE,
    "rabbitmq": RelationType.PRODUCE,
    "queue": RelationType.PRODUCE,
    "event": RelationType.PRODUCE,
    "publish": RelationType.PRODUCE,
    "produces": RelationType.PRODUCE,
    "subscribe": RelationType.CONSUME,
    "listen": RelationType.CONSUME,
    "consumes": RelationType.CONSUME,
    "exposes": RelationType.EXPOSE,
    "depends_on": RelationType.DEPEND_ON,
    "dependency": RelationType.DEPEND_ON,
    "uses": RelationType.DEPEND_ON,
    "unknown": RelationType.DEPEND_ON,
}


def normalize_relation_type(value: Any) -> RelationType:
    """
    Map any type label onto the fixed relation set.

    Exact names win, then the synonym table; anything else is depend_on.
    """
    if isinstance(value, RelationType):
        return value
    if not isinstance(value, str):
        return RelationType.DEPEND_ON
    label = value.strip().lower().replace("-", "_")
    for relation_type in RelationType:
        if relation_type.value == label:
            return relation_type
    return RELATION_TYPE_SYNONYMS.get(label, RelationType.DEPEND_ON)


# =============================================================================
# TYPED PAYLOADS
# =============================================================================

@dataclass(frozen=True)
class RelationUpsertPayload:
    from_id: str
    to_id: str
    relation_type: RelationType
    source: RelationSource
    confidence: Optional[float] = None
    evidence: Optional[str] = None
    score_version: Optional[str] = None
    review_tag: str = REVIEW_TAG_NORMAL
    tags: Tuple[str, ...] = field(default_factory=tuple)

    request_type = ChangeRequestType.RELATION_UPSERT

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "fromId": self.from_id,
            "toId": self.to_id,
            "type": self.relation_type.value,
            "source": self.source.value,
            "reviewTag": self.review_tag,
        }
        if self.confidence is not None:
            data["confidence"] = self.confidence
        if self.evidence is not None:
            data["evidence"] = self.evidence
        if self.score_version is not None:
            data["scoreVersion"] = self.score_version
        if self.tags:
            data["tags"] = list(self.tags)
        return data


@dataclass(frozen=True)
class RelationDeletePayload(RelationUpsertPayload):
    """Same contract as an upsert; only the effect on approval differs."""

    request_type = ChangeRequestType.RELATION_DELETE


_UNSET = object()


@dataclass(frozen=True)
class ObjectPatchPayload:
    """
    Patch of one registry object.

    parent_id is _UNSET when the patch leaves ownership alone and None
    when it detaches the object from its parent.
    """
    object_id: str
    display_name: Optional[str] = None
    parent_id: Any = _UNSET
    visibility: Optional[Visibility] = None
    metadata: Optional[Dict[str, Any]] = None

    request_type = ChangeRequestType.OBJECT_PATCH

    @property
    def changes_parent(self) -> bool:
        return self.parent_id is not _UNSET

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"objectId": self.object_id}
        if self.display_name is not None:
            data["displayName"] = self.display_name
        if self.changes_parent:
            data["parentId"] = self.parent_id
        if self.visibility is not None:
            data["visibility"] = self.visibility.value
        if self.metadata is not None:
            data["metadata"] = dict(self.metadata)
        return data


ChangePayload = Union[RelationUpsertPayload, RelationDeletePayload, ObjectPatchPayload]


# =============================================================================
# VALIDATION
# =============================================================================

def _fail(code: ErrorCode, message: str) -> PayloadValidationError:
    return PayloadValidationError(code, message)


def _required_string(raw: Mapping[str, Any], key: str, code: ErrorCode) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise _fail(code, f"{key} must be a non-empty string")
    return value.strip()


def _parse_source(raw: Mapping[str, Any], default_source: RelationSource) -> RelationSource:
    value = raw.get("source")
    if value is None or (isinstance(value, str) and not value.strip()):
        return default_source
    if isinstance(value, RelationSource):
        return value
    if isinstance(value, str):
        label = value.strip().lower()
        for source in RelationSource:
            if source.value == label:
                return source
    raise _fail(ErrorCode.SOURCE_INVALID, f"source must be one of manual|scan|inference|rollup, got {value!r}")


def _parse_confidence(raw: Mapping[str, Any]) -> Optional[float]:
    if "confidence" not in raw or raw["confidence"] is None:
        return None
    value = raw["confidence"]
    # bool is an int subclass; true/false is not a confidence
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _fail(ErrorCode.CONFIDENCE_INVALID, "confidence must be a number")
    value = float(value)
    if not math.isfinite(value) or not 0.0 <= value <= 1.0:
        raise _fail(ErrorCode.CONFIDENCE_INVALID, "confidence must be a finite number in [0, 1]")
    return value


def _parse_evidence(raw: Mapping[str, Any]) -> Optional[str]:
    value = raw.get("evidence")
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (list, tuple)):
        parts = [str(v).strip() for v in value if str(v).strip()]
        return "\n".join(parts) or None
    return None


def _parse_tags(raw: Mapping[str, Any]) -> Tuple[str, ...]:
    value = raw.get("tags")
    if not isinstance(value, (list, tuple)):
        return ()
    seen = []
    for tag in value:
        if isinstance(tag, str) and tag.strip() and tag.strip() not in seen:
            seen.append(tag.strip())
    return tuple(seen)


def _parse_review_tag(raw: Mapping[str, Any], confidence: Optional[float]) -> str:
    value = raw.get("reviewTag")
    if isinstance(value, str):
        label = value.strip().upper()
        return label if label in REVIEW_TAGS else REVIEW_TAG_NORMAL
    if confidence is not None and confidence < LOW_CONFIDENCE_THRESHOLD:
        return REVIEW_TAG_LOW_CONFIDENCE
    return REVIEW_TAG_NORMAL


def _parse_relation(
    request_type: ChangeRequestType,
    raw: Mapping[str, Any],
    default_source: RelationSource,
) -> RelationUpsertPayload:
    from_id = _required_string(raw, "fromId", ErrorCode.FROM_REQUIRED)
    to_id = _required_string(raw, "toId", ErrorCode.TO_REQUIRED)
    relation_type = normalize_relation_type(raw.get("type"))
    source = _parse_source(raw, default_source)
    confidence = _parse_confidence(raw)
    evidence = _parse_evidence(raw)

    if source.is_automated:
        if confidence is None:
            raise _fail(ErrorCode.CONFIDENCE_REQUIRED, f"confidence is required for source={source.value}")
        if evidence is None:
            raise _fail(ErrorCode.EVIDENCE_REQUIRED, f"evidence is required for source={source.value}")

    score_version = raw.get("scoreVersion")
    cls = RelationDeletePayload if request_type is ChangeRequestType.RELATION_DELETE else RelationUpsertPayload
    return cls(
        from_id=from_id,
        to_id=to_id,
        relation_type=relation_type,
        source=source,
        confidence=confidence,
        evidence=evidence,
        score_version=score_version.strip() if isinstance(score_version, str) and score_version.strip() else None,
        review_tag=_parse_review_tag(raw, confidence),
        tags=_parse_tags(raw),
    )


def _parse_object_patch(raw: Mapping[str, Any]) -> ObjectPatchPayload:
    object_id = _required_string(raw, "objectId", ErrorCode.OBJECT_REQUIRED)

    display_name = raw.get("displayName")
    if display_name is not None and not isinstance(display_name, str):
        raise _fail(ErrorCode.PAYLOAD_INVALID, "displayName must be a string")

    parent_id: Any = _UNSET
    if "parentId" in raw:
        parent_id = raw["parentId"]
        if parent_id is not None and (not isinstance(parent_id, str) or not parent_id.strip()):
            raise _fail(ErrorCode.PAYLOAD_INVALID, "parentId must be a URN or null")
        parent_id = parent_id.strip() if parent_id else None

    visibility = None
    if raw.get("visibility") is not None:
        try:
            visibility = Visibility(str(raw["visibility"]).strip().upper())
        except ValueError:
            raise _fail(ErrorCode.VISIBILITY_INVALID, "visibility must be VISIBLE or HIDDEN")

    metadata = raw.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise _fail(ErrorCode.PAYLOAD_INVALID, "metadata must be an object")

    patch = ObjectPatchPayload(
        object_id=object_id,
        display_name=display_name,
        parent_id=parent_id,
        visibility=visibility,
        metadata=metadata,
    )
    if display_name is None and not patch.changes_parent and visibility is None and metadata is None:
        raise _fail(ErrorCode.PATCH_EMPTY, "object patch changes nothing")
    return patch


def parse_request_type(value: Any) -> ChangeRequestType:
    if isinstance(value, ChangeRequestType):
        return value
    try:
        return ChangeRequestType(str(value).strip().upper())
    except ValueError:
        raise _fail(ErrorCode.REQUEST_TYPE_INVALID, f"unknown request type {value!r}")


def parse_payload(
    request_type: Any,
    raw: Any,
    default_source: RelationSource = RelationSource.MANUAL,
) -> ChangePayload:
    """
    Validate an untyped payload into its tagged variant.

    Raises PayloadValidationError with the first failing reason.
    """
    kind = parse_request_type(request_type)
    if not isinstance(raw, Mapping):
        raise _fail(ErrorCode.PAYLOAD_INVALID, "payload must be a JSON object")
    if kind is ChangeRequestType.OBJECT_PATCH:
        return _parse_object_patch(raw)
    return _parse_relation(kind, raw, default_source)


def ensure_canonical_source(payload: ChangePayload) -> None:
    """Roll-up provenance may never be asserted for a canonical relation."""
    if isinstance(payload, RelationUpsertPayload) and payload.source is RelationSource.ROLLUP:
        raise _fail(ErrorCode.SOURCE_INVALID, "source=rollup is reserved for roll-up edges")


def build_dependency_upsert_payload(
    from_id: str,
    to_id: str,
    relation_type: Optional[str] = None,
    source: Optional[str] = None,
    confidence: Optional[float] = None,
    evidence: Optional[str] = None,
    score_version: Optional[str] = None,
    review_tag: Optional[str] = None,
    tags: Optional[Tuple[str, ...]] = None,
    default_source: RelationSource = RelationSource.MANUAL,
) -> Dict[str, Any]:
    """
    Build a normalized RELATION_UPSERT payload for producers.

    Runs the same validation as the gate, so producers fail fast. Scored
    (scan/inference) candidates without a scoreVersion get DEFAULT_SCORE_VERSION.
    """
    raw: Dict[str, Any] = {"fromId": from_id, "toId": to_id, "type": relation_type}
    if source is not None:
        raw["source"] = source
    if confidence is not None:
        raw["confidence"] = confidence
    if evidence is not None:
        raw["evidence"] = evidence
    if score_version is not None:
        raw["scoreVersion"] = score_version
    if review_tag is not None:
        raw["reviewTag"] = review_tag
    if tags:
        raw["tags"] = list(tags)
    payload = parse_payload(ChangeRequestType.RELATION_UPSERT, raw, default_source)
    if payload.source.is_automated and payload.score_version is None:
        payload = replace(payload, score_version=DEFAULT_SCORE_VERSION)
    return payload.to_json()
