"""
Payload Contract Tests
======================

The dependency-upsert payload contract is the single validation point
for change requests. These tests pin the reason codes and the
normalization rules.
"""

import math

import pytest
from hypothesis import given, strategies as st

from archgraph.contracts.base import ErrorCode, PayloadValidationError
from archgraph.contracts.entities import ChangeRequestType, RelationSource, RelationType, Visibility
from archgraph.contracts.payloads import (
    DEFAULT_SCORE_VERSION, REVIEW_TAG_LOW_CONFIDENCE, REVIEW_TAG_NORMAL,
    ObjectPatchPayload, RelationDeletePayload, RelationUpsertPayload,
    build_dependency_upsert_payload, ensure_canonical_source,
    normalize_relation_type, parse_payload
)


def _code(raw, request_type="RELATION_UPSERT", default_source=RelationSource.MANUAL):
    with pytest.raises(PayloadValidationError) as excinfo:
        parse_payload(request_type, raw, default_source)
    return excinfo.value.code


class TestRelationPayload:

    def test_minimal_manual_payload(self):
        payload = parse_payload("RELATION_UPSERT", {"fromId": "urn:a", "toId": "urn:b", "type": "call"})

        assert isinstance(payload, RelationUpsertPayload)
        assert payload.relation_type is RelationType.CALL
        assert payload.source is RelationSource.MANUAL
        assert payload.confidence is None
        assert payload.review_tag == REVIEW_TAG_NORMAL

    def test_missing_endpoints(self):
        assert _code({"toId": "urn:b"}) is ErrorCode.FROM_REQUIRED
        assert _code({"fromId": "  ", "toId": "urn:b"}) is ErrorCode.FROM_REQUIRED
        assert _code({"fromId": "urn:a"}) is ErrorCode.TO_REQUIRED

    def test_unknown_source(self):
        assert _code({"fromId": "a", "toId": "b", "source": "guess"}) is ErrorCode.SOURCE_INVALID

    def test_inference_without_confidence_fails(self):
        raw = {"fromId": "a", "toId": "b", "source": "inference", "evidence": "src/app.py:10"}
        assert _code(raw) is ErrorCode.CONFIDENCE_REQUIRED

    def test_scan_without_evidence_fails(self):
        raw = {"fromId": "a", "toId": "b", "source": "scan", "confidence": 0.9}
        assert _code(raw) is ErrorCode.EVIDENCE_REQUIRED

    def test_default_source_from_caller_context(self):
        raw = {"fromId": "a", "toId": "b", "confidence": 0.7}
        assert _code(raw, default_source=RelationSource.INFERENCE) is ErrorCode.EVIDENCE_REQUIRED

        raw["evidence"] = "trace"
        payload = parse_payload("RELATION_UPSERT", raw, RelationSource.INFERENCE)
        assert payload.source is RelationSource.INFERENCE

    @pytest.mark.parametrize("value", [1.5, -0.1, float("nan"), float("inf"), "0.5", True])
    def test_invalid_confidence(self, value):
        assert _code({"fromId": "a", "toId": "b", "confidence": value}) is ErrorCode.CONFIDENCE_INVALID

    def test_review_tag_derived_from_confidence(self):
        low = parse_payload("RELATION_UPSERT", {"fromId": "a", "toId": "b", "confidence": 0.5})
        high = parse_payload("RELATION_UPSERT", {"fromId": "a", "toId": "b", "confidence": 0.65})
        odd = parse_payload("RELATION_UPSERT", {"fromId": "a", "toId": "b", "reviewTag": "urgent"})

        assert low.review_tag == REVIEW_TAG_LOW_CONFIDENCE
        assert high.review_tag == REVIEW_TAG_NORMAL
        assert odd.review_tag == REVIEW_TAG_NORMAL

    def test_tags_deduplicated_in_order(self):
        payload = parse_payload(
            "RELATION_UPSERT",
            {"fromId": "a", "toId": "b", "tags": [" prod ", "prod", "", "edge", 3]},
        )
        assert payload.tags == ("prod", "edge")

    def test_evidence_list_joined(self):
        payload = parse_payload(
            "RELATION_UPSERT",
            {"fromId": "a", "toId": "b", "evidence": ["src/a.py:1", " ", "src/b.py:2"]},
        )
        assert payload.evidence == "src/a.py:1\nsrc/b.py:2"

    def test_delete_payload_shares_contract(self):
        payload = parse_payload("RELATION_DELETE", {"fromId": "a", "toId": "b", "type": "read"})
        assert isinstance(payload, RelationDeletePayload)
        assert payload.request_type is ChangeRequestType.RELATION_DELETE
        assert _code({"toId": "b"}, "RELATION_DELETE") is ErrorCode.FROM_REQUIRED

    def test_rollup_source_rejected_for_canonical_relation(self):
        payload = parse_payload("RELATION_UPSERT", {"fromId": "a", "toId": "b", "source": "rollup"})
        with pytest.raises(PayloadValidationError) as excinfo:
            ensure_canonical_source(payload)
        assert excinfo.value.code is ErrorCode.SOURCE_INVALID

    def test_non_object_payload(self):
        assert _code(["a", "b"]) is ErrorCode.PAYLOAD_INVALID
        assert _code({"fromId": "a"}, "MERGE") is ErrorCode.REQUEST_TYPE_INVALID

    def test_to_json_is_stable(self):
        raw = {"fromId": "a", "toId": "b", "type": "http", "confidence": 0.9, "tags": ["x"]}
        once = parse_payload("RELATION_UPSERT", raw).to_json()
        twice = parse_payload("RELATION_UPSERT", once).to_json()

        assert once == twice
        assert once["type"] == "call"


class TestRelationTypeNormalization:

    @pytest.mark.parametrize("label,expected", [
        ("call", RelationType.CALL),
        ("HTTP", RelationType.CALL),
        ("grpc", RelationType.CALL),
        ("sql", RelationType.READ),
        ("kafka", RelationType.PRODUCE),
        ("subscribe", RelationType.CONSUME),
        ("depends-on", RelationType.DEPEND_ON),
        ("write", RelationType.WRITE),
        ("expose", RelationType.EXPOSE),
    ])
    def test_known_labels(self, label, expected):
        assert normalize_relation_type(label) is expected

    @given(st.text())
    def test_any_label_maps_into_fixed_set(self, label):
        assert normalize_relation_type(label) in set(RelationType)

    @given(st.one_of(st.none(), st.integers(), st.floats(allow_nan=False)))
    def test_non_string_defaults_to_depend_on(self, value):
        assert normalize_relation_type(value) is RelationType.DEPEND_ON


class TestConfidenceProperty:

    @given(st.floats(min_value=0.0, max_value=1.0))
    def test_unit_interval_accepted(self, confidence):
        payload = parse_payload("RELATION_UPSERT", {"fromId": "a", "toId": "b", "confidence": confidence})
        assert payload.confidence == confidence

    @given(st.floats().filter(lambda v: not (math.isfinite(v) and 0.0 <= v <= 1.0)))
    def test_outside_unit_interval_rejected(self, confidence):
        assert _code({"fromId": "a", "toId": "b", "confidence": confidence}) is ErrorCode.CONFIDENCE_INVALID


class TestObjectPatchPayload:

    def test_parent_detach_is_explicit(self):
        patch = parse_payload("OBJECT_PATCH", {"objectId": "urn:ep", "parentId": None})
        untouched = parse_payload("OBJECT_PATCH", {"objectId": "urn:ep", "displayName": "Orders"})

        assert isinstance(patch, ObjectPatchPayload)
        assert patch.changes_parent
        assert patch.parent_id is None
        assert not untouched.changes_parent
        assert "parentId" not in untouched.to_json()

    def test_visibility(self):
        patch = parse_payload("OBJECT_PATCH", {"objectId": "urn:ep", "visibility": "hidden"})
        assert patch.visibility is Visibility.HIDDEN
        assert _code({"objectId": "urn:ep", "visibility": "GONE"}, "OBJECT_PATCH") is ErrorCode.VISIBILITY_INVALID

    def test_required_and_empty(self):
        assert _code({"displayName": "x"}, "OBJECT_PATCH") is ErrorCode.OBJECT_REQUIRED
        assert _code({"objectId": "urn:ep"}, "OBJECT_PATCH") is ErrorCode.PATCH_EMPTY
        assert _code({"objectId": "urn:ep", "metadata": [1]}, "OBJECT_PATCH") is ErrorCode.PAYLOAD_INVALID


class TestProducerHelper:

    def test_scored_candidate_gets_score_version(self):
        payload = build_dependency_upsert_payload(
            "urn:a", "urn:b", "grpc", source="scan", confidence=0.55, evidence="a.go:12",
        )
        assert payload["type"] == "call"
        assert payload["scoreVersion"] == DEFAULT_SCORE_VERSION
        assert payload["reviewTag"] == REVIEW_TAG_LOW_CONFIDENCE

    def test_helper_validates(self):
        with pytest.raises(PayloadValidationError) as excinfo:
            build_dependency_upsert_payload("urn:a", "urn:b", source="inference", evidence="x")
        assert excinfo.value.code is ErrorCode.CONFIDENCE_REQUIRED
