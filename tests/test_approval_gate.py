"""
Approval Gate Tests
===================

AXIOM UNDER TEST:
=================
Canonical relations change only through an approved change request,
each request is applied at most once, and a failed apply leaves no
partial write behind.
"""

import json

import pytest

from archgraph.contracts.base import (
    ErrorCode, PayloadValidationError, ResolutionError, StateError
)
from archgraph.contracts.entities import ChangeRequestStatus, RelationSource, RelationType, Visibility
from archgraph.gate import ApprovalGate, ChangeRequestStore, GateConfig, split_evidence
from archgraph.storage import RelationStore

from .fixtures import (
    DB_MAIN, EP_B1, SVC_A, SVC_B, TABLE_ORDERS, WORKSPACE,
    relation_payload
)


@pytest.fixture
def store():
    store = RelationStore()
    yield store
    store.close()


@pytest.fixture
def ids(store):
    return _register(store)


def _register(store):
    urns = {}
    for urn in (SVC_A, SVC_B, DB_MAIN):
        urns[urn] = store.register_object(WORKSPACE, urn, "service" if "svc" in urn else "database").object_id
    urns[EP_B1] = store.register_object(WORKSPACE, EP_B1, "api_endpoint", parent_id=urns[SVC_B]).object_id
    urns[TABLE_ORDERS] = store.register_object(WORKSPACE, TABLE_ORDERS, "db_table", parent_id=urns[DB_MAIN]).object_id
    return urns


@pytest.fixture
def requests(store):
    return ChangeRequestStore(store)


@pytest.fixture
def gate(store):
    return ApprovalGate(store)


class TestChangeRequestStore:

    def test_create_stores_normalized_payload(self, requests):
        request = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "http", 0.5))

        assert request.status is ChangeRequestStatus.PENDING
        assert request.payload["type"] == "call"
        assert request.payload["reviewTag"] == "LOW_CONFIDENCE"
        assert request.payload["source"] == "manual"

    def test_create_validates_before_write(self, requests):
        with pytest.raises(PayloadValidationError) as excinfo:
            requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call", source="inference"))

        assert excinfo.value.code is ErrorCode.CONFIDENCE_REQUIRED
        assert requests.list(WORKSPACE) == []

    def test_create_rejects_rollup_source(self, requests):
        with pytest.raises(PayloadValidationError) as excinfo:
            requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call", source="rollup"))
        assert excinfo.value.code is ErrorCode.SOURCE_INVALID

    def test_pending_duplicates_are_queued_by_default(self, requests):
        first = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call", 0.5))
        second = requests.create(
            WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call", 0.9), requested_by="bob"
        )

        assert second.request_id != first.request_id
        assert second.payload["confidence"] == 0.9
        assert second.requested_by == "bob"
        assert requests.list_pending_ids(WORKSPACE) == [first.request_id, second.request_id]

    def test_producer_dedupe_returns_pending_request(self, requests):
        first = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call", 0.5))
        second = requests.create(
            WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "http", 0.9), dedupe_pending=True
        )
        other = requests.create(
            WORKSPACE, "RELATION_DELETE", relation_payload(SVC_A, EP_B1, "call"), dedupe_pending=True
        )

        assert second.request_id == first.request_id
        assert other.request_id != first.request_id
        assert len(requests.list(WORKSPACE)) == 2

    def test_dedupe_from_config(self, store):
        requests = ChangeRequestStore(store, GateConfig(dedupe_pending=True))
        requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"))
        requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"))
        requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"), dedupe_pending=False)

        assert len(requests.list(WORKSPACE)) == 2

    def test_list_order_limit_and_pending_ids(self, requests, gate, ids):
        created = [
            requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, target, "call"))
            for target in (EP_B1, SVC_B, TABLE_ORDERS)
        ]
        gate.apply(WORKSPACE, created[1].request_id, "REJECTED")

        pending = requests.list(WORKSPACE)
        assert [r.request_id for r in pending] == [created[0].request_id, created[2].request_id]
        assert len(requests.list(WORKSPACE, limit=1)) == 1
        assert len(requests.list(WORKSPACE, status=None)) == 3
        assert [r.request_id for r in requests.list(WORKSPACE, status="REJECTED")] == [created[1].request_id]
        assert requests.list_pending_ids(WORKSPACE, exclude_ids=[created[0].request_id]) == [created[2].request_id]

    def test_workspaces_are_isolated(self, requests):
        requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"))
        assert requests.list("other") == []
        assert requests.list_pending_ids("other") == []


class TestApprovalGate:

    def test_approve_upserts_canonical_relation(self, store, requests, gate, ids):
        request = requests.create(
            WORKSPACE, "RELATION_UPSERT",
            relation_payload(SVC_A, EP_B1, "call", 0.8, source="scan", evidence="a.py:1\na.py:9"),
        )
        outcome = gate.apply(WORKSPACE, request.request_id, "APPROVED", reviewed_by="alice")

        assert outcome.affects_rollups
        assert outcome.request.status is ChangeRequestStatus.APPROVED
        assert outcome.request.reviewed_by == "alice"
        assert outcome.request.reviewed_at is not None

        relation = store.get_relation(WORKSPACE, ids[SVC_A], ids[EP_B1], RelationType.CALL)
        assert relation.source is RelationSource.SCAN
        assert relation.confidence == 0.8
        assert relation.evidence == ("a.py:1", "a.py:9")
        assert relation.approved and not relation.is_derived

    def test_second_approval_is_rejected(self, store, requests, gate, ids):
        request = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"))
        gate.apply(WORKSPACE, request.request_id, "APPROVED")

        with pytest.raises(StateError) as excinfo:
            gate.apply(WORKSPACE, request.request_id, "APPROVED")

        assert excinfo.value.code is ErrorCode.ALREADY_PROCESSED
        assert len(store.list_relations(WORKSPACE)) == 1

    def test_unknown_request(self, gate):
        with pytest.raises(StateError) as excinfo:
            gate.apply(WORKSPACE, 404, "APPROVED")
        assert excinfo.value.code is ErrorCode.NOT_FOUND

    def test_pending_is_not_a_target_status(self, requests, gate, ids):
        request = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"))
        with pytest.raises(PayloadValidationError) as excinfo:
            gate.apply(WORKSPACE, request.request_id, "PENDING")
        assert excinfo.value.code is ErrorCode.STATUS_INVALID

    def test_upserts_keep_one_row_with_latest_values(self, store, requests, gate, ids):
        first = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, TABLE_ORDERS, "read", 0.4))
        gate.apply(WORKSPACE, first.request_id, "APPROVED")
        second = requests.create(
            WORKSPACE, "RELATION_UPSERT",
            relation_payload(SVC_A, TABLE_ORDERS, "sql", 0.95, source="inference", evidence="orm mapping"),
        )
        gate.apply(WORKSPACE, second.request_id, "APPROVED")

        relations = store.list_relations(WORKSPACE)
        assert len(relations) == 1
        assert relations[0].confidence == 0.95
        assert relations[0].source is RelationSource.INFERENCE
        assert relations[0].evidence == ("orm mapping",)

    def test_queued_upserts_apply_in_order(self, store, requests, gate, ids):
        first = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, TABLE_ORDERS, "read", 0.5))
        second = requests.create(
            WORKSPACE, "RELATION_UPSERT",
            relation_payload(SVC_A, TABLE_ORDERS, "read", 0.9, source="inference", evidence="orm mapping"),
            requested_by="bob",
        )
        gate.apply(WORKSPACE, first.request_id, "APPROVED")
        gate.apply(WORKSPACE, second.request_id, "APPROVED")

        relations = store.list_relations(WORKSPACE)
        assert len(relations) == 1
        assert relations[0].confidence == 0.9
        assert relations[0].source is RelationSource.INFERENCE
        assert requests.list_pending_ids(WORKSPACE) == []

    def test_unresolvable_urn_rolls_back(self, store, requests, gate, ids):
        request = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, "urn:svc:ghost", "call"))

        with pytest.raises(ResolutionError) as excinfo:
            gate.apply(WORKSPACE, request.request_id, "APPROVED")

        assert excinfo.value.code is ErrorCode.OBJECT_NOT_FOUND
        assert store.list_relations(WORKSPACE) == []
        assert requests.get(WORKSPACE, request.request_id).status is ChangeRequestStatus.PENDING

    def test_payload_revalidated_at_apply(self, store, requests, gate, ids):
        request = requests.create(
            WORKSPACE, "RELATION_UPSERT",
            relation_payload(SVC_A, EP_B1, "call", 0.9, source="scan", evidence="x.py:3"),
        )
        tampered = {"fromId": SVC_A, "toId": EP_B1, "type": "call", "source": "scan", "evidence": "x.py:3"}
        store._execute("UPDATE change_requests SET payload = ? WHERE id = ?", (json.dumps(tampered), request.request_id))

        with pytest.raises(PayloadValidationError) as excinfo:
            gate.apply(WORKSPACE, request.request_id, "APPROVED")

        assert excinfo.value.code is ErrorCode.CONFIDENCE_REQUIRED
        assert store.list_relations(WORKSPACE) == []
        assert requests.get(WORKSPACE, request.request_id).status is ChangeRequestStatus.PENDING

    def test_reject_writes_nothing(self, store, requests, gate, ids):
        request = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, "urn:svc:ghost", "call"))
        outcome = gate.apply(WORKSPACE, request.request_id, "REJECTED", reviewed_by="bob")

        assert outcome.request.status is ChangeRequestStatus.REJECTED
        assert not outcome.affects_rollups
        assert store.list_relations(WORKSPACE) == []

    def test_delete_relation(self, store, requests, gate, ids):
        upsert = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"))
        gate.apply(WORKSPACE, upsert.request_id, "APPROVED")
        delete = requests.create(WORKSPACE, "RELATION_DELETE", relation_payload(SVC_A, EP_B1, "call"))
        gate.apply(WORKSPACE, delete.request_id, "APPROVED")

        assert store.list_relations(WORKSPACE) == []

    def test_delete_of_absent_relation_succeeds(self, requests, gate, ids):
        delete = requests.create(WORKSPACE, "RELATION_DELETE", relation_payload(SVC_A, EP_B1, "write"))
        outcome = gate.apply(WORKSPACE, delete.request_id, "APPROVED")
        assert outcome.request.status is ChangeRequestStatus.APPROVED

    def test_object_patch(self, store, requests, gate, ids):
        hide = requests.create(
            WORKSPACE, "OBJECT_PATCH",
            {"objectId": EP_B1, "visibility": "HIDDEN", "displayName": "Get orders", "metadata": {"team": "core"}},
        )
        outcome = gate.apply(WORKSPACE, hide.request_id, "APPROVED")
        endpoint = store.get_object(WORKSPACE, ids[EP_B1])

        assert not outcome.affects_rollups
        assert endpoint.visibility is Visibility.HIDDEN
        assert endpoint.label == "Get orders"
        assert endpoint.metadata == {"team": "core"}

        move = requests.create(WORKSPACE, "OBJECT_PATCH", {"objectId": EP_B1, "parentId": SVC_A})
        outcome = gate.apply(WORKSPACE, move.request_id, "APPROVED")

        assert outcome.affects_rollups
        assert store.get_object(WORKSPACE, ids[EP_B1]).parent_id == ids[SVC_A]

    def test_object_patch_unknown_parent(self, store, requests, gate, ids):
        move = requests.create(WORKSPACE, "OBJECT_PATCH", {"objectId": EP_B1, "parentId": "urn:svc:ghost"})
        with pytest.raises(ResolutionError):
            gate.apply(WORKSPACE, move.request_id, "APPROVED")
        assert store.get_object(WORKSPACE, ids[EP_B1]).parent_id == ids[SVC_B]

    def test_audit_entries_for_success_and_failure(self, requests, gate, ids):
        request = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"))
        gate.apply(WORKSPACE, request.request_id, "APPROVED", reviewed_by="alice")
        with pytest.raises(StateError):
            gate.apply(WORKSPACE, request.request_id, "APPROVED")

        actions = [entry.action for entry in gate.get_audit_log()]
        assert actions == ["apply", "apply_failed"]
        assert gate.get_audit_log()[1].metadata_dict()["reason"] == "ALREADY_PROCESSED"


class TestBulkApply:

    def test_failures_are_isolated(self, store, requests, gate, ids):
        ok_first = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"))
        unresolved = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, "urn:svc:ghost", "call"))
        ok_last = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, TABLE_ORDERS, "read"))

        result = gate.apply_bulk(
            WORKSPACE,
            [ok_first.request_id, 999, unresolved.request_id, ok_last.request_id],
            "APPROVED",
        )

        assert result.processed == 4
        assert result.succeeded == 2
        assert result.affects_rollups
        assert result.to_dict()["failed"] == [
            {"id": 999, "reason": "NOT_FOUND"},
            {"id": unresolved.request_id, "reason": "OBJECT_NOT_FOUND"},
        ]
        assert len(store.list_relations(WORKSPACE)) == 2

    def test_bulk_reject_does_not_affect_rollups(self, requests, gate, ids):
        request = requests.create(WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_A, EP_B1, "call"))
        result = gate.apply_bulk(WORKSPACE, [request.request_id], "REJECTED")

        assert result.succeeded == 1
        assert not result.affects_rollups


def test_split_evidence():
    assert split_evidence(None) == ()
    assert split_evidence("a\n\n b \n") == ("a", "b")
