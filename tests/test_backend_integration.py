"""
Backend Integration Tests
=========================

End-to-end flows through ArchGraphBackend: change request -> approval ->
roll-up generation -> query, plus the audit and metrics side channels.
"""

import threading

import pytest

from archgraph.contracts.base import ErrorCode, ResolutionError
from archgraph.contracts.entities import ChangeRequestStatus, RelationType, RollupLevel
from archgraph.contracts.events import QueryParams, QueryScope, QueryType
from archgraph.engine import ArchGraphBackend, BackendConfig
from archgraph.storage import StoreConfig

from .fixtures import (
    DB_MAIN, SVC_A, SVC_B, SVC_C, SVC_D, TABLE_ORDERS, TOPOLOGY_RELATIONS, WORKSPACE,
    approve_topology, create_backend, register_topology, relation_payload
)


@pytest.fixture
def backend():
    backend = create_backend()
    yield backend
    backend.close()


class TestEndToEnd:

    def test_request_to_query(self, backend):
        ids = register_topology(backend)
        for payload in TOPOLOGY_RELATIONS:
            backend.create_change_request(WORKSPACE, "RELATION_UPSERT", payload)
        assert len(backend.list_pending_ids(WORKSPACE)) == len(TOPOLOGY_RELATIONS)

        result = backend.apply_bulk(WORKSPACE, None, "APPROVED", reviewed_by="alice")

        assert result.succeeded == len(TOPOLOGY_RELATIONS)
        assert result.rollup_version == 1
        assert backend.list_pending_ids(WORKSPACE) == []

        query = backend.execute_query(
            QueryType.PATH_DISCOVERY, WORKSPACE, QueryParams(from_id=SVC_A, to_id=SVC_D)
        )
        assert query.paths[0].node_ids[0] == ids[SVC_A]

    def test_bulk_respects_exclusions(self, backend):
        register_topology(backend)
        created = [
            backend.create_change_request(WORKSPACE, "RELATION_UPSERT", payload)
            for payload in TOPOLOGY_RELATIONS[:3]
        ]
        excluded = created[1].request_id

        result = backend.apply_bulk(WORKSPACE, None, "APPROVED", exclude_ids=[excluded])

        assert result.processed == 2
        assert backend.list_pending_ids(WORKSPACE) == [excluded]
        assert backend.get_change_request(WORKSPACE, excluded).status is ChangeRequestStatus.PENDING

    def test_single_approval_rebuilds(self, backend):
        approve_topology(backend)
        request = backend.create_change_request(
            WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_D, TABLE_ORDERS, "write", 0.7)
        )
        outcome = backend.apply_change_request(WORKSPACE, request.request_id, "APPROVED")

        assert outcome.rollup_version == 2
        assert outcome.rebuild_error is None
        writes = [
            e for e in backend.get_rollup_edges(WORKSPACE, level=RollupLevel.SERVICE_TO_DATABASE)
            if e.relation_type is RelationType.WRITE
        ]
        assert len(writes) == 1

    def test_rejection_does_not_rebuild(self, backend):
        approve_topology(backend)
        request = backend.create_change_request(
            WORKSPACE, "RELATION_UPSERT", relation_payload(SVC_D, TABLE_ORDERS, "write")
        )
        outcome = backend.apply_change_request(WORKSPACE, request.request_id, "REJECTED")

        assert outcome.rollup_version is None
        assert backend.get_active_generation(WORKSPACE) == 1

    def test_reassign_parent_rebuilds_database_level(self, backend):
        ids = approve_topology(backend)
        replica = backend.register_object(WORKSPACE, "urn:db:replica", "database")

        version = backend.reassign_parent(WORKSPACE, TABLE_ORDERS, "urn:db:replica")

        assert version == 2
        edges = backend.get_rollup_edges(WORKSPACE, level=RollupLevel.SERVICE_TO_DATABASE)
        assert [(e.subject_id, e.target_id) for e in edges] == [(ids[SVC_A], replica.object_id)]
        assert backend.get_object(WORKSPACE, TABLE_ORDERS).parent_id == replica.object_id
        assert ids[DB_MAIN] not in {e.target_id for e in edges}

    def test_unknown_references(self, backend):
        with pytest.raises(ResolutionError) as excinfo:
            backend.register_object(WORKSPACE, "urn:db:x/table:y", "db_table", parent="urn:db:x")
        assert excinfo.value.code is ErrorCode.OBJECT_NOT_FOUND

        register_topology(backend)
        with pytest.raises(ResolutionError):
            backend.set_domain_affinity(WORKSPACE, SVC_A, "urn:domain:ghost", 0.5)

    def test_affinity_range(self, backend):
        register_topology(backend)
        with pytest.raises(ValueError):
            backend.set_domain_affinity(WORKSPACE, SVC_A, SVC_B, 1.5)


class TestWorkspaces:

    def test_workspaces_do_not_share_graphs(self, backend):
        approve_topology(backend, "ws-one")
        register_topology(backend, "ws-two")

        assert backend.get_active_generation("ws-one") == 1
        assert backend.get_active_generation("ws-two") is None

        empty = backend.execute_query(
            QueryType.PATH_DISCOVERY, "ws-two", QueryParams(from_id=SVC_A, to_id=SVC_D)
        )
        assert empty.success and empty.paths == ()
        assert empty.meta.generation_version == 0

    def test_blank_workspace_is_default(self, backend):
        obj = backend.register_object(None, SVC_A, "service")
        assert obj.workspace_id == "default"
        assert backend.resolve("  ", SVC_A) == obj.object_id


class TestConcurrency:

    def test_queries_during_rebuilds_read_complete_generations(self, backend):
        ids = approve_topology(backend)
        expected = (ids[SVC_A], ids[SVC_B], ids[SVC_C], ids[SVC_D])
        errors = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                result = backend.execute_query(
                    QueryType.PATH_DISCOVERY, WORKSPACE, QueryParams(from_id=SVC_A, to_id=SVC_D)
                )
                if not result.success or len(result.paths) != 2 or result.paths[0].node_ids != expected:
                    errors.append(result.to_dict())

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for t in readers:
            t.start()
        try:
            for _ in range(5):
                backend.rebuild(WORKSPACE)
        finally:
            stop.set()
            for t in readers:
                t.join()

        assert errors == []
        assert backend.get_active_generation(WORKSPACE) == 6

    def test_concurrent_rebuilds_get_distinct_versions(self, backend):
        approve_topology(backend)
        versions = []
        lock = threading.Lock()

        def rebuild():
            version = backend.rebuild(WORKSPACE)
            with lock:
                versions.append(version)

        threads = [threading.Thread(target=rebuild) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(versions) == [2, 3, 4, 5]
        active = [g for g in backend.list_generations(WORKSPACE) if g.status.value == "ACTIVE"]
        assert [g.version for g in active] == [5]


class TestObservability:

    def test_audit_report_covers_layers(self, backend):
        approve_topology(backend)
        backend.execute_query(QueryType.PATH_DISCOVERY, WORKSPACE, QueryParams(from_id=SVC_A, to_id=SVC_D))

        report = backend.get_audit_report()

        assert report["by_layer"]["gate"] == len(TOPOLOGY_RELATIONS)
        assert report["by_layer"]["rollup"] == 1
        assert report["by_layer"]["query"] == 1
        assert report["by_layer"]["core"] >= 1
        assert report["total_entries"] == sum(report["by_layer"].values())

    def test_audit_sync_is_incremental(self, backend):
        approve_topology(backend)
        first = backend.get_audit_log()
        second = backend.get_audit_log()

        assert len(first) == len(second)
        assert [e.layer for e in backend.get_audit_log(layers=["rollup"])] == ["rollup"]

    def test_metrics(self, backend):
        approve_topology(backend)
        backend.execute_query(
            QueryType.IMPACT_ANALYSIS, WORKSPACE, QueryParams(target_id=SVC_A),
            QueryScope(level=RollupLevel.SERVICE_TO_SERVICE),
        )
        metrics = backend.get_metrics()

        assert len(metrics.get_metric("change_requests_created_total")) == len(TOPOLOGY_RELATIONS)
        timings = metrics.get_metric("query_execution_time_ms")
        assert dict(timings[-1].labels) == {"query_type": "IMPACT_ANALYSIS"}
        edges = {dict(p.labels)["level"]: p.value for p in metrics.get_metric("rollup_edges")}
        assert edges["SERVICE_TO_SERVICE"] == 4.0
        assert metrics.compute_aggregates("rollup_build_duration_ms")["count"] == 1

    def test_metrics_can_be_disabled(self):
        from archgraph.observability import ObservabilityConfig

        backend = ArchGraphBackend(BackendConfig(observability=ObservabilityConfig(enable_metrics=False)))
        try:
            approve_topology(backend)
            assert backend.get_metrics() is None
        finally:
            backend.close()


class TestPersistence:

    def test_state_survives_reopen(self, tmp_path):
        path = str(tmp_path / "graph.db")
        backend = ArchGraphBackend(BackendConfig(store=StoreConfig(database_path=path)))
        ids = approve_topology(backend)
        backend.close()

        reopened = ArchGraphBackend(BackendConfig(store=StoreConfig(database_path=path)))
        try:
            assert reopened.get_active_generation(WORKSPACE) == 1
            result = reopened.execute_query(
                QueryType.IMPACT_ANALYSIS, WORKSPACE, QueryParams(target_id=SVC_A, max_depth=1)
            )
            assert {n.node_id for n in result.nodes} == {ids[SVC_A], ids[SVC_B], ids[SVC_C]}
        finally:
            reopened.close()
