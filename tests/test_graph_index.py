"""
Graph Index Tests
=================

Cache identity, hit/miss accounting and invalidation races.
"""

import threading

import networkx as nx
import pytest

from archgraph.contracts.entities import RelationType, RollupLevel
from archgraph.core import CacheKey, EdgeKey, GraphIndex, GraphIndexConfig

from .fixtures import SVC_A, SVC_B, WORKSPACE, approve_topology, create_backend

S2S = RollupLevel.SERVICE_TO_SERVICE


@pytest.fixture
def backend():
    backend = create_backend()
    approve_topology(backend)
    yield backend
    backend.close()


@pytest.fixture
def index(backend):
    return GraphIndex(backend.storage_layer)


class TestGraphIndex:

    def test_graph_matches_generation(self, backend, index):
        ids = {urn: backend.resolve(WORKSPACE, urn) for urn in (SVC_A, SVC_B)}
        graph = index.get_or_build(WORKSPACE, 1, S2S)

        assert graph.number_of_edges() == 4
        assert nx.is_frozen(graph)
        data = graph.get_edge_data(ids[SVC_A], ids[SVC_B])[EdgeKey(ids[SVC_A], ids[SVC_B], RelationType.CALL)]
        assert data["weight"] == 1
        assert data["confidence"] == pytest.approx(0.8)
        assert data["relation_type"] is RelationType.CALL

    def test_second_read_is_a_hit(self, index):
        first = index.get_or_build(WORKSPACE, 1, S2S)
        second = index.get_or_build(WORKSPACE, 1, S2S)

        assert first is second
        stats = index.stats()
        assert (stats["hits"], stats["misses"], stats["builds"], stats["entries"]) == (1, 1, 1, 1)

    def test_keys_are_independent(self, index):
        index.get_or_build(WORKSPACE, 1, S2S)
        index.get_or_build(WORKSPACE, 1, RollupLevel.SERVICE_TO_DATABASE)
        index.get_or_build("other", 1, S2S)

        assert set(index.cached_keys()) == {
            CacheKey(WORKSPACE, 1, S2S),
            CacheKey(WORKSPACE, 1, RollupLevel.SERVICE_TO_DATABASE),
            CacheKey("other", 1, S2S),
        }

    def test_unknown_generation_is_an_empty_graph(self, index):
        graph = index.get_or_build(WORKSPACE, 99, S2S)
        assert graph.number_of_nodes() == 0

    def test_invalidate_drops_only_that_workspace(self, index):
        index.get_or_build(WORKSPACE, 1, S2S)
        index.get_or_build("other", 1, S2S)

        assert index.invalidate(WORKSPACE) == 1
        assert index.cached_keys() == [CacheKey("other", 1, S2S)]
        assert index.get_audit_log()[-1].action == "invalidate"

    def test_lru_bound(self, backend):
        index = GraphIndex(backend.storage_layer, GraphIndexConfig(max_entries=2))
        for level in (S2S, RollupLevel.SERVICE_TO_DATABASE, RollupLevel.SERVICE_TO_BROKER):
            index.get_or_build(WORKSPACE, 1, level)

        assert CacheKey(WORKSPACE, 1, S2S) not in index.cached_keys()
        assert len(index.cached_keys()) == 2

    def test_build_racing_an_invalidation_is_not_cached(self, index, monkeypatch):
        real_build = index._build

        def build_then_invalidate(key):
            graph = real_build(key)
            index.invalidate(key.workspace_id)
            return graph

        monkeypatch.setattr(index, "_build", build_then_invalidate)
        graph = index.get_or_build(WORKSPACE, 1, S2S)

        assert graph.number_of_edges() == 4
        assert index.cached_keys() == []

    def test_concurrent_builds_share_one_entry(self, index):
        results = []
        barrier = threading.Barrier(8)

        def read():
            barrier.wait()
            results.append(index.get_or_build(WORKSPACE, 1, S2S))

        threads = [threading.Thread(target=read) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        cached = index.get_or_build(WORKSPACE, 1, S2S)
        assert len(results) == 8
        assert all(r.number_of_edges() == 4 for r in results)
        assert index.cached_keys() == [CacheKey(WORKSPACE, 1, S2S)]
        assert sum(1 for r in results if r is cached) >= 1


class TestBackendInvalidation:

    def test_rebuild_invalidates_workspace(self, backend):
        backend.graph_index.get_or_build(WORKSPACE, 1, S2S)
        backend.rebuild(WORKSPACE)

        assert backend.graph_index.cached_keys() == []
        assert backend.graph_index.stats()["invalidations"] >= 2
