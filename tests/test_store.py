"""Tests for the graph stores: validation, tenancy, events and score commits.

The FalkorDB store runs against a scripted fake client so no server is needed.
"""

import pytest

from influence_graph.core.errors import ErrorCode, InvalidInput, NotFound, StorageFailure
from influence_graph.core.types import EventType, ScoreUpdate
from influence_graph.store.falkordb_store import FalkorGraphStore
from influence_graph.store.memory_store import HISTORY_LIMIT, GraphStore, InMemoryGraphStore


# ============================================================
# Helpers
# ============================================================

def make_store() -> InMemoryGraphStore:
    store = InMemoryGraphStore()
    store.add_node("org1", "alice", "Alice", group_id="eng", group_name="Engineering")
    store.add_node("org1", "bob", "Bob", group_id="eng", group_name="Engineering")
    store.add_node("org1", "carol", "Carol", group_id="ops", group_name="Operations")
    store.add_node("org2", "dave", "Dave")
    return store


# ============================================================
# In-memory store
# ============================================================

def test_satisfies_protocol():
    assert isinstance(InMemoryGraphStore(), GraphStore)
    print("  ✓ satisfies_protocol")

def test_nodes_scoped_by_tenant():
    store = make_store()
    assert [n.id for n in store.list_nodes("org1")] == ["alice", "bob", "carol"]
    assert [n.id for n in store.list_nodes("org2")] == ["dave"]
    assert store.list_nodes("org3") == []
    assert store.group_names("org1") == {"eng": "Engineering", "ops": "Operations"}
    print("  ✓ nodes_scoped_by_tenant")

def test_create_edge_validation():
    store = make_store()
    with pytest.raises(InvalidInput) as e:
        store.create_edge("org1", "alice", "alice", 50)
    assert e.value.code == ErrorCode.E_SELF_EDGE
    with pytest.raises(InvalidInput) as e:
        store.create_edge("org1", "alice", "bob", 101)
    assert e.value.code == ErrorCode.E_WEIGHT
    with pytest.raises(InvalidInput) as e:
        store.create_edge("org1", "alice", "bob", "80")
    assert e.value.code == ErrorCode.E_WEIGHT
    with pytest.raises(InvalidInput) as e:
        store.create_edge("org1", "", "bob", 10)
    assert e.value.code == ErrorCode.E_MISSING
    with pytest.raises(InvalidInput) as e:
        store.create_edge("org*", "alice", "bob", 10)
    assert e.value.code == ErrorCode.E_TENANT
    assert store.edge_count == 0
    print("  ✓ create_edge_validation")

def test_create_edge_cross_tenant_rejected():
    store = make_store()
    with pytest.raises(NotFound):
        store.create_edge("org1", "alice", "dave", 10)
    with pytest.raises(NotFound):
        store.create_edge("org1", "alice", "nobody", 10)
    print("  ✓ create_edge_cross_tenant_rejected")

def test_duplicate_edge():
    store = make_store()
    store.create_edge("org1", "alice", "bob", 50, context="p1")
    with pytest.raises(InvalidInput) as e:
        store.create_edge("org1", "alice", "bob", 60, context="p1")
    assert e.value.code == ErrorCode.E_DUPLICATE
    store.create_edge("org1", "alice", "bob", 60, context="p2")
    assert store.edge_count == 2
    print("  ✓ duplicate_edge")

def test_edge_update_and_delete():
    store = make_store()
    e = store.create_edge("org1", "alice", "bob", 50)
    updated = store.update_edge(e.id, weight=70, active=False)
    assert updated.weight == 70 and updated.active is False
    assert store.list_edges("org1")[0].weight == 70
    assert store.list_active_edges("org1") == []
    with pytest.raises(InvalidInput):
        store.update_edge(e.id, weight=-1)
    assert store.edge_tenant(e.id) == "org1"
    removed = store.delete_edge(e.id)
    assert removed.id == e.id
    assert store.get_outgoing("alice") == []
    assert store.get_incoming("bob") == []
    with pytest.raises(NotFound):
        store.delete_edge(e.id)
    print("  ✓ edge_update_and_delete")

def test_reads_are_copies():
    store = make_store()
    e = store.create_edge("org1", "alice", "bob", 50)
    store.list_edges("org1")[0].weight = 1
    store.get_node("alice").history.append(99)
    assert store.get_edge(e.id).weight == 50
    assert store.get_node("alice").history == []
    print("  ✓ reads_are_copies")

def test_events_default_delta_and_order():
    store = make_store()
    first = store.record_event("org1", "alice", "PROJECT_SUCCESS", created_at=100)
    second = store.record_event("org1", "bob", EventType.MENTORSHIP, impact_score=2.0,
                                created_at=200)
    store.record_event("org1", "bob", "COLLABORATION", weight_delta=-4, created_at=300)
    assert first.weight_delta == 15.0
    assert second.weight_delta == 10.0
    assert [e.created_at for e in store.list_unprocessed_events("org1")] == [100, 200, 300]
    assert [e.created_at for e in store.list_events("org1", limit=2)] == [300, 200]
    with pytest.raises(InvalidInput):
        store.record_event("org1", "alice", "PROMOTION")
    with pytest.raises(NotFound):
        store.record_event("org1", "dave", "MENTORSHIP")
    print("  ✓ events_default_delta_and_order")

def test_mark_processed_is_idempotent():
    store = make_store()
    ev = store.record_event("org1", "alice", "MENTORSHIP")
    store.mark_events_processed([ev.id], processed_at=10)
    store.mark_events_processed([ev.id], processed_at=20)
    assert store.get_event(ev.id).processed_at == 10
    assert store.list_unprocessed_events("org1") == []
    print("  ✓ mark_processed_is_idempotent")

def test_commit_scores_history():
    store = make_store()
    for i in range(HISTORY_LIMIT + 5):
        store.commit_scores("org1", [ScoreUpdate("alice", float(i), 0.0, 0.0, 1)],
                            calculated_at=1000 + i)
    alice = store.get_node("alice")
    assert alice.score == HISTORY_LIMIT + 4
    assert len(alice.history) == HISTORY_LIMIT
    assert alice.history[0] == HISTORY_LIMIT + 4
    assert store.last_calculated_at("org1") == 1000 + HISTORY_LIMIT + 4
    assert store.last_calculated_at("org2") is None
    print("  ✓ commit_scores_history")

def test_node_id_owned_by_one_tenant():
    store = make_store()
    with pytest.raises(InvalidInput) as e:
        store.add_node("org2", "alice", "Other Alice")
    assert e.value.code == ErrorCode.E_DUPLICATE
    assert [n.name for n in store.list_nodes("org1")][0] == "Alice"
    assert [n.id for n in store.list_nodes("org2")] == ["dave"]
    store.record_event("org1", "alice", "MENTORSHIP")
    store.add_node("org1", "alice", "Alice B.")
    assert store.get_node("alice").name == "Alice B."
    assert len(store.list_nodes("org1")) == 3
    print("  ✓ node_id_owned_by_one_tenant")

def test_edge_and_node_ids_do_not_collide():
    store = make_store()
    edge = store.create_edge("org1", "alice", "bob", 10)
    store.add_node("org2", edge.id, "Named Like An Edge")
    assert store.edge_tenant(edge.id) == "org1"
    assert [n.id for n in store.list_nodes("org2")] == ["dave", edge.id]
    print("  ✓ edge_and_node_ids_do_not_collide")

def test_commit_scores_marks_events():
    store = make_store()
    ev = store.record_event("org1", "alice", "PROJECT_SUCCESS")
    store.commit_scores("org1", [ScoreUpdate("alice", 15.0, 0.0, 0.0, 1, event_bonus=15.0)],
                        calculated_at=7, processed_event_ids=[ev.id])
    assert store.get_event(ev.id).processed_at == 7
    assert store.get_node("alice").event_bonus == 15.0
    print("  ✓ commit_scores_marks_events")

def test_commit_scores_rejects_foreign_event():
    store = make_store()
    foreign = store.record_event("org2", "dave", "MENTORSHIP")
    with pytest.raises(NotFound):
        store.commit_scores("org1", [ScoreUpdate("alice", 5.0, 5.0, 0.0, 1)],
                            processed_event_ids=[foreign.id])
    assert store.get_node("alice").score == 0.0
    assert not store.get_event(foreign.id).processed
    print("  ✓ commit_scores_rejects_foreign_event")

def test_commit_scores_all_or_nothing():
    store = make_store()
    updates = [ScoreUpdate("alice", 5.0, 5.0, 0.0, 1), ScoreUpdate("dave", 1.0, 1.0, 0.0, 2)]
    with pytest.raises(NotFound):
        store.commit_scores("org1", updates)
    assert store.get_node("alice").score == 0.0
    print("  ✓ commit_scores_all_or_nothing")


# ============================================================
# FalkorDB store (fake client)
# ============================================================

class FakeEntity:
    def __init__(self, **props):
        self.properties = props

class FakeResult:
    def __init__(self, rows):
        self.result_set = rows

class FakeGraph:
    def __init__(self):
        self.queries = []
        self.responses = []        # (needle, rows)
        self.fail_on = None

    def respond(self, needle, rows):
        self.responses.append((needle, rows))

    def query(self, q, params=None):
        self.queries.append((q, params or {}))
        if self.fail_on and self.fail_on in q:
            raise RuntimeError("connection reset")
        for needle, rows in self.responses:
            if needle in q:
                return FakeResult(rows)
        return FakeResult([])

class FakeFalkorDB:
    def __init__(self):
        self.graph = FakeGraph()
        self.selected = None

    def select_graph(self, name):
        self.selected = name
        return self.graph


def make_falkor():
    client = FakeFalkorDB()
    store = FalkorGraphStore(graph_name="test_influence", client=client)
    return store, client.graph, client

def test_falkor_connects_and_indexes():
    store, graph, client = make_falkor()
    assert client.selected == "test_influence"
    assert any("CREATE INDEX" in q for q, _ in graph.queries)
    print("  ✓ falkor_connects_and_indexes")

def test_falkor_list_nodes():
    store, graph, _ = make_falkor()
    graph.respond("RETURN n ORDER BY", [
        [FakeEntity(_id="alice", name="Alice", group_id="eng", score=12.5,
                    history=[12.5, 10], rank=1)],
        [FakeEntity(_id="bob", name="Bob")],
    ])
    nodes = store.list_nodes("org1")
    assert [n.id for n in nodes] == ["alice", "bob"]
    assert nodes[0].score == 12.5 and nodes[0].history == [12.5, 10.0]
    assert nodes[1].score == 0.0 and nodes[1].history == []
    q, params = graph.queries[-1]
    assert params == {"tenant": "org1"}
    print("  ✓ falkor_list_nodes")

def test_falkor_list_edges():
    store, graph, _ = make_falkor()
    graph.respond("RETURN r, a._id, b._id", [
        [FakeEntity(_id="e1", weight=80, created_at=5, active=True), "alice", "bob"],
        [FakeEntity(_id="e2", weight=20, created_at=6, active=False), "bob", "carol"],
    ])
    edges = store.list_active_edges("org1")
    assert [(e.id, e.source_id, e.target_id, e.weight) for e in edges] == [
        ("e1", "alice", "bob", 80.0)]
    print("  ✓ falkor_list_edges")

def test_falkor_duplicate_edge():
    store, graph, _ = make_falkor()
    graph.respond("RETURN count(r)", [[1]])
    with pytest.raises(InvalidInput) as e:
        store.create_edge("org1", "alice", "bob", 50)
    assert e.value.code == ErrorCode.E_DUPLICATE
    print("  ✓ falkor_duplicate_edge")

def test_falkor_create_edge_missing_node():
    store, graph, _ = make_falkor()
    with pytest.raises(NotFound):
        store.create_edge("org1", "alice", "ghost", 50)
    print("  ✓ falkor_create_edge_missing_node")

def test_falkor_commit_scores_single_query():
    store, graph, _ = make_falkor()
    before = len(graph.queries)
    store.commit_scores("org1", [ScoreUpdate("alice", 10.0, 8.0, 1.5, 1, event_bonus=2.0),
                                 ScoreUpdate("bob", 3.0, 3.0, 0.0, 2)],
                        calculated_at=42)
    assert len(graph.queries) == before + 1
    q, params = graph.queries[-1]
    assert q.startswith("UNWIND $rows")
    assert params["stamp"] == 42 and params["tenant"] == "org1"
    assert params["rows"][0] == {"id": "alice", "score": 10.0, "raw_score": 8.0,
                                 "volatility": 1.5, "rank": 1, "event_bonus": 2.0}
    store.commit_scores("org1", [])
    assert len(graph.queries) == before + 1
    print("  ✓ falkor_commit_scores_single_query")

def test_falkor_commit_scores_marks_events_in_same_query():
    store, graph, _ = make_falkor()
    before = len(graph.queries)
    store.commit_scores("org1", [ScoreUpdate("alice", 15.0, 0.0, 0.0, 1, event_bonus=15.0)],
                        calculated_at=9, processed_event_ids=["ev_1", "ev_2"])
    assert len(graph.queries) == before + 1
    q, params = graph.queries[-1]
    assert "SET n.score" in q and "SET e.processed_at = $stamp" in q
    assert params["event_ids"] == ["ev_1", "ev_2"]
    print("  ✓ falkor_commit_scores_marks_events_in_same_query")

def test_falkor_node_id_owned_by_one_tenant():
    store, graph, _ = make_falkor()
    graph.respond("RETURN n.tenant", [["org2"]])
    with pytest.raises(InvalidInput) as e:
        store.add_node("org1", "alice", "Alice")
    assert e.value.code == ErrorCode.E_DUPLICATE
    assert not any(q.startswith("MERGE") for q, _ in graph.queries)

    store, graph, _ = make_falkor()
    store.add_node("org1", "alice", "Alice")
    q, params = graph.queries[-1]
    assert "{_id: $id, tenant: $tenant}" in q
    assert params["tenant"] == "org1"
    print("  ✓ falkor_node_id_owned_by_one_tenant")

def test_falkor_errors_become_storage_failure():
    store, graph, _ = make_falkor()
    graph.fail_on = "MATCH"
    with pytest.raises(StorageFailure) as e:
        store.list_nodes("org1")
    assert e.value.retryable
    print("  ✓ falkor_errors_become_storage_failure")

def test_falkor_get_node_not_found():
    store, _, _ = make_falkor()
    with pytest.raises(NotFound):
        store.get_node("nobody")
    print("  ✓ falkor_get_node_not_found")


if __name__ == "__main__":
    print("\nIn-memory store:")
    test_satisfies_protocol()
    test_nodes_scoped_by_tenant()
    test_create_edge_validation()
    test_create_edge_cross_tenant_rejected()
    test_duplicate_edge()
    test_edge_update_and_delete()
    test_reads_are_copies()
    test_events_default_delta_and_order()
    test_mark_processed_is_idempotent()
    test_commit_scores_history()
    test_node_id_owned_by_one_tenant()
    test_edge_and_node_ids_do_not_collide()
    test_commit_scores_marks_events()
    test_commit_scores_rejects_foreign_event()
    test_commit_scores_all_or_nothing()

    print("\nFalkorDB store:")
    test_falkor_connects_and_indexes()
    test_falkor_list_nodes()
    test_falkor_list_edges()
    test_falkor_duplicate_edge()
    test_falkor_create_edge_missing_node()
    test_falkor_commit_scores_single_query()
    test_falkor_commit_scores_marks_events_in_same_query()
    test_falkor_node_id_owned_by_one_tenant()
    test_falkor_errors_become_storage_failure()
    test_falkor_get_node_not_found()

    print("\n" + "=" * 50)
    print("ALL STORE TESTS PASSED ✓")
    print("=" * 50)
