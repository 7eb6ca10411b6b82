"""Tests for InfluenceService: cached views, analytics and edge mutations."""

import pytest

from influence_graph.cache.cache import CacheKeys, ResultCache
from influence_graph.core.errors import ErrorCode, InvalidInput, NotFound
from influence_graph.core.types import MS_PER_DAY, UpdateType
from influence_graph.interface.service import ANALYTICS_KINDS, InfluenceService
from influence_graph.notify.channel import MemoryChannel
from influence_graph.store.memory_store import InMemoryGraphStore


NOW = 1_700_000_000_000


def clock():
    return NOW


def make_service():
    store = InMemoryGraphStore()
    cache = ResultCache(clock=clock)
    channel = MemoryChannel()
    service = InfluenceService(store, cache, channel=channel, clock=clock)
    store.add_node("org1", "alice", "Alice", group_id="eng", group_name="Engineering")
    store.add_node("org1", "bob", "Bob", group_id="eng", group_name="Engineering")
    store.add_node("org1", "carol", "Carol", group_id="ops", group_name="Operations")
    store.create_edge("org1", "alice", "bob", 80, created_at=NOW)
    store.create_edge("org1", "bob", "carol", 50, created_at=NOW - 2 * MS_PER_DAY)
    return service, store, cache, channel


# ============================================================
# Graph view
# ============================================================

def test_graph_view():
    service, _, _, _ = make_service()
    view = service.compute_graph_view("org1")
    assert view["meta"] == {"totalNodes": 3, "totalEdges": 2, "lastUpdated": NOW}
    assert [e["weight"] for e in view["edges"]] == [80, 50]
    assert view["edges"][0]["decayedWeight"] == 80
    assert abs(view["edges"][1]["decayedWeight"] - 50 * 0.95 ** 2) < 1e-9
    assert view["propagation"] is None
    assert "communities" not in view
    print("  ✓ graph_view")

def test_graph_view_propagation_and_communities():
    service, _, _, _ = make_service()
    view = service.compute_graph_view("org1", include_propagation=True,
                                      include_communities=True)
    alice = view["propagation"]["alice"]
    assert alice["directInfluence"] == 80
    assert alice["paths"][0] == {"path": ["alice"], "weight": 1.0, "depth": 0}
    assert set(view["communities"]) == {"alice", "bob", "carol"}
    assert view["communityCount"] >= 1
    print("  ✓ graph_view_propagation_and_communities")

def test_graph_view_cached():
    service, store, cache, _ = make_service()
    first = service.compute_graph_view("org1")
    store.add_node("org1", "dan", "Dan")
    assert service.compute_graph_view("org1") == first
    assert cache.stats().hits == 1
    print("  ✓ graph_view_cached")

def test_graph_view_rejects_bad_tenant():
    service, _, _, _ = make_service()
    with pytest.raises(InvalidInput) as e:
        service.compute_graph_view("")
    assert e.value.code == ErrorCode.E_TENANT
    print("  ✓ graph_view_rejects_bad_tenant")

def test_node_detail():
    service, _, _, _ = make_service()
    detail = service.node_detail("org1", "bob")
    assert [e["source"] for e in detail["incoming"]] == ["alice"]
    assert [e["target"] for e in detail["outgoing"]] == ["carol"]
    with pytest.raises(NotFound):
        service.node_detail("org2", "bob")
    print("  ✓ node_detail")


# ============================================================
# Analytics
# ============================================================

def test_every_analytics_kind():
    service, _, _, _ = make_service()
    service.recompute("org1")
    for kind in ANALYTICS_KINDS:
        result = service.compute_analytics("org1", kind)
        assert result["lastUpdated"] == NOW
    print("  ✓ every_analytics_kind")

def test_analytics_overview_and_heatmap():
    service, _, _, _ = make_service()
    service.recompute("org1")
    overview = service.compute_analytics("org1", "overview")
    assert overview["overview"]["totalNodes"] == 3
    assert overview["overview"]["totalGroups"] == 2
    assert overview["topInfluencers"][0]["id"] == "alice"
    heatmap = service.compute_analytics("org1", "heatmap")
    assert heatmap["matrix"] == {"eng": {"ops": 50.0}}
    assert heatmap["heatmap"][0]["targetName"] == "Operations"
    print("  ✓ analytics_overview_and_heatmap")

def test_analytics_top():
    service, _, _, _ = make_service()
    service.recompute("org1")
    top = service.compute_analytics("org1", "top", limit=2)
    assert [r["id"] for r in top["topInfluencers"]] == ["alice", "bob"]
    assert top["topInfluencers"][0]["rank"] == 1
    assert top["topInfluencers"][0]["outgoingEdges"] == 1
    assert top["topInfluencers"][1]["incomingEdges"] == 1
    print("  ✓ analytics_top")

def test_analytics_trends_and_volatility():
    service, _, _, _ = make_service()
    service.record_event("org1", "carol", "PROJECT_SUCCESS")
    service.recompute("org1")
    service.recompute("org1")
    trends = service.compute_analytics("org1", "trends")
    (bucket,) = trends["eventsByDate"].values()
    assert bucket == {"total": 15.0, "types": {"PROJECT_SUCCESS": 1}}
    assert len(trends["recentScoreChanges"]) == 3
    vol = service.compute_analytics("org1", "volatility")
    assert all(r["volatility"] == 0 for r in vol["volatility"])
    assert len(vol["volatility"][0]["scoreHistory"]) == 2
    print("  ✓ analytics_trends_and_volatility")

def test_analytics_rejects_unknown():
    service, _, _, _ = make_service()
    with pytest.raises(InvalidInput):
        service.compute_analytics("org1", "gossip")
    with pytest.raises(InvalidInput):
        service.compute_analytics("org1", "top", metric="charisma")
    print("  ✓ analytics_rejects_unknown")

def test_recompute_refreshes_analytics():
    service, _, _, _ = make_service()
    before = service.compute_analytics("org1", "overview")
    assert before["overview"]["totalInfluence"] == 0
    service.recompute("org1")
    after = service.compute_analytics("org1", "overview")
    assert after["overview"]["totalInfluence"] > 0
    print("  ✓ recompute_refreshes_analytics")


# ============================================================
# Mutations
# ============================================================

def test_create_edge_invalidates_and_notifies():
    service, _, cache, channel = make_service()
    service.compute_graph_view("org1")
    service.compute_analytics("org1", "top")
    edge = service.create_edge("org1", "carol", "alice", 30, context="launch")
    assert edge["source"] == "carol" and edge["context"] == "launch"
    assert not cache.has(CacheKeys.graph("org1"))
    assert not cache.has(CacheKeys.top("org1", "total", 10))
    assert channel.messages("org1")[-1].type == UpdateType.EDGE_CREATED
    assert len(service.compute_graph_view("org1")["edges"]) == 3
    print("  ✓ create_edge_invalidates_and_notifies")

def test_top_edge_counts_follow_edge_changes():
    service, _, _, _ = make_service()

    def counts():
        top = service.compute_analytics("org1", "top")["topInfluencers"]
        return {r["id"]: r["outgoingEdges"] for r in top}

    assert counts()["carol"] == 0
    edge = service.create_edge("org1", "carol", "alice", 30)
    assert counts()["carol"] == 1
    service.delete_edge(edge["id"])
    assert counts()["carol"] == 0
    print("  ✓ top_edge_counts_follow_edge_changes")

def test_add_node_refreshes_graph_view():
    service, _, _, _ = make_service()
    assert service.compute_graph_view("org1")["meta"]["totalNodes"] == 3
    node = service.add_node("org1", "dan", "Dan", group_id="ops", group_name="Operations")
    assert node["id"] == "dan" and node["groupName"] == "Operations"
    view = service.compute_graph_view("org1")
    assert view["meta"]["totalNodes"] == 4
    assert service.compute_analytics("org1", "top")["topInfluencers"][-1]["id"] == "dan"
    with pytest.raises(InvalidInput) as e:
        service.add_node("org2", "dan", "Other Dan")
    assert e.value.code == ErrorCode.E_DUPLICATE
    print("  ✓ add_node_refreshes_graph_view")

def test_create_edge_validation_surfaces():
    service, _, _, channel = make_service()
    with pytest.raises(InvalidInput) as e:
        service.create_edge("org1", "alice", "alice", 10)
    assert e.value.code == ErrorCode.E_SELF_EDGE
    with pytest.raises(InvalidInput) as e:
        service.create_edge("org1", "alice", "bob", 10)
    assert e.value.code == ErrorCode.E_DUPLICATE
    assert channel.messages() == []
    print("  ✓ create_edge_validation_surfaces")

def test_update_and_delete_edge():
    service, store, _, channel = make_service()
    edge_id = store.list_edges("org1")[0].id
    updated = service.update_edge(edge_id, weight=10)
    assert updated["weight"] == 10
    result = service.delete_edge(edge_id)
    assert result["edgeId"] == edge_id
    kinds = [m.type for m in channel.messages("org1")]
    assert kinds == [UpdateType.EDGE_UPDATED, UpdateType.EDGE_DELETED]
    with pytest.raises(NotFound):
        service.delete_edge(edge_id)
    print("  ✓ update_and_delete_edge")

def test_cache_stats():
    service, _, _, _ = make_service()
    service.compute_graph_view("org1")
    service.compute_graph_view("org1")
    assert service.cache_stats() == {"hits": 1, "misses": 1, "size": 1, "hitRate": 0.5}
    print("  ✓ cache_stats")


if __name__ == "__main__":
    print("\nGraph view:")
    test_graph_view()
    test_graph_view_propagation_and_communities()
    test_graph_view_cached()
    test_graph_view_rejects_bad_tenant()
    test_node_detail()

    print("\nAnalytics:")
    test_every_analytics_kind()
    test_analytics_overview_and_heatmap()
    test_analytics_top()
    test_analytics_trends_and_volatility()
    test_analytics_rejects_unknown()
    test_recompute_refreshes_analytics()

    print("\nMutations:")
    test_create_edge_invalidates_and_notifies()
    test_top_edge_counts_follow_edge_changes()
    test_add_node_refreshes_graph_view()
    test_create_edge_validation_surfaces()
    test_update_and_delete_edge()
    test_cache_stats()

    print("\n" + "=" * 50)
    print("ALL SERVICE TESTS PASSED ✓")
    print("=" * 50)
