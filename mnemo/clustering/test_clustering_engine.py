from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from mnemo.clustering.agglomeration import agglomerate, seed_groups
from mnemo.clustering.clustering_engine import SemanticClusteringEngine, quality_level
from mnemo.core.progress import CancellationToken, ProgressChannel
from mnemo.graph.graph_models import ClusterNode, EventNode
from mnemo.services.llm_service import LLMService
from mnemo.vector.embedding_index import EmbeddingIndex

T0 = datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc)

# alpha.beta = 0.92 (same group at 0.85); gamma is ~0.3 from both
VECTORS = {
    "alpha": [1.0, 0.0, 0.0],
    "beta": [0.92, 0.3919, 0.0],
    "gamma": [0.3, 0.06124, 0.9520],
}


@pytest.fixture
def engine(store, keyword_embedder):
    index = EmbeddingIndex(store, embed_fn=keyword_embedder(VECTORS), throttle_seconds=0)
    return SemanticClusteringEngine(store, index, llm=LLMService())


def _add(store, *names, start=None):
    for name in names:
        store.upsert_event(EventNode(id=f"e_{name}", name=name, type="note", start_time=start))


def _assert_assignments_valid(store):
    cluster_ids = {c.id for c in store.all_clusters()}
    for event in store.query_events():
        if event.cluster_id is not None:
            assert event.cluster_id in cluster_ids


def test_agglomerate_merges_only_above_threshold():
    vectors = [np.array(v) for v in VECTORS.values()]
    groups = agglomerate(seed_groups(vectors), 0.85)
    assert [g.members for g in groups] == [[0, 1], [2]]
    capped = agglomerate(seed_groups(vectors), 0.85, max_size=1)
    assert [g.members for g in capped] == [[0], [1], [2]]
    assert [g.members for g in agglomerate(seed_groups(vectors), 0.2)] == [[0, 1, 2]]


def test_cluster_init_all_groups_similar_events(store, engine):
    _add(store, "alpha", "beta", "gamma")
    progress = ProgressChannel()
    result = engine.cluster_init_all(progress=progress)

    assert result["success"] is True
    assert result["events_processed"] == 3
    assert result["stage2_clusters"] == 2
    clusters = engine.get_all_clusters()
    assert sorted(c.member_count for c in clusters) == [1, 2]
    alpha, beta, gamma = (store.get_event(f"e_{n}") for n in ("alpha", "beta", "gamma"))
    assert alpha.cluster_id == beta.cluster_id
    assert gamma.cluster_id not in (None, alpha.cluster_id)
    singleton = store.get_cluster(gamma.cluster_id)
    assert singleton.name == "gamma"
    assert store.get_cluster(alpha.cluster_id).name == "note·alpha"
    _assert_assignments_valid(store)
    assert engine.get_clustering_history()[-1].clusters_created == 2
    assert any("Stage 1" in m for m in progress.messages())


def test_events_without_embedding_are_reported_unresolved(store, engine):
    _add(store, "alpha", "beta", "delta")
    result = engine.cluster_init_all()
    assert result["success"] is True
    assert result["unresolved_outliers"] == ["e_delta"]
    assert result["embedding_failures"][0]["id"] == "e_delta"
    assert store.get_event("e_delta").cluster_id is None
    assert engine.get_unresolved_outliers() == ["e_delta"]
    _assert_assignments_valid(store)


def test_cluster_init_all_without_embeddable_events_fails(store, engine):
    _add(store, "delta")
    result = engine.cluster_init_all()
    assert result["success"] is False
    assert "no events" in result["error"]


def test_cluster_titles_come_from_llm_when_available(store, keyword_embedder):
    index = EmbeddingIndex(store, embed_fn=keyword_embedder(VECTORS), throttle_seconds=0)
    engine = SemanticClusteringEngine(store, index, llm=LLMService(lambda prompt: '"Morning notes"\n'))
    _add(store, "alpha", "beta")
    engine.cluster_init_all()
    assert [c.name for c in engine.get_all_clusters()] == ["Morning notes"]


def test_quality_metrics(store, engine):
    assert engine.get_clustering_quality_metrics()["total_clusters"] == 0
    _add(store, "alpha", "beta", "gamma")
    engine.cluster_init_all()
    metrics = engine.get_clustering_quality_metrics()
    assert metrics["total_clusters"] == 2
    assert metrics["outlier_ratio"] == 0.0
    assert metrics["avg_inter_distance"] == pytest.approx(0.694, abs=0.01)
    assert 0.0 <= metrics["quality_score"] <= 1.0
    assert metrics["quality_level"] == "good"


def test_single_cluster_has_zero_inter_distance(store, engine):
    _add(store, "alpha", "beta")
    engine.cluster_init_all()
    metrics = engine.get_clustering_quality_metrics()
    assert metrics["total_clusters"] == 1
    assert metrics["avg_inter_distance"] == 0.0


def test_quality_levels():
    assert quality_level(0.85) == "good"
    assert quality_level(0.6) == "acceptable"
    assert quality_level(0.1) == "poor"


def test_organize_graph_adds_new_event_to_existing_cluster(store, engine):
    _add(store, "alpha", "beta", "gamma")
    engine.cluster_init_all()
    store.upsert_event(EventNode(id="e_alpha2", name="alpha again", type="note"))

    result = engine.organize_graph()
    assert result["success"] is True
    assert result["events_processed"] == 1
    assert result["merged_events"] == 1
    assert result["clusters_created"] == 0
    assert store.get_event("e_alpha2").cluster_id == store.get_event("e_alpha").cluster_id
    assert store.get_cluster(store.get_event("e_alpha").cluster_id).member_count == 3


def test_organize_graph_with_nothing_to_do(store, engine):
    _add(store, "alpha")
    engine.cluster_init_all()
    result = engine.organize_graph()
    assert result["success"] is True
    assert result["events_processed"] == 0


def test_cancelled_run_keeps_previous_assignments(store, engine):
    _add(store, "alpha", "beta", "gamma")
    engine.cluster_init_all()
    before = {e.id: e.cluster_id for e in store.query_events()}
    store.upsert_event(EventNode(id="e_beta2", name="beta two", type="note"))

    token = CancellationToken()
    token.cancel()
    result = engine.organize_graph(cancel=token)
    assert result["success"] is False
    assert result["cancelled"] is True
    after = {e.id: e.cluster_id for e in store.query_events() if e.id in before}
    assert after == before
    _assert_assignments_valid(store)


def test_cluster_by_date_range(store, engine):
    _add(store, "alpha", "beta", "gamma", start=T0)
    store.upsert_event(EventNode(id="e_old", name="alpha old", type="note", start_time=T0 - timedelta(days=90)))
    result = engine.cluster_by_date_range(T0 - timedelta(days=1), T0 + timedelta(days=1))
    assert result["success"] is True
    assert result["events_processed"] == 3
    assert result["new_clusters"] == 2
    for name in ("alpha", "beta", "gamma"):
        assert store.get_event(f"e_{name}").cluster_id is not None
    assert store.get_event("e_old").cluster_id is None
    _assert_assignments_valid(store)


def test_cluster_by_date_range_failures(store, engine):
    assert engine.cluster_by_date_range(T0, T0 - timedelta(days=1))["success"] is False
    empty = engine.cluster_by_date_range(T0, T0 + timedelta(days=1))
    assert empty["success"] is False
    assert "no events" in empty["error"]


def test_outliers_are_reassigned_or_left_unclustered(store, engine):
    for event_id, vec in (("a", [1, 0, 0]), ("x", [0, 0, 1]), ("y", [0, 1, 0]), ("g", [0, 0, 1])):
        store.upsert_event(EventNode(id=event_id, name=event_id, type="note"))
        store.set_event_embedding(event_id, vec)
    store.put_cluster(ClusterNode(id="c1", name="first", member_count=3, embedding=[1.0, 0.0, 0.0]))
    store.put_cluster(ClusterNode(id="c2", name="second", member_count=1, embedding=[0.0, 0.0, 1.0]))
    for event_id, cid in (("a", "c1"), ("x", "c1"), ("y", "c1"), ("g", "c2")):
        store.set_event_cluster(event_id, cid)

    result = engine.detect_and_reassign_outliers()
    assert result["success"] is True
    assert result["outliers_detected"] == 2
    assert result["reassigned"] == 1
    assert result["new_singletons"] == 1
    assert store.get_event("x").cluster_id == "c2"
    assert store.get_event("y").cluster_id is None
    assert "y" in engine.get_unresolved_outliers()
    assert store.get_cluster("c1").member_count == 1
    assert store.get_cluster("c2").member_count == 2
    _assert_assignments_valid(store)


def test_clear_all_clusters(store, engine):
    _add(store, "alpha", "beta", "gamma")
    engine.cluster_init_all()
    result = engine.clear_all_clusters()
    assert result["success"] is True
    assert result["clusters_removed"] == 2
    assert result["events_cleared"] == 3
    assert engine.get_all_clusters() == []
    assert engine.get_clustering_history() == []
    assert all(e.cluster_id is None for e in store.query_events())


def test_outlier_at_merge_threshold_is_reassigned(store, keyword_embedder):
    index = EmbeddingIndex(store, embed_fn=keyword_embedder(VECTORS), throttle_seconds=0)
    engine = SemanticClusteringEngine(store, index, merge_threshold=1.0)
    for event_id, vec in (("a", [1, 0, 0]), ("x", [0, 0, 1]), ("g", [0, 0, 1])):
        store.upsert_event(EventNode(id=event_id, name=event_id, type="note"))
        store.set_event_embedding(event_id, vec)
    store.put_cluster(ClusterNode(id="c1", name="first", member_count=2, embedding=[1.0, 0.0, 0.0]))
    store.put_cluster(ClusterNode(id="c2", name="second", member_count=1, embedding=[0.0, 0.0, 1.0]))
    for event_id, cid in (("a", "c1"), ("x", "c1"), ("g", "c2")):
        store.set_event_cluster(event_id, cid)

    result = engine.detect_and_reassign_outliers()
    assert result["reassigned"] == 1
    assert store.get_event("x").cluster_id == "c2"
