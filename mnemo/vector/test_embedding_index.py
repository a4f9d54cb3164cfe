import math
import random

import numpy as np
import pytest

from mnemo.core.errors import EmbeddingUnavailable
from mnemo.core.progress import CancellationToken, ProgressChannel
from mnemo.graph.graph_models import EventNode
from mnemo.vector.embedder import embed_text
from mnemo.vector.embedding_index import EmbeddingIndex, event_embedding_text
from mnemo.vector.vector_index import cosine_similarity, top_k_by_cosine

VECTORS = {
    "alpha": [1.0, 0.0, 0.0],
    "beta": [0.6, 0.8, 0.0],
    "gamma": [0.0, 0.0, 1.0],
}


@pytest.fixture
def index(store, keyword_embedder):
    return EmbeddingIndex(store, embed_fn=keyword_embedder(VECTORS), batch_size=2, throttle_seconds=0)


def _add(store, *names):
    for name in names:
        store.upsert_event(EventNode(id=f"e_{name}", name=name, type="note"))


def test_similarity_is_symmetric():
    rng = random.Random(3)
    for _ in range(50):
        a = [rng.uniform(-1, 1) for _ in range(8)]
        b = [rng.uniform(-1, 1) for _ in range(8)]
        assert EmbeddingIndex.similarity(a, b) == EmbeddingIndex.similarity(b, a)
        assert -1.0 <= cosine_similarity(a, b) <= 1.0


def test_similarity_degenerate_inputs():
    assert cosine_similarity([0, 0, 0], [1, 0, 0]) == 0.0
    assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0
    assert cosine_similarity([], []) == 0.0


def test_top_k_keeps_corpus_order_on_ties():
    corpus = [("b", [1.0, 0.0]), ("a", [1.0, 0.0]), ("c", [0.0, 1.0]), ("d", [2.0, 0.0])]
    ranked = top_k_by_cosine([1.0, 0.0], corpus)
    assert [item for item, _ in ranked] == ["b", "a", "d", "c"]
    assert top_k_by_cosine([1.0, 0.0], corpus, 2) == ranked[:2]


@pytest.mark.parametrize("bad", [None, [], [0.0, 0.0], [math.nan, 1.0]])
def test_embed_rejects_degenerate_vectors(store, bad):
    index = EmbeddingIndex(store, embed_fn=lambda text: bad)
    with pytest.raises(EmbeddingUnavailable):
        index.embed("anything", item_id="x")


def test_embed_wraps_collaborator_errors(store):
    def boom(text):
        raise RuntimeError("offline")

    with pytest.raises(EmbeddingUnavailable) as exc:
        EmbeddingIndex(store, embed_fn=boom).embed("hi", item_id="e1")
    assert exc.value.to_dict() == {"id": "e1", "reason": "collaborator error: offline"}


def test_event_embedding_text_includes_participants():
    event = EventNode(id="e", name="Dinner", type="social", location="Rome", description="pasta")
    assert event_embedding_text(event, ["Anna"]) == "Dinner social pasta Rome Anna"


def test_generate_for_all_is_idempotent(store, index):
    _add(store, "alpha", "beta", "gamma")
    first = index.generate_for_all()
    assert first["generated"] == 3
    before = {e.id: e.embedding for e in store.query_events()}

    second = index.generate_for_all()
    assert second["generated"] == 0
    assert second["skipped"] == 3
    assert {e.id: e.embedding for e in store.query_events()} == before


def test_generate_for_all_records_failures_per_event(store, index):
    _add(store, "alpha", "unknown", "beta")
    progress = ProgressChannel()
    result = index.generate_for_all(progress=progress)
    assert result["generated"] == 2
    assert result["failed"] == 1
    assert result["failures"][0]["id"] == "e_unknown"
    assert store.get_event("e_unknown").embedding is None
    assert any("Embedded" in m for m in progress.messages())


def test_generate_for_all_stops_when_cancelled(store, index):
    _add(store, "alpha", "beta")
    token = CancellationToken()
    token.cancel()
    result = index.generate_for_all(cancel=token)
    assert result["cancelled"] is True
    assert result["generated"] == 0


def test_joint_embedding_weights_title_and_content(store):
    vectors = {"title-only": [1.0, 0.0], "rest": [0.0, 1.0]}

    def fake(text):
        return vectors["title-only"] if text == "title-only" else vectors["rest"]

    index = EmbeddingIndex(store, embed_fn=fake)
    event = EventNode(id="e", name="title-only", type="rest")
    vec = index.joint_embedding(event)
    expected = np.array([0.7, 0.3]) / np.linalg.norm([0.7, 0.3])
    assert np.allclose(vec, expected, atol=1e-6)


def test_search_events_by_text(store, index):
    _add(store, "alpha", "beta", "gamma", "unknown")
    index.generate_for_all()
    hits = index.search_events_by_text("alpha please")
    assert [h["event"].id for h in hits] == ["e_alpha", "e_beta"]
    assert hits[0]["similarity"] >= hits[1]["similarity"]
    assert index.search_events_by_text("   ") == []


def test_hash_embedder_is_deterministic():
    a = embed_text("same text", dim=16)
    b = embed_text("same text", dim=16)
    assert a.shape == (16,)
    assert np.allclose(a, b)
    assert np.linalg.norm(a) == pytest.approx(1.0, abs=1e-5)


def test_hash_embedder_collapses_whitespace_and_skips_blank():
    assert np.allclose(embed_text("same  text\n", dim=16), embed_text("same text", dim=16))
    assert embed_text("  \t", dim=16) is None
