import json

import pytest
from fastapi.testclient import TestClient

from mnemo.cache.cache_models import CacheCategory
from mnemo.cache.categorized_cache import CategorizedCache
from mnemo.core.context import KnowledgeContext
from mnemo.main import create_app

VECTORS = {
    "alpha": [1.0, 0.0, 0.0],
    "beta": [0.92, 0.3919, 0.0],
    "gamma": [0.3, 0.06124, 0.9520],
}

DOCUMENT = {
    "nodeEntities": [
        {"id": "anna", "label": "Anna", "type": "person"},
        {"id": "lonely", "label": "Lonely", "type": "person"},
    ],
    "eventNodeEntities": [
        {"id": "e_alpha", "title": "alpha", "category": "note", "timestamp": "2024-06-01 10:00"},
        {"id": "e_beta", "title": "beta", "category": "note", "timestamp": "2024-06-02 10:00"},
        {"id": "e_gamma", "title": "gamma", "category": "note", "timestamp": "2024-06-03 10:00"},
    ],
    "eventRelationEntities": [
        {"id": 1, "eventId": "e_alpha", "entityId": "anna", "role": "participant"},
        {"id": "x1", "eventId": "e_beta", "entityId": "anna", "role": "participant"},
    ],
}


@pytest.fixture
def context(keyword_embedder):
    ctx = KnowledgeContext.build(sqlite_path=":memory:", embed_fn=keyword_embedder(VECTORS), job_workers=1)
    yield ctx
    ctx.close()


@pytest.fixture
def client(context):
    with TestClient(create_app(context)) as c:
        yield c


def _run_job(client, context, operation, body=None):
    response = client.post(f"/api/v1/knowledge/jobs/{operation}", json=body)
    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert context.jobs.wait_for_completion(timeout=10)
    return client.get(f"/api/v1/knowledge/jobs/{job_id}").json()


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["graph"]["events"] == 0


def test_routes_need_a_context():
    client = TestClient(create_app())
    assert client.get("/api/v1/knowledge/focus").status_code == 503


def test_utterance_pipeline(client):
    response = client.post("/api/v1/knowledge/utterances", json={"text": "I like hiking in the mountains"})
    assert response.status_code == 200
    assert response.json()["intent"] == "casual"

    assert client.get("/api/v1/knowledge/focus").json()[0].endswith("(preference)")
    items = client.get("/api/v1/knowledge/cache/items", params={"category": "conversation_grasp"}).json()
    assert {i["key"] for i in items} == {"topic:hiking", "topic:mountains"}
    assert client.get("/api/v1/knowledge/cache/items", params={"category": "bogus"}).status_code == 422
    assert client.get("/api/v1/knowledge/conversation").json()["utterance_count"] == 1
    assert client.get("/api/v1/knowledge/cache/performance").json()["active_focuses"] == 1
    assert client.get("/api/v1/knowledge/personal-info").json()["active_focuses_count"] == 1


def test_empty_utterance_is_rejected(client):
    assert client.post("/api/v1/knowledge/utterances", json={"text": ""}).status_code == 422


def test_profile_fact(client):
    response = client.post("/api/v1/knowledge/cache/profile",
                           json={"key": "profile:name", "text": "The user is called Sam"})
    assert response.json() == {"stored": "profile:name", "evicted": None}
    items = client.get("/api/v1/knowledge/cache/items", params={"category": "personal_info"}).json()
    assert items[0]["priority"] == "user_profile"


def test_profile_fact_rejected_when_category_is_full(client, context):
    context.service.cache = CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 1})
    first = client.post("/api/v1/knowledge/cache/profile", json={"key": "profile:name", "text": "Sam"})
    assert first.status_code == 200
    second = client.post("/api/v1/knowledge/cache/profile", json={"key": "profile:city", "text": "Rome"})
    assert second.status_code == 409
    assert second.json()["detail"]["category"] == "personal_info"
    assert second.json()["detail"]["capacity"] == 1


def test_search_reports_unembeddable_query(client, context):
    _run_job(client, context, "import", {"document": DOCUMENT})
    response = client.get("/api/v1/knowledge/events/search", params={"q": "zzz"})
    assert response.status_code == 503
    assert response.json()["detail"]["id"] == "<query>"


def test_import_search_and_integrity(client, context):
    job = _run_job(client, context, "import", {"document": DOCUMENT})
    assert job["status"] == "completed"
    assert job["result"]["events_imported"] == 3
    assert job["result"]["skipped"] == 1

    hits = client.get("/api/v1/knowledge/events/search", params={"q": "alpha"}).json()
    assert [h["event"]["id"] for h in hits] == ["e_alpha", "e_beta"]

    integrity = client.get("/api/v1/knowledge/graph/integrity").json()
    assert integrity["healthy"] is False
    assert integrity["orphaned_nodes"] == 1

    refused = client.delete("/api/v1/knowledge/graph/orphans")
    assert refused.status_code == 400
    assert refused.json()["detail"]["analysis"]["orphaned_count"] == 1
    assert client.delete("/api/v1/knowledge/graph/orphans", params={"confirm": True}).json() == {"deleted": 1}
    assert client.get("/api/v1/knowledge/graph/integrity").json()["healthy"] is True


def test_clustering_jobs(client, context):
    _run_job(client, context, "import", {"document": DOCUMENT})
    job = _run_job(client, context, "cluster_init_all")
    assert job["status"] == "completed"
    assert job["result"]["success"] is True
    assert any("Stage 1" in line for line in job["progress"])

    clusters = client.get("/api/v1/knowledge/clusters").json()
    assert sorted(c["member_count"] for c in clusters) == [1, 2]
    assert client.get("/api/v1/knowledge/clusters/quality").json()["total_clusters"] == 2

    ranged = _run_job(client, context, "cluster_by_date_range",
                      {"start": "2024-06-01T00:00:00Z", "end": "2024-06-02T23:59:00Z"})
    assert ranged["result"]["success"] is True
    assert ranged["result"]["kept_events"] == 2

    cleared = _run_job(client, context, "clear_clusters")
    assert cleared["result"]["clusters_removed"] == 2
    assert client.get("/api/v1/knowledge/clusters").json() == []


def test_job_validation(client):
    assert client.post("/api/v1/knowledge/jobs/launch_rockets").status_code == 404
    assert client.post("/api/v1/knowledge/jobs/cluster_by_date_range", json={}).status_code == 422
    assert client.post("/api/v1/knowledge/jobs/import", json={}).status_code == 422
    assert client.post("/api/v1/knowledge/jobs/ingest_history", json={}).status_code == 422
    assert client.get("/api/v1/knowledge/jobs/missing").status_code == 404
    assert client.delete("/api/v1/knowledge/jobs/missing").status_code == 409


def test_job_listing(client, context):
    _run_job(client, context, "generate_embeddings")
    listing = client.get("/api/v1/knowledge/jobs").json()
    assert listing["stats"]["completed"] == 1
    assert listing["jobs"][0]["name"] == "generate_embeddings"
    assert "result" not in listing["jobs"][0]


def test_ingest_history_job(keyword_embedder):
    extraction = {"events": [{"name": "Dinner", "type": "social", "participants": ["Anna"]}], "entities": []}
    ctx = KnowledgeContext.build(sqlite_path=":memory:", embed_fn=keyword_embedder(VECTORS),
                                 llm_complete=lambda prompt: json.dumps(extraction), job_workers=1)
    try:
        with TestClient(create_app(ctx)) as client:
            job = _run_job(client, ctx, "ingest_history", {
                "utterances": [
                    {"text": "dinner with Anna", "time": "2024-06-01T19:00:00Z"},
                    {"text": "another dinner with Anna", "time": "2024-06-08T19:00:00Z"},
                ],
                "context_id": "history",
            })
        assert job["status"] == "completed"
        assert job["result"]["items_processed"] == 2
        assert job["result"]["entities"] == ["anna_person"]
        assert len(ctx.store.query_events()) == 2
    finally:
        ctx.close()
