import json
from datetime import datetime, timedelta, timezone

import pytest

from mnemo.cache.cache_models import CacheCategory
from mnemo.cache.categorized_cache import CategorizedCache
from mnemo.clustering.clustering_engine import SemanticClusteringEngine
from mnemo.conversation.context_tracker import ConversationContextTracker
from mnemo.focus.focus_models import FocusPoint, FocusType
from mnemo.focus.focus_tracker import PersonalFocusTracker
from mnemo.graph.graph_models import EventEntityRelation, EventNode, Node
from mnemo.graph.ingestion import KnowledgeIngestor
from mnemo.personal.knowledge_service import PersonalKnowledgeService, focus_priority
from mnemo.personal.personal_retrieval import PersonalRetriever, is_user_related
from mnemo.services.llm_service import LLMService
from mnemo.vector.embedding_index import EmbeddingIndex

T0 = datetime(2024, 7, 1, 9, 0, tzinfo=timezone.utc)


def _seed_graph(store):
    store.upsert_node(Node(id="hiking_pref", name="hiking", type="user_preference"))
    store.upsert_event(EventNode(id="trip", name="Hiking trip", type="outdoor", start_time=T0 - timedelta(days=3)))
    store.upsert_relation(EventEntityRelation(event_id="trip", entity_id="hiking_pref", role="related_concept"))


def _service(store, keyword_embedder, cache=None, llm=None):
    index = EmbeddingIndex(store, embed_fn=keyword_embedder({"hiking": [1.0, 0.0], "dinner": [0.0, 1.0]}),
                           throttle_seconds=0)
    return PersonalKnowledgeService(
        store=store,
        index=index,
        engine=SemanticClusteringEngine(store, index, llm=LLMService()),
        cache=cache,
        conversation=ConversationContextTracker(clock=lambda: T0),
        focus=PersonalFocusTracker(clock=lambda: T0),
        ingestor=KnowledgeIngestor(store, llm=llm),
    )


@pytest.fixture
def service(store, keyword_embedder):
    _seed_graph(store)
    return _service(store, keyword_embedder)


def test_user_related_nodes():
    assert is_user_related(Node(name="hiking", type="user_preference"))
    assert is_user_related(Node(name="我的自行车", type="object"))
    assert not is_user_related(Node(name="Paris", type="city"))


def test_retrieval_scores_focus_against_graph(store):
    _seed_graph(store)
    focus = FocusPoint(description="Preferences: hiking", type=FocusType.PREFERENCE, intensity=0.7,
                       keywords={"i like", "hiking", "mountains"})
    result = PersonalRetriever(store).retrieve(focus, now=T0)
    assert [n.id for n in result.personal_nodes] == ["hiking_pref"]
    assert [e.id for e in result.related_events] == ["trip"]
    assert result.relationships[0]["event_id"] == "trip"
    assert result.relevance_score == pytest.approx((0.8 * 0.7 + 0.7 * 0.49 + 0.6 * 0.49) / 2.1)
    assert result.total_items == 3


def test_retrieval_respects_time_scope(store):
    _seed_graph(store)
    focus = FocusPoint(description="d", type=FocusType.PREFERENCE, intensity=0.7,
                       keywords={"hiking"}, context={"time_scope": "recent"})
    late = PersonalRetriever(store).retrieve(focus, now=T0 + timedelta(days=30))
    assert late.related_events == []


def test_retrieval_without_matches_returns_none(store):
    focus = FocusPoint(description="d", type=FocusType.PREFERENCE, intensity=0.7, keywords={"sailing"})
    assert PersonalRetriever(store).retrieve(focus, now=T0) is None


def test_process_utterance_fills_cache(service):
    result = service.process_utterance("I like hiking in the mountains", now=T0)
    assert result["intent"] == "casual"
    assert result["active_focuses"] == 1
    assert len(result["updated_focuses"]) == 1
    assert len(result["retrieval_results"]) == 1
    assert result["cache_rejections"] == []

    topics = {i.key for i in service.get_cache_items_by_category("conversation_grasp")}
    assert topics == {"topic:hiking", "topic:mountains"}
    assert len(service.get_cache_items_by_category(CacheCategory.INTENT_UNDERSTANDING)) == 1
    focus_items = service.get_cache_items_by_category(CacheCategory.PERSONAL_INFO)
    assert focus_items[0].priority == focus_priority(FocusType.PREFERENCE)
    reserve = service.get_cache_items_by_category(CacheCategory.KNOWLEDGE_RESERVE)
    assert reserve[0].key == result["retrieval_results"][0]

    performance = service.get_cache_performance()
    assert performance["active_focuses"] == 1
    assert performance["retrieval_results"] == 1


def test_reinforced_focus_triggers_new_retrieval(service):
    service.process_utterance("I like hiking in the mountains", now=T0)
    second = service.process_utterance("I like hiking a lot", now=T0)
    assert len(second["updated_focuses"]) == 1
    assert len(second["retrieval_results"]) == 1
    assert service.get_current_personal_focus_summary()[0].endswith("(preference)")


def test_generation_bundle(service):
    service.process_utterance("I like hiking in the mountains", now=T0)
    bundle = service.get_relevant_personal_info_for_generation(now=T0)
    assert [n["id"] for n in bundle["personal_nodes"]] == ["hiking_pref"]
    assert [e["id"] for e in bundle["user_events"]] == ["trip"]
    assert "embedding" not in bundle["user_events"][0]
    assert bundle["active_focuses_count"] == 1
    assert bundle["focus_contexts"][0]["type"] == "preference"
    assert bundle["total_personal_info_items"] == 3
    assert len(bundle["retrieval_contexts"]) == 1


def test_generation_bundle_drops_expired_focus(service):
    service.process_utterance("I like hiking in the mountains", now=T0)
    bundle = service.get_relevant_personal_info_for_generation(now=T0 + timedelta(hours=12))
    assert bundle["active_focuses_count"] == 0
    assert bundle["retrieval_contexts"] == {}


def test_profile_facts_block_full_category(store, keyword_embedder):
    _seed_graph(store)
    service = _service(store, keyword_embedder, cache=CategorizedCache(capacities={CacheCategory.PERSONAL_INFO: 1}))
    service.remember_profile_fact("profile:name", "The user is called Sam")
    result = service.process_utterance("I like hiking in the mountains", now=T0)
    assert [r["category"] for r in result["cache_rejections"]] == ["personal_info"]
    items = service.get_cache_items_by_category(CacheCategory.PERSONAL_INFO)
    assert [i.key for i in items] == ["profile:name"]


def test_emotion_and_tasks_are_cached(service):
    service.process_utterance("Please book a table, I'm so stressed", now=T0)
    intents = {i.data.kind for i in service.get_cache_items_by_category(CacheCategory.INTENT_UNDERSTANDING)}
    assert intents == {"intent", "emotion"}
    tasks = service.get_cache_items_by_category(CacheCategory.PROACTIVE_DATA)
    assert tasks[0].data.text == "Please book a table, I'm so stressed"
    assert service.get_current_conversation_context().user_emotion.value == "negative"


def test_search_events_by_text(service):
    service.index.generate_for_all()
    hits = service.search_events_by_text("hiking plans")
    assert [h["event"]["id"] for h in hits] == ["trip"]
    assert hits[0]["event"]["has_embedding"] is True
    assert "embedding" not in hits[0]["event"]


def test_validate_graph_integrity(service, store):
    assert service.validate_graph_integrity()["healthy"] is True
    store.upsert_node(Node(id="lonely", name="Lonely", type="person"))
    report = service.validate_graph_integrity()
    assert report["healthy"] is False
    assert report["orphaned_nodes"] == 1
    assert report["details"]["orphaned_nodes"][0]["id"] == "lonely"


def test_clustering_metrics_pass_through(service):
    assert service.get_clustering_quality_metrics()["total_clusters"] == 0


def test_ingest_on_utterance(store, keyword_embedder):
    extraction = {"events": [{"name": "Dinner", "type": "social", "participants": ["Anna"]}], "entities": []}
    service = _service(store, keyword_embedder, llm=LLMService(lambda prompt: json.dumps(extraction)))
    result = service.process_utterance("Dinner with Anna", now=T0, ingest=True)
    assert len(result["ingested"]["events"]) == 1
    assert result["ingested"]["entities"] == ["anna_person"]
    assert store.get_event(result["ingested"]["events"][0]).source_context == result["context_id"]
