"""
Personal Knowledge Service - the query surface for the prompt/UI layer.

Per utterance:
    ConversationContextTracker -> PersonalFocusTracker -> CategorizedCache
and, for every focus point created or reinforced, a personal retrieval
against the event graph whose results are cached as knowledge reserve.
"""

from __future__ import annotations

import hashlib
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Any, Iterable, Optional

from config import thresholds
from mnemo.cache.cache_models import (
    CacheCategory,
    CacheItem,
    CacheItemPriority,
    EmotionPayload,
    IntentPayload,
    StructuredPayload,
    TextPayload,
    TopicPayload,
)
from mnemo.cache.categorized_cache import CategorizedCache
from mnemo.clustering.clustering_engine import SemanticClusteringEngine
from mnemo.conversation.context_tracker import ConversationContextTracker, UserEmotion
from mnemo.core.clock import ensure_utc, utcnow
from mnemo.core.errors import CapacityExhausted
from mnemo.core.logging_config import get_logger
from mnemo.focus.focus_models import FocusPoint, FocusType
from mnemo.focus.focus_tracker import PersonalFocusTracker
from mnemo.graph.graph_store import EventGraphStore
from mnemo.graph.ingestion import KnowledgeIngestor
from mnemo.personal.personal_retrieval import PersonalInfoResult, PersonalRetriever
from mnemo.vector.embedding_index import EmbeddingIndex

logger = get_logger(__name__)

FOCUS_PRIORITY = {
    FocusType.PERSONAL_HISTORY: CacheItemPriority.CRITICAL,
    FocusType.RELATIONSHIP: CacheItemPriority.CRITICAL,
    FocusType.PREFERENCE: CacheItemPriority.HIGH,
    FocusType.GOAL_TRACKING: CacheItemPriority.HIGH,
    FocusType.EMOTIONAL_CONTEXT: CacheItemPriority.MEDIUM,
    FocusType.BEHAVIOR_PATTERN: CacheItemPriority.MEDIUM,
}

GENERATION_RESULT_LIMIT = 10


def focus_priority(focus_type: FocusType) -> CacheItemPriority:
    return FOCUS_PRIORITY.get(focus_type, CacheItemPriority.LOW)


def _short_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:10]


class PersonalKnowledgeService:
    def __init__(
        self,
        store: EventGraphStore,
        index: EmbeddingIndex,
        engine: SemanticClusteringEngine,
        cache: Optional[CategorizedCache] = None,
        conversation: Optional[ConversationContextTracker] = None,
        focus: Optional[PersonalFocusTracker] = None,
        ingestor: Optional[KnowledgeIngestor] = None,
        retriever: Optional[PersonalRetriever] = None,
        max_results: int = thresholds.MAX_RETRIEVAL_CONTEXTS,
    ):
        self.store = store
        self.index = index
        self.engine = engine
        self.cache = cache or CategorizedCache()
        self.conversation = conversation or ConversationContextTracker()
        self.focus = focus or PersonalFocusTracker()
        self.ingestor = ingestor or KnowledgeIngestor(store)
        self.retriever = retriever or PersonalRetriever(store)
        self.max_results = max_results
        self._results: "OrderedDict[str, PersonalInfoResult]" = OrderedDict()
        self._results_lock = threading.Lock()

    # =========================================================================
    # Utterance pipeline
    # =========================================================================

    def process_utterance(
        self,
        text: str,
        now: Optional[datetime] = None,
        participants: Optional[Iterable[str]] = None,
        context_id: Optional[str] = None,
        ingest: bool = False,
    ) -> dict[str, Any]:
        """
        Fold one utterance into context, focus, cache and (optionally) the graph.

        Cache inserts rejected with CapacityExhausted are reported under
        "cache_rejections"; nothing else is dropped.
        """
        now = ensure_utc(now or utcnow())
        ctx = self.conversation.observe(text, now=now, participants=participants)
        before = {p.id: p.reinforcement_count for p in self.focus.active(now)}
        active = self.focus.observe(text, context=ctx, now=now)
        touched = [p for p in active if before.get(p.id) != p.reinforcement_count]

        rejections: list[dict[str, Any]] = []
        evicted: list[str] = []

        def put(item: CacheItem) -> None:
            try:
                gone = self.cache.put(item)
            except CapacityExhausted as e:
                rejections.append({"key": item.key, "category": e.category, "reason": str(e)})
                return
            if gone is not None:
                evicted.append(gone.key)

        for topic in ctx.current_topics:
            put(CacheItem(
                key=f"topic:{topic}",
                category=CacheCategory.CONVERSATION_GRASP,
                priority=CacheItemPriority.MEDIUM,
                weight=ctx.topic_intensity.get(topic, 0.0),
                data=TopicPayload(topic=topic, intensity=ctx.topic_intensity.get(topic, 0.0)),
                related_topics=[topic],
                relevance_score=ctx.topic_intensity.get(topic, 0.0),
            ))

        put(CacheItem(
            key=f"intent:{ctx.id}",
            category=CacheCategory.INTENT_UNDERSTANDING,
            priority=CacheItemPriority.HIGH if ctx.unfinished_tasks else CacheItemPriority.MEDIUM,
            weight=0.6,
            data=IntentPayload(intent=ctx.primary_intent.value, unfinished_tasks=ctx.unfinished_tasks),
            related_topics=ctx.current_topics[:3],
        ))
        if ctx.user_emotion != UserEmotion.NEUTRAL:
            put(CacheItem(
                key=f"emotion:{ctx.id}",
                category=CacheCategory.INTENT_UNDERSTANDING,
                priority=CacheItemPriority.MEDIUM,
                weight=0.5,
                data=EmotionPayload(emotion=ctx.user_emotion.value),
                related_topics=ctx.current_topics[:3],
            ))

        for task in ctx.unfinished_tasks:
            put(CacheItem(
                key=f"task:{_short_hash(task)}",
                category=CacheCategory.PROACTIVE_DATA,
                priority=CacheItemPriority.MEDIUM,
                weight=0.5,
                data=TextPayload(text=task),
            ))

        for point in active:
            put(self._focus_item(point))

        new_results = []
        for point in touched:
            result = self.retriever.retrieve(point, now=now)
            if result is None:
                continue
            self._remember(result)
            new_results.append(result.id)
            put(CacheItem(
                key=result.id,
                category=CacheCategory.KNOWLEDGE_RESERVE,
                priority=CacheItemPriority.HIGH,
                weight=result.relevance_score,
                data=StructuredPayload(value=result.context_dict()),
                related_topics=result.source_focus_keywords,
                relevance_score=result.relevance_score,
            ))

        ingested = None
        if ingest:
            ingested = self.ingestor.ingest(text, context_id=context_id or ctx.id, conversation_time=now)

        if rejections:
            logger.warning("[PersonalKnowledge] %d cache inserts rejected", len(rejections))
        return {
            "context_id": ctx.id,
            "intent": ctx.primary_intent.value,
            "emotion": ctx.user_emotion.value,
            "active_focuses": len(active),
            "updated_focuses": [p.id for p in touched],
            "retrieval_results": new_results,
            "evicted": evicted,
            "cache_rejections": rejections,
            "ingested": ingested,
        }

    @staticmethod
    def _focus_item(point: FocusPoint) -> CacheItem:
        return CacheItem(
            key=point.id,
            category=CacheCategory.PERSONAL_INFO,
            priority=focus_priority(point.type),
            weight=point.intensity,
            data=StructuredPayload(value={
                "description": point.description,
                "type": point.type.value,
                "intensity": point.intensity,
                "keywords": sorted(point.keywords),
                "personal_info_focus": True,
            }),
            related_topics=sorted(point.keywords),
            relevance_score=point.intensity,
        )

    def _remember(self, result: PersonalInfoResult) -> None:
        with self._results_lock:
            self._results[result.id] = result
            while len(self._results) > self.max_results:
                self._results.popitem(last=False)

    def remember_profile_fact(self, key: str, text: str, topics: Iterable[str] = ()) -> Optional[CacheItem]:
        """Pin a user-profile fact; these items are never evicted."""
        return self.cache.put(CacheItem(
            key=key,
            category=CacheCategory.PERSONAL_INFO,
            priority=CacheItemPriority.USER_PROFILE,
            weight=1.0,
            data=TextPayload(text=text),
            related_topics=list(topics),
        ))

    # =========================================================================
    # Query surface
    # =========================================================================

    def get_cache_performance(self) -> dict[str, Any]:
        stats = self.cache.stats()
        stats["active_focuses"] = len(self.focus.active())
        with self._results_lock:
            stats["retrieval_results"] = len(self._results)
        return stats

    def get_all_cache_items(self) -> list[CacheItem]:
        return self.cache.all_items()

    def get_cache_items_by_category(self, category: "CacheCategory | str") -> list[CacheItem]:
        return self.cache.get_by_category(CacheCategory(category))

    def get_current_conversation_context(self):
        return self.conversation.current()

    def get_current_personal_focus_summary(self) -> list[str]:
        return self.focus.summary()

    def get_relevant_personal_info_for_generation(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Bundle of focus and retrieval context for prompt generation."""
        active = self.focus.active(now)
        active_ids = {p.id for p in active}
        with self._results_lock:
            results = [r for r in self._results.values() if r.source_focus_id in active_ids]
        results.sort(key=lambda r: r.relevance_score, reverse=True)
        results = results[:GENERATION_RESULT_LIMIT]

        nodes: dict[str, dict[str, Any]] = {}
        events: dict[str, dict[str, Any]] = {}
        relationships: list[dict[str, Any]] = []
        for result in results:
            for node in result.personal_nodes:
                nodes.setdefault(node.id, node.model_dump(mode="json"))
            for event in result.related_events:
                events.setdefault(event.id, event.public_dict())
            relationships.extend(result.relationships)

        return {
            "personal_nodes": list(nodes.values()),
            "user_events": list(events.values()),
            "user_relationships": relationships,
            "focus_contexts": [
                {
                    "description": p.description,
                    "type": p.type.value,
                    "intensity": p.intensity,
                    "keywords": sorted(p.keywords),
                }
                for p in active
            ],
            "retrieval_contexts": {r.id: r.context_dict() for r in results},
            "total_personal_info_items": len(nodes) + len(events) + len(relationships),
            "active_focuses_count": len(active),
        }

    def search_events_by_text(self, query: str, top_k: int = thresholds.SEARCH_TOP_K,
                              threshold: float = thresholds.SEARCH_MIN_SIMILARITY) -> list[dict[str, Any]]:
        hits = self.index.search_events_by_text(query, top_k=top_k, threshold=threshold)
        return [{"event": h["event"].public_dict(), "similarity": h["similarity"]} for h in hits]

    def validate_graph_integrity(self) -> dict[str, Any]:
        details = self.store.validate_integrity()
        counts = {kind: len(items) for kind, items in details.items()}
        return {**counts, "healthy": not any(counts.values()), "details": details}

    def get_clustering_quality_metrics(self) -> dict[str, Any]:
        return self.engine.get_clustering_quality_metrics()
