"""
Focus-driven personal retrieval over the event graph.

For one focus point: find user-related entity nodes by keyword, the events
they take part in (filtered by the focus's time scope) and their relations,
score each candidate against the focus and keep the relevant ones.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field

from config import thresholds
from mnemo.core.clock import ensure_utc, utcnow
from mnemo.core.logging_config import get_logger
from mnemo.focus.focus_models import FocusPoint, FocusType
from mnemo.graph.graph_models import EventNode, Node
from mnemo.graph.graph_store import EventGraphStore

logger = get_logger(__name__)

USER_TYPE_INDICATORS = ("个人", "用户", "经历", "偏好", "习惯", "目标", "personal", "user", "preference", "habit", "goal")

# Node types that line up with a focus type
FOCUS_NODE_TYPES = {
    FocusType.PERSONAL_HISTORY: ("经历", "事件", "experience", "event"),
    FocusType.RELATIONSHIP: ("人", "人物", "关系", "person", "relationship"),
    FocusType.PREFERENCE: ("偏好", "喜好", "preference"),
    FocusType.GOAL_TRACKING: ("目标", "计划", "goal", "plan"),
    FocusType.BEHAVIOR_PATTERN: ("习惯", "habit", "routine"),
    FocusType.EMOTIONAL_CONTEXT: ("情绪", "情感", "emotion", "mood"),
    FocusType.TEMPORAL_CONTEXT: ("时间", "time"),
}

EMOTION_WORDS = ("开心", "难过", "happy", "sad")

TIME_SCOPE_DAYS = {"recent": 7, "past_week": 14, "past_month": 30}

GROUP_WEIGHTS = {"nodes": 0.8, "events": 0.7, "relationships": 0.6}


class PersonalInfoResult(BaseModel):
    id: str = Field(default_factory=lambda: f"retrieval_{uuid.uuid4().hex[:12]}")
    source_focus_id: str
    source_focus_description: str
    source_focus_type: FocusType
    source_focus_keywords: list[str] = Field(default_factory=list)
    personal_nodes: list[Node] = Field(default_factory=list)
    related_events: list[EventNode] = Field(default_factory=list)
    relationships: list[dict[str, Any]] = Field(default_factory=list)
    relevance_score: float = 0.0
    retrieval_reason: str = ""
    retrieved_at: datetime = Field(default_factory=utcnow)

    @property
    def total_items(self) -> int:
        return len(self.personal_nodes) + len(self.related_events) + len(self.relationships)

    def context_dict(self) -> dict[str, Any]:
        return {
            "source_focus": self.source_focus_description,
            "focus_type": self.source_focus_type.value,
            "retrieval_reason": self.retrieval_reason,
            "relevance_score": self.relevance_score,
            "personal_nodes_count": len(self.personal_nodes),
            "user_events_count": len(self.related_events),
            "relationships_count": len(self.relationships),
            "retrieved_at": self.retrieved_at.isoformat(),
        }


def is_user_related(node: Node) -> bool:
    indicators = thresholds.USER_NODE_INDICATORS
    name = node.name.lower()
    if any(i in name for i in indicators):
        return True
    if any(i in str(v).lower() for v in node.attributes.values() for i in indicators):
        return True
    type_ = node.type.lower()
    return any(i in type_ for i in USER_TYPE_INDICATORS)


def _keyword_hits(keywords: list[str], *texts: Optional[str]) -> int:
    haystack = " ".join(t for t in texts if t).lower()
    return sum(1 for k in keywords if k and k.lower() in haystack)


def _finish(score: float, intensity: float) -> float:
    return max(0.0, min(1.0, score * intensity))


class PersonalRetriever:
    def __init__(
        self,
        store: EventGraphStore,
        node_limit: int = thresholds.PERSONAL_NODE_LIMIT,
        event_limit: int = thresholds.PERSONAL_EVENT_LIMIT,
        relation_limit: int = thresholds.PERSONAL_RELATION_LIMIT,
        min_relevance: float = thresholds.RETRIEVAL_RELEVANCE_MIN,
    ):
        self.store = store
        self.node_limit = node_limit
        self.event_limit = event_limit
        self.relation_limit = relation_limit
        self.min_relevance = min_relevance

    def retrieve(self, focus: FocusPoint, now: Optional[datetime] = None) -> Optional[PersonalInfoResult]:
        """Run retrieval for one focus; None when nothing relevant is found."""
        now = ensure_utc(now or utcnow())
        keywords = sorted(focus.keywords)
        if not keywords:
            return None

        candidates = [n for n in self.store.related_nodes_by_keywords(keywords) if is_user_related(n)]
        nodes = self._score_nodes(focus, keywords, candidates)
        events = self._score_events(focus, keywords, candidates[:5], now)
        relationships = self._score_relationships(focus, keywords, candidates[:3])

        groups = {
            "nodes": [s for s, _ in nodes],
            "events": [s for s, _ in events],
            "relationships": [s for s, _ in relationships],
        }
        weighted, weight_sum = 0.0, 0.0
        for name, scores in groups.items():
            if scores:
                weighted += GROUP_WEIGHTS[name] * (sum(scores) / len(scores))
                weight_sum += GROUP_WEIGHTS[name]
        if weight_sum == 0.0:
            return None

        result = PersonalInfoResult(
            source_focus_id=focus.id,
            source_focus_description=focus.description,
            source_focus_type=focus.type,
            source_focus_keywords=keywords,
            personal_nodes=[n for _, n in nodes],
            related_events=[e for _, e in events],
            relationships=[r for _, r in relationships],
            relevance_score=weighted / weight_sum,
            retrieval_reason=f"{focus.type.value} focus '{focus.description}' matched "
                             f"{len(nodes)} nodes, {len(events)} events, {len(relationships)} relations",
            retrieved_at=now,
        )
        logger.debug("[Retrieval] %s", result.retrieval_reason)
        return result

    def _score_nodes(self, focus: FocusPoint, keywords: list[str],
                     candidates: list[Node]) -> list[tuple[float, Node]]:
        scored = []
        for node in candidates:
            score = 0.5
            if any(t in node.type.lower() for t in FOCUS_NODE_TYPES.get(focus.type, ())):
                score += 0.3
            score += 0.2 * _keyword_hits(keywords, node.name, *node.attributes.values())
            score = _finish(score, focus.intensity)
            if score > self.min_relevance:
                scored.append((score, node))
        scored.sort(key=lambda x: x[0], reverse=True)
        return scored[:self.node_limit]

    def _in_scope(self, event: EventNode, scope: str, now: datetime) -> bool:
        days = TIME_SCOPE_DAYS.get(scope)
        if days is None:
            return True
        return event.event_time >= now - timedelta(days=days)

    def _score_events(self, focus: FocusPoint, keywords: list[str], nodes: list[Node],
                      now: datetime) -> list[tuple[float, EventNode]]:
        scope = focus.context.get("time_scope", "long_term")
        seen: dict[str, EventNode] = {}
        for node in nodes:
            for event in self.store.related_events(node.id):
                if event.id not in seen and self._in_scope(event, scope, now):
                    seen[event.id] = event

        scored = []
        for event in seen.values():
            score = 0.5
            if focus.type == FocusType.PERSONAL_HISTORY:
                score += 0.4
            elif focus.type == FocusType.TEMPORAL_CONTEXT:
                score += 0.3
            elif focus.type == FocusType.EMOTIONAL_CONTEXT and _keyword_hits(
                    list(EMOTION_WORDS), event.result, event.description):
                score += 0.3
            score += 0.2 * _keyword_hits(keywords, event.name, event.description)
            score = _finish(score, focus.intensity)
            if score > self.min_relevance:
                scored.append((score, event))
        scored.sort(key=lambda x: (x[0], x[1].event_time), reverse=True)
        return scored[:self.event_limit]

    def _score_relationships(self, focus: FocusPoint, keywords: list[str],
                             nodes: list[Node]) -> list[tuple[float, dict[str, Any]]]:
        scored = []
        for node in nodes:
            for relation in self.store.query_relations_for(entity_id=node.id):
                event = self.store.get_event(relation.event_id)
                if event is None:
                    continue
                score = 0.5
                if focus.type == FocusType.RELATIONSHIP:
                    score += 0.4
                score += 0.2 * _keyword_hits(keywords, event.name, node.name)
                score = _finish(score, focus.intensity)
                if score > self.min_relevance:
                    scored.append((score, {
                        "relation_id": relation.id,
                        "entity_id": node.id,
                        "entity_name": node.name,
                        "event_id": event.id,
                        "event_name": event.name,
                        "role": relation.role,
                        "score": score,
                    }))
        scored.sort(key=lambda x: x[0], reverse=True)
        return scored[:self.relation_limit]
