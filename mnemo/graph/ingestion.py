"""
Knowledge ingestion: utterance text -> events, entities and relations.

Extraction is delegated to the LLM collaborator. Entities are aligned to a
canonical node (normalized name + type) so the same person, place or thing
is shared across events; surface forms are kept as aliases.
"""

from __future__ import annotations

import re
import time
from datetime import datetime
from typing import Any, Iterable, Optional

from mnemo.core.clock import ensure_utc, ms_to_dt, utcnow
from mnemo.core.errors import OperationCancelled
from mnemo.core.logging_config import get_logger
from mnemo.core.progress import CancellationToken, ProgressChannel, check_cancelled, report
from mnemo.graph.graph_models import EventEntityRelation, EventNode, Node
from mnemo.graph.graph_store import (
    ROLE_CONCEPT,
    ROLE_LOCATION,
    ROLE_PARTICIPANT,
    ROLE_TOOL,
    EventGraphStore,
)
from mnemo.services.llm_service import LLMService

logger = get_logger(__name__)

# Canonical form -> surface forms resolved to it
PRONOUN_MAP = {
    "我": ["自己", "本人", "我自己", "me", "myself", "i"],
    "你": ["您", "你们", "you"],
    "他": ["这位", "那位", "这个人", "那个人"],
    "她": ["这位女士", "那位女士", "这个女生", "那个女生"],
    "它": ["这个", "那个", "这件事", "那件事"],
}

_SPECIAL_RE = re.compile(r"[^一-鿿a-z0-9\-\s]")
_SPACE_RE = re.compile(r"\s+")

# Extraction list field -> (relation role, entity type)
_RELATION_FIELDS = {
    "participants": (ROLE_PARTICIPANT, "person"),
    "tools_used": (ROLE_TOOL, "tool"),
    "related_locations": (ROLE_LOCATION, "location"),
    "related_concepts": (ROLE_CONCEPT, "concept"),
}


def normalize_entity_name(name: str) -> str:
    normalized = (name or "").strip().lower()
    for canonical, forms in PRONOUN_MAP.items():
        if normalized in forms:
            return canonical
    normalized = normalized.replace("_", "-")
    normalized = _SPECIAL_RE.sub("", normalized)
    normalized = _SPACE_RE.sub("-", normalized)
    return normalized.strip("-")


def generate_entity_id(name: str, type_: str) -> str:
    return f"{normalize_entity_name(name)}_{type_}"


def _from_epoch_ms(value: Any) -> Optional[datetime]:
    try:
        return ms_to_dt(value)
    except (OverflowError, OSError, ValueError):
        logger.debug("[Ingest] Epoch value out of range %r", value)
        return None


def parse_event_time(value: Any) -> Optional[datetime]:
    """
    Accepts datetimes, epoch milliseconds, ISO strings and 'YYYY-MM-DD HH:mm'.

    Anything unparseable, including out-of-range or NaN epochs, gives None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return _from_epoch_ms(value)
    text = str(value).strip()
    if text.lower() in ("null", "none"):
        return None
    if text.isdigit():
        return _from_epoch_ms(int(text))
    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%d"):
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        logger.debug("[Ingest] Unparseable time %r", value)
        return None


def _as_names(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


class KnowledgeIngestor:
    def __init__(self, store: EventGraphStore, llm: Optional[LLMService] = None,
                 throttle_seconds: float = 0.0):
        self.store = store
        self.llm = llm or LLMService()
        self.throttle_seconds = throttle_seconds

    def align_entity(self, name: str, type_: str, context_id: Optional[str] = None) -> str:
        """Find or create the canonical node for (name, type); returns its id."""
        normalized = normalize_entity_name(name)
        existing = self.store.find_node_by_name_type(normalized, type_)
        if existing is not None:
            if name not in existing.aliases and name != normalized:
                existing.aliases.add(name)
                existing.last_updated = utcnow()
                self.store.upsert_node(existing)
            return existing.id

        node = self.store.upsert_node(Node(
            id=generate_entity_id(normalized, type_),
            name=name,
            type=type_,
            canonical_name=normalized,
            aliases={name},
            source_context=context_id,
        ))
        logger.debug("[Ingest] New entity %s (%s) -> %s", name, type_, node.id)
        return node.id

    def ingest(
        self,
        text: str,
        context_id: Optional[str] = None,
        conversation_time: Optional[datetime] = None,
        user_context: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Extract and upsert events/entities/relations from one utterance.

        Returns {"events": [ids], "entities": [ids], "relations": count}.
        Events are stored without embeddings; those are generated lazily.
        """
        now = ensure_utc(conversation_time or utcnow())
        if not text or not text.strip():
            return {"events": [], "entities": [], "relations": 0}

        extraction = self.llm.extract_events_and_entities(
            text, today=now.strftime("%Y-%m-%d"), user_context=user_context
        )
        return self.apply_extraction(extraction, context_id=context_id, now=now)

    def apply_extraction(self, extraction: dict[str, Any], context_id: Optional[str] = None,
                         now: Optional[datetime] = None) -> dict[str, Any]:
        now = ensure_utc(now or utcnow())
        entity_ids: list[str] = []
        for raw in extraction.get("entities", []):
            type_ = str(raw.get("type") or "concept")
            node_id = self.align_entity(str(raw["name"]), type_, context_id)
            node = self.store.get_node(node_id)
            attributes = {str(k): str(v) for k, v in (raw.get("attributes") or {}).items()}
            aliases = set(_as_names(raw.get("aliases")))
            if node is not None and (attributes or aliases - node.aliases):
                node.attributes.update(attributes)
                node.aliases |= aliases
                node.last_updated = now
                self.store.upsert_node(node)
            if node_id not in entity_ids:
                entity_ids.append(node_id)

        event_ids: list[str] = []
        relations = 0
        for raw in extraction.get("events", []):
            name = str(raw["name"]).strip()
            event = self.store.upsert_event(EventNode(
                id=f"event_{normalize_entity_name(name)}_{int(now.timestamp() * 1000)}",
                name=name,
                type=str(raw.get("type") or "general"),
                description=raw.get("description"),
                location=raw.get("location"),
                purpose=raw.get("purpose"),
                result=raw.get("result"),
                start_time=parse_event_time(raw.get("start_time")),
                end_time=parse_event_time(raw.get("end_time")),
                last_updated=now,
                last_seen_at=now,
                source_context=context_id,
            ))
            event_ids.append(event.id)

            linked = dict((f, _as_names(raw.get(f))) for f in _RELATION_FIELDS)
            if raw.get("location"):
                linked["related_locations"].insert(0, str(raw["location"]))
            for field, names in linked.items():
                role, entity_type = _RELATION_FIELDS[field]
                for entity_name in dict.fromkeys(names):
                    entity_id = self.align_entity(entity_name, entity_type, context_id)
                    self.store.upsert_relation(EventEntityRelation(
                        event_id=event.id, entity_id=entity_id, role=role, last_updated=now,
                    ))
                    relations += 1
                    if entity_id not in entity_ids:
                        entity_ids.append(entity_id)

        logger.info("[Ingest] %d events, %d entities, %d relations", len(event_ids), len(entity_ids), relations)
        return {"events": event_ids, "entities": entity_ids, "relations": relations}

    def ingest_batch(
        self,
        items: Iterable[tuple[str, Optional[datetime]]],
        context_id: Optional[str] = None,
        progress: Optional[ProgressChannel] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> dict[str, Any]:
        """Ingest (text, time) pairs, e.g. a date range of past conversations."""
        items = list(items)
        events, entities, relations = [], set(), 0
        processed = 0
        cancelled = False
        for n, (text, when) in enumerate(items, start=1):
            try:
                check_cancelled(cancel)
            except OperationCancelled:
                cancelled = True
                break
            result = self.ingest(text, context_id=context_id, conversation_time=when)
            events.extend(result["events"])
            entities.update(result["entities"])
            relations += result["relations"]
            processed = n
            report(progress, "ingest", f"Ingested {n}/{len(items)}", fraction=n / len(items))
            if self.throttle_seconds and n < len(items):
                time.sleep(self.throttle_seconds)
        return {
            "success": not cancelled,
            "cancelled": cancelled,
            "items_processed": processed,
            "events": events,
            "entities": sorted(entities),
            "relations": relations,
        }
