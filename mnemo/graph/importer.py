"""
Bulk JSON import into the event graph.

Document layout:

    {
      "eventNodeEntities":     [{"id", "title", "category", "timestamp", ...}],
      "nodeEntities":          [{"id", "label", "properties": {"type": ...}}],
      "eventRelationEntities": [{"id": <int>, "eventId", "entityId", "role"}]
    }

A bad record never aborts the import: it is skipped and reported as an
ImportRecordError entry. Empty or "0" ids get a freshly minted id.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from mnemo.core.clock import utcnow
from mnemo.core.errors import (
    EmbeddingUnavailable,
    ImportRecordError,
    IntegrityViolation,
    OperationCancelled,
)
from mnemo.core.logging_config import get_logger
from mnemo.core.progress import CancellationToken, ProgressChannel, check_cancelled, report
from mnemo.graph.graph_models import EventEntityRelation, EventNode, Node
from mnemo.graph.graph_store import EventGraphStore, is_invalid_id, mint_id
from mnemo.graph.ingestion import normalize_entity_name, parse_event_time
from mnemo.vector.embedding_index import EmbeddingIndex

logger = get_logger(__name__)

EVENTS_KEY = "eventNodeEntities"
NODES_KEY = "nodeEntities"
RELATIONS_KEY = "eventRelationEntities"


@dataclass
class ImportResult:
    events_imported: int = 0
    nodes_imported: int = 0
    relations_imported: int = 0
    problems: list[ImportRecordError] = field(default_factory=list)
    reassigned_ids: list[dict[str, Any]] = field(default_factory=list)
    embedding_failures: list[dict[str, str]] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def total_imported(self) -> int:
        return self.events_imported + self.nodes_imported + self.relations_imported

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": not self.cancelled,
            "cancelled": self.cancelled,
            "events_imported": self.events_imported,
            "nodes_imported": self.nodes_imported,
            "relations_imported": self.relations_imported,
            "total_imported": self.total_imported,
            "skipped": len(self.problems),
            "problems": [p.to_dict() for p in self.problems],
            "reassigned_ids": self.reassigned_ids,
            "embedding_failures": self.embedding_failures,
            "duration_seconds": self.duration_seconds,
        }


def _first(record: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if record.get(key) not in (None, ""):
            return record[key]
    return None


class BulkImporter:
    def __init__(self, store: EventGraphStore, index: Optional[EmbeddingIndex] = None):
        self.store = store
        self.index = index

    def import_file(self, path: Union[str, Path], **kwargs) -> ImportResult:
        with open(path, encoding="utf-8") as f:
            return self.import_document(f.read(), **kwargs)

    def import_document(
        self,
        document: Union[str, bytes, dict[str, Any]],
        generate_embeddings: bool = True,
        progress: Optional[ProgressChannel] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ImportResult:
        """
        Import every section of a document.

        Nodes go first so relations imported afterwards can resolve them.
        Raises ValueError only when the document itself is not a JSON object.
        """
        started = time.perf_counter()
        if isinstance(document, (str, bytes)):
            document = json.loads(document)
        if not isinstance(document, dict):
            raise ValueError("import document must be a JSON object")

        result = ImportResult()
        sections = (
            (NODES_KEY, self._import_node),
            (EVENTS_KEY, self._import_event),
            (RELATIONS_KEY, self._import_relation),
        )
        try:
            for key, handler in sections:
                records = document.get(key) or []
                if not isinstance(records, list):
                    result.problems.append(ImportRecordError(f"{key} is not a list", raw_record=records))
                    continue
                report(progress, "import", f"Importing {len(records)} {key}")
                for n, record in enumerate(records, start=1):
                    check_cancelled(cancel)
                    if not isinstance(record, dict):
                        result.problems.append(ImportRecordError(f"{key} record is not an object",
                                                                 raw_record=record))
                        continue
                    try:
                        handler(record, result, generate_embeddings)
                    except ImportRecordError as e:
                        logger.warning("[Import] Skipped %s record %r: %s", key, e.original_id, e.reason)
                        result.problems.append(e)
                    except (TypeError, ValueError, AttributeError, OverflowError, OSError) as e:
                        logger.warning("[Import] Skipped unreadable %s record %r: %s", key, record.get("id"), e)
                        result.problems.append(ImportRecordError(
                            f"{key} record could not be read: {type(e).__name__}: {e}",
                            record.get("id"), record))
                    if n % 50 == 0 or n == len(records):
                        report(progress, "import", f"{key}: {n}/{len(records)}", fraction=n / len(records))
        except OperationCancelled:
            result.cancelled = True
            report(progress, "import", "Cancelled")

        result.duration_seconds = time.perf_counter() - started
        logger.info("[Import] events=%d nodes=%d relations=%d skipped=%d",
                    result.events_imported, result.nodes_imported,
                    result.relations_imported, len(result.problems))
        return result

    # =========================================================================
    # Record handlers
    # =========================================================================

    def _fresh_id(self, section: str, original: Any, prefix: str, result: ImportResult) -> str:
        new_id = mint_id(prefix)
        result.reassigned_ids.append({"section": section, "original_id": original, "new_id": new_id})
        return new_id

    def _import_node(self, record: dict[str, Any], result: ImportResult, _embed: bool) -> None:
        original_id = record.get("id")
        name = _first(record, "label", "name")
        properties = record.get("properties") or {}
        if not isinstance(properties, dict):
            properties = {}
        type_ = _first(record, "type") or properties.get("type")
        if not name or not type_:
            raise ImportRecordError(f"{NODES_KEY} record is missing label or type", original_id, record)

        attributes = record.get("attributes") or {k: v for k, v in properties.items() if k != "type"}
        if not isinstance(attributes, dict):
            raise ImportRecordError(f"{NODES_KEY} attributes is not an object", original_id, record)
        aliases = record.get("aliases") or []
        if not isinstance(aliases, list):
            aliases = [aliases]
        if not all(isinstance(a, (str, int, float)) for a in aliases):
            raise ImportRecordError(f"{NODES_KEY} aliases must be plain strings", original_id, record)
        node_id = str(original_id).strip() if not is_invalid_id(original_id) else \
            self._fresh_id(NODES_KEY, original_id, "node", result)
        try:
            node = Node(
                id=node_id,
                name=str(name),
                type=str(type_),
                canonical_name=record.get("canonicalName") or normalize_entity_name(str(name)),
                aliases={str(a) for a in aliases},
                attributes={str(k): str(v) for k, v in attributes.items()},
                source_context=record.get("sourceContext"),
                last_updated=parse_event_time(record.get("lastUpdated")) or utcnow(),
            )
            self.store.insert_node(node)
        except ValidationError as e:
            raise ImportRecordError(f"{NODES_KEY} record is malformed: {e.errors()[0]['msg']}",
                                    original_id, record) from e
        except IntegrityViolation as e:
            raise ImportRecordError(f"{NODES_KEY} unique constraint violated ({e.detail})",
                                    original_id, record) from e
        result.nodes_imported += 1

    def _import_event(self, record: dict[str, Any], result: ImportResult, embed: bool) -> None:
        original_id = record.get("id")
        name = _first(record, "title", "name")
        if not name:
            raise ImportRecordError(f"{EVENTS_KEY} record is missing title", original_id, record)

        event_id = str(original_id).strip() if not is_invalid_id(original_id) else \
            self._fresh_id(EVENTS_KEY, original_id, "event", result)
        try:
            event = self.store.insert_event(EventNode(
                id=event_id,
                name=str(name),
                type=str(_first(record, "category", "type") or "general"),
                description=record.get("description"),
                location=record.get("location"),
                purpose=record.get("purpose"),
                result=record.get("result"),
                start_time=parse_event_time(_first(record, "timestamp", "startTime")),
                end_time=parse_event_time(record.get("endTime")),
                last_updated=parse_event_time(record.get("lastUpdated")) or utcnow(),
                source_context=record.get("sourceContext"),
            ))
        except ValidationError as e:
            raise ImportRecordError(f"{EVENTS_KEY} record is malformed: {e.errors()[0]['msg']}",
                                    original_id, record) from e
        except IntegrityViolation as e:
            raise ImportRecordError(f"{EVENTS_KEY} unique constraint violated ({e.detail})",
                                    original_id, record) from e
        result.events_imported += 1

        if embed and self.index is not None:
            try:
                vec = self.index.embed_event(event)
            except EmbeddingUnavailable as e:
                result.embedding_failures.append(e.to_dict())
            else:
                self.store.set_event_embedding(event.id, vec.tolist())

    def _import_relation(self, record: dict[str, Any], result: ImportResult, _embed: bool) -> None:
        original_id = record.get("id")
        relation_id: Optional[int] = None
        if not is_invalid_id(original_id):
            try:
                relation_id = int(str(original_id).strip())
            except ValueError:
                raise ImportRecordError(f"{RELATIONS_KEY} id 字段无法转换为 int: {original_id!r}",
                                        original_id, record) from None

        event_id = _first(record, "eventId", "event_id", "sourceId")
        entity_id = _first(record, "entityId", "entity_id", "targetId")
        role = _first(record, "role", "type")
        if not event_id or not entity_id or not role:
            raise ImportRecordError(f"{RELATIONS_KEY} record needs eventId, entityId and role",
                                    original_id, record)
        try:
            saved = self.store.insert_relation(EventEntityRelation(
                id=relation_id,
                event_id=str(event_id),
                entity_id=str(entity_id),
                role=str(role),
                last_updated=parse_event_time(record.get("createdAt")) or utcnow(),
            ))
        except IntegrityViolation as e:
            raise ImportRecordError(f"{RELATIONS_KEY} unique constraint violated ({e.detail})",
                                    original_id, record) from e
        if relation_id is None:
            result.reassigned_ids.append({"section": RELATIONS_KEY, "original_id": original_id,
                                          "new_id": saved.id})
        result.relations_imported += 1
