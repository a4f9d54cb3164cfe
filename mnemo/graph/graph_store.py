"""
Event Graph Store.

Entity nodes, event nodes, event<->entity relations, cluster nodes and
clustering metadata on top of SQLite. Writes are serialized by a
read/write lock; reads run concurrently with each other.

Back-references (EventNode.cluster_id, relation event_id/entity_id) are
plain ids. Dangling ones are reported by validate_integrity, never fixed
implicitly.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import numpy as np

from mnemo.core.clock import dt_to_iso, ensure_utc, iso_to_dt, utcnow
from mnemo.core.errors import IntegrityViolation
from mnemo.core.locks import ReadWriteLock
from mnemo.core.logging_config import get_logger
from mnemo.db.session import Database
from mnemo.graph.graph_models import (
    ClusteringMeta,
    ClusterNode,
    EventEntityRelation,
    EventNode,
    Node,
)
from config import thresholds

logger = get_logger(__name__)

ROLE_PARTICIPANT = "participant"
ROLE_TOOL = "tool_used"
ROLE_LOCATION = "location"
ROLE_CONCEPT = "related_concept"

# Fields whose change makes a stored embedding stale
_EMBEDDED_FIELDS = ("name", "type", "description", "location", "purpose", "result")


def is_invalid_id(value: Any) -> bool:
    return value is None or str(value).strip() in ("", "0")


def mint_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _vec_to_blob(vec: Optional[Iterable[float]]) -> Optional[bytes]:
    if vec is None:
        return None
    arr = np.asarray(list(vec), dtype=np.float32)
    if arr.size == 0:
        return None
    return arr.tobytes()


def _blob_to_vec(blob: Optional[bytes]) -> Optional[list[float]]:
    if not blob:
        return None
    return np.frombuffer(blob, dtype=np.float32).tolist()


# =============================================================================
# Row conversion
# =============================================================================

def _row_to_node(r: sqlite3.Row) -> Node:
    return Node(
        id=r["id"],
        name=r["name"],
        type=r["type"],
        canonical_name=r["canonical_name"],
        aliases=set(json.loads(r["aliases"] or "[]")),
        attributes=json.loads(r["attributes"] or "{}"),
        source_context=r["source_context"],
        last_updated=iso_to_dt(r["last_updated"]),
    )


def _row_to_event(r: sqlite3.Row) -> EventNode:
    return EventNode(
        id=r["id"],
        name=r["name"],
        type=r["type"],
        description=r["description"],
        location=r["location"],
        purpose=r["purpose"],
        result=r["result"],
        start_time=iso_to_dt(r["start_time"]),
        end_time=iso_to_dt(r["end_time"]),
        last_updated=iso_to_dt(r["last_updated"]),
        last_seen_at=iso_to_dt(r["last_seen_at"]),
        embedding=_blob_to_vec(r["embedding"]),
        cluster_id=r["cluster_id"],
        source_context=r["source_context"],
    )


def _row_to_relation(r: sqlite3.Row) -> EventEntityRelation:
    return EventEntityRelation(
        id=r["id"],
        event_id=r["event_id"],
        entity_id=r["entity_id"],
        role=r["role"],
        last_updated=iso_to_dt(r["last_updated"]),
    )


def _row_to_cluster(r: sqlite3.Row) -> ClusterNode:
    return ClusterNode(
        id=r["id"],
        name=r["name"],
        description=r["description"],
        member_count=r["member_count"],
        member_ids=json.loads(r["member_ids"] or "[]"),
        earliest_event_time=iso_to_dt(r["earliest_event_time"]),
        latest_event_time=iso_to_dt(r["latest_event_time"]),
        embedding=_blob_to_vec(r["embedding"]),
        avg_similarity=r["avg_similarity"],
        level=r["level"],
        parent_cluster_id=r["parent_cluster_id"],
        last_updated=iso_to_dt(r["last_updated"]),
    )


def _row_to_meta(r: sqlite3.Row) -> ClusteringMeta:
    return ClusteringMeta(
        id=r["id"],
        clustering_time=iso_to_dt(r["clustering_time"]),
        total_events=r["total_events"],
        clusters_created=r["clusters_created"],
        events_clustered=r["events_clustered"],
        algorithm=r["algorithm"],
        parameters=json.loads(r["parameters"] or "{}"),
        avg_cluster_size=r["avg_cluster_size"],
        avg_similarity=r["avg_similarity"],
    )


class EventGraphStore:
    def __init__(self, db: Database):
        self.db = db
        self._lock = ReadWriteLock()

    # =========================================================================
    # Nodes
    # =========================================================================

    def upsert_node(self, node: Node) -> Node:
        """Insert or replace by id; mints an id for empty or "0" ids."""
        with self._lock.write():
            node = node.model_copy(deep=True)
            if is_invalid_id(node.id):
                node.id = mint_id("node")
            existing = self.get_node(node.id)
            if existing is not None and node.last_updated < existing.last_updated:
                node.last_updated = existing.last_updated
            with self.db.get_db_context() as conn:
                conn.execute(
                    """INSERT INTO nodes(id, name, type, canonical_name, aliases, attributes, source_context, last_updated)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET
                         name=excluded.name, type=excluded.type, canonical_name=excluded.canonical_name,
                         aliases=excluded.aliases, attributes=excluded.attributes,
                         source_context=excluded.source_context, last_updated=excluded.last_updated
                    """,
                    self._node_params(node),
                )
            return node

    def insert_node(self, node: Node) -> Node:
        """Insert only; an existing id raises IntegrityViolation."""
        with self._lock.write():
            node = node.model_copy(deep=True)
            if is_invalid_id(node.id):
                node.id = mint_id("node")
            try:
                with self.db.get_db_context() as conn:
                    conn.execute(
                        """INSERT INTO nodes(id, name, type, canonical_name, aliases, attributes, source_context, last_updated)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                        self._node_params(node),
                    )
            except sqlite3.IntegrityError as e:
                raise IntegrityViolation("duplicate_id", f"node {node.id}: {e}") from e
            return node

    @staticmethod
    def _node_params(node: Node) -> tuple:
        return (
            node.id, node.name, node.type, node.canonical_name,
            json.dumps(sorted(node.aliases), ensure_ascii=False),
            json.dumps(node.attributes, ensure_ascii=False),
            node.source_context, dt_to_iso(node.last_updated),
        )

    def get_node(self, node_id: str) -> Optional[Node]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                row = conn.execute("SELECT * FROM nodes WHERE id=?", (node_id,)).fetchone()
            return _row_to_node(row) if row else None

    def find_node_by_name_type(self, name: str, type_: str) -> Optional[Node]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                row = conn.execute(
                    """SELECT * FROM nodes WHERE type=? AND (canonical_name=? OR name=?)
                       ORDER BY last_updated LIMIT 1""",
                    (type_, name, name),
                ).fetchone()
            return _row_to_node(row) if row else None

    def query_nodes(self, predicate: Optional[Callable[[Node], bool]] = None) -> list[Node]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                rows = conn.execute("SELECT * FROM nodes ORDER BY rowid").fetchall()
            nodes = [_row_to_node(r) for r in rows]
        if predicate is None:
            return nodes
        return [n for n in nodes if predicate(n)]

    def delete_node(self, node_id: str) -> bool:
        with self._lock.write():
            with self.db.get_db_context() as conn:
                cur = conn.execute("DELETE FROM nodes WHERE id=?", (node_id,))
            return cur.rowcount > 0

    def search_nodes_by_text(self, text: str) -> list[Node]:
        """Case-insensitive substring match on name, aliases and attribute values."""
        needle = text.strip().lower()
        if not needle:
            return []

        def _match(n: Node) -> bool:
            if needle in n.name.lower():
                return True
            if any(needle in a.lower() for a in n.aliases):
                return True
            return any(needle in str(v).lower() for v in n.attributes.values())

        return self.query_nodes(_match)

    def related_nodes_by_keywords(self, keywords: Iterable[str],
                                  limit: int = thresholds.KEYWORD_NODE_LIMIT) -> list[Node]:
        """
        Score nodes against keywords and return the best ones.

        Exact name match 10, name contains keyword 5, alias contains keyword 3,
        attribute value contains keyword 1. Ties keep insertion order.
        """
        kws = [k.strip().lower() for k in keywords if k and k.strip()]
        if not kws:
            return []
        scored: list[tuple[Node, int]] = []
        for node in self.query_nodes():
            name = node.name.lower()
            score = 0
            for kw in kws:
                if name == kw:
                    score += 10
                elif kw in name:
                    score += 5
                if any(kw in a.lower() for a in node.aliases):
                    score += 3
                if any(kw in str(v).lower() for v in node.attributes.values()):
                    score += 1
            if score > 0:
                scored.append((node, score))
        scored.sort(key=lambda x: x[1], reverse=True)
        return [n for n, _ in scored[:limit]]

    # =========================================================================
    # Events
    # =========================================================================

    def upsert_event(self, event: EventNode) -> EventNode:
        """
        Insert or update an event by id.

        cluster_id is never changed here (see set_event_cluster). A stored
        embedding survives an update unless one of the embedded text fields
        changed, in which case it is dropped for regeneration.
        """
        with self._lock.write():
            event = event.model_copy(deep=True)
            if is_invalid_id(event.id):
                event.id = mint_id("event")
            existing = self.get_event(event.id)
            if existing is not None:
                event.cluster_id = existing.cluster_id
                if event.last_updated < existing.last_updated:
                    event.last_updated = existing.last_updated
                if event.embedding is None:
                    unchanged = all(getattr(event, f) == getattr(existing, f) for f in _EMBEDDED_FIELDS)
                    event.embedding = existing.embedding if unchanged else None
                event.last_seen_at = event.last_seen_at or existing.last_seen_at
            else:
                event.cluster_id = None
            with self.db.get_db_context() as conn:
                conn.execute(
                    """INSERT INTO events(id, name, type, description, location, purpose, result,
                                          start_time, end_time, last_updated, last_seen_at, embedding,
                                          cluster_id, source_context)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET
                         name=excluded.name, type=excluded.type, description=excluded.description,
                         location=excluded.location, purpose=excluded.purpose, result=excluded.result,
                         start_time=excluded.start_time, end_time=excluded.end_time,
                         last_updated=excluded.last_updated, last_seen_at=excluded.last_seen_at,
                         embedding=excluded.embedding, source_context=excluded.source_context
                    """,
                    self._event_params(event),
                )
            return event

    def insert_event(self, event: EventNode) -> EventNode:
        """Insert only; an existing id raises IntegrityViolation."""
        with self._lock.write():
            event = event.model_copy(deep=True)
            if is_invalid_id(event.id):
                event.id = mint_id("event")
            event.cluster_id = None
            try:
                with self.db.get_db_context() as conn:
                    conn.execute(
                        """INSERT INTO events(id, name, type, description, location, purpose, result,
                                              start_time, end_time, last_updated, last_seen_at, embedding,
                                              cluster_id, source_context)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        self._event_params(event),
                    )
            except sqlite3.IntegrityError as e:
                raise IntegrityViolation("duplicate_id", f"event {event.id}: {e}") from e
            return event

    @staticmethod
    def _event_params(event: EventNode) -> tuple:
        return (
            event.id, event.name, event.type, event.description, event.location,
            event.purpose, event.result, dt_to_iso(event.start_time), dt_to_iso(event.end_time),
            dt_to_iso(event.last_updated), dt_to_iso(event.last_seen_at),
            _vec_to_blob(event.embedding), event.cluster_id, event.source_context,
        )

    def get_event(self, event_id: str) -> Optional[EventNode]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                row = conn.execute("SELECT * FROM events WHERE id=?", (event_id,)).fetchone()
            return _row_to_event(row) if row else None

    def query_events(self, predicate: Optional[Callable[[EventNode], bool]] = None) -> list[EventNode]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                rows = conn.execute("SELECT * FROM events ORDER BY rowid").fetchall()
            events = [_row_to_event(r) for r in rows]
        if predicate is None:
            return events
        return [e for e in events if predicate(e)]

    def events_in_range(self, start: datetime, end: datetime) -> list[EventNode]:
        """Events whose start time (or last update when unset) falls in [start, end]."""
        start, end = ensure_utc(start), ensure_utc(end)
        return self.query_events(lambda e: start <= e.event_time <= end)

    def delete_event(self, event_id: str) -> bool:
        """Remove an event and its relations."""
        with self._lock.write():
            with self.db.get_db_context() as conn:
                conn.execute("DELETE FROM event_relations WHERE event_id=?", (event_id,))
                cur = conn.execute("DELETE FROM events WHERE id=?", (event_id,))
            return cur.rowcount > 0

    def set_event_embedding(self, event_id: str, vector: Optional[Iterable[float]]) -> None:
        with self._lock.write():
            with self.db.get_db_context() as conn:
                conn.execute("UPDATE events SET embedding=? WHERE id=?", (_vec_to_blob(vector), event_id))

    def events_with_embeddings(self) -> list[EventNode]:
        return self.query_events(lambda e: bool(e.embedding))

    # =========================================================================
    # Relations
    # =========================================================================

    def upsert_relation(self, relation: EventEntityRelation) -> EventEntityRelation:
        """
        Insert or update an edge.

        With an id, the row with that id is replaced. Without one, an
        identical (event, entity, role) edge is reused instead of duplicated.
        """
        with self._lock.write():
            relation = relation.model_copy(deep=True)
            with self.db.get_db_context() as conn:
                if relation.id:
                    conn.execute(
                        """INSERT INTO event_relations(id, event_id, entity_id, role, last_updated)
                           VALUES (?, ?, ?, ?, ?)
                           ON CONFLICT(id) DO UPDATE SET event_id=excluded.event_id,
                             entity_id=excluded.entity_id, role=excluded.role,
                             last_updated=excluded.last_updated""",
                        (relation.id, relation.event_id, relation.entity_id, relation.role,
                         dt_to_iso(relation.last_updated)),
                    )
                    return relation
                row = conn.execute(
                    "SELECT id FROM event_relations WHERE event_id=? AND entity_id=? AND role=?",
                    (relation.event_id, relation.entity_id, relation.role),
                ).fetchone()
                if row:
                    relation.id = row["id"]
                    conn.execute("UPDATE event_relations SET last_updated=? WHERE id=?",
                                 (dt_to_iso(relation.last_updated), relation.id))
                    return relation
                cur = conn.execute(
                    "INSERT INTO event_relations(event_id, entity_id, role, last_updated) VALUES (?, ?, ?, ?)",
                    (relation.event_id, relation.entity_id, relation.role, dt_to_iso(relation.last_updated)),
                )
                relation.id = int(cur.lastrowid)
            return relation

    def insert_relation(self, relation: EventEntityRelation) -> EventEntityRelation:
        """Insert a raw edge (duplicates allowed); an existing id raises IntegrityViolation."""
        with self._lock.write():
            relation = relation.model_copy(deep=True)
            try:
                with self.db.get_db_context() as conn:
                    cur = conn.execute(
                        "INSERT INTO event_relations(id, event_id, entity_id, role, last_updated) VALUES (?, ?, ?, ?, ?)",
                        (relation.id or None, relation.event_id, relation.entity_id, relation.role,
                         dt_to_iso(relation.last_updated)),
                    )
            except sqlite3.IntegrityError as e:
                raise IntegrityViolation("duplicate_id", f"relation {relation.id}: {e}") from e
            relation.id = int(cur.lastrowid)
            return relation

    def query_relations_for(self, event_id: Optional[str] = None,
                            entity_id: Optional[str] = None) -> list[EventEntityRelation]:
        if event_id is None and entity_id is None:
            raise ValueError("event_id or entity_id is required")
        clauses, params = [], []
        if event_id is not None:
            clauses.append("event_id=?")
            params.append(event_id)
        if entity_id is not None:
            clauses.append("entity_id=?")
            params.append(entity_id)
        with self._lock.read():
            with self.db.get_db_context() as conn:
                rows = conn.execute(
                    f"SELECT * FROM event_relations WHERE {' AND '.join(clauses)} ORDER BY id",
                    params,
                ).fetchall()
            return [_row_to_relation(r) for r in rows]

    def all_relations(self) -> list[EventEntityRelation]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                rows = conn.execute("SELECT * FROM event_relations ORDER BY id").fetchall()
            return [_row_to_relation(r) for r in rows]

    def related_events(self, entity_id: str) -> list[EventNode]:
        with self._lock.read():
            events = []
            for rel in self.query_relations_for(entity_id=entity_id):
                event = self.get_event(rel.event_id)
                if event is not None and all(e.id != event.id for e in events):
                    events.append(event)
            return events

    def participant_names(self, event_id: str) -> list[str]:
        with self._lock.read():
            names = []
            for rel in self.query_relations_for(event_id=event_id):
                if rel.role != ROLE_PARTICIPANT:
                    continue
                node = self.get_node(rel.entity_id)
                if node is not None and node.name not in names:
                    names.append(node.name)
            return names

    # =========================================================================
    # Integrity
    # =========================================================================

    def _orphan_ids(self, conn: sqlite3.Connection) -> list[str]:
        rows = conn.execute(
            """SELECT n.id FROM nodes n
               WHERE NOT EXISTS (SELECT 1 FROM event_relations r WHERE r.entity_id = n.id)
               ORDER BY n.rowid"""
        ).fetchall()
        return [r["id"] for r in rows]

    def validate_integrity(self) -> dict[str, list[dict[str, Any]]]:
        """
        Report integrity issues without fixing them.

        Returns:
            {
              "orphaned_nodes": [{"id", "name", "type"}],
              "duplicate_edges": [{"event_id", "entity_id", "role", "count", "relation_ids"}],
              "invalid_references": [{"relation_id", "event_id", "entity_id", "missing"}],
            }
        """
        with self._lock.read():
            with self.db.get_db_context() as conn:
                orphan_rows = conn.execute(
                    """SELECT id, name, type FROM nodes n
                       WHERE NOT EXISTS (SELECT 1 FROM event_relations r WHERE r.entity_id = n.id)
                       ORDER BY n.rowid"""
                ).fetchall()
                dup_rows = conn.execute(
                    """SELECT event_id, entity_id, role, COUNT(*) AS cnt, GROUP_CONCAT(id) AS ids
                       FROM event_relations GROUP BY event_id, entity_id, role HAVING cnt > 1"""
                ).fetchall()
                ref_rows = conn.execute(
                    """SELECT r.id, r.event_id, r.entity_id,
                              (SELECT COUNT(*) FROM events e WHERE e.id = r.event_id) AS has_event,
                              (SELECT COUNT(*) FROM nodes n WHERE n.id = r.entity_id) AS has_entity
                       FROM event_relations r ORDER BY r.id"""
                ).fetchall()

        invalid = []
        for r in ref_rows:
            missing = []
            if not r["has_event"]:
                missing.append("event")
            if not r["has_entity"]:
                missing.append("entity")
            if missing:
                invalid.append({
                    "relation_id": r["id"],
                    "event_id": r["event_id"],
                    "entity_id": r["entity_id"],
                    "missing": missing,
                })

        return {
            "orphaned_nodes": [{"id": r["id"], "name": r["name"], "type": r["type"]} for r in orphan_rows],
            "duplicate_edges": [
                {
                    "event_id": r["event_id"],
                    "entity_id": r["entity_id"],
                    "role": r["role"],
                    "count": r["cnt"],
                    "relation_ids": [int(x) for x in str(r["ids"]).split(",")],
                }
                for r in dup_rows
            ],
            "invalid_references": invalid,
        }

    def integrity_violations(self) -> list[IntegrityViolation]:
        """validate_integrity() as a flat list of typed violations."""
        report = self.validate_integrity()
        out = [IntegrityViolation("orphaned_node", n["id"]) for n in report["orphaned_nodes"]]
        out += [
            IntegrityViolation("duplicate_edge", f"{d['event_id']}->{d['entity_id']} ({d['role']}) x{d['count']}")
            for d in report["duplicate_edges"]
        ]
        out += [
            IntegrityViolation("invalid_reference", f"relation {r['relation_id']} missing {','.join(r['missing'])}")
            for r in report["invalid_references"]
        ]
        return out

    def analyze_orphaned_entities(self) -> dict[str, Any]:
        with self._lock.read():
            nodes = {n.id: n for n in self.query_nodes()}
            with self.db.get_db_context() as conn:
                orphan_ids = self._orphan_ids(conn)
        by_type = Counter(nodes[i].type for i in orphan_ids if i in nodes)
        total = len(nodes)
        return {
            "total_nodes": total,
            "orphaned_count": len(orphan_ids),
            "orphaned_ratio": (len(orphan_ids) / total) if total else 0.0,
            "by_type": dict(by_type),
            "samples": [nodes[i].name for i in orphan_ids[:10] if i in nodes],
        }

    def delete_orphaned_nodes(self) -> int:
        """Irreversible. Callers confirm via validate_integrity first."""
        with self._lock.write():
            with self.db.get_db_context() as conn:
                orphan_ids = self._orphan_ids(conn)
                conn.executemany("DELETE FROM nodes WHERE id=?", [(i,) for i in orphan_ids])
            logger.info("[GraphStore] Deleted %d orphaned nodes", len(orphan_ids))
            return len(orphan_ids)

    # =========================================================================
    # Clusters
    # =========================================================================

    def put_cluster(self, cluster: ClusterNode) -> ClusterNode:
        with self._lock.write():
            with self.db.get_db_context() as conn:
                conn.execute(
                    """INSERT INTO clusters(id, name, description, member_count, member_ids,
                                            earliest_event_time, latest_event_time, embedding,
                                            avg_similarity, level, parent_cluster_id, last_updated)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET
                         name=excluded.name, description=excluded.description,
                         member_count=excluded.member_count, member_ids=excluded.member_ids,
                         earliest_event_time=excluded.earliest_event_time,
                         latest_event_time=excluded.latest_event_time, embedding=excluded.embedding,
                         avg_similarity=excluded.avg_similarity, level=excluded.level,
                         parent_cluster_id=excluded.parent_cluster_id, last_updated=excluded.last_updated
                    """,
                    (
                        cluster.id, cluster.name, cluster.description, cluster.member_count,
                        json.dumps(cluster.member_ids), dt_to_iso(cluster.earliest_event_time),
                        dt_to_iso(cluster.latest_event_time), _vec_to_blob(cluster.embedding),
                        float(cluster.avg_similarity), cluster.level, cluster.parent_cluster_id,
                        dt_to_iso(cluster.last_updated),
                    ),
                )
            return cluster

    def get_cluster(self, cluster_id: str) -> Optional[ClusterNode]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                row = conn.execute("SELECT * FROM clusters WHERE id=?", (cluster_id,)).fetchone()
            return _row_to_cluster(row) if row else None

    def all_clusters(self, level: Optional[int] = None) -> list[ClusterNode]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                if level is None:
                    rows = conn.execute("SELECT * FROM clusters ORDER BY rowid").fetchall()
                else:
                    rows = conn.execute("SELECT * FROM clusters WHERE level=? ORDER BY rowid", (level,)).fetchall()
            return [_row_to_cluster(r) for r in rows]

    def delete_cluster(self, cluster_id: str) -> bool:
        with self._lock.write():
            with self.db.get_db_context() as conn:
                cur = conn.execute("DELETE FROM clusters WHERE id=?", (cluster_id,))
            return cur.rowcount > 0

    def remove_all_clusters(self) -> int:
        with self._lock.write():
            with self.db.get_db_context() as conn:
                cur = conn.execute("DELETE FROM clusters")
            return cur.rowcount

    def set_event_cluster(self, event_id: str, cluster_id: Optional[str]) -> None:
        """The only path that changes EventNode.cluster_id."""
        with self._lock.write():
            with self.db.get_db_context() as conn:
                conn.execute("UPDATE events SET cluster_id=? WHERE id=?", (cluster_id, event_id))

    def clear_event_clusters(self) -> int:
        with self._lock.write():
            with self.db.get_db_context() as conn:
                cur = conn.execute("UPDATE events SET cluster_id=NULL WHERE cluster_id IS NOT NULL")
            return cur.rowcount

    def events_in_cluster(self, cluster_id: str) -> list[EventNode]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                rows = conn.execute("SELECT * FROM events WHERE cluster_id=? ORDER BY rowid", (cluster_id,)).fetchall()
            return [_row_to_event(r) for r in rows]

    def put_clustering_meta(self, meta: ClusteringMeta) -> ClusteringMeta:
        with self._lock.write():
            with self.db.get_db_context() as conn:
                cur = conn.execute(
                    """INSERT INTO clustering_meta(clustering_time, total_events, clusters_created,
                                                   events_clustered, algorithm, parameters,
                                                   avg_cluster_size, avg_similarity)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        dt_to_iso(meta.clustering_time), meta.total_events, meta.clusters_created,
                        meta.events_clustered, meta.algorithm, json.dumps(meta.parameters),
                        float(meta.avg_cluster_size), float(meta.avg_similarity),
                    ),
                )
            meta = meta.model_copy()
            meta.id = int(cur.lastrowid)
            return meta

    def all_clustering_meta(self) -> list[ClusteringMeta]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                rows = conn.execute("SELECT * FROM clustering_meta ORDER BY id").fetchall()
            return [_row_to_meta(r) for r in rows]

    def remove_all_clustering_meta(self) -> int:
        with self._lock.write():
            with self.db.get_db_context() as conn:
                cur = conn.execute("DELETE FROM clustering_meta")
            return cur.rowcount

    # =========================================================================
    # Stats
    # =========================================================================

    def stats(self) -> dict[str, int]:
        with self._lock.read():
            with self.db.get_db_context() as conn:
                def count(sql: str) -> int:
                    return int(conn.execute(sql).fetchone()[0])
                return {
                    "nodes": count("SELECT COUNT(*) FROM nodes"),
                    "events": count("SELECT COUNT(*) FROM events"),
                    "relations": count("SELECT COUNT(*) FROM event_relations"),
                    "events_with_embedding": count("SELECT COUNT(*) FROM events WHERE embedding IS NOT NULL"),
                    "clustered_events": count("SELECT COUNT(*) FROM events WHERE cluster_id IS NOT NULL"),
                    "clusters": count("SELECT COUNT(*) FROM clusters"),
                }
