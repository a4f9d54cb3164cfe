"""
SQLite session helpers.

One connection per Database, shared across threads and serialized by a
connection lock. Stores layer their own read/write discipline on top.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from mnemo.core.logging_config import get_logger

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    canonical_name TEXT,
    aliases TEXT NOT NULL DEFAULT '[]',
    attributes TEXT NOT NULL DEFAULT '{}',
    source_context TEXT,
    last_updated TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_nodes_name_type ON nodes(name, type);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    description TEXT,
    location TEXT,
    purpose TEXT,
    result TEXT,
    start_time TEXT,
    end_time TEXT,
    last_updated TEXT NOT NULL,
    last_seen_at TEXT,
    embedding BLOB,
    cluster_id TEXT,
    source_context TEXT
);
CREATE INDEX IF NOT EXISTS idx_events_cluster ON events(cluster_id);

CREATE TABLE IF NOT EXISTS event_relations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    role TEXT NOT NULL,
    last_updated TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rel_event ON event_relations(event_id);
CREATE INDEX IF NOT EXISTS idx_rel_entity ON event_relations(entity_id);

CREATE TABLE IF NOT EXISTS clusters (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    member_count INTEGER NOT NULL DEFAULT 0,
    member_ids TEXT NOT NULL DEFAULT '[]',
    earliest_event_time TEXT,
    latest_event_time TEXT,
    embedding BLOB,
    avg_similarity REAL NOT NULL DEFAULT 0,
    level INTEGER NOT NULL DEFAULT 2,
    parent_cluster_id TEXT,
    last_updated TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS clustering_meta (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    clustering_time TEXT NOT NULL,
    total_events INTEGER NOT NULL,
    clusters_created INTEGER NOT NULL,
    events_clustered INTEGER NOT NULL,
    algorithm TEXT NOT NULL,
    parameters TEXT NOT NULL DEFAULT '{}',
    avg_cluster_size REAL NOT NULL DEFAULT 0,
    avg_similarity REAL NOT NULL DEFAULT 0
);
"""


class Database:
    def __init__(self, path: str = ":memory:"):
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

    @contextmanager
    def get_db_context(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection; commit on success, roll back on error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def init_db(path: str = ":memory:") -> Database:
    db = Database(path)
    with db.get_db_context() as conn:
        conn.executescript(SCHEMA)
    logger.info("[DB] Initialized %s", path)
    return db
