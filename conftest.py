import os

# Deterministic hash embeddings and quiet logs for the test run
os.environ.setdefault("MNEMO_USE_REAL_EMBEDDINGS", "false")
os.environ.setdefault("MNEMO_LOG_LEVEL", "WARNING")
os.environ.setdefault("MNEMO_SQLITE_PATH", ":memory:")

import pytest

from mnemo.db.session import init_db
from mnemo.graph.graph_store import EventGraphStore


@pytest.fixture
def db():
    database = init_db(":memory:")
    yield database
    database.close()


@pytest.fixture
def store(db):
    return EventGraphStore(db)


class KeywordEmbedder:
    """Fake embedding collaborator: text -> vector of the first registered word it contains."""

    def __init__(self, vectors, default=None):
        self.vectors = {w.lower(): list(v) for w, v in vectors.items()}
        self.default = default
        self.calls = []

    def __call__(self, text):
        self.calls.append(text)
        lowered = text.lower()
        for word, vec in self.vectors.items():
            if word in lowered:
                return vec
        if self.default is None:
            raise ValueError(f"no vector for {text!r}")
        return self.default


@pytest.fixture
def keyword_embedder():
    return KeywordEmbedder
