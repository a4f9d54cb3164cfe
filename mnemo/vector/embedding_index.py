from __future__ import annotations

import time
from typing import Any, Callable, Hashable, Optional, Sequence

import numpy as np

from config import thresholds
from config.settings import settings
from mnemo.core.errors import EmbeddingUnavailable, OperationCancelled
from mnemo.core.logging_config import get_logger
from mnemo.core.progress import CancellationToken, ProgressChannel, check_cancelled, report
from mnemo.graph.graph_models import EventNode
from mnemo.graph.graph_store import EventGraphStore
from mnemo.vector.embedder import embed_text
from mnemo.vector.vector_index import as_vector, cosine_similarity, normalize, top_k_by_cosine

logger = get_logger(__name__)

EmbedFn = Callable[[str], Sequence[float]]


def event_embedding_text(event: EventNode, participants: Sequence[str] = ()) -> str:
    """Canonical text of an event: name, type, description, location, purpose, result, participants."""
    parts = [event.name, event.type]
    for value in (event.description, event.location, event.purpose, event.result):
        if value:
            parts.append(value)
    if participants:
        parts.append(" ".join(participants))
    return " ".join(p.strip() for p in parts if p and p.strip())


class EmbeddingIndex:
    """
    Text -> vector via the embedding collaborator, cosine similarity and
    ranked search, plus bulk generation of event embeddings.

    Event vectors are joint embeddings: a weighted sum of the title (name)
    vector and the full canonical text vector, renormalized.
    """

    def __init__(
        self,
        store: EventGraphStore,
        embed_fn: Optional[EmbedFn] = None,
        batch_size: Optional[int] = None,
        throttle_seconds: Optional[float] = None,
        title_weight: float = thresholds.TITLE_WEIGHT,
        content_weight: float = thresholds.CONTENT_WEIGHT,
    ):
        self.store = store
        self.embed_fn = embed_fn or embed_text
        self.batch_size = batch_size or settings.embedding_batch_size
        self.throttle_seconds = settings.throttle_seconds if throttle_seconds is None else throttle_seconds
        self.title_weight = title_weight
        self.content_weight = content_weight

    # =========================================================================
    # Primitives
    # =========================================================================

    def embed(self, text: str, item_id: str = "<text>") -> np.ndarray:
        """Embed text; failures and empty/non-finite vectors raise EmbeddingUnavailable."""
        try:
            raw = self.embed_fn(text)
        except EmbeddingUnavailable:
            raise
        except Exception as e:
            raise EmbeddingUnavailable(item_id, f"collaborator error: {e}") from e
        if raw is None:
            raise EmbeddingUnavailable(item_id, "collaborator returned no vector")
        vec = as_vector(raw)
        if vec.size == 0:
            raise EmbeddingUnavailable(item_id, "empty vector")
        if not np.all(np.isfinite(vec)) or not np.any(vec):
            raise EmbeddingUnavailable(item_id, "degenerate vector")
        return vec

    @staticmethod
    def similarity(a, b) -> float:
        return cosine_similarity(a, b)

    def search(self, query_text: str, corpus: Sequence[tuple[Hashable, Sequence[float]]],
               k: Optional[int] = None) -> list[tuple[Hashable, float]]:
        """Rank corpus by similarity to the query text; ties keep corpus order."""
        query_vec = self.embed(query_text, item_id="<query>")
        return top_k_by_cosine(query_vec, corpus, k)

    def joint_embedding(self, event: EventNode, participants: Sequence[str] = ()) -> np.ndarray:
        content = event_embedding_text(event, participants)
        content_vec = self.embed(content, item_id=event.id)
        title = (event.name or "").strip()
        if not title or title == content:
            return normalize(content_vec)
        title_vec = self.embed(title, item_id=event.id)
        if title_vec.shape != content_vec.shape:
            raise EmbeddingUnavailable(event.id, "title/content dimension mismatch")
        return normalize(self.title_weight * title_vec + self.content_weight * content_vec)

    def embed_event(self, event: EventNode) -> np.ndarray:
        return self.joint_embedding(event, self.store.participant_names(event.id))

    # =========================================================================
    # Bulk
    # =========================================================================

    def generate_for_all(
        self,
        force: bool = False,
        progress: Optional[ProgressChannel] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> dict[str, Any]:
        """
        Compute and store embeddings for events lacking one (all events if force).

        Per-event failures are collected, never fatal. Cancellation is checked
        between batches; embeddings already stored stay.
        """
        started = time.perf_counter()
        events = self.store.query_events()
        targets = events if force else [e for e in events if not e.embedding]
        skipped = len(events) - len(targets)
        generated = 0
        failures: list[dict[str, str]] = []
        cancelled = False

        report(progress, "embedding", f"Embedding {len(targets)} events ({skipped} already embedded)")
        for start in range(0, len(targets), self.batch_size):
            try:
                check_cancelled(cancel)
            except OperationCancelled:
                cancelled = True
                report(progress, "embedding", "Cancelled")
                break
            batch = targets[start:start + self.batch_size]
            for event in batch:
                try:
                    vec = self.embed_event(event)
                except EmbeddingUnavailable as e:
                    logger.warning("[EmbeddingIndex] %s", e)
                    failures.append(e.to_dict())
                    continue
                self.store.set_event_embedding(event.id, vec.tolist())
                generated += 1
            done = min(start + self.batch_size, len(targets))
            report(progress, "embedding", f"Embedded {done}/{len(targets)}",
                   fraction=done / len(targets))
            if self.throttle_seconds and done < len(targets):
                time.sleep(self.throttle_seconds)

        logger.info("[EmbeddingIndex] generated=%d skipped=%d failed=%d", generated, skipped, len(failures))
        return {
            "success": not cancelled,
            "cancelled": cancelled,
            "total_events": len(events),
            "generated": generated,
            "skipped": skipped,
            "failed": len(failures),
            "failures": failures,
            "duration_seconds": time.perf_counter() - started,
        }

    def search_events_by_text(self, query: str, top_k: int = thresholds.SEARCH_TOP_K,
                              threshold: float = thresholds.SEARCH_MIN_SIMILARITY) -> list[dict[str, Any]]:
        """Events by similarity to the query, descending; only embedded events take part."""
        if not query or not query.strip():
            return []
        events = self.store.events_with_embeddings()
        if not events:
            return []
        by_id = {e.id: e for e in events}
        ranked = self.search(query, [(e.id, e.embedding) for e in events])
        return [
            {"event": by_id[event_id], "similarity": score}
            for event_id, score in ranked
            if score >= threshold
        ][:top_k]
