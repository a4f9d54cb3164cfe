"""
Default embedding collaborator.

settings.use_real_embeddings picks the backend:
- True: sentence-transformers (settings.embedding_model), loaded on first use
- False: hash-seeded unit vectors, stable across runs (tests / offline)

Whitespace is collapsed before embedding so "a  b" and "a b" share a vector.
Blank text yields None, which EmbeddingIndex reports as unavailable.
"""

import hashlib
import re
import threading
from functools import lru_cache
from typing import Optional

import numpy as np

from config.settings import settings
from mnemo.core.logging_config import get_logger

logger = get_logger(__name__)

_WS_RE = re.compile(r"\s+")

_model = None
_model_lock = threading.Lock()


def _load_model():
    """Load the sentence-transformers model once per process, on GPU when present."""
    global _model
    with _model_lock:
        if _model is None:
            from sentence_transformers import SentenceTransformer
            import torch

            device = "cuda" if torch.cuda.is_available() else "cpu"
            _model = SentenceTransformer(settings.embedding_model, device=device)
            logger.info("[Embedder] Loaded %s on %s (dim=%s)", settings.embedding_model, device,
                        _model.get_sentence_embedding_dimension())
    return _model


def _seed(text: str) -> int:
    return int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")


@lru_cache(maxsize=2048)
def _hash_vector(text: str, dim: int) -> np.ndarray:
    v = np.random.default_rng(_seed(text)).normal(size=(dim,)).astype("float32")
    v /= np.linalg.norm(v) + 1e-9
    v.setflags(write=False)
    return v


def _model_vectors(texts: list[str]) -> np.ndarray:
    model = _load_model()
    return model.encode(texts, convert_to_numpy=True, normalize_embeddings=True,
                        batch_size=settings.embedding_batch_size).astype("float32")


def clean_text(text: Optional[str]) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def embed_text(text: str, dim: Optional[int] = None) -> Optional[np.ndarray]:
    cleaned = clean_text(text)
    if not cleaned:
        return None
    if settings.use_real_embeddings:
        return _model_vectors([cleaned])[0]
    return _hash_vector(cleaned, dim or settings.embedding_dim)

