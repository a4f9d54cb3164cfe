"""
Error taxonomy.

Stores raise these; orchestration layers (clustering, import, embedding
batches) catch them per item and surface them in structured results.
"""

from __future__ import annotations

from typing import Any


class MnemoError(Exception):
    """Base class for all engine errors."""


class CapacityExhausted(MnemoError):
    """A cache category is full of items that may not be evicted."""

    def __init__(self, category: str, capacity: int):
        super().__init__(
            f"category '{category}' is full ({capacity} items) and holds only user_profile items"
        )
        self.category = category
        self.capacity = capacity

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category, "capacity": self.capacity, "reason": str(self)}


class IntegrityViolation(MnemoError):
    """A graph integrity issue: dangling reference, duplicate edge or orphan."""

    def __init__(self, kind: str, detail: str):
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "detail": self.detail}


class EmbeddingUnavailable(MnemoError):
    """The embedding collaborator failed or returned an empty vector."""

    def __init__(self, item_id: str, reason: str):
        super().__init__(f"embedding unavailable for {item_id}: {reason}")
        self.item_id = item_id
        self.reason = reason

    def to_dict(self) -> dict[str, str]:
        return {"id": self.item_id, "reason": self.reason}


class ImportRecordError(MnemoError):
    """A bulk-import record that was skipped."""

    def __init__(self, reason: str, original_id: Any = None, raw_record: Any = None):
        super().__init__(reason)
        self.reason = reason
        self.original_id = original_id
        self.raw_record = raw_record

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "original_id": self.original_id,
            "raw_record": self.raw_record,
        }


class ClusteringFailure(MnemoError):
    """Whole-operation clustering failure."""


class OperationCancelled(MnemoError):
    """Raised between batches when a cancellation token is set."""
