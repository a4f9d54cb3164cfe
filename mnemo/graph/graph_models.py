from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Any

from mnemo.core.clock import ensure_utc, utcnow


class Node(BaseModel):
    id: str = ""
    name: str
    type: str
    canonical_name: str | None = None
    aliases: set[str] = Field(default_factory=set)
    attributes: dict[str, str] = Field(default_factory=dict)
    source_context: str | None = None
    last_updated: datetime = Field(default_factory=utcnow)

    @field_validator("last_updated")
    @classmethod
    def normalize_times(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


class EventNode(BaseModel):
    id: str = ""
    name: str
    type: str
    description: str | None = None
    location: str | None = None
    purpose: str | None = None
    result: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    last_updated: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime | None = None
    embedding: list[float] | None = None
    cluster_id: str | None = None  # weak reference, owned by ClusterNode
    source_context: str | None = None

    @field_validator("start_time", "end_time", "last_updated", "last_seen_at")
    @classmethod
    def normalize_times(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @property
    def event_time(self) -> datetime:
        return self.start_time or self.last_updated

    def public_dict(self) -> dict[str, Any]:
        """Serializable form without the raw vector."""
        data = self.model_dump(mode="json", exclude={"embedding"})
        data["has_embedding"] = bool(self.embedding)
        return data


class EventEntityRelation(BaseModel):
    id: int | None = None
    event_id: str
    entity_id: str
    role: str
    last_updated: datetime = Field(default_factory=utcnow)

    @field_validator("last_updated")
    @classmethod
    def normalize_times(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


class ClusterNode(BaseModel):
    id: str
    name: str
    description: str = ""
    member_count: int = 0
    member_ids: list[str] = Field(default_factory=list)
    earliest_event_time: datetime | None = None
    latest_event_time: datetime | None = None
    embedding: list[float] | None = None  # centroid
    avg_similarity: float = 0.0
    level: int = 2  # 1 = stage-1 group, 2 = final cluster
    parent_cluster_id: str | None = None
    last_updated: datetime = Field(default_factory=utcnow)

    def public_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"embedding"})


class ClusteringMeta(BaseModel):
    id: int | None = None
    clustering_time: datetime = Field(default_factory=utcnow)
    total_events: int
    clusters_created: int
    events_clustered: int
    algorithm: str = "two-stage-agglomerative"
    parameters: dict[str, Any] = Field(default_factory=dict)
    avg_cluster_size: float = 0.0
    avg_similarity: float = 0.0
