from enum import Enum, IntEnum
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator

from mnemo.core.clock import ensure_utc, utcnow


class CacheCategory(str, Enum):
    CONVERSATION_GRASP = "conversation_grasp"
    INTENT_UNDERSTANDING = "intent_understanding"
    KNOWLEDGE_RESERVE = "knowledge_reserve"
    PERSONAL_INFO = "personal_info"
    PROACTIVE_DATA = "proactive_data"


class CacheItemPriority(IntEnum):
    """Ordered low < medium < high < critical < user_profile."""
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3
    USER_PROFILE = 4

    @classmethod
    def parse(cls, value: "str | int | CacheItemPriority") -> "CacheItemPriority":
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        key = str(value).strip().upper().replace("USERPROFILE", "USER_PROFILE")
        return cls[key]


# =============================================================================
# Payload variants (discriminated by "kind")
# =============================================================================

class TextPayload(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class TopicPayload(BaseModel):
    kind: Literal["topic"] = "topic"
    topic: str
    intensity: float = 0.0
    keywords: list[str] = Field(default_factory=list)


class IntentPayload(BaseModel):
    kind: Literal["intent"] = "intent"
    intent: str
    confidence: float = 1.0
    unfinished_tasks: list[str] = Field(default_factory=list)


class EmotionPayload(BaseModel):
    kind: Literal["emotion"] = "emotion"
    emotion: str
    intensity: float = 0.5


class StructuredPayload(BaseModel):
    kind: Literal["structured"] = "structured"
    value: dict[str, Any] = Field(default_factory=dict)


CachePayload = Annotated[
    Union[TextPayload, TopicPayload, IntentPayload, EmotionPayload, StructuredPayload],
    Field(discriminator="kind"),
]


class CacheItem(BaseModel):
    key: str
    category: CacheCategory
    priority: CacheItemPriority = CacheItemPriority.MEDIUM
    weight: float = 0.5
    data: CachePayload
    related_topics: list[str] = Field(default_factory=list)
    relevance_score: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime = Field(default_factory=utcnow)
    access_count: int = 0

    @field_validator("priority", mode="before")
    @classmethod
    def parse_priority(cls, v):
        return CacheItemPriority.parse(v)

    @field_validator("created_at", "last_accessed_at")
    @classmethod
    def normalize_times(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def eviction_rank(self) -> tuple:
        """Lower ranks are evicted first."""
        return (int(self.priority), self.weight, self.last_accessed_at)

    def public_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["priority"] = self.priority.name.lower()
        return data
