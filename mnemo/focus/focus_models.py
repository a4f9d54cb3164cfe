from enum import Enum
from datetime import datetime
from typing import Any
import uuid

from pydantic import BaseModel, Field, field_validator

from mnemo.core.clock import ensure_utc, utcnow


class FocusType(str, Enum):
    PERSONAL_HISTORY = "personal_history"
    RELATIONSHIP = "relationship"
    PREFERENCE = "preference"
    GOAL_TRACKING = "goal_tracking"
    BEHAVIOR_PATTERN = "behavior_pattern"
    EMOTIONAL_CONTEXT = "emotional_context"
    TEMPORAL_CONTEXT = "temporal_context"


FOCUS_LABELS = {
    FocusType.PERSONAL_HISTORY: "Personal history",
    FocusType.RELATIONSHIP: "Relationships",
    FocusType.PREFERENCE: "Preferences",
    FocusType.GOAL_TRACKING: "Goals and plans",
    FocusType.BEHAVIOR_PATTERN: "Habits",
    FocusType.EMOTIONAL_CONTEXT: "Emotional state",
    FocusType.TEMPORAL_CONTEXT: "Recent period",
}


class FocusPoint(BaseModel):
    id: str = Field(default_factory=lambda: f"focus_{uuid.uuid4().hex[:12]}")
    description: str
    type: FocusType
    intensity: float = Field(ge=0.0, le=1.0)  # value at last_reinforced
    keywords: set[str] = Field(default_factory=set)
    last_reinforced: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    reinforcement_count: int = 0
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("last_reinforced", "created_at")
    @classmethod
    def normalize_times(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def summary_line(self) -> str:
        return f"{self.description} ({self.type.value})"
