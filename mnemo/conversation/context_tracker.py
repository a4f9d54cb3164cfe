"""
Conversation Context Tracker - live dialogue state.

Updated on every utterance: intent, emotion, topics with intensities,
participants and unfinished tasks. A gap longer than the session threshold
starts a fresh context.
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, Field

from config import thresholds
from config.settings import settings
from mnemo.conversation.text_signals import (
    COMPLETION_CUES,
    EMOTION_CUES,
    PLANNING_CUES,
    QUESTION_CUES,
    REFLECTION_CUES,
    REQUEST_CUES,
    contains_any,
    extract_keywords,
)
from mnemo.core.clock import ensure_utc, utcnow
from mnemo.core.logging_config import get_logger

logger = get_logger(__name__)


class ConversationState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"


class UserIntent(str, Enum):
    QUESTION = "question"
    REQUEST = "request"
    CASUAL = "casual"
    PLANNING = "planning"
    REFLECTION = "reflection"


class UserEmotion(str, Enum):
    NEUTRAL = "neutral"
    POSITIVE = "positive"
    NEGATIVE = "negative"
    EXCITED = "excited"
    CONFUSED = "confused"


class ConversationContext(BaseModel):
    id: str = Field(default_factory=lambda: f"ctx_{uuid.uuid4().hex[:12]}")
    state: ConversationState = ConversationState.IDLE
    primary_intent: UserIntent = UserIntent.CASUAL
    user_emotion: UserEmotion = UserEmotion.NEUTRAL
    start_time: datetime = Field(default_factory=utcnow)
    last_activity: Optional[datetime] = None
    current_topics: list[str] = Field(default_factory=list)
    participants: list[str] = Field(default_factory=list)
    topic_intensity: dict[str, float] = Field(default_factory=dict)
    unfinished_tasks: list[str] = Field(default_factory=list)
    utterance_count: int = 0


def detect_intent(text: str) -> UserIntent:
    # Order matters: an explicit request beats a trailing question mark
    if contains_any(text, REQUEST_CUES):
        return UserIntent.REQUEST
    if contains_any(text, PLANNING_CUES):
        return UserIntent.PLANNING
    if contains_any(text, QUESTION_CUES):
        return UserIntent.QUESTION
    if contains_any(text, REFLECTION_CUES):
        return UserIntent.REFLECTION
    return UserIntent.CASUAL


def detect_emotion(text: str) -> UserEmotion:
    for label in ("excited", "negative", "confused", "positive"):
        if contains_any(text, EMOTION_CUES[label]):
            return UserEmotion(label)
    return UserEmotion.NEUTRAL


class ConversationContextTracker:
    def __init__(
        self,
        session_gap: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
        topic_step: float = thresholds.TOPIC_INTENSITY_STEP,
        max_topics: int = thresholds.MAX_CURRENT_TOPICS,
    ):
        self.session_gap = session_gap or timedelta(minutes=settings.session_gap_minutes)
        self.clock = clock
        self.topic_step = topic_step
        self.max_topics = max_topics
        self._context = ConversationContext()
        self._recent = deque(maxlen=20)
        self._lock = threading.Lock()

    def observe(self, text: str, now: Optional[datetime] = None,
                participants: Optional[Iterable[str]] = None) -> ConversationContext:
        """Fold one utterance into the live context and return a snapshot."""
        now = ensure_utc(now or self.clock())
        with self._lock:
            ctx = self._context
            if ctx.last_activity is not None and now - ctx.last_activity > self.session_gap:
                logger.info("[Conversation] Session gap of %s, starting new context", now - ctx.last_activity)
                ctx = self._context = ConversationContext(start_time=now)
                self._recent.clear()
            if ctx.utterance_count == 0:
                ctx.start_time = now

            ctx.state = ConversationState.PROCESSING
            ctx.primary_intent = detect_intent(text)
            ctx.user_emotion = detect_emotion(text)
            self._update_topics(ctx, extract_keywords(text))
            self._update_tasks(ctx, text)
            for p in participants or ():
                if p and p not in ctx.participants:
                    ctx.participants.append(p)
            ctx.utterance_count += 1
            ctx.last_activity = now
            self._recent.append(text)
            ctx.state = ConversationState.ACTIVE
            return ctx.model_copy(deep=True)

    def _update_topics(self, ctx: ConversationContext, keywords: list[str]) -> None:
        for topic in list(ctx.topic_intensity):
            if topic not in keywords:
                ctx.topic_intensity[topic] = round(ctx.topic_intensity[topic] * 0.9, 4)
                if ctx.topic_intensity[topic] < 0.05:
                    del ctx.topic_intensity[topic]
        for kw in keywords:
            ctx.topic_intensity[kw] = min(1.0, ctx.topic_intensity.get(kw, 0.0) + self.topic_step)
        ranked = sorted(ctx.topic_intensity.items(), key=lambda x: x[1], reverse=True)
        ctx.current_topics = [t for t, _ in ranked[:self.max_topics]]

    @staticmethod
    def _update_tasks(ctx: ConversationContext, text: str) -> None:
        if contains_any(text, COMPLETION_CUES) and ctx.unfinished_tasks:
            words = set(extract_keywords(text))
            done = [t for t in ctx.unfinished_tasks if words & set(extract_keywords(t))]
            for t in done or ctx.unfinished_tasks[:1]:
                ctx.unfinished_tasks.remove(t)
            return
        if ctx.primary_intent in (UserIntent.REQUEST, UserIntent.PLANNING):
            task = text.strip()[:80]
            if task and task not in ctx.unfinished_tasks:
                ctx.unfinished_tasks.append(task)

    def current(self) -> ConversationContext:
        with self._lock:
            return self._context.model_copy(deep=True)

    def recent_utterances(self) -> list[str]:
        with self._lock:
            return list(self._recent)

    def end_session(self) -> ConversationContext:
        with self._lock:
            self._context.state = ConversationState.COMPLETED
            return self._context.model_copy(deep=True)

    def reset(self) -> None:
        with self._lock:
            self._context = ConversationContext()
            self._recent.clear()
