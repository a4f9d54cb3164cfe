"""
Personal Focus Tracker.

A bounded, self-pruning set of focus points (topics of sustained personal
relevance). Each point keeps the intensity it had when last reinforced;
the current intensity is derived from elapsed time:

    intensity(now) = intensity * decay_factor ** (elapsed / decay_unit)

so decay is lazy, idempotent and monotone between reinforcements.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import thresholds
from mnemo.conversation.context_tracker import ConversationContext, UserEmotion, UserIntent
from mnemo.conversation.text_signals import extract_keywords
from mnemo.core.clock import ensure_utc, utcnow
from mnemo.core.logging_config import get_logger
from mnemo.focus.focus_keywords import FocusKeywordTable
from mnemo.focus.focus_models import FOCUS_LABELS, FocusPoint, FocusType

logger = get_logger(__name__)


def detect_time_scope(text: str) -> str:
    lowered = (text or "").lower()
    if any(k in lowered for k in ("最近", "今天", "昨天", "recently", "today", "yesterday")):
        return "recent"
    if any(k in lowered for k in ("这周", "上周", "this week", "last week")):
        return "past_week"
    if any(k in lowered for k in ("这个月", "上个月", "this month", "last month")):
        return "past_month"
    return "long_term"


class PersonalFocusTracker:
    def __init__(
        self,
        keyword_table: Optional[FocusKeywordTable] = None,
        seed_intensity: float = thresholds.FOCUS_SEED_INTENSITY,
        reinforcement_step: float = thresholds.FOCUS_REINFORCEMENT_STEP,
        decay_factor: float = thresholds.FOCUS_DECAY_FACTOR,
        decay_unit: timedelta = timedelta(minutes=thresholds.FOCUS_DECAY_UNIT_MINUTES),
        min_intensity: float = thresholds.FOCUS_MIN_INTENSITY,
        max_points: int = thresholds.FOCUS_MAX_POINTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not 0.0 < decay_factor <= 1.0:
            raise ValueError("decay_factor must be in (0, 1]")
        self.keyword_table = keyword_table or FocusKeywordTable()
        self.seed_intensity = seed_intensity
        self.reinforcement_step = reinforcement_step
        self.decay_factor = decay_factor
        self.decay_unit = decay_unit
        self.min_intensity = min_intensity
        self.max_points = max_points
        self.clock = clock
        self._points: dict[str, FocusPoint] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Decay
    # =========================================================================

    def current_intensity(self, point: FocusPoint, now: Optional[datetime] = None) -> float:
        now = ensure_utc(now or self.clock())
        elapsed = max(0.0, (now - point.last_reinforced).total_seconds())
        units = elapsed / self.decay_unit.total_seconds()
        return point.intensity * (self.decay_factor ** units)

    def decay(self, elapsed: timedelta) -> int:
        """Age every point by an extra elapsed span; returns how many were pruned."""
        units = max(0.0, elapsed.total_seconds()) / self.decay_unit.total_seconds()
        with self._lock:
            for point in self._points.values():
                point.intensity = point.intensity * (self.decay_factor ** units)
            return self._prune(ensure_utc(self.clock()))

    def _prune(self, now: datetime) -> int:
        dead = [pid for pid, p in self._points.items() if self.current_intensity(p, now) < self.min_intensity]
        for pid in dead:
            del self._points[pid]
        if len(self._points) > self.max_points:
            ranked = sorted(self._points.values(), key=lambda p: self.current_intensity(p, now))
            for p in ranked[:len(self._points) - self.max_points]:
                del self._points[p.id]
                dead.append(p.id)
        if dead:
            logger.debug("[Focus] Pruned %d focus points", len(dead))
        return len(dead)

    # =========================================================================
    # Observation
    # =========================================================================

    def _signals(self, text: str, context: Optional[ConversationContext]) -> dict[FocusType, set[str]]:
        signals = self.keyword_table.match(text)
        if context is not None:
            if context.user_emotion in (UserEmotion.NEGATIVE, UserEmotion.EXCITED):
                signals.setdefault(FocusType.EMOTIONAL_CONTEXT, set()).add(context.user_emotion.value)
            if context.primary_intent == UserIntent.PLANNING:
                signals.setdefault(FocusType.GOAL_TRACKING, set()).update(context.current_topics[:2])
        return signals

    def observe(self, text: str, context: Optional[ConversationContext] = None,
                now: Optional[datetime] = None) -> list[FocusPoint]:
        """Reinforce or create focus points for one utterance; returns the active set."""
        now = ensure_utc(now or self.clock())
        topics = set(extract_keywords(text))
        with self._lock:
            self._prune(now)
            for focus_type, matched in self._signals(text, context).items():
                keywords = {k for k in matched | topics if k}
                point = self._find_match(focus_type, keywords)
                if point is not None:
                    current = self.current_intensity(point, now)
                    point.intensity = min(1.0, current + self.reinforcement_step)
                    point.last_reinforced = now
                    point.keywords |= keywords
                    point.reinforcement_count += 1
                    logger.debug("[Focus] Reinforced %s -> %.2f", point.description, point.intensity)
                else:
                    point = FocusPoint(
                        description=self._describe(focus_type, matched, topics),
                        type=focus_type,
                        intensity=min(1.0, self.seed_intensity),
                        keywords=keywords,
                        last_reinforced=now,
                        created_at=now,
                        context={
                            "trigger_text": text[:100],
                            "time_scope": detect_time_scope(text),
                        },
                    )
                    self._points[point.id] = point
                    logger.info("[Focus] New focus point: %s", point.summary_line())
            self._prune(now)
            return self._active(now)

    def _find_match(self, focus_type: FocusType, keywords: set[str]) -> Optional[FocusPoint]:
        best, best_overlap = None, 0
        for point in self._points.values():
            if point.type != focus_type:
                continue
            overlap = len(point.keywords & keywords)
            if overlap > best_overlap:
                best, best_overlap = point, overlap
        return best

    @staticmethod
    def _describe(focus_type: FocusType, matched: set[str], topics: set[str]) -> str:
        subject = sorted(topics - matched)[:2] or sorted(matched)[:2]
        label = FOCUS_LABELS[focus_type]
        return f"{label}: {', '.join(subject)}" if subject else label

    # =========================================================================
    # Queries
    # =========================================================================

    def _active(self, now: datetime) -> list[FocusPoint]:
        out = []
        for p in self._points.values():
            snapshot = p.model_copy(deep=True)
            snapshot.intensity = self.current_intensity(p, now)
            out.append(snapshot)
        out.sort(key=lambda p: p.intensity, reverse=True)
        return out

    def active(self, now: Optional[datetime] = None) -> list[FocusPoint]:
        """Active points with their current (decayed) intensity, strongest first."""
        now = ensure_utc(now or self.clock())
        with self._lock:
            self._prune(now)
            return self._active(now)

    def summary(self, now: Optional[datetime] = None) -> list[str]:
        return [p.summary_line() for p in self.active(now)]

    def clear(self) -> None:
        with self._lock:
            self._points.clear()
