"""
Focus keyword table: data-driven keyword signals per focus type.

Loaded from a CSV (type,keyword,language) so the vocabulary can grow
without code changes; falls back to a built-in table when the file is
missing or unreadable.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional, Set

import pandas as pd

from mnemo.core.logging_config import get_logger
from mnemo.focus.focus_models import FocusType

logger = get_logger(__name__)

DEFAULT_CSV = Path(__file__).parent / "data" / "focus_keywords.csv"

BUILTIN_KEYWORDS: Dict[FocusType, Set[str]] = {
    FocusType.PERSONAL_HISTORY: {"我之前", "我以前", "我曾经", "记得我", "i used to", "i remember"},
    FocusType.RELATIONSHIP: {"我朋友", "我家人", "朋友", "家人", "同事", "my friend", "my family"},
    FocusType.PREFERENCE: {"我喜欢", "我不喜欢", "我偏好", "i like", "i love", "i prefer"},
    FocusType.GOAL_TRACKING: {"我的目标", "我计划", "我打算", "my goal", "i plan to"},
    FocusType.BEHAVIOR_PATTERN: {"我经常", "我总是", "我习惯", "i always", "i usually"},
    FocusType.EMOTIONAL_CONTEXT: {"我觉得", "我感觉", "我心情", "i feel"},
    FocusType.TEMPORAL_CONTEXT: {"最近", "昨天", "上周", "recently", "yesterday", "last week"},
}


class FocusKeywordTable:
    def __init__(self, csv_path: Optional[Path] = None):
        self.csv_path = Path(csv_path) if csv_path else DEFAULT_CSV
        self.keywords = self._load()

    def _load(self) -> Dict[FocusType, Set[str]]:
        if not self.csv_path.exists():
            logger.warning("[FocusKeywords] %s not found, using built-in table", self.csv_path)
            return {t: set(kws) for t, kws in BUILTIN_KEYWORDS.items()}

        try:
            df = pd.read_csv(self.csv_path)
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            logger.warning("[FocusKeywords] Could not read %s (%s), using built-in table", self.csv_path, e)
            return {t: set(kws) for t, kws in BUILTIN_KEYWORDS.items()}

        table: Dict[FocusType, Set[str]] = {t: set() for t in FocusType}
        for _, row in df.iterrows():
            type_name = str(row.get("type", "")).strip().lower()
            keyword = str(row.get("keyword", "")).strip().lower()
            if not keyword or keyword == "nan":
                continue
            try:
                table[FocusType(type_name)].add(keyword)
            except ValueError:
                logger.debug("[FocusKeywords] Unknown focus type %r", type_name)
        return table

    def match(self, text: str) -> Dict[FocusType, Set[str]]:
        """Focus types whose keywords occur in text, with the matched keywords."""
        lowered = (text or "").lower()
        hits: Dict[FocusType, Set[str]] = {}
        for focus_type, keywords in self.keywords.items():
            found = {kw for kw in keywords if kw in lowered}
            if found:
                hits[focus_type] = found
        return hits
