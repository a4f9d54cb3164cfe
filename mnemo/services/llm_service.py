"""
LLM Service - thin wrapper over the injected llm_complete(prompt) collaborator.

Used for event/entity extraction and cluster titles. Every caller has a
deterministic fallback, so a missing or failing collaborator degrades
output quality instead of failing the operation.
"""

import json
import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from mnemo.core.logging_config import get_logger

logger = get_logger(__name__)

LLMComplete = Callable[[str], str]

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


def clean_json_response(response: str) -> str:
    """Strip reasoning blocks and ```json fences from an LLM response."""
    response = _THINK_RE.sub("", response).strip()

    if response.startswith("```json"):
        response = response[7:]
    elif response.startswith("```"):
        response = response[3:]

    if response.endswith("```"):
        response = response[:-3]

    return response.strip()


# =============================================================================
# PROMPTS
# =============================================================================

EXTRACTION_PROMPT = """You build a personal knowledge graph from conversation.
Today is {today}.
{user_context}
Extract events and entities from the conversation below. Be specific: use
concrete names of people, objects, places and concepts. Keep naming
consistent across events.

Return JSON only:
{{
  "events": [{{"name": "", "type": "", "start_time": "YYYY-MM-DD HH:mm or null",
              "end_time": null, "location": null, "purpose": null, "result": null,
              "description": null, "participants": [], "tools_used": [],
              "related_locations": [], "related_concepts": []}}],
  "entities": [{{"name": "", "type": "", "attributes": {{}}, "aliases": []}}],
  "event_relations": []
}}

Conversation:
{text}
"""

CLUSTER_TITLE_PROMPT = """These events belong to one topic cluster:
{events}

Give the cluster a short title (at most 12 words). Return the title only."""


class LLMService:
    """Wrapper around the llm_complete(prompt) -> text collaborator."""

    def __init__(self, complete_fn: Optional[LLMComplete] = None, throttle_seconds: float = 0.0):
        self.complete_fn = complete_fn
        self.throttle_seconds = throttle_seconds
        self._last_call = 0.0

    @property
    def available(self) -> bool:
        return self.complete_fn is not None

    def _throttle(self):
        if self.throttle_seconds <= 0:
            return
        wait = self._last_call + self.throttle_seconds - time.monotonic()
        if wait > 0:
            time.sleep(wait)
        self._last_call = time.monotonic()

    def complete(self, prompt: str) -> Optional[str]:
        """Raw completion, or None when the collaborator is missing or fails."""
        if self.complete_fn is None:
            return None
        self._throttle()
        try:
            return self.complete_fn(prompt)
        except Exception as e:
            logger.warning("[LLMService] Completion failed: %s", e)
            return None

    def complete_json(self, prompt: str) -> Optional[Any]:
        raw = self.complete(prompt)
        if not raw:
            return None
        try:
            return json.loads(clean_json_response(raw))
        except json.JSONDecodeError as e:
            logger.warning("[LLMService] Response was not JSON: %s", e)
            return None

    def extract_events_and_entities(
        self,
        text: str,
        today: str,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Structured extraction for the knowledge graph.

        Returns {"events": [...], "entities": [...], "event_relations": [...]},
        empty lists when nothing usable came back.
        """
        context_block = ""
        if user_context:
            context_block = "User state: " + json.dumps(user_context, ensure_ascii=False, default=str)
        data = self.complete_json(EXTRACTION_PROMPT.format(today=today, user_context=context_block, text=text))
        if not isinstance(data, dict):
            return {"events": [], "entities": [], "event_relations": []}
        return {
            "events": [e for e in data.get("events") or [] if isinstance(e, dict) and e.get("name")],
            "entities": [e for e in data.get("entities") or [] if isinstance(e, dict) and e.get("name")],
            "event_relations": [r for r in data.get("event_relations") or [] if isinstance(r, dict)],
        }

    def generate_cluster_title(self, event_lines: Sequence[str]) -> Optional[str]:
        if not event_lines:
            return None
        raw = self.complete(CLUSTER_TITLE_PROMPT.format(events="\n".join(f"- {l}" for l in event_lines[:10])))
        if not raw:
            return None
        title = clean_json_response(raw).strip().strip('"').splitlines()
        title = title[0].strip() if title else ""
        return title[:80] or None
