from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from tasklane.logging import get_logger
from tasklane.service.llm import LLMService
from tasklane.storage.models import AI_SENTIMENTS

logger = get_logger(__name__)

MAX_PROMPT_TEXT_CHARS = 2000
PROMPT_TEMPLATE = (
    "Analyse this task and respond ONLY with valid JSON (no markdown, no explanation):\n"
    '{{"summary":"one sentence max 100 chars","sentiment":"positive|neutral|negative"}}\n'
    "\n"
    "Task: {text}"
)

_INVISIBLE_CHARS = ("\ufeff", "\u200b", "\u200c", "\u200d", "\u2060")
_CODE_FENCE_RE = re.compile(r"```[a-zA-Z]*")


class EnrichmentStore(Protocol):
    async def update_ai_fields(
        self, user_id: int, task_id: int, summary: str, sentiment: str
    ) -> bool: ...


class EnrichmentCache(Protocol):
    async def invalidate_task(self, user_id: int, task_id: int) -> None: ...


@dataclass(frozen=True)
class Enrichment:
    summary: str
    sentiment: str


def build_prompt(title: str, description: Optional[str]) -> str:
    text = title if not description else f"{title}\n{description}"
    return PROMPT_TEMPLATE.format(text=text[:MAX_PROMPT_TEXT_CHARS])


def clean_completion(text: str) -> str:
    """Drop byte-order marks, zero-width characters and markdown fences."""
    for char in _INVISIBLE_CHARS:
        text = text.replace(char, "")
    return _CODE_FENCE_RE.sub("", text).strip()


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first balanced ``{...}`` span in ``text`` that parses as an object."""

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(text[start : index + 1])
                    except ValueError:
                        parsed = None
                    if isinstance(parsed, dict):
                        return parsed
                    break
        start = text.find("{", start + 1)
    return None


def parse_enrichment(payload: Dict[str, Any], *, max_summary_chars: int) -> Enrichment:
    summary = payload.get("summary")
    summary = summary.strip()[:max_summary_chars] if isinstance(summary, str) else ""
    sentiment = payload.get("sentiment")
    if isinstance(sentiment, str) and sentiment.strip().lower() in AI_SENTIMENTS:
        sentiment = sentiment.strip().lower()
    else:
        sentiment = "neutral"
    return Enrichment(summary=summary, sentiment=sentiment)


class EnrichmentService:
    """Best-effort AI summary/sentiment for newly created tasks.

    Runs detached from the creating request. Every failure is logged and
    ends the attempt; nothing is retried or surfaced to the client.
    """

    def __init__(
        self,
        store: EnrichmentStore,
        cache: EnrichmentCache,
        llm: Optional[LLMService],
        *,
        max_tokens: int = 256,
        max_summary_chars: int = 200,
    ) -> None:
        self.store = store
        self.cache = cache
        self.llm = llm
        self.max_tokens = max_tokens
        self.max_summary_chars = max_summary_chars

    async def enrich(
        self, user_id: int, task_id: int, title: str, description: Optional[str]
    ) -> bool:
        if self.llm is None:
            logger.info("ai_skipped", task_id=task_id, reason="llm_not_configured")
            return False

        try:
            raw = await self.llm.complete(
                build_prompt(title, description), max_tokens=self.max_tokens
            )
        except Exception as exc:
            logger.warning(
                "ai_enrich_error", task_id=task_id, stage="completion", error=str(exc)
            )
            return False
        logger.info("ai_raw_response", task_id=task_id, length=len(raw), preview=raw[:200])

        payload = extract_json_object(clean_completion(raw))
        if payload is None:
            logger.warning("ai_bad_response", task_id=task_id, reason="no_json_object")
            return False
        enrichment = parse_enrichment(payload, max_summary_chars=self.max_summary_chars)
        if not enrichment.summary:
            logger.warning("ai_bad_response", task_id=task_id, reason="empty_summary")
            return False

        try:
            updated = await self.store.update_ai_fields(
                user_id, task_id, enrichment.summary, enrichment.sentiment
            )
        except Exception as exc:
            logger.warning(
                "ai_enrich_error", task_id=task_id, stage="persist", error=str(exc)
            )
            return False
        if not updated:
            logger.info("ai_task_gone", task_id=task_id)
            return False

        try:
            await self.cache.invalidate_task(user_id, task_id)
        except Exception as exc:
            logger.warning("cache_invalidate_failed", task_id=task_id, error=str(exc))
        logger.info("ai_enriched", task_id=task_id, sentiment=enrichment.sentiment)
        return True
