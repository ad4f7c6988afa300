from __future__ import annotations

from typing import Optional

from openai import AsyncOpenAI

from tasklane.logging import get_logger

logger = get_logger(__name__)


class LLMService:
    """Text completion against an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        model: str,
        *,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.client = client or AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )

    async def complete(self, prompt: str, *, max_tokens: int = 256) -> str:
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.2,
            max_tokens=max_tokens,
        )
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("llm_no_choices", model=self.model)
            return ""
        return first_choice.message.content or ""

    async def close(self) -> None:
        await self.client.close()
