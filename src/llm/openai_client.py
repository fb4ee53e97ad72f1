"""OpenAI chat client used for post-call summaries."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from openai import AsyncOpenAI

from config.settings import get_settings
from llm.base import BaseLLMClient

LOGGER = logging.getLogger(__name__)


class OpenAIClient(BaseLLMClient):
    """Wrapper for the OpenAI Chat Completion API."""

    def __init__(self, model: str | None = None) -> None:
        settings = get_settings()
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY must be configured for the OpenAI client.")

        self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        self._model = model or settings.summary_model

    async def chat(
        self,
        messages: Iterable[dict[str, str]],
        *,
        temperature: float = 0.1,
    ) -> str:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=list(messages),
            temperature=temperature,
            max_tokens=400,
        )
        return (response.choices[0].message.content or "").strip()
