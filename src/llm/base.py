"""Shared abstractions for chat model clients."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable


class BaseLLMClient(ABC):
    """Abstract base class for chat completion providers."""

    @abstractmethod
    async def chat(
        self,
        messages: Iterable[dict[str, str]],
        *,
        temperature: float = 0.1,
    ) -> str:
        """Return a chat-style completion."""
