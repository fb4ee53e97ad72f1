"""Pydantic schemas exchanged between the relay and its collaborators."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Role = Literal["user", "assistant"]


class TranscriptTurn(BaseModel):
    """One finished turn of caller or assistant speech."""

    role: Role
    text: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("text")
    @classmethod
    def text_not_empty(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("Text may not be empty.")
        return text


class ToolInvocation(BaseModel):
    """A fully assembled tool call requested by the engine."""

    identifier: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Outcome of a tool execution, as reported back to the engine."""

    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)

    def to_output(self) -> str:
        if not self.success:
            return f"Error: {self.error or 'unknown error'}"
        if isinstance(self.result, str):
            return self.result
        if isinstance(self.result, list) and not self.result:
            return "No items found."
        if self.result is None:
            return "Done."
        return json.dumps(self.result, indent=2, default=str)


class ConversationHandle(BaseModel):
    """What the persistence layer knows about a call when it starts."""

    conversation_id: int
    caller_phone: str
    caller_name: str | None = None
    previous_calls: int = 0
