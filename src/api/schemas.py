"""API-facing Pydantic models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class SessionSnapshotResponse(BaseModel):
    call_id: str
    stream_sid: str | None = None
    caller: str | None = None
    state: str
    duration_seconds: int
    pending_tool_call: str | None = None
    transcript_turns: int
    frames_in: int = Field(description="Caller audio frames received from Twilio.")
    frames_forwarded: int = Field(description="Caller frames forwarded to the Realtime engine.")
    frames_dropped: int = Field(description="Frames dropped because the engine was not ready.")
    frames_invalid: int
    frames_out: int = Field(description="Assistant audio frames sent back to Twilio.")
    engine_events: int
    tool_calls: int


class ActiveSessionsResponse(BaseModel):
    active: int
    sessions: list[SessionSnapshotResponse]


class MessageResponse(BaseModel):
    role: str
    content: str
    created_at: datetime


class CallerResponse(BaseModel):
    phone: str
    name: str | None = None
    call_count: int
