"""Per-call session state for the realtime relay."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Protocol

from agents.errors import (
    EngineSocketError,
    InvalidFrameError,
    ToolArgumentParseError,
    ToolProtocolViolation,
    TransportSocketError,
)
from agents.schemas import ConversationHandle, Role, ToolInvocation, ToolResult, TranscriptTurn
from agents.tool_calls import ToolCallAssembler
from integrations.twilio_streaming import media_message
from llm.realtime_client import function_call_output, input_audio_append, input_audio_commit, response_create
from telephony.codec import AudioFrame, to_engine_format, to_transport_format

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


_ORDER = {
    SessionState.CONNECTING: 0,
    SessionState.ACTIVE: 1,
    SessionState.CLOSING: 2,
    SessionState.CLOSED: 3,
}


class TransportConnection(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_json(self, message: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class EngineConnection(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_event(self, event: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class AudioCommitTimer:
    """Single-shot deferred action, rescheduled rather than stacked.

    Every ``schedule`` cancels the outstanding one, so the action fires at most
    once per quiet gap, ``delay`` seconds after the last call.
    """

    def __init__(self, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        self._delay = delay
        self._action = action
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._fire())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _fire(self) -> None:
        await asyncio.sleep(self._delay)
        # Detach first so a schedule() during the action does not cancel it.
        self._task = None
        try:
            await self._action()
        except EngineSocketError as exc:
            LOGGER.warning("Audio commit failed: %s", exc)


@dataclass
class SessionStats:
    frames_in: int = 0
    frames_forwarded: int = 0
    frames_dropped: int = 0
    frames_invalid: int = 0
    frames_out: int = 0
    engine_events: int = 0
    tool_calls: int = 0


@dataclass(eq=False)
class CallSession:
    """State container for one active call.

    Every mutation goes through ``_lock`` so the two pumps and the tool task
    never interleave on the same call.
    """

    call_id: str
    transport: TransportConnection
    stream_sid: str | None = None
    caller: str | None = None
    callee: str | None = None
    commit_delay: float = 0.5
    engine: EngineConnection | None = None
    state: SessionState = SessionState.CONNECTING
    conversation: ConversationHandle | None = None
    transcript: list[TranscriptTurn] = field(default_factory=list)
    summary_dispatched: bool = False
    close_reason: str | None = None
    started_at: float = field(default_factory=time.monotonic)
    stats: SessionStats = field(default_factory=SessionStats)
    assembler: ToolCallAssembler = field(default_factory=ToolCallAssembler)
    tool_task: asyncio.Task | None = field(default=None, repr=False)
    engine_task: asyncio.Task | None = field(default=None, repr=False)
    _response_text: list[str] = field(default_factory=list, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _commit_timer: AudioCommitTimer | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._commit_timer = AudioCommitTimer(self.commit_delay, self._commit_audio)

    @property
    def commit_timer(self) -> AudioCommitTimer:
        return self._commit_timer

    @property
    def is_live(self) -> bool:
        return self.state in (SessionState.CONNECTING, SessionState.ACTIVE)

    @property
    def duration_seconds(self) -> int:
        return int(time.monotonic() - self.started_at)

    def _engine_ready(self) -> bool:
        return self.state is SessionState.ACTIVE and self.engine is not None and self.engine.is_open

    def _advance(self, target: SessionState) -> bool:
        if _ORDER[target] <= _ORDER[self.state]:
            return False
        self.state = target
        return True

    # -- lifecycle -----------------------------------------------------------

    async def attach_engine(self, engine: EngineConnection) -> bool:
        """Attach a configured engine and go ACTIVE.

        Returns False when the call already started closing; the caller then
        owns ``engine`` and must close it.
        """

        async with self._lock:
            if self.state is not SessionState.CONNECTING:
                return False
            self.engine = engine
            self._advance(SessionState.ACTIVE)
            return True

    async def request_close(self, reason: str) -> bool:
        """Move to CLOSING. Only the first call returns True."""

        async with self._lock:
            if not self._advance(SessionState.CLOSING):
                LOGGER.debug("Close for %s ignored (%s); already %s", self.call_id, reason, self.state.value)
                return False
            self.close_reason = reason
            self._commit_timer.cancel()
            LOGGER.info("Closing call %s: %s", self.call_id, reason)
            return True

    async def release(self) -> None:
        """Close both sockets. The session stays CLOSING until ``mark_closed``."""

        async with self._lock:
            self._commit_timer.cancel()
            if self.engine is not None:
                await self.engine.close()
            await self.transport.close()

    def mark_closed(self) -> None:
        self._advance(SessionState.CLOSED)

    def claim_summary(self) -> bool:
        if self.summary_dispatched:
            return False
        self.summary_dispatched = True
        return True

    # -- audio ---------------------------------------------------------------

    async def on_transport_audio(self, frame: AudioFrame) -> bool:
        """Forward caller audio to the engine; returns whether it was sent."""

        async with self._lock:
            self.stats.frames_in += 1
            if not self._engine_ready():
                self.stats.frames_dropped += 1
                return False
            try:
                payload = to_engine_format(frame)
            except InvalidFrameError as exc:
                self.stats.frames_invalid += 1
                LOGGER.warning("Dropping invalid inbound frame on %s: %s", self.call_id, exc)
                return False
            try:
                await self.engine.send_event(input_audio_append(payload))
            except EngineSocketError as exc:
                self.stats.frames_dropped += 1
                LOGGER.warning("Engine send failed on %s: %s", self.call_id, exc)
                return False
            self.stats.frames_forwarded += 1
            self._commit_timer.schedule()
            return True

    async def _commit_audio(self) -> None:
        async with self._lock:
            if not self._engine_ready():
                return
            await self.engine.send_event(input_audio_commit())

    async def on_engine_audio(self, frame: AudioFrame) -> bool:
        async with self._lock:
            if self.state is not SessionState.ACTIVE or not self.transport.is_open or not self.stream_sid:
                return False
            try:
                payload = to_transport_format(frame)
            except InvalidFrameError as exc:
                LOGGER.warning("Dropping invalid engine frame on %s: %s", self.call_id, exc)
                return False
            try:
                await self.transport.send_json(media_message(self.stream_sid, payload))
            except TransportSocketError as exc:
                LOGGER.warning("Transport send failed on %s: %s", self.call_id, exc)
                return False
            self.stats.frames_out += 1
            return True

    # -- tool calls ----------------------------------------------------------

    async def on_tool_call_start(self, identifier: str, name: str) -> bool:
        async with self._lock:
            if self.state is not SessionState.ACTIVE:
                LOGGER.warning("Tool call %s on %s rejected in state %s", name, self.call_id, self.state.value)
                return False
            try:
                self.assembler.on_start(identifier, name)
            except ToolProtocolViolation as exc:
                LOGGER.warning("Tool protocol violation on %s: %s", self.call_id, exc.detail)
                return False
            return True

    async def on_tool_call_fragment(self, identifier: str, chunk: str, name_hint: str | None = None) -> bool:
        async with self._lock:
            if self.state is not SessionState.ACTIVE:
                return False
            try:
                self.assembler.on_fragment(identifier, chunk, name_hint)
            except ToolProtocolViolation as exc:
                LOGGER.warning("Tool protocol violation on %s: %s", self.call_id, exc.detail)
                return False
            return True

    async def on_tool_call_complete(self, identifier: str) -> ToolInvocation | ToolArgumentParseError | None:
        async with self._lock:
            if self.state is not SessionState.ACTIVE:
                return None
            try:
                outcome = self.assembler.on_complete(identifier)
            except ToolProtocolViolation as exc:
                LOGGER.warning("Tool protocol violation on %s: %s", self.call_id, exc.detail)
                return None
            self.stats.tool_calls += 1
            return outcome

    async def send_tool_result(self, identifier: str, result: ToolResult, *, continue_response: bool = True) -> bool:
        """Report a tool result to the engine and free the accumulator.

        Results of calls that finish after the session left ACTIVE are
        discarded. With ``continue_response`` the engine is asked to respond
        to the result.
        """

        async with self._lock:
            try:
                if not self._engine_ready():
                    LOGGER.info("Discarding result of tool call %s on %s", identifier, self.call_id)
                    return False
                await self.engine.send_event(function_call_output(identifier, result.to_output()))
                if continue_response:
                    await self.engine.send_event(response_create())
                return True
            except EngineSocketError as exc:
                LOGGER.warning("Could not send tool result %s on %s: %s", identifier, self.call_id, exc)
                return False
            finally:
                self.assembler.clear(identifier)

    # -- transcript ----------------------------------------------------------

    def on_transcript_event(self, role: Role, text: str) -> TranscriptTurn | None:
        if not text or not text.strip():
            return None
        turn = TranscriptTurn(role=role, text=text)
        self.transcript.append(turn)
        return turn

    def append_response_text(self, delta: str) -> None:
        if delta:
            self._response_text.append(delta)

    def flush_response_text(self) -> TranscriptTurn | None:
        text = "".join(self._response_text)
        self._response_text.clear()
        return self.on_transcript_event("assistant", text)

    # -- engine messages -----------------------------------------------------

    async def send_engine_event(self, event: dict[str, Any]) -> bool:
        async with self._lock:
            if not self._engine_ready():
                return False
            await self.engine.send_event(event)
            return True

    def snapshot(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "stream_sid": self.stream_sid,
            "caller": self.caller,
            "state": self.state.value,
            "duration_seconds": self.duration_seconds,
            "pending_tool_call": self.assembler.pending.name if self.assembler.pending else None,
            "transcript_turns": len(self.transcript),
            **asdict(self.stats),
        }
