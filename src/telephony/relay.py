"""Relay between Twilio Media Streams and the OpenAI Realtime API.

One :class:`RelayCoordinator` serves every call handled by the process. For
each call it runs two pumps:

- the transport pump (``serve_transport``) reads Twilio stream events and
  feeds caller audio into the call's :class:`CallSession`;
- the engine pump (``_pump_engine``) reads Realtime events and routes audio,
  transcripts and tool calls back through the same session.

Either pump, a failed handshake, or the hang-up tool can end a call; all of
them go through ``close_session``, which runs teardown once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Coroutine, Sequence
from typing import Any, Protocol

from agents.errors import (
    DuplicateCallError,
    EngineHandshakeError,
    EngineSocketError,
    ToolArgumentParseError,
    TransportSocketError,
)
from agents.schemas import ConversationHandle, Role, ToolInvocation, ToolResult, TranscriptTurn
from agents.tools import HANG_UP_TOOL
from config.settings import Settings, get_settings
from integrations.twilio_streaming import (
    connected_message,
    error_message,
    inbound_media_payload,
    parse_start,
)
from llm.realtime_client import response_create
from prompts.loader import build_call_instructions
from telephony.registry import SessionRegistry
from telephony.session import CallSession

LOGGER = logging.getLogger(__name__)


class CallRecordStore(Protocol):
    async def register_call_start(self, call_id: str, caller_phone: str) -> ConversationHandle: ...

    async def append_transcript_turn(self, call_id: str, role: str, text: str) -> Any: ...

    async def register_call_end(self, call_id: str) -> None: ...


class ToolRunner(Protocol):
    def definitions(self) -> list[dict[str, Any]]: ...

    async def execute(
        self, name: str, arguments: dict[str, Any], caller: str | None, call_id: str
    ) -> ToolResult: ...


class SummarySender(Protocol):
    async def send_summary(
        self,
        call_id: str,
        transcript: Sequence[TranscriptTurn],
        caller: str | None,
        duration_seconds: int,
    ) -> Any: ...


class RelayCoordinator:
    """Creates, drives and tears down call sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        engine_factory: Callable[[], Any],
        call_store: CallRecordStore,
        tools: ToolRunner,
        summaries: SummarySender,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry
        self._engine_factory = engine_factory
        self._call_store = call_store
        self._tools = tools
        self._summaries = summaries
        self._settings = settings or get_settings()
        self._tasks: set[asyncio.Task] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # -- transport pump ------------------------------------------------------

    async def serve_transport(self, transport: Any) -> None:
        """Consume one Twilio stream until it stops, disconnects or fails."""

        session: CallSession | None = None
        reason = "transport closed"
        try:
            async for message in transport.messages():
                if not isinstance(message, dict):
                    continue
                event = message.get("event")
                if event == "start":
                    if session is not None:
                        LOGGER.warning("Ignoring second start on stream for %s", session.call_id)
                        continue
                    session = await self._start_call(transport, message)
                    if session is None:
                        await transport.close()
                        return
                elif event == "media":
                    if session is None:
                        continue
                    if await self._registry.get(session.call_id) is not session:
                        continue
                    payload = inbound_media_payload(message)
                    if payload is not None:
                        await session.on_transport_audio(payload)
                elif event == "stop":
                    reason = "transport stop"
                    break
                elif event in ("mark", "connected"):
                    continue
                else:
                    LOGGER.debug("Ignoring Twilio event %r", event)
        except TransportSocketError as exc:
            reason = f"transport error: {exc.detail}"
        except Exception:
            LOGGER.exception("Transport pump failed")
            reason = "transport error"
        finally:
            if session is not None:
                await self.close_session(session, reason)

    async def _start_call(self, transport: Any, message: dict[str, Any]) -> CallSession | None:
        start = parse_start(message)
        if not start.call_sid:
            await self._notify_transport_error(transport, "Missing callSid in start event")
            return None
        if not start.from_number:
            LOGGER.error("No caller number in stream parameters for %s", start.call_sid)
            await self._notify_transport_error(transport, "Missing caller number")
            return None

        try:
            session = await self._registry.create(
                start.call_sid,
                transport=transport,
                stream_sid=start.stream_sid or None,
                caller=start.from_number,
                callee=start.to_number,
                commit_delay=self._settings.audio_commit_interval_seconds,
            )
        except DuplicateCallError as exc:
            LOGGER.warning("Rejected stream: %s", exc.detail)
            await self._notify_transport_error(transport, exc.detail)
            return None

        LOGGER.info("Call %s: %s -> %s", session.call_id, session.caller, session.callee or "unknown")
        session.conversation = await self._register_start(session)
        session.engine_task = self._spawn(self._run_engine(session), name=f"engine:{session.call_id}")

        try:
            await transport.send_json(connected_message(session.call_id))
        except TransportSocketError as exc:
            LOGGER.warning("Could not acknowledge %s: %s", session.call_id, exc.detail)
        return session

    # -- engine pump ---------------------------------------------------------

    async def _run_engine(self, session: CallSession) -> None:
        engine = self._engine_factory()
        try:
            await engine.connect(
                instructions=build_call_instructions(session.conversation),
                tools=self._tools.definitions(),
            )
        except asyncio.CancelledError:
            await engine.close()
            raise
        except Exception as exc:
            if isinstance(exc, EngineHandshakeError):
                detail = exc.detail
                LOGGER.error("AI session for %s failed: %s", session.call_id, detail)
            else:
                detail = str(exc) or exc.__class__.__name__
                LOGGER.exception("AI session setup for %s crashed", session.call_id)
            await engine.close()
            await self._notify_transport_error(session.transport, f"Failed to initialize AI session: {detail}")
            await self.close_session(session, "engine handshake failed")
            return

        if not await session.attach_engine(engine):
            LOGGER.info("Call %s ended before the AI session was ready", session.call_id)
            await engine.close()
            return

        LOGGER.info("Call %s active", session.call_id)
        try:
            # The engine stays silent until asked to respond.
            await session.send_engine_event(response_create())
        except EngineSocketError as exc:
            LOGGER.warning("Greeting trigger failed for %s: %s", session.call_id, exc.detail)

        await self._pump_engine(session, engine)

    async def _pump_engine(self, session: CallSession, engine: Any) -> None:
        reason = "engine closed"
        try:
            async for event in engine.events():
                await self._handle_engine_event(session, event)
        except EngineSocketError as exc:
            reason = f"engine error: {exc.detail}"
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Engine pump failed for %s", session.call_id)
            reason = "engine error"
        await self.close_session(session, reason)

    async def _handle_engine_event(self, session: CallSession, event: dict[str, Any]) -> None:
        session.stats.engine_events += 1
        event_type = event.get("type")

        if event_type == "response.audio.delta":
            await session.on_engine_audio(event.get("delta") or "")
        elif event_type == "conversation.item.input_audio_transcription.completed":
            await self._record_turn(session, "user", event.get("transcript") or "")
        elif event_type in ("response.audio_transcript.delta", "response.text.delta"):
            session.append_response_text(event.get("delta") or "")
        elif event_type == "response.done":
            response = event.get("response") or {}
            if response.get("status") == "failed":
                error = ((response.get("status_details") or {}).get("error") or {}).get("message")
                LOGGER.error("Response failed on %s: %s", session.call_id, error or "unknown error")
            turn = session.flush_response_text()
            if turn is not None:
                await self._persist_turn(session, turn)
        elif event_type == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") == "function_call":
                await session.on_tool_call_start(str(item.get("call_id") or ""), str(item.get("name") or ""))
        elif event_type == "response.function_call_arguments.delta":
            await session.on_tool_call_fragment(
                str(event.get("call_id") or ""),
                event.get("delta") or "",
                event.get("name"),
            )
        elif event_type == "response.function_call_arguments.done":
            outcome = await session.on_tool_call_complete(str(event.get("call_id") or ""))
            if outcome is not None:
                session.tool_task = self._spawn(
                    self._run_tool(session, outcome), name=f"tool:{session.call_id}"
                )
        elif event_type == "error":
            error = event.get("error") or {}
            LOGGER.error("Realtime error on %s: %s", session.call_id, error.get("message") or error)

    # -- tools ---------------------------------------------------------------

    async def _run_tool(self, session: CallSession, outcome: ToolInvocation | ToolArgumentParseError) -> None:
        if isinstance(outcome, ToolArgumentParseError):
            LOGGER.warning("Bad arguments for %s on %s: %r", outcome.name, session.call_id, outcome.raw_arguments)
            identifier, name = outcome.identifier, outcome.name
            result = ToolResult.failure(outcome.detail)
        else:
            identifier, name = outcome.identifier, outcome.name
            LOGGER.info("Tool %s(%s) on %s", name, outcome.arguments, session.call_id)
            result = await self._tools.execute(name, outcome.arguments, session.caller, session.call_id)

        hang_up = name == HANG_UP_TOOL
        await session.send_tool_result(identifier, result, continue_response=not hang_up)
        if hang_up:
            await self.close_session(session, "hang_up_call")

    # -- transcript ----------------------------------------------------------

    async def _record_turn(self, session: CallSession, role: Role, text: str) -> None:
        turn = session.on_transcript_event(role, text)
        if turn is not None:
            await self._persist_turn(session, turn)

    async def _persist_turn(self, session: CallSession, turn: TranscriptTurn) -> None:
        LOGGER.info("%s on %s: %s", turn.role, session.call_id, turn.text)
        try:
            await self._call_store.append_transcript_turn(session.call_id, turn.role, turn.text)
        except Exception:
            LOGGER.exception("Could not store transcript turn for %s", session.call_id)

    # -- lifecycle -----------------------------------------------------------

    async def close_call(self, call_id: str, reason: str) -> bool:
        session = await self._registry.get(call_id)
        if session is None:
            return False
        return await self.close_session(session, reason)

    async def close_session(self, session: CallSession, reason: str) -> bool:
        """Drive ``session`` to CLOSED; later calls for the same session are no-ops."""

        if not await session.request_close(reason):
            return False
        await self._teardown(session)
        return True

    async def _teardown(self, session: CallSession) -> None:
        current = asyncio.current_task()

        engine_task = session.engine_task
        if engine_task is not None and engine_task is not current and not engine_task.done():
            engine_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await engine_task

        tool_task = session.tool_task
        if tool_task is not None and tool_task is not current and not tool_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(tool_task), timeout=self._settings.tool_drain_timeout_seconds)
            except asyncio.TimeoutError:
                LOGGER.warning("Abandoning in-flight tool call on %s", session.call_id)
                tool_task.cancel()

        turn = session.flush_response_text()
        if turn is not None:
            await self._persist_turn(session, turn)

        await session.release()

        try:
            await self._call_store.register_call_end(session.call_id)
        except Exception:
            LOGGER.exception("Could not record end of call %s", session.call_id)

        if session.claim_summary():
            try:
                await self._summaries.send_summary(
                    session.call_id,
                    list(session.transcript),
                    session.caller,
                    session.duration_seconds,
                )
            except Exception:
                LOGGER.exception("Post-call summary failed for %s", session.call_id)

        session.mark_closed()
        if await self._registry.remove(session.call_id, session):
            LOGGER.info(
                "Call %s closed after %ss (%s); %d frames in, %d forwarded, %d out",
                session.call_id,
                session.duration_seconds,
                session.close_reason,
                session.stats.frames_in,
                session.stats.frames_forwarded,
                session.stats.frames_out,
            )

    async def shutdown(self) -> None:
        """Close every active call, e.g. on application shutdown."""

        for session in await self._registry.active_sessions():
            await self.close_session(session, "server shutdown")
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # -- helpers -------------------------------------------------------------

    async def _register_start(self, session: CallSession) -> ConversationHandle | None:
        try:
            return await self._call_store.register_call_start(session.call_id, session.caller or "")
        except Exception:
            LOGGER.exception("Could not record start of call %s", session.call_id)
            return None

    async def _notify_transport_error(self, transport: Any, detail: str) -> None:
        try:
            await transport.send_json(error_message(detail))
        except TransportSocketError:
            LOGGER.warning("Could not report error to transport: %s", detail)

    def _spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Task %s failed: %s", task.get_name(), exc, exc_info=exc)
