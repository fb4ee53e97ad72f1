from __future__ import annotations

import asyncio
import base64
import json

from agents.schemas import ToolResult
from config.settings import get_settings
from conftest import (
    FakeCallStore,
    FakeEngine,
    FakeSummaries,
    FakeToolExecutor,
    FakeTransport,
    media_event,
    start_event,
    wait_until,
)
from telephony.registry import SessionRegistry
from telephony.relay import RelayCoordinator
from telephony.session import SessionState

HELLO = base64.b64encode(b"hello").decode("ascii")
WORLD = base64.b64encode(b"world").decode("ascii")


def _build(engine: FakeEngine, *, store=None, tools=None):
    settings = get_settings().model_copy(
        update={"audio_commit_interval_ms": 20, "tool_drain_timeout_seconds": 1.0}
    )
    registry = SessionRegistry()
    store = store or FakeCallStore()
    tools = tools or FakeToolExecutor()
    summaries = FakeSummaries()
    coordinator = RelayCoordinator(
        registry,
        engine_factory=lambda: engine,
        call_store=store,
        tools=tools,
        summaries=summaries,
        settings=settings,
    )
    return coordinator, registry, store, tools, summaries


async def _start_active_call(coordinator, registry, engine, transport):
    pump = asyncio.create_task(coordinator.serve_transport(transport))
    transport.feed(start_event())
    await wait_until(lambda: len(registry) == 1)
    session = await registry.get("CA100")
    await wait_until(lambda: session.state is SessionState.ACTIVE)
    return pump, session


def test_audio_before_handshake_is_dropped_and_call_closes_once():
    async def _run():
        engine = FakeEngine(hold_handshake=True)
        coordinator, registry, store, _, summaries = _build(engine)
        transport = FakeTransport()

        pump = asyncio.create_task(coordinator.serve_transport(transport))
        transport.feed(start_event())
        await wait_until(lambda: len(registry) == 1)
        session = await registry.get("CA100")

        transport.feed(media_event(HELLO))
        await wait_until(lambda: session.stats.frames_in == 1)

        engine.release_handshake()
        await wait_until(lambda: session.state is SessionState.ACTIVE)

        transport.feed(media_event(WORLD))
        await wait_until(lambda: session.stats.frames_forwarded == 1)
        transport.feed({"event": "stop"})
        await pump
        return engine, transport, registry, store, summaries, session

    engine, transport, registry, store, summaries, session = asyncio.run(_run())

    assert [event["audio"] for event in engine.of_type("input_audio_buffer.append")] == [WORLD]
    assert session.stats.frames_dropped == 1
    assert transport.events("connected") == [{"event": "connected", "callSid": "CA100"}]
    assert len(engine.of_type("response.create")) == 1
    assert "Ada" in engine.instructions
    assert store.started == [("CA100", "+15550001111")]
    assert store.ended == ["CA100"]
    assert len(summaries.sent) == 1
    assert session.state is SessionState.CLOSED
    assert session.close_reason == "transport stop"
    assert engine.closed and transport.closed
    assert len(registry) == 0


def test_fragmented_tool_call_is_executed_once_and_answered():
    async def _run():
        engine = FakeEngine()
        tools = FakeToolExecutor(ToolResult(success=True, result={"sid": "SM1"}))
        coordinator, registry, _, _, _ = _build(engine, tools=tools)
        transport = FakeTransport()
        pump, session = await _start_active_call(coordinator, registry, engine, transport)

        engine.push(
            {
                "type": "response.output_item.added",
                "item": {"type": "function_call", "call_id": "call_1", "name": "send_sms"},
            }
        )
        for chunk in ['{"to": "+1555', '0009999", "body"', ': "Call me back"}']:
            engine.push({"type": "response.function_call_arguments.delta", "call_id": "call_1", "delta": chunk})
        engine.push({"type": "response.function_call_arguments.done", "call_id": "call_1"})

        await wait_until(lambda: len(engine.of_type("conversation.item.create")) == 1)
        await wait_until(lambda: len(engine.of_type("response.create")) == 2)
        transport.feed({"event": "stop"})
        await pump
        return engine, tools, session

    engine, tools, session = asyncio.run(_run())

    assert tools.calls == [
        ("send_sms", {"to": "+15550009999", "body": "Call me back"}, "+15550001111", "CA100")
    ]
    output = engine.of_type("conversation.item.create")[0]["item"]
    assert output["call_id"] == "call_1"
    assert '"sid": "SM1"' in output["output"]
    assert session.stats.tool_calls == 1


def test_malformed_tool_arguments_produce_failed_result():
    async def _run():
        engine = FakeEngine()
        coordinator, registry, _, tools, _ = _build(engine)
        transport = FakeTransport()
        pump, _ = await _start_active_call(coordinator, registry, engine, transport)

        engine.push(
            {
                "type": "response.output_item.added",
                "item": {"type": "function_call", "call_id": "call_1", "name": "update_caller_name"},
            }
        )
        engine.push({"type": "response.function_call_arguments.delta", "call_id": "call_1", "delta": '{"name": '})
        engine.push({"type": "response.function_call_arguments.done", "call_id": "call_1"})

        await wait_until(lambda: len(engine.of_type("conversation.item.create")) == 1)
        transport.disconnect()
        await pump
        return engine, tools

    engine, tools = asyncio.run(_run())

    assert tools.calls == []
    assert engine.of_type("conversation.item.create")[0]["item"]["output"].startswith("Error: ")


def test_hang_up_tool_closes_the_call():
    async def _run():
        engine = FakeEngine()
        coordinator, registry, store, _, summaries = _build(engine)
        transport = FakeTransport()
        pump, session = await _start_active_call(coordinator, registry, engine, transport)

        engine.push(
            {
                "type": "response.output_item.added",
                "item": {"type": "function_call", "call_id": "call_9", "name": "hang_up_call"},
            }
        )
        engine.push({"type": "response.function_call_arguments.done", "call_id": "call_9"})
        await pump
        await wait_until(lambda: len(registry) == 0)
        return engine, store, summaries, session, registry

    engine, store, summaries, session, registry = asyncio.run(_run())

    assert session.close_reason == "hang_up_call"
    assert len(engine.of_type("conversation.item.create")) == 1
    # Only the greeting trigger; a hang-up result does not ask for another response.
    assert len(engine.of_type("response.create")) == 1
    assert store.ended == ["CA100"]
    assert len(summaries.sent) == 1
    assert len(registry) == 0


def test_simultaneous_close_signals_tear_down_once():
    async def _run():
        engine = FakeEngine()
        coordinator, registry, store, _, summaries = _build(engine)
        transport = FakeTransport()
        pump, session = await _start_active_call(coordinator, registry, engine, transport)

        engine.disconnect()
        transport.feed({"event": "stop"})
        results = await asyncio.gather(
            coordinator.close_call("CA100", "operator"),
            coordinator.close_call("CA100", "operator"),
            return_exceptions=True,
        )
        await pump
        await wait_until(lambda: len(registry) == 0)
        return results, store, summaries, session

    results, store, summaries, session = asyncio.run(_run())

    assert not any(isinstance(result, BaseException) for result in results)
    assert store.ended == ["CA100"]
    assert len(summaries.sent) == 1
    assert session.state is SessionState.CLOSED


def test_handshake_failure_reports_error_and_closes_only_that_call():
    async def _run():
        engine = FakeEngine(fail_handshake=True)
        coordinator, registry, store, _, _ = _build(engine)
        transport = FakeTransport()

        pump = asyncio.create_task(coordinator.serve_transport(transport))
        transport.feed(start_event())
        await asyncio.wait_for(pump, timeout=2)
        await wait_until(lambda: len(registry) == 0)
        return transport, registry, store

    transport, registry, store = asyncio.run(_run())

    errors = transport.events("error")
    assert len(errors) == 1
    assert errors[0]["error"].startswith("Failed to initialize AI session")
    assert transport.closed
    assert store.ended == ["CA100"]
    assert len(registry) == 0


def test_duplicate_stream_for_active_call_is_rejected():
    async def _run():
        engine = FakeEngine()
        coordinator, registry, _, _, _ = _build(engine)
        first = FakeTransport()
        pump, session = await _start_active_call(coordinator, registry, engine, first)

        second = FakeTransport()
        await asyncio.wait_for(
            asyncio.gather(coordinator.serve_transport(second), _feed_start(second)),
            timeout=2,
        )
        still_active = session.state is SessionState.ACTIVE

        first.feed({"event": "stop"})
        await pump
        return second, still_active

    async def _feed_start(transport):
        transport.feed(start_event())

    second, still_active = asyncio.run(_run())

    assert second.events("error")
    assert second.closed
    assert still_active


def test_transcript_turns_are_recorded_and_audio_relayed_back():
    async def _run():
        engine = FakeEngine()
        coordinator, registry, store, _, summaries = _build(engine)
        transport = FakeTransport()
        pump, _ = await _start_active_call(coordinator, registry, engine, transport)

        engine.push({"type": "response.audio.delta", "delta": HELLO})
        engine.push({"type": "response.audio_transcript.delta", "delta": "Hi, this is "})
        engine.push({"type": "response.audio_transcript.delta", "delta": "Maya."})
        engine.push({"type": "response.done", "response": {"status": "completed"}})
        engine.push(
            {
                "type": "conversation.item.input_audio_transcription.completed",
                "transcript": "Please tell Aston I called.",
            }
        )
        await wait_until(lambda: len(store.turns) == 2)
        transport.feed({"event": "stop"})
        await pump
        return transport, store, summaries

    transport, store, summaries = asyncio.run(_run())

    assert transport.events("media") == [
        {"event": "media", "streamSid": "MZ100", "media": {"payload": HELLO}}
    ]
    assert store.turns == [
        ("CA100", "assistant", "Hi, this is Maya."),
        ("CA100", "user", "Please tell Aston I called."),
    ]
    transcript = summaries.sent[0][1]
    assert [turn.role for turn in transcript] == ["assistant", "user"]


def test_persistence_failures_do_not_break_the_call():
    async def _run():
        engine = FakeEngine()
        coordinator, registry, _, _, summaries = _build(engine, store=FakeCallStore(fail=True))
        transport = FakeTransport()
        pump, session = await _start_active_call(coordinator, registry, engine, transport)

        engine.push(
            {"type": "conversation.item.input_audio_transcription.completed", "transcript": "Hello?"}
        )
        transport.feed(media_event(WORLD))
        await wait_until(lambda: session.stats.frames_forwarded == 1)
        transport.feed({"event": "stop"})
        await pump
        return session, summaries, registry

    session, summaries, registry = asyncio.run(_run())

    assert session.conversation is None
    assert session.state is SessionState.CLOSED
    assert len(summaries.sent) == 1
    assert len(registry) == 0


def test_outbound_track_media_is_ignored():
    async def _run():
        engine = FakeEngine()
        coordinator, registry, _, _, _ = _build(engine)
        transport = FakeTransport()
        pump, session = await _start_active_call(coordinator, registry, engine, transport)

        transport.feed(media_event(HELLO, track="outbound"))
        transport.feed(media_event(WORLD))
        await wait_until(lambda: session.stats.frames_forwarded == 1)
        transport.feed({"event": "stop"})
        await pump
        return engine

    engine = asyncio.run(_run())

    assert [event["audio"] for event in engine.of_type("input_audio_buffer.append")] == [WORLD]


class CrashingEngine(FakeEngine):
    async def connect(self, *, instructions, tools):
        await self._handshake.wait()
        json.loads("not json")


def test_engine_setup_crash_reports_error_and_closes_call():
    async def _run():
        engine = CrashingEngine(hold_handshake=True)
        coordinator, registry, store, _, _ = _build(engine)
        transport = FakeTransport()

        pump = asyncio.create_task(coordinator.serve_transport(transport))
        transport.feed(start_event())
        await wait_until(lambda: len(registry) == 1)
        session = await registry.get("CA100")
        engine.release_handshake()
        await asyncio.wait_for(pump, timeout=2)
        await wait_until(lambda: len(registry) == 0)
        return engine, transport, registry, store, session

    engine, transport, registry, store, session = asyncio.run(_run())

    errors = transport.events("error")
    assert len(errors) == 1
    assert errors[0]["error"].startswith("Failed to initialize AI session")
    assert session.state is SessionState.CLOSED
    assert engine.closed and transport.closed
    assert store.ended == ["CA100"]
    assert len(registry) == 0


def test_assistant_text_pending_at_hang_up_reaches_the_summary():
    async def _run():
        engine = FakeEngine()
        coordinator, registry, store, _, summaries = _build(engine)
        transport = FakeTransport()
        pump, _ = await _start_active_call(coordinator, registry, engine, transport)

        engine.push({"type": "response.audio_transcript.delta", "delta": "Goodbye, have a nice day"})
        engine.push({"type": "response.audio.delta", "delta": HELLO})
        await wait_until(lambda: len(transport.events("media")) == 1)
        transport.feed({"event": "stop"})
        await pump
        return store, summaries

    store, summaries = asyncio.run(_run())

    assert store.turns == [("CA100", "assistant", "Goodbye, have a nice day")]
    transcript = summaries.sent[0][1]
    assert [(turn.role, turn.text) for turn in transcript] == [("assistant", "Goodbye, have a nice day")]


def test_non_object_stream_messages_are_skipped():
    async def _run():
        engine = FakeEngine()
        coordinator, registry, _, _, _ = _build(engine)
        transport = FakeTransport()

        pump = asyncio.create_task(coordinator.serve_transport(transport))
        transport.feed(1)
        transport.feed(["start"])
        transport.feed(start_event())
        await wait_until(lambda: len(registry) == 1)
        session = await registry.get("CA100")
        await wait_until(lambda: session.state is SessionState.ACTIVE)
        transport.feed(media_event(WORLD))
        await wait_until(lambda: session.stats.frames_forwarded == 1)
        transport.feed({"event": "stop"})
        await pump
        return session

    session = asyncio.run(_run())

    assert session.state is SessionState.CLOSED
    assert session.close_reason == "transport stop"
