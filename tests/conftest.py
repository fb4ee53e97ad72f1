from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


class FakeTransport:
    """In-memory stand-in for the Twilio stream WebSocket.

    ``feed`` queues an inbound event; ``disconnect`` ends the message stream
    the way a closed socket would.
    """

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return not self.closed

    def feed(self, message: dict[str, Any]) -> None:
        self._inbox.put_nowait(message)

    def disconnect(self) -> None:
        self._inbox.put_nowait(None)

    async def messages(self):
        while True:
            message = await self._inbox.get()
            if message is None:
                return
            yield message

    async def send_json(self, message: dict[str, Any]) -> None:
        from agents.errors import TransportSocketError

        if self.closed:
            raise TransportSocketError("closed")
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def events(self, name: str) -> list[dict[str, Any]]:
        return [message for message in self.sent if message.get("event") == name]


class FakeEngine:
    """Scriptable Realtime engine connection.

    ``connect`` blocks until ``release_handshake`` when ``hold_handshake`` is
    set; ``push`` delivers a server event to the engine pump.
    """

    def __init__(self, *, hold_handshake: bool = False, fail_handshake: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.connected = False
        self.instructions: str | None = None
        self.tools: list[dict[str, Any]] = []
        self._fail = fail_handshake
        self._handshake = asyncio.Event()
        if not hold_handshake:
            self._handshake.set()
        self._inbox: asyncio.Queue = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self.connected and not self.closed

    def release_handshake(self) -> None:
        self._handshake.set()

    def push(self, event: dict[str, Any]) -> None:
        self._inbox.put_nowait(event)

    def disconnect(self) -> None:
        self._inbox.put_nowait(None)

    async def connect(self, *, instructions: str, tools: list[dict[str, Any]]) -> None:
        from agents.errors import EngineHandshakeError

        self.instructions = instructions
        self.tools = tools
        await self._handshake.wait()
        if self._fail:
            raise EngineHandshakeError("session.update rejected")
        self.connected = True

    async def send_event(self, event: dict[str, Any]) -> None:
        from agents.errors import EngineSocketError

        if not self.is_open:
            raise EngineSocketError("closed")
        self.sent.append(event)

    async def events(self):
        while True:
            event = await self._inbox.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.sent if event.get("type") == event_type]


class FakeCallStore:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.started: list[tuple[str, str]] = []
        self.turns: list[tuple[str, str, str]] = []
        self.ended: list[str] = []

    async def register_call_start(self, call_id: str, caller_phone: str):
        from agents.schemas import ConversationHandle

        if self.fail:
            raise RuntimeError("database is down")
        self.started.append((call_id, caller_phone))
        return ConversationHandle(conversation_id=1, caller_phone=caller_phone, caller_name="Ada")

    async def append_transcript_turn(self, call_id: str, role: str, text: str) -> None:
        if self.fail:
            raise RuntimeError("database is down")
        self.turns.append((call_id, role, text))

    async def register_call_end(self, call_id: str) -> None:
        if self.fail:
            raise RuntimeError("database is down")
        self.ended.append(call_id)


class FakeToolExecutor:
    def __init__(self, result=None, *, delay: float = 0.0) -> None:
        from agents.schemas import ToolResult

        self.result = result or ToolResult(success=True, result={"ok": True})
        self.delay = delay
        self.calls: list[tuple[str, dict[str, Any], str | None, str]] = []

    def definitions(self) -> list[dict[str, Any]]:
        from agents.tools import TOOL_DEFINITIONS

        return TOOL_DEFINITIONS

    async def execute(self, name: str, arguments: dict[str, Any], caller: str | None, call_id: str):
        self.calls.append((name, arguments, caller, call_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


class FakeSummaries:
    def __init__(self) -> None:
        self.sent: list[tuple[str, list, str | None, int]] = []

    async def send_summary(self, call_id: str, transcript, caller: str | None, duration_seconds: int):
        self.sent.append((call_id, list(transcript), caller, duration_seconds))
        return "summary"


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` while letting the relay's background tasks run."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def start_event(call_sid: str = "CA100", stream_sid: str = "MZ100", caller: str = "+15550001111") -> dict:
    return {
        "event": "start",
        "streamSid": stream_sid,
        "start": {
            "callSid": call_sid,
            "streamSid": stream_sid,
            "customParameters": {"from": caller, "to": "+15550002222"},
        },
    }


def media_event(payload: str, track: str = "inbound") -> dict:
    return {"event": "media", "media": {"track": track, "payload": payload}}


@pytest.fixture(scope="session")
def app(tmp_path_factory: pytest.TempPathFactory):
    tmp_dir = tmp_path_factory.mktemp("runtime")
    db_path = tmp_dir / "relay_test.db"

    # Must be set before importing modules that create the SQLAlchemy engine.
    os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{db_path.as_posix()}"
    os.environ["DATA_DIR"] = str(tmp_dir)
    # Ensure tests can rely on the schema existing without running Alembic.
    os.environ["AUTO_CREATE_DB_SCHEMA"] = "true"
    os.environ["PUBLIC_BASE_URL"] = "https://relay.example.com"

    import importlib

    # Ensure clean import with the test DB settings.
    for module_name in [
        "config.settings",
        "db.base",
        "db.models",
        "db.repository",
        "api.dependencies",
        "api.twilio_routes",
        "api.routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
