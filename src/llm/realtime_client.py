"""WebSocket client for the OpenAI Realtime API.

One :class:`RealtimeEngineClient` is opened per call. ``connect`` performs the
whole handshake (socket open, ``session.update``, wait for ``session.updated``)
so callers only ever see a configured session or an
:class:`EngineHandshakeError`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from agents.errors import EngineHandshakeError, EngineSocketError
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

HANDSHAKE_CONFIRMED = "session.updated"


def session_update(
    *,
    instructions: str,
    tools: list[dict[str, Any]],
    voice: str,
    audio_format: str,
    transcription_model: str,
) -> dict[str, Any]:
    return {
        "type": "session.update",
        "session": {
            "modalities": ["text", "audio"],
            "instructions": instructions,
            "voice": voice,
            "input_audio_format": audio_format,
            "output_audio_format": audio_format,
            "input_audio_transcription": {"model": transcription_model},
            "turn_detection": {"type": "server_vad"},
            "tools": tools,
            "tool_choice": "auto",
        },
    }


def input_audio_append(payload: str) -> dict[str, Any]:
    return {"type": "input_audio_buffer.append", "audio": payload}


def input_audio_commit() -> dict[str, Any]:
    return {"type": "input_audio_buffer.commit"}


def function_call_output(call_id: str, output: str) -> dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {"type": "function_call_output", "call_id": call_id, "output": output},
    }


def response_create() -> dict[str, Any]:
    return {"type": "response.create"}


class RealtimeEngineClient:
    """One Realtime API connection, owned by a single call session."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._ws = None
        self._closed = False
        self.session_id: str | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    async def connect(self, *, instructions: str, tools: list[dict[str, Any]]) -> None:
        settings = self._settings
        if not settings.openai_api_key:
            raise EngineHandshakeError("OPENAI_API_KEY is not configured.")

        headers = [
            ("Authorization", f"Bearer {settings.openai_api_key}"),
            ("OpenAI-Beta", "realtime=v1"),
        ]
        try:
            self._ws = await ws_connect(
                settings.realtime_ws_url,
                additional_headers=headers,
                open_timeout=settings.engine_connect_timeout_seconds,
                max_size=None,
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            raise EngineHandshakeError(f"Could not connect to Realtime API: {exc}") from exc

        try:
            await self.send_event(
                session_update(
                    instructions=instructions,
                    tools=tools,
                    voice=settings.realtime_voice,
                    audio_format=settings.realtime_audio_format,
                    transcription_model=settings.realtime_transcription_model,
                )
            )
            await asyncio.wait_for(
                self._await_confirmation(),
                timeout=settings.engine_handshake_timeout_seconds,
            )
        except (EngineSocketError, asyncio.TimeoutError) as exc:
            await self.close()
            raise EngineHandshakeError(f"Realtime session was not confirmed: {exc!r}") from exc
        except EngineHandshakeError:
            await self.close()
            raise

        LOGGER.info("Realtime session %s configured", self.session_id)

    async def _await_confirmation(self) -> None:
        while True:
            event = await self._receive()
            event_type = event.get("type")
            if event_type == "session.created":
                self.session_id = (event.get("session") or {}).get("id")
            elif event_type == HANDSHAKE_CONFIRMED:
                return
            elif event_type == "error":
                error = event.get("error") or {}
                raise EngineHandshakeError(str(error.get("message") or error))

    async def _receive(self) -> dict[str, Any]:
        if self._ws is None:
            raise EngineSocketError("Realtime socket is not connected.")
        try:
            message = await self._ws.recv()
        except ConnectionClosed as exc:
            self._closed = True
            raise EngineSocketError(f"Realtime socket closed: {exc}") from exc
        try:
            event = json.loads(message)
        except json.JSONDecodeError as exc:
            raise EngineHandshakeError(f"Realtime server sent non-JSON data: {exc.msg}") from exc
        if not isinstance(event, dict):
            raise EngineHandshakeError("Realtime server sent a non-object event.")
        return event

    async def send_event(self, event: dict[str, Any]) -> None:
        if not self.is_open:
            raise EngineSocketError("Realtime socket is not open.")
        try:
            await self._ws.send(json.dumps(event))
        except ConnectionClosed as exc:
            self._closed = True
            raise EngineSocketError(f"Realtime socket closed: {exc}") from exc

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield parsed server events until the socket closes.

        A clean close ends the iteration; an abnormal one raises
        :class:`EngineSocketError`.
        """

        if self._ws is None:
            return
        try:
            async for message in self._ws:
                try:
                    event = json.loads(message)
                except json.JSONDecodeError:
                    LOGGER.warning("Discarding non-JSON Realtime message")
                    continue
                if isinstance(event, dict):
                    yield event
                else:
                    LOGGER.warning("Discarding non-object Realtime message")
        except ConnectionClosed as exc:
            raise EngineSocketError(f"Realtime socket closed: {exc}") from exc
        finally:
            self._closed = True

    async def close(self) -> None:
        if self._ws is None or self._closed:
            self._closed = True
            return
        self._closed = True
        try:
            await self._ws.close()
        except WebSocketException:
            LOGGER.debug("Realtime socket already gone on close")
