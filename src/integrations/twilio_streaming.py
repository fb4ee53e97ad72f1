"""Twilio Media Streams message layer.

Parses the JSON events Twilio sends over the stream WebSocket and builds the
ones we send back. :class:`TwilioTransport` wraps the FastAPI WebSocket so the
relay only deals with dicts.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from agents.errors import TransportSocketError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StreamStart:
    call_sid: str
    stream_sid: str
    from_number: str | None
    to_number: str | None


def parse_twilio_ws_message(text: str) -> dict[str, Any]:
    return json.loads(text)


def parse_start(message: dict[str, Any]) -> StreamStart:
    start = message.get("start") or {}
    params = start.get("customParameters") or {}
    return StreamStart(
        call_sid=str(start.get("callSid") or "").strip(),
        stream_sid=str(start.get("streamSid") or message.get("streamSid") or "").strip(),
        from_number=(params.get("from") or None),
        to_number=(params.get("to") or None),
    )


def inbound_media_payload(message: dict[str, Any]) -> str | None:
    media = message.get("media") or {}
    if media.get("track") and media.get("track") != "inbound":
        return None
    payload = media.get("payload")
    if isinstance(payload, str) and payload:
        return payload
    return None


def connected_message(call_sid: str) -> dict[str, Any]:
    return {"event": "connected", "callSid": call_sid}


def media_message(stream_sid: str, payload: str) -> dict[str, Any]:
    return {"event": "media", "streamSid": stream_sid, "media": {"payload": payload}}


def error_message(detail: str) -> dict[str, Any]:
    return {"event": "error", "error": detail}


class TwilioTransport:
    """Transport side of one call: the Twilio stream WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        )

    async def accept(self) -> None:
        await self._websocket.accept()

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield parsed stream events until Twilio disconnects."""

        while not self._closed:
            try:
                text = await self._websocket.receive_text()
            except (WebSocketDisconnect, RuntimeError):
                # RuntimeError: the socket was closed from our side mid-receive.
                self._closed = True
                return
            try:
                message = parse_twilio_ws_message(text)
            except json.JSONDecodeError:
                LOGGER.warning("Discarding non-JSON Twilio message (%d chars)", len(text))
                continue
            if not isinstance(message, dict):
                LOGGER.warning("Discarding non-object Twilio message (%d chars)", len(text))
                continue
            yield message

    async def send_json(self, message: dict[str, Any]) -> None:
        if not self.is_open:
            raise TransportSocketError("Twilio stream is not open.")
        try:
            await self._websocket.send_text(json.dumps(message))
        except (RuntimeError, WebSocketDisconnect) as exc:
            self._closed = True
            raise TransportSocketError(f"Twilio stream send failed: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._websocket.close()
        except RuntimeError:
            LOGGER.debug("Twilio stream already closed")
