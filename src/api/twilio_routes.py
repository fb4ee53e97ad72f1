"""Twilio Voice integration.

This module provides:
- Voice webhook (TwiML) that connects an incoming call to a Media Stream.
- The Media Stream WebSocket, relayed to the Realtime engine.
- A snapshot of the calls currently being relayed.
"""

from __future__ import annotations

import logging
from xml.sax.saxutils import escape, quoteattr

from fastapi import APIRouter, Depends, Request, Response, WebSocket

from api.dependencies import get_coordinator, get_registry
from api.schemas import ActiveSessionsResponse, SessionSnapshotResponse
from config.settings import get_settings
from integrations.twilio_streaming import TwilioTransport
from telephony.registry import SessionRegistry
from telephony.relay import RelayCoordinator

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return _to_ws_url(f"{settings.public_base_url.rstrip('/')}/api/twilio/stream")
    # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
    return _to_ws_url(str(request.base_url).rstrip("/") + "/api/twilio/stream")


def _twiml_connect_stream(*, stream_url: str, parameters: dict[str, str], greeting: str | None) -> str:
    params = "".join(
        f"<Parameter name={quoteattr(name)} value={quoteattr(value)} />"
        for name, value in parameters.items()
    )
    say = f"<Say>{escape(greeting)}</Say>" if greeting else ""
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        f"{say}"
        "<Connect>"
        f"<Stream url={quoteattr(stream_url)}>{params}</Stream>"
        "</Connect>"
        "</Response>"
    )


@router.post("/incoming")
async def twilio_incoming_call(request: Request) -> Response:
    form = await request.form()
    call_sid = str(form.get("CallSid") or "").strip() or "unknown"
    from_number = str(form.get("From") or "").strip()
    to_number = str(form.get("To") or "").strip()

    LOGGER.info("Incoming call %s from %s to %s", call_sid, from_number or "unknown", to_number or "unknown")

    return _twiml_response(
        _twiml_connect_stream(
            stream_url=_stream_url(request),
            parameters={"from": from_number, "to": to_number},
            greeting=get_settings().twilio_greeting,
        )
    )


@router.websocket("/stream")
async def twilio_media_stream(
    websocket: WebSocket,
    coordinator: RelayCoordinator = Depends(get_coordinator),
) -> None:
    transport = TwilioTransport(websocket)
    await transport.accept()
    try:
        await coordinator.serve_transport(transport)
    finally:
        await transport.close()


@router.get("/sessions", response_model=ActiveSessionsResponse)
async def list_active_sessions(
    registry: SessionRegistry = Depends(get_registry),
) -> ActiveSessionsResponse:
    sessions = await registry.active_sessions()
    return ActiveSessionsResponse(
        active=len(sessions),
        sessions=[SessionSnapshotResponse(**session.snapshot()) for session in sessions],
    )
