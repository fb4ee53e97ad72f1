"""Twilio REST access for call control and SMS."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    from_number: str | None


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ValueError("Twilio credentials are not configured")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
    )


def build_twilio_client(cfg: TwilioConfig | None = None):
    from twilio.rest import Client

    cfg = cfg or get_twilio_config()
    return Client(cfg.account_sid, cfg.auth_token)


class TwilioGateway:
    """Thin async facade over the (blocking) Twilio REST client."""

    def __init__(self, client: Any = None, cfg: TwilioConfig | None = None) -> None:
        self._cfg = cfg or get_twilio_config()
        self._client = client or build_twilio_client(self._cfg)

    async def send_sms(self, to: str, body: str) -> dict[str, Any]:
        if not self._cfg.from_number:
            raise ValueError("Twilio from-number is not configured")
        message = await asyncio.to_thread(
            self._client.messages.create,
            to=to,
            from_=self._cfg.from_number,
            body=body,
        )
        return {"sid": str(message.sid), "status": str(message.status), "message": f"SMS sent to {to}"}

    async def complete_call(self, call_sid: str) -> None:
        await asyncio.to_thread(self._client.calls(call_sid).update, status="completed")
        LOGGER.info("Requested Twilio to complete call %s", call_sid)


def build_twilio_gateway() -> TwilioGateway | None:
    try:
        return TwilioGateway()
    except ValueError:
        return None
