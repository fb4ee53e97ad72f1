"""Post-call voicemail summary delivered to Telegram."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

import httpx

from agents.errors import SummaryDispatchError
from agents.schemas import TranscriptTurn
from integrations.telegram import TelegramBridge
from llm.base import BaseLLMClient
from prompts.loader import build_summary_instructions

LOGGER = logging.getLogger(__name__)


def render_transcript(turns: Sequence[TranscriptTurn]) -> str:
    return "\n".join(f"{turn.role.upper()}: {turn.text}" for turn in turns)


def format_duration(seconds: int) -> str:
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"


class CallSummaryNotifier:
    """Summarizes a finished call with the chat model and posts it to Telegram."""

    def __init__(self, llm: BaseLLMClient | None, bridge: TelegramBridge | None) -> None:
        self._llm = llm
        self._bridge = bridge

    async def send_summary(
        self,
        call_id: str,
        transcript: Sequence[TranscriptTurn],
        caller: str | None,
        duration_seconds: int,
    ) -> str | None:
        if not transcript:
            LOGGER.info("No transcript for %s; skipping summary", call_id)
            return None
        if self._llm is None or self._bridge is None:
            LOGGER.info("Summary delivery not configured; skipping summary for %s", call_id)
            return None

        try:
            summary = await self._llm.chat(
                [
                    {"role": "system", "content": build_summary_instructions()},
                    {"role": "user", "content": f"Call transcript:\n\n{render_transcript(transcript)}"},
                ],
                temperature=0.2,
            )
            now = datetime.now(timezone.utc).strftime("%b %d, %Y %H:%M UTC")
            text = (
                "*Missed Call - Voicemail Summary*\n"
                f"*From:* {caller or 'Unknown'}\n"
                f"*Duration:* {format_duration(duration_seconds)}\n"
                f"*Time:* {now}\n\n"
                f"{summary}"
            )
            await self._bridge.send_message(text)
        except httpx.HTTPError as exc:
            raise SummaryDispatchError(f"Telegram delivery failed for {call_id}: {exc}") from exc

        LOGGER.info("Voicemail summary sent for %s", call_id)
        return summary


def build_summary_notifier() -> CallSummaryNotifier:
    from llm.openai_client import OpenAIClient

    try:
        llm: BaseLLMClient | None = OpenAIClient()
    except ValueError:
        llm = None
    try:
        bridge: TelegramBridge | None = TelegramBridge()
    except ValueError:
        bridge = None
    return CallSummaryNotifier(llm, bridge)
