"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from db.repository import CallRepository
from telephony.registry import SessionRegistry

if TYPE_CHECKING:  # pragma: no cover
    from telephony.relay import RelayCoordinator


@lru_cache(maxsize=1)
def get_repository() -> CallRepository:
    return CallRepository()


@lru_cache(maxsize=1)
def get_registry() -> SessionRegistry:
    return SessionRegistry()


@lru_cache(maxsize=1)
def _coordinator_factory() -> RelayCoordinator:
    # Lazy imports: the OpenAI/Twilio SDKs are only needed once a call arrives.
    from agents.tools import ToolExecutor
    from integrations.call_summary import build_summary_notifier
    from integrations.twilio_client import build_twilio_gateway
    from llm.realtime_client import RealtimeEngineClient
    from telephony.relay import RelayCoordinator

    repository = get_repository()
    return RelayCoordinator(
        get_registry(),
        engine_factory=RealtimeEngineClient,
        call_store=repository,
        tools=ToolExecutor(repository, build_twilio_gateway()),
        summaries=build_summary_notifier(),
    )


def get_coordinator() -> RelayCoordinator:
    return _coordinator_factory()


async def shutdown_coordinator() -> None:
    """Close any calls still open when the application stops."""

    if _coordinator_factory.cache_info().currsize:
        await _coordinator_factory().shutdown()
