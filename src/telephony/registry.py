"""In-memory registry of live call sessions, keyed by call id."""

from __future__ import annotations

import asyncio
import logging

from agents.errors import DuplicateCallError
from telephony.session import CallSession, TransportConnection

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """In-memory map of call id -> live :class:`CallSession`.

    Note: This is a single-process registry. Calls are pinned to the worker
    that accepted their stream WebSocket, so nothing needs to be shared
    across processes.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._sessions: dict[str, CallSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(
        self,
        call_id: str,
        *,
        transport: TransportConnection,
        stream_sid: str | None = None,
        caller: str | None = None,
        callee: str | None = None,
        commit_delay: float = 0.5,
    ) -> CallSession:
        async with self._lock:
            if call_id in self._sessions:
                raise DuplicateCallError(f"Call {call_id} already has an active session.")
            session = CallSession(
                call_id=call_id,
                transport=transport,
                stream_sid=stream_sid,
                caller=caller,
                callee=callee,
                commit_delay=commit_delay,
            )
            self._sessions[call_id] = session
            LOGGER.debug("Registered session for %s (%d active)", call_id, len(self._sessions))
            return session

    async def get(self, call_id: str) -> CallSession | None:
        async with self._lock:
            return self._sessions.get(call_id)

    async def remove(self, call_id: str, session: CallSession | None = None) -> bool:
        """Drop ``call_id``; with ``session`` given, only if it is still that one."""

        async with self._lock:
            current = self._sessions.get(call_id)
            if current is None or (session is not None and current is not session):
                return False
            del self._sessions[call_id]
            return True

    async def active_sessions(self) -> list[CallSession]:
        async with self._lock:
            return list(self._sessions.values())
