"""Reassembly of streamed tool invocations.

The Realtime API announces a function call with ``response.output_item.added``,
streams its serialized arguments through ``response.function_call_arguments.delta``
and closes it with ``response.function_call_arguments.done``. This module turns
that sequence back into one :class:`ToolInvocation`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from agents.errors import ToolArgumentParseError, ToolProtocolViolation
from agents.schemas import ToolInvocation

LOGGER = logging.getLogger(__name__)


@dataclass
class PendingToolCall:
    """Accumulator for the single tool call being assembled."""

    identifier: str
    name: str
    fragments: list[str] = field(default_factory=list)
    speculative: bool = False
    completed: bool = False

    @property
    def arguments_text(self) -> str:
        return "".join(self.fragments)


class ToolCallAssembler:
    """Holds at most one pending tool call and rebuilds it in arrival order.

    The engine serializes tool calls within a turn, so a second start while one
    is pending is rejected instead of queued: two interleaved accumulations
    could not be told apart reliably.
    """

    def __init__(self) -> None:
        self._pending: PendingToolCall | None = None

    @property
    def pending(self) -> PendingToolCall | None:
        return self._pending

    def on_start(self, identifier: str, name: str) -> PendingToolCall:
        pending = self._pending
        if pending is not None:
            if pending.speculative and pending.identifier == identifier and not pending.completed:
                # Start arrived after its first fragment.
                pending.speculative = False
                pending.name = name or pending.name
                return pending
            raise ToolProtocolViolation(
                f"Tool call {identifier!r} ({name}) started while {pending.identifier!r} "
                f"({pending.name}) is still pending."
            )

        self._pending = PendingToolCall(identifier=identifier, name=name)
        return self._pending

    def on_fragment(self, identifier: str, chunk: str, name_hint: str | None = None) -> PendingToolCall:
        pending = self._pending
        if pending is None:
            if not name_hint:
                raise ToolProtocolViolation(
                    f"Argument fragment for unknown tool call {identifier!r} without a name hint."
                )
            LOGGER.debug("Buffering fragment for %s before its start event", identifier)
            pending = PendingToolCall(identifier=identifier, name=name_hint, speculative=True)
            self._pending = pending
        elif pending.identifier != identifier:
            raise ToolProtocolViolation(
                f"Argument fragment for {identifier!r} while {pending.identifier!r} is pending."
            )
        elif pending.completed:
            raise ToolProtocolViolation(f"Argument fragment for completed tool call {identifier!r}.")

        if chunk:
            pending.fragments.append(chunk)
        return pending

    def on_complete(self, identifier: str) -> ToolInvocation | ToolArgumentParseError:
        """Finalize the pending call.

        A parse failure is returned, not raised, so the caller can still send a
        failed tool result to the engine.
        """

        pending = self._pending
        if pending is None or pending.identifier != identifier:
            expected = pending.identifier if pending else None
            raise ToolProtocolViolation(
                f"Completion for {identifier!r} does not match pending call {expected!r}."
            )
        if pending.completed:
            raise ToolProtocolViolation(f"Tool call {identifier!r} completed twice.")

        pending.completed = True
        raw = pending.arguments_text
        if not raw.strip():
            return ToolInvocation(identifier=identifier, name=pending.name, arguments={})

        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as exc:
            return ToolArgumentParseError(
                f"Could not parse arguments for {pending.name}: {exc.msg}",
                identifier=identifier,
                name=pending.name,
                raw_arguments=raw,
            )
        if not isinstance(arguments, dict):
            return ToolArgumentParseError(
                f"Arguments for {pending.name} must be a JSON object.",
                identifier=identifier,
                name=pending.name,
                raw_arguments=raw,
            )
        return ToolInvocation(identifier=identifier, name=pending.name, arguments=arguments)

    def clear(self, identifier: str | None = None) -> None:
        if identifier is not None and self._pending is not None and self._pending.identifier != identifier:
            LOGGER.warning(
                "Not clearing pending tool call %s on result for %s",
                self._pending.identifier,
                identifier,
            )
            return
        self._pending = None
