"""Tools the Realtime engine may call during a phone conversation."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from agents.errors import RelayError, ToolExecutionError
from agents.schemas import ToolResult

if TYPE_CHECKING:  # pragma: no cover
    from db.repository import CallRepository
    from integrations.twilio_client import TwilioGateway

LOGGER = logging.getLogger(__name__)

HANG_UP_TOOL = "hang_up_call"

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "update_caller_name",
        "description": (
            "Save or update the caller's name. Call this immediately when the caller tells "
            "you their name so you remember it on their next call."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "name": {
                    "type": "string",
                    "description": "The caller's name as they provided it.",
                }
            },
            "required": ["name"],
        },
    },
    {
        "type": "function",
        "name": HANG_UP_TOOL,
        "description": (
            "End the current phone call. Use when the caller says goodbye, the message is "
            "complete, or the caller is an automated system."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "reason": {
                    "type": "string",
                    "description": 'Brief reason, e.g. "caller requested", "conversation complete".',
                }
            },
        },
    },
    {
        "type": "function",
        "name": "send_sms",
        "description": "Send an SMS text message to a phone number.",
        "parameters": {
            "type": "object",
            "properties": {
                "to": {"type": "string", "description": "Recipient number in E.164 format."},
                "body": {"type": "string", "description": "Message text."},
            },
            "required": ["to", "body"],
        },
    },
]

Handler = Callable[[dict[str, Any], str | None, str], Awaitable[Any]]


class ToolExecutor:
    """Runs tool calls on behalf of the engine.

    Every outcome, including unknown tools and handler errors, comes back as a
    :class:`ToolResult`; nothing is retried.
    """

    def __init__(
        self,
        repository: CallRepository,
        twilio: TwilioGateway | None = None,
    ) -> None:
        self._repo = repository
        self._twilio = twilio
        self._handlers: dict[str, Handler] = {
            "update_caller_name": self._update_caller_name,
            HANG_UP_TOOL: self._hang_up_call,
            "send_sms": self._send_sms,
        }

    def definitions(self) -> list[dict[str, Any]]:
        return [tool for tool in TOOL_DEFINITIONS if tool["name"] in self._handlers]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        caller: str | None,
        call_id: str,
    ) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult.failure(f"Unknown tool: {name}")
        try:
            result = await handler(arguments, caller, call_id)
        except (RelayError, ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Tool %s failed on %s: %s", name, call_id, exc)
            return ToolResult.failure(str(exc))
        except Exception as exc:
            LOGGER.exception("Tool %s crashed on %s", name, call_id)
            return ToolResult.failure(str(exc) or exc.__class__.__name__)
        return ToolResult(success=True, result=result)

    async def _update_caller_name(self, arguments: dict[str, Any], caller: str | None, call_id: str) -> Any:
        name = str(arguments.get("name") or "").strip()
        if not name:
            raise ValueError("Missing required parameter: name")
        if not caller:
            raise ValueError("Phone number not available - cannot update caller")
        await self._repo.update_caller_name(caller, name)
        return {"success": True, "message": f'Saved your name as "{name}"'}

    async def _hang_up_call(self, arguments: dict[str, Any], caller: str | None, call_id: str) -> Any:
        reason = str(arguments.get("reason") or "conversation complete")
        if self._twilio is not None:
            await self._twilio.complete_call(call_id)
        return {"message": "Ending the call.", "reason": reason}

    async def _send_sms(self, arguments: dict[str, Any], caller: str | None, call_id: str) -> Any:
        to = str(arguments.get("to") or "").strip()
        body = str(arguments.get("body") or "").strip()
        if not to or not body:
            raise ValueError("Missing required parameters: to (phone number), body (message)")
        if self._twilio is None:
            raise ToolExecutionError("Twilio is not configured")
        return await self._twilio.send_sms(to, body)
