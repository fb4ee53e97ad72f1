"""Domain-specific exceptions for the call relay.

These exceptions are safe to import from API layers without pulling in the
network clients.
"""

from __future__ import annotations


class RelayError(Exception):
    status_code: int = 500
    default_detail: str = "Call relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class DuplicateCallError(RelayError):
    status_code = 409
    default_detail = "A session for this call is already active."


class InvalidFrameError(RelayError):
    status_code = 422
    default_detail = "Audio frame could not be decoded."


class ToolProtocolViolation(RelayError):
    status_code = 422
    default_detail = "Tool call events arrived out of order."


class ToolArgumentParseError(RelayError):
    """Assembled tool arguments are not a JSON object.

    Returned by the assembler as a value so the caller can still answer the
    engine with a failed tool result.
    """

    status_code = 422
    default_detail = "Tool arguments are not valid JSON."

    def __init__(
        self,
        detail: str | None = None,
        *,
        identifier: str = "",
        name: str = "",
        raw_arguments: str = "",
    ) -> None:
        super().__init__(detail)
        self.identifier = identifier
        self.name = name
        self.raw_arguments = raw_arguments


class EngineHandshakeError(RelayError):
    status_code = 503
    default_detail = "AI engine session could not be established."


class TransportSocketError(RelayError):
    status_code = 502
    default_detail = "Telephony transport socket failed."


class EngineSocketError(RelayError):
    status_code = 502
    default_detail = "AI engine socket failed."


class ToolExecutionError(RelayError):
    status_code = 500
    default_detail = "Tool execution failed."


class SummaryDispatchError(RelayError):
    status_code = 503
    default_detail = "Post-call summary could not be delivered."


class DatabaseOperationError(RelayError):
    status_code = 503
    default_detail = "Database operation failed."
