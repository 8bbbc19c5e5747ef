"""Error taxonomy for a single conversation turn.

Only ``AssemblyError`` and ``ProviderError`` terminate a turn. The tool-level
errors are absorbed into the transcript as failed ``tool_result`` messages so
the model can correct itself on the next round trip.
"""

from __future__ import annotations


class TurnError(Exception):
    """Base class for errors raised while driving a conversation turn."""

    code = "turn_error"


class AssemblyError(TurnError):
    """Stored transcript violates the tool_call -> tool_result ordering."""

    code = "assembly_error"


class ProviderError(TurnError):
    """The model provider stream failed or returned a non-success status."""

    code = "provider_error"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ArgumentParseError(TurnError):
    """Accumulated tool arguments are not valid JSON or fail the tool schema."""

    code = "argument_parse_error"

    def __init__(self, message: str, call_id: str | None = None, details: list | None = None):
        super().__init__(message)
        self.call_id = call_id
        self.details = details or []


class UnknownToolError(TurnError):
    code = "unknown_tool"

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolExecutionFault(TurnError):
    """Unexpected exception raised inside a tool handler."""

    code = "internal"

    def __init__(self, tool_name: str, cause: BaseException):
        super().__init__(f"{tool_name} raised {type(cause).__name__}: {cause}")
        self.tool_name = tool_name
        self.__cause__ = cause


class TransportClosed(TurnError):
    """The client went away; stop producing events. Not a failure."""

    code = "transport_closed"
