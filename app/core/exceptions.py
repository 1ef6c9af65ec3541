"""Error taxonomy for the chat orchestrator.

Tool-level errors (UnknownToolError, ToolExecutionError) are absorbed into a
submittable tool output. Every other error aborts the current turn and
propagates to the caller unchanged.
"""
from typing import Any, Optional


class ChatError(Exception):
    """Base class for all chat orchestration errors."""


class TransportError(ChatError):
    """The remote assistant service could not be reached or rejected a call."""


class RunFailedError(ChatError):
    """A remote run ended in a terminal status other than ``completed``."""

    def __init__(self, status: str, detail: Optional[Any] = None):
        self.status = status
        self.detail = detail
        super().__init__(f"Run ended with status '{status}': {detail}")


class MalformedResponseError(ChatError):
    """The remote service returned content in an unexpected shape."""


class TooManyToolCyclesError(ChatError):
    """A run requested tool execution more times than allowed."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Run exceeded the maximum of {limit} tool cycles")


class UnknownToolError(ChatError):
    """No capability is registered under the requested tool name."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


class ToolExecutionError(ChatError):
    """A registered tool raised while executing."""

    def __init__(self, tool_name: str, cause: BaseException):
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(f"Tool '{tool_name}' failed: {cause}")


class NotFoundError(ChatError):
    """A persisted entity does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
