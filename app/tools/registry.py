"""Tool registry and invoker for assistant function calls."""
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List

from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.exceptions import ToolExecutionError, UnknownToolError
from app.tools import definitions
from app.tools.definitions import ToolContext

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass
class Tool:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler

    def schema(self) -> Dict[str, Any]:
        """Function-tool definition in the remote assistant's format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class PendingToolRequest:
    call_id: str
    tool_name: str
    raw_arguments: str


@dataclass
class ToolOutput:
    call_id: str
    output: str

    def to_param(self) -> Dict[str, str]:
        return {"tool_call_id": self.call_id, "output": self.output}


class ToolRegistry:
    """
    Registry of tools keyed by name.

    Adding a tool is an explicit register() call; lookups of unregistered
    names raise UnknownToolError.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]


def build_default_registry() -> ToolRegistry:
    """Registry holding every built-in tool."""
    registry = ToolRegistry()
    for name, definition in definitions.TOOLS.items():
        registry.register(
            Tool(
                name=name,
                description=definition["description"],
                parameters=definition["parameters"],
                handler=definitions.HANDLERS[name],
            )
        )
    return registry


def _error_output(tool_name: str, error: str) -> str:
    return json.dumps({"tool_name": tool_name, "error": error, "success": False})


class ToolInvoker:
    """
    Executes pending tool requests for one turn.

    Tool failures never escape: they are serialized into an error output so
    every request in a batch still gets an answer.
    """

    def __init__(self, registry: ToolRegistry, session: AsyncSession):
        self.registry = registry
        self.session = session

    async def invoke(self, tool_name: str, raw_arguments: str, user_id: str) -> str:
        """
        Run one tool and serialize its result.

        Returns:
            JSON string of the tool result, or of an error payload
        """
        try:
            arguments = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError as e:
            logger.error(f"Invalid arguments for tool {tool_name}: {str(e)}")
            return _error_output(tool_name, f"Invalid arguments: {str(e)}")

        try:
            result = await self._execute(tool_name, arguments, user_id)
        except UnknownToolError as e:
            logger.warning(f"Unknown tool requested: user={user_id}, tool={tool_name}")
            return _error_output(tool_name, str(e))
        except ToolExecutionError as e:
            logger.error(f"Tool execution error: {str(e)}")
            return _error_output(tool_name, str(e))

        logger.debug(f"Tool executed: user={user_id}, tool={tool_name}")
        return json.dumps(result, default=str)

    async def _execute(self, tool_name: str, arguments: Dict[str, Any], user_id: str) -> Any:
        tool = self.registry.get(tool_name)
        try:
            return await tool.handler(arguments, ToolContext(user_id=user_id, session=self.session))
        except Exception as e:
            raise ToolExecutionError(tool_name, e) from e

    async def answer(self, requests: List[PendingToolRequest], user_id: str) -> List[ToolOutput]:
        """Produce exactly one output per request, in request order."""
        outputs = []
        for request in requests:
            logger.info(f"Executing tool call: {request.tool_name} (id: {request.call_id})")
            output = await self.invoke(request.tool_name, request.raw_arguments, user_id)
            outputs.append(ToolOutput(call_id=request.call_id, output=output))
        return outputs
