"""Adapter over the OpenAI Assistants thread/run API.

Translates SDK objects into the small set of project types the run driver
works with, and every SDK API error into a TransportError.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import APIError, AsyncOpenAI

from app.config import settings
from app.core.exceptions import MalformedResponseError, TransportError
from app.tools.registry import PendingToolRequest, ToolOutput

logger = logging.getLogger(__name__)

# Run statuses the driver branches on
REQUIRES_ACTION = "requires_action"
COMPLETED = "completed"


@dataclass
class RunSnapshot:
    id: str
    thread_id: str
    status: str
    pending_tools: List[PendingToolRequest] = field(default_factory=list)
    last_error: Optional[Dict[str, Any]] = None

    @property
    def requires_tools(self) -> bool:
        return self.status == REQUIRES_ACTION and bool(self.pending_tools)


@dataclass
class ContentPart:
    type: str
    text: Optional[str] = None


@dataclass
class StreamEvent:
    """One event of a streaming run: a text snapshot or a finished message."""
    kind: str  # "delta" | "message_done"
    text: str = ""
    parts: List[ContentPart] = field(default_factory=list)


def to_run_snapshot(run: Any) -> RunSnapshot:
    """Convert an SDK Run into a RunSnapshot."""
    pending: List[PendingToolRequest] = []
    required_action = getattr(run, "required_action", None)
    if (
        run.status == REQUIRES_ACTION
        and required_action is not None
        and required_action.type == "submit_tool_outputs"
    ):
        for call in required_action.submit_tool_outputs.tool_calls:
            pending.append(
                PendingToolRequest(
                    call_id=call.id,
                    tool_name=call.function.name,
                    raw_arguments=call.function.arguments or "",
                )
            )

    last_error = None
    if getattr(run, "last_error", None) is not None:
        last_error = {"code": run.last_error.code, "message": run.last_error.message}

    return RunSnapshot(
        id=run.id,
        thread_id=run.thread_id,
        status=run.status,
        pending_tools=pending,
        last_error=last_error,
    )


def to_content_parts(content: List[Any]) -> List[ContentPart]:
    """Convert SDK message content blocks into ContentParts."""
    parts = []
    for block in content:
        if block.type == "text":
            parts.append(ContentPart(type="text", text=block.text.value))
        else:
            parts.append(ContentPart(type=block.type))
    return parts


class RunStream:
    """
    Ordered, finite, single-use sequence of StreamEvents for one run.

    Text deltas are accumulated per message so each "delta" event carries the
    full text snapshot so far. After iteration, final_run() returns the last
    run state reported by the stream.
    """

    def __init__(self, manager: Any):
        self._manager = manager
        self._final_run: Optional[RunSnapshot] = None
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self.events()

    async def events(self) -> AsyncIterator[StreamEvent]:
        """
        Yield the run's events. Closing the generator early (aclose) exits the
        SDK stream and releases its HTTP response.
        """
        if self._consumed:
            raise RuntimeError("RunStream can only be iterated once")
        self._consumed = True

        snapshot = ""
        try:
            async with self._manager as stream:
                async for event in stream:
                    name = event.event
                    if name == "thread.message.created":
                        snapshot = ""
                    elif name == "thread.message.delta":
                        for block in event.data.delta.content or []:
                            if block.type == "text" and block.text and block.text.value:
                                snapshot += block.text.value
                                yield StreamEvent(kind="delta", text=snapshot)
                    elif name == "thread.message.completed":
                        parts = to_content_parts(event.data.content)
                        text = parts[0].text if parts and parts[0].text is not None else ""
                        yield StreamEvent(kind="message_done", text=text, parts=parts)
                        snapshot = ""
                    elif name.startswith("thread.run.") and not name.startswith("thread.run.step"):
                        self._final_run = to_run_snapshot(event.data)
        except APIError as e:
            raise TransportError(f"Assistant stream failed: {e}") from e

    def final_run(self) -> RunSnapshot:
        if self._final_run is None:
            raise MalformedResponseError("Stream ended without reporting a run status")
        return self._final_run


class AssistantClient:
    """
    Long-lived handle to the remote assistant service.

    One instance is shared by every turn; see get_assistant_client().
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        assistant_id: str,
        poll_interval_ms: int = 500,
    ):
        self.client = client
        self.assistant_id = assistant_id
        self.poll_interval_ms = poll_interval_ms

    async def create_thread(self) -> str:
        logger.info("Starting new thread...")
        try:
            thread = await self.client.beta.threads.create()
        except APIError as e:
            raise TransportError(f"Could not create thread: {e}") from e
        logger.info(f"Thread started with id: {thread.id}")
        return thread.id

    async def add_message(self, thread_id: str, content: str, role: str = "user") -> None:
        logger.debug(f"Adding message to thread {thread_id}")
        try:
            await self.client.beta.threads.messages.create(
                thread_id=thread_id, role=role, content=content
            )
        except APIError as e:
            raise TransportError(f"Could not add message to thread {thread_id}: {e}") from e

    async def create_run(self, thread_id: str) -> RunSnapshot:
        """Start a run and poll until it completes, fails or needs tools."""
        try:
            run = await self.client.beta.threads.runs.create_and_poll(
                thread_id=thread_id,
                assistant_id=self.assistant_id,
                poll_interval_ms=self.poll_interval_ms,
            )
        except APIError as e:
            raise TransportError(f"Could not run thread {thread_id}: {e}") from e
        return to_run_snapshot(run)

    async def submit_tool_outputs(
        self, thread_id: str, run_id: str, outputs: List[ToolOutput]
    ) -> RunSnapshot:
        """Resume a paused run with a full batch of tool outputs and poll again."""
        try:
            run = await self.client.beta.threads.runs.submit_tool_outputs_and_poll(
                run_id=run_id,
                thread_id=thread_id,
                tool_outputs=[output.to_param() for output in outputs],
                poll_interval_ms=self.poll_interval_ms,
            )
        except APIError as e:
            raise TransportError(f"Could not submit tool outputs for run {run_id}: {e}") from e
        return to_run_snapshot(run)

    async def latest_message_parts(self, thread_id: str) -> Optional[List[ContentPart]]:
        """Content parts of the newest thread message, or None for an empty thread."""
        try:
            page = await self.client.beta.threads.messages.list(
                thread_id=thread_id, order="desc", limit=1
            )
        except APIError as e:
            raise TransportError(f"Could not list messages for thread {thread_id}: {e}") from e
        if not page.data:
            return None
        return to_content_parts(page.data[0].content)

    def stream_run(self, thread_id: str) -> RunStream:
        """Start a streaming run; iterate the result to receive its events."""
        manager = self.client.beta.threads.runs.stream(
            thread_id=thread_id, assistant_id=self.assistant_id
        )
        return RunStream(manager)

    async def sync_tools(self, tools: List[Dict[str, Any]]) -> None:
        """Replace the remote assistant's tool definitions."""
        logger.info(f"Updating tools of assistant {self.assistant_id}: {[t['function']['name'] for t in tools]}")
        try:
            await self.client.beta.assistants.update(self.assistant_id, tools=tools)
        except APIError as e:
            raise TransportError(f"Could not update assistant {self.assistant_id}: {e}") from e


_assistant_client: Optional[AssistantClient] = None


def get_assistant_client() -> AssistantClient:
    """Process-wide AssistantClient, built from settings on first use."""
    global _assistant_client
    if _assistant_client is None:
        _assistant_client = AssistantClient(
            AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.OPENAI_TIMEOUT),
            assistant_id=settings.ASSISTANT_ID,
            poll_interval_ms=settings.RUN_POLL_INTERVAL_MS,
        )
    return _assistant_client


def set_assistant_client(client: Optional[AssistantClient]) -> None:
    global _assistant_client
    _assistant_client = client
