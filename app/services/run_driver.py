"""Drive one assistant run from user message to final reply.

States: SUBMITTED -> {RUNNING -> AWAITING_TOOLS -> RUNNING}* -> COMPLETED | FAILED

The run pauses with status "requires_action" whenever the model wants tools.
Each pause carries a fixed batch of tool calls; every call in the batch gets an
output (errors included) and the whole batch is submitted in one resume call.
"""
import logging
from contextlib import aclosing
from enum import Enum
from typing import List, Optional

from app.core.exceptions import MalformedResponseError, RunFailedError, TooManyToolCyclesError
from app.services.assistant_client import COMPLETED, AssistantClient, ContentPart, RunSnapshot
from app.services.stream_reducer import StreamReducer, StreamSink
from app.tools.registry import ToolInvoker

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    SUBMITTED = "submitted"
    RUNNING = "running"
    AWAITING_TOOLS = "awaiting_tools"
    COMPLETED = "completed"
    FAILED = "failed"


def extract_reply_text(parts: Optional[List[ContentPart]], thread_id: str) -> str:
    """
    Text of a finished assistant message.

    The message must consist of exactly one text part; anything else is
    rejected rather than partially extracted.

    Raises:
        MalformedResponseError: On any other content shape
    """
    if not parts or len(parts) != 1 or parts[0].type != "text" or parts[0].text is None:
        logger.error(f"Unknown response format for thread {thread_id}: {parts!r}")
        raise MalformedResponseError(f"Unknown response format for thread {thread_id}")
    return parts[0].text


class RunDriver:
    """Runs a single turn against a remote thread, executing tools as requested."""

    def __init__(self, client: AssistantClient, invoker: ToolInvoker, max_tool_cycles: int = 10):
        self.client = client
        self.invoker = invoker
        self.max_tool_cycles = max_tool_cycles
        self.state = RunState.SUBMITTED

    def _transition(self, state: RunState, thread_id: str) -> None:
        logger.debug(f"Run on thread {thread_id}: {self.state.value} -> {state.value}")
        self.state = state

    async def drive(
        self,
        thread_id: str,
        user_message: str,
        user_id: str,
        stream_sink: Optional[StreamSink] = None,
    ) -> str:
        """
        Submit the user message and return the assistant's reply text.

        Args:
            thread_id: Remote thread of the user's conversation
            user_message: Message text to append to the thread
            user_id: Calling user, passed to tools
            stream_sink: Optional sink(text, finished) for streaming mode

        Raises:
            TransportError: Remote service unreachable
            RunFailedError: Run ended failed, cancelled, expired or incomplete
            MalformedResponseError: Reply is not exactly one text part
            TooManyToolCyclesError: Run paused for tools too many times
        """
        self.state = RunState.SUBMITTED
        logger.info(f"Adding message to thread {thread_id} (stream={stream_sink is not None})")
        await self.client.add_message(thread_id, user_message)

        if stream_sink is None:
            return await self._drive_polling(thread_id, user_id)
        return await self._drive_streaming(thread_id, user_id, stream_sink)

    async def _drive_polling(self, thread_id: str, user_id: str) -> str:
        self._transition(RunState.RUNNING, thread_id)
        run = await self.client.create_run(thread_id)
        run = await self._resolve_tools(run, user_id)
        self._ensure_completed(run)
        return await self._read_reply(thread_id)

    async def _drive_streaming(self, thread_id: str, user_id: str, sink: StreamSink) -> str:
        reducer = StreamReducer(sink)
        self._transition(RunState.RUNNING, thread_id)

        stream = self.client.stream_run(thread_id)
        async with aclosing(stream.events()) as events:
            async for event in events:
                if event.kind == "message_done":
                    extract_reply_text(event.parts, thread_id)
                await reducer.feed(event)
        run = stream.final_run()

        if run.requires_tools:
            # Text streamed before a tool pause is not the turn's reply
            reducer.discard()
            run = await self._resolve_tools(run, user_id)
        self._ensure_completed(run)

        text = await reducer.complete()
        if text is None:
            logger.warning(f"No response from stream for thread {thread_id}, fetching final message...")
            text = await self._read_reply(thread_id)
            await reducer.finish_with(text)
        return text

    async def _resolve_tools(self, run: RunSnapshot, user_id: str) -> RunSnapshot:
        """Answer tool batches until the run stops asking for tools."""
        cycles = 0
        while run.requires_tools:
            cycles += 1
            if cycles > self.max_tool_cycles:
                self._transition(RunState.FAILED, run.thread_id)
                logger.error(f"Run {run.id} exceeded {self.max_tool_cycles} tool cycles")
                raise TooManyToolCyclesError(self.max_tool_cycles)

            self._transition(RunState.AWAITING_TOOLS, run.thread_id)
            logger.info(
                f"Run requires action: submit_tool_outputs on thread {run.thread_id} "
                f"({len(run.pending_tools)} calls, cycle {cycles})"
            )
            outputs = await self.invoker.answer(run.pending_tools, user_id)

            self._transition(RunState.RUNNING, run.thread_id)
            run = await self.client.submit_tool_outputs(run.thread_id, run.id, outputs)
        return run

    def _ensure_completed(self, run: RunSnapshot) -> None:
        if run.status == COMPLETED:
            self._transition(RunState.COMPLETED, run.thread_id)
            logger.info(f"Run completed for thread {run.thread_id}")
            return
        self._transition(RunState.FAILED, run.thread_id)
        logger.error(
            f"Run status was: '{run.status}' on thread {run.thread_id}. Error: {run.last_error}"
        )
        raise RunFailedError(run.status, run.last_error)

    async def _read_reply(self, thread_id: str) -> str:
        parts = await self.client.latest_message_parts(thread_id)
        return extract_reply_text(parts, thread_id)
