"""Reduce streaming run events into sink notifications and one final text."""
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from app.services.assistant_client import StreamEvent

logger = logging.getLogger(__name__)

# sink(text, finished); may be a plain function or a coroutine function
StreamSink = Callable[[str, bool], Union[None, Awaitable[None]]]


class StreamReducer:
    """
    Forwards text snapshots to a sink and tracks the completed message text.

    Deltas are forwarded as (snapshot, False) as soon as they arrive. A
    "message_done" event only records the candidate final text; the single
    (text, True) notification is sent by complete() or finish_with() once the
    caller knows the run is over. After that the sink is never called again.
    """

    def __init__(self, sink: StreamSink):
        self._sink = sink
        self._candidate: Optional[str] = None
        self._final_text: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self._final_text is not None

    @property
    def final_text(self) -> Optional[str]:
        return self._final_text

    @property
    def candidate(self) -> Optional[str]:
        return self._candidate

    async def feed(self, event: StreamEvent) -> None:
        if self.finished:
            return
        if event.kind == "delta":
            await self._notify(event.text, False)
        elif event.kind == "message_done":
            self._candidate = event.text

    def discard(self) -> None:
        """Forget the captured text; the run continued past that message."""
        self._candidate = None

    async def complete(self) -> Optional[str]:
        """Emit the captured text as final, if any was captured."""
        if self._candidate is None:
            return None
        return await self.finish_with(self._candidate)

    async def finish_with(self, text: str) -> str:
        if not self.finished:
            self._final_text = text
            await self._notify(text, True)
        return self._final_text

    async def _notify(self, text: str, finished: bool) -> None:
        result = self._sink(text, finished)
        if inspect.isawaitable(result):
            await result
