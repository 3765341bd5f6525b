"""Live view of the reply currently streaming into a thread."""

import logging
from typing import Callable, List, Optional

from ..providers.types import ChatDelta

logger = logging.getLogger(__name__)

# Called with the sink and the delta just applied; ``None`` means the sink was cleared
SinkListener = Callable[["StreamSink", Optional[ChatDelta]], None]


class StreamSink:
    """Accumulates streamed text and reasoning for display.

    The sink only mirrors what is arriving; the persisted message is written
    by the orchestrator once the reply is complete.
    """

    def __init__(self, thread_id: Optional[int] = None):
        self.thread_id = thread_id
        self.content = ""
        self.reasoning = ""
        self.reasoning_summary = ""
        self._listeners: List[SinkListener] = []

    def subscribe(self, listener: SinkListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def active(self) -> bool:
        return bool(self.content or self.reasoning or self.reasoning_summary)

    def append(self, delta: ChatDelta) -> None:
        self.content += delta.content
        self.reasoning += delta.reasoning
        self.reasoning_summary += delta.reasoning_summary
        self._emit(delta)

    def clear(self) -> None:
        self.content = ""
        self.reasoning = ""
        self.reasoning_summary = ""
        self._emit(None)

    def _emit(self, delta: Optional[ChatDelta]) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, delta)
            except Exception as e:
                logger.warning(f"Stream sink listener failed: {e}")
