import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set


class LogBroadcastHandler(logging.Handler):
    """
    Fans log records out to every connected /ws/logs client.

    Each subscriber gets its own bounded queue. A client that falls too far
    behind is dropped instead of slowing down the code that is logging.
    """

    def __init__(self, level=logging.INFO, max_queue_size: int = 1000):
        super().__init__(level)
        self._subscribers: Set[asyncio.Queue] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._max_queue_size = max_queue_size
        self.setFormatter(logging.Formatter("%(message)s"))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)

    @staticmethod
    def _message_type(record: logging.LogRecord) -> str:
        if record.levelno >= logging.ERROR:
            return "error"
        if record.levelno <= logging.DEBUG:
            return "debug"
        return "info"

    def emit(self, record: logging.LogRecord):
        if not self._subscribers or self._loop is None or self._loop.is_closed():
            return
        try:
            payload = {
                "type": self._message_type(record),
                "message": self.format(record),
                "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            }
            self._loop.call_soon_threadsafe(self._deliver, payload)
        except Exception:
            self.handleError(record)

    def _deliver(self, payload: Dict[str, Any]):
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                self._subscribers.discard(queue)
