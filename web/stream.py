"""
Ordered server-sent-event stream for one review session.

Every writer (review events, sandbox output, the heartbeat timer) goes
through ``send``, which enqueues synchronously, so events leave in exactly
the order they were produced. Once the HTTP response stops being consumed
the stream is marked disconnected for good and ``send`` raises
ClientDisconnected, letting the review unwind at its next checkpoint.
"""

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, Optional, Union

from agent.events import AgentEvent, ClientDisconnected
from config import app_config

logger = logging.getLogger(__name__)


class EventStream:
    def __init__(self, heartbeat_interval: Optional[float] = None):
        self.heartbeat_interval = heartbeat_interval or app_config.heartbeat_interval
        self._queue: asyncio.Queue = asyncio.Queue()
        self._heartbeat: Optional[asyncio.Task] = None
        self.disconnected = False
        self.closed = False
        self.sent = 0

    async def send(self, event: Union[AgentEvent, Dict[str, Any]]) -> None:
        """Queue one event. Raises ClientDisconnected once the client is gone."""
        if self.disconnected:
            raise ClientDisconnected()
        if self.closed:
            return
        payload = event.to_dict() if isinstance(event, AgentEvent) else dict(event)
        self._queue.put_nowait(payload)
        self.sent += 1

    def start_heartbeat(self) -> None:
        if self._heartbeat is None:
            self._heartbeat = asyncio.ensure_future(self._beat())

    async def _beat(self) -> None:
        while not (self.closed or self.disconnected):
            await asyncio.sleep(self.heartbeat_interval)
            if self.closed or self.disconnected:
                return
            self._queue.put_nowait({"type": "ping", "timestamp": int(time.time() * 1000)})

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None and not self._heartbeat.done():
            self._heartbeat.cancel()

    def close(self) -> None:
        """End the stream after everything already queued has been written."""
        if self.closed:
            return
        self.closed = True
        self._stop_heartbeat()
        self._queue.put_nowait(None)

    def mark_disconnected(self) -> None:
        if not self.disconnected:
            logger.info("Event stream client disconnected")
        self.disconnected = True
        self._stop_heartbeat()

    async def iter_sse(self) -> AsyncIterator[str]:
        """SSE frames (``data: <json>\\n\\n``) until the stream is closed."""
        finished = False
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    finished = True
                    return
                yield f"data: {json.dumps(item, ensure_ascii=False, default=str)}\n\n"
        finally:
            if not finished:
                self.mark_disconnected()
