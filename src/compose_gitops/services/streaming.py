# ABOUTME: Bounded, lossy output channel used to stream compose output to callers
# ABOUTME: StreamMessage values flow through an asyncio.Queue with drop-on-full sends

"""
Output streaming for long-running compose commands.

Producers (subprocess readers, the orchestrator) call try_send(), which never
blocks: when the consumer is slow and the queue is full the message is dropped
and False is returned. The consumer iterates the stream with ``async for`` until
close() is called and the remaining messages are drained.

    stream = OutputStream(maxsize=100)
    task = asyncio.create_task(orchestrator.deploy(project_id, stream=stream))
    async for message in stream:
        print(message.type, message.content)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

import structlog

logger = structlog.get_logger(__name__)


class MessageType(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class StreamMessage:
    type: MessageType
    content: str


_CLOSED = object()


class OutputStream:
    """Single-consumer stream of StreamMessage values with a bounded buffer."""

    def __init__(self, maxsize: int = 100) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def try_send(self, type: MessageType, content: str) -> bool:
        """Enqueue a message without waiting. Returns False if it was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(StreamMessage(MessageType(type), content))
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def info(self, content: str) -> bool:
        return self.try_send(MessageType.INFO, content)

    def success(self, content: str) -> bool:
        return self.try_send(MessageType.SUCCESS, content)

    def error(self, content: str) -> bool:
        return self.try_send(MessageType.ERROR, content)

    def close(self) -> None:
        """Mark the stream finished. Idempotent."""
        if self._closed:
            return
        self._closed = True
        # Wake a consumer blocked on an empty queue
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass
        if self.dropped:
            logger.debug("Output stream closed with dropped messages", dropped=self.dropped)

    def __aiter__(self) -> OutputStream:
        return self

    async def __anext__(self) -> StreamMessage:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        assert isinstance(item, StreamMessage)
        return item

    async def collect(self) -> list[StreamMessage]:
        """Drain the stream into a list. Returns once the stream is closed."""
        return [message async for message in self]
