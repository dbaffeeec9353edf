"""Bounded per-project capture of sandbox process output."""

import asyncio
import logging
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger("flowpod.logs")

DEFAULT_CAPACITY = 200

STDOUT = "stdout"
STDERR = "stderr"


class LogBuffer:
    """Ring buffer of tagged output lines. Oldest lines are dropped first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._lines: deque[str] = deque(maxlen=capacity)
        self._lock = Lock()

    def append(self, stream: str, line: str) -> None:
        with self._lock:
            self._lines.append(f"[{stream}] {line}")

    def extend_raw(self, stream: str, data: str) -> None:
        """Append a chunk of process output, one entry per non-empty line."""
        for line in str(data).splitlines():
            if line.strip():
                self.append(stream, line)

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def reset(self) -> None:
        with self._lock:
            self._lines.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class LogBufferRegistry:
    """One LogBuffer per project, created on first use."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = capacity
        self._buffers: dict[str, LogBuffer] = {}
        self._lock = Lock()

    def get(self, project_id: str) -> LogBuffer:
        with self._lock:
            buf = self._buffers.get(project_id)
            if buf is None:
                buf = LogBuffer(self.capacity)
                self._buffers[project_id] = buf
            return buf

    def append(self, project_id: str, stream: str, line: str) -> None:
        self.get(project_id).append(stream, line)

    def snapshot(self, project_id: str) -> list[str]:
        with self._lock:
            buf = self._buffers.get(project_id)
        return buf.snapshot() if buf else []


class OutputPump:
    """Deliver output chunks from a background process into a LogBuffer.

    Process callbacks call :meth:`feed`, which only enqueues and never blocks.
    A consumer task drains the queue into the buffer. :meth:`close` flushes
    whatever is still queued and stops the consumer.
    """

    def __init__(self, buffer: LogBuffer, name: str = ""):
        self.buffer = buffer
        self.name = name
        self._queue: asyncio.Queue[Optional[tuple[str, str]]] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def start(self) -> "OutputPump":
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self

    def feed(self, stream: str, data: str) -> None:
        if self._closed:
            return
        self._queue.put_nowait((stream, data))

    def on_stdout(self, data) -> None:
        self.feed(STDOUT, getattr(data, "line", data))

    def on_stderr(self, data) -> None:
        self.feed(STDERR, getattr(data, "line", data))

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            stream, data = item
            self.buffer.extend_raw(stream, data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is None:
            while not self._queue.empty():
                item = self._queue.get_nowait()
                if item is not None:
                    self.buffer.extend_raw(*item)
            return
        self._queue.put_nowait(None)
        await self._task
        logger.debug("[%s] output pump closed", self.name)
