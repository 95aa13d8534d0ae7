# relay_sdk/schema/stream.py
# SPDX-License-Identifier: Apache-2.0
"""
Bounded producer/consumer pipe for streamed message chunks.

    reader, writer = pipe(capacity=1)

- `StreamWriter.send(chunk)` blocks while the buffer is full and returns
  True once the reader side is closed; a producer stops on that signal.
- `StreamWriter.send(error=exc)` delivers a terminal error after every
  chunk sent before it.
- `StreamReader` is a forward-only, single-consumption async iterator.
  Closing it (`aclose()` or `async with`) is the cancellation signal: the
  buffer is drained to release a blocked writer and the attached worker
  task is cancelled and awaited.

`spawn_stream(producer)` runs `producer(writer)` in its own task and owns
the worker boundary: the writer is always closed when the producer exits,
and an exception escaping the producer is sent once as a
`StreamWorkerError` carrying the formatted traceback.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any, Awaitable, Callable, Optional, Tuple

from relay_sdk.core.error_context import attach_context
from relay_sdk.schema.concat import concat_messages
from relay_sdk.schema.errors import StreamWorkerError
from relay_sdk.schema.message import Message

logger = logging.getLogger(__name__)

_EOF = object()


class _PipeState:
    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("pipe capacity must be >= 1")
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=capacity)
        self.reader_closed = False
        self.writer_closed = False
        # Consumers parked in queue.get(); aclose() must wake them.
        self.waiting_readers = 0


class StreamWriter:
    """Producer side of a pipe. Owned by exactly one task."""

    def __init__(self, state: _PipeState) -> None:
        self._state = state

    @property
    def closed(self) -> bool:
        return self._state.writer_closed

    async def send(self, chunk: Any = None, error: Optional[BaseException] = None) -> bool:
        """
        Send one chunk or a terminal error.

        Returns True when the reader has been closed; the item is then
        discarded and the producer should stop.
        """
        state = self._state
        if state.writer_closed:
            raise RuntimeError("send on a closed stream writer")
        if state.reader_closed:
            return True
        await state.queue.put((chunk, error))
        return state.reader_closed

    async def close(self) -> None:
        """Mark end of stream. Idempotent."""
        state = self._state
        if state.writer_closed:
            return
        state.writer_closed = True
        if state.reader_closed:
            return
        await state.queue.put(_EOF)


class StreamReader:
    """
    Consumer side of a pipe.

        async with model_stream as reader:
            async for chunk in reader:
                ...

    A sent error is raised from iteration after every earlier chunk.
    The reader cannot be restarted once drained or closed.
    """

    def __init__(self, state: _PipeState) -> None:
        self._state = state
        self._finished = False
        self._task: Optional["asyncio.Task[Any]"] = None

    def attach_task(self, task: "asyncio.Task[Any]") -> None:
        self._task = task

    @property
    def closed(self) -> bool:
        return self._state.reader_closed

    def __aiter__(self) -> "StreamReader":
        return self

    async def __anext__(self) -> Any:
        state = self._state
        if self._finished or state.reader_closed:
            raise StopAsyncIteration
        state.waiting_readers += 1
        try:
            item = await state.queue.get()
        finally:
            state.waiting_readers -= 1
        if item is _EOF or state.reader_closed:
            self._finished = True
            raise StopAsyncIteration
        chunk, error = item
        if error is not None:
            raise error
        return chunk

    async def recv(self) -> Any:
        """Next chunk; raises StopAsyncIteration at end of stream."""
        return await self.__anext__()

    async def aclose(self) -> None:
        """
        Close the read side. Releases a blocked writer and wakes a consumer
        waiting in another task, then cancels and awaits the worker task if
        one is attached.
        """
        state = self._state
        if not state.reader_closed:
            state.reader_closed = True
            self._finished = True
            while not state.queue.empty():
                state.queue.get_nowait()
            # The queue was just emptied, so there is room for the marker.
            if state.waiting_readers:
                state.queue.put_nowait(_EOF)

        task = self._task
        if task is not None and not task.done():
            task.cancel()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def __aenter__(self) -> "StreamReader":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


def pipe(capacity: int = 1) -> Tuple[StreamReader, StreamWriter]:
    state = _PipeState(capacity)
    return StreamReader(state), StreamWriter(state)


def spawn_stream(
    producer: Callable[[StreamWriter], Awaitable[None]],
    *,
    capacity: int = 1,
    name: Optional[str] = None,
) -> StreamReader:
    """
    Run `producer(writer)` in a new task and return the reader side.

    The producer should send its own domain errors; anything escaping it
    is treated as an internal fault.
    """
    reader, writer = pipe(capacity)

    async def _run() -> None:
        try:
            await producer(writer)
        except Exception as exc:  # noqa: BLE001
            stack = traceback.format_exc()
            attach_context(exc, framework="relay_stream", operation="stream", task=name)
            logger.debug("stream worker %s failed", name or "<unnamed>", exc_info=True)
            if not writer.closed:
                await writer.send(error=StreamWorkerError(exc, stack))
        finally:
            await writer.close()

    reader.attach_task(asyncio.ensure_future(_run()))
    return reader


async def concat_stream(reader: StreamReader) -> Message:
    """
    Drain `reader` and concatenate its chunks into one message.

    A terminal error on the stream propagates unchanged; the reader is
    closed in every case.
    """
    chunks = []
    async with reader:
        async for chunk in reader:
            chunks.append(chunk)
    return concat_messages(chunks)


__all__ = [
    "StreamReader",
    "StreamWriter",
    "pipe",
    "spawn_stream",
    "concat_stream",
]
