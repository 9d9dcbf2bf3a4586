import asyncio
import logging
import os
import threading
from typing import Optional

from .errors import TransportError
from .framing import READ_SIZE, FrameCodec

"""
pumps.py - one-directional byte movers between a source/sink and a queue.

Shapes:
- read_pump:  source.read(n) -> one message per non-empty read -> queue.
              Clean end-of-stream closes the queue.
- frame_pump: like read_pump, but runs the bytes through the FrameCodec so
              each message is exactly one protocol frame.
- write_pump: queue -> sink.write(msg), until the queue is closed or a None
              message ("drain and stop") comes out.

Any I/O error in a pump is a TransportError. Pumps don't catch it; the
orchestrator watches the pump tasks and aborts the session.

Sources have `async read(n) -> bytes` (b"" = end-of-stream) and sinks have
`async write(data)`. asyncio.StreamReader is already a source; the adapters
below cover StreamWriter, framed output and raw file descriptors.
"""

logger = logging.getLogger(__name__)

QUEUE_SIZE = 100  # generous enough that interactive text never blocks

_CLOSED = object()


class QueueClosed(Exception):
    """Raised by MessageQueue.get() once the producer has closed the queue."""


class MessageQueue:
    """
    Bounded FIFO with an explicit close, shared by exactly one producer and
    one consumer.

    None is a legal message (the write pump's stop sentinel) and is not the
    same thing as closing the queue.
    """

    def __init__(self, name: str, maxsize: int = QUEUE_SIZE) -> None:
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once the consumer has observed the close."""
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, msg: Optional[bytes]) -> None:
        await self._queue.put(msg)

    async def close(self) -> None:
        await self._queue.put(_CLOSED)

    async def get(self) -> Optional[bytes]:
        if self._closed:
            raise QueueClosed(self.name)
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise QueueClosed(self.name)
        return item


# -------------------------
# Pumps
# -------------------------

async def read_pump(source, queue: MessageQueue, read_size: int = READ_SIZE) -> None:
    """Move bounded reads from `source` into `queue` until end-of-stream."""
    logger.debug("read pump %s started", queue.name)
    while True:
        try:
            data = await source.read(read_size)
        except OSError as exc:
            raise TransportError(f"Read failed ({queue.name}): {exc}") from exc
        if not data:
            break
        await queue.put(data)
    logger.debug("read pump %s reached end-of-stream", queue.name)
    await queue.close()


async def frame_pump(source, queue: MessageQueue, codec: FrameCodec, read_size: int = READ_SIZE) -> None:
    """Decode frames from `source` into `queue`. A truncated tail raises FramingError."""
    logger.debug("frame pump %s started", queue.name)
    try:
        async for frame in codec.read_frames(source, read_size):
            await queue.put(frame)
    except OSError as exc:
        raise TransportError(f"Read failed ({queue.name}): {exc}") from exc
    logger.debug("frame pump %s reached end-of-stream", queue.name)
    await queue.close()


async def write_pump(sink, queue: MessageQueue) -> None:
    """Write every message from `queue` to `sink`, in order, until close or None."""
    logger.debug("write pump %s started", queue.name)
    while True:
        try:
            msg = await queue.get()
        except QueueClosed:
            logger.debug("write pump %s: queue closed", queue.name)
            return
        if msg is None:
            # Everything queued before the sentinel has been written.
            logger.debug("write pump %s drained", queue.name)
            return
        try:
            await sink.write(msg)
        except OSError as exc:
            raise TransportError(f"Write failed ({queue.name}): {exc}") from exc


# -------------------------
# Source / sink adapters
# -------------------------

class StreamSink:
    """asyncio.StreamWriter as a pump sink: write fully, then let the transport flush."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self.writer = writer

    async def write(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()  # backpressure: a slow peer stalls the pump

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except ConnectionError as exc:
            # The peer may already be gone; the session outcome is decided by now.
            logger.debug("transport close: %s", exc)


class FrameSink:
    """Wraps a sink so every message written is one encoded frame."""

    def __init__(self, sink, codec: FrameCodec) -> None:
        self.sink = sink
        self.codec = codec

    async def write(self, frame: bytes) -> None:
        await self.sink.write(self.codec.encode(frame))


def _in_daemon_thread(func, *args) -> asyncio.Future:
    """
    Run a blocking call on a fresh daemon thread and return a future for it.

    Daemon threads (not the default executor) so a read blocked on the
    terminal is simply abandoned when the process exits.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def deliver(setter, value):
        if not future.done():
            setter(value)

    def work():
        try:
            outcome = (future.set_result, func(*args))
        except Exception as exc:
            outcome = (future.set_exception, exc)
        try:
            loop.call_soon_threadsafe(deliver, *outcome)
        except RuntimeError:
            # Loop already closed: nobody is waiting for this result any more.
            pass

    threading.Thread(target=work, name=f"otrpipe-{func.__name__}", daemon=True).start()
    return future


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


class FdSource:
    """Blocking file descriptor (stdin, a child's stdout) as a pump source."""

    def __init__(self, fd: int) -> None:
        self.fd = fd

    async def read(self, n: int) -> bytes:
        return await _in_daemon_thread(os.read, self.fd, n)


class FdSink:
    """Blocking file descriptor (stdout, a child's stdin) as a pump sink."""

    def __init__(self, fd: int) -> None:
        self.fd = fd

    async def write(self, data: bytes) -> None:
        await _in_daemon_thread(_write_all, self.fd, bytes(data))
