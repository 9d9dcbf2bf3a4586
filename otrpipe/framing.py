from typing import AsyncIterator, Iterable, Iterator, List

from .errors import FramingError

"""
framing.py - tiny newline-delimited framing for byte streams.

Protocol (simple on purpose):
- Each frame = opaque text-safe bytes + a single b"\\n".
- The payload must never contain the delimiter; the engine's wire encoding
  (prefix + base64url) guarantees that.
- A stream that ends in the middle of a frame is a FramingError, never a
  truncated frame.
- A frame is at most MAX_FRAME_SIZE bytes; the decoder gives up (FramingError)
  as soon as it holds more than that without seeing a delimiter.

Why this style?
- TCP combines and splits packets however it likes; a delimiter lets the
  receiver reassemble the exact sequence of protocol messages.
- Text-safe frames are easy to debug with a plain `nc` on the other end.
"""

DELIMITER = b"\n"
READ_SIZE = 4096  # one bounded read from the transport
MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MiB hard limit, delimiter excluded


class FrameCodec:
    """Encodes frames for the wire and hands out incremental decoders."""

    def __init__(self, delimiter: bytes = DELIMITER, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        if not delimiter:
            raise ValueError("delimiter must not be empty")
        self.delimiter = delimiter
        self.max_frame_size = max_frame_size

    def encode(self, frame: bytes) -> bytes:
        """Append the delimiter; refuse payloads that would split on the other side."""
        if self.delimiter in frame:
            raise FramingError("Frame contains the delimiter")
        if len(frame) > self.max_frame_size:
            raise FramingError(f"Frame too large ({len(frame)} bytes, limit {self.max_frame_size})")
        return bytes(frame) + self.delimiter

    def decoder(self) -> "FrameDecoder":
        return FrameDecoder(self.delimiter, self.max_frame_size)

    def iter_frames(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """
        Lazily split an iterable of byte chunks into frames.

        Chunk boundaries don't matter; the frames come out in order. When
        the iterable runs out, a leftover partial frame raises FramingError.
        """
        decoder = self.decoder()
        for chunk in chunks:
            yield from decoder.feed(chunk)
        decoder.close()

    async def read_frames(self, source, read_size: int = READ_SIZE) -> AsyncIterator[bytes]:
        """
        Async version of iter_frames() over a source with `async read(n)`.

        An empty read means permanent end-of-stream (asyncio.StreamReader
        semantics).
        """
        decoder = self.decoder()
        while True:
            chunk = await source.read(read_size)
            if not chunk:
                break
            for frame in decoder.feed(chunk):
                yield frame
        decoder.close()


class FrameDecoder:
    """Buffers incoming bytes and cuts complete frames off the front."""

    def __init__(self, delimiter: bytes = DELIMITER, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        self.delimiter = delimiter
        self.max_frame_size = max_frame_size
        self._buffer = bytearray()
        self._closed = False

    @property
    def pending(self) -> int:
        """Number of buffered bytes that don't form a complete frame yet."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[bytes]:
        """Add bytes; return every frame completed by them (possibly none)."""
        if self._closed:
            raise FramingError("Decoder already closed")
        self._buffer += data
        frames = []
        # Scan only as far as we need: each match yields one frame and we keep the rest.
        while True:
            idx = self._buffer.find(self.delimiter)
            if idx < 0:
                break
            if idx > self.max_frame_size:
                raise FramingError(f"Frame too large ({idx} bytes, limit {self.max_frame_size})")
            frames.append(bytes(self._buffer[:idx]))
            del self._buffer[: idx + len(self.delimiter)]
        if len(self._buffer) > self.max_frame_size:
            # No delimiter within the limit: this frame can only get bigger.
            raise FramingError(f"Frame too large (over {self.max_frame_size} bytes without a delimiter)")
        return frames

    def close(self) -> None:
        """Mark end-of-stream. Clean only if nothing is left half-received."""
        self._closed = True
        if self._buffer:
            raise FramingError("Stream closed mid-message")
