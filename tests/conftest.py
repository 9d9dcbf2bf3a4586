"""
Shared test doubles: in-memory byte streams, a fake local endpoint and a
deterministic "tagging" crypto engine, so the session can be driven frame by
frame without real cryptography.
"""

import asyncio
from typing import List, Optional

import pytest

from otrpipe.contacts import ContactBook
from otrpipe.conversation import Conversation, Received, SessionState
from otrpipe.errors import ProtocolViolation

ALICE = bytes.fromhex("aa11")
BOB = bytes.fromhex("bb22")


class MemorySource:
    """Async source the test feeds by hand. feed_eof() makes every later read return b""."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def feed_eof(self) -> None:
        self._queue.put_nowait(b"")

    async def read(self, n: int) -> bytes:
        data = await self._queue.get()
        if not data:
            self._queue.put_nowait(b"")
        return data


class FailingSource:
    async def read(self, n: int) -> bytes:
        raise ConnectionResetError("connection reset by peer")


class MemorySink:
    def __init__(self) -> None:
        self.data = bytearray()

    async def write(self, data: bytes) -> None:
        self.data += data

    def lines(self) -> List[bytes]:
        return bytes(self.data).split(b"\n")[:-1]


class LinkSink:
    """Writes straight into another side's MemorySource; close() is the hang-up."""

    def __init__(self, peer: MemorySource) -> None:
        self.peer = peer

    async def write(self, data: bytes) -> None:
        self.peer.feed(bytes(data))

    def close(self) -> None:
        self.peer.feed_eof()


class FakeLocal:
    """Stands in for StdioEndpoint / ProcessBridge."""

    def __init__(self) -> None:
        self.source = MemorySource()
        self.sink = MemorySink()
        self.opened_with: Optional[str] = None
        self.closed_with: Optional[bool] = None

    async def open(self, peer_name: str):
        self.opened_with = peer_name
        return self.source, self.sink

    async def close(self, wait: bool = True) -> None:
        self.closed_with = wait


class TaggedConversation(Conversation):
    """
    Identity "encryption" with readable frames:

        QUERY          -> answer with HELLO:<our hex>
        HELLO:<hex>    -> encrypted, peer fingerprint = hex
        SWITCH:<hex>   -> peer fingerprint changes to hex
        DATA:<text>    -> text, flagged encrypted if we are
        PLAIN:<text>   -> text, flagged unencrypted
        END            -> peer ended
    """

    QUERY_MESSAGE = b"QUERY"

    def __init__(self, own: bytes = bytes.fromhex("cc33")) -> None:
        self.own = own
        self.encrypted = False
        self.fingerprint: Optional[bytes] = None
        self.ended = False

    def send(self, plaintext: bytes) -> List[bytes]:
        if plaintext == self.QUERY_MESSAGE:
            return [b"QUERY"]
        if not self.encrypted:
            raise ProtocolViolation("not encrypted")
        return [b"DATA:" + plaintext]

    def receive(self, frame: bytes) -> Received:
        tag, _, rest = frame.partition(b":")
        if frame == b"QUERY":
            return Received(to_send=[b"HELLO:" + self.own.hex().encode()])
        if tag in (b"HELLO", b"SWITCH"):
            self.encrypted = True
            self.fingerprint = bytes.fromhex(rest.decode())
            return Received(encrypted=True, state=SessionState.ENCRYPTED)
        if tag == b"DATA":
            return Received(plaintext=rest, encrypted=self.encrypted, state=self._state())
        if tag == b"PLAIN":
            return Received(plaintext=rest, encrypted=False, state=self._state())
        if frame == b"END":
            self.ended = True
            return Received(state=SessionState.ENDED)
        raise ProtocolViolation(f"unexpected frame {frame!r}")

    def end(self) -> List[bytes]:
        return [b"END"] if self.encrypted else []

    def is_encrypted(self) -> bool:
        return self.encrypted

    def peer_fingerprint(self) -> bytes:
        return self.fingerprint

    def _state(self) -> SessionState:
        return SessionState.ENCRYPTED if self.encrypted else SessionState.PLAINTEXT


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until `predicate()` holds; fail the test instead of hanging."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def contacts() -> ContactBook:
    book = ContactBook()
    book.add("alice", ALICE)
    return book
