import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .conversation import Conversation, SessionState
from .errors import ProtocolViolation, TransportError
from .framing import FrameCodec
from .policy import AuthorizationPolicy
from .pumps import QUEUE_SIZE, FrameSink, MessageQueue, QueueClosed, frame_pump, read_pump, write_pump

"""
session.py - the conversation orchestrator.

The main job is to pass messages between the local plaintext endpoints, the
crypto engine and the transport:

    transport -> frame pump -> remote_in  -> engine.receive -> local_out -> local write pump
    local read pump -> local_in -> engine.send -> remote_out -> write pump -> transport

Rules this module exists to enforce:
- Local plaintext pumps are only started once the channel is encrypted AND
  the peer is authorized, so nothing secret can leave (or arrive) earlier.
- Decrypted text while not authorized, a NUL byte in outgoing text, or the
  peer's fingerprint changing mid-conversation abort the session.
- On a local end (EOF or ^C) we send the engine's termination frames and then
  wait for the peer to close the transport, so those frames really get
  delivered. That wait has no timeout.

One event loop task owns all state; the pumps only move bytes and each
queue has exactly one producer and one consumer.
"""

logger = logging.getLogger(__name__)


class SessionStatus(enum.Enum):
    INIT = "init"
    UNAUTHORIZED = "unauthorized"
    AUTHORIZED = "authorized"
    ENDING = "ending"
    TERMINATED = "terminated"
    ABORTED = "aborted"


@dataclass
class Session:
    """One conversation, owned by the orchestrator for its lifetime."""
    identity: bytes = b""                    # our own fingerprint
    peer_fingerprint: Optional[bytes] = None
    peer_name: Optional[str] = None
    status: SessionStatus = SessionStatus.INIT
    encrypted: bool = False


EOF = object()  # event value: the queue behind this event source was closed

# When several events are ready at once they're handled in this order.
EVENT_ORDER = ("remote", "local", "interrupt")


class ConversationOrchestrator:
    """
    Drives one conversation over one transport.

    Args:
        conversation: the crypto engine.
        remote_source: transport read side (`async read(n)`), e.g. a StreamReader.
        remote_sink: transport write side (`async write(data)`), e.g. a StreamSink.
        policy: decides whether the peer may talk to us.
        local: StdioEndpoint or ProcessBridge, opened after authorization.
        interrupt: set once to end the conversation (the runner wires ^C to it).
    """

    def __init__(self, conversation: Conversation, remote_source, remote_sink,
                 policy: AuthorizationPolicy, local, *, identity: bytes = b"",
                 interrupt: Optional[asyncio.Event] = None,
                 codec: Optional[FrameCodec] = None, queue_size: int = QUEUE_SIZE) -> None:
        self.conversation = conversation
        self.remote_source = remote_source
        self.remote_sink = remote_sink
        self.policy = policy
        self.local = local
        self.interrupt = interrupt
        self.codec = codec or FrameCodec()
        self.session = Session(identity=identity)

        self.remote_in = MessageQueue("remote-in", queue_size)
        self.remote_out = MessageQueue("remote-out", queue_size)
        self.local_in = MessageQueue("local-in", queue_size)
        self.local_out = MessageQueue("local-out", queue_size)

        self._pumps: Dict[str, asyncio.Task] = {}      # watched: a failure aborts the session
        self._abandoned: List[asyncio.Task] = []       # no longer watched, cancelled on exit
        self._waiters: Dict[str, asyncio.Task] = {}    # pending event-source reads

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    # -------------------------
    # Lifecycle
    # -------------------------

    async def run(self) -> Session:
        """
        Run the conversation to the end.

        Returns the finished Session on graceful termination (ours or the
        peer's). Raises a SessionError subclass on anything fatal, after
        marking the session ABORTED.
        """
        try:
            await self._start()
            await self._event_loop()
            if self.status is SessionStatus.ENDING:
                await self._shutdown()
            await self._flush()
            self._transition(SessionStatus.TERMINATED)
            await self.local.close(wait=True)
            return self.session
        except Exception:
            self._transition(SessionStatus.ABORTED)
            await self.local.close(wait=False)
            raise
        finally:
            await self._cleanup()

    async def _start(self) -> None:
        # Queue the handshake first, then start talking to the transport.
        await self._transmit(self.conversation.send(self.conversation.QUERY_MESSAGE))
        self._spawn("remote-read", frame_pump(self.remote_source, self.remote_in, self.codec))
        self._spawn("remote-write", write_pump(FrameSink(self.remote_sink, self.codec), self.remote_out))
        self._transition(SessionStatus.UNAUTHORIZED)

    async def _event_loop(self) -> None:
        """Return once we should end (ENDING) or the peer has ended (TERMINATED)."""
        while True:
            self._arm("remote", self.remote_in.get)
            if self.status is SessionStatus.AUTHORIZED:
                self._arm("local", self.local_in.get)
            if self.interrupt is not None:
                self._arm("interrupt", self.interrupt.wait)

            event, value = await self._next_event()

            if event == "interrupt":
                logger.debug("interrupted")
                self._transition(SessionStatus.ENDING)
                return

            if event == "local":
                if value is EOF:
                    logger.debug("local input closed")
                    self._transition(SessionStatus.ENDING)
                    return
                await self._on_local(value)
                continue

            # remote
            if value is EOF:
                if self.status is SessionStatus.AUTHORIZED:
                    raise TransportError("Connection dropped!  Recent messages might not be deniable.")
                raise TransportError("Connection dropped!")
            if await self._on_remote(value):
                self._transition(SessionStatus.TERMINATED)
                return

    async def _shutdown(self) -> None:
        """
        We want to terminate the conversation: send the termination frames,
        stop the writer after them, and wait for the other side to close the
        connection. It's important that these frames get through, for
        deniability.
        """
        for name in ("local", "interrupt"):
            waiter = self._waiters.pop(name, None)
            if waiter is not None:
                waiter.cancel()
        # Nobody reads local input any more; its pump may block or fail harmlessly.
        self._abandon("local-read")

        await self._transmit(self.conversation.end())
        await self.remote_out.put(None)

        while True:
            self._arm("remote", self.remote_in.get)
            _, value = await self._next_event()
            if value is EOF:
                logger.debug("peer closed the connection")
                return
            # Anything the peer still sends is ignored from here on.

    async def _flush(self) -> None:
        """Let the write pumps finish what's already queued."""
        remote_writer = self._pumps.get("remote-write")
        if remote_writer is not None and not remote_writer.done():
            await self.remote_out.put(None)
        local_writer = self._pumps.get("local-write")
        if local_writer is not None and not local_writer.done():
            await self.local_out.put(None)
        for task in (remote_writer, local_writer):
            if task is not None:
                await task

    async def _cleanup(self) -> None:
        tasks = list(self._waiters.values()) + list(self._pumps.values()) + self._abandoned
        self._waiters.clear()
        self._pumps.clear()
        self._abandoned = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------
    # Event handlers
    # -------------------------

    async def _on_remote(self, frame: bytes) -> bool:
        """Handle one inbound frame. True means the peer ended the conversation."""
        result = self.conversation.receive(frame)
        if result.state is SessionState.ENDED:
            logger.debug("peer ended the conversation")
            return True
        await self._transmit(result.to_send)

        if self.conversation.is_encrypted():
            self.session.encrypted = True
            fingerprint = self.conversation.peer_fingerprint()
            if self.status is SessionStatus.AUTHORIZED:
                if fingerprint != self.session.peer_fingerprint:
                    raise ProtocolViolation("The contact changed mid-conversation.")
            else:
                await self._authorize(fingerprint)

        if result.plaintext:
            if not result.encrypted or self.status is not SessionStatus.AUTHORIZED:
                raise ProtocolViolation("Received unencrypted or unauthenticated text.")
            await self.local_out.put(result.plaintext)
        return False

    async def _authorize(self, fingerprint: bytes) -> None:
        """First time encrypted: check the peer, then (and only then) open local I/O."""
        self.session.peer_fingerprint = fingerprint
        self.session.peer_name = self.policy.authorize(fingerprint)
        self._transition(SessionStatus.AUTHORIZED)

        source, sink = await self.local.open(self.session.peer_name or "")
        self._spawn("local-read", read_pump(source, self.local_in))
        self._spawn("local-write", write_pump(sink, self.local_out))

    async def _on_local(self, plaintext: bytes) -> None:
        if b"\x00" in plaintext:
            raise ProtocolViolation(
                "Only UTF8-encoded text can be sent. "
                "Please use base64 or another suitable encoding for binary data."
            )
        await self._transmit(self.conversation.send(plaintext))

    # -------------------------
    # Plumbing
    # -------------------------

    async def _transmit(self, frames: List[bytes]) -> None:
        for frame in frames:
            await self.remote_out.put(frame)

    def _transition(self, status: SessionStatus) -> None:
        if self.session.status is SessionStatus.ABORTED:
            return  # absorbing
        logger.debug("session %s -> %s", self.session.status.value, status.value)
        self.session.status = status

    def _spawn(self, name: str, coro) -> None:
        self._pumps[name] = asyncio.ensure_future(coro)

    def _abandon(self, name: str) -> None:
        task = self._pumps.pop(name, None)
        if task is not None:
            self._abandoned.append(task)

    def _arm(self, name: str, factory) -> None:
        """Keep one pending read per event source; a ready result is never dropped."""
        if name not in self._waiters:
            self._waiters[name] = asyncio.ensure_future(factory())

    async def _next_event(self) -> Tuple[str, object]:
        """
        Wait for the next event among the armed sources.

        A pump that died with an error wins over everything else: its
        exception is raised here and aborts the session.
        """
        while True:
            for task in self._pumps.values():
                if task.done() and not task.cancelled() and task.exception() is not None:
                    raise task.exception()
            for name in EVENT_ORDER:
                task = self._waiters.get(name)
                if task is not None and task.done():
                    del self._waiters[name]
                    try:
                        return name, task.result()
                    except QueueClosed:
                        return name, EOF
            watched = [t for t in self._pumps.values() if not t.done()]
            watched.extend(self._waiters.values())
            await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
