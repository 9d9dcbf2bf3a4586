import abc
import enum
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from . import crypto
from . import messages as m
from .errors import ProtocolViolation

"""
conversation.py - the crypto engine the orchestrator drives.

Conversation is the capability surface the session needs (send, receive,
end, is_encrypted, peer_fingerprint). The orchestrator never looks past it,
which is what lets the tests swap in a deterministic double.

SecureConversation is the engine shipped with the tool:

    A                                   B
    ?OTRP?              ---->                       (both sides send the query)
    HELLO(eph_A)        <--->   HELLO(eph_B)        (once each, on query or hello)
    AUTH(seal(id_A, sig_A(eph_A|eph_B)))  <--->  AUTH(...)
    -- encrypted once the peer's AUTH verifies --
    DATA(seal(text)) ... END(seal(""))

- Keys: X25519(eph_A, eph_B) -> HKDF -> one ChaCha20-Poly1305 key per direction.
- AUTH is sealed, so identities aren't visible on the wire.
- Data is only authenticated by the shared symmetric keys (no signatures),
  so either side could have produced a transcript after the fact.
- Counters are per direction and strictly increasing; a replay or reorder
  is a ProtocolViolation.
"""

logger = logging.getLogger(__name__)

KDF_INFO = b"otrpipe v1 keys"
AUTH_CONTEXT = b"otrpipe v1 auth"


class SessionState(enum.Enum):
    """The session-state signal reported with every received frame."""
    PLAINTEXT = "plaintext"
    ENCRYPTED = "encrypted"
    ENDED = "ended"


@dataclass
class Received:
    """What receive() hands back for one inbound frame."""
    plaintext: bytes = b""
    encrypted: bool = False
    state: SessionState = SessionState.PLAINTEXT
    to_send: List[bytes] = field(default_factory=list)


class Conversation(abc.ABC):
    """Abstract crypto engine: everything the orchestrator may ask of it."""

    #: handshake-initiation message; send() passes it through in plaintext
    QUERY_MESSAGE: bytes = m.QUERY

    @abc.abstractmethod
    def send(self, plaintext: bytes) -> List[bytes]:
        """Frames carrying `plaintext` (or the query message) to the peer."""

    @abc.abstractmethod
    def receive(self, frame: bytes) -> Received:
        """Process one inbound frame."""

    @abc.abstractmethod
    def end(self) -> List[bytes]:
        """Frames that tell the peer the conversation is over."""

    @abc.abstractmethod
    def is_encrypted(self) -> bool:
        ...

    @abc.abstractmethod
    def peer_fingerprint(self) -> bytes:
        """Peer identity; only meaningful once is_encrypted() is True."""


class SecureConversation(Conversation):
    """Ed25519-authenticated X25519 handshake + ChaCha20-Poly1305 messages."""

    def __init__(self, identity: Ed25519PrivateKey) -> None:
        self._identity = identity
        self._ephemeral = crypto.generate_ephemeral()
        self._ephemeral_pub = crypto.public_bytes(self._ephemeral.public_key())
        self._peer_ephemeral: Optional[bytes] = None
        self._peer_identity: Optional[bytes] = None
        self._sent_hello = False
        self._send_key: Optional[bytes] = None
        self._recv_key: Optional[bytes] = None
        self._send_counter = 0
        self._recv_counter = 0  # lowest counter we still accept
        self._state = SessionState.PLAINTEXT

    # -------------------------
    # Conversation API
    # -------------------------

    def send(self, plaintext: bytes) -> List[bytes]:
        if plaintext == self.QUERY_MESSAGE and self._state is SessionState.PLAINTEXT:
            return [m.QUERY]
        if self._state is SessionState.ENDED:
            raise ProtocolViolation("The conversation has ended.")
        if self._state is not SessionState.ENCRYPTED:
            raise ProtocolViolation("Refusing to send text before the channel is encrypted.")
        return [self._seal(m.DATA, plaintext)]

    def receive(self, frame: bytes) -> Received:
        if self._state is SessionState.ENDED:
            raise ProtocolViolation("Message received after the conversation ended.")
        if frame == m.QUERY:
            return self._result(to_send=self._hello())
        if not m.is_protocol_frame(frame):
            # Plain text from the other side: pass it up unencrypted and let
            # the session decide (it refuses it).
            return self._result(plaintext=frame, encrypted=False)

        env = m.unpack(frame)
        mt = env["msg_type"]
        if mt == m.HELLO:
            return self._on_hello(env)
        if mt == m.AUTH:
            return self._on_auth(env)
        if mt == m.DATA:
            if self._state is not SessionState.ENCRYPTED:
                raise ProtocolViolation("Encrypted data before the peer authenticated.")
            return self._result(plaintext=self._open(env), encrypted=True)
        # END
        if self._state is not SessionState.ENCRYPTED:
            raise ProtocolViolation("End of conversation before the peer authenticated.")
        self._open(env)
        logger.debug("peer ended the conversation")
        self._state = SessionState.ENDED
        return self._result()

    def end(self) -> List[bytes]:
        if self._state is not SessionState.ENCRYPTED:
            self._state = SessionState.ENDED
            return []
        frame = self._seal(m.END, b"")
        self._state = SessionState.ENDED
        return [frame]

    def is_encrypted(self) -> bool:
        return self._state is SessionState.ENCRYPTED

    def peer_fingerprint(self) -> bytes:
        if self._peer_identity is None:
            raise ProtocolViolation("Peer identity requested before the channel is encrypted.")
        return crypto.fingerprint_raw(self._peer_identity)

    # -------------------------
    # Handshake
    # -------------------------

    def _result(self, plaintext: bytes = b"", encrypted: Optional[bool] = None,
                to_send: Optional[List[bytes]] = None) -> Received:
        if encrypted is None:
            encrypted = self.is_encrypted()
        return Received(plaintext, encrypted, self._state, list(to_send or []))

    def _hello(self) -> List[bytes]:
        """Our HELLO, the first time we're asked for it."""
        if self._sent_hello:
            return []
        self._sent_hello = True
        env = m.new_envelope(m.HELLO, eph=crypto.b64url_encode(self._ephemeral_pub))
        return [m.pack(env)]

    def _transcript(self, sender_eph: bytes, receiver_eph: bytes) -> bytes:
        return AUTH_CONTEXT + sender_eph + receiver_eph

    def _on_hello(self, env) -> Received:
        peer_eph = m.body_bytes(env, "eph")
        if self._peer_ephemeral is not None:
            if peer_eph != self._peer_ephemeral:
                raise ProtocolViolation("Peer changed its key during the handshake.")
            return self._result()
        if len(peer_eph) != crypto.KEY_SIZE or peer_eph == self._ephemeral_pub:
            raise ProtocolViolation("Invalid handshake key.")

        try:
            low, high = crypto.agree(self._ephemeral, peer_eph, KDF_INFO)
        except ValueError as exc:
            # e.g. a low-order point: no usable shared secret
            raise ProtocolViolation("Invalid handshake key.") from exc
        self._peer_ephemeral = peer_eph
        if self._ephemeral_pub < peer_eph:
            self._send_key, self._recv_key = low, high
        else:
            self._send_key, self._recv_key = high, low

        # 1) Make sure the peer gets our HELLO (if it didn't send a query first).
        out = self._hello()
        # 2) Prove who we are, bound to both ephemeral keys.
        sig = crypto.sign(self._identity, self._transcript(self._ephemeral_pub, peer_eph))
        inner = m.canonical_bytes({
            "identity": crypto.b64url_encode(crypto.public_bytes(self._identity.public_key())),
            "sig": crypto.b64url_encode(sig),
        })
        out.append(self._seal(m.AUTH, inner))
        logger.debug("sent HELLO/AUTH")
        return self._result(to_send=out)

    def _on_auth(self, env) -> Received:
        if self._recv_key is None:
            raise ProtocolViolation("Authentication before key exchange.")
        if self._peer_identity is not None:
            raise ProtocolViolation("Peer authenticated twice.")
        inner = m.new_envelope(m.AUTH)
        try:
            inner["body"] = m.json_object(self._open(env))
        except ValueError as exc:
            raise ProtocolViolation(f"Malformed authentication: {exc}") from exc
        identity = m.body_bytes(inner, "identity")
        sig = m.body_bytes(inner, "sig")
        if not crypto.verify(identity, self._transcript(self._peer_ephemeral, self._ephemeral_pub), sig):
            raise ProtocolViolation("Peer authentication failed.")

        self._peer_identity = identity
        self._state = SessionState.ENCRYPTED
        logger.debug("channel encrypted")
        return self._result()

    # -------------------------
    # Sealing
    # -------------------------

    def _seal(self, msg_type: str, data: bytes) -> bytes:
        counter = self._send_counter
        if counter >= crypto.MAX_COUNTER:
            raise ProtocolViolation("Message counter exhausted.")
        self._send_counter += 1
        ct = crypto.seal(self._send_key, counter, data, msg_type.encode("ascii"))
        env = m.new_envelope(msg_type, ctr=counter, ct=crypto.b64url_encode(ct))
        return m.pack(env)

    def _open(self, env) -> bytes:
        counter = m.body_int(env, "ctr")
        if counter < self._recv_counter:
            raise ProtocolViolation("Replayed or reordered message.")
        if counter >= crypto.MAX_COUNTER:
            raise ProtocolViolation("Message counter out of range.")
        ct = m.body_bytes(env, "ct")
        try:
            data = crypto.open_sealed(self._recv_key, counter, ct, env["msg_type"].encode("ascii"))
        except InvalidTag as exc:
            raise ProtocolViolation("Message failed authentication.") from exc
        self._recv_counter = counter + 1
        return data
