import binascii
import json
from typing import Any, Dict

from . import crypto
from .errors import ProtocolViolation

"""
messages.py - message envelopes for the conversation engine, and how they
look on the wire.

What this module does:
- Builds the standard envelope (version, type, body) for each handshake or
  data message.
- Produces deterministic bytes for it (sorted keys, compact separators), so
  both ends agree on exactly what was authenticated.
- Packs an envelope into one text-safe frame: PREFIX + base64url(JSON).
  Base64url never contains the frame delimiter, so any frame we emit can go
  straight through the FrameCodec.

The query message is the odd one out: a fixed marker, not an envelope, so a
peer can recognise "I want to start a conversation" without parsing.
"""

VERSION = "1"

PREFIX = b"?OTRP:"
QUERY = b"?OTRP?"

# -----------------------
# Message type tags
# -----------------------
HELLO = "HELLO"  # ephemeral key
AUTH = "AUTH"    # sealed identity + signature
DATA = "DATA"    # sealed plaintext
END = "END"      # sealed termination marker

MESSAGE_TYPES = (HELLO, AUTH, DATA, END)


def new_envelope(msg_type: str, **body: Any) -> Dict[str, Any]:
    """
    Create an envelope for `msg_type` with `body` filled in.

    Binary values in the body must already be base64url strings.
    """
    return {
        "version": VERSION,
        "msg_type": msg_type,
        "body": body,
    }


def canonical_bytes(env: Dict[str, Any]) -> bytes:
    """Deterministic JSON: the same envelope always yields the same bytes."""
    return json.dumps(env, sort_keys=True, separators=(",", ":")).encode("utf-8")


def json_object(data: bytes) -> Dict[str, Any]:
    """Parse a JSON object; ValueError for anything else."""
    obj = json.loads(data.decode("utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("expected a JSON object")
    return obj


def is_protocol_frame(frame: bytes) -> bool:
    return frame == QUERY or frame.startswith(PREFIX)


def pack(env: Dict[str, Any]) -> bytes:
    """Envelope -> one text-safe frame."""
    return PREFIX + crypto.b64url_encode(canonical_bytes(env)).encode("ascii")


def unpack(frame: bytes) -> Dict[str, Any]:
    """
    One frame -> envelope dict.

    Raises:
        ProtocolViolation: bad prefix, bad base64, bad JSON, unknown version
        or type. Garbage from the peer is never silently skipped.
    """
    if not frame.startswith(PREFIX):
        raise ProtocolViolation("Not a protocol message")
    try:
        raw = crypto.b64url_decode(frame[len(PREFIX):].decode("ascii"))
        env = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, binascii.Error, ValueError) as exc:
        # Keep the message short; no payload echo.
        raise ProtocolViolation(f"Malformed protocol message: {exc}") from exc

    if not isinstance(env, dict) or not isinstance(env.get("body"), dict):
        raise ProtocolViolation("Malformed protocol message: not an envelope")
    if env.get("version") != VERSION:
        raise ProtocolViolation(f"Unsupported protocol version {env.get('version')!r}")
    if env.get("msg_type") not in MESSAGE_TYPES:
        raise ProtocolViolation(f"Unknown message type {env.get('msg_type')!r}")
    return env


def body_bytes(env: Dict[str, Any], field: str) -> bytes:
    """Fetch a base64url field from the body as bytes."""
    value = env["body"].get(field)
    if not isinstance(value, str):
        raise ProtocolViolation(f"{env['msg_type']} message is missing '{field}'")
    try:
        return crypto.b64url_decode(value)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolViolation(f"{env['msg_type']} message has a bad '{field}': {exc}") from exc


def body_int(env: Dict[str, Any], field: str) -> int:
    value = env["body"].get(field)
    # bool is an int subclass; don't let `true` sneak in as 1.
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ProtocolViolation(f"{env['msg_type']} message has a bad '{field}'")
    return value
