"""
errors.py - the session-fatal error kinds.

Every one of these ends the whole session: there is no retry, backoff or
partial recovery. The runner turns any SessionError into a one-line
diagnostic on stderr and exit status 1.
"""


class SessionError(Exception):
    """Base class for everything that aborts a conversation."""


class FramingError(SessionError):
    """The byte stream could not be split into frames (e.g. closed mid-message)."""


class TransportError(SessionError):
    """I/O failure on the socket, the proxy pipes or the local plaintext endpoints."""


class ProtocolViolation(SessionError):
    """
    The peer or the local user broke a security invariant:
    plaintext before authorization, binary data on the text channel,
    a fingerprint change mid-conversation, or a malformed/forged message.
    """


class AuthorizationRejected(SessionError):
    """The authorization policy refused the peer."""


class ConfigConflict(SessionError):
    """Inconsistent authorization flags, detected before any connection attempt."""
