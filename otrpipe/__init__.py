"""
otrpipe - an encrypted, authenticated, deniable pipe.

Think `nc`, but the other end has to prove who it is first:
- The transport is a TCP connection or a proxy command's stdin/stdout.
- Nothing you type is read, and nothing received is printed, until the
  channel is encrypted and the peer passes the contact policy
  (-anyone / -remember NAME / -expect NAME).
- Ending the conversation (EOF or ^C) sends the termination messages and
  waits for the other side to hang up, so they actually arrive.

Keys and contacts live in ~/.otrpipe (or $OTRPIPE_DIR).
"""
__all__ = [
    "bridge",
    "contacts",
    "conversation",
    "crypto",
    "errors",
    "framing",
    "messages",
    "policy",
    "pumps",
    "run",
    "session",
    "transport",
]
