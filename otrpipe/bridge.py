import asyncio
import logging
import subprocess
import sys
from typing import Optional, Tuple

from .errors import TransportError
from .pumps import FdSink, FdSource

"""
bridge.py - where decrypted plaintext comes from and goes to.

The session only opens these after the peer is authorized:
- StdioEndpoint: our own stdin/stdout (the normal case).
- ProcessBridge: `-exec COMMAND`, run with /bin/sh and the peer's contact
  name as $1; its stdin/stdout replace ours.

Both expose `open(peer_name) -> (source, sink)` and `close(wait=...)`.
"""

logger = logging.getLogger(__name__)


class StdioEndpoint:
    """The terminal (or whatever stdin/stdout are redirected to)."""

    def __init__(self, stdin_fd: int = 0, stdout_fd: int = 1) -> None:
        self.stdin_fd = stdin_fd
        self.stdout_fd = stdout_fd

    async def open(self, peer_name: str) -> Tuple[FdSource, FdSink]:
        return FdSource(self.stdin_fd), FdSink(self.stdout_fd)

    async def close(self, wait: bool = True) -> None:
        # Our own stdio stays open; the process exit takes care of it.
        return None


class ProcessBridge:
    """
    Runs the -exec command once the peer is authorized and talks to its pipes.

    The child gets its own session (and so its own process group), so a ^C
    meant for us doesn't also kill it before we've said goodbye.
    """

    def __init__(self, command: str, shell: str = "/bin/sh") -> None:
        self.command = command
        self.shell = shell
        self.process: Optional[subprocess.Popen] = None

    async def open(self, peer_name: str) -> Tuple[FdSource, FdSink]:
        argv = [self.shell, "-c", self.command, "--", peer_name or ""]
        try:
            self.process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                bufsize=0,               # raw pipes; the pumps do their own I/O
                start_new_session=True,
            )
        except OSError as exc:
            raise TransportError(f"Can't run '{self.command}': {exc}") from exc
        logger.debug("started %r as pid %d", self.command, self.process.pid)
        return FdSource(self.process.stdout.fileno()), FdSink(self.process.stdin.fileno())

    async def close(self, wait: bool = True) -> Optional[int]:
        """
        Close both pipes, then (if `wait`) wait for the command to exit.

        Problems are reported on stderr but never raised: by now the
        network side of the session is already finished.
        """
        proc = self.process
        if proc is None:
            return None
        for pipe in (proc.stdin, proc.stdout):
            try:
                pipe.close()
            except OSError as exc:
                print(f"Error closing the pipe to '{self.command}': {exc}", file=sys.stderr)
        if not wait:
            return None

        returncode = await asyncio.to_thread(proc.wait)
        if returncode != 0:
            print(f"'{self.command}' exited with status {returncode}.", file=sys.stderr)
        return returncode
