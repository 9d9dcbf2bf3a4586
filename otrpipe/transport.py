import asyncio
import logging
from typing import List, Optional

from .errors import TransportError
from .pumps import StreamSink

"""
transport.py - the byte streams a conversation runs over.

- connect: TCP client (asyncio.open_connection).
- listen:  TCP server that takes exactly one connection, then stops listening.
- proxy:   a spawned command's stdin/stdout (think `ssh host nc ...`); its
           stderr goes straight to ours.

Each returns a Transport: a `reader` the frame pump can read from, a `sink`
the write pump can write to, and close().
"""

logger = logging.getLogger(__name__)


class Transport:
    """Reader/sink pair plus whatever needs tearing down afterwards."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 process: Optional[asyncio.subprocess.Process] = None) -> None:
        self.reader = reader
        self.sink = StreamSink(writer)
        self.process = process

    async def close(self) -> None:
        await self.sink.close()
        if self.process is not None:
            returncode = await self.process.wait()
            logger.debug("proxy command exited with status %s", returncode)


async def connect(host: str, port: int) -> Transport:
    """Open a TCP connection to host:port."""
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as exc:
        raise TransportError(f"Can't connect to {host}:{port}: {exc}") from exc
    logger.debug("connected to %s", writer.get_extra_info("peername"))
    return Transport(reader, writer)


async def listen(host: Optional[str], port: int) -> Transport:
    """Wait for one incoming connection on host:port (all interfaces if host is None)."""
    loop = asyncio.get_running_loop()
    accepted: asyncio.Future = loop.create_future()

    def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if accepted.done():
            # Only one conversation per run; anyone else is turned away.
            writer.close()
            return
        accepted.set_result((reader, writer))

    try:
        server = await asyncio.start_server(on_connect, host, port)
    except OSError as exc:
        raise TransportError(f"Can't listen on port {port}: {exc}") from exc
    addrs = ", ".join(str(sock.getsockname()) for sock in server.sockets or [])
    logger.debug("listening on %s", addrs)
    try:
        reader, writer = await accepted
    finally:
        # Stop accepting. Not wait_closed(): that would also wait for the
        # connection we just accepted.
        server.close()
    logger.debug("accepted %s", writer.get_extra_info("peername"))
    return Transport(reader, writer)


async def proxy(command: List[str]) -> Transport:
    """Use `command`'s stdin/stdout as the transport."""
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise TransportError(f"Can't run proxy command '{command[0]}': {exc}") from exc
    logger.debug("proxy command %r started as pid %d", command, process.pid)
    return Transport(process.stdout, process.stdin, process)
