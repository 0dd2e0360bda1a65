"""Unix socket transport carrying JSON-line frames.

One Transport is opened per connection attempt and never reused. Reads go
through an internal buffer so a read that times out keeps whatever bytes
already arrived; the next read resumes from there.
"""

import logging
import select
import socket
from pathlib import Path
from typing import Any, Dict, Optional

from buildlink.core.errors import (
    EndOfStream,
    ServerBusy,
    ServerInitializing,
    ServerNotUp,
)
from buildlink.daemon.protocol import decode_frame, encode_frame

logger = logging.getLogger(__name__)

_RECV_SIZE = 65536
GREETING_TIMEOUT = 5.0


class Transport:
    """Duplex channel to the server."""

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self._buffer = b""

    @classmethod
    def open(cls, socket_path: Path, greeting_timeout: float = GREETING_TIMEOUT) -> "Transport":
        """
        Connect to the server and consume its greeting.

        Raises:
            ServerNotUp: Socket missing, connection refused, or no greeting in time
            ServerInitializing: Server answered but is still initializing
        """
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(str(socket_path))
        except (FileNotFoundError, ConnectionRefusedError) as e:
            sock.close()
            raise ServerNotUp(str(e)) from e

        transport = cls(sock)
        try:
            greeting = transport.read_message(timeout=greeting_timeout)
        except EndOfStream as e:
            transport.close()
            raise ServerNotUp("server closed the connection before greeting") from e
        except ServerBusy as e:
            transport.close()
            raise ServerNotUp(f"no greeting within {greeting_timeout}s") from e
        except OSError as e:
            transport.close()
            raise ServerNotUp(str(e)) from e

        status = greeting.get("status")
        logger.debug("Greeting from %s: %s", socket_path, greeting)
        if status == "initializing":
            transport.close()
            raise ServerInitializing()
        if status != "ready":
            transport.close()
            raise ServerNotUp(f"unexpected greeting status {status!r}")
        return transport

    def send(self, message: Dict[str, Any]) -> None:
        """
        Raises:
            EndOfStream: Peer already closed the channel
        """
        try:
            self.sock.sendall(encode_frame(message))
        except (BrokenPipeError, ConnectionResetError) as e:
            raise EndOfStream() from e

    def read_message(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Read exactly one frame.

        Args:
            timeout: Seconds to wait for a complete frame; None blocks

        Raises:
            ServerBusy: No complete frame within ``timeout``
            EndOfStream: Peer closed the channel
        """
        while b"\n" not in self._buffer:
            if timeout is not None:
                ready, _, _ = select.select([self.sock], [], [], timeout)
                if not ready:
                    raise ServerBusy()
            try:
                chunk = self.sock.recv(_RECV_SIZE)
            except ConnectionResetError as e:
                raise EndOfStream() from e
            if not chunk:
                raise EndOfStream()
            self._buffer += chunk

        line, self._buffer = self._buffer.split(b"\n", 1)
        return decode_frame(line)

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
