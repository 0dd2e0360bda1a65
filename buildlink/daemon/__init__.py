"""Server side of buildlink and the client plumbing to reach it.

Architecture:
- BuildServer: Async Unix socket server, one per project root
- Transport: Socket channel carrying JSON-line frames
- DaemonClient: One-shot health/shutdown requests

The server module is not imported here; it is only loaded by the process
that runs it.
"""

from buildlink.daemon.client import (
    DaemonClient,
    get_socket_path,
    server_exists,
    start_server,
)
from buildlink.daemon.transport import Transport

__all__ = [
    "DaemonClient",
    "Transport",
    "get_socket_path",
    "server_exists",
    "start_server",
]
