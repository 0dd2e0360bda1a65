"""Lightweight helpers for locating, launching and querying the server.

Every project root gets its own server, socket, PID file and log file under
the runtime directory. Keep imports minimal: this module runs on every CLI
invocation.

Usage:
    if not server_exists(root):
        start_server(root)
    client = DaemonClient(root)
    stats = client.health()
"""

import hashlib
import logging
import os
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from buildlink.core.errors import EndOfStream, ServerInitializing, ServerNotUp
from buildlink.daemon.protocol import serialize_command
from buildlink.daemon.transport import Transport

logger = logging.getLogger(__name__)


def get_runtime_dir() -> Path:
    """Directory holding sockets, PID files and logs ($BUILDLINK_RUNTIME_DIR overrides)."""
    override = os.environ.get("BUILDLINK_RUNTIME_DIR", "").strip()
    if override:
        return Path(override)
    return Path(tempfile.gettempdir()) / f"buildlink-{os.getuid()}"


def _root_key(root: Path) -> str:
    # Unix socket paths are limited to ~108 bytes, so key by digest.
    resolved = str(Path(root).resolve())
    digest = hashlib.sha1(resolved.encode("utf-8")).hexdigest()[:12]
    name = (Path(resolved).name or "root")[:32]
    return f"{name}-{digest}"


def get_socket_path(root: Path) -> Path:
    return get_runtime_dir() / f"{_root_key(root)}.sock"


def get_pid_path(root: Path) -> Path:
    return get_runtime_dir() / f"{_root_key(root)}.pid"


def get_log_path(root: Path) -> Path:
    return get_runtime_dir() / f"{_root_key(root)}.log"


def server_exists(root: Path) -> bool:
    """
    Check whether a server process for ``root`` is alive.

    A PID file pointing at a dead process is stale: it is removed together
    with the socket so the next launch starts clean.
    """
    pid_path = get_pid_path(root)
    if not pid_path.exists():
        return False

    try:
        pid = int(pid_path.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, ProcessLookupError):
        logger.debug("Removing stale PID file %s", pid_path)
        pid_path.unlink(missing_ok=True)
        get_socket_path(root).unlink(missing_ok=True)
        return False
    except PermissionError:
        # Process exists but belongs to someone else.
        return True
    return True


def start_server(root: Path) -> None:
    """
    Launch a detached server for ``root``.

    Does not wait for readiness; the caller discovers that by connecting.
    """
    logger.info("Starting server for %s", root)
    subprocess.Popen(
        [
            sys.executable,
            "-m",
            "buildlink.daemon.server",
            "--root",
            str(Path(root).resolve()),
            "--daemonize",
        ],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


class DaemonClient:
    """One-shot requests (health, shutdown) against a running server."""

    def __init__(self, root: Path, timeout: float = 5.0):
        self.root = Path(root)
        self.socket_path = get_socket_path(self.root)
        self.timeout = timeout

    def health(self) -> Optional[Dict[str, Any]]:
        """
        Get server stats.

        Returns the stats dict, ``{"initializing": True}`` while the server
        is still starting, or None if no server is reachable.
        """
        try:
            response = self._send_request("health")
        except ServerInitializing:
            return {"initializing": True}
        except (ServerNotUp, EndOfStream, OSError):
            return None
        if response.get("status") == "ok":
            return response.get("result")
        return None

    def shutdown(self) -> bool:
        """Request server shutdown. Returns True if acknowledged."""
        try:
            response = self._send_request("shutdown")
        except (ServerNotUp, ServerInitializing, EndOfStream, OSError):
            return False
        return response.get("status") == "ok"

    def _send_request(self, command: str) -> Dict[str, Any]:
        with Transport.open(self.socket_path) as transport:
            transport.send(serialize_command(command))
            transport.sock.settimeout(self.timeout)
            return transport.read_message()
