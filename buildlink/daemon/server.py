"""Async Unix socket server for one project root.

This module implements the long-running process that:
1. Indexes the project root once at startup (connections are told to wait)
2. Runs the project's configured build command on request
3. Streams the command's output back as progress/error records

Usage:
    python -m buildlink.daemon.server --root PATH [--idle-timeout SECONDS] [--daemonize]

    Or use the CLI:
    buildlink server PATH
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from buildlink.core.configs import ServerSettings, get_server_settings, load_raw_config
from buildlink.core.errors import ProtocolError
from buildlink.daemon.client import get_log_path, get_pid_path, get_socket_path
from buildlink.daemon.protocol import (
    PROTOCOL_VERSION,
    Completed,
    Failure,
    Progress,
    ProgressRecord,
    decode_frame,
    encode_frame,
    hello,
    serialize_progress,
    serialize_response,
)

logger = logging.getLogger(__name__)

_IGNORED_DIRS = {".git", ".hg", "node_modules", "__pycache__", ".venv"}
_READ_SIZE = 65536
# Longer lines are split into several records.
MAX_LINE_LENGTH = 65536


def index_root(root: Path) -> List[Path]:
    """Walk the project root and collect its files."""
    files: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in _IGNORED_DIRS]
        files.extend(Path(dirpath) / name for name in filenames)
    return files


async def _read_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield decoded lines from ``stream`` in chunks, without a line length limit."""
    buffer = b""
    while True:
        chunk = await stream.read(_READ_SIZE)
        if not chunk:
            break
        buffer += chunk
        while b"\n" in buffer:
            line, buffer = buffer.split(b"\n", 1)
            while len(line) > MAX_LINE_LENGTH:
                yield line[:MAX_LINE_LENGTH].decode("utf-8", errors="replace")
                line = line[MAX_LINE_LENGTH:]
            yield line.decode("utf-8", errors="replace")
        while len(buffer) > MAX_LINE_LENGTH:
            yield buffer[:MAX_LINE_LENGTH].decode("utf-8", errors="replace")
            buffer = buffer[MAX_LINE_LENGTH:]
    if buffer:
        yield buffer.decode("utf-8", errors="replace")


class BuildServer:
    """
    Async Unix socket server for a single root.

    Handles client connections concurrently using asyncio, but runs at most
    one build at a time.
    """

    def __init__(
        self,
        root: Path,
        settings: Optional[ServerSettings] = None,
        socket_path: Optional[Path] = None,
        pid_path: Optional[Path] = None,
    ):
        self.root = Path(root).resolve()
        self.settings = settings or ServerSettings()
        self.socket_path = socket_path or get_socket_path(self.root)
        self.pid_path = pid_path or get_pid_path(self.root)

        self.start_time: float = time.time()
        self.last_request_time: float = time.time()
        self.initialized = False
        self.indexed_files = 0
        self.builds_run = 0

        self.server: Optional[asyncio.Server] = None
        self._build_lock = asyncio.Lock()
        self._shutdown_event: asyncio.Event = asyncio.Event()

    async def start(self) -> None:
        """Start serving, then initialize, then wait for shutdown."""
        logger.info("Starting build server for %s", self.root)

        if self.socket_path.exists():
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self.pid_path.write_text(str(os.getpid()))

        # Listen before initializing so clients can tell "initializing"
        # apart from "not running".
        self.server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )
        os.chmod(self.socket_path, 0o600)
        logger.info("Listening on %s", self.socket_path)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        await self._initialize()

        if self.settings.idle_timeout > 0:
            asyncio.create_task(self._idle_watcher())

        async with self.server:
            await self._shutdown_event.wait()

        await self._cleanup()

    async def _initialize(self) -> None:
        started = time.time()
        files = await asyncio.to_thread(index_root, self.root)
        self.indexed_files = len(files)
        self.initialized = True
        logger.info(
            "Indexed %d files in %.2fs", self.indexed_files, time.time() - started
        )

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single client connection."""
        try:
            if not self.initialized:
                await self._write(writer, hello("initializing"))
                return
            await self._write(writer, hello("ready"))

            line = await asyncio.wait_for(reader.readline(), timeout=30.0)
            if not line:
                return
            self.last_request_time = time.time()

            try:
                request = decode_frame(line)
            except ProtocolError as e:
                await self._write(writer, serialize_response("error", error=str(e)))
                return

            command = request.get("command", "")
            if command == "build":
                await self._handle_build(request, writer)
            elif command == "health":
                await self._write(writer, serialize_response("ok", result=self.get_stats()))
            elif command == "shutdown":
                logger.info("Shutdown requested via socket")
                await self._write(writer, serialize_response("ok", result={"message": "Shutting down"}))
                self._shutdown_event.set()
            else:
                await self._write(
                    writer,
                    serialize_response("error", error=f"Unknown command: {command}"),
                )

        except asyncio.TimeoutError:
            logger.warning("Client connection timed out")
        except (ConnectionResetError, BrokenPipeError):
            logger.warning("Client went away mid-request")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    async def _handle_build(
        self,
        request: Dict[str, Any],
        writer: asyncio.StreamWriter,
    ) -> None:
        if request.get("version") != PROTOCOL_VERSION:
            # A newer client is installed; let it relaunch a matching server.
            logger.info(
                "Client version %s != server version %s, shutting down",
                request.get("version"),
                PROTOCOL_VERSION,
            )
            await self._write(writer, serialize_response("stale_version"))
            self._shutdown_event.set()
            return

        await self._write(writer, serialize_response("ok"))

        options = request.get("options", {})
        async with self._build_lock:
            self.builds_run += 1
            logger.info("Build #%d (incremental=%s)", self.builds_run, options.get("incremental", False))
            await self._run_build(writer)
            self.last_request_time = time.time()

    async def _run_build(self, writer: asyncio.StreamWriter) -> None:
        command = self.settings.build_command
        if not command:
            await self._send_record(writer, Progress("No build_command configured; nothing to do."))
            await self._send_record(writer, Completed())
            return

        await self._send_record(writer, Progress(f"Running: {command}"))
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        # Records share one writer, so interleave the two pipes through a queue.
        queue: "asyncio.Queue[Optional[ProgressRecord]]" = asyncio.Queue()

        async def pump(stream: asyncio.StreamReader, kind: type) -> None:
            try:
                async for line in _read_lines(stream):
                    await queue.put(kind(line))
            finally:
                await queue.put(None)

        pumps = [
            asyncio.create_task(pump(process.stdout, Progress)),
            asyncio.create_task(pump(process.stderr, Failure)),
        ]
        open_pipes = len(pumps)
        while open_pipes:
            record = await queue.get()
            if record is None:
                open_pipes -= 1
                continue
            await self._send_record(writer, record)
        await asyncio.gather(*pumps)

        returncode = await process.wait()
        if returncode != 0:
            await self._send_record(writer, Failure(f"Build command exited with status {returncode}"))
        await self._send_record(writer, Completed())

    async def _send_record(self, writer: asyncio.StreamWriter, record: ProgressRecord) -> None:
        await self._write(writer, serialize_progress(record))

    async def _write(self, writer: asyncio.StreamWriter, message: Dict[str, Any]) -> None:
        writer.write(encode_frame(message))
        await writer.drain()

    def get_stats(self) -> Dict[str, Any]:
        """Server statistics for health check."""
        return {
            "root": str(self.root),
            "version": PROTOCOL_VERSION,
            "pid": os.getpid(),
            "uptime_seconds": round(time.time() - self.start_time, 1),
            "initialized": self.initialized,
            "indexed_files": self.indexed_files,
            "builds_run": self.builds_run,
        }

    async def _idle_watcher(self) -> None:
        """Shut down once idle for longer than the configured timeout."""
        while not self._shutdown_event.is_set():
            await asyncio.sleep(60)

            if self._build_lock.locked():
                continue
            idle_time = time.time() - self.last_request_time
            if idle_time > self.settings.idle_timeout:
                logger.info(
                    "Idle timeout reached (%.0fs > %.0fs), shutting down",
                    idle_time,
                    self.settings.idle_timeout,
                )
                self._shutdown_event.set()
                break

    def _signal_handler(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    async def _cleanup(self) -> None:
        logger.info("Cleaning up...")

        if self.server:
            self.server.close()
            await self.server.wait_closed()

        if self.socket_path.exists():
            self.socket_path.unlink()
        if self.pid_path.exists():
            self.pid_path.unlink()

        logger.info("Server stopped")


def _daemonize(log_path: Path) -> None:
    """Double-fork into the background with output appended to ``log_path``."""
    pid = os.fork()
    if pid > 0:
        os._exit(0)

    os.setsid()

    pid = os.fork()
    if pid > 0:
        os._exit(0)

    sys.stdin.close()

    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_file = open(log_path, "a")
    os.dup2(log_file.fileno(), sys.stdout.fileno())
    os.dup2(log_file.fileno(), sys.stderr.fileno())


def run_server(
    root: Path,
    idle_timeout: Optional[float] = None,
    daemonize: bool = False,
) -> None:
    """
    Run the build server for ``root``.

    Args:
        root: Project root to serve
        idle_timeout: Shutdown after this many seconds idle (0 = never);
            defaults to the configured value
        daemonize: Fork to background (Unix only)
    """
    root = Path(root).resolve()
    if daemonize:
        _daemonize(get_log_path(root))

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        settings = get_server_settings(load_raw_config(root=root))
    except ValueError as e:
        logger.error("Failed to load config: %s", e)
        sys.exit(1)
    if idle_timeout is not None:
        settings = ServerSettings(build_command=settings.build_command, idle_timeout=idle_timeout)

    server = BuildServer(root=root, settings=settings)
    asyncio.run(server.start())


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="buildlink build server")
    parser.add_argument(
        "--root",
        required=True,
        help="Project root to serve",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Shutdown after this many seconds idle (0 = never)",
    )
    parser.add_argument(
        "--daemonize",
        action="store_true",
        help="Fork to background",
    )

    args = parser.parse_args()

    run_server(
        root=Path(args.root),
        idle_timeout=args.idle_timeout,
        daemonize=args.daemonize,
    )
