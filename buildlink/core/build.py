"""Build orchestration: launch, connect, handshake, stream.

    server_exists? -> start_server -> connect -> send build -> await reply
        stale_version -> sleep, spend one retry, start over
        ok            -> consume the build stream
        anything else -> report and fail

All fatal conditions surface as BuildAborted and are turned into an Outcome
here, so the CLI has a single place that sets the process exit code.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from buildlink.core.configs import ClientSettings
from buildlink.core.connection import BuildEnv, ConnectionManager, should_retry
from buildlink.core.errors import BuildAborted, EndOfStream, Outcome, ProtocolError
from buildlink.core.responses import DISCONNECTED_MESSAGE, BuildStreamReader, ResponseWaiter
from buildlink.daemon import client as daemon_client
from buildlink.daemon.protocol import (
    Acknowledged,
    StaleVersion,
    serialize_build_command,
)
from buildlink.daemon.transport import Transport
from buildlink.ui.output import StatusLine, print_error, print_line

logger = logging.getLogger(__name__)
# Telemetry events go to their own log file, whatever the console verbosity.
events_logger = logging.getLogger("buildlink.events")


def log_begin_work(env: BuildEnv) -> None:
    """Telemetry event emitted once the server has accepted the build."""
    events_logger.info(
        "begin_work command=build root=%s incremental=%s",
        env.root,
        env.options.incremental,
    )


class BuildOrchestrator:
    """Runs one build invocation end to end."""

    def __init__(
        self,
        env: BuildEnv,
        settings: ClientSettings,
        server_exists: Callable[[Path], bool] = daemon_client.server_exists,
        start_server: Callable[[Path], None] = daemon_client.start_server,
        opener: Callable[[Path], Transport] = Transport.open,
        sleep: Callable[[float], None] = time.sleep,
        status: Optional[StatusLine] = None,
    ):
        self.env = env
        self.settings = settings
        self.server_exists = server_exists
        self.start_server = start_server
        self.opener = opener
        self.sleep = sleep
        self.status = status or StatusLine()

    def run(self) -> Outcome:
        try:
            return self._run(self.settings.retries)
        except BuildAborted as e:
            logger.debug("Build aborted: %s", e)
            return e.outcome
        except ProtocolError as e:
            self.status.clear()
            print_error(f"Malformed message from server: {e}")
            return Outcome(exit_code=1, terminated_cleanly=False)

    def _run(self, retries: int) -> Outcome:
        connections = ConnectionManager(
            self.env, self.settings, self.status, opener=self.opener, sleep=self.sleep
        )
        waiter = ResponseWaiter(self.status, interval=self.settings.heartbeat_interval)

        while True:
            if not self.server_exists(self.env.root):
                self.start_server(self.env.root)

            transport = connections.connect(retries)
            with transport:
                try:
                    transport.send(serialize_build_command(self.env.options))
                except EndOfStream as e:
                    print_error(DISCONNECTED_MESSAGE)
                    raise BuildAborted(1, "server disconnected") from e
                reply = waiter.await_reply(transport)

                if isinstance(reply, StaleVersion):
                    print_line("Server is an old version, trying again.", file=self.status.stream)
                elif isinstance(reply, Acknowledged):
                    log_begin_work(self.env)
                    return BuildStreamReader(out=self.status.stream).consume(transport)
                else:
                    print_error(f"Unexpected server response {reply.descriptor}.")
                    return Outcome(exit_code=1, terminated_cleanly=False)

            # Stale version: the connection and version retries share one budget.
            if not should_retry(self.env, retries):
                raise BuildAborted(2, "server version still stale")
            self.sleep(self.settings.stale_retry_delay)
            retries -= 1
