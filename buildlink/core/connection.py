"""Connection establishment with retry and backoff.

The server may be absent (ServerNotUp) or still loading its state
(ServerInitializing). Both are retried once per ``retry_delay`` until the
budget runs out; with ``--wait`` the budget only feeds the elapsed-time
message and never ends the loop.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from buildlink.core.configs import ClientSettings
from buildlink.core.errors import BuildAborted, ServerInitializing, ServerNotUp
from buildlink.daemon.client import get_socket_path
from buildlink.daemon.protocol import BuildOptions
from buildlink.daemon.transport import Transport
from buildlink.ui.output import StatusLine, print_line

logger = logging.getLogger(__name__)

INITIALIZING_EXPLANATION = (
    "Your server is still initializing. This is an IO-bound\n"
    "operation and may take a while if your disk cache is cold.\n"
    "Trying the build again may work; the server may be caught up now."
)


@dataclass(frozen=True)
class BuildEnv:
    """Immutable per-invocation configuration."""
    root: Path
    options: BuildOptions = field(default_factory=BuildOptions)


def should_retry(env: BuildEnv, retries: int) -> bool:
    return env.options.wait or retries > 0


class ConnectionManager:
    """Opens a fresh Transport, retrying transient failures."""

    def __init__(
        self,
        env: BuildEnv,
        settings: ClientSettings,
        status: StatusLine,
        opener: Callable[[Path], Transport] = Transport.open,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.env = env
        self.settings = settings
        self.status = status
        self.opener = opener
        self.sleep = sleep

    def connect(self, retries: int) -> Transport:
        """
        Open a transport to the server for ``env.root``.

        Raises:
            BuildAborted: Budget exhausted (exit code 2)
        """
        socket_path = get_socket_path(self.env.root)

        while True:
            try:
                transport = self.opener(socket_path)
            except ServerNotUp as e:
                logger.debug("Connect attempt failed (%s retries left): %s", retries, e)
                self.status.clear()
                print_line("Can't connect to server yet, retrying.", file=self.status.stream)
                if not should_retry(self.env, retries):
                    raise BuildAborted(2, "server unreachable") from e
            except ServerInitializing as e:
                self.status.show(f"Server still initializing. ({self._wait_message(retries)})")
                if not should_retry(self.env, retries):
                    self.status.clear()
                    print_line(
                        f"Waited >{self.settings.retries}s for server initialization.\n"
                        f"{INITIALIZING_EXPLANATION}",
                        file=self.status.stream,
                    )
                    raise BuildAborted(2, "server still initializing") from e
            else:
                self.status.clear()
                return transport

            self.sleep(self.settings.retry_delay)
            retries -= 1

    def _wait_message(self, retries: int) -> str:
        if self.env.options.wait:
            waited = self.settings.retries - retries
            return f"will wait forever due to --wait option, have waited {waited} seconds"
        return f"will wait {retries} more seconds"
