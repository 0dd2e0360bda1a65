"""Error taxonomy for the build client.

Transport conditions (ServerNotUp, ServerInitializing, ServerBusy,
EndOfStream) are raised by the transport and handled by the layer that
detects them. BuildAborted is fatal: it carries the exit code up to the
orchestrator, which is the only place an outcome is produced.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Outcome:
    """Final state of one build invocation."""
    exit_code: int
    terminated_cleanly: bool


class TransportError(Exception):
    """Base class for conditions raised while talking to the server."""


class ServerNotUp(TransportError):
    """No server process is accepting connections on the socket."""


class ServerInitializing(TransportError):
    """The server accepted the connection but is not ready yet."""


class ServerBusy(TransportError):
    """No complete reply arrived within one heartbeat interval."""


class EndOfStream(TransportError):
    """The server closed the channel."""


class ProtocolError(Exception):
    """A frame could not be decoded into a known message shape."""


class BuildAborted(Exception):
    """Fatal condition; the invocation ends with ``outcome.exit_code``."""

    def __init__(self, exit_code: int, message: str = ""):
        super().__init__(message or f"build aborted with exit code {exit_code}")
        self.outcome = Outcome(exit_code=exit_code, terminated_cleanly=False)
