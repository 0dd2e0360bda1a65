"""Reading the server's reply and the build stream that follows it."""

import logging
import sys
from typing import Optional, TextIO

from buildlink.core.errors import BuildAborted, EndOfStream, Outcome, ServerBusy
from buildlink.daemon.protocol import (
    Completed,
    Failure,
    Progress,
    ServerReply,
    deserialize_progress,
    deserialize_reply,
)
from buildlink.daemon.transport import Transport
from buildlink.ui.output import StatusLine, print_error, print_line

logger = logging.getLogger(__name__)

DISCONNECTED_MESSAGE = "Server disconnected or crashed. Try `buildlink restart`"


class ResponseWaiter:
    """
    Blocks for the single reply to a command.

    The heartbeat interval bounds how long each read waits before a status
    tick, not how long the whole wait may last: once a command is sent the
    server is committed to it, so waiting is unbounded.
    """

    def __init__(self, status: StatusLine, interval: float = 1.0):
        self.status = status
        self.interval = interval

    def await_reply(self, transport: Transport) -> ServerReply:
        """
        Raises:
            BuildAborted: Channel closed before a reply (exit code 1)
        """
        while True:
            try:
                message = transport.read_message(timeout=self.interval)
            except ServerBusy:
                self.status.show("Awaiting response from server, server typechecking...")
                continue
            except EndOfStream as e:
                self.status.clear()
                print_error(DISCONNECTED_MESSAGE)
                raise BuildAborted(1, "server disconnected") from e

            self.status.clear()
            reply = deserialize_reply(message)
            logger.debug("Server reply: %s", reply)
            return reply


class BuildStreamReader:
    """Consumes progress records until the server closes the channel."""

    def __init__(self, out: Optional[TextIO] = None):
        self.out = out or sys.stdout

    def consume(self, transport: Transport) -> Outcome:
        """
        Print every record in arrival order.

        Returns:
            Outcome with exit code 0, or 2 if any failure record was seen

        Raises:
            BuildAborted: Stream ended without a completion marker (exit code 1)
        """
        finished = False
        exit_code = 0

        while True:
            try:
                record = deserialize_progress(transport.read_message())
            except EndOfStream:
                break

            if isinstance(record, Progress):
                print_line(record.text, file=self.out)
            elif isinstance(record, Failure):
                exit_code = 2
                print_line(record.text, file=self.out)
            elif isinstance(record, Completed):
                finished = True

        if not finished:
            print_error("Build unexpectedly terminated! You may need to do `buildlink restart`.")
            raise BuildAborted(1, "build stream ended without completion")

        return Outcome(exit_code=exit_code, terminated_cleanly=True)
