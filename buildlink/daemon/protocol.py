"""JSON-lines protocol between the build client and the server.

Every frame is one UTF-8 JSON object terminated by a newline.

Connection greeting (server -> client, sent on accept):
    {"type": "hello", "status": "ready" | "initializing", "version": str}

Command format (client -> server):
    {
        "command": "build" | "health" | "shutdown",
        "version": str,         # Client protocol version
        "options": {            # Command-specific options
            "wait": bool,
            "incremental": bool,
        }
    }

Reply format (server -> client, exactly one per command):
    {
        "status": "ok" | "stale_version" | "error",
        "result": Any,
        "error": str | None,
    }

Build progress (server -> client, only after an "ok" build reply):
    {"type": "progress" | "error" | "finished", "text": str}
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from buildlink import __version__
from buildlink.core.errors import ProtocolError

PROTOCOL_VERSION = __version__


@dataclass(frozen=True)
class BuildOptions:
    wait: bool = False
    incremental: bool = False


# Replies to a command

@dataclass(frozen=True)
class StaleVersion:
    pass


@dataclass(frozen=True)
class Acknowledged:
    result: Any = None


@dataclass(frozen=True)
class Other:
    descriptor: str


ServerReply = Union[StaleVersion, Acknowledged, Other]


# Build stream records

@dataclass(frozen=True)
class Progress:
    text: str


@dataclass(frozen=True)
class Failure:
    text: str


@dataclass(frozen=True)
class Completed:
    pass


ProgressRecord = Union[Progress, Failure, Completed]


def encode_frame(message: Dict[str, Any]) -> bytes:
    """Encode one message as a newline-terminated JSON line."""
    return json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"


def decode_frame(line: bytes) -> Dict[str, Any]:
    """
    Decode one JSON line.

    Raises:
        ProtocolError: If the line is not a JSON object
    """
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Malformed frame: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(message).__name__}")
    return message


def serialize_command(
    command: str,
    options: Optional[Dict[str, Any]] = None,
    version: str = PROTOCOL_VERSION,
) -> Dict[str, Any]:
    return {
        "command": command,
        "version": version,
        "options": options or {},
    }


def serialize_build_command(options: BuildOptions, version: str = PROTOCOL_VERSION) -> Dict[str, Any]:
    return serialize_command(
        "build",
        options={"wait": options.wait, "incremental": options.incremental},
        version=version,
    )


def serialize_response(
    status: str,
    result: Any = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "status": status,
        "result": result,
        "error": error,
    }


def deserialize_reply(message: Dict[str, Any]) -> ServerReply:
    """
    Map a reply frame onto a ServerReply.

    Anything other than "ok" or "stale_version" becomes Other, with a
    descriptor naming the status and any error text.
    """
    status = message.get("status")
    if status == "ok":
        return Acknowledged(result=message.get("result"))
    if status == "stale_version":
        return StaleVersion()

    descriptor = str(status)
    if message.get("error"):
        descriptor = f"{descriptor}: {message['error']}"
    return Other(descriptor=descriptor)


def serialize_progress(record: ProgressRecord) -> Dict[str, Any]:
    if isinstance(record, Progress):
        return {"type": "progress", "text": record.text}
    if isinstance(record, Failure):
        return {"type": "error", "text": record.text}
    return {"type": "finished", "text": ""}


def deserialize_progress(message: Dict[str, Any]) -> ProgressRecord:
    """
    Map a stream frame onto a ProgressRecord.

    Raises:
        ProtocolError: If the record type is unknown
    """
    kind = message.get("type")
    text = str(message.get("text", ""))
    if kind == "progress":
        return Progress(text)
    if kind == "error":
        return Failure(text)
    if kind == "finished":
        return Completed()
    raise ProtocolError(f"Unknown build record type: {kind!r}")


def hello(status: str, version: str = PROTOCOL_VERSION) -> Dict[str, Any]:
    return {"type": "hello", "status": status, "version": version}
