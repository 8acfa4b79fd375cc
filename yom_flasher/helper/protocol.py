"""Wire protocol between the controller and the privileged helper.

Messages are single-line JSON objects terminated by a newline and carried
over a Unix domain socket:

    {"command": "list-devices", "requestId": "3f2a..."}
    {"command": "list-devices-response", "requestId": "3f2a...", "data": [...]}

A response's command is the request's command with a '-response' suffix,
and it carries either 'data' or 'error'. 'requestId' is echoed back so the
controller can match responses to concurrent requests.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from yom_flasher.errors import HELPER_ERROR, FlasherError

LIST_DEVICES = "list-devices"
UNKNOWN_COMMAND_RESPONSE = "unknown-command-response"
ERROR_RESPONSE = "error-response"

RESPONSE_SUFFIX = "-response"

# Upper bound for one message line (a device list is a few KiB)
MAX_LINE_BYTES = 1024 * 1024


class ProtocolError(FlasherError):
    """A line could not be decoded as an IPC message."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Invalid message format: {message}", error_code=HELPER_ERROR)


class IPCMessage(BaseModel):
    """One newline-delimited JSON message on the helper channel."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    command: str = Field(min_length=1, description="Command or response tag")
    request_id: str | None = Field(
        default=None, alias="requestId", description="Correlates a response"
    )
    data: Any = Field(default=None, description="Request arguments or response payload")
    error: str | None = Field(default=None, description="Error text on failure")

    @property
    def is_response(self) -> bool:
        return self.command.endswith(RESPONSE_SUFFIX)

    def reply(self, *, data: Any = None, error: str | None = None) -> IPCMessage:
        """Build the response to this request, echoing its requestId."""
        return IPCMessage(
            command=response_command(self.command),
            request_id=self.request_id,
            data=data,
            error=error,
        )


def response_command(command: str) -> str:
    """Response tag for a request command ('list-devices' -> 'list-devices-response')."""
    return f"{command}{RESPONSE_SUFFIX}"


def encode_message(message: IPCMessage) -> bytes:
    """Serialize a message to one newline-terminated line."""
    return message.model_dump_json(by_alias=True, exclude_none=True).encode() + b"\n"


def decode_message(line: bytes | str) -> IPCMessage:
    """Parse one line into a message.

    Raises:
        ProtocolError: The line is not JSON or lacks a command.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"not JSON ({e.msg})") from e
    if not isinstance(payload, dict):
        raise ProtocolError("expected a JSON object")
    try:
        return IPCMessage.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"{e.error_count()} validation error(s)") from e


__all__ = [
    "ERROR_RESPONSE",
    "LIST_DEVICES",
    "MAX_LINE_BYTES",
    "UNKNOWN_COMMAND_RESPONSE",
    "IPCMessage",
    "ProtocolError",
    "decode_message",
    "encode_message",
    "response_command",
]
