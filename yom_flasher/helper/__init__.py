"""Privileged helper channel.

The helper daemon runs as root and answers device queries over a Unix
socket; the bridge is the unprivileged controller's client for it.
"""

from yom_flasher.helper.client import (
    HelperBridge,
    HelperError,
    IPCConnectionLostError,
    IPCTimeoutError,
)
from yom_flasher.helper.protocol import IPCMessage, decode_message, encode_message
from yom_flasher.helper.server import HelperAlreadyRunningError, HelperServer, serve

__all__ = [
    "HelperAlreadyRunningError",
    "HelperBridge",
    "HelperError",
    "HelperServer",
    "IPCConnectionLostError",
    "IPCMessage",
    "IPCTimeoutError",
    "decode_message",
    "encode_message",
    "serve",
]
