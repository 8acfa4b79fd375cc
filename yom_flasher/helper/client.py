"""Controller-side bridge to the privileged helper.

This module handles:
- Connecting to the helper's Unix socket
- Sending requests with a unique requestId and awaiting the matching response
- Per-request timeouts that abandon waiting (the helper's work is not cancelled)
- Failing every pending request when the connection drops
- Reconnecting at a fixed interval while run() is active
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any

from yom_flasher.config import Settings
from yom_flasher.errors import (
    HELPER_ERROR,
    IPC_CONNECTION_LOST,
    IPC_TIMEOUT,
    FlasherError,
)
from yom_flasher.flash.device import DeviceDescriptor
from yom_flasher.helper.protocol import (
    LIST_DEVICES,
    MAX_LINE_BYTES,
    IPCMessage,
    ProtocolError,
    decode_message,
    encode_message,
    response_command,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_RECONNECT_INTERVAL = 3.0


class IPCTimeoutError(FlasherError):
    """No response arrived within the request timeout."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(
            f"Request to helper service timed out for {command} after {timeout:g}s.",
            error_code=IPC_TIMEOUT,
        )
        self.command = command
        self.timeout = timeout


class IPCConnectionLostError(FlasherError):
    """The helper connection is down or dropped while a request was pending."""

    def __init__(self, reason: str = "Not connected to root helper service.") -> None:
        super().__init__(reason, error_code=IPC_CONNECTION_LOST)


class HelperError(FlasherError):
    """The helper answered with an error."""

    def __init__(self, command: str, error: str) -> None:
        super().__init__(
            f"Helper returned error for {command}: {error}", error_code=HELPER_ERROR
        )
        self.command = command


class _Pending:
    __slots__ = ("expected", "future")

    def __init__(self, expected: str, future: asyncio.Future[IPCMessage]) -> None:
        self.expected = expected
        self.future = future


class HelperBridge:
    """Client for the helper socket.

    Args:
        socket_path: Helper socket path.
        timeout: Default per-request timeout in seconds.
        reconnect_interval: Seconds between reconnection attempts in run().
    """

    def __init__(
        self,
        socket_path: Path | str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self.reconnect_interval = reconnect_interval
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        # Insertion order doubles as request age
        self._pending: dict[str, _Pending] = {}
        self._closing = False
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: Settings) -> HelperBridge:
        return cls(
            settings.helper_socket_path,
            timeout=settings.ipc_timeout,
            reconnect_interval=settings.reconnect_interval,
        )

    @property
    def connected(self) -> bool:
        return self._read_task is not None and not self._read_task.done()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self) -> None:
        """Open the connection and start routing responses.

        Raises:
            OSError: The socket is missing or refuses connections.
        """
        if self.connected:
            return
        reader, writer = await asyncio.open_unix_connection(
            str(self.socket_path), limit=MAX_LINE_BYTES
        )
        self._writer = writer
        self._read_task = asyncio.create_task(self._read_loop(reader))
        logger.info("Connected to helper at %s", self.socket_path)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        reason = "Connection to root helper service closed."
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                if line.strip():
                    self._route(line)
        except (ConnectionError, ValueError) as e:
            reason = f"Connection error during request: {e}"
        finally:
            self._fail_pending(reason)
            if self._writer is not None:
                self._writer.close()
                self._writer = None
            if not self._closing:
                logger.warning("Disconnected from helper: %s", reason)

    def _route(self, line: bytes) -> None:
        try:
            message = decode_message(line)
        except ProtocolError as e:
            logger.warning("Ignoring undecodable helper message: %s", e.message)
            return

        pending = None
        if message.request_id is not None:
            pending = self._pending.pop(message.request_id, None)
        if pending is None:
            pending = self._pop_oldest(message.command)
        if pending is None:
            logger.warning("Received unrelated message: %s", message.command)
            return
        if not pending.future.done():
            pending.future.set_result(message)

    def _pop_oldest(self, command: str) -> _Pending | None:
        for request_id, pending in self._pending.items():
            if pending.expected == command:
                return self._pending.pop(request_id)
        return None

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(IPCConnectionLostError(reason))

    async def request(
        self,
        command: str,
        data: Any = None,
        *,
        timeout: float | None = None,
    ) -> IPCMessage:
        """Send a request and wait for its response.

        Returns:
            The response message (which may carry an 'error').

        Raises:
            IPCConnectionLostError: Not connected, or the connection dropped.
            IPCTimeoutError: No response within the timeout.
        """
        if not self.connected or self._writer is None:
            raise IPCConnectionLostError()

        timeout = timeout if timeout is not None else self.timeout
        request_id = uuid.uuid4().hex
        future: asyncio.Future[IPCMessage] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _Pending(response_command(command), future)

        message = IPCMessage(command=command, request_id=request_id, data=data)
        try:
            self._writer.write(encode_message(message))
            await self._writer.drain()
        except ConnectionError as e:
            self._pending.pop(request_id, None)
            raise IPCConnectionLostError(f"Could not send {command}: {e}") from e

        logger.debug("Sent %s (requestId=%s)", command, request_id)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Request %s timed out after %ss", command, timeout)
            raise IPCTimeoutError(command, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    async def list_devices(self, *, timeout: float | None = None) -> list[DeviceDescriptor]:
        """Ask the helper for the disk-level block devices.

        Raises:
            HelperError: The helper reported an error.
        """
        response = await self.request(LIST_DEVICES, timeout=timeout)
        if response.error:
            raise HelperError(LIST_DEVICES, response.error)
        return [DeviceDescriptor.from_dict(item) for item in response.data or []]

    async def run(self) -> None:
        """Keep the connection up until close(), retrying indefinitely."""
        self._closing = False
        self._stop.clear()
        while not self._closing:
            try:
                await self.connect()
            except OSError as e:
                logger.warning(
                    "Could not connect to helper at %s: %s. Retrying in %ss",
                    self.socket_path,
                    e,
                    self.reconnect_interval,
                )
            else:
                if self._read_task is not None:
                    await asyncio.wait({self._read_task})
            if self._closing:
                break
            try:
                await asyncio.wait_for(self._stop.wait(), self.reconnect_interval)
            except asyncio.TimeoutError:
                pass

    async def close(self) -> None:
        """Stop run(), drop the connection and fail pending requests."""
        self._closing = True
        self._stop.set()
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            await asyncio.wait({self._read_task})
        self._read_task = None
        self._fail_pending("Bridge closed.")

    async def __aenter__(self) -> HelperBridge:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


__all__ = [
    "DEFAULT_RECONNECT_INTERVAL",
    "DEFAULT_TIMEOUT",
    "HelperBridge",
    "HelperError",
    "IPCConnectionLostError",
    "IPCTimeoutError",
]
