"""Privileged helper daemon.

The helper runs as root and answers device queries for an unprivileged
controller over a Unix domain socket. It locates its system tools once at
start and serves newline-delimited JSON requests (see protocol.py).

This module handles:
- Refusing to start when another helper already answers on the socket
- Removing a stale socket file left by a crashed helper
- Per-client request handling, with responses echoing the requestId
- Removing the socket file on shutdown
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path

from yom_flasher.config import Settings, get_settings
from yom_flasher.errors import HELPER_ALREADY_RUNNING, FlasherError
from yom_flasher.flash.device import list_devices
from yom_flasher.helper.protocol import (
    ERROR_RESPONSE,
    LIST_DEVICES,
    MAX_LINE_BYTES,
    UNKNOWN_COMMAND_RESPONSE,
    IPCMessage,
    ProtocolError,
    decode_message,
    encode_message,
)
from yom_flasher.system.context import FlasherContext, create_context

logger = logging.getLogger(__name__)

Handler = Callable[[IPCMessage], Awaitable[IPCMessage]]


class HelperAlreadyRunningError(FlasherError):
    """Another helper is already listening on the socket path."""

    def __init__(self, socket_path: Path) -> None:
        super().__init__(
            f"A helper is already running on {socket_path}",
            error_code=HELPER_ALREADY_RUNNING,
        )
        self.socket_path = socket_path


async def socket_is_live(socket_path: Path) -> bool:
    """Check whether something accepts connections on a Unix socket path."""
    try:
        _, writer = await asyncio.open_unix_connection(str(socket_path))
    except OSError:
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class HelperServer:
    """Unix socket server answering helper requests.

    Args:
        context: Runtime context (commands located once, at start).
        socket_path: Socket path (defaults to settings).
        socket_mode: Permission bits for the socket file (defaults to settings).
    """

    def __init__(
        self,
        context: FlasherContext,
        socket_path: Path | None = None,
        socket_mode: int | None = None,
    ) -> None:
        self.context = context
        self.socket_path = Path(socket_path or context.settings.helper_socket_path)
        self.socket_mode = (
            socket_mode if socket_mode is not None else context.settings.helper_socket_mode
        )
        self._server: asyncio.AbstractServer | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self._handlers: dict[str, Handler] = {LIST_DEVICES: self._list_devices}

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def _prepare_socket_path(self) -> None:
        if not self.socket_path.exists():
            return
        if await socket_is_live(self.socket_path):
            raise HelperAlreadyRunningError(self.socket_path)
        logger.info("Removing stale socket %s", self.socket_path)
        self.socket_path.unlink()

    async def start(self) -> None:
        """Bind the socket and start accepting clients.

        Raises:
            HelperAlreadyRunningError: A live helper owns the socket path.
        """
        await self._prepare_socket_path()
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=str(self.socket_path), limit=MAX_LINE_BYTES
        )
        os.chmod(self.socket_path, self.socket_mode)
        logger.info(
            "Helper listening on %s (mode %o, pid %d)",
            self.socket_path,
            self.socket_mode,
            os.getpid(),
        )

    async def close(self) -> None:
        """Stop accepting clients and remove the socket file."""
        if self._server is not None:
            self._server.close()
            for writer in list(self._clients):
                writer.close()
            await self._server.wait_closed()
            self._server = None
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass
        logger.info("Helper stopped")

    async def __aenter__(self) -> HelperServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def handle_line(self, line: bytes) -> IPCMessage:
        """Decode one request line and produce its response."""
        try:
            message = decode_message(line)
        except ProtocolError as e:
            logger.warning("Rejecting message: %s", e.message)
            return IPCMessage(command=ERROR_RESPONSE, error=e.message)
        return await self.dispatch(message)

    async def dispatch(self, message: IPCMessage) -> IPCMessage:
        """Route a decoded request to its handler."""
        handler = self._handlers.get(message.command)
        if handler is None:
            logger.warning("Unknown command: %s", message.command)
            return IPCMessage(
                command=UNKNOWN_COMMAND_RESPONSE,
                request_id=message.request_id,
                error=f"Unknown command: {message.command}",
            )
        try:
            return await handler(message)
        except FlasherError as e:
            logger.error("%s failed: %s", message.command, e.message)
            return message.reply(error=e.message)

    async def _list_devices(self, message: IPCMessage) -> IPCMessage:
        devices = await list_devices(self.context.executor)
        return message.reply(data=[device.to_dict() for device in devices])

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        logger.info("Client connected")
        self._clients.add(writer)
        write_lock = asyncio.Lock()
        tasks: set[asyncio.Task[None]] = set()

        async def respond(line: bytes) -> None:
            response = await self.handle_line(line)
            async with write_lock:
                try:
                    writer.write(encode_message(response))
                    await writer.drain()
                except ConnectionError as e:
                    logger.warning("Could not send %s: %s", response.command, e)

        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Line longer than the stream limit
                    logger.warning("Dropping client after oversized message")
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                task = asyncio.create_task(respond(line))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except ConnectionError as e:
            logger.warning("Client connection error: %s", e)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
            logger.info("Client disconnected")


async def serve(settings: Settings | None = None) -> None:
    """Run the helper until SIGINT or SIGTERM.

    Raises:
        HelperAlreadyRunningError: Another helper owns the socket path.
    """
    if settings is None:
        settings = get_settings()
    context = create_context(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    try:
        async with HelperServer(context):
            await stop.wait()
            logger.info("Received shutdown signal")
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


__all__ = [
    "HelperAlreadyRunningError",
    "HelperServer",
    "serve",
    "socket_is_live",
]
