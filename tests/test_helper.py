"""Tests for the privileged helper: wire protocol, server and client bridge.

Socket tests run a real asyncio Unix socket server in a short temporary
directory (socket paths are limited to about 100 bytes).
"""

import asyncio
import json
import shutil
import socket
import stat
import tempfile
from pathlib import Path

import pytest
from conftest import FakeExecutor, make_context

from yom_flasher.errors import HELPER_ALREADY_RUNNING, HELPER_ERROR, IPC_TIMEOUT
from yom_flasher.helper.client import (
    HelperBridge,
    HelperError,
    IPCConnectionLostError,
    IPCTimeoutError,
)
from yom_flasher.helper.protocol import (
    ERROR_RESPONSE,
    LIST_DEVICES,
    UNKNOWN_COMMAND_RESPONSE,
    IPCMessage,
    ProtocolError,
    decode_message,
    encode_message,
    response_command,
)
from yom_flasher.helper.server import (
    HelperAlreadyRunningError,
    HelperServer,
    socket_is_live,
)


@pytest.fixture
def socket_path():
    directory = tempfile.mkdtemp(prefix="yf-")
    yield Path(directory) / "helper.sock"
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def helper_context(system_executor):
    return make_context(system_executor)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


class TestProtocol:
    """Tests for message encoding and decoding."""

    def test_encode_request(self):
        """Requests are one compact JSON line with camelCase keys."""
        line = encode_message(IPCMessage(command=LIST_DEVICES, request_id="abc"))
        assert line.endswith(b"\n")
        assert json.loads(line) == {"command": "list-devices", "requestId": "abc"}

    def test_decode_response(self):
        message = decode_message(
            b'{"command": "list-devices-response", "requestId": "abc", "data": []}\n'
        )
        assert message.command == "list-devices-response"
        assert message.request_id == "abc"
        assert message.data == []
        assert message.is_response

    def test_decode_ignores_unknown_keys(self):
        message = decode_message('{"command": "list-devices", "extra": 1}')
        assert message.command == LIST_DEVICES
        assert message.request_id is None

    @pytest.mark.parametrize(
        "line",
        [b"not json", b"[1, 2]", b'{"data": 1}', b'{"command": ""}'],
    )
    def test_decode_invalid(self, line):
        """Malformed lines raise ProtocolError."""
        with pytest.raises(ProtocolError) as exc_info:
            decode_message(line)
        assert exc_info.value.error_code == HELPER_ERROR
        assert exc_info.value.message.startswith("Invalid message format")

    def test_reply_echoes_request_id(self):
        request = IPCMessage(command=LIST_DEVICES, request_id="r1")
        reply = request.reply(error="boom")
        assert reply.command == response_command(LIST_DEVICES)
        assert reply.request_id == "r1"
        assert reply.error == "boom"


class TestServerDispatch:
    """Tests for request handling without a socket."""

    @pytest.mark.asyncio
    async def test_list_devices(self, helper_context, socket_path):
        server = HelperServer(helper_context, socket_path=socket_path)
        response = await server.handle_line(
            b'{"command": "list-devices", "requestId": "r1"}'
        )

        assert response.command == "list-devices-response"
        assert response.request_id == "r1"
        assert [d["path"] for d in response.data] == ["/dev/sda", "/dev/sdb"]
        assert response.data[0]["isOS"] is True

    @pytest.mark.asyncio
    async def test_unknown_command(self, helper_context, socket_path):
        server = HelperServer(helper_context, socket_path=socket_path)
        response = await server.handle_line(b'{"command": "reboot", "requestId": "r2"}')

        assert response.command == UNKNOWN_COMMAND_RESPONSE
        assert response.request_id == "r2"
        assert "reboot" in response.error

    @pytest.mark.asyncio
    async def test_invalid_line(self, helper_context, socket_path):
        server = HelperServer(helper_context, socket_path=socket_path)
        response = await server.handle_line(b"{oops")

        assert response.command == ERROR_RESPONSE
        assert response.error.startswith("Invalid message format")

    @pytest.mark.asyncio
    async def test_handler_error_is_replied(self, socket_path):
        """Operation errors are sent back, not raised."""
        executor = FakeExecutor().on("lsblk", stderr="lsblk: failed", exit_code=1)
        server = HelperServer(make_context(executor), socket_path=socket_path)
        response = await server.handle_line(b'{"command": "list-devices"}')

        assert response.command == "list-devices-response"
        assert response.data is None
        assert "lsblk" in response.error


class TestServerLifecycle:
    """Tests for socket setup and teardown."""

    @pytest.mark.asyncio
    async def test_socket_created_and_removed(self, helper_context, socket_path):
        async with HelperServer(helper_context, socket_path=socket_path) as server:
            assert server.is_serving
            assert stat.S_ISSOCK(socket_path.stat().st_mode)
            assert stat.S_IMODE(socket_path.stat().st_mode) == 0o666
            assert await socket_is_live(socket_path)
        assert not socket_path.exists()

    @pytest.mark.asyncio
    async def test_stale_socket_is_replaced(self, helper_context, socket_path):
        """A socket file nobody listens on is removed at start."""
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        stale.bind(str(socket_path))
        stale.close()
        assert socket_path.exists()
        assert not await socket_is_live(socket_path)

        async with HelperServer(helper_context, socket_path=socket_path) as server:
            assert server.is_serving
            assert await socket_is_live(socket_path)

    @pytest.mark.asyncio
    async def test_refuses_second_helper(self, helper_context, socket_path):
        async with HelperServer(helper_context, socket_path=socket_path):
            second = HelperServer(helper_context, socket_path=socket_path)
            with pytest.raises(HelperAlreadyRunningError) as exc_info:
                await second.start()
            assert exc_info.value.error_code == HELPER_ALREADY_RUNNING
            assert await socket_is_live(socket_path)


class TestHelperBridge:
    """Tests for the controller-side client."""

    @pytest.mark.asyncio
    async def test_list_devices(self, helper_context, socket_path):
        async with HelperServer(helper_context, socket_path=socket_path):
            async with HelperBridge(socket_path) as bridge:
                devices = await bridge.list_devices()

        assert [d.path for d in devices] == ["/dev/sda", "/dev/sdb"]
        assert devices[0].is_os is True
        assert devices[1].is_removable is True

    @pytest.mark.asyncio
    async def test_concurrent_requests(self, helper_context, socket_path):
        """Concurrent requests each get their own response."""
        async with HelperServer(helper_context, socket_path=socket_path):
            async with HelperBridge(socket_path) as bridge:
                first, second = await asyncio.gather(
                    bridge.list_devices(), bridge.list_devices()
                )
                assert bridge.pending_count == 0

        assert len(first) == len(second) == 2

    @pytest.mark.asyncio
    async def test_unknown_command_response(self, helper_context, socket_path):
        async with HelperServer(helper_context, socket_path=socket_path):
            async with HelperBridge(socket_path) as bridge:
                response = await bridge.request("frobnicate", {"x": 1})

        assert response.command == UNKNOWN_COMMAND_RESPONSE
        assert "frobnicate" in response.error

    @pytest.mark.asyncio
    async def test_helper_error(self, socket_path):
        executor = FakeExecutor().on("lsblk", stderr="lsblk: failed", exit_code=1)
        async with HelperServer(make_context(executor), socket_path=socket_path):
            async with HelperBridge(socket_path) as bridge:
                with pytest.raises(HelperError) as exc_info:
                    await bridge.list_devices()
        assert exc_info.value.error_code == HELPER_ERROR

    @pytest.mark.asyncio
    async def test_not_connected(self, socket_path):
        bridge = HelperBridge(socket_path)
        with pytest.raises(IPCConnectionLostError) as exc_info:
            await bridge.request(LIST_DEVICES)
        assert "Not connected" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connect_without_helper(self, socket_path):
        with pytest.raises(OSError):
            await HelperBridge(socket_path).connect()

    @pytest.mark.asyncio
    async def test_timeout(self, socket_path):
        """A silent helper times the request out and clears it."""

        async def silent(reader, writer):
            await reader.read()
            writer.close()

        server = await asyncio.start_unix_server(silent, path=str(socket_path))
        try:
            async with HelperBridge(socket_path, timeout=0.1) as bridge:
                with pytest.raises(IPCTimeoutError) as exc_info:
                    await bridge.request(LIST_DEVICES)
                assert bridge.pending_count == 0
                assert bridge.connected
        finally:
            server.close()
            await server.wait_closed()

        assert exc_info.value.error_code == IPC_TIMEOUT
        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_lost_fails_pending(self, socket_path):
        """Pending requests fail as soon as the helper hangs up."""

        async def hang_up(reader, writer):
            await reader.readline()
            writer.close()

        server = await asyncio.start_unix_server(hang_up, path=str(socket_path))
        try:
            bridge = HelperBridge(socket_path, timeout=5)
            await bridge.connect()
            with pytest.raises(IPCConnectionLostError):
                await bridge.request(LIST_DEVICES)
            await wait_until(lambda: not bridge.connected)
            await bridge.close()
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_routes_response_without_request_id(self, socket_path):
        """A response lacking requestId goes to the oldest matching request."""

        async def legacy(reader, writer):
            await reader.readline()
            writer.write(b'{"command": "list-devices-response", "data": []}\n')
            await writer.drain()
            await reader.read()
            writer.close()

        server = await asyncio.start_unix_server(legacy, path=str(socket_path))
        try:
            async with HelperBridge(socket_path) as bridge:
                assert await bridge.list_devices() == []
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_run_reconnects(self, helper_context, socket_path):
        """run() keeps retrying until the helper comes up."""
        bridge = HelperBridge(socket_path, reconnect_interval=0.05)
        runner = asyncio.create_task(bridge.run())
        await asyncio.sleep(0.1)
        assert not bridge.connected

        async with HelperServer(helper_context, socket_path=socket_path):
            await wait_until(lambda: bridge.connected)
            devices = await bridge.list_devices()
            await bridge.close()
        await asyncio.wait_for(runner, 1)

        assert len(devices) == 2
