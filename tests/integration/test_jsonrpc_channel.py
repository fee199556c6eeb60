import asyncio

import pytest

from signalflow.errors import (
    ChannelClosedError,
    InvalidParamsError,
    RemoteError,
    RequestTimeoutError,
)
from signalflow.transports import ChannelState, JsonRpcChannel


@pytest.mark.asyncio
async def test_requests_sent_while_connecting_are_answered(connector_server):
    async def echo(ws, params):
        await asyncio.sleep(params["delay"])
        return params["n"]

    connector_server.handlers["echo"] = echo

    async with JsonRpcChannel(connector_server.url) as channel:
        assert channel.state is ChannelState.CONNECTING
        results = await asyncio.gather(
            channel.request("echo", {"n": 1, "delay": 0.05}),
            channel.request("echo", {"n": 2, "delay": 0}),
        )
        assert results == [1, 2]
        assert channel.is_open


@pytest.mark.asyncio
async def test_remote_error_is_raised(connector_server):
    def boom(ws, params):
        raise RemoteError(-32000, "boom")

    connector_server.handlers["boom"] = boom

    async with JsonRpcChannel(connector_server.url) as channel:
        with pytest.raises(RemoteError) as excinfo:
            await channel.request("boom")
    assert excinfo.value.code == -32000
    assert str(excinfo.value) == "boom (code -32000)"


@pytest.mark.asyncio
async def test_peer_can_invoke_registered_methods(connector_server):
    async def get_state(params):
        if not params:
            raise InvalidParamsError("State key is required")
        return {"key": params["key"], "value": 42}

    async def broken(params):
        raise RuntimeError("kaboom")

    async with JsonRpcChannel(connector_server.url) as channel:
        channel.add_method("getState", get_state)
        channel.add_method("broken", broken)
        await channel.request("hello")
        ws = connector_server.connections[0]

        ok = await connector_server.call(ws, "getState", {"key": "cursor"})
        assert ok["result"] == {"key": "cursor", "value": 42}

        invalid = await connector_server.call(ws, "getState")
        assert invalid["error"] == {"code": -32602, "message": "State key is required"}

        failed = await connector_server.call(ws, "broken", {})
        assert failed["error"]["code"] == -32603
        assert failed["error"]["message"] == "kaboom"

        missing = await connector_server.call(ws, "nope", {})
        assert missing["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_request_timeout_leaves_channel_open(connector_server):
    async def hang(ws, params):
        await asyncio.Event().wait()

    connector_server.handlers["hang"] = hang
    connector_server.handlers["echo"] = lambda ws, params: params

    async with JsonRpcChannel(connector_server.url) as channel:
        with pytest.raises(RequestTimeoutError, match="Request hang timed out"):
            await channel.request("hang", timeout=0.05)
        assert channel.is_open
        assert await channel.request("echo", "still here") == "still here"


@pytest.mark.asyncio
async def test_server_close_rejects_pending_requests(connector_server):
    async def kick(ws, params):
        await ws.close(4000, "bye")

    connector_server.handlers["kick"] = kick
    closes = []

    channel = JsonRpcChannel(connector_server.url)
    channel.on_close(lambda code, reason: closes.append((code, reason)))
    with pytest.raises(ChannelClosedError):
        await channel.request("kick")
    await channel.wait_closed()

    assert closes == [(4000, "bye")]
    assert channel.state is ChannelState.CLOSED
    with pytest.raises(ChannelClosedError):
        await channel.request("kick")


@pytest.mark.asyncio
async def test_client_close_sends_code(connector_server, eventually):
    closes = []
    channel = JsonRpcChannel(connector_server.url)
    channel.on_close(lambda code, reason: closes.append((code, reason)))
    await channel.request("hello")

    channel.close(3001, "setup failed")
    channel.close(1000)
    await channel.wait_closed()

    assert closes == [(3001, "setup failed")]
    await eventually(lambda: connector_server.close_codes == [3001])


@pytest.mark.asyncio
async def test_connection_failure_rejects_requests():
    async def refuse(url, **kwargs):
        raise OSError("connection refused")

    closes = []
    channel = JsonRpcChannel("ws://127.0.0.1:9/", connect=refuse)
    pending = asyncio.ensure_future(channel.request("hello"))
    with pytest.raises(ChannelClosedError):
        await pending
    await channel.wait_closed()

    channel.on_close(lambda code, reason: closes.append((code, reason)))
    await asyncio.sleep(0)
    assert closes == [(1006, "Connection error: connection refused")]
