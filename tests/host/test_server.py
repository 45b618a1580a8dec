import asyncio
import json

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from widgetbridge.host.channel import SandboxChannel
from widgetbridge.host.config import BridgeRuntimeSettings
from widgetbridge.host.coordinator import SessionCoordinator
from widgetbridge.host.persistence import MemorySnapshotStore
from widgetbridge.host.server import WebSocketGateway
from widgetbridge.host.session import SessionPhase
from widgetbridge.host.transport import WebSocketTransport
from widgetbridge.tool import WIDGET_MIME_TYPE, ResourceContent, ResourceDefinition, ToolRegistry, tool


@tool(description="Show a greeting.", resource_uri="ui://demo/hello.html")
def hello(name: str = "world") -> dict:
    return {"greeting": f"hello {name}"}


async def _recv_json(websocket):
    return json.loads(await asyncio.wait_for(websocket.recv(), timeout=2.0))


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register_resource(ResourceDefinition(uri="ui://demo/hello.html", fetch=lambda: "<p>hello</p>"))
    reg.register(hello.definition)
    return reg


async def _start(registry, token=None):
    gateway = WebSocketGateway(host="127.0.0.1", port=0, token=token)
    endpoint = await gateway.start()
    coordinator = SessionCoordinator(
        registry,
        snapshot_store=MemorySnapshotStore(),
        transport_factory=gateway.transport_factory,
        settings=BridgeRuntimeSettings(teardown_timeout_seconds=0.0),
    )
    return gateway, endpoint, coordinator


@pytest.mark.asyncio
async def test_widget_connects_and_initializes(registry):
    gateway, endpoint, coordinator = await _start(registry)
    try:
        session = await coordinator.open("hello", {"name": "ada"})
        async with connect(endpoint.ws_url) as websocket:
            await websocket.send(
                json.dumps({"type": "hello", "channel_id": session.channel.channel_id, "token": session.channel.token})
            )
            load = await _recv_json(websocket)
            assert load["type"] == "sandbox/load"
            assert load["channelId"] == session.channel.channel_id
            assert "Content-Security-Policy" in load["html"]

            await websocket.send(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "ui/initialize", "params": {}}))
            reply = await _recv_json(websocket)
            assert reply["result"]["appId"] == session.app_id
            message = await _recv_json(websocket)
            assert message["method"] == "ui/notifications/tool-input"
            assert message["params"]["arguments"] == {"name": "ada"}

            await websocket.send(json.dumps({
                "jsonrpc": "2.0",
                "id": 2,
                "method": "tools/call",
                "params": {"name": "hello", "arguments": {"name": "bob"}},
            }))
            reply = await _recv_json(websocket)
            assert reply == {"jsonrpc": "2.0", "id": 2, "result": {"greeting": "hello bob"}}
            assert session.phase is SessionPhase.READY
    finally:
        await coordinator.close()
        await gateway.stop()


@pytest.mark.asyncio
async def test_wrong_channel_token_gets_no_document(registry):
    gateway, endpoint, coordinator = await _start(registry)
    try:
        session = await coordinator.open("hello")
        channel_id = session.channel.channel_id
        async with connect(endpoint.ws_url) as websocket:
            await websocket.send(json.dumps({"type": "hello", "channel_id": channel_id, "token": "guessed"}))
            with pytest.raises(ConnectionClosed) as exc_info:
                await asyncio.wait_for(websocket.recv(), timeout=2.0)
            assert exc_info.value.rcvd.code == 4403
        assert session.phase is SessionPhase.INITIALIZING
        assert not session.channel.closed

        # the real widget can still attach afterwards
        async with connect(endpoint.ws_url) as websocket:
            await websocket.send(
                json.dumps({"type": "hello", "channel_id": channel_id, "token": session.channel.token})
            )
            load = await _recv_json(websocket)
            assert load["type"] == "sandbox/load"
            assert session.channel.token in load["html"]
    finally:
        await coordinator.close()
        await gateway.stop()


@pytest.mark.asyncio
async def test_transport_refuses_wrong_token_before_sending():
    transport = WebSocketTransport()
    channel = SandboxChannel(transport)
    content = ResourceContent(uri="ui://demo/hello.html", mime_type=WIDGET_MIME_TYPE, text="<p>hello</p>")
    await channel.load(content, csp="default-src 'none'")
    assert transport.accepts(channel.token)
    assert not transport.accepts("guessed")
    assert not transport.accepts(None)
    with pytest.raises(PermissionError):
        await transport.attach(object(), "guessed")
    assert not transport.attached
    assert transport.document is not None
    await channel.close()


@pytest.mark.asyncio
async def test_unknown_channel_rejected(registry):
    gateway, endpoint, coordinator = await _start(registry)
    try:
        async with connect(endpoint.ws_url) as websocket:
            await websocket.send(json.dumps({"type": "hello", "channel_id": "chn_missing", "token": "x"}))
            with pytest.raises(ConnectionClosed) as exc_info:
                await asyncio.wait_for(websocket.recv(), timeout=2.0)
            assert exc_info.value.rcvd.code == 4404
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_gateway_token_required(registry):
    gateway, endpoint, coordinator = await _start(registry, token="gateway-secret")
    assert endpoint.token_required
    try:
        session = await coordinator.open("hello")
        async with connect(endpoint.ws_url) as websocket:
            await websocket.send(json.dumps({
                "type": "hello",
                "channel_id": session.channel.channel_id,
                "token": session.channel.token,
            }))
            with pytest.raises(ConnectionClosed) as exc_info:
                await asyncio.wait_for(websocket.recv(), timeout=2.0)
            assert exc_info.value.rcvd.code == 4401
        assert session.phase is SessionPhase.INITIALIZING
    finally:
        await coordinator.close()
        await gateway.stop()
