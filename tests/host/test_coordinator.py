"""
End-to-end tests for the session coordinator over in-memory transports.

Tests cover:
- Opening widgets for tool calls and streaming their input
- Widget-originated tools/call against the shared registry
- Persisted state replayed on reopen
- Session isolation, disposal and app id reuse
"""

import asyncio

import pytest

from widgetbridge.errors import Cancelled, UnknownResource, UnknownTool
from widgetbridge.host.config import BridgeRuntimeSettings
from widgetbridge.host.coordinator import SessionCoordinator
from widgetbridge.host.persistence import MemorySnapshotStore
from widgetbridge.host.session import SessionPhase, ToolCallStatus
from widgetbridge.tool import ResourceDefinition, ToolDefinition, ToolRegistry, tool


COUNTER_HTML = "<html><head></head><body><span id='count'></span></body></html>"


# ============================================================
# Fixtures
# ============================================================

@tool(
    description="Show a counter starting at the given value.",
    resource_uri="ui://demo/counter.html",
    csp={"connectDomains": ["https://api.example.com"]},
)
def show_counter(start: int = 0) -> dict:
    return {"count": start}


@tool(description="Add two numbers.")
async def add(a: int, b: int) -> int:
    return a + b


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register_resource(ResourceDefinition(uri="ui://demo/counter.html", fetch=lambda: COUNTER_HTML))
    reg.register(show_counter.definition)
    reg.register(add.definition)
    reg.register(ToolDefinition(name="headless", description="No widget.", handler=lambda args: None))
    return reg


@pytest.fixture
def store():
    return MemorySnapshotStore()


@pytest.fixture
def settings():
    return BridgeRuntimeSettings(
        tool_call_timeout_seconds=2.0,
        teardown_timeout_seconds=0.0,
        handshake_timeout_seconds=1.0,
        allowed_connect_domains=("https://api.example.com",),
    )


@pytest.fixture
def coordinator(registry, store, settings):
    return SessionCoordinator(registry, snapshot_store=store, settings=settings)


async def _handshake(session, request_id="init"):
    transport = session.channel.transport
    transport.post({"jsonrpc": "2.0", "id": request_id, "method": "ui/initialize", "params": {}})
    return await transport.next_message()


def _tool_call(request_id, name, arguments):
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments},
    }


# ============================================================
# Opening sessions
# ============================================================

class TestOpen:

    @pytest.mark.asyncio
    async def test_open_streams_input_after_handshake(self, coordinator):
        session = await coordinator.open("show_counter", {"start": 3})
        transport = session.channel.transport

        assert session.phase is SessionPhase.INITIALIZING
        assert "connect-src https://api.example.com" in transport.document.csp
        assert session.channel.token in transport.document.html

        reply = await _handshake(session)
        assert reply["result"]["appId"] == session.app_id
        message = await transport.next_message()
        assert message["method"] == "ui/notifications/tool-input"
        assert message["params"]["arguments"] == {"start": 3}
        assert session.tool_state.input_complete
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_open_streams_partials_then_cumulative_input(self, coordinator):
        async def partials():
            yield {"start": 1}
            yield {"label": "clicks"}
            yield {"start": 2}

        session = await coordinator.open("show_counter", partials())
        await _handshake(session)
        sent = session.channel.transport.drain()
        assert [m["method"].rsplit("/", 1)[-1] for m in sent] == [
            "tool-input-partial",
            "tool-input-partial",
            "tool-input-partial",
            "tool-input",
        ]
        assert sent[-1]["params"]["arguments"] == {"start": 2, "label": "clicks"}
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_open_unknown_tool(self, coordinator):
        with pytest.raises(UnknownTool):
            await coordinator.open("nope")
        assert len(coordinator) == 0

    @pytest.mark.asyncio
    async def test_open_tool_without_widget(self, coordinator):
        with pytest.raises(UnknownResource):
            await coordinator.open("headless")

    @pytest.mark.asyncio
    async def test_invocation_reuses_app_id(self, coordinator):
        first = await coordinator.open("show_counter", {"start": 1}, invocation_id="call-1")
        second = await coordinator.open("show_counter", {"start": 2}, invocation_id="call-1")
        third = await coordinator.open("show_counter", {"start": 3}, invocation_id="call-2")

        assert second.app_id == first.app_id
        assert third.app_id != first.app_id
        assert first.phase is SessionPhase.CLOSED
        assert first.channel.closed
        assert coordinator.get(first.app_id) is second
        assert len(coordinator) == 2
        await coordinator.close()
        assert len(coordinator) == 0


# ============================================================
# Widget traffic through the coordinator
# ============================================================

class TestWidgetCalls:

    @pytest.mark.asyncio
    async def test_widget_calls_registry(self, coordinator):
        session = await coordinator.open("show_counter")
        await _handshake(session)
        transport = session.channel.transport

        transport.post(_tool_call(1, "add", {"a": 2, "b": 3}))
        assert (await transport.next_message())["result"] == 5

        transport.post(_tool_call(2, "add", {"a": "x"}))
        reply = await transport.next_message()
        assert reply["error"]["code"] == -32602

        transport.post(_tool_call(3, "does-not-exist", {}))
        reply = await transport.next_message()
        assert reply["error"]["code"] == -32010
        assert session.phase is SessionPhase.READY
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_persisted_state_survives_reopen(self, coordinator, store):
        session = await coordinator.open("show_counter", app_id="counter-1")
        await _handshake(session)
        transport = session.channel.transport
        transport.post(
            {
                "jsonrpc": "2.0",
                "id": 10,
                "method": "ui/message",
                "params": {"role": "user", "content": {"type": "botdojo/persist", "state": {"count": 3}}},
            }
        )
        assert (await transport.next_message())["result"] == {"ok": True}
        assert store.load("counter-1") == {"count": 3}
        assert session.snapshot == {"count": 3}

        reopened = await coordinator.open("show_counter", app_id="counter-1")
        assert session.phase is SessionPhase.CLOSED
        reply = await _handshake(reopened)
        assert reply["result"]["hostContext"]["state"] == {"count": 3}
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_fresh_app_has_no_state(self, coordinator):
        session = await coordinator.open("show_counter")
        reply = await _handshake(session)
        assert "state" not in reply["result"]["hostContext"]
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_link_policy(self, registry, store, settings):
        opened = []
        coordinator = SessionCoordinator(
            registry,
            snapshot_store=store,
            settings=settings,
            on_open_link=lambda app_id, url: opened.append((app_id, url)) or True,
        )
        session = await coordinator.open("show_counter")
        await _handshake(session)
        transport = session.channel.transport

        transport.post({"jsonrpc": "2.0", "id": 1, "method": "ui/open-link", "params": {"url": "javascript:alert(1)"}})
        assert (await transport.next_message())["result"] == {"ok": False}
        transport.post({"jsonrpc": "2.0", "id": 2, "method": "ui/open-link", "params": {"url": "https://example.com/a"}})
        assert (await transport.next_message())["result"] == {"ok": True}
        assert opened == [(session.app_id, "https://example.com/a")]
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_messages_reach_host_hook(self, registry, store, settings):
        received = asyncio.Queue()

        async def on_message(app_id, params):
            await received.put((app_id, params.content))

        coordinator = SessionCoordinator(registry, snapshot_store=store, settings=settings, on_message=on_message)
        session = await coordinator.open("show_counter")
        await _handshake(session)
        session.channel.transport.post(
            {"jsonrpc": "2.0", "method": "ui/message", "params": {"role": "user", "content": "add one more"}}
        )
        assert await asyncio.wait_for(received.get(), timeout=1.0) == (session.app_id, "add one more")
        await coordinator.close()


# ============================================================
# Host-driven updates
# ============================================================

class TestHostUpdates:

    @pytest.mark.asyncio
    async def test_sessions_do_not_share_state(self, coordinator):
        first = await coordinator.open("show_counter", {"start": 1})
        second = await coordinator.open("show_counter", {"start": 2})
        await _handshake(first)
        await _handshake(second)

        await coordinator.notify_progress(first.app_id, percent=50)
        await coordinator.deliver_result(first.app_id, {"start": 9})

        assert first.tool_state.view() == {"start": 9}
        assert first.tool_state.status is ToolCallStatus.COMPLETE
        assert second.tool_state.view() == {"start": 2}
        assert second.tool_state.status is ToolCallStatus.IDLE
        assert second.tool_state.progress is None

        second.channel.transport.drain()
        await coordinator.update_host_context(second.app_id, {"theme": "dark"})
        message = await second.channel.transport.next_message()
        assert message["params"] == {"theme": "dark"}
        assert first.router.host_context == {}
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_non_mapping_result_is_wrapped(self, coordinator):
        session = await coordinator.open("show_counter")
        await _handshake(session)
        await coordinator.deliver_result(session.app_id, 42)
        message = await session.channel.transport.next_message()
        assert message["params"] == {"result": {"value": 42}}
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_invoke_runs_own_tool(self, coordinator):
        session = await coordinator.open("show_counter", {"start": 4})
        await _handshake(session)
        outcome = await coordinator.invoke(session.app_id)
        assert outcome == {"result": {"count": 4}}
        assert session.tool_state.view() == {"start": 4, "count": 4}
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_cancel_tool(self, coordinator):
        session = await coordinator.open("show_counter", {"start": 1})
        await _handshake(session)
        await coordinator.cancel_tool(session.app_id, "superseded")
        assert session.tool_state.status is ToolCallStatus.FAILED
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_unknown_app_id(self, coordinator):
        with pytest.raises(KeyError):
            await coordinator.deliver_result("app-missing", {"x": 1})


# ============================================================
# Disposal
# ============================================================

class TestDispose:

    @pytest.mark.asyncio
    async def test_dispose_cancels_pending_and_forgets_session(self, registry, store, settings):
        release = asyncio.Event()

        async def wait_forever(args):
            await release.wait()
            return {}

        registry.register(ToolDefinition(name="wait", description="Blocks.", handler=wait_forever))
        coordinator = SessionCoordinator(registry, snapshot_store=store, settings=settings)
        session = await coordinator.open("show_counter", {"start": 1})
        await _handshake(session)
        session.channel.transport.post(_tool_call("42", "wait", {}))
        await asyncio.sleep(0.02)
        entry = session.router.pending.get("42", inbound=True)
        assert entry is not None

        assert await coordinator.dispose(session.app_id) is True
        assert isinstance(entry.future.exception(), Cancelled)
        assert session.phase is SessionPhase.CLOSED
        assert session.tool_state.arguments == {}
        assert coordinator.get(session.app_id) is None
        assert await coordinator.dispose(session.app_id) is False
        release.set()

    @pytest.mark.asyncio
    async def test_wait_until_ready(self, coordinator):
        session = await coordinator.open("show_counter")
        waiter = asyncio.create_task(coordinator.wait_until_ready(session.app_id))
        await asyncio.sleep(0)
        await _handshake(session)
        assert await waiter is session
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_widget_disconnect_removes_session(self, coordinator):
        session = await coordinator.open("show_counter")
        await _handshake(session)
        session.channel.transport.disconnect()
        await asyncio.sleep(0.02)
        assert session.app_id not in coordinator
        assert coordinator.list_sessions() == []
