from __future__ import annotations

import asyncio
import inspect
import logging
from copy import deepcopy
from functools import partial
from typing import Any, AsyncIterable, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import urlparse

from widgetbridge.errors import BridgeError, Timeout, UnknownResource, UnknownTool
from widgetbridge.tool.registry import ToolRegistry

from .channel import SandboxChannel, new_channel_id
from .config import BridgeRuntimeSettings, get_bridge_runtime_settings
from .persistence import SnapshotStore, get_snapshot_store
from .protocol import PROGRESS_MARKER, OpenLinkParams, UiMessageParams
from .router import MessageRouter, RouterTransition
from .sandbox import build_content_security_policy
from .session import SessionPhase, WidgetSession, new_app_id
from .transport import ChannelTransport, MemoryTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], ChannelTransport]
ToolArguments = Union[Mapping[str, Any], AsyncIterable[Mapping[str, Any]], None]
MessageHook = Callable[[str, UiMessageParams], Any]
OpenLinkHook = Callable[[str, str], Any]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _memory_transport(channel_id: str) -> ChannelTransport:
    return MemoryTransport()


class SessionCoordinator:
    """
    Owns every live widget session of one host.

    Responsibilities:
    - Resolve a tool's UI resource and open a sandbox channel for it.
    - Wire the channel to a router backed by the shared tool registry.
    - Load persisted state before the handshake and save persist requests.
    - Stream tool input and deliver results, progress and cancellation.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        snapshot_store: Optional[SnapshotStore] = None,
        transport_factory: Optional[TransportFactory] = None,
        settings: Optional[BridgeRuntimeSettings] = None,
        on_message: Optional[MessageHook] = None,
        on_open_link: Optional[OpenLinkHook] = None,
        host_info: Optional[Mapping[str, Any]] = None,
        host_context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.registry = registry
        self.store = snapshot_store if snapshot_store is not None else get_snapshot_store()
        self.settings = settings or get_bridge_runtime_settings()
        self.on_message = on_message
        self.on_open_link = on_open_link
        self.host_info = dict(host_info) if host_info else None
        self.host_context = dict(host_context or {})
        self._transport_factory = transport_factory or _memory_transport
        self._sessions: Dict[str, WidgetSession] = {}
        self._invocations: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # session lifecycle
    # ------------------------------------------------------------------

    async def open(
        self,
        tool_name: str,
        arguments: ToolArguments = None,
        *,
        app_id: Optional[str] = None,
        invocation_id: Optional[str] = None,
    ) -> WidgetSession:
        """
        Open a widget for a tool call and stream its arguments into it.

        Args:
            tool_name: Registered tool whose UI resource is rendered.
            arguments: A mapping sent as one ``tool-input``, or an async iterable
                of partial mappings streamed as ``tool-input-partial`` messages
                followed by the cumulative ``tool-input``.
            app_id: Explicit app id; any channel still open under it is replaced.
            invocation_id: Reuses the app id of a still-open session opened for
                the same invocation.

        Raises:
            UnknownTool: ``tool_name`` is not registered.
            UnknownResource: The tool has no UI resource or it cannot be resolved.
        """
        tool = self.registry.get(tool_name)
        if tool is None:
            raise UnknownTool(f"Unknown tool: {tool_name}", data={"name": tool_name})
        if tool.ui is None or not tool.ui.resource_uri:
            raise UnknownResource(f"Tool {tool_name} declares no UI resource", data={"name": tool_name})
        content = await self.registry.resolve_resource(tool.ui.resource_uri)

        async with self._lock:
            resolved_app_id = app_id or self._reusable_app_id(invocation_id) or new_app_id()
            previous = self._sessions.pop(resolved_app_id, None)
        if previous is not None:
            logger.info("Replacing channel %s of app %s", previous.channel.channel_id, resolved_app_id)
            await previous.router.teardown(reason="replaced")

        csp = build_content_security_policy(
            tool.ui.csp,
            allowed_connect_domains=self.settings.allowed_connect_domains,
            allowed_resource_domains=self.settings.allowed_resource_domains,
            uri=content.uri,
        )
        channel_id = new_channel_id()
        channel = SandboxChannel(self._transport_factory(channel_id), channel_id=channel_id)
        router = MessageRouter(
            channel,
            app_id=resolved_app_id,
            request_handler=self._handle_tool_call,
            persist_handler=partial(self._persist, resolved_app_id),
            message_handler=partial(self._handle_message, resolved_app_id),
            link_handler=partial(self._handle_open_link, resolved_app_id),
            host_info=self.host_info,
            host_context=self.host_context,
            tool_call_timeout=self.settings.tool_call_timeout_seconds,
            teardown_timeout=self.settings.teardown_timeout_seconds,
        )
        session = WidgetSession(
            app_id=resolved_app_id,
            tool_name=tool_name,
            resource_uri=content.uri,
            channel=channel,
            router=router,
            invocation_id=invocation_id,
        )
        channel.on_close(partial(self._forget, session))

        async with self._lock:
            self._sessions[resolved_app_id] = session
            if invocation_id:
                self._invocations[invocation_id] = resolved_app_id

        snapshot = self.store.load(resolved_app_id)
        session.snapshot = snapshot
        try:
            await channel.load(content, csp=csp, prefers_proxy=tool.ui.prefers_proxy)
        except BaseException:
            await channel.close(reason="load_failed")
            raise
        router.mark_loaded(snapshot)
        logger.info(
            "Opened app %s for tool %s on channel %s%s",
            resolved_app_id,
            tool_name,
            channel_id,
            " (restored state)" if snapshot is not None else "",
        )

        if arguments is not None:
            await self._stream_arguments(router, arguments)
        return session

    def _reusable_app_id(self, invocation_id: Optional[str]) -> Optional[str]:
        if not invocation_id:
            return None
        existing = self._invocations.get(invocation_id)
        session = self._sessions.get(existing) if existing else None
        if session is None or not session.is_open:
            return None
        return existing

    async def _stream_arguments(self, router: MessageRouter, arguments: ToolArguments) -> None:
        if isinstance(arguments, Mapping):
            await router.notify_tool_input(arguments)
            return
        async for partial_args in arguments:
            await router.notify_tool_input_partial(partial_args)
        await router.notify_tool_input(deepcopy(router.tool_state.arguments))

    def _forget(self, session: WidgetSession, error: BridgeError) -> None:
        if self._sessions.get(session.app_id) is session:
            self._sessions.pop(session.app_id, None)
        if session.invocation_id and self._invocations.get(session.invocation_id) == session.app_id:
            if session.app_id not in self._sessions:
                self._invocations.pop(session.invocation_id, None)
        logger.debug("App %s left the coordinator: %s", session.app_id, type(error).__name__)

    async def wait_until_ready(self, app_id: str, *, timeout: Optional[float] = None) -> WidgetSession:
        """Wait for the widget's ui/initialize, bounded by the handshake timeout."""
        session = self._require(app_id)
        if session.phase is SessionPhase.READY:
            return session
        ready = asyncio.get_running_loop().create_future()

        def _on_transition(transition: RouterTransition) -> None:
            if ready.done():
                return
            if transition.current is SessionPhase.READY:
                ready.set_result(True)
            elif transition.current is SessionPhase.CLOSED:
                ready.set_exception(session.channel.close_error or RuntimeError("closed"))

        unsubscribe = session.router.subscribe(_on_transition)
        wait_for = self.settings.handshake_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(ready, timeout=wait_for)
        except asyncio.TimeoutError:
            raise Timeout(f"App {app_id} did not initialize within {wait_for:.2f}s") from None
        finally:
            unsubscribe()
        return session

    async def dispose(self, app_id: str, *, reason: str = "disposed") -> bool:
        async with self._lock:
            session = self._sessions.pop(app_id, None)
        if session is None:
            return False
        await session.router.teardown(reason=reason)
        return True

    async def close(self) -> None:
        async with self._lock:
            app_ids = list(self._sessions)
        for app_id in app_ids:
            await self.dispose(app_id, reason="host_shutdown")

    # ------------------------------------------------------------------
    # host -> widget
    # ------------------------------------------------------------------

    async def deliver_result(
        self,
        app_id: str,
        result: Any = None,
        *,
        error: Optional[Mapping[str, Any]] = None,
    ) -> None:
        session = self._require(app_id)
        if error is not None:
            await session.router.notify_tool_result(error=error)
            return
        if result is None:
            result = {}
        elif not isinstance(result, Mapping):
            result = {"value": result}
        await session.router.notify_tool_result(result=result)

    async def notify_progress(self, app_id: str, **progress: Any) -> None:
        session = self._require(app_id)
        await session.router.notify_tool_input_partial({PROGRESS_MARKER: True, **progress})

    async def invoke(self, app_id: str) -> Dict[str, Any]:
        """Run the session's own tool with its cumulative arguments and deliver the outcome."""
        session = self._require(app_id)
        arguments = deepcopy(session.tool_state.arguments)
        try:
            result = await self.registry.execute(session.tool_name, arguments)
        except BridgeError as exc:
            error = exc.to_error()
            await self.deliver_result(app_id, error=error)
            return {"error": error}
        await self.deliver_result(app_id, result)
        return {"result": result}

    async def update_host_context(self, app_id: str, context: Mapping[str, Any]) -> None:
        await self._require(app_id).router.notify_host_context(context)

    async def cancel_tool(self, app_id: str, reason: str = "cancelled") -> None:
        await self._require(app_id).router.notify_tool_cancelled(reason)

    # ------------------------------------------------------------------
    # widget -> host
    # ------------------------------------------------------------------

    async def _handle_tool_call(self, name: str, arguments: Any) -> Any:
        return await self.registry.execute(name, {} if arguments is None else arguments)

    def _persist(self, app_id: str, state: Dict[str, Any]) -> None:
        self.store.save(app_id, state)
        session = self._sessions.get(app_id)
        if session is not None:
            session.snapshot = deepcopy(state)

    async def _handle_message(self, app_id: str, params: UiMessageParams) -> None:
        if self.on_message is None:
            logger.info("App %s sent a %s message with no host handler", app_id, params.role)
            return
        await _maybe_await(self.on_message(app_id, params))

    async def _handle_open_link(self, app_id: str, params: OpenLinkParams) -> bool:
        scheme = urlparse(params.url).scheme.lower()
        if scheme not in self.settings.allowed_link_schemes:
            logger.warning("App %s: link scheme %r not allowed", app_id, scheme)
            return False
        if self.on_open_link is None:
            return False
        return bool(await _maybe_await(self.on_open_link(app_id, params.url)))

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def _require(self, app_id: str) -> WidgetSession:
        session = self._sessions.get(app_id)
        if session is None:
            raise KeyError(f"No open widget session: {app_id}")
        return session

    def get(self, app_id: str) -> Optional[WidgetSession]:
        return self._sessions.get(app_id)

    def list_sessions(self) -> List[Dict[str, Any]]:
        items = [session.to_dict() for session in self._sessions.values()]
        items.sort(key=lambda item: item["created_at"])
        return items

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, app_id: str) -> bool:
        return app_id in self._sessions
