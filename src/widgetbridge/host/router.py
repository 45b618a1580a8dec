from __future__ import annotations

import asyncio
import inspect
import logging
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from widgetbridge.errors import (
    ERROR_CANCELLED,
    BridgeError,
    Cancelled,
    HandlerError,
    InvalidMessage,
    NotInitialized,
    Timeout,
    error_from_payload,
)

from .channel import SandboxChannel
from .messages import (
    build_error_response,
    build_host_context_message,
    build_initialize_result,
    build_request,
    build_response,
    build_tool_cancelled_message,
    build_tool_input_message,
    build_tool_input_partial_message,
    build_tool_result_message,
)
from .pending import PendingRequest, PendingRequests
from .protocol import (
    METHOD_RESOURCE_TEARDOWN,
    METHOD_TOOLS_CALL,
    PROGRESS_MARKER,
    WIDGET_MESSAGE_TYPES,
    InitializedNotification,
    InitializeRequest,
    OpenLinkParams,
    OpenLinkRequest,
    RequestId,
    SizeChangedNotification,
    ToolCallParams,
    ToolCallRequest,
    UiMessageParams,
    UiMessageRequest,
    WidgetResponse,
    parse_widget_frame,
    recover_request_id,
)
from .session import SessionPhase, StreamPhase, ToolCallState

logger = logging.getLogger(__name__)

RequestHandler = Callable[[str, Any], Awaitable[Any]]
PersistHandler = Callable[[Dict[str, Any]], Any]
MessageHandler = Callable[[UiMessageParams], Any]
LinkHandler = Callable[[OpenLinkParams], Any]

DEFAULT_HOST_INFO = {"name": "widgetbridge", "version": "0.1.0"}
DEFAULT_HOST_CAPABILITIES = {
    "tools": {"call": True},
    "messages": {"persist": True},
    "openLinks": {},
    "toolInputPartial": True,
}


@dataclass(frozen=True)
class RouterTransition:
    previous: SessionPhase
    current: SessionPhase
    stream: StreamPhase
    tool_state: Dict[str, Any]
    reason: str


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class MessageRouter:
    """
    Protocol state machine of one widget session.

    Phases: uninitialized -> initializing -> ready, with an idle/streaming
    sub-state inside ready, and a terminal closed phase reachable from any
    phase. Inbound frames are dispatched in channel order; every ``tools/call``
    runs in its own task so a slow tool never blocks later notifications.
    Host hooks for ``ui/message`` and ``ui/open-link`` also run off the read
    loop; messages reach their hook one at a time, in channel order.
    """

    def __init__(
        self,
        channel: SandboxChannel,
        *,
        app_id: str,
        request_handler: RequestHandler,
        persist_handler: Optional[PersistHandler] = None,
        message_handler: Optional[MessageHandler] = None,
        link_handler: Optional[LinkHandler] = None,
        host_info: Optional[Mapping[str, Any]] = None,
        host_context: Optional[Mapping[str, Any]] = None,
        capabilities: Optional[Mapping[str, Any]] = None,
        tool_call_timeout: float = 30.0,
        teardown_timeout: float = 0.5,
    ) -> None:
        self.channel = channel
        self.app_id = app_id
        self.phase = SessionPhase.UNINITIALIZED
        self.stream = StreamPhase.IDLE
        self.tool_state = ToolCallState()
        self.pending = PendingRequests()
        self.snapshot: Optional[Dict[str, Any]] = None
        self.host_info = dict(host_info or DEFAULT_HOST_INFO)
        self.host_context: Dict[str, Any] = dict(host_context or {})
        self.capabilities = dict(capabilities or DEFAULT_HOST_CAPABILITIES)
        self.tool_call_timeout = max(0.01, float(tool_call_timeout))
        self.teardown_timeout = max(0.0, float(teardown_timeout))

        self._request_handler = request_handler
        self._persist_handler = persist_handler
        self._message_handler = message_handler
        self._link_handler = link_handler
        self._outbox: List[Dict[str, Any]] = []
        self._listeners: List[Callable[[RouterTransition], Any]] = []
        self._hook_tasks: Set[asyncio.Task] = set()
        self._link_tasks: Set[asyncio.Task] = set()
        self._message_tail: Optional[asyncio.Task] = None

        self._handlers = {
            InitializeRequest: self._on_initialize,
            InitializedNotification: self._on_initialized,
            ToolCallRequest: self._on_tool_call,
            UiMessageRequest: self._on_message,
            OpenLinkRequest: self._on_open_link,
            SizeChangedNotification: self._on_size_changed,
        }
        missing = set(WIDGET_MESSAGE_TYPES) - set(self._handlers)
        if missing:
            raise TypeError(f"Unhandled widget message kinds: {sorted(t.__name__ for t in missing)}")

        channel.subscribe(self.handle_frame)
        channel.on_close(self._on_channel_closed)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self.phase is SessionPhase.READY

    @property
    def is_closed(self) -> bool:
        return self.phase is SessionPhase.CLOSED

    def subscribe(self, listener: Callable[[RouterTransition], Any]) -> Callable[[], None]:
        """Receive a RouterTransition after every phase or tool-state change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, previous: SessionPhase, reason: str) -> None:
        transition = RouterTransition(
            previous=previous,
            current=self.phase,
            stream=self.stream,
            tool_state=self.tool_state.to_dict(),
            reason=reason,
        )
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception:
                logger.exception("Router listener failed for app %s", self.app_id)

    def _set_phase(self, phase: SessionPhase, reason: str) -> None:
        previous = self.phase
        self.phase = phase
        logger.debug("App %s: %s -> %s (%s)", self.app_id, previous.value, phase.value, reason)
        self._emit(previous, reason)

    def mark_loaded(self, snapshot: Optional[Dict[str, Any]] = None) -> None:
        """Channel content is loaded; wait for the widget's handshake."""
        if self.phase is not SessionPhase.UNINITIALIZED:
            raise RuntimeError(f"App {self.app_id} already left the uninitialized phase")
        self.snapshot = deepcopy(snapshot) if snapshot is not None else None
        self._set_phase(SessionPhase.INITIALIZING, "loaded")

    async def teardown(self, reason: str = "disposed") -> None:
        """Ask the widget to tear down, then close the channel whatever it answers."""
        if self.is_closed:
            return
        try:
            if self.is_ready and self.teardown_timeout > 0:
                await self.request(
                    METHOD_RESOURCE_TEARDOWN,
                    {"reason": reason},
                    timeout=self.teardown_timeout,
                )
        except BridgeError as exc:
            logger.debug("App %s teardown request unanswered: %s", self.app_id, exc.message)
        finally:
            await self.channel.close(reason=reason)

    def _on_channel_closed(self, error: BridgeError) -> None:
        if self.is_closed:
            return
        rejected = self.pending.reject_all(
            lambda entry: type(error)(error.message, data={"id": entry.request_id})
        )
        if rejected:
            logger.info(
                "App %s closed with %d pending request(s): %s",
                self.app_id,
                len(rejected),
                type(error).__name__,
            )
        # queued persists still reach the store; link confirmations are moot
        for task in list(self._link_tasks):
            task.cancel()
        self._outbox.clear()
        self.tool_state = ToolCallState()
        self.stream = StreamPhase.IDLE
        self._set_phase(SessionPhase.CLOSED, type(error).__name__)

    # ------------------------------------------------------------------
    # inbound
    # ------------------------------------------------------------------

    async def handle_frame(self, payload: Any) -> None:
        if self.is_closed:
            return
        try:
            message = parse_widget_frame(payload)
        except BridgeError as exc:
            logger.warning("App %s: dropping malformed frame: %s", self.app_id, exc.message)
            request_id = recover_request_id(payload)
            if request_id is not None and isinstance(payload, dict) and "method" in payload:
                await self._reply_error(request_id, exc)
            return

        if isinstance(message, WidgetResponse):
            self._on_response(message)
            return

        if not self.is_ready and not isinstance(message, InitializeRequest):
            exc = NotInitialized(f"{message.method} received before ui/initialize")
            logger.warning("App %s: %s", self.app_id, exc.message)
            if message.id is not None:
                await self._reply_error(message.id, exc)
            return

        await self._handlers[type(message)](message)

    async def _on_initialize(self, message: InitializeRequest) -> None:
        host_context = dict(self.host_context)
        if self.snapshot is not None:
            host_context["state"] = deepcopy(self.snapshot)
        if message.id is not None:
            await self._reply(
                message.id,
                build_initialize_result(
                    app_id=self.app_id,
                    host_info=self.host_info,
                    host_context=host_context,
                    capabilities=self.capabilities,
                ),
            )
        if self.is_ready:
            logger.debug("App %s re-sent ui/initialize", self.app_id)
            return

        self._set_phase(SessionPhase.READY, "initialized")
        outbox, self._outbox = self._outbox, []
        if message.id is None and self.snapshot is not None:
            # no reply to carry the snapshot; hand it over right after the handshake
            outbox.insert(0, build_host_context_message(host_context))
        try:
            for payload in outbox:
                await self.channel.send(payload)
        except Cancelled:
            logger.debug("App %s closed while flushing queued notifications", self.app_id)

    async def _on_initialized(self, message: InitializedNotification) -> None:
        logger.debug("App %s confirmed initialization", self.app_id)

    async def _on_tool_call(self, message: ToolCallRequest) -> None:
        request_id = message.id
        if request_id is None:
            logger.warning("App %s: tools/call without id dropped", self.app_id)
            return
        if self.pending.has(request_id, inbound=True):
            await self._reply_error(request_id, InvalidMessage(f"Request id {request_id!r} already pending"))
            return
        entry = self.pending.add(request_id, METHOD_TOOLS_CALL, inbound=True)
        entry.task = asyncio.create_task(
            self._run_tool_call(entry, message.params),
            name=f"tools-call-{self.app_id}-{request_id}",
        )

    async def _run_tool_call(self, entry: PendingRequest, params: ToolCallParams) -> None:
        request_id = entry.request_id
        error: Optional[BridgeError] = None
        result: Any = None
        try:
            result = await asyncio.wait_for(
                self._request_handler(params.name, params.arguments),
                timeout=self.tool_call_timeout,
            )
        except asyncio.TimeoutError:
            error = Timeout(
                f"tools/call {params.name} timed out after {self.tool_call_timeout:.2f}s",
                data={"name": params.name},
            )
        except BridgeError as exc:
            error = exc
        except Exception as exc:
            error = HandlerError(f"Tool {params.name} failed: {exc}", data={"message": str(exc)})

        if self.pending.get(request_id, inbound=True) is not entry:
            # rejected by a close while the tool was running
            return
        if error is None:
            self.pending.resolve(request_id, result, inbound=True)
            response = build_response(request_id, result)
        else:
            logger.info("App %s tools/call %s failed: %s", self.app_id, params.name, error.message)
            self.pending.reject(request_id, error, inbound=True)
            response = build_error_response(request_id, error.to_error())
        try:
            await self.channel.send(response)
        except Cancelled:
            logger.debug("App %s closed before tools/call %r was answered", self.app_id, request_id)

    def _spawn_hook(self, work: Callable[[], Awaitable[None]], name: str) -> asyncio.Task:
        task = asyncio.create_task(work(), name=f"{name}-{self.app_id}")
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_tasks.discard)
        return task

    async def _on_message(self, message: UiMessageRequest) -> None:
        # host hooks run off the read loop; messages still reach them in channel order
        previous = self._message_tail

        async def run() -> None:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            await self._handle_message(message)

        self._message_tail = self._spawn_hook(run, "ui-message")

    async def _handle_message(self, message: UiMessageRequest) -> None:
        params = message.params
        state = params.persist_state
        try:
            if state is not None:
                if self._persist_handler is not None:
                    await _maybe_await(self._persist_handler(state))
                self.snapshot = deepcopy(state)
            elif self._message_handler is not None:
                await _maybe_await(self._message_handler(params))
        except Exception as exc:
            logger.warning("App %s ui/message handling failed: %s", self.app_id, exc)
            if message.id is not None:
                await self._reply_error(message.id, HandlerError(str(exc)))
            return
        if message.id is not None:
            await self._reply(message.id, {"ok": True})

    async def _on_open_link(self, message: OpenLinkRequest) -> None:
        task = self._spawn_hook(lambda: self._handle_open_link(message), "ui-open-link")
        self._link_tasks.add(task)
        task.add_done_callback(self._link_tasks.discard)

    async def _handle_open_link(self, message: OpenLinkRequest) -> None:
        allowed = False
        if self._link_handler is not None:
            try:
                allowed = bool(await _maybe_await(self._link_handler(message.params)))
            except Exception as exc:
                logger.warning("App %s open-link handler failed: %s", self.app_id, exc)
        if not allowed:
            logger.info("App %s: open-link %s not followed", self.app_id, message.params.url)
        if message.id is not None:
            await self._reply(message.id, {"ok": allowed})

    async def _on_size_changed(self, message: SizeChangedNotification) -> None:
        self.channel.report_size(message.params.width, message.params.height)

    def _on_response(self, message: WidgetResponse) -> None:
        entry = self.pending.get(message.id)
        if entry is None:
            logger.debug("App %s: response to unknown request %r", self.app_id, message.id)
            return
        if message.error is not None:
            self.pending.reject(message.id, error_from_payload(message.error))
        else:
            self.pending.resolve(message.id, message.result)

    async def _reply(self, request_id: RequestId, result: Any) -> None:
        try:
            await self.channel.send(build_response(request_id, result))
        except Cancelled:
            logger.debug("App %s closed before replying to %r", self.app_id, request_id)

    async def _reply_error(self, request_id: RequestId, error: BridgeError) -> None:
        try:
            await self.channel.send(build_error_response(request_id, error.to_error()))
        except Cancelled:
            logger.debug("App %s closed before replying to %r", self.app_id, request_id)

    # ------------------------------------------------------------------
    # outbound
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self.is_closed:
            raise Cancelled(f"App {self.app_id} is closed")

    async def _deliver(self, payload: Dict[str, Any]) -> None:
        # nothing reaches the widget before its handshake
        if self.is_ready:
            await self.channel.send(payload)
        else:
            self._outbox.append(payload)

    async def notify_tool_input_partial(self, arguments: Mapping[str, Any]) -> None:
        self._ensure_open()
        if self.tool_state.is_terminal:
            logger.warning("App %s: partial input after tool result ignored", self.app_id)
            return
        if arguments.get(PROGRESS_MARKER):
            self.tool_state.progress = {k: v for k, v in arguments.items() if k != PROGRESS_MARKER}
            self._emit(self.phase, "progress")
        else:
            self.tool_state.merge_partial(arguments)
            self.stream = StreamPhase.STREAMING
            self._emit(self.phase, "tool-input-partial")
        await self._deliver(build_tool_input_partial_message(arguments))

    async def notify_tool_input(self, arguments: Mapping[str, Any]) -> None:
        self._ensure_open()
        if self.tool_state.is_terminal:
            logger.warning("App %s: tool input after tool result ignored", self.app_id)
            return
        self.tool_state.merge_final(arguments)
        self.stream = StreamPhase.IDLE
        self._emit(self.phase, "tool-input")
        await self._deliver(build_tool_input_message(arguments))

    async def notify_tool_result(
        self,
        *,
        result: Optional[Mapping[str, Any]] = None,
        error: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._ensure_open()
        payload = build_tool_result_message(result=result, error=error)
        if self.tool_state.is_terminal:
            logger.warning("App %s: second tool result ignored", self.app_id)
            return
        self.tool_state.finish(result=result, error=error)
        self.stream = StreamPhase.IDLE
        self._emit(self.phase, "tool-result")
        await self._deliver(payload)

    async def notify_tool_cancelled(self, reason: str) -> None:
        self._ensure_open()
        if self.tool_state.is_terminal:
            logger.warning("App %s: cancellation after tool result ignored", self.app_id)
            return
        self.tool_state.finish(error={"code": ERROR_CANCELLED, "message": reason})
        self.stream = StreamPhase.IDLE
        self._emit(self.phase, "tool-cancelled")
        await self._deliver(build_tool_cancelled_message(reason))

    async def notify_host_context(self, context: Mapping[str, Any]) -> None:
        self._ensure_open()
        self.host_context.update(deepcopy(dict(context)))
        await self._deliver(build_host_context_message(context))

    async def request(
        self,
        method: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a host-originated request and wait for the widget's response.

        Raises:
            Timeout: No response within ``timeout`` seconds.
            Cancelled: The channel closed first.
        """
        self._ensure_open()
        if not self.is_ready:
            raise NotInitialized(f"{method} requires an initialized widget")
        request_id = self.pending.next_id()
        entry = self.pending.add(request_id, method)
        await self.channel.send(build_request(request_id, method, params))
        wait_for = self.tool_call_timeout if timeout is None else max(0.0, float(timeout))
        try:
            return await asyncio.wait_for(asyncio.shield(entry.future), timeout=wait_for)
        except asyncio.TimeoutError:
            self.pending.pop(request_id)
            raise Timeout(f"{method} got no response within {wait_for:.2f}s") from None
