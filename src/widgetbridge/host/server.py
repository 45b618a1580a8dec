from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from .transport import WebSocketTransport

logger = logging.getLogger(__name__)

GATEWAY_PATHS = {"/", "/widgets"}


@dataclass(frozen=True)
class BridgeEndpoint:
    host: str
    port: int
    ws_url: str
    token_required: bool


class WebSocketGateway:
    """
    WebSocket server that connects out-of-process widgets to their channels.

    A client opens a socket and sends
    ``{"type": "hello", "channel_id": ..., "token": ...}``; the gateway attaches
    the socket to that channel's transport, which then pushes the sandbox
    document and relays JSON-RPC frames both ways.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port: int = 8777,
        token: Optional[str] = None,
        hello_timeout_seconds: float = 5.0,
        start_timeout_seconds: float = 5.0,
        send_timeout_seconds: float = 2.5,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.token = (token or "").strip() or None
        self.hello_timeout_seconds = max(0.2, float(hello_timeout_seconds))
        self.start_timeout_seconds = max(0.2, float(start_timeout_seconds))
        self.send_timeout_seconds = max(0.1, float(send_timeout_seconds))
        self._server: Any = None
        self._endpoint: Optional[BridgeEndpoint] = None
        self._transports: Dict[str, WebSocketTransport] = {}

    @property
    def endpoint(self) -> Optional[BridgeEndpoint]:
        return self._endpoint

    def transport_factory(self, channel_id: str) -> WebSocketTransport:
        """Create the transport of a new channel; pass to SessionCoordinator."""
        self._prune()
        transport = WebSocketTransport(send_timeout=self.send_timeout_seconds)
        self._transports[channel_id] = transport
        return transport

    def _prune(self) -> None:
        for channel_id in [cid for cid, transport in self._transports.items() if transport.closed]:
            self._transports.pop(channel_id, None)

    async def start(self) -> BridgeEndpoint:
        if self._server is not None and self._endpoint is not None:
            return self._endpoint
        try:
            self._server = await asyncio.wait_for(
                serve(self._handle_connection, self.host, self.port),
                timeout=self.start_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise RuntimeError(
                f"Widget gateway start timed out after {self.start_timeout_seconds:.2f}s."
            ) from exc
        sockets = list(self._server.sockets or [])
        if not sockets:
            raise RuntimeError("Widget gateway started without any bound socket.")

        bound_host, bound_port = sockets[0].getsockname()[:2]
        self._endpoint = BridgeEndpoint(
            host=str(bound_host),
            port=int(bound_port),
            ws_url=f"ws://{bound_host}:{bound_port}/widgets",
            token_required=bool(self.token),
        )
        logger.info("Widget gateway started at %s", self._endpoint.ws_url)
        return self._endpoint

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._endpoint = None
        for transport in list(self._transports.values()):
            await transport.close()
        self._transports.clear()

    async def serve_forever(self) -> None:
        await self.start()
        await self._server.serve_forever()

    async def _recv_hello(self, websocket: Any) -> Optional[Dict[str, Any]]:
        try:
            raw = await asyncio.wait_for(websocket.recv(), timeout=self.hello_timeout_seconds)
        except (asyncio.TimeoutError, ConnectionClosed):
            return None
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(payload, dict) or payload.get("type") != "hello":
            return None
        return payload

    async def _handle_connection(self, websocket: Any) -> None:
        path = getattr(getattr(websocket, "request", None), "path", None)
        if path and path.split("?", 1)[0] not in GATEWAY_PATHS:
            await websocket.close(code=1008, reason="unsupported path")
            return

        hello = await self._recv_hello(websocket)
        if hello is None:
            await websocket.close(code=1008, reason="missing hello")
            return
        if self.token and not secrets.compare_digest(str(hello.get("auth") or ""), self.token):
            await websocket.close(code=4401, reason="unauthorized")
            return

        channel_id = str(hello.get("channel_id") or "")
        transport = self._transports.get(channel_id)
        if transport is None or transport.closed:
            await websocket.close(code=4404, reason="unknown channel")
            return
        if not transport.accepts(hello.get("token")):
            logger.warning("Rejected widget with a wrong token for channel %s", channel_id)
            await websocket.close(code=4403, reason="channel token mismatch")
            return
        try:
            await transport.attach(websocket, hello.get("token"))
        except (ConnectionError, PermissionError, ConnectionClosed, asyncio.TimeoutError) as exc:
            logger.warning("Attaching widget to channel %s failed: %s", channel_id, exc)
            await websocket.close(code=1008, reason="channel unavailable")
            return

        logger.info("Widget connected to channel %s", channel_id)
        try:
            # the channel's reader consumes frames; keep the handler alive until either side closes
            await websocket.wait_closed()
        finally:
            await transport.close()
            self._transports.pop(channel_id, None)
            logger.info("Widget disconnected from channel %s", channel_id)
