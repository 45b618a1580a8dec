from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from widgetbridge.errors import BridgeError, Cancelled, OriginMismatch
from widgetbridge.tool.definitions import ResourceContent

from .sandbox import SandboxDocument, build_sandbox_document
from .transport import ChannelTransport

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Any], Any]
CloseCallback = Callable[[BridgeError], Any]


def new_channel_id() -> str:
    return f"chn_{uuid4().hex[:12]}"


class SandboxChannel:
    """
    One isolated rendering context and the duplex message pipe to it.

    Every inbound frame must carry this channel's capability token; a frame
    from any other context is fatal and tears the channel down.
    """

    def __init__(self, transport: ChannelTransport, *, channel_id: Optional[str] = None) -> None:
        self.transport = transport
        self.channel_id = channel_id or new_channel_id()
        self._token = secrets.token_urlsafe(32)
        self._subscribers: List[MessageCallback] = []
        self._close_callbacks: List[CloseCallback] = []
        self._reader: Optional[asyncio.Task] = None
        self.document: Optional[SandboxDocument] = None
        self.size: Optional[Dict[str, float]] = None
        self.closed = False
        self.close_error: Optional[BridgeError] = None

    @property
    def token(self) -> str:
        return self._token

    async def load(
        self,
        content: ResourceContent,
        *,
        csp: str,
        prefers_proxy: bool = False,
    ) -> SandboxDocument:
        """Open the rendering context with ``content`` and start reading from it."""
        if self.closed:
            raise Cancelled(f"Channel {self.channel_id} is closed")
        if self.document is not None:
            raise RuntimeError(f"Channel {self.channel_id} is already loaded")
        document = build_sandbox_document(
            channel_id=self.channel_id,
            token=self._token,
            uri=content.uri,
            markup=content.text,
            csp=csp,
            prefers_proxy=prefers_proxy,
        )
        await self.transport.open(document, self._token)
        self.document = document
        self._reader = asyncio.create_task(self._read_loop(), name=f"channel-reader-{self.channel_id}")
        logger.info("Channel %s loaded %s", self.channel_id, content.uri)
        return document

    def subscribe(self, callback: MessageCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def on_close(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise Cancelled(f"Channel {self.channel_id} is closed")
        try:
            await self.transport.send(payload)
        except (ConnectionError, asyncio.TimeoutError) as exc:
            logger.warning("Channel %s send failed: %s", self.channel_id, exc)
            await self.close(reason="send_failed")
            raise Cancelled(f"Channel {self.channel_id} send failed: {exc}") from exc

    def report_size(self, width: float, height: float) -> None:
        # advisory only; the host lays out with the latest value
        self.size = {"width": float(width), "height": float(height), "reported_at": time.time()}

    def _verify_origin(self, source: Optional[str]) -> bool:
        if not isinstance(source, str):
            return False
        return secrets.compare_digest(source.encode("utf-8"), self._token.encode("utf-8"))

    async def _read_loop(self) -> None:
        while not self.closed:
            frame = await self.transport.receive()
            if frame is None:
                logger.info("Channel %s: remote side disconnected", self.channel_id)
                await self.close(reason="disconnected")
                return
            if not self._verify_origin(frame.source):
                logger.warning("Channel %s: rejecting frame from foreign context", self.channel_id)
                await self.close(
                    reason="origin_mismatch",
                    error=OriginMismatch(f"Message origin does not match channel {self.channel_id}"),
                )
                return
            for callback in list(self._subscribers):
                try:
                    result = callback(frame.payload)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Channel %s subscriber failed", self.channel_id)

    async def close(self, *, reason: str = "disposed", error: Optional[BridgeError] = None) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_error = error or Cancelled(f"Channel {self.channel_id} closed: {reason}")

        reader = self._reader
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
        try:
            await self.transport.close()
        except Exception as exc:
            logger.warning("Channel %s transport close failed: %s", self.channel_id, exc)

        for callback in list(self._close_callbacks):
            try:
                result = callback(self.close_error)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Channel %s close callback failed", self.channel_id)
        self._subscribers.clear()
        logger.info("Channel %s closed (%s)", self.channel_id, reason)
