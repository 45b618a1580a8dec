from __future__ import annotations

import asyncio
import json
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from websockets.exceptions import ConnectionClosed

from .sandbox import SandboxDocument

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(frozen=True)
class InboundFrame:
    # capability token the transport observed for the sender
    source: Optional[str]
    payload: Any
    raw: Any = None


def decode_frame(raw: Any) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def encode_frame(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


class ChannelTransport(ABC):
    """Raw duplex pipe between the host and one sandboxed rendering context."""

    @abstractmethod
    async def open(self, document: SandboxDocument, token: str) -> None:
        """Load the sandbox document into a fresh rendering context."""

    @abstractmethod
    async def send(self, payload: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def receive(self) -> Optional[InboundFrame]:
        """Next inbound frame, or None once the remote side is gone."""

    @abstractmethod
    async def close(self) -> None:
        ...


class MemoryTransport(ChannelTransport):
    """
    In-process transport backed by asyncio queues.

    The widget side is driven through ``post`` / ``next_message``; used by
    embedding hosts that run the widget in the same process, and by tests.
    """

    def __init__(self) -> None:
        self._inbound: "asyncio.Queue[Optional[InboundFrame]]" = asyncio.Queue()
        self._outbound: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.document: Optional[SandboxDocument] = None
        self.token: Optional[str] = None
        self.closed = False

    async def open(self, document: SandboxDocument, token: str) -> None:
        self.document = document
        self.token = token

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        self.sent.append(payload)
        self._outbound.put_nowait(payload)

    async def receive(self) -> Optional[InboundFrame]:
        if self.closed:
            return None
        return await self._inbound.get()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._inbound.put_nowait(None)

    # widget side

    def post(self, payload: Any, *, source: Any = _UNSET) -> None:
        origin = self.token if source is _UNSET else source
        self._inbound.put_nowait(InboundFrame(source=origin, payload=decode_frame(payload), raw=payload))

    def disconnect(self) -> None:
        self._inbound.put_nowait(None)

    async def next_message(self, timeout: float = 1.0) -> Dict[str, Any]:
        return await asyncio.wait_for(self._outbound.get(), timeout=timeout)

    def drain(self) -> List[Dict[str, Any]]:
        items = []
        while not self._outbound.empty():
            items.append(self._outbound.get_nowait())
        return items


class WebSocketTransport(ChannelTransport):
    """
    Transport over a ``websockets`` connection attached after the channel opens.

    A client attaches only by presenting the channel token in its hello, and
    nothing is sent to it before that. Frames from the connection are tagged
    with the presented token; the channel compares it against its own.
    """

    def __init__(self, *, send_timeout: float = 2.5) -> None:
        self.send_timeout = max(0.1, float(send_timeout))
        self.document: Optional[SandboxDocument] = None
        self._websocket: Any = None
        self._presented_token: Optional[str] = None
        self._token: Optional[str] = None
        self._attached = asyncio.Event()
        self._backlog: List[Dict[str, Any]] = []
        self._closed = False

    @property
    def channel_id(self) -> Optional[str]:
        return self.document.channel_id if self.document else None

    @property
    def attached(self) -> bool:
        return self._attached.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self, document: SandboxDocument, token: str) -> None:
        self.document = document
        self._token = token

    def accepts(self, presented_token: Any) -> bool:
        """Whether a client presenting ``presented_token`` may attach."""
        if not self._token or not isinstance(presented_token, str):
            return False
        return secrets.compare_digest(presented_token.encode("utf-8"), self._token.encode("utf-8"))

    async def attach(self, websocket: Any, presented_token: Optional[str]) -> None:
        if self._closed:
            raise ConnectionError("transport closed")
        if not self.accepts(presented_token):
            # the load frame embeds the channel token
            raise PermissionError(f"channel {self.channel_id} token mismatch")
        if self._attached.is_set():
            raise ConnectionError(f"channel {self.channel_id} already has a connection")
        self._websocket = websocket
        self._presented_token = presented_token
        document = self.document
        if document is not None:
            await self._send_now(
                {
                    "type": "sandbox/load",
                    "channelId": document.channel_id,
                    "uri": document.uri,
                    "html": document.html,
                    "csp": document.csp,
                    "sandbox": document.sandbox_attribute,
                }
            )
        backlog, self._backlog = self._backlog, []
        for payload in backlog:
            await self._send_now(payload)
        self._attached.set()

    async def _send_now(self, payload: Dict[str, Any]) -> None:
        await asyncio.wait_for(self._websocket.send(encode_frame(payload)), timeout=self.send_timeout)

    async def send(self, payload: Dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionError("transport closed")
        if not self._attached.is_set():
            self._backlog.append(payload)
            return
        await self._send_now(payload)

    async def receive(self) -> Optional[InboundFrame]:
        await self._attached.wait()
        if self._closed or self._websocket is None:
            return None
        try:
            raw = await self._websocket.recv()
        except ConnectionClosed:
            return None
        return InboundFrame(source=self._presented_token, payload=decode_frame(raw), raw=raw)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        websocket = self._websocket
        # unblock a reader still waiting for an attachment
        self._attached.set()
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as exc:
                logger.debug("Closing websocket for channel %s failed: %s", self.channel_id, exc)
