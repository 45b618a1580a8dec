from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from widgetbridge.errors import BridgeError

from .protocol import RequestId


@dataclass
class PendingRequest:
    request_id: RequestId
    method: str
    future: asyncio.Future
    # inbound = widget asked the host; outbound = host asked the widget
    inbound: bool = False
    task: Optional[asyncio.Task] = None
    created_at: float = field(default_factory=lambda: asyncio.get_running_loop().time())


class PendingRequests:
    """
    Unanswered requests of one channel.

    Widget-originated and host-originated requests draw ids from separate
    spaces, so entries are keyed by direction as well as by id.
    """

    def __init__(self) -> None:
        self._entries: Dict[Tuple[bool, str], PendingRequest] = {}
        self._counter = itertools.count(1)

    @staticmethod
    def _key(request_id: RequestId, inbound: bool) -> Tuple[bool, str]:
        return inbound, f"{type(request_id).__name__}:{request_id}"

    def next_id(self) -> int:
        """Next host request id not already awaiting a response."""
        while True:
            request_id = next(self._counter)
            if self._key(request_id, False) not in self._entries:
                return request_id

    def add(
        self,
        request_id: RequestId,
        method: str,
        *,
        inbound: bool = False,
    ) -> PendingRequest:
        key = self._key(request_id, inbound)
        if key in self._entries:
            raise ValueError(f"Request id already pending: {request_id!r}")
        entry = PendingRequest(
            request_id=request_id,
            method=method,
            future=asyncio.get_running_loop().create_future(),
            inbound=inbound,
        )
        self._entries[key] = entry
        return entry

    def get(self, request_id: RequestId, *, inbound: bool = False) -> Optional[PendingRequest]:
        return self._entries.get(self._key(request_id, inbound))

    def has(self, request_id: RequestId, *, inbound: bool = False) -> bool:
        return self._key(request_id, inbound) in self._entries

    def pop(self, request_id: RequestId, *, inbound: bool = False) -> Optional[PendingRequest]:
        return self._entries.pop(self._key(request_id, inbound), None)

    def resolve(self, request_id: RequestId, value: Any, *, inbound: bool = False) -> bool:
        entry = self.pop(request_id, inbound=inbound)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(value)
        return True

    def reject(self, request_id: RequestId, error: BridgeError, *, inbound: bool = False) -> bool:
        entry = self.pop(request_id, inbound=inbound)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
            entry.future.add_done_callback(_consume_exception)
        return True

    def reject_all(self, error_factory) -> List[PendingRequest]:
        """Fail every entry with ``error_factory(entry)`` and cancel its task."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            if entry.task is not None and not entry.task.done():
                entry.task.cancel()
            if not entry.future.done():
                entry.future.set_exception(error_factory(entry))
                # rejection is observed through the table, not necessarily awaited
                entry.future.add_done_callback(_consume_exception)
        return entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PendingRequest]:
        return iter(list(self._entries.values()))


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
