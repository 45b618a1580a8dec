from __future__ import annotations

import time
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional
from uuid import uuid4

if TYPE_CHECKING:
    from .channel import SandboxChannel
    from .router import MessageRouter


def new_app_id(prefix: str = "app") -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


class StreamPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"


class ToolCallStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ToolCallState:
    """Host-side view of the tool call a widget is rendering."""

    status: ToolCallStatus = ToolCallStatus.IDLE
    arguments: Dict[str, Any] = field(default_factory=dict)
    input_complete: bool = False
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    progress: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ToolCallStatus.COMPLETE, ToolCallStatus.FAILED)

    def merge_partial(self, partial: Mapping[str, Any]) -> None:
        # shallow overwrite; absent keys keep their previous value
        self.arguments.update(deepcopy(dict(partial)))
        self.status = ToolCallStatus.STREAMING

    def merge_final(self, arguments: Mapping[str, Any]) -> None:
        self.arguments.update(deepcopy(dict(arguments)))
        self.input_complete = True
        if self.status is ToolCallStatus.STREAMING:
            self.status = ToolCallStatus.IDLE

    def finish(
        self,
        *,
        result: Optional[Mapping[str, Any]] = None,
        error: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.progress = None
        if error is not None:
            self.status = ToolCallStatus.FAILED
            self.error = deepcopy(dict(error))
            self.result = None
        else:
            self.status = ToolCallStatus.COMPLETE
            self.result = deepcopy(dict(result or {}))
            self.error = None

    def view(self) -> Dict[str, Any]:
        """Arguments overlaid by the fields the terminal result explicitly provides."""
        observed = deepcopy(self.arguments)
        if self.result:
            observed.update(deepcopy(self.result))
        return observed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "arguments": deepcopy(self.arguments),
            "input_complete": self.input_complete,
            "result": deepcopy(self.result),
            "error": deepcopy(self.error),
            "progress": deepcopy(self.progress),
        }


@dataclass
class WidgetSession:
    app_id: str
    tool_name: str
    resource_uri: str
    channel: "SandboxChannel"
    router: "MessageRouter"
    invocation_id: Optional[str] = None
    snapshot: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)

    @property
    def phase(self) -> SessionPhase:
        return self.router.phase

    @property
    def tool_state(self) -> ToolCallState:
        return self.router.tool_state

    @property
    def is_open(self) -> bool:
        return self.phase is not SessionPhase.CLOSED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app_id": self.app_id,
            "tool_name": self.tool_name,
            "resource_uri": self.resource_uri,
            "invocation_id": self.invocation_id,
            "phase": self.phase.value,
            "stream": self.router.stream.value,
            "tool_state": self.tool_state.to_dict(),
            "size": self.channel.size,
            "created_at": self.created_at,
        }
