"""
Host side of the widget bridge: sandbox channels, the protocol router,
state persistence and the session coordinator.
"""

from .channel import SandboxChannel
from .config import (
    BridgeRuntimeSettings,
    configure_bridge_runtime,
    get_bridge_runtime_settings,
)
from .coordinator import SessionCoordinator
from .persistence import (
    FileSnapshotStore,
    MemorySnapshotStore,
    SnapshotStore,
    get_snapshot_store,
)
from .router import MessageRouter, RouterTransition
from .server import BridgeEndpoint, WebSocketGateway
from .session import SessionPhase, StreamPhase, ToolCallState, ToolCallStatus, WidgetSession
from .transport import ChannelTransport, MemoryTransport, WebSocketTransport

__all__ = [
    "BridgeEndpoint",
    "BridgeRuntimeSettings",
    "ChannelTransport",
    "FileSnapshotStore",
    "MemorySnapshotStore",
    "MemoryTransport",
    "MessageRouter",
    "RouterTransition",
    "SandboxChannel",
    "SessionCoordinator",
    "SessionPhase",
    "SnapshotStore",
    "StreamPhase",
    "ToolCallState",
    "ToolCallStatus",
    "WebSocketGateway",
    "WebSocketTransport",
    "WidgetSession",
    "configure_bridge_runtime",
    "get_bridge_runtime_settings",
    "get_snapshot_store",
]
