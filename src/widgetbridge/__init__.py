from widgetbridge.errors import BridgeError
from widgetbridge.host import SessionCoordinator
from widgetbridge.tool import ToolRegistry, tool

__version__ = "0.1.0"

__all__ = ["BridgeError", "SessionCoordinator", "ToolRegistry", "tool", "__version__"]
