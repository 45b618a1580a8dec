"""
Tools and widget resources exposed to sandboxed widgets.
"""

from .decorator import tool
from .definitions import (
    WIDGET_MIME_TYPE,
    CspPolicy,
    ResourceContent,
    ResourceDefinition,
    ToolDefinition,
    UiMeta,
)
from .registry import ToolRegistry

__all__ = [
    "CspPolicy",
    "ResourceContent",
    "ResourceDefinition",
    "ToolDefinition",
    "ToolRegistry",
    "UiMeta",
    "WIDGET_MIME_TYPE",
    "tool",
]
