"""
Tool Decorator: build a ToolDefinition straight from a function.

Generates the JSON input schema from the signature and docstring, and
attaches the UI metadata that links the tool to its widget resource.

Usage:
    from widgetbridge.tool.decorator import tool

    @tool(
        description="Propose document changes and show a diff for review.",
        resource_uri="ui://docs/review-diff",
    )
    async def suggest_update(updated_markdown: str, summary: str = "") -> dict:
        '''
        Args:
            updated_markdown: The full updated document text.
            summary: Short description of the changes.
        '''
        ...

    registry.register(suggest_update.definition)
"""

import asyncio
import inspect
from functools import wraps
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Type,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from .definitions import CspPolicy, ToolDefinition, UiMeta


# ═══════════════════════════════════════════════════════════════════
# TYPE TO JSON SCHEMA MAPPING
# ═══════════════════════════════════════════════════════════════════

def python_type_to_json_schema(py_type: Type) -> Dict[str, Any]:
    """Convert Python type hint to JSON schema type."""
    origin = get_origin(py_type)
    args = get_args(py_type)

    # Optional[X] → schema of X
    if origin is Union:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return python_type_to_json_schema(non_none[0])
        return {}

    if origin is list:
        item_type = args[0] if args else Any
        return {
            "type": "array",
            "items": python_type_to_json_schema(item_type),
        }

    if origin is dict:
        return {"type": "object"}

    type_map = {
        str: {"type": "string"},
        int: {"type": "integer"},
        float: {"type": "number"},
        bool: {"type": "boolean"},
        list: {"type": "array"},
        dict: {"type": "object"},
        type(None): {"type": "null"},
    }

    # Any and unknown types accept every value
    return dict(type_map.get(py_type, {}))


# ═══════════════════════════════════════════════════════════════════
# PARAMETER DESCRIPTION EXTRACTION
# ═══════════════════════════════════════════════════════════════════

def extract_param_descriptions(func: Callable) -> Dict[str, str]:
    """
    Extract parameter descriptions from the ``Args:`` docstring section.

    Supports formats:
        Args:
            param_name: Description here.
            param_name (type): Description here.
    """
    doc = inspect.getdoc(func) or ""
    descriptions = {}

    in_args_section = False
    current_param = None
    current_desc: List[str] = []

    for line in doc.split('\n'):
        stripped = line.strip()

        if stripped.lower() in ('args:', 'arguments:', 'parameters:'):
            in_args_section = True
            continue

        if stripped.lower() in ('returns:', 'return:', 'raises:', 'example:', 'examples:'):
            in_args_section = False
            if current_param:
                descriptions[current_param] = ' '.join(current_desc).strip()
            current_param = None
            continue

        if not (in_args_section and stripped):
            continue

        if ':' in stripped:
            if current_param:
                descriptions[current_param] = ' '.join(current_desc).strip()
            param_part, desc_part = stripped.split(':', 1)
            current_param = param_part.split('(')[0].strip()
            current_desc = [desc_part.strip()] if desc_part.strip() else []
        elif current_param:
            current_desc.append(stripped)

    if current_param:
        descriptions[current_param] = ' '.join(current_desc).strip()

    return descriptions


def build_input_schema(func: Callable) -> Dict[str, Any]:
    sig = inspect.signature(func)
    type_hints = get_type_hints(func) if hasattr(func, '__annotations__') else {}
    param_descriptions = extract_param_descriptions(func)

    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param_name, param in sig.parameters.items():
        if param_name in ('self', 'cls'):
            continue
        if param.kind in (
            inspect.Parameter.VAR_POSITIONAL,
            inspect.Parameter.VAR_KEYWORD,
        ):
            continue

        schema = python_type_to_json_schema(type_hints.get(param_name, Any))
        schema["description"] = param_descriptions.get(param_name, f"The {param_name} parameter")
        properties[param_name] = schema
        if param.default is inspect.Parameter.empty:
            required.append(param_name)

    return {
        "type": "object",
        "properties": properties,
        "required": required,
    }


# ═══════════════════════════════════════════════════════════════════
# THE DECORATOR
# ═══════════════════════════════════════════════════════════════════

def tool(
    description: str,
    resource_uri: Optional[str] = None,
    name: Optional[str] = None,
    prefers_proxy: bool = False,
    csp: Optional[Dict[str, Any]] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Callable:
    """
    Decorator that turns a function into a tool definition.

    Args:
        description: Human-readable description of what the tool does.
        resource_uri: Widget resource rendered for this tool's calls.
        name: Override tool name (defaults to function name).
        prefers_proxy: Ask the host to render the widget behind its sandbox proxy.
        csp: ``connectDomains`` / ``resourceDomains`` the widget needs.
        meta: Extra ``_meta`` entries (display name, caching hints).

    Returns:
        The function, with a ``.definition`` attribute holding the ToolDefinition.
    """

    def decorator(func: Callable) -> Callable:
        is_async = asyncio.iscoroutinefunction(func)

        async def handler(args: Dict[str, Any]) -> Any:
            if is_async:
                return await func(**args)
            return func(**args)

        ui = None
        if resource_uri:
            ui = UiMeta(
                resource_uri=resource_uri,
                prefers_proxy=prefers_proxy,
                csp=CspPolicy.model_validate(csp or {}),
            )

        definition = ToolDefinition(
            name=name or func.__name__,
            description=description,
            handler=handler,
            input_schema=build_input_schema(func),
            ui=ui,
            meta=dict(meta or {}),
        )

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            return await func(*args, **kwargs)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            return func(*args, **kwargs)

        wrapper = async_wrapper if is_async else sync_wrapper
        wrapper.definition = definition
        return wrapper

    return decorator
