from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .protocol import (
    JSONRPC_VERSION,
    METHOD_HOST_CONTEXT_CHANGED,
    METHOD_TOOL_CANCELLED,
    METHOD_TOOL_INPUT,
    METHOD_TOOL_INPUT_PARTIAL,
    METHOD_TOOL_RESULT,
    PROTOCOL_VERSION,
    RequestId,
    ToolResultParams,
)


def build_notification(method: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "method": method,
        "params": dict(params or {}),
    }


def build_request(request_id: RequestId, method: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    message = build_notification(method, params)
    message["id"] = request_id
    return message


def build_response(request_id: RequestId, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def build_error_response(request_id: Optional[RequestId], error: Mapping[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": dict(error)}


def build_tool_input_message(arguments: Mapping[str, Any]) -> Dict[str, Any]:
    return build_notification(METHOD_TOOL_INPUT, {"arguments": dict(arguments)})


def build_tool_input_partial_message(arguments: Mapping[str, Any]) -> Dict[str, Any]:
    return build_notification(METHOD_TOOL_INPUT_PARTIAL, {"arguments": dict(arguments)})


def build_tool_result_message(
    *,
    result: Optional[Mapping[str, Any]] = None,
    error: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    params = ToolResultParams(
        result=dict(result) if result is not None else None,
        error=dict(error) if error is not None else None,
    )
    if params.result is not None:
        return build_notification(METHOD_TOOL_RESULT, {"result": params.result})
    return build_notification(METHOD_TOOL_RESULT, {"error": params.error})


def build_tool_cancelled_message(reason: str) -> Dict[str, Any]:
    return build_notification(METHOD_TOOL_CANCELLED, {"reason": reason})


def build_host_context_message(context: Mapping[str, Any]) -> Dict[str, Any]:
    return build_notification(METHOD_HOST_CONTEXT_CHANGED, context)


def build_initialize_result(
    *,
    app_id: str,
    host_info: Mapping[str, Any],
    host_context: Mapping[str, Any],
    capabilities: Mapping[str, Any],
) -> Dict[str, Any]:
    """Capability summary returned to the widget's ``ui/initialize``."""
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "appId": app_id,
        "hostInfo": dict(host_info),
        "hostCapabilities": dict(capabilities),
        "hostContext": dict(host_context),
    }
