from __future__ import annotations

from typing import Any, Dict, Optional

ERROR_PARSE = -32700
ERROR_INVALID_REQUEST = -32600
ERROR_METHOD_NOT_FOUND = -32601
ERROR_SCHEMA_VALIDATION = -32602
ERROR_NOT_INITIALIZED = -32002
ERROR_UNKNOWN_TOOL = -32010
ERROR_UNKNOWN_RESOURCE = -32011
ERROR_DUPLICATE_NAME = -32012
ERROR_HANDLER = -32020
ERROR_TIMEOUT = -32030
ERROR_CANCELLED = -32031
ERROR_ORIGIN_MISMATCH = -32040


class BridgeError(Exception):
    """Base class for every failure that can cross the host/widget boundary."""

    code: int = ERROR_INVALID_REQUEST

    def __init__(self, message: str, *, data: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data

    def to_error(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class SchemaValidationError(BridgeError):
    code = ERROR_SCHEMA_VALIDATION


class UnknownTool(BridgeError):
    code = ERROR_UNKNOWN_TOOL


class UnknownResource(BridgeError):
    code = ERROR_UNKNOWN_RESOURCE


class DuplicateName(BridgeError):
    code = ERROR_DUPLICATE_NAME


class NotInitialized(BridgeError):
    code = ERROR_NOT_INITIALIZED


class HandlerError(BridgeError):
    """Tool handler failure; ``data`` holds the handler's opaque payload."""

    code = ERROR_HANDLER


class Timeout(BridgeError):
    code = ERROR_TIMEOUT


class Cancelled(BridgeError):
    code = ERROR_CANCELLED


class OriginMismatch(BridgeError):
    code = ERROR_ORIGIN_MISMATCH


class MethodNotFound(BridgeError):
    code = ERROR_METHOD_NOT_FOUND


class InvalidMessage(BridgeError):
    code = ERROR_INVALID_REQUEST


class ParseError(InvalidMessage):
    """Frame could not be decoded as JSON."""

    code = ERROR_PARSE


_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        SchemaValidationError,
        UnknownTool,
        UnknownResource,
        DuplicateName,
        NotInitialized,
        HandlerError,
        Timeout,
        Cancelled,
        OriginMismatch,
        MethodNotFound,
        InvalidMessage,
        ParseError,
    )
}


def error_from_payload(error: Any) -> BridgeError:
    """Rebuild a typed exception from a JSON-RPC error object."""
    if not isinstance(error, dict):
        return HandlerError(str(error or "unknown error"), data=error)
    try:
        code = int(error.get("code"))
    except (TypeError, ValueError):
        code = ERROR_HANDLER
    cls = _ERRORS_BY_CODE.get(code, HandlerError)
    return cls(str(error.get("message") or "unknown error"), data=error.get("data"))
