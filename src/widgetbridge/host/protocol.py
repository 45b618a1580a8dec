from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from widgetbridge.errors import InvalidMessage, MethodNotFound, ParseError

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2025-06-18"
PERSIST_CONTENT_TYPE = "botdojo/persist"
PROGRESS_MARKER = "_botdojoProgress"

# widget -> host
METHOD_INITIALIZE = "ui/initialize"
METHOD_INITIALIZED = "ui/notifications/initialized"
METHOD_TOOLS_CALL = "tools/call"
METHOD_MESSAGE = "ui/message"
METHOD_OPEN_LINK = "ui/open-link"
METHOD_SIZE_CHANGED = "ui/notifications/size-changed"

# host -> widget
METHOD_TOOL_INPUT = "ui/notifications/tool-input"
METHOD_TOOL_INPUT_PARTIAL = "ui/notifications/tool-input-partial"
METHOD_TOOL_RESULT = "ui/notifications/tool-result"
METHOD_TOOL_CANCELLED = "ui/notifications/tool-cancelled"
METHOD_HOST_CONTEXT_CHANGED = "ui/notifications/host-context-changed"
METHOD_RESOURCE_TEARDOWN = "ui/resource-teardown"

# older widget builds still emit these spellings
METHOD_ALIASES = {
    "ui/size-change": METHOD_SIZE_CHANGED,
    "ui/notifications/size-change": METHOD_SIZE_CHANGED,
}

WIDGET_METHODS = frozenset(
    {
        METHOD_INITIALIZE,
        METHOD_INITIALIZED,
        METHOD_TOOLS_CALL,
        METHOD_MESSAGE,
        METHOD_OPEN_LINK,
        METHOD_SIZE_CHANGED,
    }
)

HOST_METHODS = frozenset(
    {
        METHOD_TOOL_INPUT,
        METHOD_TOOL_INPUT_PARTIAL,
        METHOD_TOOL_RESULT,
        METHOD_TOOL_CANCELLED,
        METHOD_HOST_CONTEXT_CHANGED,
        METHOD_RESOURCE_TEARDOWN,
    }
)

RequestId = Union[int, str]


class InitializeParams(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    protocol_version: Optional[str] = Field(default=None, alias="protocolVersion")
    app_info: Dict[str, Any] = Field(default_factory=dict, alias="appInfo")
    app_capabilities: Dict[str, Any] = Field(default_factory=dict, alias="appCapabilities")


class EmptyParams(BaseModel):
    model_config = ConfigDict(extra="allow")


class ToolCallParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, max_length=256)
    # left untyped so that non-object arguments surface as schema errors
    arguments: Any = Field(default_factory=dict)


class UiMessageParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = "user"
    content: Any = None

    @property
    def persist_state(self) -> Optional[Dict[str, Any]]:
        content = self.content
        if not isinstance(content, dict) or content.get("type") != PERSIST_CONTENT_TYPE:
            return None
        state = content.get("state")
        return dict(state) if isinstance(state, dict) else {}

    @property
    def is_persist(self) -> bool:
        return self.persist_state is not None


class OpenLinkParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str = Field(min_length=1, max_length=4096)
    target: Optional[str] = None


class SizeChangedParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    width: float = Field(ge=0)
    height: float = Field(ge=0)


class ToolResultParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _validate_exactly_one(self) -> "ToolResultParams":
        if (self.result is None) == (self.error is None):
            raise ValueError("tool-result requires exactly one of result/error")
        return self


class _WidgetEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: Optional[RequestId] = None

    @property
    def is_request(self) -> bool:
        return self.id is not None


class InitializeRequest(_WidgetEnvelope):
    method: Literal["ui/initialize"]
    params: InitializeParams = Field(default_factory=InitializeParams)


class InitializedNotification(_WidgetEnvelope):
    method: Literal["ui/notifications/initialized"]
    params: EmptyParams = Field(default_factory=EmptyParams)


class ToolCallRequest(_WidgetEnvelope):
    method: Literal["tools/call"]
    params: ToolCallParams


class UiMessageRequest(_WidgetEnvelope):
    method: Literal["ui/message"]
    params: UiMessageParams = Field(default_factory=UiMessageParams)


class OpenLinkRequest(_WidgetEnvelope):
    method: Literal["ui/open-link"]
    params: OpenLinkParams


class SizeChangedNotification(_WidgetEnvelope):
    method: Literal["ui/notifications/size-changed"]
    params: SizeChangedParams


WidgetMessage = Annotated[
    Union[
        InitializeRequest,
        InitializedNotification,
        ToolCallRequest,
        UiMessageRequest,
        OpenLinkRequest,
        SizeChangedNotification,
    ],
    Field(discriminator="method"),
]

WIDGET_MESSAGE_TYPES = (
    InitializeRequest,
    InitializedNotification,
    ToolCallRequest,
    UiMessageRequest,
    OpenLinkRequest,
    SizeChangedNotification,
)

_WIDGET_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(WidgetMessage)


class WidgetResponse(BaseModel):
    """Widget's answer to a host-originated request."""

    model_config = ConfigDict(extra="ignore")

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: RequestId
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None


def recover_request_id(payload: Any) -> Optional[RequestId]:
    if not isinstance(payload, dict):
        return None
    value = payload.get("id")
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        return None
    return value


def _validation_messages(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err.get('loc', ())) or 'root'}: {err.get('msg')}"
        for err in exc.errors()
    ]


def parse_widget_frame(payload: Any) -> Union[WidgetMessage, WidgetResponse]:
    """
    Parse one decoded frame sent by a widget.

    Raises:
        InvalidMessage: Not a JSON-RPC envelope, or params of the wrong shape.
        MethodNotFound: Method outside the widget vocabulary.
    """
    if payload is None:
        raise ParseError("Frame is not valid JSON")
    if not isinstance(payload, dict):
        raise InvalidMessage("Frame is not a JSON object")

    method = payload.get("method")
    if method is None:
        if "id" not in payload or ("result" not in payload and "error" not in payload):
            raise InvalidMessage("Frame is neither a request, a notification nor a response")
        try:
            return WidgetResponse.model_validate(payload)
        except ValidationError as exc:
            raise InvalidMessage("Malformed response", data=_validation_messages(exc)) from exc

    if not isinstance(method, str):
        raise InvalidMessage("Method must be a string")
    method = METHOD_ALIASES.get(method, method)
    if method not in WIDGET_METHODS:
        kind = "host-only" if method in HOST_METHODS else "unknown"
        raise MethodNotFound(f"Method not supported from widget ({kind}): {method}", data={"method": method})

    data = dict(payload)
    data["method"] = method
    if data.get("params") is None:
        data.pop("params", None)
    try:
        return _WIDGET_MESSAGE_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise InvalidMessage(f"Invalid params for {method}", data=_validation_messages(exc)) from exc
