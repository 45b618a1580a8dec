from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

WIDGET_MIME_TYPE = "text/html;profile=mcp-app"
RESOURCE_SCHEMES = ("ui://", "https://")

ContentFetcher = Callable[[], Union[str, Awaitable[str]]]
ToolHandler = Callable[[Dict[str, Any]], Any]


def _clean_domains(values: Any) -> List[str]:
    seen: set[str] = set()
    cleaned: List[str] = []
    for value in values or ():
        text = str(value or "").strip().rstrip("/")
        if not text or text in seen:
            continue
        seen.add(text)
        cleaned.append(text)
    return cleaned


class CspPolicy(BaseModel):
    """Origins a widget asks to reach; the host intersects them with its allow-list."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    connect_domains: List[str] = Field(default_factory=list, alias="connectDomains")
    resource_domains: List[str] = Field(default_factory=list, alias="resourceDomains")

    @field_validator("connect_domains", "resource_domains", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> List[str]:
        return _clean_domains(value)


class UiMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    resource_uri: str = Field(alias="resourceUri", min_length=1)
    prefers_proxy: bool = Field(default=False, alias="prefersProxy")
    csp: CspPolicy = Field(default_factory=CspPolicy)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class ToolDefinition:
    name: str
    description: str
    handler: ToolHandler
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    ui: Optional[UiMeta] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.name = str(self.name or "").strip()
        if not self.name:
            raise ValueError("ToolDefinition.name must be a non-empty string.")
        if not callable(self.handler):
            raise ValueError(f"Tool '{self.name}' handler is not callable.")
        if not isinstance(self.input_schema, dict):
            raise ValueError(f"Tool '{self.name}' input_schema must be a JSON schema object.")
        if isinstance(self.ui, dict):
            self.ui = UiMeta.model_validate(self.ui)

    @property
    def resource_uri(self) -> Optional[str]:
        return self.ui.resource_uri if self.ui else None

    def to_listing(self) -> Dict[str, Any]:
        """MCP-style ``tools/list`` entry."""
        meta = dict(self.meta)
        if self.ui is not None:
            meta["ui"] = self.ui.to_dict()
        listing: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
        if meta:
            listing["_meta"] = meta
        return listing


@dataclass(frozen=True)
class ResourceContent:
    uri: str
    mime_type: str
    text: str


@dataclass
class ResourceDefinition:
    uri: str
    name: str = ""
    description: str = ""
    mime_type: str = WIDGET_MIME_TYPE
    fetch: Optional[ContentFetcher] = None

    def __post_init__(self) -> None:
        self.uri = str(self.uri or "").strip()
        if not self.uri.startswith(RESOURCE_SCHEMES):
            raise ValueError(
                f"Resource uri must use one of {list(RESOURCE_SCHEMES)}: {self.uri!r}"
            )
        if self.mime_type != WIDGET_MIME_TYPE:
            raise ValueError(
                f"Resource {self.uri} declares {self.mime_type!r}; expected {WIDGET_MIME_TYPE!r}."
            )
        if self.fetch is None and not self.is_remote:
            raise ValueError(f"Inline resource {self.uri} needs a content fetch operation.")

    @property
    def is_remote(self) -> bool:
        return self.uri.startswith("https://")

    def to_listing(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name or self.uri,
            "description": self.description,
            "mimeType": self.mime_type,
        }
