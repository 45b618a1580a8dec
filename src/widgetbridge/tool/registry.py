"""
Tool & Resource Registry: the invocable tools and fetchable widget
resources of one host.

Pure data plus execution dispatch; knows nothing about channels.

Usage:
    from widgetbridge.tool.registry import ToolRegistry

    registry = ToolRegistry()
    registry.register(tool_definition)
    registry.register_resource(resource_definition)

    result = await registry.execute("apply-markdown", {"markdown": "..."})
    content = await registry.resolve_resource("ui://docs/review-diff")
"""

import inspect
import logging
from typing import Any, Dict, Iterator, List, Optional

import httpx
from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from widgetbridge.errors import (
    DuplicateName,
    HandlerError,
    SchemaValidationError,
    UnknownResource,
    UnknownTool,
)

from .definitions import ResourceContent, ResourceDefinition, ToolDefinition

logger = logging.getLogger(__name__)

MAX_REPORTED_SCHEMA_ERRORS = 5


def _handler_payload(exc: BaseException) -> Any:
    payload = getattr(exc, "payload", None)
    if payload is not None:
        return payload
    return {"type": type(exc).__name__, "message": str(exc)}


class ToolRegistry:
    """
    Tools and resources available to every widget session of a host.

    Shared read-only across sessions once populated. Concurrent ``execute``
    calls, even identical ones, are never de-duplicated.
    """

    def __init__(self, *, fetch_timeout: float = 10.0):
        self._tools: Dict[str, ToolDefinition] = {}
        self._validators: Dict[str, Draft7Validator] = {}
        self._resources: Dict[str, ResourceDefinition] = {}
        self.fetch_timeout = float(fetch_timeout)

    def register(self, tool: ToolDefinition) -> None:
        """
        Register a tool.

        Raises:
            DuplicateName: A tool with the same name is already registered.
            ValueError: The input schema is not a valid JSON schema.
        """
        if tool.name in self._tools:
            raise DuplicateName(f"Tool already registered: {tool.name}")
        try:
            Draft7Validator.check_schema(tool.input_schema)
        except SchemaError as exc:
            raise ValueError(f"Invalid input schema for tool {tool.name}: {exc.message}") from exc
        self._tools[tool.name] = tool
        self._validators[tool.name] = Draft7Validator(tool.input_schema)
        logger.debug("Registered tool: %s", tool.name)

    def register_resource(self, resource: ResourceDefinition) -> None:
        if resource.uri in self._resources:
            raise DuplicateName(f"Resource already registered: {resource.uri}")
        self._resources[resource.uri] = resource
        logger.debug("Registered resource: %s", resource.uri)

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def get_resource(self, uri: str) -> Optional[ResourceDefinition]:
        return self._resources.get(uri)

    def list_tools(self) -> List[Dict[str, Any]]:
        return [tool.to_listing() for tool in self._tools.values()]

    def list_resources(self) -> List[Dict[str, Any]]:
        return [resource.to_listing() for resource in self._resources.values()]

    def check_references(self) -> List[str]:
        """Return a message for every tool whose ``resource_uri`` resolves to nothing."""
        problems = []
        for tool in self._tools.values():
            uri = tool.resource_uri
            if uri and uri not in self._resources:
                problems.append(f"Tool {tool.name} references unknown resource {uri}")
        return problems

    def validate(self, name: str, args: Dict[str, Any]) -> None:
        validator = self._validators.get(name)
        if validator is None:
            raise UnknownTool(f"Tool not found: {name}")
        if not isinstance(args, dict):
            raise SchemaValidationError(
                f"Arguments for {name} must be an object",
                data={"validation_errors": ["root: not an object"]},
            )
        errors = sorted(validator.iter_errors(args), key=lambda e: list(e.absolute_path))
        if not errors:
            return
        messages = []
        for error in errors[:MAX_REPORTED_SCHEMA_ERRORS]:
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            messages.append(f"{path}: {error.message}")
        raise SchemaValidationError(
            f"Argument validation failed for {name}: {'; '.join(messages)}",
            data={"validation_errors": messages},
        )

    async def execute(self, name: str, args: Dict[str, Any]) -> Any:
        """
        Validate ``args`` and run the tool's handler.

        Raises:
            UnknownTool: No tool with this name.
            SchemaValidationError: ``args`` do not match the input schema;
                the handler is not invoked.
            HandlerError: The handler raised; ``data`` carries its payload.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownTool(f"Tool not found: {name}", data={"name": name})
        self.validate(name, args)

        try:
            result = tool.handler(dict(args))
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            raise HandlerError(f"Tool {name} failed: {exc}", data=_handler_payload(exc)) from exc
        return result

    async def resolve_resource(self, uri: str) -> ResourceContent:
        """
        Fetch the raw markup of a widget resource.

        Raises:
            UnknownResource: No resource with this uri.
        """
        resource = self._resources.get(uri)
        if resource is None:
            raise UnknownResource(f"Resource not found: {uri}", data={"uri": uri})

        if resource.fetch is not None:
            text = resource.fetch()
            if inspect.isawaitable(text):
                text = await text
        else:
            text = await self._fetch_remote(resource.uri)

        if not isinstance(text, str):
            raise UnknownResource(f"Resource {uri} returned no markup", data={"uri": uri})
        return ResourceContent(uri=resource.uri, mime_type=resource.mime_type, text=text)

    async def _fetch_remote(self, url: str) -> str:
        async with httpx.AsyncClient(timeout=self.fetch_timeout) as client:
            try:
                resp = await client.get(url)
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise UnknownResource(f"Failed to fetch resource {url}: {exc}", data={"uri": url}) from exc
        return resp.text

    @property
    def tool_names(self) -> List[str]:
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())
