"""
Here we put util functions shared by the widgetbridge commands: paths, logging and config loading.
"""

import importlib
import os
from pathlib import Path
from typing import Any, Dict

import importlib.resources as importlib_resources

from widgetbridge.common.logger import setup_logging
from widgetbridge.host.config import configure_bridge_runtime
from widgetbridge.tool.definitions import WIDGET_MIME_TYPE, ResourceDefinition, ToolDefinition
from widgetbridge.tool.registry import ToolRegistry


def get_package_root():
    """
    Determines the root path of the 'widgetbridge' checkout (the directory holding configs/).
    """
    package_path = Path(importlib_resources.files("widgetbridge"))
    package_root = package_path.parents[1]
    return package_root.resolve()


def get_log_dir():
    """
    Determines a suitable path for the log file.
    Logs are stored in the user's home directory under '.widgetbridge/logs/'.
    """
    home_dir = Path.home()
    log_dir = home_dir / ".widgetbridge" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def setup_command_logger(log_filename: str, verbose: bool = False):
    config_path = get_package_root() / "configs" / "logging_config.yaml"
    return setup_logging(
        config_file_path=config_path if config_path.exists() else None,
        log_file_path=get_log_dir() / log_filename,
        verbose=verbose,
    )


def resolve_env_vars(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Resolve *_env_var keys in a config dict by pulling from os.environ.

    Example:
        {"token_env_var": "WIDGETBRIDGE_TOKEN"} -> {"token": "..."}
    """
    def _resolve_mapping(mapping: Dict[str, Any]) -> None:
        for key, value in list(mapping.items()):
            if isinstance(value, dict):
                _resolve_mapping(value)
                continue
            if isinstance(value, list):
                for item in value:
                    if isinstance(item, dict):
                        _resolve_mapping(item)
                continue
            if not isinstance(value, str) or not key.endswith("_env_var"):
                continue
            target_key = key[: -len("_env_var")]
            if mapping.get(target_key):
                continue
            env_value = os.getenv(value)
            if env_value:
                mapping[target_key] = env_value

    if isinstance(config_dict, dict):
        _resolve_mapping(config_dict)
    return config_dict


def prepare_runtime_config(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    resolve_env_vars(config_dict)
    configure_bridge_runtime(config_dict)
    return config_dict


def _import_handler(path: str):
    module_name, _, attr = str(path).partition(":")
    if not module_name or not attr:
        raise ValueError(f"Handler must look like 'package.module:function', got {path!r}")
    module = importlib.import_module(module_name)
    handler = getattr(module, attr)
    # functions decorated with @tool carry their own definition
    definition = getattr(handler, "definition", None)
    if isinstance(definition, ToolDefinition):
        return definition.handler
    return lambda args: handler(**args)


def _file_fetcher(path: Path):
    def fetch() -> str:
        return path.read_text(encoding="utf-8")

    return fetch


def build_registry(config_dict: Dict[str, Any], *, base_dir: Path) -> ToolRegistry:
    """
    Build a ToolRegistry from the ``resources`` and ``tools`` lists of ``bridge_config``.

    Resource entries map a ``ui://`` uri to an HTML file (relative to ``base_dir``);
    tool entries name a ``module:function`` handler and the resource they render.
    """
    block = config_dict.get("bridge_config") or {}
    registry = ToolRegistry(fetch_timeout=float(block.get("resource_fetch_timeout_seconds", 10.0)))

    for entry in block.get("resources") or []:
        uri = str(entry["uri"])
        fetch = None
        if entry.get("path"):
            path = Path(entry["path"])
            fetch = _file_fetcher(path if path.is_absolute() else base_dir / path)
        registry.register_resource(
            ResourceDefinition(
                uri=uri,
                name=str(entry.get("name") or uri),
                description=str(entry.get("description") or ""),
                mime_type=str(entry.get("mime_type") or WIDGET_MIME_TYPE),
                fetch=fetch,
            )
        )

    for entry in block.get("tools") or []:
        ui = None
        if entry.get("resource_uri"):
            ui = {
                "resourceUri": entry["resource_uri"],
                "prefersProxy": bool(entry.get("prefers_proxy", False)),
                "csp": entry.get("csp") or {},
            }
        registry.register(
            ToolDefinition(
                name=str(entry["name"]),
                description=str(entry.get("description") or ""),
                handler=_import_handler(entry["handler"]),
                input_schema=entry.get("input_schema") or {"type": "object", "properties": {}},
                ui=ui,
            )
        )

    problems = registry.check_references()
    if problems:
        raise ValueError("; ".join(problems))
    return registry
