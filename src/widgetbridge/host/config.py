from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Iterable, Optional, Tuple

_PERSISTENCE_BACKENDS = ("memory", "file")


@dataclass(frozen=True)
class BridgeRuntimeSettings:
    host: str = "127.0.0.1"
    port: int = 8777
    token: Optional[str] = None
    tool_call_timeout_seconds: float = 30.0
    hello_timeout_seconds: float = 5.0
    handshake_timeout_seconds: float = 10.0
    teardown_timeout_seconds: float = 0.5
    send_timeout_seconds: float = 2.5
    start_timeout_seconds: float = 5.0
    resource_fetch_timeout_seconds: float = 10.0
    allowed_connect_domains: Tuple[str, ...] = ()
    allowed_resource_domains: Tuple[str, ...] = ()
    allowed_link_schemes: Tuple[str, ...] = ("https",)
    persistence_backend: str = "memory"
    persistence_dir: str = "storage/widgetbridge/snapshots"


_RUNTIME_SETTINGS = BridgeRuntimeSettings()


def _normalize_int(value: Any, default: int, *, minimum: int = 0) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    if parsed < minimum:
        return default
    return parsed


def _normalize_float(value: Any, default: float, *, minimum: float = 0.0) -> float:
    try:
        parsed = float(value)
    except Exception:
        return default
    if parsed < minimum:
        return default
    return parsed


def _normalize_str_tuple(value: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Iterable):
        return default
    items = []
    for item in value:
        text = str(item or "").strip()
        if text and text not in items:
            items.append(text)
    return tuple(items)


def _normalize_backend(value: Any, default: str) -> str:
    backend = str(value or "").strip().lower()
    return backend if backend in _PERSISTENCE_BACKENDS else default


def configure_bridge_runtime(config_dict: dict[str, Any]) -> BridgeRuntimeSettings:
    """Configure process-wide bridge defaults from the ``bridge_config`` block."""
    global _RUNTIME_SETTINGS

    block = config_dict.get("bridge_config") if isinstance(config_dict, dict) else None
    if not isinstance(block, dict):
        return _RUNTIME_SETTINGS

    token = block.get("token")
    token_env_var = str(block.get("token_env_var") or "").strip()
    if not token and token_env_var:
        token = os.getenv(token_env_var)

    current = _RUNTIME_SETTINGS
    _RUNTIME_SETTINGS = replace(
        current,
        host=str(block.get("host") or current.host),
        port=_normalize_int(block.get("port"), current.port, minimum=0),
        token=((token or "").strip() or None),
        tool_call_timeout_seconds=_normalize_float(
            block.get("tool_call_timeout_seconds"),
            current.tool_call_timeout_seconds,
            minimum=0.1,
        ),
        hello_timeout_seconds=_normalize_float(
            block.get("hello_timeout_seconds"),
            current.hello_timeout_seconds,
            minimum=0.2,
        ),
        handshake_timeout_seconds=_normalize_float(
            block.get("handshake_timeout_seconds"),
            current.handshake_timeout_seconds,
            minimum=0.2,
        ),
        teardown_timeout_seconds=_normalize_float(
            block.get("teardown_timeout_seconds"),
            current.teardown_timeout_seconds,
            minimum=0.0,
        ),
        send_timeout_seconds=_normalize_float(
            block.get("send_timeout_seconds"),
            current.send_timeout_seconds,
            minimum=0.1,
        ),
        start_timeout_seconds=_normalize_float(
            block.get("start_timeout_seconds"),
            current.start_timeout_seconds,
            minimum=0.2,
        ),
        resource_fetch_timeout_seconds=_normalize_float(
            block.get("resource_fetch_timeout_seconds"),
            current.resource_fetch_timeout_seconds,
            minimum=0.1,
        ),
        allowed_connect_domains=_normalize_str_tuple(
            block.get("allowed_connect_domains"),
            current.allowed_connect_domains,
        ),
        allowed_resource_domains=_normalize_str_tuple(
            block.get("allowed_resource_domains"),
            current.allowed_resource_domains,
        ),
        allowed_link_schemes=tuple(
            scheme.lower()
            for scheme in _normalize_str_tuple(
                block.get("allowed_link_schemes"),
                current.allowed_link_schemes,
            )
        ),
        persistence_backend=_normalize_backend(
            block.get("persistence_backend"),
            current.persistence_backend,
        ),
        persistence_dir=str(block.get("persistence_dir") or current.persistence_dir),
    )
    return _RUNTIME_SETTINGS


def get_bridge_runtime_settings() -> BridgeRuntimeSettings:
    return _RUNTIME_SETTINGS


def reset_bridge_runtime() -> None:
    global _RUNTIME_SETTINGS
    _RUNTIME_SETTINGS = BridgeRuntimeSettings()
