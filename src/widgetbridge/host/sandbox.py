from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from widgetbridge.tool.definitions import CspPolicy

logger = logging.getLogger(__name__)

BASE_SANDBOX_FLAGS: Tuple[str, ...] = ("allow-scripts", "allow-forms")
WILDCARD = "*"

_HEAD_RE = re.compile(r"<head(\s[^>]*)?>", re.IGNORECASE)
_HTML_RE = re.compile(r"<html(\s[^>]*)?>", re.IGNORECASE)


@dataclass(frozen=True)
class SandboxDocument:
    """Markup handed to the isolated rendering context of one channel."""

    channel_id: str
    uri: str
    html: str
    csp: str
    sandbox_flags: Tuple[str, ...]

    @property
    def sandbox_attribute(self) -> str:
        return " ".join(self.sandbox_flags)


def _allowed(requested: Iterable[str], allow_list: Sequence[str], *, kind: str, uri: str) -> List[str]:
    allow_all = WILDCARD in allow_list
    granted: List[str] = []
    for origin in requested:
        if allow_all or origin in allow_list:
            granted.append(origin)
        else:
            logger.warning("Dropping %s origin %s requested by %s: not in host allow-list", kind, origin, uri)
    return granted


def build_content_security_policy(
    policy: Optional[CspPolicy],
    *,
    allowed_connect_domains: Sequence[str] = (),
    allowed_resource_domains: Sequence[str] = (),
    uri: str = "",
) -> str:
    policy = policy or CspPolicy()
    connect = _allowed(policy.connect_domains, allowed_connect_domains, kind="connect", uri=uri)
    resources = _allowed(policy.resource_domains, allowed_resource_domains, kind="resource", uri=uri)

    resource_sources = " ".join(["'self'", *resources])
    connect_sources = " ".join(connect) if connect else "'none'"
    directives = [
        "default-src 'none'",
        f"script-src {resource_sources} 'unsafe-inline'",
        f"style-src {resource_sources} 'unsafe-inline'",
        f"img-src {resource_sources} data: blob:",
        f"font-src {resource_sources} data:",
        f"media-src {resource_sources} data: blob:",
        f"connect-src {connect_sources}",
        "frame-src 'none'",
        "object-src 'none'",
        "base-uri 'self'",
    ]
    return "; ".join(directives)


def _inject_head(markup: str, tags: str) -> str:
    match = _HEAD_RE.search(markup)
    if match:
        return markup[: match.end()] + tags + markup[match.end():]
    match = _HTML_RE.search(markup)
    if match:
        return markup[: match.end()] + f"<head>{tags}</head>" + markup[match.end():]
    return f"<head>{tags}</head>" + markup


def build_sandbox_document(
    *,
    channel_id: str,
    token: str,
    uri: str,
    markup: str,
    csp: str,
    prefers_proxy: bool = False,
) -> SandboxDocument:
    flags = BASE_SANDBOX_FLAGS + (("allow-same-origin",) if prefers_proxy else ())
    tags = (
        f'<meta http-equiv="Content-Security-Policy" content="{html.escape(csp, quote=True)}">'
        f'<meta name="widgetbridge-channel" content="{html.escape(channel_id, quote=True)}">'
        f'<meta name="widgetbridge-token" content="{html.escape(token, quote=True)}">'
    )
    return SandboxDocument(
        channel_id=channel_id,
        uri=uri,
        html=_inject_head(markup, tags),
        csp=csp,
        sandbox_flags=flags,
    )
