from widgetbridge.host.sandbox import build_content_security_policy, build_sandbox_document
from widgetbridge.tool import CspPolicy


def _directive(csp, name):
    for part in csp.split("; "):
        if part.startswith(name + " "):
            return part[len(name) + 1:]
    return None


def test_csp_intersects_with_host_allow_list():
    policy = CspPolicy(
        connect_domains=["https://api.example.com", "https://evil.example.net"],
        resource_domains=["https://cdn.example.com"],
    )
    csp = build_content_security_policy(
        policy,
        allowed_connect_domains=["https://api.example.com"],
        allowed_resource_domains=[],
    )
    assert _directive(csp, "connect-src") == "https://api.example.com"
    assert "https://evil.example.net" not in csp
    assert "https://cdn.example.com" not in csp
    assert _directive(csp, "default-src") == "'none'"


def test_csp_without_requests_blocks_network():
    csp = build_content_security_policy(None, allowed_connect_domains=["*"])
    assert _directive(csp, "connect-src") == "'none'"
    assert _directive(csp, "frame-src") == "'none'"


def test_csp_wildcard_grants_requested_origins():
    policy = CspPolicy(resource_domains=["https://fonts.example.com"])
    csp = build_content_security_policy(policy, allowed_resource_domains=["*"])
    assert _directive(csp, "font-src").startswith("'self' https://fonts.example.com")


def test_document_carries_csp_and_token():
    document = build_sandbox_document(
        channel_id="chn_1",
        token="tok-123",
        uri="ui://docs/review-diff",
        markup="<html><head><title>x</title></head><body></body></html>",
        csp="default-src 'none'",
    )
    head = document.html.split("<title>")[0]
    assert "Content-Security-Policy" in head
    assert "default-src &#x27;none&#x27;" in head
    assert 'name="widgetbridge-token" content="tok-123"' in head
    assert document.sandbox_attribute == "allow-scripts allow-forms"


def test_document_without_head_gets_one():
    document = build_sandbox_document(
        channel_id="chn_2",
        token="tok",
        uri="ui://a/b",
        markup="<div>bare</div>",
        csp="default-src 'none'",
        prefers_proxy=True,
    )
    assert document.html.startswith("<head><meta")
    assert document.html.endswith("<div>bare</div>")
    assert "allow-same-origin" in document.sandbox_flags
