import pytest

from widgetbridge.command.command_utils import build_registry
from widgetbridge.util.file_utils import from_json_or_yaml


def _config(tools):
    return {
        "bridge_config": {
            "resources": [
                {"uri": "ui://demo/echo.html", "name": "Echo", "path": "widgets/echo.html"},
            ],
            "tools": tools,
        }
    }


@pytest.fixture
def base_dir(tmp_path):
    (tmp_path / "widgets").mkdir()
    (tmp_path / "widgets" / "echo.html").write_text("<p>echo</p>", encoding="utf-8")
    return tmp_path


@pytest.mark.asyncio
async def test_build_registry_from_config(base_dir):
    registry = build_registry(
        _config([
            {
                "name": "echo",
                "description": "Echo the arguments back.",
                "handler": "builtins:dict",
                "resource_uri": "ui://demo/echo.html",
                "csp": {"connectDomains": ["https://api.example.com"]},
                "input_schema": {"type": "object", "properties": {"text": {"type": "string"}}},
            }
        ]),
        base_dir=base_dir,
    )
    assert registry.tool_names == ["echo"]
    assert registry.get("echo").ui.csp.connect_domains == ["https://api.example.com"]
    assert await registry.execute("echo", {"text": "hi"}) == {"text": "hi"}
    content = await registry.resolve_resource("ui://demo/echo.html")
    assert content.text == "<p>echo</p>"


def test_dangling_resource_reference_rejected(base_dir):
    with pytest.raises(ValueError):
        build_registry(
            _config([{"name": "echo", "handler": "builtins:dict", "resource_uri": "ui://demo/missing.html"}]),
            base_dir=base_dir,
        )


def test_handler_path_must_name_attribute(base_dir):
    with pytest.raises(ValueError):
        build_registry(_config([{"name": "echo", "handler": "builtins"}]), base_dir=base_dir)


def test_from_json_or_yaml(tmp_path):
    path = tmp_path / "bridge.yaml"
    path.write_text("bridge_config:\n  port: 9000\n", encoding="utf-8")
    assert from_json_or_yaml(path) == {"bridge_config": {"port": 9000}}
    other = tmp_path / "bridge.txt"
    other.write_text("port: 1", encoding="utf-8")
    with pytest.raises(ValueError):
        from_json_or_yaml(other)
