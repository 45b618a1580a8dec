"""
Widget host: serve sandboxed widgets of the configured tools over WebSocket.

> widgetbridge-host --config configs/bridge_config.yaml --open show_counter
"""
from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path

import click

from widgetbridge.command.command_utils import (
    build_registry,
    get_package_root,
    prepare_runtime_config,
    setup_command_logger,
)
from widgetbridge.errors import BridgeError
from widgetbridge.host.config import get_bridge_runtime_settings
from widgetbridge.host.coordinator import SessionCoordinator
from widgetbridge.host.persistence import get_snapshot_store
from widgetbridge.host.server import WebSocketGateway
from widgetbridge.util.file_utils import from_json_or_yaml

PACKAGE_ROOT = get_package_root()
_json_config = PACKAGE_ROOT / "configs" / "bridge_config.json"
_yaml_config = PACKAGE_ROOT / "configs" / "bridge_config.yaml"
DEFAULT_CONFIG_PATH = _json_config if _json_config.exists() else _yaml_config


@click.command(name="widgetbridge-host")
@click.option("--config", "-c", default=str(DEFAULT_CONFIG_PATH),
              help="Path to the configuration file (YAML or JSON).",
              type=click.Path(exists=True, dir_okay=False))
@click.option("--host", default=None, help="Override bridge_config.host.")
@click.option("--port", default=None, type=int, help="Override bridge_config.port.")
@click.option("--open", "open_tools", multiple=True,
              help="Open a widget session for this tool at startup (repeatable).")
@click.option("--arguments", default="{}",
              help="JSON object streamed as tool input to widgets opened with --open.")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging.")
def run(config, host, port, open_tools, arguments, verbose):
    logger = setup_command_logger(
        log_filename="widgetbridge-host.log",
        verbose=verbose,
    )

    click.echo(f"Loading configuration from {config}")
    config_path = Path(config)
    config_dict = from_json_or_yaml(config_path)
    block = config_dict.setdefault("bridge_config", {})
    if host:
        block["host"] = host
    if port is not None:
        block["port"] = port
    prepare_runtime_config(config_dict)
    settings = get_bridge_runtime_settings()

    try:
        tool_arguments = json.loads(arguments)
    except ValueError as exc:
        raise click.BadParameter(f"--arguments is not valid JSON: {exc}")
    if not isinstance(tool_arguments, dict):
        raise click.BadParameter("--arguments must be a JSON object")

    try:
        registry = build_registry(config_dict, base_dir=config_path.parent)
    except (KeyError, ValueError, ImportError, BridgeError) as exc:
        logger.error("Invalid tool configuration: %s", exc)
        click.echo(f"Error: invalid tool configuration: {exc}")
        sys.exit(1)
    logger.info("Registered %d tool(s) and %d resource(s)", len(registry), len(registry.list_resources()))

    gateway = WebSocketGateway(
        host=settings.host,
        port=settings.port,
        token=settings.token,
        hello_timeout_seconds=settings.hello_timeout_seconds,
        start_timeout_seconds=settings.start_timeout_seconds,
        send_timeout_seconds=settings.send_timeout_seconds,
    )
    coordinator = SessionCoordinator(
        registry,
        snapshot_store=get_snapshot_store(),
        transport_factory=gateway.transport_factory,
        settings=settings,
        on_message=lambda app_id, params: click.echo(f"[{app_id}] {params.role}: {params.content}"),
    )
    stop_event = asyncio.Event()

    def _handle_sig(signum, frame):
        logger.info("Received signal %s. Stopping widget host.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_sig)
    signal.signal(signal.SIGTERM, _handle_sig)

    async def _main():
        endpoint = await gateway.start()
        click.echo(f"Widget gateway listening on {endpoint.ws_url}")
        try:
            for tool_name in open_tools:
                session = await coordinator.open(tool_name, tool_arguments)
                click.echo(
                    f"Opened {tool_name} as {session.app_id}: "
                    f"connect with channel_id={session.channel.channel_id} token={session.channel.token}"
                )
            await stop_event.wait()
        finally:
            await coordinator.close()
            await gateway.stop()

    try:
        asyncio.run(_main())
    except BridgeError as exc:
        logger.error("Widget host failed: %s", exc.message)
        click.echo(f"Error: {exc.message}")
        sys.exit(1)
    click.echo("Widget host stopped.")


if __name__ == "__main__":
    run()
