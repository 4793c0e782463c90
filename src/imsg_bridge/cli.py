"""Typer CLI entrypoints for imsg-bridge."""

from __future__ import annotations

import asyncio
import json
import shutil
import signal
import sys
from typing import Any, Dict, Optional

import click
import typer
from rich.console import Console

from imsg_bridge.config import (
    Settings,
    initialize_project_config,
    load_settings,
    parse_channel_config,
    project_config_exists,
    read_config_document,
    resolve_project_config_root,
)
from imsg_bridge.console import ConsoleState, dispatch_console_command
from imsg_bridge.errors import BridgeError, ConfigError, error_summary
from imsg_bridge.local_host import LocalHost
from imsg_bridge.log import BridgeLogger
from imsg_bridge.pipeline import MessagePipeline
from imsg_bridge.render import render_doctor_text, render_notice
from imsg_bridge.schema import config_schema

app = typer.Typer(
    no_args_is_help=True,
    help="Bridge iMessage (via the imsg CLI) to an agent command.",
)

_CONFIG_FREE_COMMANDS = {"init", "schema"}


def _require_project_config() -> None:
    if project_config_exists():
        return
    typer.echo(
        render_notice(
            "error",
            "missing project config directory: {0}; run `imsg-bridge init` first".format(
                resolve_project_config_root()
            ),
        ),
        err=True,
    )
    raise typer.Exit(code=2)


def _load_settings_or_exit() -> Settings:
    try:
        return load_settings()
    except ConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)


def build_logger(settings: Settings, console: Optional[Console] = None) -> BridgeLogger:
    return BridgeLogger(
        logs_dir=settings.logs_dir,
        enabled=settings.logs_enabled,
        level=settings.logs_level,
        console_level=settings.logs_console_level,
        console=console if console is not None else Console(stderr=True),
        max_file_bytes=settings.logs_max_file_bytes,
        max_files=settings.logs_max_files,
        redaction=settings.logs_redaction,
    )


@app.callback()
def main(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is not None and ctx.invoked_subcommand not in _CONFIG_FREE_COMMANDS:
        _require_project_config()


@app.command("init")
def init_cmd(
    force: bool = typer.Option(
        False,
        "--force",
        help="Recreate .imsg_bridge (deletes the existing directory first)",
    ),
) -> None:
    try:
        config_root = initialize_project_config(force=force)
    except ConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)

    typer.echo(render_notice("success", "Initialized project config at: {0}".format(config_root)))


@app.command("serve")
def serve_cmd(
    console_enabled: bool = typer.Option(
        True,
        "--console/--no-console",
        help="Read operator slash commands from stdin",
    ),
) -> None:
    """Run the bridge in the foreground until /quit or a signal."""

    settings = _load_settings_or_exit()
    logger = build_logger(settings)
    host = LocalHost.from_settings(settings, logger=logger)
    pipeline = MessagePipeline(host, logger=logger, platform_override=settings.platform_override)
    exit_code = asyncio.run(_serve(pipeline, host, console_enabled))
    raise typer.Exit(code=exit_code)


@app.command("doctor")
def doctor_cmd(
    output_format: str = typer.Option(
        "json",
        "--format",
        click_type=click.Choice(["json", "text"], case_sensitive=False),
        help="Output format: json|text",
    ),
) -> None:
    normalized_format = output_format.strip().lower()
    settings = _load_settings_or_exit()
    logger = build_logger(settings)
    try:
        document = read_config_document(settings.config_file)
    except ConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)

    report = build_doctor_report(settings, document, logger)
    if normalized_format == "json":
        typer.echo(json.dumps(report, ensure_ascii=True, indent=2))
        return
    typer.echo(render_doctor_text(report))


@app.command("schema")
def schema_cmd() -> None:
    """Print the settings-form schema as JSON."""

    typer.echo(json.dumps(config_schema(), ensure_ascii=False, indent=2))


def build_doctor_report(settings: Settings, document: Dict[str, Any], logger: BridgeLogger) -> Dict[str, Any]:
    channel = parse_channel_config(document)
    return {
        "platform": sys.platform,
        "platform_supported": sys.platform == "darwin",
        "platform_override": settings.platform_override,
        "config_file": str(settings.config_file),
        "channel": {
            "enabled": channel.enabled,
            "cli_path": channel.cli_path,
            "cli_found": shutil.which(channel.cli_path) or "",
            "db_path": channel.db_path or "",
            "service": channel.service,
            "region": channel.region,
            "dm_policy": channel.dm_policy,
            "allow_from": len(channel.allow_from),
            "group_policy": channel.group_policy,
            "group_allow_from": len(channel.group_allow_from),
            "text_chunk_limit": channel.text_chunk_limit,
            "queue_max_depth": channel.queue_max_depth,
        },
        "agent_command": settings.agent_command,
        "agent_found": shutil.which(settings.agent_command) or "",
        "logs": logger.status(),
    }


async def _serve(pipeline: MessagePipeline, host: LocalHost, console_enabled: bool) -> int:
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    try:
        started = await pipeline.start()
    except BridgeError as exc:
        typer.echo(render_notice("error", "bridge failed to start: {0}".format(error_summary(exc))), err=True)
        return 1
    if not started:
        typer.echo(render_notice("warn", "bridge not started (unsupported platform or channel disabled)"), err=True)
        return 0

    typer.echo(render_notice("success", "imessage bridge running; type /help for commands"))
    console_task: Optional[asyncio.Task] = None
    if console_enabled:
        console_task = asyncio.create_task(_console_loop(ConsoleState(pipeline=pipeline, host=host), stop_event))
    try:
        await stop_event.wait()
    finally:
        if console_task is not None:
            console_task.cancel()
            await asyncio.gather(console_task, return_exceptions=True)
        await pipeline.stop()
    return 0


async def _console_loop(state: ConsoleState, stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    while not stop_event.is_set():
        raw = await reader.readline()
        if not raw:
            # stdin closed; keep serving until a signal arrives.
            return
        result = await dispatch_console_command(raw.decode("utf-8", errors="replace"), state, sys.stdout)
        if result.exit_requested:
            stop_event.set()
            return


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            continue


if __name__ == "__main__":  # pragma: no cover
    app()
