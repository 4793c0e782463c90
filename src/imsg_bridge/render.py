"""Presentation helpers for imsg-bridge CLI output."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, TextIO

from rich import box
from rich.console import Console
from rich.table import Table

_NOTICE_PREFIX = {
    "info": "Info",
    "warn": "Warning",
    "error": "Error",
    "success": "Success",
}


def render_notice(level: str, text: str) -> str:
    prefix = _NOTICE_PREFIX.get(level, _NOTICE_PREFIX["info"])
    return "{0}: {1}".format(prefix, text)


def _is_tty(stream: TextIO, forced: Optional[bool]) -> bool:
    if forced is not None:
        return forced
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except ValueError:
            return False
    return False


def render_table(
    title: str,
    columns: Sequence[str],
    rows: Sequence[Sequence[Any]],
    stream: TextIO,
    is_tty: Optional[bool] = None,
) -> None:
    if _is_tty(stream, is_tty):
        table = Table(title=title, box=box.ROUNDED, header_style="bold cyan")
        for column in columns:
            table.add_column(str(column))
        for row in rows:
            table.add_row(*[_cell(value) for value in row])
        Console(file=stream, highlight=False, soft_wrap=True).print(table)
        return

    stream.write(title + "\n")
    if not rows:
        stream.write("(none)\n")
    for row in rows:
        stream.write(
            " ".join("{0}={1}".format(column, _cell(value)) for column, value in zip(columns, row)) + "\n"
        )
    stream.flush()


def render_mapping(title: str, payload: Dict[str, Any], stream: TextIO, is_tty: Optional[bool] = None) -> None:
    rows = [(key, value) for key, value in payload.items()]
    render_table(title, ("key", "value"), rows, stream, is_tty=is_tty)


def render_doctor_text(report: Dict[str, Any]) -> str:
    channel = report.get("channel") if isinstance(report.get("channel"), dict) else {}
    logs = report.get("logs") if isinstance(report.get("logs"), dict) else {}
    lines: List[str] = [
        "Doctor Report",
        "platform={0} supported={1} platform_override={2}".format(
            report.get("platform", ""),
            bool(report.get("platform_supported")),
            bool(report.get("platform_override")),
        ),
        "config_file={0}".format(report.get("config_file", "")),
        "",
        "iMessage Channel",
        "enabled={0}".format(bool(channel.get("enabled"))),
        "cli_path={0} cli_found={1}".format(channel.get("cli_path", ""), channel.get("cli_found") or "missing"),
        "db_path={0}".format(channel.get("db_path") or "(auto)"),
        "dm_policy={0} allow_from={1}".format(channel.get("dm_policy", ""), int(channel.get("allow_from") or 0)),
        "group_policy={0} group_allow_from={1}".format(
            channel.get("group_policy", ""),
            int(channel.get("group_allow_from") or 0),
        ),
        "service={0} region={1} text_chunk_limit={2}".format(
            channel.get("service", ""),
            channel.get("region", ""),
            int(channel.get("text_chunk_limit") or 0),
        ),
        "",
        "Agent",
        "command={0} found={1}".format(report.get("agent_command", ""), report.get("agent_found") or "missing"),
        "",
        "Logs",
        "logs_enabled={0}".format(bool(logs.get("logs_enabled"))),
        "logs_dir={0}".format(logs.get("logs_dir", "")),
        "logs_active_size_bytes={0} logs_total_size_bytes={1}".format(
            int(logs.get("logs_active_size_bytes") or 0),
            int(logs.get("logs_total_size_bytes") or 0),
        ),
        "logs_write_errors={0}".format(int(logs.get("logs_write_errors") or 0)),
    ]
    return "\n".join(lines)


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)
