"""Operator console: slash commands read from stdin while `serve` runs."""

from __future__ import annotations

import json
import shlex
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TextIO, Tuple

from imsg_bridge.local_host import LocalHost
from imsg_bridge.pipeline import MessagePipeline
from imsg_bridge.render import render_mapping, render_notice, render_table

CONSOLE_SOURCE_ID = "console"

_HELP_LINES: Tuple[str, ...] = (
    "/help                      show this help",
    "/status                    connection status",
    "/chats [n]                 list recent chats",
    "/stats                     queue and conversation counters",
    "/pairing list              pending pairing codes",
    "/pairing approve <code>    approve a pairing code",
    "/quit                      stop the bridge",
)


@dataclass
class ConsoleState:
    pipeline: MessagePipeline
    host: LocalHost
    is_tty: Optional[bool] = None


@dataclass
class ConsoleResult:
    handled: bool
    exit_requested: bool = False


async def dispatch_console_command(
    raw_line: str,
    state: ConsoleState,
    stream: TextIO = sys.stdout,
) -> ConsoleResult:
    stripped = raw_line.strip()
    if not stripped:
        return ConsoleResult(handled=False)
    if not stripped.startswith("/"):
        _echo(stream, render_notice("warn", "commands start with `/`; try /help"))
        return ConsoleResult(handled=False)

    try:
        parts = shlex.split(stripped[1:])
    except ValueError as exc:
        _echo(stream, render_notice("error", "failed to parse command: {0}".format(exc)))
        return ConsoleResult(handled=True)
    if not parts:
        _echo(stream, "\n".join(_HELP_LINES))
        return ConsoleResult(handled=True)

    root = parts[0].lower()
    args = parts[1:]

    if root in {"quit", "exit"}:
        return ConsoleResult(handled=True, exit_requested=True)
    if root == "help":
        _echo(stream, "\n".join(_HELP_LINES))
    elif root == "status":
        await _handle_tool(state, "imessage.status", {}, "Status", stream)
    elif root == "stats":
        await _handle_tool(state, "imessage.stats", {}, "Stats", stream)
    elif root == "chats":
        await _handle_chats(args, state, stream)
    elif root == "pairing":
        await _handle_pairing(args, state, stream)
    else:
        _echo(stream, render_notice("error", "unknown command: /{0}".format(root)))
    return ConsoleResult(handled=True)


async def _handle_tool(
    state: ConsoleState,
    name: str,
    params: Dict[str, Any],
    title: str,
    stream: TextIO,
) -> Optional[Dict[str, Any]]:
    if name not in state.host.tools:
        _echo(stream, render_notice("warn", "bridge is not running; {0} unavailable".format(name)))
        return None
    payload = await state.host.call_tool(name, params)
    render_mapping(title, _flatten(payload), stream, is_tty=state.is_tty)
    return payload


async def _handle_chats(args: List[str], state: ConsoleState, stream: TextIO) -> None:
    params: Dict[str, Any] = {}
    if args:
        if not args[0].isdigit():
            _echo(stream, render_notice("error", "usage: /chats [n]"))
            return
        params["limit"] = int(args[0])
    if "imessage.chats" not in state.host.tools:
        _echo(stream, render_notice("warn", "bridge is not running; imessage.chats unavailable"))
        return

    payload = await state.host.call_tool("imessage.chats", params)
    if payload.get("error"):
        _echo(stream, render_notice("error", str(payload["error"])))
        return
    rows = []
    for chat in payload.get("chats") or []:
        if not isinstance(chat, dict):
            continue
        rows.append(
            (
                chat.get("id", chat.get("chat_id")),
                chat.get("name") or chat.get("display_name") or chat.get("identifier") or "",
                chat.get("service"),
            )
        )
    render_table("Chats", ("id", "name", "service"), rows, stream, is_tty=state.is_tty)


async def _handle_pairing(args: List[str], state: ConsoleState, stream: TextIO) -> None:
    registry = state.pipeline.registry
    action = args[0].lower() if args else "list"

    if action == "list":
        rows = [
            (request.code, request.handle, "{0}s".format(registry.expires_in_ms(request) // 1000))
            for request in registry.list_pairing_requests()
        ]
        render_table("Pending Pairings", ("code", "handle", "expires_in"), rows, stream, is_tty=state.is_tty)
        return

    if action == "approve":
        if len(args) < 2:
            _echo(stream, render_notice("error", "usage: /pairing approve <code>"))
            return
        outcome = await registry.claim_pairing_code(args[1], state.host, source_id=CONSOLE_SOURCE_ID)
        if outcome.ok:
            _echo(stream, render_notice("success", "approved {0}".format(outcome.handle)))
        else:
            _echo(stream, render_notice("error", outcome.message))
        return

    _echo(stream, render_notice("error", "usage: /pairing list | /pairing approve <code>"))


def _flatten(payload: Dict[str, Any]) -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, (dict, list)):
            flat[key] = json.dumps(value, ensure_ascii=False)
        else:
            flat[key] = value
    return flat


def _echo(stream: TextIO, text: str) -> None:
    stream.write(text + "\n")
    stream.flush()
