"""Read-only status surface: connection state, chat listing, queue stats."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from imsg_bridge.config import load_channel_config
from imsg_bridge.errors import BridgeError, ConfigError, error_summary
from imsg_bridge.log import redact_payload

if TYPE_CHECKING:  # pragma: no cover
    from imsg_bridge.pipeline import MessagePipeline

DEFAULT_CHAT_LIMIT = 20
MAX_CHAT_LIMIT = 200


@dataclass(frozen=True)
class StatusTool:
    name: str
    description: str
    handler: Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]
    parameters: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class StatusSurface:
    def __init__(self, pipeline: "MessagePipeline") -> None:
        self._pipeline = pipeline

    async def status(self) -> Dict[str, Any]:
        client = self._pipeline.client
        payload: Dict[str, Any] = {
            "connected": bool(client is not None and client.is_running()),
            "identity": self._pipeline.identity.get("name", ""),
            "pending_pairings": len(self._pipeline.registry.list_pairing_requests()),
        }
        try:
            config = load_channel_config(self._pipeline.host)
        except ConfigError as exc:
            payload["config_error"] = str(exc)
        else:
            payload.update(
                {
                    "enabled": config.enabled,
                    "service": config.service,
                    "dm_policy": config.dm_policy,
                    "group_policy": config.group_policy,
                }
            )
        return redact_payload(payload)

    async def chats(self, limit: Optional[int] = None) -> Dict[str, Any]:
        resolved = _clamp_limit(limit)
        client = self._pipeline.client
        if client is None or not client.is_running():
            return {"chats": [], "error": "imessage client not running"}
        try:
            rows = await client.list_chats(resolved)
        except BridgeError as exc:
            return {"chats": [], "error": error_summary(exc)}
        return redact_payload({"chats": rows[:resolved]})

    async def stats(self) -> Dict[str, Any]:
        return self._pipeline.stats().as_dict()


def build_status_tools(surface: StatusSurface) -> List[StatusTool]:
    async def _status(_params: Dict[str, Any]) -> Dict[str, Any]:
        return await surface.status()

    async def _chats(params: Dict[str, Any]) -> Dict[str, Any]:
        return await surface.chats(params.get("limit"))

    async def _stats(_params: Dict[str, Any]) -> Dict[str, Any]:
        return await surface.stats()

    return [
        StatusTool(
            name="imessage.status",
            description=(
                "Get iMessage connection status: connected/disconnected and service type. "
                "Does not expose Apple ID credentials."
            ),
            handler=_status,
        ),
        StatusTool(
            name="imessage.chats",
            description="List active iMessage conversations with chat IDs and display names.",
            handler=_chats,
            parameters={
                "limit": {
                    "type": "number",
                    "description": "Maximum number of chats to return (default: 20)",
                    "required": False,
                }
            },
        ),
        StatusTool(
            name="imessage.stats",
            description="Get iMessage processing statistics: queued messages and active conversation count.",
            handler=_stats,
        ),
    ]


def register_status_tools(register: Callable[[StatusTool], None], surface: StatusSurface) -> List[str]:
    names: List[str] = []
    for tool in build_status_tools(surface):
        register(tool)
        names.append(tool.name)
    return names


def _clamp_limit(value: object) -> int:
    if value is None or isinstance(value, bool):
        return DEFAULT_CHAT_LIMIT
    try:
        limit = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_CHAT_LIMIT
    if limit <= 0:
        return DEFAULT_CHAT_LIMIT
    return min(limit, MAX_CHAT_LIMIT)
