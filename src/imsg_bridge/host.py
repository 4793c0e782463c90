"""Orchestration host port and the `channels.imessage` config subtree."""

from __future__ import annotations

import copy
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

CHANNEL_TYPE = "imessage"
CONFIG_SECTION: Sequence[str] = ("channels", "imessage")


class ConfigPort(Protocol):
    """Read/write access to the host-owned configuration document."""

    def get_config(self) -> Dict[str, Any]:
        """Return the current document; callers must not cache it."""

    async def save_config(self, config: Dict[str, Any]) -> None:
        """Persist the full document."""


class HostPort(ConfigPort, Protocol):
    """Capabilities the bridge consumes from the orchestration host.

    Hosts may also offer `register_tool(tool)`; callers look it up with
    `getattr` since not every host exposes a tool registry.
    """

    async def inject(self, session_key: str, text: str, metadata: Dict[str, Any]) -> str:
        """Run one agent turn and return its response text."""

    def log_message(self, session_key: str, text: str, metadata: Dict[str, Any]) -> None:
        """Record a message in the session without responding."""

    async def get_agent_identity(self) -> Optional[Dict[str, Any]]:
        """Return the agent identity (name, emoji, ...)."""

    def register_config_schema(self, plugin_id: str, schema: Dict[str, Any]) -> None:
        """Register the settings-form schema."""


def read_channel_section(config: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    current: Any = config if isinstance(config, Mapping) else {}
    for key in CONFIG_SECTION:
        current = current.get(key) if isinstance(current, Mapping) else None
        if current is None:
            return {}
    if not isinstance(current, Mapping):
        return {}
    return dict(current)


def merge_channel_section(
    config: Optional[Mapping[str, Any]],
    updates: Mapping[str, Any],
) -> Dict[str, Any]:
    """Return a copy of `config` with `updates` merged into the channel section.

    Every key outside the section, and every key of the section not named in
    `updates`, is carried over unchanged.
    """

    document: Dict[str, Any] = copy.deepcopy(dict(config or {}))
    node = document
    for key in CONFIG_SECTION:
        child = node.get(key)
        child = dict(child) if isinstance(child, Mapping) else {}
        node[key] = child
        node = child
    node.update(copy.deepcopy(dict(updates)))
    return document
