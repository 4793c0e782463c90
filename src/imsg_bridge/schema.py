"""Settings-form schema registered with the host."""

from __future__ import annotations

from typing import Any, Dict, List

from imsg_bridge.types import ChannelConfig

PLUGIN_ID = "imsg-bridge"


def _field(name: str, field_type: str, label: str, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"name": name, "type": field_type, "label": label}
    payload.update(extra)
    return payload


def _options(*pairs: tuple) -> List[Dict[str, str]]:
    return [{"value": value, "label": label} for value, label in pairs]


def config_schema() -> Dict[str, Any]:
    defaults = ChannelConfig()
    return {
        "title": "iMessage Integration (macOS only)",
        "description": "iMessage/SMS integration via the imsg CLI. Requires macOS with Messages.app.",
        "section": "channels.imessage",
        "fields": [
            _field("enabled", "checkbox", "Enabled", default=defaults.enabled),
            _field(
                "cli_path",
                "text",
                "imsg CLI Path",
                placeholder="/usr/local/bin/imsg",
                default=defaults.cli_path,
                description="Path to imsg executable (install: brew install steipete/tap/imsg)",
            ),
            _field(
                "db_path",
                "text",
                "Messages DB Path",
                placeholder="/Users/<you>/Library/Messages/chat.db",
                description="Path to Messages database (usually auto-detected)",
            ),
            _field(
                "service",
                "select",
                "Service",
                options=_options(
                    ("auto", "Auto (iMessage preferred)"),
                    ("imessage", "iMessage only"),
                    ("sms", "SMS only"),
                ),
                default=defaults.service,
                description="Which service to use for sending",
            ),
            _field(
                "region",
                "text",
                "SMS Region",
                placeholder="US",
                default=defaults.region,
                description="Region code for SMS formatting",
            ),
            _field(
                "dm_policy",
                "select",
                "DM Policy",
                options=_options(
                    ("pairing", "Pairing (approve unknown contacts)"),
                    ("allowlist", "Allowlist only"),
                    ("open", "Open (accept all)"),
                    ("closed", "Closed (ignore DMs)"),
                ),
                default=defaults.dm_policy,
                description="How to handle direct messages from unknown contacts",
            ),
            _field(
                "group_policy",
                "select",
                "Group Policy",
                options=_options(
                    ("allowlist", "Allowlist only"),
                    ("open", "Open (all groups)"),
                    ("disabled", "Disabled (ignore groups)"),
                ),
                default=defaults.group_policy,
                description="How to handle group messages",
            ),
            _field(
                "include_attachments",
                "checkbox",
                "Include Attachments",
                default=defaults.include_attachments,
                description="Include image/file attachments in context (requires Full Disk Access)",
            ),
            _field(
                "media_max_mb",
                "number",
                "Media Max Size (MB)",
                placeholder=str(defaults.media_max_mb),
                default=defaults.media_max_mb,
                description="Maximum attachment size in MB",
            ),
            _field(
                "text_chunk_limit",
                "number",
                "Text Chunk Limit",
                placeholder=str(defaults.text_chunk_limit),
                default=defaults.text_chunk_limit,
                description="Maximum characters per outbound message",
            ),
            _field(
                "queue_max_depth",
                "number",
                "Queue Depth",
                placeholder=str(defaults.queue_max_depth),
                default=defaults.queue_max_depth,
                description="Inbound messages held while the agent is busy; extra messages are dropped",
            ),
        ],
    }
