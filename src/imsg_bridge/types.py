"""Typed contracts shared by bridge components."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union


def now_ms() -> int:
    return int(time.time() * 1000)


ChatId = Union[int, str]


@dataclass(frozen=True)
class InboundMessage:
    """One inbound message as delivered by the `imsg` rpc notification."""

    text: str
    sender: str
    handle: Optional[str] = None
    chat_id: Optional[ChatId] = None
    chat_guid: Optional[str] = None
    chat_identifier: Optional[str] = None
    is_group: bool = False
    service: Optional[str] = None
    timestamp: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "InboundMessage":
        return cls(
            text=_optional_text(payload.get("text")) or "",
            sender=_optional_text(payload.get("sender")) or "",
            handle=_optional_text(payload.get("handle")),
            chat_id=_optional_chat_id(payload.get("chat_id")),
            chat_guid=_optional_text(payload.get("chat_guid")),
            chat_identifier=_optional_text(payload.get("chat_identifier")),
            is_group=payload.get("is_group") is True,
            service=_optional_text(payload.get("service")),
            timestamp=_optional_text(payload.get("timestamp")),
            message_id=_optional_text(payload.get("message_id")),
        )

    @property
    def sender_id(self) -> str:
        return self.sender or self.handle or ""


@dataclass
class PendingPairing:
    """Outstanding pairing code bound to one handle."""

    code: str
    handle: str
    created_at_ms: int
    claimed: bool = False


@dataclass
class ClaimAttemptWindow:
    """Fixed-window claim counter for one claim source."""

    count: int
    window_start_ms: int


class RouteDecision(str, Enum):
    REJECT = "reject"
    ACCEPT = "accept"
    REQUIRE_PAIRING = "require_pairing"


@dataclass
class SendResult:
    """Normalized result of an outbound `send` call."""

    message_id: Optional[str] = None


@dataclass
class ChannelConfig:
    """Effective `channels.imessage` settings, parsed fresh per decision."""

    enabled: bool = True
    cli_path: str = "imsg"
    db_path: Optional[str] = None
    service: str = "auto"
    region: str = "US"
    dm_policy: str = "pairing"
    allow_from: List[str] = field(default_factory=list)
    group_policy: str = "allowlist"
    group_allow_from: List[str] = field(default_factory=list)
    include_attachments: bool = False
    media_max_mb: int = 16
    text_chunk_limit: int = 4000
    queue_max_depth: int = 100


@dataclass
class QueuedMessage:
    message: InboundMessage
    received_at_ms: int = field(default_factory=now_ms)


@dataclass
class PipelineStats:
    """Counters exposed on the read-only status surface."""

    queued: int = 0
    queue_max_depth: int = 0
    processed: int = 0
    failed: int = 0
    rejected: int = 0
    dropped: int = 0
    pairing_replies: int = 0
    active_conversations: int = 0
    last_inbound_at_ms: Optional[int] = None
    last_outbound_at_ms: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "queued": self.queued,
            "queue_max_depth": self.queue_max_depth,
            "processed": self.processed,
            "failed": self.failed,
            "rejected": self.rejected,
            "dropped": self.dropped,
            "pairing_replies": self.pairing_replies,
            "active_conversations": self.active_conversations,
            "last_inbound_at_ms": self.last_inbound_at_ms,
            "last_outbound_at_ms": self.last_outbound_at_ms,
        }


def _optional_text(value: object) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value)
    return text if text else None


def _optional_chat_id(value: object) -> Optional[ChatId]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)
    return text
