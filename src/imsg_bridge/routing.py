"""Inbound routing policy and session-key derivation."""

from __future__ import annotations

from imsg_bridge.types import ChannelConfig, InboundMessage, RouteDecision

DM_POLICIES = ("pairing", "allowlist", "open", "closed")
GROUP_POLICIES = ("allowlist", "open", "disabled")
DEFAULT_DM_POLICY = "pairing"
DEFAULT_GROUP_POLICY = "allowlist"
UNKNOWN_POLICY_FALLBACK = "allowlist"
WILDCARD = "*"


def build_session_key(message: InboundMessage) -> str:
    if message.is_group:
        target = message.chat_id or message.chat_guid or message.chat_identifier or "unknown"
        return "imessage-group-{0}".format(target)
    return "imessage-dm-{0}".format(message.sender or message.handle or "unknown")


def decide(message: InboundMessage, config: ChannelConfig) -> RouteDecision:
    """Map one inbound message to reject / accept / require-pairing."""

    if not (message.text or "").strip():
        return RouteDecision.REJECT

    sender = message.sender_id

    if not message.is_group:
        policy = _resolve_policy(config.dm_policy, DM_POLICIES, DEFAULT_DM_POLICY)
        if policy == "closed":
            return RouteDecision.REJECT
        if policy == "open":
            return RouteDecision.ACCEPT
        if _dm_allowed(sender, config.allow_from):
            return RouteDecision.ACCEPT
        if policy == "pairing":
            return RouteDecision.REQUIRE_PAIRING
        return RouteDecision.REJECT

    group_policy = _resolve_policy(config.group_policy, GROUP_POLICIES, DEFAULT_GROUP_POLICY)
    if group_policy == "disabled":
        return RouteDecision.REJECT
    if group_policy == "open":
        return RouteDecision.ACCEPT
    allowed = config.group_allow_from
    if WILDCARD in allowed:
        return RouteDecision.ACCEPT
    if sender and sender in allowed:
        return RouteDecision.ACCEPT
    return RouteDecision.REJECT


def _resolve_policy(value: str, known: tuple, default: str) -> str:
    # Unset means the default; an unrecognized value never widens access.
    policy = (value or "").strip().lower()
    if not policy:
        return default
    if policy in known:
        return policy
    return UNKNOWN_POLICY_FALLBACK


def _dm_allowed(sender: str, allow_from: list) -> bool:
    if WILDCARD in allow_from:
        return True
    if not sender:
        return False
    if sender in allow_from:
        return True
    # Loose match: "5551234567" also admits "+15551234567".
    return any(entry and entry in sender for entry in allow_from)
