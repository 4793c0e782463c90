"""Inbound routing, the drain queue and outbound delivery."""

from __future__ import annotations

import asyncio
import sys
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Set

from imsg_bridge.chunking import CONTINUATION_MARKER, chunk_text
from imsg_bridge.config import load_channel_config
from imsg_bridge.errors import BackendFault, BridgeError, ConfigError, error_summary
from imsg_bridge.host import CHANNEL_TYPE, HostPort
from imsg_bridge.log import BridgeLogger
from imsg_bridge.pairing import PairingRegistry, build_pairing_message
from imsg_bridge.routing import build_session_key, decide
from imsg_bridge.schema import PLUGIN_ID, config_schema
from imsg_bridge.status import StatusSurface, register_status_tools
from imsg_bridge.transport import ImsgRpcClient
from imsg_bridge.types import (
    ChannelConfig,
    InboundMessage,
    PipelineStats,
    QueuedMessage,
    RouteDecision,
    now_ms,
)

APOLOGY_TEXT = "Sorry, I couldn't process that message. Please try again."
DEFAULT_IDENTITY = {"name": "imsg-bridge"}

ClientFactory = Callable[[ChannelConfig, "MessagePipeline"], ImsgRpcClient]


def _default_client_factory(config: ChannelConfig, pipeline: "MessagePipeline") -> ImsgRpcClient:
    return ImsgRpcClient(
        cli_path=config.cli_path,
        db_path=config.db_path,
        on_message=pipeline.handle_inbound,
        on_error=pipeline.handle_backend_fault,
        logger=pipeline.logger,
    )


def message_metadata(message: InboundMessage) -> Dict[str, Any]:
    return {
        "from": message.sender_id or "unknown",
        "channel": {"type": CHANNEL_TYPE, "id": str(message.chat_id or "dm")},
    }


def resolve_send_target(message: InboundMessage) -> Optional[Dict[str, Any]]:
    if message.chat_id:
        return {"chat_id": message.chat_id}
    if message.chat_guid:
        return {"chat_guid": message.chat_guid}
    if message.chat_identifier:
        return {"chat_identifier": message.chat_identifier}
    if message.handle:
        return {"to": message.handle}
    if message.sender:
        return {"to": message.sender}
    return None


class MessagePipeline:
    """Routes inbound messages to the host and relays responses back.

    Accepted messages wait in a bounded FIFO queue that a single drain task
    empties one message per tick, so at most one host inject is in flight.
    Configuration is re-read for every routing decision and before every
    send so allow-list edits apply immediately.
    """

    def __init__(
        self,
        host: HostPort,
        *,
        registry: Optional[PairingRegistry] = None,
        client_factory: Optional[ClientFactory] = None,
        logger: Optional[BridgeLogger] = None,
        platform: Optional[str] = None,
        platform_override: bool = False,
        drain_interval_sec: float = 0.1,
        cleanup_interval_sec: float = 60.0,
        chunk_delay_sec: float = 0.5,
    ) -> None:
        self._host = host
        self._logger = logger or BridgeLogger.disabled()
        self._registry = registry or PairingRegistry(logger=self._logger)
        self._client_factory = client_factory or _default_client_factory
        self._platform = platform or sys.platform
        self._platform_override = bool(platform_override)
        self._drain_interval_sec = float(drain_interval_sec)
        self._cleanup_interval_sec = float(cleanup_interval_sec)
        self._chunk_delay_sec = float(chunk_delay_sec)

        self._client: Optional[ImsgRpcClient] = None
        self._queue: Deque[QueuedMessage] = deque()
        self._busy = False
        self._sessions: Set[str] = set()
        self._stats = PipelineStats()
        self._identity: Dict[str, Any] = dict(DEFAULT_IDENTITY)
        self._drain_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._reply_tasks: Set[asyncio.Task] = set()

    @property
    def logger(self) -> BridgeLogger:
        return self._logger

    @property
    def registry(self) -> PairingRegistry:
        return self._registry

    @property
    def host(self) -> HostPort:
        return self._host

    @property
    def client(self) -> Optional[ImsgRpcClient]:
        return self._client

    @client.setter
    def client(self, value: Optional[ImsgRpcClient]) -> None:
        self._client = value

    @property
    def identity(self) -> Dict[str, Any]:
        return dict(self._identity)

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def started(self) -> bool:
        return self._drain_task is not None

    async def start(self) -> bool:
        """Bring the bridge up; returns False when it is skipped by policy."""

        self._host.register_config_schema(PLUGIN_ID, config_schema())

        if self._platform != "darwin" and not self._platform_override:
            self._logger.warn(
                "imessage bridge requires macOS; not starting",
                component="pipeline",
                platform=self._platform,
            )
            return False

        await self.refresh_identity()

        config = load_channel_config(self._host)
        if not config.enabled:
            self._logger.info("imessage channel disabled in config", component="pipeline")
            return False

        client = self._client_factory(config, self)
        try:
            await client.start()
        except BridgeError as exc:
            self._logger.error("failed to start imsg client", component="pipeline", error=error_summary(exc))
            raise
        self._client = client

        register_tool = getattr(self._host, "register_tool", None)
        if callable(register_tool):
            register_status_tools(register_tool, StatusSurface(self))

        self._drain_task = asyncio.create_task(self._drain_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self._logger.info(
            "imessage bridge started",
            component="pipeline",
            dm_policy=config.dm_policy,
            group_policy=config.group_policy,
            service=config.service,
        )
        return True

    async def stop(self) -> None:
        tasks = [task for task in (self._drain_task, self._cleanup_task) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._drain_task = None
        self._cleanup_task = None

        if self._reply_tasks:
            await asyncio.gather(*list(self._reply_tasks), return_exceptions=True)

        client = self._client
        self._client = None
        if client is not None:
            await client.stop()
        self._logger.info("imessage bridge stopped", component="pipeline")

    async def refresh_identity(self) -> None:
        try:
            identity = await self._host.get_agent_identity()
        except Exception as exc:
            self._logger.warn("failed to refresh identity", component="pipeline", error=str(exc))
            return
        if identity:
            merged = dict(DEFAULT_IDENTITY)
            merged.update(identity)
            self._identity = merged
            self._logger.info("identity refreshed", component="pipeline", identity=merged)

    def handle_inbound(self, message: InboundMessage) -> RouteDecision:
        self._stats.last_inbound_at_ms = now_ms()
        self._logger.debug(
            "received imessage",
            component="pipeline",
            text=message.text[:100],
            sender=message.sender,
            handle=message.handle,
            is_group=message.is_group,
            chat_id=message.chat_id,
            service=message.service,
        )

        try:
            config = load_channel_config(self._host)
        except ConfigError as exc:
            self._logger.error("dropping message; config unreadable", component="pipeline", error=str(exc))
            return RouteDecision.REJECT

        decision = decide(message, config)
        if decision is RouteDecision.REQUIRE_PAIRING:
            self._start_pairing(message)
        elif decision is RouteDecision.REJECT:
            self._stats.rejected += 1
            self._log_to_session(message)
        else:
            self._enqueue(message, config)
        return decision

    def handle_backend_fault(self, fault: BackendFault) -> None:
        self._logger.error("imsg client error", component="pipeline", error=error_summary(fault))

    async def process_next(self) -> bool:
        """Handle the oldest queued message; returns False when idle."""

        if self._busy or not self._queue:
            return False
        item = self._queue.popleft()
        message = item.message
        session_key = build_session_key(message)
        self._busy = True
        try:
            try:
                response = await self._host.inject(session_key, message.text, message_metadata(message))
            except Exception as exc:
                self._stats.failed += 1
                self._logger.error(
                    "failed to process imessage",
                    component="pipeline",
                    session_key=session_key,
                    error=error_summary(exc),
                )
                await self._send_apology(message)
                return True

            try:
                await self.send_response(message, response, self._reply_config())
            except Exception as exc:
                self._stats.failed += 1
                self._logger.error(
                    "failed to deliver imessage response",
                    component="pipeline",
                    session_key=session_key,
                    response_type=type(response).__name__,
                    error=error_summary(exc),
                )
                return True
            self._stats.processed += 1
            return True
        finally:
            self._busy = False

    def _reply_config(self) -> ChannelConfig:
        try:
            return load_channel_config(self._host)
        except ConfigError as exc:
            self._logger.warn("config unreadable; replying with defaults", component="pipeline", error=str(exc))
            return ChannelConfig()

    async def send_response(self, original: InboundMessage, text: str, config: ChannelConfig) -> int:
        """Send `text` back to the conversation of `original`; returns chunks sent."""

        client = self._client
        if client is None or not client.is_running():
            self._logger.warn("cannot send response; client not running", component="pipeline")
            return 0

        target = resolve_send_target(original)
        if target is None:
            self._logger.error("cannot send response; no target", component="pipeline")
            return 0

        if not (text or "").strip():
            self._logger.debug("skipping empty response", component="pipeline")
            return 0

        chunks = chunk_text(text, config.text_chunk_limit)
        sent = 0
        for index, chunk in enumerate(chunks):
            is_last = index == len(chunks) - 1
            params: Dict[str, Any] = {
                "text": chunk if is_last else chunk + CONTINUATION_MARKER,
                "service": config.service,
                "region": config.region,
            }
            params.update(target)
            try:
                result = await client.send_message(params)
            except BridgeError as exc:
                self._logger.error(
                    "failed to send imessage response",
                    component="pipeline",
                    chunk=index,
                    error=error_summary(exc),
                )
            else:
                sent += 1
                self._stats.last_outbound_at_ms = now_ms()
                self._logger.debug(
                    "sent imessage response",
                    component="pipeline",
                    chunk=index,
                    message_id=result.message_id,
                )
            if not is_last:
                await asyncio.sleep(self._chunk_delay_sec)
        return sent

    def stats(self) -> PipelineStats:
        try:
            config_depth = load_channel_config(self._host).queue_max_depth
        except ConfigError:
            config_depth = ChannelConfig().queue_max_depth
        return PipelineStats(
            queued=len(self._queue),
            queue_max_depth=config_depth,
            processed=self._stats.processed,
            failed=self._stats.failed,
            rejected=self._stats.rejected,
            dropped=self._stats.dropped,
            pairing_replies=self._stats.pairing_replies,
            active_conversations=len(self._sessions),
            last_inbound_at_ms=self._stats.last_inbound_at_ms,
            last_outbound_at_ms=self._stats.last_outbound_at_ms,
        )

    def _start_pairing(self, message: InboundMessage) -> None:
        sender = message.sender_id
        if not sender:
            return
        outcome = self._registry.create_pairing_request(sender)
        if not outcome.ok or not outcome.code:
            self._logger.error("pairing request failed", component="pipeline", sender=sender, error=outcome.message)
            return
        self._logger.debug("pairing code generated for imessage contact", component="pipeline", sender=sender)
        self._stats.pairing_replies += 1
        self._spawn_reply(self._send_pairing_reply(message, outcome.code))

    async def _send_pairing_reply(self, message: InboundMessage, code: str) -> None:
        try:
            config = load_channel_config(self._host)
        except ConfigError as exc:
            self._logger.error("pairing reply skipped; config unreadable", component="pipeline", error=str(exc))
            return
        await self.send_response(message, build_pairing_message(code), config)

    async def _send_apology(self, message: InboundMessage) -> None:
        try:
            await self.send_response(message, APOLOGY_TEXT, load_channel_config(self._host))
        except Exception as exc:
            self._logger.debug("apology send failed", component="pipeline", error=str(exc))

    def _enqueue(self, message: InboundMessage, config: ChannelConfig) -> None:
        if len(self._queue) >= config.queue_max_depth:
            self._stats.dropped += 1
            self._logger.warn(
                "inbound queue full; dropping message",
                component="pipeline",
                depth=len(self._queue),
                sender=message.sender_id,
            )
            self._log_to_session(message)
            return
        self._sessions.add(build_session_key(message))
        self._queue.append(QueuedMessage(message=message))

    def _log_to_session(self, message: InboundMessage) -> None:
        try:
            self._host.log_message(build_session_key(message), message.text, message_metadata(message))
        except Exception as exc:
            self._logger.debug("session log failed", component="pipeline", error=str(exc))

    def _spawn_reply(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    async def _drain_loop(self) -> None:
        while True:
            try:
                await self.process_next()
            except Exception as exc:
                self._logger.error("message queue processing error", component="pipeline", error=error_summary(exc))
            await asyncio.sleep(self._drain_interval_sec)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval_sec)
            report = self._registry.cleanup_expired_pairings()
            if report.pairings_removed or report.windows_removed:
                self._logger.debug(
                    "expired pairing state swept",
                    component="pipeline",
                    pairings=report.pairings_removed,
                    windows=report.windows_removed,
                )
