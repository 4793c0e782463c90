"""Stand-alone host: runs an agent command per turn over a file-backed config."""

from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, List, Optional, Sequence

from imsg_bridge.config import FileConfigStore, Settings
from imsg_bridge.errors import HostInjectError
from imsg_bridge.log import BridgeLogger

SESSION_ENV_VAR = "IMSG_BRIDGE_SESSION"


class LocalHost:
    """`HostPort` implementation used by `imsg-bridge serve`.

    Each inject spawns `[command, *args, text]` and returns its stdout. The
    session key is exported as `IMSG_BRIDGE_SESSION` so a wrapper script can
    keep per-conversation state.
    """

    def __init__(
        self,
        store: FileConfigStore,
        *,
        agent_command: str,
        agent_args: Sequence[str] = (),
        timeout_sec: int = 300,
        identity: Optional[Dict[str, Any]] = None,
        logger: Optional[BridgeLogger] = None,
    ) -> None:
        self._store = store
        self._agent_command = str(agent_command)
        self._agent_args = [str(item) for item in agent_args]
        self._timeout_sec = max(1, int(timeout_sec))
        self._identity = dict(identity or {})
        self._logger = logger or BridgeLogger.disabled()
        self._schemas: Dict[str, Dict[str, Any]] = {}
        self._tools: Dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings: Settings, logger: Optional[BridgeLogger] = None) -> "LocalHost":
        return cls(
            FileConfigStore(settings.config_file),
            agent_command=settings.agent_command,
            agent_args=settings.agent_args,
            timeout_sec=settings.agent_timeout_sec,
            identity=settings.identity,
            logger=logger,
        )

    @property
    def schemas(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._schemas)

    @property
    def tools(self) -> Dict[str, Any]:
        return dict(self._tools)

    def build_command(self, text: str) -> List[str]:
        return [self._agent_command] + list(self._agent_args) + [text]

    async def inject(self, session_key: str, text: str, metadata: Dict[str, Any]) -> str:
        command = self.build_command(text)
        env = dict(os.environ)
        env[SESSION_ENV_VAR] = session_key
        self._logger.info(
            "agent turn started",
            component="host",
            session_key=session_key,
            sender=metadata.get("from"),
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as exc:
            raise HostInjectError(
                "agent command not found: {0}".format(self._agent_command),
                session_key=session_key,
            ) from exc
        except OSError as exc:
            raise HostInjectError("failed to start agent command: {0}".format(exc), session_key=session_key) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout_sec)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise HostInjectError(
                "agent command timed out after {0}s".format(self._timeout_sec),
                session_key=session_key,
            ) from exc

        output = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip() or output
            raise HostInjectError(
                "agent command failed with code {0}: {1}".format(process.returncode, detail[:400]),
                session_key=session_key,
                code=process.returncode,
            )

        self._logger.info(
            "agent turn completed",
            component="host",
            session_key=session_key,
            chars=len(output),
        )
        return output

    def log_message(self, session_key: str, text: str, metadata: Dict[str, Any]) -> None:
        self._logger.info(
            "session message",
            component="session",
            session_key=session_key,
            text=text,
            sender=metadata.get("from"),
            channel=metadata.get("channel"),
        )

    def get_config(self) -> Dict[str, Any]:
        return self._store.get_config()

    async def save_config(self, config: Dict[str, Any]) -> None:
        await self._store.save_config(config)
        self._logger.info("config saved", component="host", path=str(self._store.path))

    async def get_agent_identity(self) -> Optional[Dict[str, Any]]:
        return dict(self._identity) if self._identity else None

    def register_config_schema(self, plugin_id: str, schema: Dict[str, Any]) -> None:
        self._schemas[plugin_id] = dict(schema)

    def register_tool(self, tool: Any) -> None:
        self._tools[str(tool.name)] = tool

    async def call_tool(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(name)
        return await tool.handler(dict(params or {}))
