from __future__ import annotations

import copy
import textwrap
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from imsg_bridge.config import initialize_project_config, resolve_project_config_root
from imsg_bridge.errors import RpcError
from imsg_bridge.types import SendResult


FAKE_IMSG_SCRIPT = textwrap.dedent(
    '''
    import json
    import signal
    import sys
    import time

    if "--ignore-term" in sys.argv:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    if "--exit-now" in sys.argv:
        sys.stderr.write("fatal: messages database not readable\\n")
        sys.stderr.flush()
        sys.exit(5)

    sys.stderr.write("imsg rpc ready\\n")
    sys.stderr.flush()


    def emit(payload):
        sys.stdout.write(json.dumps(payload) + "\\n")
        sys.stdout.flush()


    for raw in sys.stdin:
        raw = raw.strip()
        if not raw:
            continue
        request = json.loads(raw)
        method = request.get("method")
        params = request.get("params") or {}
        request_id = request.get("id")
        if method == "send":
            emit({"jsonrpc": "2.0", "id": request_id, "result": {"message_id": "m-{0}".format(request_id)}})
        elif method == "chats":
            rows = [{"id": index, "name": "chat {0}".format(index)} for index in range(1, 4)]
            emit({"jsonrpc": "2.0", "id": request_id, "result": {"chats": rows[: params.get("limit", 20)]}})
        elif method == "history":
            emit({"jsonrpc": "2.0", "id": request_id, "result": [{"text": "hello", "chat_id": params.get("chat_id")}]})
        elif method == "notify":
            emit({"jsonrpc": "2.0", "method": "message", "params": {"text": "ping", "sender": "+15550001111", "chat_id": 7}})
            emit({"jsonrpc": "2.0", "id": request_id, "result": {"ok": True}})
        elif method == "fail":
            emit({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32000, "message": "send failed", "data": "no such chat"}})
        elif method == "garbage":
            sys.stdout.write("this is not json\\n")
            sys.stdout.flush()
            emit({"jsonrpc": "2.0", "id": request_id, "result": "still alive"})
        elif method == "crash":
            sys.exit(3)
        elif method == "slow":
            continue
        else:
            emit({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "method not found"}})

    if "--linger" in sys.argv:
        time.sleep(30)
    '''
)


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    workspace = tmp_path / "workspace"
    workspace.mkdir(parents=True, exist_ok=True)

    monkeypatch.chdir(workspace)
    initialize_project_config(workspace_dir=workspace)

    config_root = resolve_project_config_root(workspace)
    return {
        "workspace": workspace,
        "config_root": config_root,
        "config_file": config_root / "config.toml",
    }


@pytest.fixture
def fake_imsg_script(tmp_path: Path) -> Path:
    script = tmp_path / "fake_imsg.py"
    script.write_text(FAKE_IMSG_SCRIPT, encoding="utf-8")
    return script


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, delta_ms: int) -> None:
        self.now += delta_ms


class FakeConfigPort:
    def __init__(self, document: Optional[Dict[str, Any]] = None) -> None:
        self.document: Dict[str, Any] = document if document is not None else {}
        self.saves: List[Dict[str, Any]] = []

    def get_config(self) -> Dict[str, Any]:
        return copy.deepcopy(self.document)

    async def save_config(self, config: Dict[str, Any]) -> None:
        self.saves.append(copy.deepcopy(config))
        self.document = copy.deepcopy(config)


class FakeHost(FakeConfigPort):
    def __init__(
        self,
        channel: Optional[Dict[str, Any]] = None,
        response: str = "agent reply",
        identity: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__({"channels": {"imessage": dict(channel or {})}, "other": {"keep": True}})
        self.response = response
        self.inject_error: Optional[Exception] = None
        self.identity = identity
        self.injected: List[tuple] = []
        self.logged: List[tuple] = []
        self.schemas: Dict[str, Any] = {}

    async def inject(self, session_key: str, text: str, metadata: Dict[str, Any]) -> str:
        self.injected.append((session_key, text, metadata))
        if self.inject_error is not None:
            raise self.inject_error
        return self.response

    def log_message(self, session_key: str, text: str, metadata: Dict[str, Any]) -> None:
        self.logged.append((session_key, text, metadata))

    async def get_agent_identity(self) -> Optional[Dict[str, Any]]:
        return self.identity

    def register_config_schema(self, plugin_id: str, schema: Dict[str, Any]) -> None:
        self.schemas[plugin_id] = schema


class ToolHost(FakeHost):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.tools: Dict[str, Any] = {}

    def register_tool(self, tool: Any) -> None:
        self.tools[tool.name] = tool


class FakeClient:
    def __init__(self) -> None:
        self.running = False
        self.started = False
        self.stopped = False
        self.sent: List[Dict[str, Any]] = []
        self.fail_sends = False
        self.chats: List[Dict[str, Any]] = [{"id": 1, "name": "family"}, {"id": 2, "name": "work"}]

    async def start(self) -> None:
        self.started = True
        self.running = True

    async def stop(self) -> None:
        self.stopped = True
        self.running = False

    def is_running(self) -> bool:
        return self.running

    async def send_message(self, params: Dict[str, Any]) -> SendResult:
        if self.fail_sends:
            raise RpcError("send failed", code=-32000)
        self.sent.append(dict(params))
        return SendResult(message_id="sent-{0}".format(len(self.sent)))

    async def list_chats(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(self.chats[:limit])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
