"""JSON-RPC transport over a long-lived `imsg rpc` subprocess."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence

from imsg_bridge.errors import (
    BackendFault,
    NotRunning,
    ProcessTerminated,
    RpcError,
    RpcTimeout,
    StartupFailure,
)
from imsg_bridge.log import BridgeLogger
from imsg_bridge.types import InboundMessage, SendResult

MessageSink = Callable[[InboundMessage], None]
ErrorSink = Callable[[BackendFault], None]

DEFAULT_REQUEST_TIMEOUT_MS = 30000
SEND_TIMEOUT_MS = 60000
QUERY_TIMEOUT_MS = 10000

_STREAM_LIMIT = 16 * 1024 * 1024
_MESSAGE_METHODS = ("message", "message.received")
_MESSAGE_ID_KEYS = ("messageId", "message_id", "id", "guid")


@dataclass
class PendingRpcCall:
    request_id: int
    method: str
    future: "asyncio.Future[Any]"
    timer: Optional[asyncio.TimerHandle] = None


class ImsgRpcClient:
    """Line-delimited JSON-RPC client for `imsg rpc`.

    Requests are correlated to responses by id, so the backend may answer
    out of order. Notifications are dispatched in stream order from the
    stdout reader task.
    """

    def __init__(
        self,
        *,
        cli_path: str = "imsg",
        db_path: Optional[str] = None,
        base_args: Sequence[str] = (),
        on_message: Optional[MessageSink] = None,
        on_error: Optional[ErrorSink] = None,
        logger: Optional[BridgeLogger] = None,
        startup_grace_sec: float = 0.5,
        stop_grace_sec: float = 2.0,
    ) -> None:
        self._cli_path = str(cli_path or "").strip() or "imsg"
        self._db_path = str(db_path or "").strip() or None
        self._base_args = [str(item) for item in base_args]
        self._on_message = on_message
        self._on_error = on_error
        self._logger = logger or BridgeLogger.disabled()
        self._startup_grace_sec = max(0.0, float(startup_grace_sec))
        self._stop_grace_sec = max(0.0, float(stop_grace_sec))

        self._process: Optional[asyncio.subprocess.Process] = None
        self._pending: Dict[str, PendingRpcCall] = {}
        self._next_id = 1
        self._closed = False
        self._closed_event = asyncio.Event()
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._stderr_lines: Deque[str] = deque(maxlen=40)

    @property
    def command(self) -> List[str]:
        command = [self._cli_path] + list(self._base_args) + ["rpc"]
        if self._db_path:
            command.extend(["--db", self._db_path])
        return command

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        if self._process is not None:
            if self._process.returncode is None:
                self._logger.warn("imsg client already started", component="transport")
                return
            await self.stop()

        command = self.command
        self._logger.info("starting imsg rpc", component="transport", command=command)
        self._closed = False
        self._closed_event = asyncio.Event()
        self._stderr_lines.clear()

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            self._logger.error("imsg command not found", component="transport", cli_path=self._cli_path)
            raise StartupFailure(
                "imsg command not found: {0}".format(self._cli_path),
                command=command,
            ) from exc
        except OSError as exc:
            self._logger.error("imsg rpc spawn failed", component="transport", error=str(exc))
            raise StartupFailure("failed to start imsg rpc: {0}".format(exc), command=command) from exc

        self._process = process
        self._stdout_task = asyncio.create_task(self._read_stdout_loop(process))
        self._stderr_task = asyncio.create_task(self._read_stderr_loop(process))
        self._exit_task = asyncio.create_task(self._watch_exit(process))

        await asyncio.sleep(self._startup_grace_sec)

        if process.returncode is not None:
            returncode = process.returncode
            preview = self._stderr_preview()
            await self.stop()
            raise StartupFailure(
                "imsg rpc exited during startup ({0}): {1}".format(_exit_reason(returncode), preview),
                command=command,
                returncode=returncode,
            )

        self._logger.info("imsg rpc started", component="transport", pid=process.pid)

    async def stop(self) -> None:
        process = self._process
        if process is None:
            return

        self._logger.info("stopping imsg rpc", component="transport")
        self._closed = True

        if self._stdout_task is not None and not self._stdout_task.done():
            self._stdout_task.cancel()

        stdin = process.stdin
        if stdin is not None and not stdin.is_closing():
            try:
                stdin.close()
            except OSError:
                self._logger.debug("imsg stdin close failed", component="transport")

        try:
            await asyncio.wait_for(self._closed_event.wait(), timeout=self._stop_grace_sec)
        except asyncio.TimeoutError:
            self._logger.warn("imsg rpc did not exit in time; terminating", component="transport")
            await self._terminate(process)

        self._fail_all(ProcessTerminated("imsg rpc stopped"))
        for task in (self._stdout_task, self._stderr_task, self._exit_task):
            if task is not None and not task.done():
                task.cancel()
        tasks = [task for task in (self._stdout_task, self._stderr_task, self._exit_task) if task is not None]
        if tasks:
            await asyncio.wait(tasks)

        self._process = None
        self._stdout_task = None
        self._stderr_task = None
        self._exit_task = None
        self._logger.info("imsg rpc stopped", component="transport")

    def is_running(self) -> bool:
        process = self._process
        return process is not None and process.returncode is None and not self._closed

    async def request(
        self,
        method: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
    ) -> Any:
        process = self._process
        stdin = process.stdin if process is not None else None
        if self._closed or stdin is None or stdin.is_closing():
            raise NotRunning("imsg rpc not running", method=method)

        request_id = self._next_id
        self._next_id += 1
        key = str(request_id)
        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": dict(params or {}),
        }

        loop = asyncio.get_running_loop()
        call = PendingRpcCall(request_id=request_id, method=method, future=loop.create_future())
        if timeout_ms and timeout_ms > 0:
            call.timer = loop.call_later(timeout_ms / 1000.0, self._expire, key)
        self._pending[key] = call

        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"
        try:
            stdin.write(line.encode("utf-8"))
            await stdin.drain()
        except (ConnectionError, OSError) as exc:
            self._logger.error(
                "imsg rpc write failed",
                component="transport",
                method=method,
                request_id=request_id,
                error=str(exc),
            )
            self._settle(
                key,
                error=ProcessTerminated(
                    "imsg rpc pipe is closed: {0}".format(self._stderr_preview()),
                    method=method,
                    request_id=request_id,
                ),
            )

        try:
            return await call.future
        finally:
            self._discard(key)

    async def send_message(self, params: Mapping[str, Any]) -> SendResult:
        result = await self.request("send", params, SEND_TIMEOUT_MS)
        return SendResult(message_id=_extract_message_id(result))

    async def list_chats(self, limit: int = 20) -> List[Any]:
        result = await self.request("chats", {"limit": int(limit)}, QUERY_TIMEOUT_MS)
        return _as_rows(result, "chats")

    async def get_chat_history(self, chat_id: Any, limit: int = 50) -> List[Any]:
        result = await self.request("history", {"chat_id": chat_id, "limit": int(limit)}, QUERY_TIMEOUT_MS)
        return _as_rows(result, "messages")

    def _handle_line(self, raw: str) -> None:
        line = raw.strip()
        if not line:
            return
        try:
            parsed = json.loads(line)
        except ValueError:
            self._logger.warn("failed to parse imsg json", component="transport", line=line[:200])
            return
        if not isinstance(parsed, dict):
            self._logger.warn("ignoring non-object imsg line", component="transport", line=line[:200])
            return

        if parsed.get("id") is not None:
            self._handle_response(parsed)
            return

        method = parsed.get("method")
        if isinstance(method, str) and method:
            self._handle_notification(method, parsed.get("params"))

    def _handle_response(self, response: Dict[str, Any]) -> None:
        key = str(response.get("id"))
        call = self._pending.get(key)
        if call is None:
            self._logger.debug("ignoring response for unknown id", component="transport", request_id=key)
            return

        error = response.get("error")
        if error:
            self._settle(key, error=_build_rpc_error(error, call))
        else:
            self._settle(key, result=response.get("result"))

    def _handle_notification(self, method: str, params: Any) -> None:
        self._logger.debug("imsg notification", component="transport", method=method)

        if method in _MESSAGE_METHODS:
            if not isinstance(params, dict) or self._on_message is None:
                return
            message = InboundMessage.from_payload(params)
            try:
                self._on_message(message)
            except Exception as exc:
                self._logger.error(
                    "inbound message handler failed",
                    component="transport",
                    method=method,
                    error=str(exc),
                )
            return

        if method == "error":
            details = params if isinstance(params, dict) else {}
            text = str(details.get("message") or "Unknown imsg error")
            self._logger.error("imsg error notification", component="transport", error=details or params)
            if self._on_error is not None:
                try:
                    self._on_error(BackendFault(text, code=details.get("code")))
                except Exception as exc:
                    self._logger.error("backend fault handler failed", component="transport", error=str(exc))
            return

        self._logger.debug("unknown imsg notification", component="transport", method=method)

    def _settle(self, key: str, *, result: Any = None, error: Optional[BaseException] = None) -> None:
        call = self._pending.pop(key, None)
        if call is None:
            return
        if call.timer is not None:
            call.timer.cancel()
        if call.future.done():
            return
        if error is not None:
            call.future.set_exception(error)
        else:
            call.future.set_result(result)

    def _discard(self, key: str) -> None:
        call = self._pending.pop(key, None)
        if call is not None and call.timer is not None:
            call.timer.cancel()

    def _expire(self, key: str) -> None:
        call = self._pending.get(key)
        if call is None:
            return
        self._logger.warn(
            "imsg rpc timeout",
            component="transport",
            method=call.method,
            request_id=call.request_id,
        )
        self._settle(
            key,
            error=RpcTimeout(
                "imsg rpc timeout ({0})".format(call.method),
                method=call.method,
                request_id=call.request_id,
            ),
        )

    def _fail_all(self, error: BaseException) -> None:
        for key in list(self._pending):
            self._settle(key, error=error)

    async def _read_stdout_loop(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stdout
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                self._logger.warn("dropping oversized imsg line", component="transport")
                continue
            if not raw:
                return
            self._handle_line(raw.decode("utf-8", errors="replace"))

    async def _read_stderr_loop(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stderr
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                self._stderr_lines.append(text)
                self._logger.debug("imsg stderr", component="transport", line=text)

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        try:
            returncode = await process.wait()
            # Deliver every response already on the pipe before failing the rest.
            if self._stdout_task is not None:
                await asyncio.wait([self._stdout_task])
            reason = _exit_reason(returncode)
            if returncode:
                self._logger.error("imsg process exited", component="transport", reason=reason)
                error = ProcessTerminated(
                    "imsg exited ({0}): {1}".format(reason, self._stderr_preview()),
                    returncode=returncode,
                )
            else:
                self._logger.info("imsg process closed", component="transport")
                error = ProcessTerminated("imsg closed", returncode=returncode)
            self._fail_all(error)
        finally:
            self._closed_event.set()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            self._logger.warn("imsg rpc ignored SIGTERM; killing", component="transport")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def _stderr_preview(self) -> str:
        if not self._stderr_lines:
            return "no stderr"
        return " | ".join(list(self._stderr_lines)[-3:])


def _exit_reason(returncode: Optional[int]) -> str:
    if returncode is None:
        return "closed"
    if returncode < 0:
        return "signal {0}".format(-returncode)
    if returncode > 0:
        return "code {0}".format(returncode)
    return "closed"


def _build_rpc_error(error: Any, call: PendingRpcCall) -> RpcError:
    envelope = error if isinstance(error, dict) else {"message": str(error)}
    base = str(envelope.get("message") or "imsg rpc error")
    raw_code = envelope.get("code")
    code = raw_code if isinstance(raw_code, int) and not isinstance(raw_code, bool) else None
    data = envelope.get("data")

    suffixes: List[str] = []
    if code is not None:
        suffixes.append("code={0}".format(code))
    if data is not None:
        detail = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
        if detail:
            suffixes.append(detail)
    message = "{0}: {1}".format(base, " ".join(suffixes)) if suffixes else base
    return RpcError(message, code=code, data=data, method=call.method, request_id=call.request_id)


def _extract_message_id(result: Any) -> Optional[str]:
    if not isinstance(result, dict):
        return None
    for key in _MESSAGE_ID_KEYS:
        value = result.get(key)
        if value:
            return str(value)
    if result.get("ok"):
        return "ok"
    return None


def _as_rows(result: Any, key: str) -> List[Any]:
    if isinstance(result, list):
        return result
    if isinstance(result, dict) and isinstance(result.get(key), list):
        return list(result[key])
    return []
