from __future__ import annotations

import asyncio
import json
from typing import List

import pytest

from imsg_bridge.errors import BackendFault, NotRunning, ProcessTerminated, RpcError, RpcTimeout
from imsg_bridge.transport import ImsgRpcClient
from imsg_bridge.types import InboundMessage


class FakeStdin:
    def __init__(self, fail: bool = False) -> None:
        self.lines: List[dict] = []
        self.fail = fail
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.fail:
            raise BrokenPipeError("pipe closed")
        assert data.endswith(b"\n")
        self.lines.append(json.loads(data.decode("utf-8")))

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self, stdin: FakeStdin) -> None:
        self.stdin = stdin
        self.returncode = None
        self.pid = 4242


def _wired_client(fail_writes: bool = False, **kwargs) -> tuple:
    client = ImsgRpcClient(**kwargs)
    stdin = FakeStdin(fail=fail_writes)
    client._process = FakeProcess(stdin)
    return client, stdin


async def _yield() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


def _response(request_id, result=None, error=None) -> str:
    payload = {"jsonrpc": "2.0", "id": request_id}
    if error is not None:
        payload["error"] = error
    else:
        payload["result"] = result
    return json.dumps(payload)


def test_command_includes_db_path_only_when_set():
    assert ImsgRpcClient().command == ["imsg", "rpc"]
    assert ImsgRpcClient(cli_path="/opt/bin/imsg", db_path="/tmp/chat.db").command == [
        "/opt/bin/imsg",
        "rpc",
        "--db",
        "/tmp/chat.db",
    ]
    assert ImsgRpcClient(cli_path="  ", base_args=["tool.py"]).command == ["imsg", "tool.py", "rpc"]


def test_requests_use_jsonrpc_envelope_with_increasing_ids():
    async def _run():
        client, stdin = _wired_client()
        first = asyncio.create_task(client.request("chats", {"limit": 3}))
        second = asyncio.create_task(client.request("history"))
        await _yield()
        client._handle_line(_response(1, {"chats": []}))
        client._handle_line(_response(2, []))
        return stdin.lines, await first, await second

    lines, first, second = asyncio.run(_run())

    assert lines == [
        {"jsonrpc": "2.0", "id": 1, "method": "chats", "params": {"limit": 3}},
        {"jsonrpc": "2.0", "id": 2, "method": "history", "params": {}},
    ]
    assert first == {"chats": []}
    assert second == []


def test_out_of_order_responses_reach_their_callers():
    async def _run():
        client, _ = _wired_client()
        first = asyncio.create_task(client.request("a"))
        second = asyncio.create_task(client.request("b"))
        await _yield()
        client._handle_line(_response(2, "second"))
        client._handle_line(_response(1, "first"))
        return await first, await second, client.pending_count

    assert asyncio.run(_run()) == ("first", "second", 0)


def test_error_envelope_becomes_rpc_error():
    async def _run():
        client, _ = _wired_client()
        task = asyncio.create_task(client.request("send"))
        await _yield()
        client._handle_line(
            _response(1, error={"code": -32000, "message": "send failed", "data": {"reason": "no chat"}})
        )
        with pytest.raises(RpcError) as excinfo:
            await task
        return excinfo.value

    error = asyncio.run(_run())

    assert str(error) == 'send failed: code=-32000 {"reason": "no chat"}'
    assert error.code == -32000
    assert error.data == {"reason": "no chat"}
    assert error.details["method"] == "send"
    assert error.details["request_id"] == 1


def test_error_envelope_without_code_keeps_message():
    async def _run():
        client, _ = _wired_client()
        task = asyncio.create_task(client.request("send"))
        await _yield()
        client._handle_line(_response(1, error={"message": "boom"}))
        with pytest.raises(RpcError) as excinfo:
            await task
        return excinfo.value

    error = asyncio.run(_run())

    assert str(error) == "boom"
    assert error.code is None


def test_timeout_rejects_and_clears_pending():
    async def _run():
        client, _ = _wired_client()
        with pytest.raises(RpcTimeout) as excinfo:
            await client.request("slow", timeout_ms=20)
        client._handle_line(_response(1, "late"))
        return excinfo.value, client.pending_count

    error, pending = asyncio.run(_run())

    assert str(error) == "imsg rpc timeout (slow)"
    assert pending == 0


def test_response_for_unknown_id_is_ignored():
    async def _run():
        client, _ = _wired_client()
        task = asyncio.create_task(client.request("a"))
        await _yield()
        client._handle_line(_response(99, "stray"))
        client._handle_line(_response(1, "mine"))
        return await task

    assert asyncio.run(_run()) == "mine"


def test_request_without_process_raises_not_running():
    async def _run():
        client = ImsgRpcClient()
        with pytest.raises(NotRunning):
            await client.request("chats")

        wired, stdin = _wired_client()
        stdin.closed = True
        with pytest.raises(NotRunning):
            await wired.request("chats")

    asyncio.run(_run())


def test_write_failure_settles_with_process_terminated():
    async def _run():
        client, _ = _wired_client(fail_writes=True)
        with pytest.raises(ProcessTerminated):
            await client.request("send", {"text": "hi"})
        return client.pending_count

    assert asyncio.run(_run()) == 0


def test_message_notifications_are_dispatched():
    received: List[InboundMessage] = []

    async def _run():
        client, _ = _wired_client(on_message=received.append)
        for method in ("message", "message.received"):
            client._handle_line(
                json.dumps(
                    {
                        "jsonrpc": "2.0",
                        "method": method,
                        "params": {"text": "hi", "sender": "+15550001111", "chat_id": 3, "is_group": True},
                    }
                )
            )
        client._handle_line(json.dumps({"jsonrpc": "2.0", "method": "message", "params": "not a dict"}))
        client._handle_line(json.dumps({"jsonrpc": "2.0", "method": "typing", "params": {}}))

    asyncio.run(_run())

    assert len(received) == 2
    assert received[0].sender == "+15550001111"
    assert received[0].chat_id == 3
    assert received[0].is_group is True


def test_failing_message_handler_does_not_break_reader():
    def _explode(message: InboundMessage) -> None:
        raise RuntimeError("handler bug")

    async def _run():
        client, _ = _wired_client(on_message=_explode)
        client._handle_line(json.dumps({"method": "message", "params": {"text": "hi", "sender": "a"}}))
        task = asyncio.create_task(client.request("a"))
        await _yield()
        client._handle_line(_response(1, "ok"))
        return await task

    assert asyncio.run(_run()) == "ok"


def test_error_notifications_become_backend_faults():
    faults: List[BackendFault] = []

    async def _run():
        client, _ = _wired_client(on_error=faults.append)
        client._handle_line(json.dumps({"method": "error", "params": {"message": "db locked", "code": 13}}))
        client._handle_line(json.dumps({"method": "error"}))

    asyncio.run(_run())

    assert [str(fault) for fault in faults] == ["db locked", "Unknown imsg error"]
    assert faults[0].details["code"] == 13


def test_malformed_lines_are_skipped():
    async def _run():
        client, _ = _wired_client()
        task = asyncio.create_task(client.request("a"))
        await _yield()
        for line in ("", "   ", "not json", "[1, 2, 3]", '"string"'):
            client._handle_line(line)
        client._handle_line(_response(1, "fine"))
        return await task

    assert asyncio.run(_run()) == "fine"


@pytest.mark.parametrize(
    "result, expected",
    [
        ({"messageId": "a1"}, "a1"),
        ({"message_id": "b2"}, "b2"),
        ({"id": 17}, "17"),
        ({"guid": "g-3"}, "g-3"),
        ({"ok": True}, "ok"),
        ({"ok": False}, None),
        ("sent", None),
        (None, None),
    ],
)
def test_send_message_normalizes_message_id(result, expected):
    async def _run():
        client, stdin = _wired_client()
        task = asyncio.create_task(client.send_message({"text": "hi", "to": "+1555"}))
        await _yield()
        client._handle_line(_response(1, result))
        return await task, stdin.lines[0]

    send_result, line = asyncio.run(_run())

    assert send_result.message_id == expected
    assert line["method"] == "send"
    assert line["params"] == {"text": "hi", "to": "+1555"}


def test_list_chats_accepts_list_or_wrapped_rows():
    async def _run():
        client, _ = _wired_client()
        wrapped = asyncio.create_task(client.list_chats(5))
        await _yield()
        client._handle_line(_response(1, {"chats": [{"id": 1}]}))
        bare = asyncio.create_task(client.list_chats())
        await _yield()
        client._handle_line(_response(2, [{"id": 2}]))
        odd = asyncio.create_task(client.list_chats())
        await _yield()
        client._handle_line(_response(3, "nope"))
        return await wrapped, await bare, await odd

    assert asyncio.run(_run()) == ([{"id": 1}], [{"id": 2}], [])
