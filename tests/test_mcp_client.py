"""Supervisor tests against the fake mcp-cron server (tests/fake_mcp_cron.py)."""

import asyncio
import json
import os

import pytest

from core.mcp_client import (
    CallTimeoutError,
    HandshakeTimeoutError,
    McpStdioClient,
    NotRunningError,
    ProcessExitError,
    RpcError,
    ServerStoppedError,
    SpawnError,
)
from models.models import McpServerConfig, ProcessState


def _text(result):
    return result["content"][0]["text"]


def _client(**kwargs):
    kwargs.setdefault("response_timeout", 5.0)
    kwargs.setdefault("kill_grace", 1.0)
    return McpStdioClient("fake-cron", **kwargs)


def test_start_handshake_and_call(fake_cron_config):
    async def scenario():
        client = _client()
        await client.start(fake_cron_config(FAKE_TASKS='[{"id": "t1"}]'))
        try:
            assert client.state is ProcessState.RUNNING
            assert client.is_running
            assert client.server_info == {"name": "fake-mcp-cron", "version": "1.0.0"}
            result = await client.call("list_tasks")
            assert json.loads(_text(result)) == [{"id": "t1"}]
        finally:
            await client.stop()
        assert client.state is ProcessState.STOPPED
        assert client.pid is None

    asyncio.run(scenario())


def test_start_is_idempotent(fake_cron_config):
    async def scenario():
        client = _client()
        config = fake_cron_config()
        await asyncio.gather(client.start(config), client.start(config))
        pid = client.pid
        await client.start(config)
        try:
            assert client.pid == pid
        finally:
            await client.stop()

    asyncio.run(scenario())


def test_concurrent_calls_complete_out_of_order(fake_cron_config):
    async def scenario():
        client = _client()
        await client.start(fake_cron_config())
        finished = []

        async def call(tag, ms):
            result = await client.call("sleep", {"ms": ms, "tag": tag})
            finished.append(tag)
            return json.loads(_text(result))["tag"]

        try:
            results = await asyncio.gather(call("slow", 400), call("fast", 10))
        finally:
            await client.stop()
        assert results == ["slow", "fast"]
        assert finished == ["fast", "slow"]

    asyncio.run(scenario())


def test_timeout_fails_only_its_own_request(fake_cron_config):
    async def scenario():
        client = _client(response_timeout=0.5)
        await client.start(fake_cron_config())
        try:
            slow, fast = await asyncio.gather(
                client.call("sleep", {"ms": 1500, "tag": "late"}),
                client.call("echo", {"x": 1}),
                return_exceptions=True,
            )
            assert isinstance(slow, CallTimeoutError)
            assert json.loads(_text(fast)) == {"x": 1}

            # The late response for the abandoned id is ignored
            await asyncio.sleep(1.2)
            assert client.is_running
            result = await client.call("echo", {"x": 2})
            assert json.loads(_text(result)) == {"x": 2}
        finally:
            await client.stop()

    asyncio.run(scenario())


def test_crash_rejects_all_pending_and_stops(fake_cron_config):
    async def scenario():
        client = _client()
        await client.start(fake_cron_config())
        pending = asyncio.ensure_future(client.call("sleep", {"ms": 5000, "tag": "x"}))
        await asyncio.sleep(0.1)

        with pytest.raises(ProcessExitError) as crash_exc:
            await client.call("crash", {"code": 3})
        assert not isinstance(crash_exc.value, ServerStoppedError)
        with pytest.raises(ProcessExitError):
            await pending

        assert client.state is ProcessState.STOPPED
        assert not client.is_running
        with pytest.raises(NotRunningError):
            await client.call("list_tasks")
        # stop after a crash is a harmless no-op
        await client.stop()

    asyncio.run(scenario())


def test_stop_rejects_pending_with_server_stopped(fake_cron_config):
    async def scenario():
        client = _client()
        await client.start(fake_cron_config())
        pending = asyncio.ensure_future(client.call("sleep", {"ms": 5000, "tag": "x"}))
        await asyncio.sleep(0.2)
        await client.stop()
        with pytest.raises(ServerStoppedError):
            await pending

    asyncio.run(scenario())


def test_concurrent_stop_is_safe(fake_cron_config):
    async def scenario():
        client = _client()
        await client.start(fake_cron_config())
        await asyncio.gather(client.stop(), client.stop(), client.stop())
        assert client.state is ProcessState.STOPPED

    asyncio.run(scenario())


def test_handshake_timeout_kills_child(fake_cron_config, tmp_path):
    pid_file = tmp_path / "pid"

    async def scenario():
        client = _client(response_timeout=0.5)
        with pytest.raises(HandshakeTimeoutError):
            await client.start(fake_cron_config(FAKE_SILENT=1, FAKE_PID_FILE=pid_file))
        assert client.state is ProcessState.STOPPED
        assert client.pid is None
        assert not client.is_running

    asyncio.run(scenario())
    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_spawn_failure_raises_spawn_error():
    async def scenario():
        client = _client()
        with pytest.raises(SpawnError):
            await client.start(McpServerConfig("/nonexistent/mcp-cron-binary"))
        assert client.state is ProcessState.STOPPED

    asyncio.run(scenario())


def test_error_response_raises_rpc_error(fake_cron_config):
    async def scenario():
        client = _client()
        await client.start(fake_cron_config())
        try:
            with pytest.raises(RpcError) as exc:
                await client.call("fail")
            assert exc.value.code == -32000
            with pytest.raises(RpcError) as exc:
                await client.call("no_such_tool")
            assert exc.value.code == -32602
            assert client.is_running
        finally:
            await client.stop()

    asyncio.run(scenario())


def test_call_before_start_raises_not_running():
    async def scenario():
        with pytest.raises(NotRunningError):
            await _client().call("list_tasks")

    asyncio.run(scenario())


def test_request_ids_restart_per_process(fake_cron_config):
    async def scenario():
        client = _client()
        config = fake_cron_config()
        await client.start(config)
        # id 1 was initialize
        assert _text(await client.call("last_id")) == "2"
        assert _text(await client.call("last_id")) == "3"
        await client.stop()

        await client.start(config)
        try:
            assert _text(await client.call("last_id")) == "2"
        finally:
            await client.stop()

    asyncio.run(scenario())


def test_env_is_passed_to_child(fake_cron_config):
    async def scenario():
        client = _client()
        await client.start(fake_cron_config(FAKE_TOOL_TEXT="from-env"))
        try:
            assert _text(await client.call("anything")) == "from-env"
        finally:
            await client.stop()

    asyncio.run(scenario())


def test_stubborn_child_is_killed_without_waiting_for_reap(fake_cron_config, tmp_path):
    pid_file = tmp_path / "pid"

    async def scenario():
        client = _client(kill_grace=0.3)
        await client.start(fake_cron_config(FAKE_IGNORE_SIGTERM=1, FAKE_PID_FILE=pid_file))
        loop = asyncio.get_running_loop()
        began = loop.time()
        await client.stop()
        assert loop.time() - began < 1.5
        assert client.state is ProcessState.STOPPED

        # SIGKILL was sent before stop() returned; the child goes away shortly
        pid = int(pid_file.read_text())
        for _ in range(40):
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                return
            await asyncio.sleep(0.05)
        pytest.fail(f"child {pid} still alive after SIGKILL")

    asyncio.run(scenario())
