import asyncio
import contextlib
import json
from typing import Any

import httpx
import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from conftest import RecordingTool
from gatebot.agent.policy import PolicyFilter
from gatebot.agent.tools.registry import ToolRegistry
from gatebot.bus.events import OutboundMessage
from gatebot.bus.queue import MessageBus
from gatebot.config.schema import Config, GatewayConfig
from gatebot.gateway.invoke import ToolInvokeHandler
from gatebot.gateway.protocol import is_control_command
from gatebot.gateway.server import GatewayServer


def invoke_handler() -> ToolInvokeHandler:
    config = Config()
    registry = ToolRegistry()
    registry.register(RecordingTool("echo"))
    return ToolInvokeHandler(registry, PolicyFilter.from_config(config), config, provider="openai")


async def recv_json(ws) -> dict[str, Any]:
    return json.loads(await asyncio.wait_for(ws.recv(), timeout=5.0))


@contextlib.asynccontextmanager
async def running_gateway(bus: MessageBus | None = None, **overrides):
    config = GatewayConfig(host="127.0.0.1", port=0, **overrides)
    server = GatewayServer(config, bus or MessageBus(), invoke_handler=invoke_handler())
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_http_and_ws_roundtrip() -> None:
    bus = MessageBus()

    async def fake_agent() -> None:
        while True:
            inbound = await bus.consume_inbound()
            await bus.publish_outbound(
                OutboundMessage(channel="web", chat_id=inbound.chat_id, content=f"echo:{inbound.content}")
            )

    async with running_gateway(bus) as server:
        agent_task = asyncio.create_task(fake_agent())
        dispatch_task = asyncio.create_task(server.run_outbound())
        base_url = f"http://127.0.0.1:{server.bound_port}"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                health = await client.get(f"{base_url}/health")
                assert health.status_code == 200
                assert health.text.strip() == "ok"

                missing = await client.get(f"{base_url}/nope")
                assert missing.status_code == 404

            async with connect(f"ws://127.0.0.1:{server.bound_port}/ws") as ws:
                hello = await recv_json(ws)
                assert hello["type"] == "hello"
                assert hello["sid"]

                await ws.send(json.dumps({"type": "user_message", "text": "hello"}))
                response = await recv_json(ws)
                assert response["type"] == "assistant_message"
                assert response["text"] == "echo:hello"
                assert response["sid"] == hello["sid"]
        finally:
            agent_task.cancel()
            dispatch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await agent_task
            with contextlib.suppress(asyncio.CancelledError):
                await dispatch_task


@pytest.mark.asyncio
async def test_security_rules() -> None:
    server = GatewayServer(GatewayConfig(host="0.0.0.0", port=0, token=None), MessageBus())
    with pytest.raises(ValueError):
        await server.start()

    async with running_gateway(allow_origins=["https://allowed.example"]) as origin_server:
        with pytest.raises(Exception):
            await connect(
                f"ws://127.0.0.1:{origin_server.bound_port}/ws",
                origin="https://blocked.example",
            )


@pytest.mark.asyncio
async def test_token_auth() -> None:
    async with running_gateway(token="s3cret") as server:
        port = server.bound_port
        async with connect(f"ws://127.0.0.1:{port}/ws?sid=anon") as ws:
            error = await recv_json(ws)
            assert error["type"] == "error"
            assert error["code"] == "unauthorized"
            with pytest.raises(ConnectionClosed) as exc:
                await asyncio.wait_for(ws.recv(), timeout=5.0)
            assert exc.value.rcvd.code == 4401

        async with connect(f"ws://127.0.0.1:{port}/ws?token=s3cret") as ws:
            assert (await recv_json(ws))["type"] == "hello"

        async with connect(
            f"ws://127.0.0.1:{port}/ws", additional_headers={"Authorization": "Bearer s3cret"}
        ) as ws:
            assert (await recv_json(ws))["type"] == "hello"

        async with httpx.AsyncClient(timeout=5.0) as client:
            url = f"http://127.0.0.1:{port}/tools/invoke"
            denied = await client.get(url, params={"tool": "echo"})
            assert denied.status_code == 401
            assert denied.json()["error"]["type"] == "unauthorized"

            allowed = await client.get(
                url, params={"tool": "echo"}, headers={"Authorization": "Bearer s3cret"}
            )
            assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_busy_guard_lets_control_commands_through() -> None:
    bus = MessageBus()
    async with running_gateway(bus) as server:
        async with connect(f"ws://127.0.0.1:{server.bound_port}/ws?sid=busycase") as ws:
            await recv_json(ws)

            await ws.send(json.dumps({"type": "user_message", "text": "first"}))
            await ws.send(json.dumps({"type": "user_message", "text": "second"}))
            busy = await recv_json(ws)
            assert busy["type"] == "error"
            assert busy["code"] == "busy"

            await ws.send(json.dumps({"type": "user_message", "text": "/stop"}))
            first = await asyncio.wait_for(bus.consume_inbound(), timeout=5.0)
            stop = await asyncio.wait_for(bus.consume_inbound(), timeout=5.0)
            assert (first.content, stop.content) == ("first", "/stop")
            assert stop.session_key == "web:busycase"

            # A message-tool delivery mid-cycle keeps the request pending
            await server.send(
                OutboundMessage(channel="web", chat_id="busycase", content="progress", metadata={"tool": "message"})
            )
            assert (await recv_json(ws))["text"] == "progress"
            await ws.send(json.dumps({"type": "user_message", "text": "third"}))
            assert (await recv_json(ws))["code"] == "busy"

            await server.send(OutboundMessage(channel="web", chat_id="busycase", content="final"))
            assert (await recv_json(ws))["text"] == "final"
            await ws.send(json.dumps({"type": "user_message", "text": "fourth"}))
            fourth = await asyncio.wait_for(bus.consume_inbound(), timeout=5.0)
            assert fourth.content == "fourth"


@pytest.mark.asyncio
async def test_malformed_frames() -> None:
    async with running_gateway() as server:
        async with connect(f"ws://127.0.0.1:{server.bound_port}/ws") as ws:
            await recv_json(ws)

            await ws.send("{not json")
            assert (await recv_json(ws))["code"] == "bad_json"

            await ws.send(json.dumps({"type": "user_message", "text": "   "}))
            assert (await recv_json(ws))["code"] == "bad_message"


@pytest.mark.asyncio
async def test_rate_limit() -> None:
    async with running_gateway(rate_limit_count=2, rate_limit_window_s=60) as server:
        async with connect(f"ws://127.0.0.1:{server.bound_port}/ws") as ws:
            await recv_json(ws)
            for text in ("/new", "/new", "/new"):
                await ws.send(json.dumps({"type": "user_message", "text": text}))
            assert (await recv_json(ws))["code"] == "rate_limit"


@pytest.mark.asyncio
async def test_tool_invoke_over_websocket() -> None:
    async with running_gateway() as server:
        async with connect(f"ws://127.0.0.1:{server.bound_port}/ws?sid=tools") as ws:
            await recv_json(ws)

            await ws.send(json.dumps({"type": "tool_invoke", "id": "r1", "tool": "echo", "args": {"value": "x"}}))
            result = await recv_json(ws)
            assert result["type"] == "tool_result"
            assert result["id"] == "r1"
            assert result["status"] == 200
            assert result["ok"] is True
            assert result["content"] == "echo:x"

            await ws.send(json.dumps({"type": "tool_invoke", "id": "r2", "tool": "ghost"}))
            missing = await recv_json(ws)
            assert missing["status"] == 404
            assert missing["error"]["type"] == "unknown_tool"


@pytest.mark.asyncio
async def test_tool_invoke_over_http() -> None:
    async with running_gateway() as server:
        url = f"http://127.0.0.1:{server.bound_port}/tools/invoke"
        async with httpx.AsyncClient(timeout=5.0) as client:
            ok = await client.get(url, params={"tool": "echo", "args": json.dumps({"value": "hi"})})
            assert ok.status_code == 200
            body = ok.json()
            assert body["content"] == "echo:hi"
            assert body["callId"].startswith("invoke_")

            bad = await client.get(url, params={"tool": "echo", "args": "[1, 2]"})
            assert bad.status_code == 400

            missing = await client.get(url, params={"tool": "ghost"})
            assert missing.status_code == 404


def test_control_command_detection() -> None:
    assert is_control_command("/stop")
    assert is_control_command("  /NEW please")
    assert not is_control_command("/help")
    assert not is_control_command("stop")
    assert not is_control_command("")
