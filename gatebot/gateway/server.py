"""Gateway server: health check, HTTP tool invoke and the WebSocket chat channel."""

from __future__ import annotations

import asyncio
import json
import time
from collections import defaultdict, deque
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from gatebot.bus.events import InboundMessage, OutboundMessage
from gatebot.bus.queue import MessageBus
from gatebot.config.schema import GatewayConfig
from gatebot.gateway.invoke import ToolInvokeHandler
from gatebot.gateway.protocol import (
    CLOSE_AUTH_FAILED,
    CLOSE_PROTOCOL_ERROR,
    ERR_BAD_JSON,
    ERR_BAD_MESSAGE,
    ERR_BUSY,
    ERR_RATE_LIMIT,
    ERR_UNAUTHORIZED,
    KEY_ARGS,
    KEY_CODE,
    KEY_ID,
    KEY_STATUS,
    KEY_TEXT,
    KEY_TOOL,
    KEY_TYPE,
    TYPE_ASSISTANT_MESSAGE,
    TYPE_ERROR,
    TYPE_HELLO,
    TYPE_TOOL_INVOKE,
    TYPE_TOOL_RESULT,
    TYPE_USER_MESSAGE,
    coerce_text,
    frame,
    is_control_command,
    new_session_id,
    safe_json_loads,
)

LOCAL_HOSTS = {"127.0.0.1", "localhost", "::1"}


class GatewayServer:
    """HTTP + WebSocket front door: health, direct tool invoke and the web chat channel."""

    name = "web"

    def __init__(
        self,
        config: GatewayConfig,
        bus: MessageBus,
        invoke_handler: ToolInvokeHandler | None = None,
    ):
        self.config = config
        self.bus = bus
        self.invoke_handler = invoke_handler
        self._server: Server | None = None
        self.bound_port: int = int(config.port)
        self._connections: dict[str, set[ServerConnection]] = defaultdict(set)
        self._pending: set[str] = set()
        self._recent: dict[str, deque[float]] = defaultdict(deque)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._validate_security_settings()
        self._server = await serve(
            self._ws_handler,
            self.config.host,
            self.config.port,
            process_request=self._process_request,
            origins=self.config.allow_origins or None,
            max_size=self.config.max_message_bytes,
            max_queue=self.config.max_queue_frames,
            ping_interval=self.config.ping_interval_s,
            ping_timeout=self.config.ping_timeout_s,
        )
        sockets = list(self._server.sockets)
        if sockets:
            self.bound_port = int(sockets[0].getsockname()[1])
        self._running = True
        logger.info(f"Gateway listening on {self.config.host}:{self.bound_port}")

    async def stop(self) -> None:
        self._running = False
        for ws in self._all_connections():
            await ws.close()
        self._connections.clear()
        self._pending.clear()
        self._recent.clear()

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("Gateway stopped")

    async def run_outbound(self) -> None:
        """Deliver outbound bus messages addressed to the web channel."""
        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_outbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            if msg.channel != self.name:
                logger.debug(f"No gateway route for outbound channel {msg.channel}")
                continue
            await self.send(msg)

    async def send(self, msg: OutboundMessage) -> None:
        sid = coerce_text(msg.chat_id)
        if not sid:
            return

        extra = {"media": msg.media} if msg.media else {}
        payload = frame(TYPE_ASSISTANT_MESSAGE, sid, **{KEY_TEXT: msg.content}, **extra)

        dead: list[ServerConnection] = []
        for ws in list(self._connections.get(sid, set())):
            try:
                await ws.send(payload)
            except ConnectionClosed:
                dead.append(ws)
        for ws in dead:
            self._connections[sid].discard(ws)

        # Messages sent by the message tool mid-cycle do not end the request
        if not (msg.metadata or {}).get("tool"):
            self._pending.discard(sid)

    def _validate_security_settings(self) -> None:
        host = self.config.host.strip().lower()
        if host not in LOCAL_HOSTS:
            if not self.config.token:
                raise ValueError("gateway.token is required for non-local host binding")
            if not self.config.allow_origins:
                raise ValueError("gateway.allow_origins is required for non-local host binding")

    def _authorized(self, request: Request, query: dict[str, list[str]]) -> bool:
        if not self.config.token:
            return True
        header = request.headers.get("Authorization", "")
        if header.lower().startswith("bearer ") and header[7:].strip() == self.config.token:
            return True
        return coerce_text((query.get("token") or [""])[0]) == self.config.token

    async def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        parsed = urlparse(request.path)
        if parsed.path == "/health":
            return self._http_response(HTTPStatus.OK, b"ok\n", content_type="text/plain; charset=utf-8")
        if parsed.path == "/tools/invoke":
            return await self._http_invoke(request, parse_qs(parsed.query))
        if parsed.path == "/ws":
            return None
        return self._http_response(
            HTTPStatus.NOT_FOUND, b"not found\n", content_type="text/plain; charset=utf-8"
        )

    async def _http_invoke(self, request: Request, query: dict[str, list[str]]) -> Response:
        if not self._authorized(request, query):
            return self._json_response(
                HTTPStatus.UNAUTHORIZED,
                {"ok": False, "error": {"type": ERR_UNAUTHORIZED, "message": "unauthorized"}},
            )
        if self.invoke_handler is None:
            return self._json_response(
                HTTPStatus.NOT_FOUND,
                {"ok": False, "error": {"type": "not_found", "message": "tool invoke disabled"}},
            )

        raw_args = (query.get("args") or [""])[0]
        args: Any = {}
        if raw_args:
            args = safe_json_loads(raw_args)
            if args is None:
                return self._json_response(
                    HTTPStatus.BAD_REQUEST,
                    {"ok": False, "error": {"type": "bad_request", "message": "'args' must be a JSON object"}},
                )
        payload: dict[str, Any] = {"tool": (query.get("tool") or [""])[0], "args": args}
        if "sessionKey" in query:
            payload["sessionKey"] = query["sessionKey"][0]

        status, body = await self.invoke_handler.handle(payload)
        return self._json_response(status, body)

    def _json_response(self, status: HTTPStatus, body: dict[str, Any]) -> Response:
        return self._http_response(
            status,
            json.dumps(body, ensure_ascii=False).encode("utf-8"),
            content_type="application/json",
        )

    def _http_response(self, status: HTTPStatus, body: bytes, *, content_type: str) -> Response:
        headers = Headers(
            [
                ("Content-Type", content_type),
                ("Content-Length", str(len(body))),
                ("Cache-Control", "no-store"),
                ("X-Content-Type-Options", "nosniff"),
            ]
        )
        return Response(status.value, status.phrase, headers, body)

    async def _ws_handler(self, websocket: ServerConnection) -> None:
        parsed = urlparse(websocket.request.path if websocket.request else "")
        if parsed.path != "/ws":
            await websocket.close(code=CLOSE_PROTOCOL_ERROR, reason="invalid websocket path")
            return

        query = parse_qs(parsed.query)
        sid = coerce_text((query.get("sid") or [""])[0]) or new_session_id()

        if websocket.request is None or not self._authorized(websocket.request, query):
            await self._send_error(websocket, sid, ERR_UNAUTHORIZED, "unauthorized")
            await websocket.close(code=CLOSE_AUTH_FAILED, reason="unauthorized")
            return

        self._connections[sid].add(websocket)
        await websocket.send(frame(TYPE_HELLO, sid, **{KEY_TEXT: "connected"}))

        try:
            async for raw in websocket:
                await self._handle_frame(websocket, sid, raw)
        except ConnectionClosed as e:
            logger.debug(f"WebSocket closed for sid={sid}: {e}")
        finally:
            self._connections[sid].discard(websocket)
            if not self._connections[sid]:
                self._connections.pop(sid, None)

    async def _handle_frame(self, websocket: ServerConnection, sid: str, raw: str | bytes) -> None:
        data = safe_json_loads(raw)
        if data is None:
            await self._send_error(websocket, sid, ERR_BAD_JSON, "invalid json payload")
            return

        msg_type = coerce_text(data.get(KEY_TYPE))
        if msg_type == TYPE_TOOL_INVOKE:
            await self._handle_tool_invoke(websocket, sid, data)
            return

        text = coerce_text(data.get(KEY_TEXT))
        if msg_type != TYPE_USER_MESSAGE or not text:
            await self._send_error(
                websocket, sid, ERR_BAD_MESSAGE, "expected user_message with non-empty text"
            )
            return

        control = is_control_command(text)
        if sid in self._pending and not control:
            await self._send_error(websocket, sid, ERR_BUSY, "request already in progress")
            return

        if not self._allow_rate(sid):
            await self._send_error(websocket, sid, ERR_RATE_LIMIT, "rate limit exceeded")
            return

        if not control:
            self._pending.add(sid)
        await self.bus.publish_inbound(
            InboundMessage(
                channel=self.name,
                sender_id=sid,
                chat_id=sid,
                content=text,
                metadata={"web": {"sid": sid}},
            )
        )

    async def _handle_tool_invoke(self, websocket: ServerConnection, sid: str, data: dict[str, Any]) -> None:
        if self.invoke_handler is None:
            await self._send_error(websocket, sid, ERR_BAD_MESSAGE, "tool invoke disabled")
            return
        if not self._allow_rate(sid):
            await self._send_error(websocket, sid, ERR_RATE_LIMIT, "rate limit exceeded")
            return

        status, body = await self.invoke_handler.handle(
            {
                "tool": data.get(KEY_TOOL),
                "args": data.get(KEY_ARGS),
                "sessionKey": data.get("sessionKey") or f"{self.name}:{sid}",
            }
        )
        await websocket.send(
            frame(TYPE_TOOL_RESULT, sid, **{KEY_ID: data.get(KEY_ID), KEY_STATUS: int(status), **body})
        )

    async def _send_error(self, websocket: ServerConnection, sid: str, code: str, text: str) -> None:
        await websocket.send(frame(TYPE_ERROR, sid, **{KEY_CODE: code, KEY_TEXT: text}))

    def _allow_rate(self, sid: str) -> bool:
        now = time.monotonic()
        window = float(self.config.rate_limit_window_s)
        limit = int(self.config.rate_limit_count)
        q = self._recent[sid]
        while q and now - q[0] > window:
            q.popleft()
        if len(q) >= limit:
            return False
        q.append(now)
        return True

    def _all_connections(self) -> list[ServerConnection]:
        out: list[ServerConnection] = []
        for conns in self._connections.values():
            out.extend(conns)
        return out
