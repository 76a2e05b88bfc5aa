"""OpenAI Responses API provider (streaming, API key auth)."""

from __future__ import annotations

import hashlib
import json
from typing import Any, AsyncGenerator

import httpx
import json_repair
from loguru import logger

from gatebot.providers.base import LLMProvider, LLMResponse, ToolCallRequest

DEFAULT_API_BASE = "https://api.openai.com/v1"

_FINISH_REASON_MAP = {"completed": "stop", "incomplete": "length", "failed": "error", "cancelled": "error"}
_OVERFLOW_CODES = ("context_length_exceeded", "string_above_max_length")


class ContextOverflow(RuntimeError):
    """The engine rejected the prompt as too long."""


class ResponsesProvider(LLMProvider):
    """Call an OpenAI-compatible ``/responses`` endpoint and parse its SSE stream."""

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gpt-5.1",
        provider_name: str = "openai",
        parallel_tool_calls: bool = True,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(api_key=api_key, api_base=(api_base or DEFAULT_API_BASE).rstrip("/"))
        self.default_model = default_model
        self.provider_name = provider_name
        self.parallel_tool_calls = parallel_tool_calls
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return self.provider_name

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        model = model or self.default_model
        system_prompt, input_items = _convert_messages(messages)

        body: dict[str, Any] = {
            "model": _strip_model_prefix(model),
            "store": False,
            "stream": True,
            "instructions": system_prompt,
            "input": input_items,
            "max_output_tokens": max_tokens,
            "prompt_cache_key": _prompt_cache_key(messages),
        }
        if tools:
            body["tools"] = _convert_tools(tools)
            body["tool_choice"] = "auto"
            body["parallel_tool_calls"] = self.parallel_tool_calls

        try:
            content, tool_calls, finish_reason, usage = await self._request(body)
            response = LLMResponse(
                content=content,
                tool_calls=tool_calls,
                finish_reason=finish_reason,
                usage=usage,
            )
        except ContextOverflow as e:
            response = LLMResponse(content=str(e), finish_reason="context_overflow")
        except (httpx.HTTPError, RuntimeError) as e:
            logger.warning(f"{self.name} request failed: {e}")
            response = LLMResponse(content=f"Error calling {self.name}: {e}", finish_reason="error")
        self._log_response_debug(response, model=model)
        return response

    def get_default_model(self) -> str:
        return self.default_model

    def _headers(self) -> dict[str, str]:
        headers = {
            "User-Agent": "gatebot (python)",
            "accept": "text/event-stream",
            "content-type": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, body: dict[str, Any]) -> tuple[str, list[ToolCallRequest], str, dict[str, int]]:
        url = f"{self.api_base}/responses"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            async with client.stream("POST", url, headers=self._headers(), json=body) as response:
                if response.status_code != 200:
                    text = (await response.aread()).decode("utf-8", "ignore")
                    if response.status_code == 400 and any(code in text for code in _OVERFLOW_CODES):
                        raise ContextOverflow(f"Prompt exceeds the model context window: {text[:200]}")
                    raise RuntimeError(_friendly_error(response.status_code, text))
                return await _consume_sse(response)


def _strip_model_prefix(model: str) -> str:
    if "/" in model:
        return model.split("/", 1)[1]
    return model


def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert OpenAI function-calling schema to the Responses flat format."""
    converted: list[dict[str, Any]] = []
    for tool in tools:
        fn = (tool.get("function") or {}) if tool.get("type") == "function" else tool
        name = fn.get("name")
        if not name:
            continue
        params = fn.get("parameters") or {}
        converted.append({
            "type": "function",
            "name": name,
            "description": fn.get("description") or "",
            "parameters": params if isinstance(params, dict) else {},
        })
    return converted


def _convert_messages(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    system_prompt = ""
    input_items: list[dict[str, Any]] = []

    for idx, msg in enumerate(messages):
        role = msg.get("role")
        content = msg.get("content")

        if role == "system":
            system_prompt = content if isinstance(content, str) else ""
        elif role == "user":
            text = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)
            input_items.append({"role": "user", "content": [{"type": "input_text", "text": text}]})
        elif role == "assistant":
            if isinstance(content, str) and content:
                input_items.append({
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": content}],
                    "status": "completed",
                    "id": f"msg_{idx}",
                })
            for tool_call in msg.get("tool_calls") or []:
                fn = tool_call.get("function") or {}
                call_id, item_id = _split_tool_call_id(tool_call.get("id"))
                item = {
                    "type": "function_call",
                    "call_id": call_id or f"call_{idx}",
                    "name": fn.get("name"),
                    "arguments": fn.get("arguments") or "{}",
                }
                if item_id:
                    item["id"] = item_id
                input_items.append(item)
        elif role == "tool":
            call_id, _ = _split_tool_call_id(msg.get("tool_call_id"))
            input_items.append({
                "type": "function_call_output",
                "call_id": call_id,
                "output": content if isinstance(content, str) else json.dumps(content),
            })

    return system_prompt, input_items


def _split_tool_call_id(tool_call_id: Any) -> tuple[str, str | None]:
    # Ids are "<call_id>|<item_id>" so the item id survives a round trip
    if isinstance(tool_call_id, str) and tool_call_id:
        if "|" in tool_call_id:
            call_id, item_id = tool_call_id.split("|", 1)
            return call_id, item_id or None
        return tool_call_id, None
    return "call_0", None


def _prompt_cache_key(messages: list[dict[str, Any]]) -> str:
    raw = json.dumps(messages, ensure_ascii=True, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json_repair.loads(raw)
    except (ValueError, TypeError):
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"raw": raw}


async def _iter_sse(response: httpx.Response) -> AsyncGenerator[dict[str, Any], None]:
    buffer: list[str] = []
    async for line in response.aiter_lines():
        if line == "":
            if buffer:
                parsed = _parse_sse_buffer(buffer)
                buffer = []
                if parsed is not None:
                    yield parsed
            continue
        buffer.append(line)
    if buffer:
        parsed = _parse_sse_buffer(buffer)
        if parsed is not None:
            yield parsed


def _parse_sse_buffer(buffer: list[str]) -> dict[str, Any] | None:
    data_lines = [line[5:].strip() for line in buffer if line.startswith("data:")]
    if not data_lines:
        return None
    data = "\n".join(data_lines).strip()
    if not data or data == "[DONE]":
        return None
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


async def _consume_sse(response: httpx.Response) -> tuple[str, list[ToolCallRequest], str, dict[str, int]]:
    text_parts: list[str] = []
    fallback_parts: list[str] = []
    tool_calls: list[ToolCallRequest] = []
    buffers: dict[str, dict[str, Any]] = {}
    finish_reason = "stop"
    usage: dict[str, int] = {}

    async for event in _iter_sse(response):
        event_type = event.get("type") or ""
        if event_type == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") == "function_call" and item.get("call_id"):
                buffers[item["call_id"]] = {
                    "id": item.get("id") or "",
                    "name": item.get("name"),
                    "arguments": item.get("arguments") or "",
                }
        elif event_type == "response.output_text.delta":
            text_parts.append(event.get("delta") or "")
        elif event_type == "response.function_call_arguments.delta":
            buf = buffers.get(event.get("call_id") or "")
            if buf is not None:
                buf["arguments"] += event.get("delta") or ""
        elif event_type == "response.function_call_arguments.done":
            buf = buffers.get(event.get("call_id") or "")
            if buf is not None:
                buf["arguments"] = event.get("arguments") or buf["arguments"]
        elif event_type == "response.output_item.done":
            item = event.get("item") or {}
            if item.get("type") == "function_call":
                call_id = item.get("call_id") or ""
                buf = buffers.get(call_id) or {}
                item_id = buf.get("id") or item.get("id")
                tool_calls.append(
                    ToolCallRequest(
                        id=f"{call_id}|{item_id}" if item_id and call_id else call_id,
                        name=buf.get("name") or item.get("name") or "",
                        arguments=_parse_arguments(buf.get("arguments") or item.get("arguments")),
                    )
                )
            elif item.get("type") == "message":
                for entry in item.get("content") or []:
                    if isinstance(entry, dict) and entry.get("type") == "output_text":
                        fallback_parts.append(entry.get("text") or "")
        elif event_type == "response.completed":
            payload = event.get("response") or {}
            finish_reason = _FINISH_REASON_MAP.get(payload.get("status") or "completed", "stop")
            raw_usage = payload.get("usage") or {}
            usage = {k: v for k, v in raw_usage.items() if isinstance(v, int)}
        elif event_type in {"error", "response.failed"}:
            error = event.get("error") or (event.get("response") or {}).get("error") or {}
            code = error.get("code") if isinstance(error, dict) else None
            if code in _OVERFLOW_CODES:
                raise ContextOverflow(str(error.get("message") or code))
            raise RuntimeError(f"Response failed: {error or event_type}")

    content = "".join(text_parts) or "".join(fallback_parts)
    return content, tool_calls, finish_reason, usage


def _friendly_error(status_code: int, raw: str) -> str:
    if status_code == 401:
        return "Authentication failed; check providers.default.apiKey"
    if status_code == 429:
        return "Usage quota exceeded or rate limit triggered. Please try again later."
    return f"HTTP {status_code}: {raw[:500]}"
