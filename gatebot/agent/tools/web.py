"""Web fetch tool."""

import html
import json
import re
from typing import Any
from urllib.parse import urlparse

import httpx

from gatebot.agent.tools.base import Tool
from gatebot.errors import ExecutorFailure

USER_AGENT = "Mozilla/5.0 (compatible; gatebot/0.3; +https://github.com/gatebot)"
MAX_REDIRECTS = 5

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE | re.DOTALL)
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def _strip_tags(text: str) -> str:
    text = _SCRIPT_RE.sub(" ", text)
    text = _STYLE_RE.sub(" ", text)
    text = re.sub(r"<(br|/p|/div|/li|/h[1-6])\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n\s*\n+", "\n\n", text).strip()


def _title(raw: str) -> str:
    match = _TITLE_RE.search(raw)
    if not match:
        return ""
    return re.sub(r"\s+", " ", html.unescape(match.group(1))).strip()


def _validate_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ExecutorFailure(f"Only http/https URLs are supported, got '{parsed.scheme or 'none'}'")
    if not parsed.netloc:
        raise ExecutorFailure("Missing domain in URL")


class WebFetchTool(Tool):
    """Fetch a URL and return readable text."""

    def __init__(
        self,
        max_chars: int = 50000,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_chars = max_chars
        self._timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return "web_fetch"

    @property
    def description(self) -> str:
        return "Fetch a URL and extract readable content (HTML is converted to text)."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to fetch"},
                "max_chars": {"type": "integer", "minimum": 100},
            },
            "required": ["url"],
        }

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset({"web"})

    @property
    def concurrency_safe(self) -> bool:
        return True

    async def execute(self, url: str, max_chars: int | None = None, **kwargs: Any) -> str:
        limit = max_chars or self.max_chars
        _validate_url(url)

        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                r = await client.get(url, headers={"User-Agent": USER_AGENT})
                r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExecutorFailure(f"HTTP {e.response.status_code} fetching {url}") from e
        except httpx.HTTPError as e:
            raise ExecutorFailure(f"Fetch failed: {e}") from e

        ctype = r.headers.get("content-type", "")
        if "application/json" in ctype:
            text, extractor = json.dumps(r.json(), indent=2, ensure_ascii=False), "json"
        elif "text/html" in ctype or r.text[:256].lower().lstrip().startswith(("<!doctype", "<html")):
            title = _title(r.text)
            body = _strip_tags(r.text)
            text, extractor = (f"# {title}\n\n{body}" if title else body), "html"
        else:
            text, extractor = r.text, "raw"

        truncated = len(text) > limit
        if truncated:
            text = text[:limit]

        header = f"URL: {r.url}\nStatus: {r.status_code}\nExtractor: {extractor}"
        if truncated:
            header += f"\nTruncated: {limit} chars"
        return f"{header}\n\n{text}"
