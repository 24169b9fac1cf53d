"""
WebFetch - fetch a URL and return it as Markdown.

Network guard rails:
- http/https only
- internal hosts and private/link-local addresses are refused, including
  hostnames that resolve to them and redirect targets
- response body capped at tools.webfetch_max_bytes
"""
import html as html_lib
import ipaddress
import logging
import re
import socket
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from claude_agent_sdk import tool

from ..core.tool_schemas import BUILTIN_TOOL_SCHEMAS
from .common import ToolEnvironment, _error, _result

logger = logging.getLogger(__name__)

_SPEC = BUILTIN_TOOL_SCHEMAS["WebFetch"]

MAX_REDIRECTS: int = 5
USER_AGENT: str = "agentrelay-webfetch/1.0 (+https://github.com/)"

BLOCKED_HOSTS: frozenset[str] = frozenset({
    "localhost",
    "metadata.google.internal",
    "metadata.azure.com",
    "169.254.169.254",
})


def _is_private_address(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_multicast or ip.is_reserved


def validate_url(url: str) -> Optional[str]:
    """
    Check a URL against the network guard rails.

    Returns:
        None if the URL may be fetched, otherwise the reason it may not.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return f"Invalid protocol: {parsed.scheme or '(none)'} (only http/https allowed)"
    hostname = parsed.hostname
    if not hostname:
        return "Invalid URL: missing hostname"
    if hostname in BLOCKED_HOSTS or hostname.endswith(".localhost"):
        return f"Domain blocked by security policy: {hostname}"
    if _is_private_address(hostname):
        return f"Access to private IP address blocked: {hostname}"

    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    try:
        for _family, _type, _proto, _name, sockaddr in socket.getaddrinfo(hostname, port):
            if _is_private_address(str(sockaddr[0])):
                return f"Domain {hostname} resolves to private IP: {sockaddr[0]}"
    except socket.gaierror:
        # Resolution failure surfaces as a connect error from httpx
        pass
    return None


def html_to_markdown(html: str) -> str:
    """Lightweight HTML to Markdown conversion (no external parser)."""
    text = re.sub(r"<(script|style|noscript)[^>]*>.*?</\1>", "", html, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)

    def heading(match: re.Match) -> str:
        return "\n" + "#" * int(match.group(1)) + " " + match.group(2).strip() + "\n"

    text = re.sub(r"<h([1-6])[^>]*>(.*?)</h\1>", heading, text, flags=re.DOTALL | re.IGNORECASE)

    def link(match: re.Match) -> str:
        label = re.sub(r"<[^>]+>", "", match.group(2)).strip()
        return f"[{label or match.group(1)}]({match.group(1)})"

    text = re.sub(
        r"<a[^>]*href=[\"']([^\"']*)[\"'][^>]*>(.*?)</a>", link, text, flags=re.DOTALL | re.IGNORECASE
    )
    text = re.sub(r"<pre[^>]*>(.*?)</pre>", r"\n```\n\1\n```\n", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<code[^>]*>(.*?)</code>", r"`\1`", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<(?:strong|b)[^>]*>(.*?)</(?:strong|b)>", r"**\1**", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<(?:em|i)[^>]*>(.*?)</(?:em|i)>", r"*\1*", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "\n- ", text, flags=re.IGNORECASE)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</?(?:p|div|section|article|tr|ul|ol|table)[^>]*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html_lib.unescape(text)

    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n[ \t]+", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def create_webfetch_tool(env: ToolEnvironment):
    """Create the WebFetch tool."""
    timeout = env.config.webfetch_timeout_seconds
    max_bytes = env.config.webfetch_max_bytes

    async def check_redirect(request: httpx.Request) -> None:
        reason = validate_url(str(request.url))
        if reason:
            logger.warning(f"WebFetch: Blocked redirect to {request.url}: {reason}")
            raise httpx.RequestError(f"Redirect blocked: {reason}", request=request)

    @tool("WebFetch", _SPEC["description"], _SPEC["input_schema"])
    async def webfetch(args: dict[str, Any]) -> dict[str, Any]:
        """Fetch a URL and convert the body to Markdown."""
        url = str(args.get("url") or "").strip()
        prompt = args.get("prompt")
        if not url:
            return _error("url is required")

        reason = validate_url(url)
        if reason:
            logger.warning(f"WebFetch: Blocked URL - {url}: {reason}")
            return _error(reason)

        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                headers={"User-Agent": USER_AGENT},
                event_hooks={"request": [check_redirect]},
            ) as client:
                async with client.stream("GET", url) as response:
                    chunks: list[bytes] = []
                    size = 0
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        if size > max_bytes:
                            return _error(f"Response exceeds {max_bytes} bytes")
                        chunks.append(chunk)
                    body = b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")
                    status = response.status_code
                    content_type = response.headers.get("content-type", "")
                    final_url = str(response.url)
        except httpx.TimeoutException:
            return _error(f"Request timed out after {timeout}s: {url}")
        except httpx.TooManyRedirects:
            return _error(f"Too many redirects (max {MAX_REDIRECTS}): {url}")
        except httpx.RequestError as e:
            return _error(f"Request failed: {e}")

        if status >= 400:
            return _error(f"HTTP {status} fetching {final_url}")

        if "html" in content_type.lower():
            body = html_to_markdown(body)

        header = f"URL: {final_url}\nStatus: {status}\n"
        if prompt:
            header += f"Looking for: {prompt}\n"
        logger.info(f"WebFetch: {final_url} -> {status} ({size} bytes)")
        return _result(env.truncate(f"{header}\n{body}"))

    return webfetch
