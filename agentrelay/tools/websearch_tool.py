"""
WebSearch - query an HTML search endpoint and list the results.

The endpoint (tools.websearch_endpoint) must accept a `q` form field and
return DuckDuckGo-style HTML result markup.
"""
import html as html_lib
import logging
import re
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

import httpx
from claude_agent_sdk import tool

from ..core.tool_schemas import BUILTIN_TOOL_SCHEMAS
from .common import ToolEnvironment, _error, _result
from .webfetch_tool import USER_AGENT

logger = logging.getLogger(__name__)

_SPEC = BUILTIN_TOOL_SCHEMAS["WebSearch"]

_RESULT_LINK = re.compile(
    r'<a[^>]*class="[^"]*result__a[^"]*"[^>]*href="([^"]+)"[^>]*>(.*?)</a>', re.DOTALL
)
_RESULT_SNIPPET = re.compile(r'class="[^"]*result__snippet[^"]*"[^>]*>(.*?)</', re.DOTALL)


def _strip_tags(fragment: str) -> str:
    return html_lib.unescape(re.sub(r"<[^>]+>", "", fragment)).strip()


def _real_url(href: str) -> str:
    """Unwrap redirect links of the form /l/?uddg=<encoded url>."""
    parsed = urlparse(href)
    target = parse_qs(parsed.query).get("uddg")
    if target:
        return unquote(target[0])
    if href.startswith("//"):
        return "https:" + href
    return href


def _domain_matches(host: str, domains: list[str]) -> bool:
    host = host.lower()
    return any(host == d.lower() or host.endswith("." + d.lower()) for d in domains)


def parse_results(page: str) -> list[dict[str, str]]:
    """Extract {title, url, snippet} entries from a result page."""
    links = _RESULT_LINK.findall(page)
    snippets = _RESULT_SNIPPET.findall(page)
    results = []
    for i, (href, title) in enumerate(links):
        results.append({
            "title": _strip_tags(title),
            "url": _real_url(html_lib.unescape(href)),
            "snippet": _strip_tags(snippets[i]) if i < len(snippets) else "",
        })
    return results


def create_websearch_tool(env: ToolEnvironment):
    """Create the WebSearch tool."""
    endpoint = env.config.websearch_endpoint
    max_results = env.config.websearch_max_results
    timeout = env.config.webfetch_timeout_seconds

    @tool("WebSearch", _SPEC["description"], _SPEC["input_schema"])
    async def websearch(args: dict[str, Any]) -> dict[str, Any]:
        query = str(args.get("query") or "").strip()
        allowed = list(args.get("allowed_domains") or [])
        blocked = list(args.get("blocked_domains") or [])
        if not query:
            return _error("query is required")

        try:
            async with httpx.AsyncClient(
                timeout=timeout, headers={"User-Agent": USER_AGENT}, follow_redirects=True
            ) as client:
                response = await client.post(endpoint, data={"q": query})
        except httpx.TimeoutException:
            return _error(f"Search timed out after {timeout}s")
        except httpx.RequestError as e:
            return _error(f"Search request failed: {e}")

        if response.status_code >= 400:
            return _error(f"Search endpoint returned HTTP {response.status_code}")

        results = []
        for item in parse_results(response.text):
            host = urlparse(item["url"]).hostname or ""
            if allowed and not _domain_matches(host, allowed):
                continue
            if blocked and _domain_matches(host, blocked):
                continue
            results.append(item)
            if len(results) >= max_results:
                break

        logger.info(f"WebSearch: {len(results)} results for '{query}'")
        if not results:
            return _result(f"No results found for: {query}")

        lines = []
        for n, item in enumerate(results, start=1):
            lines.append(f"{n}. {item['title']}\n   {item['url']}")
            if item["snippet"]:
                lines.append(f"   {item['snippet']}")
        return _result("\n".join(lines))

    return websearch
