"""
Messages API backend.

Posts the conversation to an Anthropic-compatible /v1/messages endpoint and
re-shapes the response as native stream-json events:

    {"type": "assistant", "message": <response>}
    {"type": "result", "stop_reason": ..., "usage": ...}

The endpoint does not run tools. The orchestrator dispatches every tool_use
block and sends the results back on the next turn.
"""
import logging
import os
from typing import Any, AsyncIterator, Optional

import httpx

from ..config import BackendsConfig
from ..core.exceptions import BackendError
from .base import AgentBackend, TurnContext

logger = logging.getLogger(__name__)


class MessagesApiBackend(AgentBackend):
    kind = "messages-api"
    handles_tools = False

    def __init__(
        self,
        config: Optional[BackendsConfig] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config or BackendsConfig()
        self._api_key = api_key or os.environ.get(self._config.messages_api_key_env, "")
        self._client = httpx.AsyncClient(
            base_url=self._config.messages_api_url,
            timeout=self._config.messages_api_timeout_seconds,
            transport=transport,
        )

    def build_payload(self, turn: TurnContext) -> dict[str, Any]:
        messages = turn.messages or [{"role": "user", "content": turn.prompt}]
        payload: dict[str, Any] = {
            "model": turn.options.model or self._config.default_model,
            "max_tokens": self._config.messages_api_max_tokens,
            "messages": messages,
        }
        if turn.options.system_prompt:
            payload["system"] = turn.options.system_prompt
        if turn.tools:
            payload["tools"] = turn.tools
        return payload

    async def stream_turn(self, turn: TurnContext) -> AsyncIterator[Any]:
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": self._config.messages_api_version,
        }
        payload = self.build_payload(turn)
        logger.info(
            f"MESSAGES_API: POST /v1/messages (model={payload['model']}, "
            f"messages={len(payload['messages'])}, tools={len(turn.tools)})"
        )
        try:
            response = await self._client.post("/v1/messages", headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise BackendError(f"Messages API request timed out: {e}", backend=self.kind) from e
        except httpx.RequestError as e:
            raise BackendError(f"Messages API request failed: {e}", backend=self.kind) from e

        if response.status_code >= 400:
            raise BackendError(
                f"Messages API returned HTTP {response.status_code}: {response.text[:500]}",
                backend=self.kind,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise BackendError(f"Messages API returned invalid JSON: {e}", backend=self.kind) from e
        if not isinstance(body, dict):
            raise BackendError("Messages API returned a non-object response", backend=self.kind)

        yield {"type": "assistant", "message": body}
        yield {
            "type": "result",
            "stop_reason": body.get("stop_reason"),
            "usage": body.get("usage") or {},
        }

    async def aclose(self) -> None:
        await self._client.aclose()
