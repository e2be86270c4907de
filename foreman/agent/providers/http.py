"""Provider for any OpenAI-compatible chat completions endpoint.

Sends native ``tools`` and maps the response's ``tool_calls`` into
structured ToolCalls. The request runs as a task so a cancellation
token can abort it mid-flight.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import aiohttp
import structlog

from ..cancellation import CancellationToken
from ..models import (
    CompletionResult,
    FinishReason,
    Message,
    ProviderMode,
    ToolCall,
    ToolCallSource,
    ToolSpec,
    new_call_id,
)
from .base import SYSTEM_PROMPTS, ChunkCallback, ExecutionProvider, emit_chunk

logger = structlog.get_logger("foreman.agent")

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "length": FinishReason.LENGTH,
}


class HTTPProvider(ExecutionProvider):
    """Chat completions over HTTPS.

    Args:
        api_url: Full URL of the chat completions endpoint. Must be HTTPS.
        api_key: Bearer token.
        model: Model identifier.
        max_tokens: Max tokens per response.
        timeout: Seconds before a request is abandoned.

    Raises:
        ValueError: If api_url is not HTTPS or has no host.
    """

    name = "http"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        timeout: int = 1800,
    ):
        super().__init__()
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._request: Optional[asyncio.Task] = None

        parsed = urlparse(self.api_url)
        if parsed.scheme != "https":
            logger.warning("insecure_api_url", url=self.api_url)
            raise ValueError("API URL must use HTTPS")
        if not parsed.hostname:
            logger.warning("invalid_api_url", url=self.api_url)
            raise ValueError("API URL must have a valid hostname")
        if not self.api_key:
            logger.warning("http_provider_api_key_not_found")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def _build_payload(
        self, messages: List[Message], tools: Optional[List[ToolSpec]], mode: ProviderMode,
    ) -> Dict[str, Any]:
        wire = [{"role": "system", "content": SYSTEM_PROMPTS[mode]}]
        for message in messages:
            wire.append({"role": message.role.value, "content": message.content})
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": wire,
            "max_tokens": self.max_tokens,
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in tools
            ]
        return payload

    async def _post(self, payload: Dict[str, Any]) -> Tuple[bool, Union[dict, str]]:
        """POST the payload.

        Returns:
            Tuple of (success, response JSON | error string).
        """
        session = await self._get_session()
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with session.post(
                self.api_url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    logger.error("http_provider_api_error", status=resp.status, error=error_text[:500])
                    return False, f"Provider returned status {resp.status}"
                return True, await resp.json()
        except asyncio.TimeoutError:
            logger.warning("http_provider_timeout", timeout=self.timeout)
            return False, f"Provider request timed out after {self.timeout}s"
        except aiohttp.ClientError as e:
            logger.error("http_provider_client_error", error=str(e))
            return False, f"Provider request failed: {e}"

    def _parse_response(self, data: dict) -> CompletionResult:
        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            logger.error("http_provider_malformed_response", data_keys=list(data.keys()))
            return CompletionResult(finish_reason=FinishReason.ERROR, error="Malformed provider response")

        choice = choices[0]
        message = choice.get("message") or {}
        calls: List[ToolCall] = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            name = function.get("name")
            if not name:
                continue
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments) if arguments.strip() else {}
                except json.JSONDecodeError:
                    logger.warning("http_provider_bad_tool_arguments", tool=name)
                    arguments = {}
            calls.append(ToolCall(
                id=raw.get("id") or new_call_id(),
                name=name,
                arguments=arguments if isinstance(arguments, dict) else {},
                source=ToolCallSource.STRUCTURED,
            ))

        finish = _FINISH_REASONS.get(choice.get("finish_reason") or "stop", FinishReason.STOP)
        if calls:
            finish = FinishReason.TOOL_CALLS
        usage = data.get("usage") or {}
        logger.info(
            "http_provider_response",
            total_tokens=usage.get("total_tokens"),
            tool_calls=len(calls),
            finish_reason=finish.value,
        )
        return CompletionResult(content=message.get("content") or "", tool_calls=calls, finish_reason=finish)

    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSpec]] = None,
        on_chunk: Optional[ChunkCallback] = None,
        mode: ProviderMode = ProviderMode.AGENT,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CompletionResult:
        if cancel_token is not None and cancel_token.cancelled:
            return CompletionResult(finish_reason=FinishReason.CANCELLED, error="Cancelled before start")
        if not self.api_key:
            return CompletionResult(
                finish_reason=FinishReason.ERROR,
                error="No API key configured for the http provider (see provider.api_key_env)",
            )

        payload = self._build_payload(messages, tools, mode)
        request = asyncio.ensure_future(self._post(payload))
        self._request = request
        unregister = cancel_token.add_callback(request.cancel) if cancel_token else (lambda: None)
        try:
            success, data = await request
        except asyncio.CancelledError:
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("http_provider_cancelled")
                return CompletionResult(finish_reason=FinishReason.CANCELLED, error="Cancelled")
            raise
        finally:
            unregister()
            self._request = None

        if not success:
            return CompletionResult(finish_reason=FinishReason.ERROR, error=data)

        result = self._parse_response(data)
        await emit_chunk(on_chunk, result.content)
        return result

    async def cancel(self) -> None:
        if self._request is not None and not self._request.done():
            self._request.cancel()
