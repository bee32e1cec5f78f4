from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

RATE_LIMITED_MESSAGE = "Rate limit excedido. Aguarde um momento."
QUOTA_EXHAUSTED_MESSAGE = (
    "Créditos esgotados. Adicione créditos em Settings -> Workspace -> Usage."
)


class LLMClientError(RuntimeError):
    pass


class UpstreamError(LLMClientError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamRateLimited(UpstreamError):
    pass


class UpstreamQuotaExhausted(UpstreamError):
    pass


def error_for_status(status_code: int) -> UpstreamError:
    if status_code == 429:
        return UpstreamRateLimited(RATE_LIMITED_MESSAGE, status_code=status_code)
    if status_code == 402:
        return UpstreamQuotaExhausted(QUOTA_EXHAUSTED_MESSAGE, status_code=status_code)
    return UpstreamError(f"AI API error: {status_code}", status_code=status_code)


class UpstreamStream(Protocol):
    @property
    def status_code(self) -> int: ...

    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class CompletionClient(Protocol):
    async def open_stream(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]],
    ) -> UpstreamStream: ...


class HttpxUpstreamStream:
    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self._client = client
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class GatewayCompletionClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def _payload(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]],
    ) -> dict[str, Any]:
        return {
            "model": self._model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "tools": tools,
            "tool_choice": "auto",
            "stream": True,
        }

    async def open_stream(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]],
    ) -> UpstreamStream:
        if not self._api_key:
            raise LLMClientError("AI_GATEWAY_API_KEY not configured")

        # no read timeout: a long generation must not be cut by the client
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout_seconds, read=None),
            transport=self._transport,
        )
        request = client.build_request(
            "POST",
            f"{self._base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self._api_key}"},
            json=self._payload(system_prompt=system_prompt, messages=messages, tools=tools),
        )

        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise UpstreamError(f"AI API request failed: {exc}") from exc

        if not response.is_success:
            await response.aclose()
            await client.aclose()
            raise error_for_status(response.status_code)

        return HttpxUpstreamStream(client, response)
