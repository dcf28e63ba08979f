"""Chat-completions adapter usable as the ReAct completion function.

Any OpenAI-compatible ``/chat/completions`` endpoint works. The adapter is a
plain async callable ``complete(prompt) -> text`` so the reasoning loop never
sees HTTP details, and tests swap it for a scripted coroutine.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from tool_warden.config import WardenSettings


@dataclass(frozen=True)
class CompletionConfig:
    api_key: str
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4.1-mini"
    temperature: Optional[float] = None
    timeout: float = 60.0


class CompletionClientError(RuntimeError):
    """Raised when the completion endpoint returns an unusable payload."""


class HttpCompletionClient:
    """Calls a chat-completions endpoint with httpx."""

    def __init__(self, config: CompletionConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self._cfg = config
        self._client = client

    @staticmethod
    def from_settings(settings: WardenSettings) -> "HttpCompletionClient":
        if not settings.completion_api_key:
            raise CompletionClientError("WARDEN_COMPLETION_API_KEY is required to call the completion endpoint.")
        return HttpCompletionClient(
            CompletionConfig(
                api_key=settings.completion_api_key,
                base_url=settings.completion_base_url,
                model=settings.completion_model,
            )
        )

    async def __call__(self, prompt: str, on_token: Optional[Callable[[str], None]] = None) -> str:
        url = f"{self._cfg.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._cfg.api_key}",
            "Content-Type": "application/json",
        }
        body: dict[str, Any] = {
            "model": self._cfg.model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if self._cfg.temperature is not None:
            body["temperature"] = self._cfg.temperature

        if self._client is not None:
            text = await self._post(self._client, url, body, headers)
        else:
            async with httpx.AsyncClient() as client:
                text = await self._post(client, url, body, headers)

        # Non-streaming endpoint: hand the whole completion over as one token.
        if on_token is not None:
            on_token(text)
        return text

    async def _post(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
    ) -> str:
        resp = await client.post(url, json=body, headers=headers, timeout=self._cfg.timeout)
        resp.raise_for_status()
        return _extract_message_text(resp.json())


def _extract_message_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
    raise CompletionClientError(
        f"Unable to extract completion text from payload: {json.dumps(payload)[:200]}"
    )
