"""Async client for the AI completion gateway (OpenAI-compatible chat completions)."""
import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing

from app.config import get_settings
from app.services.errors import ExtractionError
from app.services.json_extraction import extract_json

settings = get_settings()
logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 502, 503, 504}


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    return isinstance(error, httpx.HTTPStatusError) and error.response.status_code in RETRYABLE_STATUS


class AIGatewayClient:
    """
    Prompt in, text (or JSON) out.

    Transport errors and gateway 429/5xx responses are retried with linear
    backoff; any other HTTP error is raised to the calling stage.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        attempts: int = 3,
        backoff_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.ai_gateway_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ai_gateway_api_key
        self.model = model or settings.ai_model
        self.timeout = timeout or settings.ai_timeout_seconds
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Return the assistant message content of one completion."""
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": settings.ai_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or settings.ai_max_tokens,
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.attempts),
                wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(
                        f"{self.base_url}/chat/completions", json=payload, headers=self._headers()
                    )
                    response.raise_for_status()

        data = response.json()
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ExtractionError(f"Unexpected gateway response shape: {e}") from e

    async def complete_json(self, system: str, prompt: str, **kwargs) -> Any:
        """
        Run a completion and recover one JSON value from the answer.

        Raises:
            ExtractionError: no valid JSON in the response
        """
        content = await self.complete(
            [{"role": "system", "content": system}, {"role": "user", "content": prompt}], **kwargs
        )
        result = extract_json(content)
        if not result.ok:
            logger.warning(f"⚠️ No JSON recovered from AI response: {result.error}")
            raise ExtractionError(f"No JSON in AI response: {result.error}")
        return result.value


def get_ai_client() -> AIGatewayClient:
    return AIGatewayClient()
