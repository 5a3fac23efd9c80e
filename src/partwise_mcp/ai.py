"""HTTP client for the optional AI text service.

The service is any chat-completions style endpoint: POST {"model", "messages"}
and read ``choices[0].message.content``. It is only used to phrase
explanations; every caller has a rule-based fallback.
"""

from __future__ import annotations

import logging
from typing import Any, TYPE_CHECKING

import httpx

from .config import AI_SERVICE_API_KEY, AI_SERVICE_MODEL, AI_SERVICE_URL
from .errors import ExternalServiceError

if TYPE_CHECKING:
    from .cache import DailyQuota

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You explain electronic component compatibility to hobbyists. "
    "Answer in at most three sentences, plain text."
)


class HTTPTextService:
    """Async AI text client with a daily request quota."""

    def __init__(
        self,
        url: str = AI_SERVICE_URL,
        api_key: str = AI_SERVICE_API_KEY,
        model: str = AI_SERVICE_MODEL,
        quota: DailyQuota | None = None,
    ):
        self._url = url
        self._api_key = api_key
        self._model = model
        self._client: httpx.AsyncClient | None = None
        self._quota = quota

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            # The orchestrator applies its own deadline; this is only a backstop
            self._client = httpx.AsyncClient(timeout=60.0, headers=headers)
        return self._client

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._get_client().post(self._url, json=body)
        except httpx.HTTPError as e:
            # Don't echo the request; headers carry the API key
            raise ExternalServiceError(f"AI service request failed ({type(e).__name__})")
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"AI service returned HTTP {response.status_code}",
                {"status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError:
            raise ExternalServiceError("AI service returned invalid JSON")

    async def enrich(self, prompt: str) -> str:
        """Return the service's text for a prompt.

        Raises:
            ExternalServiceError: quota exhausted, transport failure, or an empty answer.
        """
        if self._quota:
            quota_error = self._quota.check()
            if quota_error:
                raise ExternalServiceError(quota_error, {"retryable_after": "tomorrow"})

        body = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        data = await self._post(body)
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ExternalServiceError("AI service response missing choices[0].message.content")
        if not isinstance(text, str) or not text.strip():
            raise ExternalServiceError("AI service returned an empty answer")
        return text.strip()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
