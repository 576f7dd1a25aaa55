"""Common plumbing for upstream AI provider gateways."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

import httpx

from pay_per_prompt.errors import ProviderError
from pay_per_prompt.utils.constants import CHARS_PER_TOKEN, Provider

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response"


@dataclass(frozen=True)
class Completion:
    """Text plus the token usage the provider billed for it."""

    text: str
    input_tokens: int
    output_tokens: int


def _estimate(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class ProviderGateway:
    """Base class for one provider family.

    Subclasses set ``provider`` and ``default_base_url`` and implement
    ``_build_request`` / ``_parse``. The API key only ever travels in
    request headers.
    """

    provider: Provider
    default_base_url: str = ""

    def __init__(
        self,
        api_key: str | None,
        base_url: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url or self.default_base_url
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> ProviderGateway:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def name(self) -> str:
        return self.provider.value

    def _build_request(
        self, upstream_model_id: str, prompt: str, max_tokens: int
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return ``(path, headers, json_body)`` for one completion call."""
        raise NotImplementedError

    def _parse(self, data: dict[str, Any]) -> tuple[str | None, int | None, int | None]:
        """Extract ``(text, input_tokens, output_tokens)`` from a response body."""
        raise NotImplementedError

    async def complete(self, upstream_model_id: str, prompt: str, max_tokens: int) -> Completion:
        """Run one completion. Raises ProviderError on any failure; no retries."""
        if not self.api_key:
            raise ProviderError(self.name, "API key not configured")

        path, headers, body = self._build_request(upstream_model_id, prompt, max_tokens)
        try:
            response = await self.client.request("POST", path, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, "request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"request failed: {type(e).__name__}") from e

        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(
                "%s returned HTTP %d for model %s.",
                self.name, response.status_code, upstream_model_id,
            )
            raise ProviderError(self.name, response.text or f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(self.name, "response body is not valid JSON") from e
        if not isinstance(data, dict):
            raise ProviderError(self.name, "unexpected response shape")

        try:
            text, input_tokens, output_tokens = self._parse(data)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderError(self.name, "unexpected response shape") from e

        if text is not None and not isinstance(text, str):
            raise ProviderError(self.name, "unexpected response shape")
        for count in (input_tokens, output_tokens):
            if count is not None and (
                isinstance(count, bool) or not isinstance(count, int) or count < 0
            ):
                raise ProviderError(self.name, "unexpected usage")

        text = text or NO_RESPONSE_TEXT
        return Completion(
            text=text,
            input_tokens=input_tokens or _estimate(prompt),
            output_tokens=output_tokens or _estimate(text),
        )
