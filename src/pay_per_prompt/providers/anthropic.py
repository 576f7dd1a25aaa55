"""Anthropic Messages API gateway."""

from __future__ import annotations

from typing import Any

from pay_per_prompt.providers.base import ProviderGateway
from pay_per_prompt.utils.constants import Provider

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicGateway(ProviderGateway):
    provider = Provider.ANTHROPIC
    default_base_url = "https://api.anthropic.com"

    def _build_request(
        self, upstream_model_id: str, prompt: str, max_tokens: int
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        body = {
            "model": upstream_model_id,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        return "/v1/messages", headers, body

    def _parse(self, data: dict[str, Any]) -> tuple[str | None, int | None, int | None]:
        content = data.get("content") or []
        text = content[0].get("text") if content else None
        usage = data.get("usage") or {}
        return text, usage.get("input_tokens"), usage.get("output_tokens")
