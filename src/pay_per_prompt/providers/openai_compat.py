"""OpenAI-compatible chat completion gateways (Groq, xAI)."""

from __future__ import annotations

from typing import Any

from pay_per_prompt.providers.base import ProviderGateway
from pay_per_prompt.utils.constants import Provider

SYSTEM_PROMPT = "You are a helpful assistant."


class OpenAICompatibleGateway(ProviderGateway):
    """``POST /chat/completions`` with bearer auth."""

    def _build_request(
        self, upstream_model_id: str, prompt: str, max_tokens: int
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        body = {
            "model": upstream_model_id,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
        }
        return "/chat/completions", {"Authorization": f"Bearer {self.api_key}"}, body

    def _parse(self, data: dict[str, Any]) -> tuple[str | None, int | None, int | None]:
        choices = data.get("choices") or []
        text = choices[0].get("message", {}).get("content") if choices else None
        usage = data.get("usage") or {}
        return text, usage.get("prompt_tokens"), usage.get("completion_tokens")


class GroqGateway(OpenAICompatibleGateway):
    provider = Provider.GROQ
    default_base_url = "https://api.groq.com/openai/v1"


class XAIGateway(OpenAICompatibleGateway):
    provider = Provider.XAI
    default_base_url = "https://api.x.ai/v1"
