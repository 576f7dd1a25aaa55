"""Google Gemini ``generateContent`` gateway."""

from __future__ import annotations

from typing import Any

from pay_per_prompt.providers.base import ProviderGateway
from pay_per_prompt.utils.constants import Provider


class GoogleGateway(ProviderGateway):
    provider = Provider.GOOGLE
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def _build_request(
        self, upstream_model_id: str, prompt: str, max_tokens: int
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"maxOutputTokens": max_tokens},
        }
        # Key goes in a header so it never shows up in logged URLs.
        return (
            f"/models/{upstream_model_id}:generateContent",
            {"x-goog-api-key": self.api_key or ""},
            body,
        )

    def _parse(self, data: dict[str, Any]) -> tuple[str | None, int | None, int | None]:
        text = None
        candidates = data.get("candidates") or []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            if parts:
                text = parts[0].get("text")
        usage = data.get("usageMetadata") or {}
        return text, usage.get("promptTokenCount"), usage.get("candidatesTokenCount")
