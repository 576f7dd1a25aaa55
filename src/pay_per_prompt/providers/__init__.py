"""Upstream AI provider gateways, one class per provider family."""

from pay_per_prompt.config import Settings
from pay_per_prompt.providers.anthropic import AnthropicGateway
from pay_per_prompt.providers.base import Completion, ProviderGateway
from pay_per_prompt.providers.google import GoogleGateway
from pay_per_prompt.providers.openai_compat import GroqGateway, XAIGateway
from pay_per_prompt.utils.constants import Provider


def build_gateways(settings: Settings) -> dict[Provider, ProviderGateway]:
    """One gateway per provider, keyed by ``Provider``.

    Gateways without a key are still built; they fail with ProviderError
    when called.
    """
    return {
        Provider.GROQ: GroqGateway(settings.groq_api_key),
        Provider.GOOGLE: GoogleGateway(settings.google_api_key),
        Provider.ANTHROPIC: AnthropicGateway(settings.anthropic_api_key),
        Provider.XAI: XAIGateway(settings.xai_api_key),
    }


__all__ = [
    "AnthropicGateway",
    "Completion",
    "GoogleGateway",
    "GroqGateway",
    "ProviderGateway",
    "XAIGateway",
    "build_gateways",
]
