"""Configuration management for the pay-per-prompt server."""

from pydantic_settings import BaseSettings, SettingsConfigDict

from pay_per_prompt.utils.constants import (
    BASE_CHAIN_ID,
    DEFAULT_MODEL_ID,
    MNEE_CONTRACT,
    RECEIPT_POLL_ATTEMPTS,
    RECEIPT_POLL_INTERVAL_SECS,
    SESSION_TTL_SECONDS,
)


class Settings(BaseSettings):
    """Pay-per-prompt server settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Chain / relay
    rpc_url: str = "https://mainnet.base.org"
    chain_id: int = BASE_CHAIN_ID
    mnee_contract: str = MNEE_CONTRACT
    vault_address: str | None = None  # None = credit the token contract itself
    relayer_private_key: str | None = None
    relayer_address: str | None = None
    receipt_poll_attempts: int = RECEIPT_POLL_ATTEMPTS
    receipt_poll_interval_secs: float = RECEIPT_POLL_INTERVAL_SECS

    # Upstream AI providers
    groq_api_key: str | None = None
    google_api_key: str | None = None
    anthropic_api_key: str | None = None
    xai_api_key: str | None = None

    # Billing
    default_model_id: str = DEFAULT_MODEL_ID
    force_execution_model: str | None = None  # e.g. "groq-llama-70b" in dev

    # Sessions / persistence
    session_ttl_seconds: int = SESSION_TTL_SECONDS
    database_path: str | None = None  # None = in-memory vault
    ledger_cache_size: int = 256

    # Transport
    cors_allow_origin: str = "*"
    mcp_transport: str = "stdio"
    http_host: str = "0.0.0.0"
    http_port: int = 8000

    @property
    def relayer_configured(self) -> bool:
        """True when a relayer signing credential is present."""
        return bool(self.relayer_private_key) and len(self.relayer_private_key or "") >= 64


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
