"""Metered prompt billing.

``process()`` runs Validate → AuthorizeSession → CheckBalance → Dispatch →
Reconcile → Respond. No ledger mutation happens before the provider call
succeeds, and the only mutation is one ``deduct`` of the actual cost.

The billing model (what the user picked and is charged for) and the
execution model (what actually ran) can differ when
``force_execution_model`` is configured. Cost is always priced on the
billing model's schedule from the execution's real token counts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from pay_per_prompt.catalog import ModelConfig, calculate_cost, estimate_min_cost, get_model
from pay_per_prompt.errors import InsufficientFundsError, MalformedInputError, ProviderError
from pay_per_prompt.ledger_store import LedgerStore
from pay_per_prompt.providers.base import ProviderGateway
from pay_per_prompt.sessions import SessionDirectory
from pay_per_prompt.utils.constants import DEFAULT_MODEL_ID, Provider
from pay_per_prompt.utils.formatters import decimal_str, is_address, normalize_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptRequest:
    wallet_address: str
    prompt: str
    session_id: str | None = None
    model_id: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PromptRequest:
        """Build from a camelCase request body.

        Raises MalformedInputError when a field is present but not a string.
        """
        for key in ("walletAddress", "prompt", "sessionId", "modelId"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise MalformedInputError(f"{key} must be a string")
        return cls(
            wallet_address=data.get("walletAddress") or "",
            prompt=data.get("prompt") or "",
            session_id=data.get("sessionId") or None,
            model_id=data.get("modelId") or None,
        )


@dataclass(frozen=True)
class PromptResult:
    response: str
    new_balance: Decimal
    cost: Decimal
    input_tokens: int
    output_tokens: int
    model: str
    is_fallback: bool
    execution_model: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "response": self.response,
            "newBalance": decimal_str(self.new_balance),
            "cost": decimal_str(self.cost),
            "usage": {
                "inputTokens": self.input_tokens,
                "outputTokens": self.output_tokens,
                "model": self.model,
            },
            "isFallback": self.is_fallback,
            "executionModel": self.execution_model,
        }


class BillingPipeline:
    """Reserve-check, execute, price and deduct one prompt."""

    def __init__(
        self,
        ledger: LedgerStore,
        sessions: SessionDirectory,
        gateways: Mapping[Provider, ProviderGateway],
        default_model_id: str = DEFAULT_MODEL_ID,
        force_execution_model: str | None = None,
    ) -> None:
        self._ledger = ledger
        self._sessions = sessions
        self._gateways = gateways
        self._default_model_id = default_model_id
        # Resolved eagerly so a bad setting fails at startup, not per request.
        self._forced = get_model(force_execution_model) if force_execution_model else None

    def select_execution_model(self, billing_model: ModelConfig) -> ModelConfig:
        """The model that actually runs for ``billing_model``."""
        if self._forced is not None and self._forced.provider != billing_model.provider:
            return self._forced
        return billing_model

    async def process(self, request: PromptRequest) -> PromptResult:
        # Validate
        if not isinstance(request.wallet_address, str) or not isinstance(request.prompt, str):
            raise MalformedInputError("walletAddress and prompt must be strings")
        if not request.wallet_address or not request.prompt:
            raise MalformedInputError("Missing walletAddress or prompt")
        if not is_address(request.wallet_address.strip()):
            raise MalformedInputError("walletAddress must be a 0x-prefixed 20-byte hex address")
        account_id = normalize_address(request.wallet_address)
        billing_model = get_model(request.model_id, self._default_model_id)

        # AuthorizeSession
        if request.session_id:
            await self._sessions.verify(request.session_id, account_id)

        # CheckBalance
        min_cost = estimate_min_cost(billing_model)
        balance = await self._ledger.get_balance(account_id)
        if balance < min_cost:
            raise InsufficientFundsError(required=min_cost, available=balance)

        # Dispatch
        execution_model = self.select_execution_model(billing_model)
        is_fallback = execution_model.id != billing_model.id
        if is_fallback:
            logger.info(
                "Executing %s on %s (billed as %s).",
                account_id, execution_model.id, billing_model.id,
            )
        gateway = self._gateways.get(execution_model.provider)
        if gateway is None:
            raise ProviderError(execution_model.provider.value, "provider not configured")
        completion = await gateway.complete(
            execution_model.upstream_model_id,
            request.prompt,
            execution_model.max_output_tokens,
        )

        # Reconcile
        cost = calculate_cost(billing_model, completion.input_tokens, completion.output_tokens)
        if cost > 0:
            balance = await self._ledger.get_balance(account_id)
            if balance < cost:
                raise InsufficientFundsError(required=cost, available=balance)
            new_balance = await self._ledger.deduct(account_id, cost)
        else:
            new_balance = await self._ledger.get_balance(account_id)

        logger.info(
            "Billed %s %s for %d/%d tokens on %s.",
            account_id, cost, completion.input_tokens, completion.output_tokens,
            billing_model.id,
        )

        # Respond
        return PromptResult(
            response=completion.text,
            new_balance=new_balance,
            cost=cost,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            model=billing_model.id,
            is_fallback=is_fallback,
            execution_model=execution_model.id,
        )
