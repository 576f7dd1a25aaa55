"""Credit tools: check_balance, transaction_history, list_models, estimate_prompt_cost."""

from __future__ import annotations

import logging
from typing import Any

from pay_per_prompt.catalog import (
    MODEL_CATALOG,
    calculate_cost,
    estimate_tokens,
    get_model,
    minimum_balance,
    models_by_provider,
    models_by_tier,
)
from pay_per_prompt.errors import MalformedInputError, PayPerPromptError
from pay_per_prompt.ledger_store import LedgerStore
from pay_per_prompt.utils.constants import ModelTier, Provider
from pay_per_prompt.utils.formatters import decimal_str, is_address

logger = logging.getLogger(__name__)

_MAX_HISTORY = 100


def _require_address(wallet_address: str) -> None:
    if not wallet_address or not is_address(wallet_address.strip()):
        raise MalformedInputError("wallet_address must be a 0x-prefixed 20-byte hex address")


async def check_balance_tool(ledger: LedgerStore, wallet_address: str) -> dict[str, Any]:
    """Return the account's balance and lifetime totals."""
    try:
        _require_address(wallet_address)
    except PayPerPromptError as e:
        return e.to_dict()

    summary = await ledger.account_summary(wallet_address)
    return {
        "success": True,
        "account_id": summary["account_id"],
        "balance": decimal_str(summary["balance"]),
        "total_deposited": decimal_str(summary["total_deposited"]),
        "total_consumed": decimal_str(summary["total_consumed"]),
        "created_at": summary["created_at"],
        "last_deposit_at": summary["last_deposit_at"],
    }


async def transaction_history_tool(
    ledger: LedgerStore, wallet_address: str, limit: int = 20
) -> dict[str, Any]:
    """Return the newest ledger entries for the account."""
    try:
        _require_address(wallet_address)
    except PayPerPromptError as e:
        return e.to_dict()

    limit = max(1, min(limit, _MAX_HISTORY))
    entries = await ledger.history(wallet_address, limit)
    return {
        "success": True,
        "count": len(entries),
        "entries": [
            {
                **e.to_dict(),
                "amount": decimal_str(e.amount),
                "balance_after": decimal_str(e.balance_after),
            }
            for e in entries
        ],
    }


def list_models_tool(provider: str | None = None, tier: str | None = None) -> dict[str, Any]:
    """List catalog models, optionally filtered by provider and/or tier."""
    try:
        models = list(MODEL_CATALOG.values())
        if provider:
            models = [m for m in models_by_provider(provider.lower()) if m in models]
        if tier:
            models = [m for m in models_by_tier(tier.lower()) if m in models]
    except ValueError:
        return MalformedInputError(
            f"Unknown filter. Providers: {', '.join(p.value for p in Provider)}; "
            f"tiers: {', '.join(t.value for t in ModelTier)}"
        ).to_dict()

    return {
        "success": True,
        "count": len(models),
        "models": [
            {**m.to_dict(), "minimum_balance": decimal_str(minimum_balance(m))} for m in models
        ],
    }


def estimate_prompt_cost_tool(
    model_id: str | None, prompt: str, default_model_id: str
) -> dict[str, Any]:
    """Estimate what ``prompt`` would cost, assuming a full-length reply."""
    try:
        model = get_model(model_id, default_model_id)
    except PayPerPromptError as e:
        return e.to_dict()

    input_tokens = estimate_tokens(prompt or "")
    return {
        "success": True,
        "model": model.id,
        "estimated_input_tokens": input_tokens,
        "max_output_tokens": model.max_output_tokens,
        "minimum_balance": decimal_str(minimum_balance(model)),
        "max_cost": decimal_str(calculate_cost(model, input_tokens, model.max_output_tokens)),
    }
