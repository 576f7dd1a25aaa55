"""Deposit tool: relay a signed EIP-2612 permit and credit the ledger."""

from __future__ import annotations

import logging
from typing import Any

from pay_per_prompt.chain.relay import PermitRelay
from pay_per_prompt.errors import PayPerPromptError

logger = logging.getLogger(__name__)


async def relay_deposit_tool(relay: PermitRelay, payload: dict[str, Any]) -> dict[str, Any]:
    """Relay a permit deposit. Returns the camelCase deposit result."""
    try:
        result = await relay.relay(payload)
    except PayPerPromptError as e:
        logger.info("Deposit rejected: %s", e.detail)
        return e.to_dict()
    return result.to_dict()
