"""Prompt tool: run one metered completion."""

from __future__ import annotations

import logging
from typing import Any

from pay_per_prompt.billing import BillingPipeline, PromptRequest
from pay_per_prompt.errors import PayPerPromptError

logger = logging.getLogger(__name__)


async def process_prompt_tool(
    pipeline: BillingPipeline,
    wallet_address: str,
    prompt: str,
    session_id: str | None = None,
    model_id: str | None = None,
) -> dict[str, Any]:
    """Bill and execute ``prompt`` for ``wallet_address``."""
    request = PromptRequest(
        wallet_address=wallet_address or "",
        prompt=prompt or "",
        session_id=session_id or None,
        model_id=model_id or None,
    )
    try:
        result = await pipeline.process(request)
    except PayPerPromptError as e:
        logger.info("Prompt for %s failed: %s", wallet_address, e.detail)
        return e.to_dict()
    return result.to_dict()
