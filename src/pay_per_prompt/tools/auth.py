"""Sign-in tools: verify a SIWE message, or build one for a wallet to sign."""

from __future__ import annotations

import logging
from typing import Any

from pay_per_prompt.errors import MalformedInputError, PayPerPromptError
from pay_per_prompt.siwe import SignInService, create_siwe_message, generate_nonce
from pay_per_prompt.utils.formatters import is_address

logger = logging.getLogger(__name__)


async def verify_siwe_tool(
    service: SignInService,
    message: str,
    signature: str,
    address: str,
) -> dict[str, Any]:
    """Verify a signed sign-in message and return a new session."""
    try:
        result = await service.verify(message, signature, address)
    except PayPerPromptError as e:
        logger.info("Sign-in for %s failed: %s", address, e.detail)
        return e.to_dict()
    return result.to_dict()


def siwe_message_tool(
    address: str,
    domain: str,
    uri: str,
    chain_id: int,
    ttl_seconds: int,
) -> dict[str, Any]:
    """Build an unsigned sign-in message with a fresh nonce."""
    if not is_address(address):
        return MalformedInputError("address must be a 0x-prefixed 20-byte hex address").to_dict()
    nonce = generate_nonce()
    message = create_siwe_message(
        address, nonce, domain, uri, chain_id=chain_id, ttl_seconds=ttl_seconds
    )
    return {"success": True, "message": message, "nonce": nonce}
