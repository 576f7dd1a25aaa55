"""Sign-In with Ethereum (EIP-4361) message handling and session issue.

The server checks the message structure and the expiration time, then
recovers the EIP-191 (``personal_sign``) signer from ``signature`` and
requires it to match both the embedded and the claimed address.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from dateutil import parser as dateutil_parser
from eth_account import Account
from eth_account.messages import encode_defunct

from pay_per_prompt.errors import MalformedInputError, UnauthorizedError
from pay_per_prompt.ledger_store import LedgerStore
from pay_per_prompt.sessions import SessionDirectory
from pay_per_prompt.utils.constants import BASE_CHAIN_ID, SESSION_TTL_SECONDS
from pay_per_prompt.utils.formatters import isoformat_utc, normalize_address

logger = logging.getLogger(__name__)

_EMBEDDED_ADDRESS_RE = re.compile(r"0x[a-fA-F0-9]{40}")

# line prefix -> parsed field name
_FIELD_PREFIXES = {
    "URI:": "uri",
    "Version:": "version",
    "Chain ID:": "chain_id",
    "Nonce:": "nonce",
    "Issued At:": "issued_at",
    "Expiration Time:": "expiration_time",
}

_REQUIRED_FIELDS = ("domain", "address", "nonce", "issued_at", "expiration_time")


def parse_siwe_message(message: str) -> dict[str, str]:
    """Parse the fields of an EIP-4361 message.

    The domain is the first line; the address is the first 0x-prefixed
    40-hex-digit string anywhere in the message.
    """
    lines = message.split("\n")
    result: dict[str, str] = {"domain": lines[0].strip() if lines else ""}

    match = _EMBEDDED_ADDRESS_RE.search(message)
    if match:
        result["address"] = match.group(0)

    for line in lines:
        trimmed = line.strip()
        for prefix, key in _FIELD_PREFIXES.items():
            if trimmed.startswith(prefix):
                result[key] = trimmed[len(prefix):].strip()
    return result


def generate_nonce() -> str:
    """Random 16-byte hex nonce for a sign-in message."""
    return secrets.token_hex(16)


def create_siwe_message(
    address: str,
    nonce: str,
    domain: str,
    uri: str,
    chain_id: int = BASE_CHAIN_ID,
    issued_at: datetime | None = None,
    ttl_seconds: int = SESSION_TTL_SECONDS,
) -> str:
    """Build the message a wallet signs to sign in."""
    now = issued_at or datetime.now(timezone.utc)
    expiry = now + timedelta(seconds=ttl_seconds)
    return (
        f"{domain} wants you to sign in with your Ethereum account:\n"
        f"{address}\n"
        "\n"
        "Sign in to Pay-Per-Prompt to access AI prompts with MNEE micropayments.\n"
        "\n"
        f"URI: {uri}\n"
        "Version: 1\n"
        f"Chain ID: {chain_id}\n"
        f"Nonce: {nonce}\n"
        f"Issued At: {isoformat_utc(now)}\n"
        f"Expiration Time: {isoformat_utc(expiry)}"
    )


def recover_signer(message: str, signature: str) -> str:
    """Address whose key produced ``signature`` over ``message``."""
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        # malformed signatures surface as assorted eth-keys/hexbytes errors
        raise UnauthorizedError("Invalid signature") from e


def _parse_timestamp(value: str, field_name: str) -> datetime:
    try:
        dt = dateutil_parser.isoparse(value)
    except (ValueError, OverflowError) as e:
        raise MalformedInputError(f"Invalid {field_name} in SIWE message") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class SignInResult:
    session_id: str
    address: str
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "sessionId": self.session_id,
            "address": self.address,
            "expiresAt": isoformat_utc(self.expires_at),
        }


class SignInService:
    """Verifies a signed sign-in message and issues a session."""

    def __init__(
        self,
        sessions: SessionDirectory,
        ledger: LedgerStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sessions = sessions
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def verify(self, message: str, signature: str, address: str) -> SignInResult:
        """Validate the message, create a session and ensure the account exists."""
        for value in (message, signature, address):
            if value is not None and not isinstance(value, str):
                raise MalformedInputError("message, signature and address must be strings")
        if not message or not signature or not address:
            raise MalformedInputError("Missing message, signature, or address")

        parsed = parse_siwe_message(message)
        missing = [f for f in _REQUIRED_FIELDS if not parsed.get(f)]
        if missing:
            raise MalformedInputError(
                f"SIWE message missing required fields: {', '.join(missing)}"
            )

        if normalize_address(parsed["address"]) != normalize_address(address):
            raise UnauthorizedError("Address mismatch in SIWE message")

        _parse_timestamp(parsed["issued_at"], "Issued At")
        expiry = _parse_timestamp(parsed["expiration_time"], "Expiration Time")
        if expiry < self._clock():
            raise UnauthorizedError("SIWE message expired")

        if normalize_address(recover_signer(message, signature)) != normalize_address(address):
            raise UnauthorizedError("Signature does not match address")

        account_id = normalize_address(address)
        session = await self._sessions.create(account_id)
        await self._ledger.get_balance(account_id)
        logger.info("Signed in %s (domain=%s).", account_id, parsed["domain"])
        return SignInResult(
            session_id=session.session_id,
            address=account_id,
            expires_at=session.expires_at,
        )
