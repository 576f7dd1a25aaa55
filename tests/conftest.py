"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from pay_per_prompt.chain.permit import PermitRequest
from pay_per_prompt.errors import ChainRelayFailure
from pay_per_prompt.ledger_store import LedgerStore
from pay_per_prompt.providers.base import Completion, ProviderGateway
from pay_per_prompt.sessions import SessionDirectory
from pay_per_prompt.utils.constants import Provider
from pay_per_prompt.vault import MemoryVault

WALLET = "0x1111111111111111111111111111111111111111"
OTHER_WALLET = "0x2222222222222222222222222222222222222222"
RELAYER = "0x3333333333333333333333333333333333333333"
VAULT_ADDRESS = "0x4444444444444444444444444444444444444444"
TOKEN = "0x8ccedbAe4916b79da7F3F612EfB2EB93A2bFB6cF"

ONE_MNEE = 10**18


class FakeClock:
    """Settable clock for session expiry tests."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class SimulatedChainSubmitter:
    """ChainSubmitter double returning a synthetic confirmed hash."""

    def __init__(self, tx_hash: str = "0x" + "ab" * 32, fail: bool = False) -> None:
        self.tx_hash = tx_hash
        self.fail = fail
        self.calls: list[tuple[PermitRequest, str]] = []

    async def submit_permit(self, permit: PermitRequest, spender: str) -> str:
        self.calls.append((permit, spender))
        if self.fail:
            raise ChainRelayFailure("simulated revert")
        return self.tx_hash


def make_gateway(
    provider: Provider,
    completion: Completion | None = None,
    error: Exception | None = None,
) -> ProviderGateway:
    """Create a mock gateway for ``provider``."""
    gateway = MagicMock(spec=ProviderGateway)
    gateway.provider = provider
    if error is not None:
        gateway.complete = AsyncMock(side_effect=error)
    else:
        gateway.complete = AsyncMock(
            return_value=completion or Completion("Hello!", 120, 340)
        )
    gateway.close = AsyncMock()
    return gateway


def sign_message(account: LocalAccount, message: str) -> str:
    """EIP-191 personal_sign signature as 0x-prefixed hex."""
    signed = account.sign_message(encode_defunct(text=message))
    return "0x" + bytes(signed.signature).hex()


def permit_payload(**overrides: object) -> dict:
    """A well-formed permit request body (1 MNEE)."""
    payload: dict = {
        "owner": WALLET,
        "value": str(ONE_MNEE),
        "deadline": "1893456000",
        "v": 27,
        "r": "0x" + "12" * 32,
        "s": "0x" + "34" * 32,
        "walletAddress": WALLET,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def vault() -> MemoryVault:
    return MemoryVault()


@pytest.fixture
def ledger_store(vault: MemoryVault) -> LedgerStore:
    return LedgerStore(vault)


@pytest.fixture
def signer() -> LocalAccount:
    return Account.create()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sessions(vault: MemoryVault, clock: FakeClock) -> SessionDirectory:
    return SessionDirectory(vault, ttl_seconds=3600, clock=clock)
