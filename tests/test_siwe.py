"""Tests for SIWE parsing and the sign-in service."""

from datetime import datetime, timedelta, timezone

import pytest

from eth_account import Account
from eth_account.signers.local import LocalAccount

from conftest import OTHER_WALLET, WALLET, FakeClock, sign_message
from pay_per_prompt.errors import MalformedInputError, UnauthorizedError
from pay_per_prompt.ledger_store import LedgerStore
from pay_per_prompt.sessions import SessionDirectory
from pay_per_prompt.siwe import (
    SignInService,
    create_siwe_message,
    generate_nonce,
    parse_siwe_message,
)

ISSUED = datetime(2025, 1, 1, 11, 0, tzinfo=timezone.utc)


def _message(address: str = WALLET, issued_at: datetime = ISSUED, ttl: int = 7200) -> str:
    return create_siwe_message(
        address, "abc123", "app.example.com", "https://app.example.com",
        issued_at=issued_at, ttl_seconds=ttl,
    )


class TestParse:
    def test_parses_all_fields(self) -> None:
        parsed = parse_siwe_message(_message())
        assert parsed["domain"] == "app.example.com wants you to sign in with your Ethereum account:"
        assert parsed["address"] == WALLET
        assert parsed["uri"] == "https://app.example.com"
        assert parsed["version"] == "1"
        assert parsed["chain_id"] == "8453"
        assert parsed["nonce"] == "abc123"
        assert parsed["issued_at"] == "2025-01-01T11:00:00.000Z"
        assert parsed["expiration_time"] == "2025-01-01T13:00:00.000Z"

    def test_first_address_wins(self) -> None:
        message = f"example.com\n{WALLET}\nforward to {OTHER_WALLET}\nNonce: 1"
        assert parse_siwe_message(message)["address"] == WALLET

    def test_missing_fields_absent(self) -> None:
        parsed = parse_siwe_message("just a line")
        assert "address" not in parsed
        assert "nonce" not in parsed

    def test_generate_nonce(self) -> None:
        nonce = generate_nonce()
        assert len(nonce) == 32
        assert nonce != generate_nonce()


class TestSignIn:
    @pytest.fixture
    def service(
        self, sessions: SessionDirectory, ledger_store: LedgerStore, clock: FakeClock
    ) -> SignInService:
        return SignInService(sessions, ledger_store, clock=clock)

    @pytest.mark.asyncio
    async def test_success_creates_session_and_account(
        self,
        service: SignInService,
        sessions: SessionDirectory,
        ledger_store: LedgerStore,
        signer: LocalAccount,
    ) -> None:
        message = _message(signer.address)
        result = await service.verify(message, sign_message(signer, message), signer.address)
        assert result.address == signer.address.lower()
        assert await sessions.verify(result.session_id, signer.address)
        assert ledger_store.size == 1

        payload = result.to_dict()
        assert payload["success"] is True
        assert payload["sessionId"] == result.session_id
        assert payload["expiresAt"].endswith("Z")

    @pytest.mark.asyncio
    async def test_address_comparison_ignores_case(
        self, service: SignInService, signer: LocalAccount
    ) -> None:
        message = _message(signer.address)
        signature = sign_message(signer, message)
        result = await service.verify(message, signature, signer.address.lower())
        assert result.address == signer.address.lower()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["message", "signature", "address"])
    async def test_missing_input(self, service: SignInService, field: str) -> None:
        args = {"message": _message(), "signature": "0xsig", "address": WALLET}
        args[field] = ""
        with pytest.raises(MalformedInputError):
            await service.verify(**args)

    @pytest.mark.asyncio
    async def test_missing_nonce(self, service: SignInService) -> None:
        message = _message().replace("Nonce: abc123\n", "")
        with pytest.raises(MalformedInputError, match="nonce"):
            await service.verify(message, "0xsig", WALLET)

    @pytest.mark.asyncio
    async def test_address_mismatch(self, service: SignInService) -> None:
        with pytest.raises(UnauthorizedError, match="Address mismatch"):
            await service.verify(_message(), "0xsig", OTHER_WALLET)

    @pytest.mark.asyncio
    async def test_expired_message(self, service: SignInService, clock: FakeClock) -> None:
        message = _message(issued_at=clock.now - timedelta(hours=3), ttl=3600)
        with pytest.raises(UnauthorizedError, match="expired"):
            await service.verify(message, "0xsig", WALLET)

    @pytest.mark.asyncio
    async def test_unparseable_expiry(self, service: SignInService) -> None:
        message = _message().replace("Expiration Time: 2025-01-01T13:00:00.000Z", "Expiration Time: soon")
        with pytest.raises(MalformedInputError):
            await service.verify(message, "0xsig", WALLET)

    @pytest.mark.asyncio
    async def test_signed_by_another_key(
        self, service: SignInService, ledger_store: LedgerStore, signer: LocalAccount
    ) -> None:
        message = _message(signer.address)
        forged = sign_message(Account.create(), message)
        with pytest.raises(UnauthorizedError, match="Signature does not match"):
            await service.verify(message, forged, signer.address)
        assert ledger_store.size == 0

    @pytest.mark.asyncio
    async def test_garbage_signature(self, service: SignInService) -> None:
        with pytest.raises(UnauthorizedError, match="Invalid signature"):
            await service.verify(_message(), "0xsig", WALLET)

    @pytest.mark.asyncio
    async def test_non_string_message(self, service: SignInService) -> None:
        with pytest.raises(MalformedInputError, match="must be strings"):
            await service.verify(["a"], "0xsig", WALLET)
