"""Tests for the metered billing pipeline."""

from decimal import Decimal

import pytest

from eth_account.signers.local import LocalAccount

from conftest import OTHER_WALLET, TOKEN, WALLET, make_gateway, permit_payload, sign_message
from pay_per_prompt.billing import BillingPipeline, PromptRequest
from pay_per_prompt.chain.relay import PermitRelay
from pay_per_prompt.errors import (
    InsufficientFundsError,
    MalformedInputError,
    ProviderError,
    SessionExpiredError,
    SessionNotFoundError,
    UnknownModelError,
)
from pay_per_prompt.ledger_store import LedgerStore
from pay_per_prompt.providers.base import Completion
from pay_per_prompt.sessions import SessionDirectory
from pay_per_prompt.siwe import SignInService, create_siwe_message
from pay_per_prompt.utils.constants import Provider


def _gateways() -> dict:
    return {p: make_gateway(p) for p in Provider}


def _pipeline(
    ledger_store: LedgerStore,
    sessions: SessionDirectory,
    gateways=None,
    force: str | None = None,
) -> BillingPipeline:
    return BillingPipeline(
        ledger_store,
        sessions,
        gateways if gateways is not None else _gateways(),
        force_execution_model=force,
    )


# ---------------------------------------------------------------------------
# Validate / authorize / check
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("wallet, prompt", [("", "hi"), (WALLET, ""), ("0x1234", "hi")])
    async def test_malformed(self, ledger_store: LedgerStore, sessions: SessionDirectory, wallet: str, prompt: str) -> None:
        with pytest.raises(MalformedInputError):
            await _pipeline(ledger_store, sessions).process(PromptRequest(wallet, prompt))
        assert ledger_store.size == 0

    @pytest.mark.asyncio
    async def test_unknown_model(self, ledger_store: LedgerStore, sessions: SessionDirectory) -> None:
        with pytest.raises(UnknownModelError):
            await _pipeline(ledger_store, sessions).process(
                PromptRequest(WALLET, "hi", model_id="gpt-17")
            )

    def test_unknown_forced_model_fails_at_construction(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        with pytest.raises(UnknownModelError):
            _pipeline(ledger_store, sessions, force="not-a-model")


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unknown_session_blocks_provider(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        gateways = _gateways()
        await ledger_store.deposit(WALLET, Decimal("1"), "0x1")
        with pytest.raises(SessionNotFoundError):
            await _pipeline(ledger_store, sessions, gateways).process(
                PromptRequest(WALLET, "hi", session_id="nope")
            )
        gateways[Provider.GROQ].complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_session_of_other_account(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        session = await sessions.create(OTHER_WALLET)
        await ledger_store.deposit(WALLET, Decimal("1"), "0x1")
        with pytest.raises(SessionNotFoundError):
            await _pipeline(ledger_store, sessions).process(
                PromptRequest(WALLET, "hi", session_id=session.session_id)
            )

    @pytest.mark.asyncio
    async def test_expired_session(self, ledger_store: LedgerStore, sessions: SessionDirectory, clock) -> None:
        session = await sessions.create(WALLET)
        clock.advance(hours=2)
        await ledger_store.deposit(WALLET, Decimal("1"), "0x1")
        with pytest.raises(SessionExpiredError):
            await _pipeline(ledger_store, sessions).process(
                PromptRequest(WALLET, "hi", session_id=session.session_id)
            )

    @pytest.mark.asyncio
    async def test_omitted_session_is_accepted(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        await ledger_store.deposit(WALLET, Decimal("1"), "0x1")
        result = await _pipeline(ledger_store, sessions).process(PromptRequest(WALLET, "hi"))
        assert result.cost > 0


class TestBalanceCheck:
    @pytest.mark.asyncio
    async def test_precheck_blocks_provider_call(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        gateways = _gateways()
        with pytest.raises(InsufficientFundsError) as exc_info:
            await _pipeline(ledger_store, sessions, gateways).process(PromptRequest(WALLET, "hi"))
        assert exc_info.value.required == Decimal("0.0005448")
        assert exc_info.value.available == Decimal("0")
        for gateway in gateways.values():
            gateway.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_exactly_minimum_passes_precheck(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        gateways = _gateways()
        gateways[Provider.GROQ] = make_gateway(Provider.GROQ, Completion("ok", 100, 500))
        await ledger_store.deposit(WALLET, Decimal("0.0005448"), "0x1")
        result = await _pipeline(ledger_store, sessions, gateways).process(PromptRequest(WALLET, "hi"))
        assert result.new_balance == Decimal("0")


# ---------------------------------------------------------------------------
# Dispatch / reconcile
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_billing_model_executes_without_override(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        gateways = _gateways()
        await ledger_store.deposit(WALLET, Decimal("1"), "0x1")
        result = await _pipeline(ledger_store, sessions, gateways).process(
            PromptRequest(WALLET, "hi", model_id="claude-opus-4")
        )
        assert result.is_fallback is False
        assert result.execution_model == "claude-opus-4"
        gateways[Provider.ANTHROPIC].complete.assert_called_once_with(
            "claude-opus-4-20250514", "hi", 8192
        )

    @pytest.mark.asyncio
    async def test_same_provider_is_not_substituted(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        gateways = _gateways()
        await ledger_store.deposit(WALLET, Decimal("1"), "0x1")
        result = await _pipeline(ledger_store, sessions, gateways, force="groq-llama-70b").process(
            PromptRequest(WALLET, "hi", model_id="groq-llama-8b")
        )
        assert result.is_fallback is False
        assert result.execution_model == "groq-llama-8b"
        gateways[Provider.GROQ].complete.assert_called_once_with("llama-3.1-8b-instant", "hi", 8192)

    @pytest.mark.asyncio
    async def test_provider_error_leaves_ledger_untouched(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        gateways = _gateways()
        gateways[Provider.GROQ] = make_gateway(Provider.GROQ, error=ProviderError("groq", "boom"))
        await ledger_store.deposit(WALLET, Decimal("1"), "0x1")

        with pytest.raises(ProviderError):
            await _pipeline(ledger_store, sessions, gateways).process(PromptRequest(WALLET, "hi"))
        assert await ledger_store.get_balance(WALLET) == Decimal("1")
        assert len(await ledger_store.history(WALLET)) == 1

    @pytest.mark.asyncio
    async def test_balance_eroded_during_dispatch(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        await ledger_store.deposit(WALLET, Decimal("0.001"), "0x1")

        async def spend_elsewhere(*args, **kwargs) -> Completion:
            await ledger_store.deduct(WALLET, Decimal("0.0009"))
            return Completion("late", 120, 340)

        gateways = _gateways()
        gateways[Provider.GROQ].complete.side_effect = spend_elsewhere

        with pytest.raises(InsufficientFundsError) as exc_info:
            await _pipeline(ledger_store, sessions, gateways).process(PromptRequest(WALLET, "hi"))
        assert exc_info.value.required == Decimal("0.00040728")
        assert await ledger_store.get_balance(WALLET) == Decimal("0.0001")

    @pytest.mark.asyncio
    async def test_zero_cost_skips_deduction(
        self, ledger_store: LedgerStore, sessions: SessionDirectory
    ) -> None:
        gateways = _gateways()
        gateways[Provider.GROQ] = make_gateway(Provider.GROQ, Completion("free", 0, 0))
        await ledger_store.deposit(WALLET, Decimal("1"), "0x1")
        result = await _pipeline(ledger_store, sessions, gateways).process(PromptRequest(WALLET, "hi"))
        assert result.cost == Decimal("0")
        assert result.new_balance == Decimal("1")
        assert len(await ledger_store.history(WALLET)) == 1


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_opus_billed_groq_executed(
        self, ledger_store: LedgerStore, sessions: SessionDirectory, clock, signer: LocalAccount
    ) -> None:
        wallet = signer.address

        # Deposit 1 MNEE through the demo relay.
        relay = PermitRelay(ledger_store, None, token_contract=TOKEN)
        deposit = await relay.relay(permit_payload(owner=wallet, walletAddress=wallet))
        assert deposit.new_balance == Decimal("1")

        # Sign in.
        message = create_siwe_message(
            wallet, "n0nce", "app.example.com", "https://app.example.com", issued_at=clock.now
        )
        signed_in = await SignInService(sessions, ledger_store, clock=clock).verify(
            message, sign_message(signer, message), wallet
        )

        # Prompt billed as Opus, executed on Groq.
        gateways = _gateways()
        gateways[Provider.GROQ] = make_gateway(Provider.GROQ, Completion("Hello!", 120, 340))
        pipeline = _pipeline(ledger_store, sessions, gateways, force="groq-llama-70b")
        result = await pipeline.process(
            PromptRequest(wallet, "Say hello", session_id=signed_in.session_id, model_id="claude-opus-4")
        )

        assert result.response == "Hello!"
        assert result.cost == Decimal("0.03276")
        assert result.new_balance == Decimal("0.96724")
        assert result.is_fallback is True
        assert result.execution_model == "groq-llama-70b"
        assert result.model == "claude-opus-4"
        gateways[Provider.GROQ].complete.assert_called_once_with(
            "llama-3.3-70b-versatile", "Say hello", 8192
        )
        gateways[Provider.ANTHROPIC].complete.assert_not_called()

        payload = result.to_dict()
        assert payload == {
            "success": True,
            "response": "Hello!",
            "newBalance": "0.96724",
            "cost": "0.03276",
            "usage": {"inputTokens": 120, "outputTokens": 340, "model": "claude-opus-4"},
            "isFallback": True,
            "executionModel": "groq-llama-70b",
        }

    def test_request_from_camel_case(self) -> None:
        request = PromptRequest.from_dict(
            {"walletAddress": WALLET, "prompt": "hi", "sessionId": "s", "modelId": "grok-4"}
        )
        assert request == PromptRequest(WALLET, "hi", "s", "grok-4")
        assert PromptRequest.from_dict({}).session_id is None

    @pytest.mark.parametrize(
        "body",
        [
            {"walletAddress": 123, "prompt": "hi"},
            {"walletAddress": WALLET, "prompt": ["hi"]},
            {"walletAddress": WALLET, "prompt": "hi", "sessionId": {"id": 1}},
        ],
    )
    def test_request_rejects_non_string_fields(self, body: dict) -> None:
        with pytest.raises(MalformedInputError, match="must be a string"):
            PromptRequest.from_dict(body)
