"""Gasless deposit relay: permit → (optional) on-chain submit → ledger credit.

The relay never fails a well-formed deposit because of the chain. When a
relayer is configured it tries the on-chain path; any failure there is
logged and the deposit is credited off-chain instead. Every credit is
recorded under the permit's own reference (see ``permit_reference``).
Without a relayer every deposit is a demo deposit.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Protocol

from pay_per_prompt.chain.permit import (
    PermitRequest,
    build_permit_data,
    build_transfer_from_data,
    permit_reference,
    to_credit_amount,
    validate_permit,
)
from pay_per_prompt.chain.rpc_client import ChainRPCClient, ChainRPCError, ChainRPCResponseError
from pay_per_prompt.errors import ChainRelayFailure
from pay_per_prompt.ledger_store import LedgerStore
from pay_per_prompt.utils.constants import (
    BASE_CHAIN_ID,
    DEFAULT_MAX_PRIORITY_FEE,
    DEMO_TX_PREFIX,
    RECEIPT_POLL_ATTEMPTS,
    RECEIPT_POLL_INTERVAL_SECS,
    RECEIPT_SUCCESS_STATUS,
)
from pay_per_prompt.utils.formatters import decimal_str, normalize_address

logger = logging.getLogger(__name__)

CONFIRMED_MESSAGE = "Deposit confirmed on-chain"
DEMO_MESSAGE = "Demo deposit processed (configure RELAYER_PRIVATE_KEY for on-chain)"
DOWNGRADED_MESSAGE = "Deposit credited off-chain (on-chain relay unavailable)"
REPLAYED_MESSAGE = "Deposit already credited"


class ChainSubmitter(Protocol):
    """Submits a permit on-chain and returns the confirmed transaction hash.

    Implementations raise ChainRelayFailure on any failure.
    """

    async def submit_permit(self, permit: PermitRequest, spender: str) -> str: ...


# ---------------------------------------------------------------------------
# JSON-RPC submitter
# ---------------------------------------------------------------------------


class RpcChainSubmitter:
    """Submits through ``eth_sendTransaction`` on a node holding the relayer account.

    The node signs; this class only builds, submits and confirms the
    transactions. When the permit's spender is the relayer itself, a
    ``transferFrom(owner, relayer, value)`` follows the permit.
    """

    def __init__(
        self,
        rpc: ChainRPCClient,
        relayer_address: str | None,
        token_contract: str,
        chain_id: int = BASE_CHAIN_ID,
        poll_attempts: int = RECEIPT_POLL_ATTEMPTS,
        poll_interval: float = RECEIPT_POLL_INTERVAL_SECS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.rpc = rpc
        self.relayer_address = relayer_address
        self.token_contract = token_contract
        self.chain_id = chain_id
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def close(self) -> None:
        await self.rpc.close()

    async def _priority_fee(self) -> str:
        try:
            return await self.rpc.call("eth_maxPriorityFeePerGas")
        except ChainRPCResponseError:
            logger.debug("eth_maxPriorityFeePerGas unsupported; using default.")
            return DEFAULT_MAX_PRIORITY_FEE

    async def _send(self, data: str, nonce: int, gas_price: str, priority_fee: str) -> str:
        gas = await self.rpc.call(
            "eth_estimateGas",
            [{"from": self.relayer_address, "to": self.token_contract, "data": data}],
        )
        tx = {
            "from": self.relayer_address,
            "to": self.token_contract,
            "data": data,
            "gas": gas,
            "maxFeePerGas": gas_price,
            "maxPriorityFeePerGas": priority_fee,
            "nonce": hex(nonce),
            "chainId": hex(self.chain_id),
            "type": "0x2",
        }
        return await self.rpc.call("eth_sendTransaction", [tx])

    async def _wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        for _ in range(self.poll_attempts):
            await self._sleep(self.poll_interval)
            receipt = await self.rpc.call("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                return receipt
        raise ChainRelayFailure(f"Transaction {tx_hash} not confirmed")

    async def _send_and_confirm(
        self, data: str, nonce: int, gas_price: str, priority_fee: str
    ) -> str:
        tx_hash = await self._send(data, nonce, gas_price, priority_fee)
        receipt = await self._wait_for_receipt(tx_hash)
        if receipt.get("status") != RECEIPT_SUCCESS_STATUS:
            raise ChainRelayFailure(f"Transaction {tx_hash} reverted")
        return tx_hash

    async def submit_permit(self, permit: PermitRequest, spender: str) -> str:
        """Submit ``permit`` (and the follow-up pull, if any). Returns the permit tx hash."""
        if not self.relayer_address:
            raise ChainRelayFailure("RELAYER_ADDRESS not configured")
        try:
            nonce = int(
                await self.rpc.call(
                    "eth_getTransactionCount", [self.relayer_address, "latest"]
                ),
                16,
            )
            gas_price = await self.rpc.call("eth_gasPrice")
            priority_fee = await self._priority_fee()

            tx_hash = await self._send_and_confirm(
                build_permit_data(permit, spender), nonce, gas_price, priority_fee
            )
            logger.info("Permit for %s confirmed in %s.", permit.owner, tx_hash)

            if normalize_address(spender) == normalize_address(self.relayer_address):
                pull_hash = await self._send_and_confirm(
                    build_transfer_from_data(permit.owner, self.relayer_address, permit.value),
                    nonce + 1,
                    gas_price,
                    priority_fee,
                )
                logger.info("transferFrom for %s confirmed in %s.", permit.owner, pull_hash)
            return tx_hash
        except ChainRPCError as e:
            raise ChainRelayFailure(e.message) from e
        except (TypeError, ValueError) as e:
            raise ChainRelayFailure(f"Unexpected RPC response: {e}") from e


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DepositResult:
    """Outcome of one relayed deposit."""

    success: bool
    tx_hash: str
    new_balance: Decimal
    on_chain: bool
    message: str
    applied: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "txHash": self.tx_hash,
            "newBalance": decimal_str(self.new_balance),
            "onChain": self.on_chain,
            "message": self.message,
        }


class PermitRelay:
    """Validates permits, submits them when possible and credits the ledger."""

    def __init__(
        self,
        ledger: LedgerStore,
        submitter: ChainSubmitter | None,
        token_contract: str,
        vault_address: str | None = None,
    ) -> None:
        self._ledger = ledger
        self._submitter = submitter
        self._token_contract = token_contract
        self._vault_address = vault_address

    def effective_spender(self, permit: PermitRequest) -> str:
        """Request spender, else the configured vault, else the token contract."""
        return permit.spender or self._vault_address or self._token_contract

    async def relay(self, payload: dict[str, Any]) -> DepositResult:
        """Relay one deposit.

        The ledger entry is keyed on the permit reference, not on the
        returned tx hash, so a replayed permit is credited once no matter
        which path handled it first.

        Raises MalformedPermitError for bad input. Ledger errors propagate;
        chain errors never do.
        """
        permit = validate_permit(payload)
        spender = self.effective_spender(permit)
        amount = to_credit_amount(permit.value)
        account_id = permit.credited_account
        reference = permit_reference(permit)

        if self._submitter is None:
            tx_hash = DEMO_TX_PREFIX + reference[2:58]
            on_chain = False
            message = DEMO_MESSAGE
        else:
            try:
                tx_hash = await self._submitter.submit_permit(permit, spender)
                on_chain = True
                message = CONFIRMED_MESSAGE
            except ChainRelayFailure as e:
                logger.warning(
                    "On-chain relay failed for %s: %s. Crediting off-chain.",
                    account_id, e.detail,
                )
                tx_hash = reference
                on_chain = False
                message = DOWNGRADED_MESSAGE

        outcome = await self._ledger.deposit(account_id, amount, reference)
        if not outcome.applied:
            message = REPLAYED_MESSAGE
        return DepositResult(
            success=True,
            tx_hash=tx_hash,
            new_balance=outcome.new_balance,
            on_chain=on_chain,
            message=message,
            applied=outcome.applied,
        )
