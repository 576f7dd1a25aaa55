"""Tests for the AccountLedger data model."""

import json
from decimal import Decimal

import pytest

from pay_per_prompt.ledger import AccountLedger, LedgerEntry
from pay_per_prompt.utils.constants import EntryKind

ACCOUNT = "0x1111111111111111111111111111111111111111"


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


class TestCreditDeposit:
    def test_deposit_increases_balance(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        entry, applied = ledger.credit_deposit(Decimal("1.5"), "0xabc")
        assert applied is True
        assert ledger.balance == Decimal("1.5")
        assert entry.kind is EntryKind.DEPOSIT
        assert entry.balance_after == Decimal("1.5")
        assert entry.external_ref == "0xabc"

    def test_replay_is_noop(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        first, _ = ledger.credit_deposit(Decimal("1"), "0xabc")
        ledger.credit_deposit(Decimal("2"), "0xdef")
        again, applied = ledger.credit_deposit(Decimal("1"), "0xabc")
        assert applied is False
        assert again is first
        assert ledger.balance == Decimal("3")
        assert len(ledger.entries) == 2

    def test_deposits_without_ref_are_not_deduplicated(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        ledger.credit_deposit(Decimal("1"), None)
        ledger.credit_deposit(Decimal("1"), None)
        assert ledger.balance == Decimal("2")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1")])
    def test_non_positive_rejected(self, amount: Decimal) -> None:
        with pytest.raises(ValueError):
            AccountLedger(ACCOUNT).credit_deposit(amount, "0xabc")


class TestDebit:
    def test_debit_decreases_balance(self) -> None:
        ledger = AccountLedger(ACCOUNT, balance=Decimal("1"))
        entry = ledger.debit(Decimal("0.25"))
        assert entry is not None
        assert entry.kind is EntryKind.DEDUCTION
        assert ledger.balance == Decimal("0.75")

    def test_debit_exact_balance_to_zero(self) -> None:
        ledger = AccountLedger(ACCOUNT, balance=Decimal("0.5"))
        assert ledger.debit(Decimal("0.5")) is not None
        assert ledger.balance == Decimal("0")

    def test_insufficient_returns_none(self) -> None:
        ledger = AccountLedger(ACCOUNT, balance=Decimal("0.1"))
        assert ledger.debit(Decimal("0.2")) is None
        assert ledger.balance == Decimal("0.1")
        assert ledger.entries == []

    def test_non_positive_rejected(self) -> None:
        with pytest.raises(ValueError):
            AccountLedger(ACCOUNT, balance=Decimal("1")).debit(Decimal("0"))


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_totals(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        ledger.credit_deposit(Decimal("2"), "0x1")
        ledger.debit(Decimal("0.5"))
        ledger.debit(Decimal("0.25"))
        assert ledger.total_deposited == Decimal("2")
        assert ledger.total_consumed == Decimal("0.75")
        assert ledger.balance == ledger.total_deposited - ledger.total_consumed

    def test_last_deposit_at(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        assert ledger.last_deposit_at is None
        entry, _ = ledger.credit_deposit(Decimal("1"), "0x1")
        ledger.debit(Decimal("0.1"))
        assert ledger.last_deposit_at == entry.timestamp

    def test_recent_newest_first(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        ledger.credit_deposit(Decimal("1"), "0x1")
        ledger.debit(Decimal("0.1"))
        ledger.debit(Decimal("0.2"))
        recent = ledger.recent(2)
        assert [e.amount for e in recent] == [Decimal("0.2"), Decimal("0.1")]

    def test_recent_zero_limit(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        ledger.credit_deposit(Decimal("1"), "0x1")
        assert ledger.recent(0) == []

    def test_clone_is_independent(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        ledger.credit_deposit(Decimal("1"), "0x1")
        copy = ledger.clone()
        copy.debit(Decimal("0.5"))
        assert ledger.balance == Decimal("1")
        assert len(ledger.entries) == 1


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestSerialization:
    def test_round_trip_preserves_exact_decimals(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        ledger.credit_deposit(Decimal("1"), "0x1")
        ledger.debit(Decimal("0.03276"))

        restored = AccountLedger.from_json(ACCOUNT, ledger.to_json())
        assert restored.balance == Decimal("0.96724")
        assert restored.entries == ledger.entries
        assert restored.created_at == ledger.created_at

    def test_amounts_stored_as_strings(self) -> None:
        ledger = AccountLedger(ACCOUNT)
        ledger.credit_deposit(Decimal("0.1"), "0x1")
        data = json.loads(ledger.to_json())
        assert data["v"] == 1
        assert data["balance"] == "0.1"
        assert data["entries"][0]["amount"] == "0.1"

    def test_invalid_json_raises(self) -> None:
        with pytest.raises(ValueError, match="Corrupt ledger"):
            AccountLedger.from_json(ACCOUNT, "{not json")

    def test_non_dict_raises(self) -> None:
        with pytest.raises(ValueError):
            AccountLedger.from_json(ACCOUNT, "[1, 2]")

    def test_bad_balance_raises(self) -> None:
        with pytest.raises(ValueError):
            AccountLedger.from_json(ACCOUNT, json.dumps({"balance": "lots"}))

    def test_entry_round_trip(self) -> None:
        entry = LedgerEntry(ACCOUNT, EntryKind.DEDUCTION, Decimal("0.5"), Decimal("1.5"))
        assert LedgerEntry.from_dict(entry.to_dict()) == entry
