"""Per-account credit ledger.

Pure data model, no I/O. Balances and amounts are ``Decimal`` MNEE
credits. The materialized ``balance`` is only ever changed together with
an appended ``LedgerEntry``, so the balance always equals the fold of the
entries.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from pay_per_prompt.utils.constants import EntryKind

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# LedgerEntry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one balance mutation."""

    account_id: str
    kind: EntryKind
    amount: Decimal
    balance_after: Decimal
    external_ref: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "balance_after": str(self.balance_after),
            "external_ref": self.external_ref,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        return cls(
            account_id=str(data["account_id"]),
            kind=EntryKind(data["kind"]),
            amount=Decimal(str(data["amount"])),
            balance_after=Decimal(str(data["balance_after"])),
            external_ref=data.get("external_ref"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


# ---------------------------------------------------------------------------
# AccountLedger
# ---------------------------------------------------------------------------


@dataclass
class AccountLedger:
    """Balance and append-only entry log for one wallet account.

    ``debit()`` returns None on insufficient balance (not exceptional).
    ``credit_deposit()`` is idempotent on ``external_ref``.
    ``from_json()`` raises ValueError on corrupt data.
    """

    account_id: str
    balance: Decimal = Decimal("0")
    created_at: datetime = field(default_factory=_utcnow)
    entries: list[LedgerEntry] = field(default_factory=list)

    # -- queries --------------------------------------------------------------

    @property
    def total_deposited(self) -> Decimal:
        return sum(
            (e.amount for e in self.entries if e.kind is EntryKind.DEPOSIT),
            Decimal("0"),
        )

    @property
    def total_consumed(self) -> Decimal:
        return sum(
            (e.amount for e in self.entries if e.kind is EntryKind.DEDUCTION),
            Decimal("0"),
        )

    @property
    def last_deposit_at(self) -> datetime | None:
        for entry in reversed(self.entries):
            if entry.kind is EntryKind.DEPOSIT:
                return entry.timestamp
        return None

    def find_deposit(self, external_ref: str) -> LedgerEntry | None:
        """Return the deposit entry recorded for ``external_ref``, if any."""
        for entry in self.entries:
            if entry.kind is EntryKind.DEPOSIT and entry.external_ref == external_ref:
                return entry
        return None

    def recent(self, limit: int = 20) -> list[LedgerEntry]:
        """Newest-first slice of the entry log."""
        return list(reversed(self.entries[-limit:])) if limit > 0 else []

    # -- mutations ------------------------------------------------------------

    def debit(self, amount: Decimal) -> LedgerEntry | None:
        """Deduct ``amount``. Returns None if the balance does not cover it."""
        if amount <= 0:
            raise ValueError("Deduction amount must be positive.")
        if self.balance < amount:
            return None

        self.balance -= amount
        entry = LedgerEntry(
            account_id=self.account_id,
            kind=EntryKind.DEDUCTION,
            amount=amount,
            balance_after=self.balance,
        )
        self.entries.append(entry)
        return entry

    def credit_deposit(self, amount: Decimal, external_ref: str | None) -> tuple[LedgerEntry, bool]:
        """Add a deposit. Returns ``(entry, applied)``.

        A replayed ``external_ref`` returns the original entry with
        ``applied=False`` and leaves the balance untouched.
        """
        if amount <= 0:
            raise ValueError("Deposit amount must be positive.")
        if external_ref is not None:
            existing = self.find_deposit(external_ref)
            if existing is not None:
                return existing, False

        self.balance += amount
        entry = LedgerEntry(
            account_id=self.account_id,
            kind=EntryKind.DEPOSIT,
            amount=amount,
            balance_after=self.balance,
            external_ref=external_ref,
        )
        self.entries.append(entry)
        return entry, True

    def clone(self) -> AccountLedger:
        """Copy for apply-then-publish mutations (entries are immutable)."""
        return AccountLedger(
            account_id=self.account_id,
            balance=self.balance,
            created_at=self.created_at,
            entries=list(self.entries),
        )

    # -- serialization --------------------------------------------------------

    def to_json(self) -> str:
        """Serialize to JSON string with schema version."""
        return json.dumps({
            "v": _SCHEMA_VERSION,
            "account_id": self.account_id,
            "balance": str(self.balance),
            "created_at": self.created_at.isoformat(),
            "entries": [e.to_dict() for e in self.entries],
        })

    @classmethod
    def from_json(cls, account_id: str, data: str) -> AccountLedger:
        """Deserialize from JSON.

        Raises ValueError on corrupt data. A fresh ledger would silently
        zero a funded account and the next write would persist that.
        """
        try:
            obj = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error("Ledger data for %s is corrupt (invalid JSON).", account_id)
            raise ValueError(f"Corrupt ledger for {account_id}") from e

        if not isinstance(obj, dict):
            logger.error("Ledger data for %s is not a dict.", account_id)
            raise ValueError(f"Corrupt ledger for {account_id}")

        try:
            entries = [
                LedgerEntry.from_dict(e)
                for e in obj.get("entries", [])
                if isinstance(e, dict)
            ]
            balance = Decimal(str(obj.get("balance", "0")))
            created_raw = obj.get("created_at")
            created_at = datetime.fromisoformat(created_raw) if created_raw else _utcnow()
        except (KeyError, ValueError, InvalidOperation) as e:
            logger.error("Ledger data for %s has invalid fields.", account_id)
            raise ValueError(f"Corrupt ledger for {account_id}") from e

        return cls(
            account_id=account_id,
            balance=balance,
            created_at=created_at,
            entries=entries,
        )
