"""Account ledger store: LRU cache over a vault with per-account locks.

The store is the only writer of balances. Every mutation runs under the
account's ``asyncio.Lock``, is applied to a copy of the ledger, written
through to the vault with a version check, and only then published to
the cache. A failed write leaves the cached ledger exactly as it was.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pay_per_prompt.errors import InsufficientFundsError, LedgerConflictError
from pay_per_prompt.ledger import AccountLedger, LedgerEntry
from pay_per_prompt.utils.formatters import normalize_address
from pay_per_prompt.vault import LedgerVault

logger = logging.getLogger(__name__)


@dataclass
class _CacheEntry:
    """Internal cache entry wrapping a ledger with the vault version it matches."""

    ledger: AccountLedger
    version: int


@dataclass(frozen=True)
class DepositOutcome:
    """Result of ``LedgerStore.deposit``."""

    new_balance: Decimal
    applied: bool
    entry: LedgerEntry


class LedgerStore:
    """Keyed balance store with atomic deposit and deduct primitives.

    - ``get_balance()`` lazily creates the account.
    - ``deposit()`` is idempotent on ``external_ref``.
    - ``deduct()`` checks and applies under the account lock and never
      lets a balance go negative.
    - Distinct accounts never share a lock.
    """

    def __init__(self, vault: LedgerVault, maxsize: int = 256) -> None:
        self._vault = vault
        self._maxsize = maxsize
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._total_writes = 0
        self._total_conflicts = 0
        self._last_write_at: datetime | None = None

    def _get_lock(self, account_id: str) -> asyncio.Lock:
        """Get or create a per-account lock."""
        if account_id not in self._locks:
            self._locks[account_id] = asyncio.Lock()
        return self._locks[account_id]

    # -- loading --------------------------------------------------------------

    async def _load(self, account_id: str) -> _CacheEntry:
        """Return the cached entry, loading (or creating) it on miss.

        Caller must hold the account lock.
        """
        cached = self._entries.get(account_id)
        if cached is not None:
            self._entries.move_to_end(account_id)
            return cached

        stored = await self._vault.fetch_ledger(account_id)
        if stored is None:
            ledger = AccountLedger(account_id=account_id)
            try:
                version = await self._vault.store_ledger(account_id, ledger.to_json(), 0)
            except LedgerConflictError:
                # Another process created it first; use theirs.
                stored = await self._vault.fetch_ledger(account_id)
                if stored is None:
                    raise
                entry = _CacheEntry(
                    AccountLedger.from_json(account_id, stored.ledger_json), stored.version
                )
            else:
                logger.info("Created account %s.", account_id)
                entry = _CacheEntry(ledger, version)
        else:
            entry = _CacheEntry(
                AccountLedger.from_json(account_id, stored.ledger_json), stored.version
            )

        self._evict_to_capacity()
        self._entries[account_id] = entry
        return entry

    def _evict_to_capacity(self) -> None:
        """Drop least-recently-used entries and their idle locks.

        A lock that is currently held stays, since its holder and waiters
        share it. The vault already has every committed write, so a reload
        is safe.
        """
        while self._entries and len(self._entries) >= self._maxsize:
            evicted_id, _ = self._entries.popitem(last=False)
            lock = self._locks.get(evicted_id)
            if lock is not None and not lock.locked():
                self._locks.pop(evicted_id, None)

    async def _commit(self, account_id: str, cached: _CacheEntry, working: AccountLedger) -> None:
        """Write ``working`` through to the vault, then publish it to the cache."""
        try:
            new_version = await self._vault.store_ledger(
                account_id, working.to_json(), cached.version
            )
        except LedgerConflictError:
            self._total_conflicts += 1
            self._entries.pop(account_id, None)
            logger.warning("Ledger conflict for %s; cached copy evicted.", account_id)
            raise
        except Exception:
            logger.error("Failed to persist ledger for %s; mutation discarded.", account_id)
            raise
        cached.ledger = working
        cached.version = new_version
        self._total_writes += 1
        self._last_write_at = datetime.now(timezone.utc)

    # -- public API -----------------------------------------------------------

    async def get_balance(self, account_id: str) -> Decimal:
        """Current balance, creating the account at zero if absent."""
        account_id = normalize_address(account_id)
        async with self._get_lock(account_id):
            entry = await self._load(account_id)
            return entry.ledger.balance

    async def deposit(
        self, account_id: str, amount: Decimal, external_ref: str | None
    ) -> DepositOutcome:
        """Credit ``amount``. Replaying an ``external_ref`` is a no-op.

        A replay returns the balance recorded by the original deposit with
        ``applied=False``.
        """
        if amount <= 0:
            raise ValueError("Deposit amount must be positive.")
        account_id = normalize_address(account_id)
        async with self._get_lock(account_id):
            cached = await self._load(account_id)
            working = cached.ledger.clone()
            entry, applied = working.credit_deposit(amount, external_ref)
            if not applied:
                logger.info(
                    "Deposit %s for %s already credited; ignoring replay.",
                    external_ref, account_id,
                )
                return DepositOutcome(entry.balance_after, False, entry)
            await self._commit(account_id, cached, working)
            logger.info(
                "Credited %s to %s (ref=%s); balance %s.",
                amount, account_id, external_ref, working.balance,
            )
            return DepositOutcome(working.balance, True, entry)

    async def deduct(self, account_id: str, amount: Decimal) -> Decimal:
        """Atomically deduct ``amount`` and return the new balance.

        Raises InsufficientFundsError (with required vs. available) rather
        than letting the balance go negative.
        """
        if amount <= 0:
            raise ValueError("Deduction amount must be positive.")
        account_id = normalize_address(account_id)
        async with self._get_lock(account_id):
            cached = await self._load(account_id)
            working = cached.ledger.clone()
            if working.debit(amount) is None:
                raise InsufficientFundsError(required=amount, available=cached.ledger.balance)
            await self._commit(account_id, cached, working)
            return working.balance

    async def history(self, account_id: str, limit: int = 20) -> list[LedgerEntry]:
        """Newest-first ledger entries for an account."""
        account_id = normalize_address(account_id)
        async with self._get_lock(account_id):
            entry = await self._load(account_id)
            return entry.ledger.recent(limit)

    async def account_summary(self, account_id: str) -> dict[str, Any]:
        """Balance plus lifetime totals for an account."""
        account_id = normalize_address(account_id)
        async with self._get_lock(account_id):
            ledger = (await self._load(account_id)).ledger
            last_deposit = ledger.last_deposit_at
            return {
                "account_id": account_id,
                "balance": ledger.balance,
                "total_deposited": ledger.total_deposited,
                "total_consumed": ledger.total_consumed,
                "created_at": ledger.created_at.isoformat(),
                "last_deposit_at": last_deposit.isoformat() if last_deposit else None,
            }

    def invalidate(self, account_id: str) -> None:
        """Drop a cached ledger so the next access reloads from the vault."""
        self._entries.pop(normalize_address(account_id), None)

    def health(self) -> dict[str, Any]:
        """Cache metrics for diagnostics."""
        return {
            "cache_size": len(self._entries),
            "max_size": self._maxsize,
            "total_writes": self._total_writes,
            "total_conflicts": self._total_conflicts,
            "last_write_at": self._last_write_at.isoformat() if self._last_write_at else None,
        }

    @property
    def size(self) -> int:
        """Number of accounts currently in cache."""
        return len(self._entries)
