"""Session directory: opaque session ids mapped to (account, expiry).

Sessions are persisted through the vault on a best-effort basis and kept
in a bounded LRU cache in front of it. The cache only saves a vault
round-trip; a miss always falls back to the vault, and expired sessions
are dropped from it when seen.
"""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable

from pay_per_prompt.errors import SessionExpiredError, SessionNotFoundError
from pay_per_prompt.utils.constants import SESSION_TTL_SECONDS
from pay_per_prompt.utils.formatters import normalize_address
from pay_per_prompt.vault import LedgerVault, Session

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionDirectory:
    """Issues and verifies sign-in sessions."""

    def __init__(
        self,
        vault: LedgerVault,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        maxsize: int = 1024,
    ) -> None:
        self._vault = vault
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._maxsize = maxsize
        self._cache: OrderedDict[str, Session] = OrderedDict()

    def _remember(self, session: Session) -> None:
        self._cache[session.session_id] = session
        self._cache.move_to_end(session.session_id)
        while len(self._cache) > self._maxsize:
            self._cache.popitem(last=False)

    async def create(self, account_id: str) -> Session:
        """Issue a new session valid for the configured TTL.

        A vault failure is logged and does not abort sign-in.
        """
        now = self._clock()
        session = Session(
            session_id=str(uuid.uuid4()),
            account_id=normalize_address(account_id),
            issued_at=now,
            expires_at=now + self._ttl,
        )
        self._remember(session)
        try:
            await self._vault.store_session(session)
        except Exception:
            logger.warning(
                "Session insert failed for %s; continuing with cached session.",
                session.account_id,
                exc_info=True,
            )
        return session

    async def _lookup(self, session_id: str) -> Session | None:
        session = self._cache.get(session_id)
        if session is not None:
            self._cache.move_to_end(session_id)
            return session
        session = await self._vault.fetch_session(session_id)
        if session is not None:
            self._remember(session)
        return session

    async def verify(self, session_id: str, account_id: str) -> Session:
        """Check that ``session_id`` belongs to ``account_id`` and is live.

        Raises SessionNotFoundError or SessionExpiredError. A session is
        still valid at exactly ``expires_at``.
        """
        session = await self._lookup(session_id)
        if session is None or session.account_id != normalize_address(account_id):
            raise SessionNotFoundError(session_id)
        if self._clock() > session.expires_at:
            self._cache.pop(session_id, None)
            raise SessionExpiredError(session_id)
        return session
