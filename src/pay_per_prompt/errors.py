"""Error taxonomy for the deposit, ledger and billing paths.

Every error raised by the core derives from ``PayPerPromptError`` and
carries a machine-readable ``error_code`` plus the HTTP status the outer
surface should use. ``ChainRelayFailure`` is the one kind that never
reaches a caller: the permit relay absorbs it and downgrades the deposit.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pay_per_prompt.utils.formatters import decimal_str


class PayPerPromptError(Exception):
    """Base exception for all pay-per-prompt errors."""

    error_code = "PAY_PER_PROMPT_ERROR"
    status_code = 400

    def __init__(self, detail: str, context: dict[str, Any] | None = None) -> None:
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        """Render as a failure payload for tool/HTTP responses."""
        result: dict[str, Any] = {
            "success": False,
            "error": self.detail,
            "error_code": self.error_code,
        }
        result.update(self.context)
        return result


# ---------------------------------------------------------------------------
# Input errors
# ---------------------------------------------------------------------------


class MalformedInputError(PayPerPromptError):
    """A required field is missing or has the wrong shape."""

    error_code = "MALFORMED_INPUT"


class MalformedPermitError(MalformedInputError):
    """The EIP-2612 permit parameters are missing or ill-typed."""

    error_code = "MALFORMED_PERMIT"


class UnknownModelError(PayPerPromptError):
    """The requested model id is not in the catalog."""

    error_code = "UNKNOWN_MODEL"

    def __init__(self, model_id: str) -> None:
        super().__init__(f"Unknown model: {model_id}", {"model_id": model_id})
        self.model_id = model_id


# ---------------------------------------------------------------------------
# Session errors
# ---------------------------------------------------------------------------


class UnauthorizedError(PayPerPromptError):
    """Sign-in or session check failed."""

    error_code = "UNAUTHORIZED"
    status_code = 401


class SessionNotFoundError(UnauthorizedError):
    """No session row matches the (session id, account) pair."""

    def __init__(self, session_id: str) -> None:
        super().__init__("Invalid session (not found)")
        self.session_id = session_id


class SessionExpiredError(UnauthorizedError):
    """The session exists but its expiry has passed."""

    def __init__(self, session_id: str) -> None:
        super().__init__("Session expired")
        self.session_id = session_id


# ---------------------------------------------------------------------------
# Ledger errors
# ---------------------------------------------------------------------------


class InsufficientFundsError(PayPerPromptError):
    """Balance does not cover the required amount.

    ``required`` and ``available`` are carried so a client can render an
    actionable top-up prompt.
    """

    error_code = "INSUFFICIENT_FUNDS"
    status_code = 402

    def __init__(self, required: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient balance. Need at least {required:.6f} MNEE, "
            f"have {available:.6f}",
            {"required": decimal_str(required), "available": decimal_str(available)},
        )
        self.required = required
        self.available = available


class LedgerConflictError(PayPerPromptError):
    """Another writer changed the account between read and write."""

    error_code = "LEDGER_CONFLICT"
    status_code = 409

    def __init__(self, account_id: str) -> None:
        super().__init__(
            "Concurrent ledger update detected; please retry.",
            {"account_id": account_id},
        )
        self.account_id = account_id


# ---------------------------------------------------------------------------
# Upstream errors
# ---------------------------------------------------------------------------


class ProviderError(PayPerPromptError):
    """An upstream AI provider failed or returned an unusable response."""

    error_code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(self, provider: str, detail: str) -> None:
        super().__init__(f"{provider} API error: {detail}", {"provider": provider})
        self.provider = provider
        self.provider_detail = detail


class ChainRelayFailure(PayPerPromptError):
    """On-chain permit submission failed. Absorbed by the relay."""

    error_code = "CHAIN_RELAY_FAILURE"
    status_code = 502
