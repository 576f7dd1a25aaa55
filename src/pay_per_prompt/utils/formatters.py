"""Utility functions for normalizing and formatting values."""

import re
from datetime import datetime, timezone
from decimal import Decimal

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_address(value: object) -> bool:
    """Return True if value is a 0x-prefixed 20-byte hex address."""
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def normalize_address(address: str) -> str:
    """Lower-case a wallet address for use as an account id."""
    return address.strip().lower()


def format_mnee(amount: Decimal) -> str:
    """Format a credit amount for human-readable messages (6 dp)."""
    return f"{amount:.6f} MNEE"


def isoformat_utc(dt: datetime) -> str:
    """ISO-8601 timestamp in UTC with a trailing Z."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def decimal_str(amount: Decimal) -> str:
    """Exact fixed-point string without trailing zeros or exponent ("0.03276", "100")."""
    return f"{amount.normalize():f}" if amount else "0"
