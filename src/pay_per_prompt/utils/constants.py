"""Constants and enums for the pay-per-prompt server."""

from decimal import Decimal
from enum import Enum


class Provider(str, Enum):
    """Upstream AI provider families."""

    GROQ = "groq"
    GOOGLE = "google"
    ANTHROPIC = "anthropic"
    XAI = "xai"


class ModelTier(str, Enum):
    """Price tiers shown in the model picker."""

    BUDGET = "budget"
    STANDARD = "standard"
    PREMIUM = "premium"


class EntryKind(str, Enum):
    """Ledger entry kinds."""

    DEPOSIT = "deposit"
    DEDUCTION = "deduction"


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

PLATFORM_MARGIN = Decimal("1.20")  # flat 20% over upstream cost
TOKENS_PER_MILLION = Decimal(1_000_000)

# Conservative pre-dispatch estimate
MIN_ESTIMATE_INPUT_TOKENS = 100
MIN_ESTIMATE_OUTPUT_TOKENS = 500

MINIMUM_BALANCE_FLOOR = Decimal("0.001")
CHARS_PER_TOKEN = 4

DEFAULT_MODEL_ID = "groq-llama-70b"

# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

MNEE_CONTRACT = "0x8ccedbAe4916b79da7F3F612EfB2EB93A2bFB6cF"
MNEE_DECIMALS = 18
BASE_CHAIN_ID = 8453

PERMIT_SIGNATURE = "permit(address,address,uint256,uint256,uint8,bytes32,bytes32)"
TRANSFER_FROM_SIGNATURE = "transferFrom(address,address,uint256)"

DEFAULT_MAX_PRIORITY_FEE = "0x59682f00"  # 1.5 gwei
RECEIPT_SUCCESS_STATUS = "0x1"
RECEIPT_POLL_ATTEMPTS = 30
RECEIPT_POLL_INTERVAL_SECS = 2.0

DEMO_TX_PREFIX = "0xdemo_"

# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

SESSION_TTL_SECONDS = 24 * 60 * 60
