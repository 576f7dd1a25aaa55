"""EIP-2612 permit request validation and call-data encoding."""

from __future__ import annotations

import re
from decimal import Decimal, localcontext
from typing import Any

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, keccak
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pay_per_prompt.errors import MalformedPermitError
from pay_per_prompt.utils.constants import (
    MNEE_DECIMALS,
    PERMIT_SIGNATURE,
    TRANSFER_FROM_SIGNATURE,
)
from pay_per_prompt.utils.formatters import is_address, normalize_address

_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_UINT_RE = re.compile(r"^[0-9]+$")
_UINT256_MAX = 2**256 - 1

_REQUIRED_FIELDS = ("owner", "value", "deadline", "v", "r", "s")


class PermitRequest(BaseModel):
    """A signed permit as submitted by the wallet client."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    owner: str
    spender: str | None = None
    value: int
    deadline: int
    v: int
    r: str
    s: str
    wallet_address: str | None = Field(None, alias="walletAddress")

    @field_validator("owner", "spender", "wallet_address")
    @classmethod
    def _check_address(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not is_address(value):
            raise ValueError("must be a 0x-prefixed 20-byte hex address")
        return value

    @field_validator("value", "deadline", mode="before")
    @classmethod
    def _check_uint256(cls, value: Any) -> int:
        if isinstance(value, bool):
            raise ValueError("must be an unsigned integer")
        if isinstance(value, str) and _UINT_RE.match(value.strip()):
            value = int(value.strip())
        if not isinstance(value, int) or value < 0 or value > _UINT256_MAX:
            raise ValueError("must be an unsigned 256-bit integer")
        return value

    @field_validator("value")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value == 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("v", mode="before")
    @classmethod
    def _check_v(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 255:
            raise ValueError("must be an integer between 0 and 255")
        return value

    @field_validator("r", "s")
    @classmethod
    def _check_bytes32(cls, value: str) -> str:
        if not _BYTES32_RE.match(value):
            raise ValueError("must be a 0x-prefixed 32-byte hex string")
        return value

    @property
    def credited_account(self) -> str:
        """Account that receives the credits: wallet address, else owner."""
        return normalize_address(self.wallet_address or self.owner)


def validate_permit(payload: dict[str, Any]) -> PermitRequest:
    """Parse a raw request body into a PermitRequest.

    Raises MalformedPermitError on missing or ill-typed fields.
    """
    if not isinstance(payload, dict):
        raise MalformedPermitError("Permit payload must be a JSON object")
    missing = [f for f in _REQUIRED_FIELDS if payload.get(f) in (None, "")]
    if missing:
        raise MalformedPermitError(
            "Missing permit signature parameters",
            {"missing": missing},
        )
    try:
        return PermitRequest.model_validate(payload)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise MalformedPermitError(
            f"Invalid permit parameters: {', '.join(fields)}",
            {"invalid": fields},
        ) from e


def to_credit_amount(value: int) -> Decimal:
    """Token minor units to whole MNEE credits, exactly."""
    # uint256 has at most 78 digits
    with localcontext() as ctx:
        ctx.prec = 80
        return Decimal(value).scaleb(-MNEE_DECIMALS)


# ---------------------------------------------------------------------------
# ABI encoding
# ---------------------------------------------------------------------------

_PERMIT_SELECTOR = function_signature_to_4byte_selector(PERMIT_SIGNATURE)
_TRANSFER_FROM_SELECTOR = function_signature_to_4byte_selector(TRANSFER_FROM_SIGNATURE)


def _call_data(selector: bytes, arg_types: list[str], args: list[Any]) -> str:
    return "0x" + (selector + abi_encode(arg_types, args)).hex()


def build_permit_data(permit: PermitRequest, spender: str) -> str:
    """Call data for ``permit(owner, spender, value, deadline, v, r, s)``."""
    return _call_data(
        _PERMIT_SELECTOR,
        ["address", "address", "uint256", "uint256", "uint8", "bytes32", "bytes32"],
        [
            normalize_address(permit.owner),
            normalize_address(spender),
            permit.value,
            permit.deadline,
            permit.v,
            bytes.fromhex(permit.r[2:]),
            bytes.fromhex(permit.s[2:]),
        ],
    )


def build_transfer_from_data(owner: str, recipient: str, value: int) -> str:
    """Call data for ``transferFrom(owner, recipient, value)``."""
    return _call_data(
        _TRANSFER_FROM_SELECTOR,
        ["address", "address", "uint256"],
        [normalize_address(owner), normalize_address(recipient), value],
    )


def permit_reference(permit: PermitRequest) -> str:
    """Stable ``0x`` + 64-hex id of a signed permit.

    The signature fields bind it to exactly one authorization, so a
    replayed permit maps to the same ledger reference whichever path
    credits it.
    """
    digest = keccak(
        abi_encode(
            ["address", "uint256", "uint256", "uint8", "bytes32", "bytes32"],
            [
                normalize_address(permit.owner),
                permit.value,
                permit.deadline,
                permit.v,
                bytes.fromhex(permit.r[2:]),
                bytes.fromhex(permit.s[2:]),
            ],
        )
    )
    return "0x" + digest.hex()
