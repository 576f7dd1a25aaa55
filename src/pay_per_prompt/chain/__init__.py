"""Permit validation, JSON-RPC access and the gasless deposit relay."""

from pay_per_prompt.chain.permit import PermitRequest, validate_permit
from pay_per_prompt.chain.relay import (
    ChainSubmitter,
    DepositResult,
    PermitRelay,
    RpcChainSubmitter,
)
from pay_per_prompt.chain.rpc_client import ChainRPCClient

__all__ = [
    "ChainRPCClient",
    "ChainSubmitter",
    "DepositResult",
    "PermitRelay",
    "PermitRequest",
    "RpcChainSubmitter",
    "validate_permit",
]
