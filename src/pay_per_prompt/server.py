"""Pay-per-prompt MCP server using FastMCP.

Every operation is exposed as an MCP tool. The deposit, prompt and
sign-in operations are also served as plain JSON ``POST`` routes (with
CORS preflight) for browser clients.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from pay_per_prompt.billing import BillingPipeline, PromptRequest
from pay_per_prompt.chain.relay import PermitRelay, RpcChainSubmitter
from pay_per_prompt.chain.rpc_client import ChainRPCClient
from pay_per_prompt.config import Settings, get_settings
from pay_per_prompt.errors import MalformedInputError, PayPerPromptError
from pay_per_prompt.ledger_store import LedgerStore
from pay_per_prompt.providers import ProviderGateway, build_gateways
from pay_per_prompt.sessions import SessionDirectory
from pay_per_prompt.siwe import SignInService
from pay_per_prompt.tools import auth, credits, deposits, prompts
from pay_per_prompt.utils.constants import Provider
from pay_per_prompt.vault import LedgerVault, MemoryVault, SqliteVault

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "pay-per-prompt",
    instructions=(
        "Pay-Per-Prompt: metered AI completions paid from a prepaid MNEE "
        "credit balance.\n\n"
        "## Getting Started\n\n"
        "1. Call `siwe_message(address, domain, uri)` and have the wallet sign "
        "the returned message, then call `verify_siwe(message, signature, "
        "address)` to obtain a session id.\n"
        "2. Fund the account with `relay_deposit`, passing a signed EIP-2612 "
        "permit. The relayer pays gas; credits land immediately.\n"
        "3. Call `process_prompt(wallet_address, prompt, session_id, model_id)`.\n\n"
        "## Billing\n\n"
        "Each prompt is billed on the chosen model's per-million-token prices "
        "from the real token usage, plus a 20% platform margin. A prompt is "
        "refused up front when the balance cannot cover a 100-in/500-out "
        "estimate. Use `list_models` and `estimate_prompt_cost` to compare "
        "models, `check_balance` and `transaction_history` to review the "
        "account. Amounts are decimal strings."
    ),
)

_settings: Settings | None = None
_vault: LedgerVault | None = None
_ledger_store: LedgerStore | None = None
_session_directory: SessionDirectory | None = None
_sign_in_service: SignInService | None = None
_permit_relay: PermitRelay | None = None
_chain_submitter: RpcChainSubmitter | None = None
_gateways: dict[Provider, ProviderGateway] | None = None
_billing_pipeline: BillingPipeline | None = None


# ---------------------------------------------------------------------------
# Singletons (created at runtime, not import time)
# ---------------------------------------------------------------------------


def _get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = get_settings()
    return _settings


def _get_vault() -> LedgerVault:
    """SQLite vault when DATABASE_PATH is set, otherwise in-memory."""
    global _vault
    if _vault is None:
        settings = _get_settings()
        if settings.database_path:
            _vault = SqliteVault(settings.database_path)
            logger.info("Using SQLite vault at %s.", settings.database_path)
        else:
            _vault = MemoryVault()
            logger.warning("DATABASE_PATH not set; balances are kept in memory only.")
    return _vault


def _get_ledger_store() -> LedgerStore:
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = LedgerStore(_get_vault(), maxsize=_get_settings().ledger_cache_size)
        _register_shutdown_handlers()
    return _ledger_store


def _get_session_directory() -> SessionDirectory:
    global _session_directory
    if _session_directory is None:
        _session_directory = SessionDirectory(
            _get_vault(), ttl_seconds=_get_settings().session_ttl_seconds
        )
    return _session_directory


def _get_sign_in_service() -> SignInService:
    global _sign_in_service
    if _sign_in_service is None:
        _sign_in_service = SignInService(_get_session_directory(), _get_ledger_store())
    return _sign_in_service


def _get_permit_relay() -> PermitRelay:
    """Permit relay; on-chain submission only when a relayer key is configured."""
    global _permit_relay, _chain_submitter
    if _permit_relay is None:
        settings = _get_settings()
        if settings.relayer_configured:
            _chain_submitter = RpcChainSubmitter(
                ChainRPCClient(settings.rpc_url),
                relayer_address=settings.relayer_address,
                token_contract=settings.mnee_contract,
                chain_id=settings.chain_id,
                poll_attempts=settings.receipt_poll_attempts,
                poll_interval=settings.receipt_poll_interval_secs,
            )
        else:
            logger.info("No relayer key configured; deposits run in demo mode.")
        _permit_relay = PermitRelay(
            _get_ledger_store(),
            _chain_submitter,
            token_contract=settings.mnee_contract,
            vault_address=settings.vault_address,
        )
    return _permit_relay


def _get_billing_pipeline() -> BillingPipeline:
    global _billing_pipeline, _gateways
    if _billing_pipeline is None:
        settings = _get_settings()
        _gateways = build_gateways(settings)
        _billing_pipeline = BillingPipeline(
            _get_ledger_store(),
            _get_session_directory(),
            _gateways,
            default_model_id=settings.default_model_id,
            force_execution_model=settings.force_execution_model,
        )
    return _billing_pipeline


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------

_shutdown_triggered = False


async def _graceful_shutdown(sig: signal.Signals | None = None) -> None:
    """Close HTTP clients and the vault, then re-deliver ``sig``.

    The default handler is restored before re-raising so the process
    still exits the way it would have without us.
    """
    global _shutdown_triggered
    if _shutdown_triggered:
        return
    _shutdown_triggered = True

    if _gateways is not None:
        for gateway in _gateways.values():
            await gateway.close()
    if _chain_submitter is not None:
        await _chain_submitter.close()
    if _vault is not None:
        await _vault.close()
    logger.info("Graceful shutdown complete.")

    if sig is not None:
        asyncio.get_running_loop().remove_signal_handler(sig)
        signal.raise_signal(sig)


def _register_shutdown_handlers() -> None:
    """Register SIGTERM/SIGINT handlers once a loop is running."""
    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(_graceful_shutdown(s)),
            )
    except (NotImplementedError, RuntimeError):
        # Windows doesn't support add_signal_handler; no loop during tests
        pass


# ---------------------------------------------------------------------------
# MCP tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def relay_deposit(
    owner: str,
    value: str,
    deadline: str,
    v: int,
    r: str,
    s: str,
    spender: str | None = None,
    wallet_address: str | None = None,
) -> dict[str, Any]:
    """Credit a gasless MNEE deposit from a signed EIP-2612 permit.

    Args:
        owner: Address that signed the permit
        value: Amount in token minor units (18 decimals), as a decimal string
        deadline: Permit deadline (unix seconds), as a decimal string
        v: Signature recovery id
        r: Signature r (0x + 64 hex)
        s: Signature s (0x + 64 hex)
        spender: Permit spender (defaults to the configured vault)
        wallet_address: Account to credit (defaults to owner)
    """
    payload: dict[str, Any] = {
        "owner": owner,
        "spender": spender,
        "value": value,
        "deadline": deadline,
        "v": v,
        "r": r,
        "s": s,
        "walletAddress": wallet_address,
    }
    return await deposits.relay_deposit_tool(_get_permit_relay(), payload)


@mcp.tool()
async def process_prompt(
    wallet_address: str,
    prompt: str,
    session_id: str | None = None,
    model_id: str | None = None,
) -> dict[str, Any]:
    """Run a prompt and bill the account for the tokens it used.

    Args:
        wallet_address: Paying account
        prompt: Prompt text
        session_id: Session from verify_siwe
        model_id: Catalog model id (see list_models)
    """
    return await prompts.process_prompt_tool(
        _get_billing_pipeline(), wallet_address, prompt, session_id, model_id
    )


@mcp.tool()
async def verify_siwe(message: str, signature: str, address: str) -> dict[str, Any]:
    """Verify a Sign-In with Ethereum message and open a session.

    Args:
        message: The EIP-4361 message that was signed
        signature: Wallet signature over the message
        address: Signing wallet address
    """
    return await auth.verify_siwe_tool(_get_sign_in_service(), message, signature, address)


@mcp.tool()
async def siwe_message(address: str, domain: str, uri: str) -> dict[str, Any]:
    """Build a Sign-In with Ethereum message for a wallet to sign.

    Args:
        address: Wallet address that will sign
        domain: Requesting domain (e.g. "app.example.com")
        uri: Requesting URI
    """
    settings = _get_settings()
    return auth.siwe_message_tool(
        address, domain, uri, settings.chain_id, settings.session_ttl_seconds
    )


@mcp.tool()
async def check_balance(wallet_address: str) -> dict[str, Any]:
    """Return the MNEE credit balance and lifetime totals for an account.

    Args:
        wallet_address: Account address
    """
    return await credits.check_balance_tool(_get_ledger_store(), wallet_address)


@mcp.tool()
async def transaction_history(wallet_address: str, limit: int = 20) -> dict[str, Any]:
    """List the most recent deposits and deductions, newest first.

    Args:
        wallet_address: Account address
        limit: Maximum number of entries (1-100)
    """
    return await credits.transaction_history_tool(_get_ledger_store(), wallet_address, limit)


@mcp.tool()
async def list_models(provider: str | None = None, tier: str | None = None) -> dict[str, Any]:
    """List available models with prices per million tokens.

    Args:
        provider: Optional filter: groq, google, anthropic or xai
        tier: Optional filter: budget, standard or premium
    """
    return credits.list_models_tool(provider, tier)


@mcp.tool()
async def estimate_prompt_cost(prompt: str, model_id: str | None = None) -> dict[str, Any]:
    """Estimate the cost of a prompt before sending it.

    Args:
        prompt: Prompt text
        model_id: Catalog model id (defaults to the server default)
    """
    return credits.estimate_prompt_cost_tool(model_id, prompt, _get_settings().default_model_id)


@mcp.tool()
async def service_status() -> dict[str, Any]:
    """Report relay mode, ledger cache health and model configuration."""
    settings = _get_settings()
    return {
        "success": True,
        "relay_mode": "on-chain" if settings.relayer_configured else "demo",
        "chain_id": settings.chain_id,
        "default_model_id": settings.default_model_id,
        "force_execution_model": settings.force_execution_model,
        "ledger": _get_ledger_store().health(),
    }


# ---------------------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------------------


def _cors_headers() -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": _get_settings().cors_allow_origin,
        "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
        "Access-Control-Allow-Methods": "POST, OPTIONS",
    }


async def _read_json(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise MalformedInputError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise MalformedInputError("Request body must be a JSON object")
    return body


def _error_response(error: PayPerPromptError) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=_cors_headers())


async def _handle(request: Request, operation: Any) -> Response:
    """Run ``operation(body)`` and map errors to status codes."""
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=_cors_headers())
    try:
        body = await _read_json(request)
        result = await operation(body)
    except PayPerPromptError as e:
        return _error_response(e)
    except Exception:
        logger.exception("Unhandled error serving %s.", request.url.path)
        return JSONResponse(
            {"success": False, "error": "Internal server error"},
            status_code=500,
            headers=_cors_headers(),
        )
    return JSONResponse(result, headers=_cors_headers())


async def _relay_operation(body: dict[str, Any]) -> dict[str, Any]:
    return (await _get_permit_relay().relay(body)).to_dict()


async def _prompt_operation(body: dict[str, Any]) -> dict[str, Any]:
    return (await _get_billing_pipeline().process(PromptRequest.from_dict(body))).to_dict()


async def _siwe_operation(body: dict[str, Any]) -> dict[str, Any]:
    result = await _get_sign_in_service().verify(
        body.get("message") or "", body.get("signature") or "", body.get("address") or ""
    )
    return result.to_dict()


@mcp.custom_route("/functions/v1/gasless-relay", methods=["POST", "OPTIONS"])
async def gasless_relay_route(request: Request) -> Response:
    return await _handle(request, _relay_operation)


@mcp.custom_route("/functions/v1/process-prompt", methods=["POST", "OPTIONS"])
async def process_prompt_route(request: Request) -> Response:
    return await _handle(request, _prompt_operation)


@mcp.custom_route("/functions/v1/verify-siwe", methods=["POST", "OPTIONS"])
async def verify_siwe_route(request: Request) -> Response:
    return await _handle(request, _siwe_operation)


def main() -> None:
    """Main entry point for the server."""
    logging.basicConfig(level=logging.INFO)
    settings = _get_settings()
    if settings.mcp_transport == "http":
        mcp.run(transport="http", host=settings.http_host, port=settings.http_port)
    else:
        mcp.run()


if __name__ == "__main__":
    main()
