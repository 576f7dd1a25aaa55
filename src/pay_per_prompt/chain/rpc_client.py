"""Minimal async JSON-RPC client for an EVM node, using httpx."""

from __future__ import annotations

import itertools
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class ChainRPCError(Exception):
    """Base error for JSON-RPC calls."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ChainRPCConnectionError(ChainRPCError):
    """The node could not be reached."""


class ChainRPCTimeoutError(ChainRPCError):
    """The node did not answer in time."""


class ChainRPCResponseError(ChainRPCError):
    """The node answered with an HTTP error or a JSON-RPC ``error`` object."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        rpc_code: int | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.rpc_code = rpc_code


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ChainRPCClient:
    """JSON-RPC 2.0 over HTTP POST."""

    def __init__(self, rpc_url: str, timeout: float = 30.0) -> None:
        self.rpc_url = rpc_url
        self._ids = itertools.count(1)
        self.client = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> ChainRPCClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Invoke ``method`` and return its ``result``.

        Raises:
            ChainRPCConnectionError: transport failure.
            ChainRPCTimeoutError: request timed out.
            ChainRPCResponseError: non-2xx, unparseable body or RPC error.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            response = await self.client.request("POST", self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise ChainRPCTimeoutError(f"{method} timed out") from e
        except httpx.HTTPError as e:
            raise ChainRPCConnectionError(f"{method} failed: {e}") from e

        if response.status_code >= 400:
            raise ChainRPCResponseError(
                f"{method} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ChainRPCResponseError(
                f"{method} returned invalid JSON", status_code=response.status_code
            ) from e

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise ChainRPCResponseError(f"{method}: {message}", rpc_code=code)
        if not isinstance(data, dict) or "result" not in data:
            raise ChainRPCResponseError(f"{method} returned no result")
        return data["result"]
