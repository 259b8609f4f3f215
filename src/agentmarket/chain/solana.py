"""Solana RPC client wrapper."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from agentmarket.exceptions import ChainRPCError

logger = logging.getLogger(__name__)

NETWORK_ALIASES = {
    "solana": "mainnet-beta",
    "solana-mainnet": "mainnet-beta",
    "mainnet": "mainnet-beta",
    "mainnet-beta": "mainnet-beta",
    "solana-devnet": "devnet",
    "devnet": "devnet",
    "solana-testnet": "testnet",
    "testnet": "testnet",
}


def normalize_network(network: str | None) -> str | None:
    """Map a network name or alias onto mainnet-beta/devnet/testnet."""
    if not network:
        return None
    return NETWORK_ALIASES.get(network.strip().lower())


@dataclass
class SolanaConfig:
    """Solana connection configuration."""
    rpc_url: str
    commitment: str = "confirmed"
    timeout: float = 30.0


@dataclass
class SignatureStatus:
    """Entry of ``getSignatureStatuses``."""
    confirmation_status: Optional[str]
    err: Any = None
    slot: Optional[int] = None

    def satisfies(self, commitment: str) -> bool:
        if commitment == "finalized":
            return self.confirmation_status == "finalized"
        return self.confirmation_status in ("confirmed", "finalized")


class SolanaClient:
    """Async Solana JSON-RPC client.

    Uses raw httpx instead of solana-py to minimize dependencies.
    All Solana RPC methods are called via JSON-RPC 2.0.
    """

    def __init__(
        self,
        config: SolanaConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.config.timeout)
        self._request_id = 0

    async def _rpc(self, method: str, params: list[Any] | None = None) -> Any:
        """Make a JSON-RPC call to Solana."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        try:
            resp = await self._client.post(
                self.config.rpc_url, json=payload, timeout=self.config.timeout
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise ChainRPCError(f"{method} timed out after {self.config.timeout}s", method=method) from e
        except httpx.HTTPError as e:
            raise ChainRPCError(f"{method} failed: {e}", method=method) from e
        except ValueError as e:
            raise ChainRPCError(f"{method} returned invalid JSON", method=method) from e
        if not isinstance(data, dict):
            raise ChainRPCError(f"{method} returned an unexpected response", method=method)
        if "error" in data:
            error = data["error"] or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise ChainRPCError(error.get("message", "Unknown RPC error"), method=method, rpc_error=error)
        return data.get("result")

    async def get_transaction(self, signature: str) -> Optional[dict[str, Any]]:
        """Fetch a parsed transaction, or None if the node does not know it."""
        return await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.config.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        """Look up the confirmation status of one signature."""
        result = await self._rpc(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        statuses = result.get("value") if isinstance(result, dict) else None
        if not statuses or not isinstance(statuses[0], dict):
            return None
        status = statuses[0]
        return SignatureStatus(
            confirmation_status=status.get("confirmationStatus"),
            err=status.get("err"),
            slot=status.get("slot"),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            await self._client.aclose()
