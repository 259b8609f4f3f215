"""
On-chain payment verification.

Given a payment signature and what the payment is supposed to be, query
the payment network directly and confirm or deny that it happened as
claimed. Caller-supplied amounts and recipients are never trusted.

A payment verifies only when the transaction:
- exists and reached ``confirmed``/``finalized`` commitment
- carries no on-chain error
- contains an SPL ``transfer``/``transferChecked`` whose amount (smallest
  units), mint and destination all match. The destination may be the
  expected recipient itself or a token account owned by it.

Every failure mode returns ``verified=False`` with a readable error; the
verifier does not retry.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import httpx

from .chain.solana import SolanaClient, SolanaConfig, normalize_network
from .config import MarketSettings
from .exceptions import MarketError
from .logging_config import mask_value
from .models import PaymentClaim, VerificationResult

logger = logging.getLogger(__name__)

NATIVE_SOL = "SOL"
_TOKEN_PROGRAMS = ("spl-token", "spl-token-2022")
_TRANSFER_TYPES = ("transfer", "transferChecked")


@dataclass
class _Transfer:
    amount: int
    destination: Optional[str]
    mint: Optional[str]
    owner: Optional[str]


def _account_keys(tx: Dict[str, Any]) -> List[str]:
    keys = tx.get("transaction", {}).get("message", {}).get("accountKeys", [])
    return [k["pubkey"] if isinstance(k, dict) else k for k in keys]


def _token_accounts(tx: Dict[str, Any]) -> Dict[str, Dict[str, Optional[str]]]:
    """Token account address -> {mint, owner} from pre/post token balances."""
    keys = _account_keys(tx)
    meta = tx.get("meta") or {}
    accounts: Dict[str, Dict[str, Optional[str]]] = {}
    for balance in (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or []):
        index = balance.get("accountIndex")
        if index is None or index >= len(keys):
            continue
        accounts[keys[index]] = {"mint": balance.get("mint"), "owner": balance.get("owner")}
    return accounts


def _instructions(tx: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    yield from tx.get("transaction", {}).get("message", {}).get("instructions", [])
    for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
        yield from inner.get("instructions", [])


def _token_transfers(tx: Dict[str, Any]) -> List[_Transfer]:
    accounts = _token_accounts(tx)
    transfers: List[_Transfer] = []
    for ix in _instructions(tx):
        if ix.get("program") not in _TOKEN_PROGRAMS:
            continue
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") not in _TRANSFER_TYPES:
            continue
        info = parsed.get("info", {})
        raw_amount = info.get("amount") or (info.get("tokenAmount") or {}).get("amount") or "0"
        destination = info.get("destination")
        known = accounts.get(destination, {})
        transfers.append(_Transfer(
            amount=int(raw_amount),
            destination=destination,
            mint=info.get("mint") or known.get("mint"),
            owner=known.get("owner"),
        ))
    return transfers


def _sol_transfers(tx: Dict[str, Any]) -> List[_Transfer]:
    transfers: List[_Transfer] = []
    for ix in _instructions(tx):
        parsed = ix.get("parsed")
        if ix.get("program") != "system" or not isinstance(parsed, dict):
            continue
        if parsed.get("type") != "transfer":
            continue
        info = parsed.get("info", {})
        transfers.append(_Transfer(
            amount=int(info.get("lamports", 0)),
            destination=info.get("destination"),
            mint=NATIVE_SOL,
            owner=None,
        ))
    return transfers


class PaymentVerifier:
    """
    Verifies payments against the Solana network they claim to be on.

    Example:
        verifier = PaymentVerifier.from_settings(settings)
        result = await verifier.verify(sig, 20000, provider, USDC_MINT_DEVNET, "devnet")
        if result.verified:
            ...
    """

    def __init__(
        self,
        rpc_urls: Dict[str, str],
        commitment: str = "confirmed",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.commitment = commitment
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._clients: Dict[str, SolanaClient] = {
            network: SolanaClient(
                SolanaConfig(rpc_url=url, commitment=commitment, timeout=timeout),
                http_client=self._http,
            )
            for network, url in rpc_urls.items()
        }

    @classmethod
    def from_settings(
        cls,
        settings: MarketSettings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "PaymentVerifier":
        return cls(
            rpc_urls=settings.solana_rpc_urls,
            commitment=settings.commitment,
            timeout=settings.rpc_timeout_seconds,
            http_client=http_client,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def verify_claim(self, claim: PaymentClaim) -> VerificationResult:
        """Verify a claim and attach the result to it."""
        claim.verification = await self.verify(
            claim.signature,
            claim.amount,
            claim.recipient,
            claim.token,
            claim.network,
        )
        return claim.verification

    async def verify(
        self,
        signature: str,
        expected_amount: int,
        expected_recipient: str,
        expected_token: Optional[str],
        network: str,
    ) -> VerificationResult:
        """
        Confirm that ``signature`` moved exactly ``expected_amount`` of
        ``expected_token`` to ``expected_recipient`` on ``network``.
        """
        sig = mask_value(signature, show_chars=8)
        normalized = normalize_network(network)
        client = self._clients.get(normalized) if normalized else None
        if client is None:
            logger.warning(f"Payment {sig}: unsupported network {network!r}")
            return VerificationResult(verified=False, error=f"Unsupported network: {network}")

        logger.info(
            f"Verifying payment {sig} on {normalized}: "
            f"{expected_amount} {expected_token or NATIVE_SOL} -> {expected_recipient}"
        )
        try:
            status = await client.get_signature_status(signature)
            if status is None:
                return self._fail(sig, "Transaction not found on blockchain")
            if status.err:
                return self._fail(sig, f"Transaction failed on-chain: {status.err}")
            if not status.satisfies(self.commitment):
                return self._fail(
                    sig,
                    f"Transaction not yet {self.commitment} "
                    f"(status: {status.confirmation_status or 'processed'})",
                )

            tx = await client.get_transaction(signature)
            if not tx:
                return self._fail(sig, "Transaction not found on blockchain")
            if (tx.get("meta") or {}).get("err"):
                return self._fail(sig, f"Transaction failed on-chain: {tx['meta']['err']}")

            return self._match(sig, tx, expected_amount, expected_recipient, expected_token)
        except MarketError as e:
            logger.error(f"Payment {sig}: verification error: {e.message}")
            return VerificationResult(verified=False, error=f"Verification error: {e.message}")
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Payment {sig}: malformed transaction data: {e}")
            return VerificationResult(verified=False, error=f"Verification error: malformed transaction ({e})")

    def _match(
        self,
        sig: str,
        tx: Dict[str, Any],
        expected_amount: int,
        expected_recipient: str,
        expected_token: Optional[str],
    ) -> VerificationResult:
        native = expected_token in (None, NATIVE_SOL)
        transfers = _sol_transfers(tx) if native else _token_transfers(tx)
        if not transfers:
            kind = "SOL" if native else "token"
            return self._fail(sig, f"No {kind} transfer found in transaction")

        mismatch: Optional[VerificationResult] = None
        for transfer in transfers:
            recipient_ok = expected_recipient in (transfer.destination, transfer.owner)
            if transfer.amount != expected_amount:
                error = f"Amount mismatch: expected {expected_amount}, got {transfer.amount}"
            elif not native and transfer.mint != expected_token:
                error = f"Token mismatch: expected {expected_token}, got {transfer.mint}"
            elif not recipient_ok:
                error = (
                    f"Recipient mismatch: expected {expected_recipient}, "
                    f"got {transfer.owner or transfer.destination}"
                )
            else:
                logger.info(f"Payment {sig} verified: {transfer.amount} -> {expected_recipient}")
                return VerificationResult(
                    verified=True,
                    actual_amount=transfer.amount,
                    actual_recipient=transfer.owner or transfer.destination,
                )
            if mismatch is None:
                mismatch = VerificationResult(
                    verified=False,
                    actual_amount=transfer.amount,
                    actual_recipient=transfer.owner or transfer.destination,
                    error=error,
                )

        logger.warning(f"Payment {sig} rejected: {mismatch.error}")
        return mismatch

    @staticmethod
    def _fail(sig: str, error: str) -> VerificationResult:
        logger.warning(f"Payment {sig} rejected: {error}")
        return VerificationResult(verified=False, error=error)
