"""
Purchase orchestration.

Two-phase purchase of a provider service:

    selecting -> awaiting_payment -> verifying -> executing -> completed | failed
                                                     ^   |
                                                     +---+ retrying (next backup)

``prepare`` picks a primary (directly, by capability, or through the
matcher), computes the exact price and opens a session holding the
ordered backups. ``complete`` verifies the payment once, then calls the
primary and, on provider failure, each backup in order under the same
verified claim. The buyer is never charged twice and every provider
attempt lands in the ledger.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from .chain.solana import normalize_network
from .exceptions import (
    ConfigurationError,
    ConflictError,
    MarketError,
    NotFoundError,
    PaymentVerificationError,
    ProviderError,
    ValidationError,
)
from .ledger import TransactionLedgerWriter
from .logging_config import LogContext, mask_value
from .matcher import CapabilityMatcher
from .models import (
    PaymentClaim,
    PaymentInstructions,
    PreparedPurchase,
    ProviderAttempt,
    PurchaseOutcome,
    PurchaseRequirements,
    PurchaseSession,
    SearchFilter,
    Service,
)
from .pricing import format_price, parse_price, to_smallest_units
from .provider import HealthCheckResult, ProviderClient
from .registry import ServiceRegistry, service_price
from .sessions import SessionManager
from .validators import validate_price_limit, validate_signature
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)

DEFAULT_BUYER = "anonymous"
MAX_RETRIES_LIMIT = 5

# Candidate ranking weights when health data is available
_RANK_WEIGHTS = {"health": 0.4, "rating": 0.3, "price": 0.2, "response_time": 0.1}

REFUND_GUIDANCE = (
    "Your payment was verified on-chain but no provider delivered a result. "
    "There is no automatic refund: contact the provider(s) listed in "
    "backup_errors with the payment signature, or open a dispute with the "
    "marketplace operator for manual resolution."
)


def rank_candidates(
    services: List[Service],
    health: Optional[Dict[str, HealthCheckResult]] = None,
) -> List[Service]:
    """
    Order candidates best first.

    Without health data: rating descending, then price ascending.
    With health data: weighted blend of health, rating, price and
    health-check response time. Both sorts are stable.
    """
    if not health:
        return sorted(services, key=lambda s: (-s.reputation.rating, service_price(s)))

    def score(service: Service) -> float:
        result = health.get(service.id)
        health_score = 1.0 if result and result.healthy else 0.0
        rating_score = service.reputation.rating / 5 if service.reputation.rating else 0.5
        price_score = max(0.0, 1 - float(service_price(service)) / 10)
        if result and result.response_time_ms is not None:
            time_score = max(0.0, 1 - result.response_time_ms / 10000)
        else:
            time_score = 0.5
        return (
            health_score * _RANK_WEIGHTS["health"]
            + rating_score * _RANK_WEIGHTS["rating"]
            + price_score * _RANK_WEIGHTS["price"]
            + time_score * _RANK_WEIGHTS["response_time"]
        )

    return sorted(services, key=score, reverse=True)


class PurchaseOrchestrator:
    """
    Workflow engine for payment-gated purchases.

    Example:
        prepared = await orchestrator.prepare(capability="sentiment-analysis",
                                              request_data={"text": "great"})
        # caller pays prepared.instructions off-system, then:
        outcome = await orchestrator.complete(prepared.session_id, signature)
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        matcher: CapabilityMatcher,
        verifier: PaymentVerifier,
        provider: ProviderClient,
        ledger: TransactionLedgerWriter,
        sessions: SessionManager,
        usdc_mints: Optional[Dict[str, str]] = None,
        max_retries: int = 2,
        health_check_candidates: int = 5,
    ) -> None:
        self.registry = registry
        self.matcher = matcher
        self.verifier = verifier
        self.provider = provider
        self.ledger = ledger
        self.sessions = sessions
        self.usdc_mints = usdc_mints or {}
        self.max_retries = max_retries
        self.health_check_candidates = health_check_candidates
        # payment signature -> session that redeemed it
        self._redeemed: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Prepare
    # ------------------------------------------------------------------

    async def prepare(
        self,
        capability: Optional[str] = None,
        request_data: Optional[Dict[str, Any]] = None,
        service_id: Optional[str] = None,
        requirements: Optional[PurchaseRequirements] = None,
        check_health: bool = False,
        max_payment: Optional[str] = None,
        buyer: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> PreparedPurchase:
        """
        Select a primary and backups and open a purchase session.

        Args:
            capability: Capability tag or free-text intent
            request_data: Body later sent to the provider
            service_id: Buy from this service directly instead of searching
            requirements: max_price / min_rating / preferred_providers
            check_health: Health-check the top candidates and drop unhealthy ones
            max_payment: Refuse if the selected price exceeds this ("$X.XX")
            buyer: Buyer identity recorded on transactions
            max_retries: Number of backups kept for failover (0-5)

        Raises:
            ValidationError: Bad arguments or price above max_payment
            NotFoundError: Nothing matches
            ProviderError: Every checked candidate failed its health check
        """
        if not capability and not service_id:
            raise ValidationError("capability or service_id is required", field="capability")
        requirements = requirements or PurchaseRequirements()
        if requirements.max_price is not None:
            validate_price_limit(requirements.max_price, field_name="requirements.max_price")
        if max_payment is not None:
            validate_price_limit(max_payment, field_name="max_payment")
        retries = self.max_retries if max_retries is None else max_retries
        if isinstance(retries, bool) or not isinstance(retries, int) or not 0 <= retries <= MAX_RETRIES_LIMIT:
            raise ValidationError(
                f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}", field="max_retries"
            )

        match_scores: Dict[str, int] = {}
        pinned: Optional[Service] = None
        if service_id:
            pinned, alternatives = self._direct_candidates(service_id, requirements)
            candidates = [pinned] + self._apply_preferred(
                alternatives, requirements.preferred_providers
            )
        else:
            candidates, match_scores = self._capability_candidates(capability, requirements)
            candidates = self._apply_preferred(candidates, requirements.preferred_providers)
            if not match_scores:
                candidates = rank_candidates(candidates)

        if check_health:
            candidates = await self._healthy(candidates, pinned=pinned)

        primary, backups = candidates[0], candidates[1:1 + retries]
        instructions = self._instructions(primary)

        if max_payment is not None:
            limit = parse_price(max_payment)
            if parse_price(instructions.price) > limit:
                raise ValidationError(
                    f"Service price {instructions.price} exceeds maximum payment {max_payment}",
                    field="max_payment",
                    details={
                        "service_id": primary.id,
                        "price": instructions.price,
                        "alternatives": [
                            {"id": s.id, "name": s.name, "price": s.pricing.per_request}
                            for s in backups
                        ],
                    },
                )

        session = await self.sessions.create(
            service_id=primary.id,
            backup_ids=[s.id for s in backups],
            request_data=request_data or {},
            instructions=instructions,
            buyer=buyer or DEFAULT_BUYER,
            max_retries=retries,
        )
        logger.info(
            f"Prepared purchase {session.session_id}: {primary.name} at {instructions.price}, "
            f"backups={[s.id for s in backups]}"
        )
        return PreparedPurchase(
            session_id=session.session_id,
            service=primary,
            instructions=instructions,
            backups=backups,
            expires_at=session.expires_at,
            match_score=match_scores.get(primary.id),
        )

    def _direct_candidates(
        self, service_id: str, requirements: PurchaseRequirements
    ) -> Tuple[Service, List[Service]]:
        primary = self.registry.get(service_id)
        if primary is None:
            raise NotFoundError("Service", service_id)
        # Backups: anything sharing a capability with the primary
        alternatives = [
            s for s in self.registry.search(SearchFilter(
                capabilities=primary.capabilities,
                max_price=requirements.max_price,
                min_rating=requirements.min_rating,
            ))
            if s.id != primary.id
        ]
        return primary, rank_candidates(alternatives)

    def _capability_candidates(
        self, capability: str, requirements: PurchaseRequirements
    ) -> Tuple[List[Service], Dict[str, int]]:
        candidates = self.registry.search(SearchFilter(
            capabilities=[capability],
            max_price=requirements.max_price,
            min_rating=requirements.min_rating,
        ))
        if candidates:
            logger.info(f"Found {len(candidates)} candidates for capability {capability!r}")
            return candidates, {}

        # Free-text intent: fall back to the matcher
        allowed = {
            s.id for s in self.registry.search(SearchFilter(
                max_price=requirements.max_price,
                min_rating=requirements.min_rating,
            ))
        }
        matches = [m for m in self.matcher.match(capability) if m.service_id in allowed]
        services = [self.registry.get(m.service_id) for m in matches]
        candidates = [s for s in services if s is not None]
        if not candidates:
            raise NotFoundError(
                "Capability",
                capability,
                details={"suggestion": "Try a different capability or remove filters"},
            )
        logger.info(f"Matcher resolved {capability!r} to {len(candidates)} candidates")
        return candidates, {m.service_id: m.score for m in matches}

    @staticmethod
    def _apply_preferred(candidates: List[Service], preferred: List[str]) -> List[Service]:
        if not preferred:
            return candidates
        chosen = [s for s in candidates if s.provider in preferred]
        if not chosen:
            logger.warning("No candidates match preferred providers, using all candidates")
            return candidates
        return chosen

    async def _healthy(
        self, candidates: List[Service], pinned: Optional[Service] = None
    ) -> List[Service]:
        """Drop unhealthy candidates; a pinned primary must pass and stays first."""
        checked = candidates[: self.health_check_candidates]
        results = await self.provider.check_many(checked)
        healthy = [s for s in checked if results[s.id].healthy]
        logger.info(f"Health results: {len(healthy)} healthy of {len(checked)} checked")
        report = {
            r.service_id: {"status": r.status, "error": r.error}
            for r in results.values()
        }
        if pinned is not None:
            if pinned.id not in {s.id for s in healthy}:
                raise ProviderError(
                    f"{pinned.name} failed its health check; nothing was charged",
                    body=report,
                    service_id=pinned.id,
                )
            rest = [s for s in healthy if s.id != pinned.id]
            return [pinned] + rank_candidates(rest, results)
        if not healthy:
            raise ProviderError(
                "All candidate services failed their health check; nothing was charged",
                body=report,
            )
        return rank_candidates(healthy, results)

    def _instructions(self, service: Service) -> PaymentInstructions:
        try:
            price = parse_price(service.pricing.per_request)
        except ValueError as e:
            raise ConfigurationError(f"Service {service.id} has an invalid price") from e
        network = normalize_network(service.pricing.network) or service.pricing.network
        token = service.pricing.token or self.usdc_mints.get(network)
        if not token:
            raise ConfigurationError(f"No payment token configured for network {network!r}")
        return PaymentInstructions(
            amount=to_smallest_units(price),
            price=format_price(price),
            recipient=service.provider,
            token=token,
            currency=service.pricing.currency,
            network=network,
        )

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    async def complete(
        self,
        session_id: str,
        signature: str,
        retry_on_failure: bool = True,
    ) -> PurchaseOutcome:
        """
        Verify the payment for a session and deliver the service.

        A payment signature buys exactly one purchase: a signature already
        redeemed by another session is rejected before verification.

        Raises:
            SessionNotFoundError: Unknown, expired or already completed session
            ValidationError: Malformed signature (session left untouched)
        """
        session = await self.sessions.get(session_id)
        signature = validate_signature(signature)
        session = await self.sessions.claim(session_id)
        owner = self._reserve(signature, session_id)

        with LogContext(session_id=session_id, buyer=session.buyer):
            try:
                if owner != session_id:
                    return self._replayed(session, signature)
                return await self._complete(session, signature, retry_on_failure)
            except BaseException:
                self._release(signature, session_id)
                raise
            finally:
                await self.sessions.expire(session_id)

    def _reserve(self, signature: str, session_id: str) -> str:
        """Claim a signature for a session. Returns the session that holds it."""
        return self._redeemed.setdefault(signature, session_id)

    def _release(self, signature: str, session_id: str) -> None:
        if self._redeemed.get(signature) == session_id:
            del self._redeemed[signature]

    def _rejected(
        self, session: PurchaseSession, signature: str, error: MarketError, detail: str
    ) -> PurchaseOutcome:
        return PurchaseOutcome(
            success=False,
            payment_confirmed=False,
            session_id=session.session_id,
            signature=signature,
            service_id=session.service_id,
            error=f"{error.message}. {detail}",
            metadata={"error": error.to_dict(), "retries_used": 0},
        )

    def _replayed(self, session: PurchaseSession, signature: str) -> PurchaseOutcome:
        logger.warning(
            f"Payment {mask_value(signature, show_chars=8)} was already redeemed, "
            f"refusing session {session.session_id}"
        )
        error = ConflictError(
            "Payment signature was already used for another purchase",
            details={"signature": signature},
        )
        return self._rejected(
            session, signature, error, "Nothing was delivered and the payment was not confirmed for this session."
        )

    async def _complete(self, session: PurchaseSession, signature: str, retry_on_failure: bool) -> PurchaseOutcome:
        earlier = [
            tx for tx in await self.ledger.for_payment(signature)
            if tx.session_id != session.session_id
        ]
        if earlier:
            self._redeemed[signature] = earlier[0].session_id or ""
            return self._replayed(session, signature)

        instructions = session.instructions
        claim = PaymentClaim(
            signature=signature,
            amount=instructions.amount,
            recipient=instructions.recipient,
            token=instructions.token,
            network=instructions.network,
            payer=session.buyer,
        )

        verification = await self.verifier.verify_claim(claim)
        if not verification.verified:
            self._release(signature, session.session_id)
            error = PaymentVerificationError(
                f"Payment verification failed: {verification.error}",
                signature=signature,
                network=claim.network,
            )
            return self._rejected(
                session, signature, error, "Nothing was delivered and the payment was not confirmed."
            )

        chain = [session.service_id]
        if retry_on_failure:
            chain += session.backup_ids[: session.max_retries]

        attempts: List[ProviderAttempt] = []
        for index, service_id in enumerate(chain):
            service = self.registry.get(service_id)
            if service is None:
                logger.warning(f"Service {service_id} is no longer listed, skipping")
                attempts.append(ProviderAttempt(
                    service=None,
                    attempt=index,
                    claim=claim,
                    request=session.request_data,
                    buyer=session.buyer,
                    session_id=session.session_id,
                    error=f"Service '{service_id}' is no longer available",
                ))
                continue

            if index > 0:
                logger.info(f"Retrying with backup {index}/{len(chain) - 1}: {service.name}")
            attempt = await self._attempt(service, index, claim, session)
            attempts.append(attempt)
            if attempt.success:
                return self._success(session, claim, attempts, len(chain))

        return self._failure(session, claim, attempts, retry_on_failure)

    async def _attempt(
        self, service: Service, index: int, claim: PaymentClaim, session: PurchaseSession
    ) -> ProviderAttempt:
        if not claim.verified:
            raise PaymentVerificationError(
                "Refusing to call a provider with an unverified payment",
                signature=claim.signature,
            )
        attempt = ProviderAttempt(
            service=service,
            attempt=index,
            claim=claim,
            request=session.request_data,
            buyer=session.buyer,
            session_id=session.session_id,
        )
        with LogContext(service_id=service.id):
            pending = await self.ledger.begin(attempt)
            try:
                response = await self.provider.call(service, session.request_data, claim)
                attempt.success = True
                attempt.response = response.data
                attempt.status_code = response.status_code
                attempt.response_time_ms = response.response_time_ms
            except ProviderError as e:
                logger.warning(f"Attempt {index} on {service.name} failed: {e.message}")
                attempt.error = e.message
                attempt.status_code = e.status_code
            await self.ledger.finish(attempt, pending)
        return attempt

    @staticmethod
    def _summary(attempt: ProviderAttempt) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "attempt": attempt.attempt,
            "service_id": attempt.service.id if attempt.service else None,
            "service_name": attempt.service.name if attempt.service else None,
            "success": attempt.success,
            "transaction_id": attempt.transaction_id,
        }
        if attempt.error:
            summary["error"] = attempt.error
        if attempt.status_code is not None:
            summary["status_code"] = attempt.status_code
        if attempt.response_time_ms is not None:
            summary["response_time_ms"] = attempt.response_time_ms
        return summary

    def _success(
        self,
        session: PurchaseSession,
        claim: PaymentClaim,
        attempts: List[ProviderAttempt],
        chain_length: int,
    ) -> PurchaseOutcome:
        final = attempts[-1]
        failed = attempts[:-1]
        retries_used = final.attempt
        logger.info(
            f"Purchase {session.session_id} completed by {final.service.name} "
            f"after {retries_used} retries"
        )
        return PurchaseOutcome(
            success=True,
            payment_confirmed=True,
            session_id=session.session_id,
            signature=claim.signature,
            service_id=final.service.id,
            result=final.response,
            transaction_id=final.transaction_id,
            primary_error=failed[0].error if failed else None,
            backup_errors=[self._summary(a) for a in failed[1:]],
            metadata={
                "retries_used": retries_used,
                "remaining_backups": chain_length - 1 - retries_used,
                "service_name": final.service.name,
                "response_time_ms": final.response_time_ms,
                "payment": {
                    "amount": session.instructions.price,
                    "network": claim.network,
                    "verified_on_chain": True,
                },
                "attempts": [self._summary(a) for a in attempts],
            },
        )

    def _failure(
        self,
        session: PurchaseSession,
        claim: PaymentClaim,
        attempts: List[ProviderAttempt],
        retry_on_failure: bool,
    ) -> PurchaseOutcome:
        primary, backups = attempts[0], attempts[1:]
        unused = 0 if retry_on_failure else len(session.backup_ids[: session.max_retries])
        logger.error(
            f"Purchase {session.session_id}: all {len(attempts)} attempts failed "
            f"for payment {mask_value(claim.signature, show_chars=8)}"
        )
        return PurchaseOutcome(
            success=False,
            payment_confirmed=True,
            session_id=session.session_id,
            signature=claim.signature,
            service_id=primary.service.id if primary.service else session.service_id,
            transaction_id=primary.transaction_id,
            error=(
                f"Payment confirmed but undelivered: {len(attempts)} provider "
                f"attempt(s) failed"
            ),
            primary_error=primary.error,
            backup_errors=[self._summary(a) for a in backups],
            refund_guidance=REFUND_GUIDANCE,
            metadata={
                "retries_used": len(backups),
                "remaining_backups": unused,
                "payment": {
                    "amount": session.instructions.price,
                    "network": claim.network,
                    "verified_on_chain": True,
                },
                "attempts": [self._summary(a) for a in attempts],
            },
        )
