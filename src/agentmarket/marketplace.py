"""
Caller-facing marketplace operations.

Thin facade over the registry, matcher, orchestrator and ledger that
validates caller input and exposes the five marketplace operations:
discover, details, prepare, complete and rate.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from .config import MarketSettings, load_settings
from .exceptions import ConflictError, MarketError, NotFoundError, ValidationError
from .ledger import TransactionLedgerWriter
from .logging_config import setup_logging
from .matcher import CapabilityMatcher
from .models import (
    PreparedPurchase,
    PurchaseOutcome,
    PurchaseRequirements,
    Rating,
    SearchFilter,
    Service,
    SortBy,
    Transaction,
    TransactionStatus,
)
from .orchestrator import PurchaseOrchestrator
from .provider import ProviderClient
from .registry import ServiceRegistry
from .sessions import InMemorySessionStore, SessionManager, SessionStore
from .store import LedgerStore, create_store
from .validators import (
    validate_limit,
    validate_price_limit,
    validate_rating,
    validate_score,
    validate_string,
)
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10


class Marketplace:
    """
    The marketplace core.

    Example:
        async with Marketplace.from_settings(load_settings()) as market:
            services = await market.discover_services(capability="ocr", max_price="$0.05")
            prepared = await market.prepare_service("ocr", {"image_url": url})
            outcome = await market.complete_service(prepared.session_id, signature)
    """

    def __init__(
        self,
        store: LedgerStore,
        registry: ServiceRegistry,
        matcher: CapabilityMatcher,
        orchestrator: PurchaseOrchestrator,
        ledger: TransactionLedgerWriter,
        settings: Optional[MarketSettings] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.matcher = matcher
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.settings = settings
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[MarketSettings] = None,
        store: Optional[LedgerStore] = None,
        session_store: Optional[SessionStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "Marketplace":
        """Wire every component from configuration."""
        settings = settings or load_settings()
        store = store or create_store(settings.database_url, echo=settings.database_echo)
        registry = ServiceRegistry(store)
        matcher = CapabilityMatcher(registry, cache_ttl=settings.matcher_cache_ttl_seconds)
        verifier = PaymentVerifier.from_settings(settings, http_client=http_client)
        provider = ProviderClient(
            timeout=settings.provider_timeout_seconds,
            health_timeout=settings.health_check_timeout_seconds,
            http_client=http_client,
        )
        ledger = TransactionLedgerWriter(store)
        sessions = SessionManager(
            session_store or InMemorySessionStore(),
            ttl_seconds=settings.session_ttl_seconds,
        )
        orchestrator = PurchaseOrchestrator(
            registry=registry,
            matcher=matcher,
            verifier=verifier,
            provider=provider,
            ledger=ledger,
            sessions=sessions,
            usdc_mints=settings.usdc_mints,
            max_retries=settings.max_retries,
            health_check_candidates=settings.health_check_candidates,
        )
        return cls(store, registry, matcher, orchestrator, ledger, settings=settings)

    async def start(self, configure_logging: bool = False) -> "Marketplace":
        """Initialize the store and load the registry cache."""
        if configure_logging and self.settings is not None:
            setup_logging(level=self.settings.log_level, json_format=self.settings.log_json)
        if self._started:
            return self
        await self.store.initialize()
        await self.registry.initialize()
        self.matcher.invalidate()
        self._started = True
        logger.info("Marketplace started")
        return self

    async def close(self) -> None:
        await self.orchestrator.provider.close()
        await self.orchestrator.verifier.close()
        await self.store.close()
        self._started = False

    async def __aenter__(self) -> "Marketplace":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def discover_services(
        self,
        capability: Optional[str] = None,
        max_price: Optional[str] = None,
        min_rating: Optional[float] = None,
        limit: int = DEFAULT_LIMIT,
        sort_by: Optional[Union[SortBy, str]] = None,
    ) -> List[Service]:
        """
        Search listed services.

        Args:
            capability: Only services carrying this capability
            max_price: "$X" or "$X.XX" upper bound on the per-request price
            min_rating: 1-5 lower bound on rating
            limit: 1-100 results
            sort_by: "price", "rating" or "popularity"
        """
        if max_price is not None:
            validate_price_limit(max_price)
        if min_rating is not None:
            validate_rating(min_rating)
        limit = validate_limit(limit)
        if sort_by is not None:
            try:
                sort_by = SortBy(sort_by)
            except ValueError as e:
                raise ValidationError(
                    "sort_by must be one of: price, rating, popularity", field="sort_by"
                ) from e

        results = self.registry.search(SearchFilter(
            capabilities=[capability] if capability else None,
            max_price=max_price,
            min_rating=min_rating,
            sort_by=sort_by,
        ))
        logger.info(f"Discovered {len(results)} services (capability={capability!r})")
        return results[:limit]

    async def get_service_details(self, service_id: str) -> Service:
        service_id = validate_string(service_id, field_name="service_id")
        service = self.registry.get(service_id)
        if service is None:
            raise NotFoundError("Service", service_id)
        return service

    async def prepare_service(
        self,
        capability_or_service_id: str,
        request_data: Optional[Dict[str, Any]] = None,
        requirements: Optional[Union[PurchaseRequirements, Dict[str, Any]]] = None,
        check_health: bool = False,
        max_payment: Optional[str] = None,
        buyer: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> PreparedPurchase:
        """
        Phase one of a purchase: pick a provider and get payment instructions.

        ``capability_or_service_id`` is treated as a service id when one is
        listed under it, otherwise as a capability or free-text intent.
        """
        target = validate_string(capability_or_service_id, field_name="capability_or_service_id")
        if isinstance(requirements, dict):
            requirements = PurchaseRequirements.model_validate(requirements)
        if requirements is not None and requirements.min_rating is not None:
            validate_rating(requirements.min_rating, field_name="requirements.min_rating")

        is_service = self.registry.get(target) is not None
        return await self.orchestrator.prepare(
            capability=None if is_service else target,
            service_id=target if is_service else None,
            request_data=request_data or {},
            requirements=requirements,
            check_health=check_health,
            max_payment=max_payment,
            buyer=buyer,
            max_retries=max_retries,
        )

    async def complete_service(
        self,
        session_id: str,
        signature: str,
        retry_on_failure: bool = True,
    ) -> PurchaseOutcome:
        """Phase two: verify the payment and deliver, failing over to backups."""
        return await self.orchestrator.complete(
            session_id, signature, retry_on_failure=retry_on_failure
        )

    async def rate_service(
        self,
        transaction_id: str,
        score: int,
        review: Optional[str] = None,
        rater: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Rate a completed transaction and fold the score into the service's reputation.

        Raises:
            ValidationError: Bad score, or the transaction did not complete
            NotFoundError: Unknown transaction
            ConflictError: Transaction already rated
        """
        score = validate_score(score)
        tx = await self.get_transaction(transaction_id)
        if tx.status != TransactionStatus.COMPLETED.value:
            raise ValidationError(
                f"Only completed transactions can be rated (status: {tx.status})",
                field="transaction_id",
            )
        if await self.store.rating_for_transaction(tx.id) is not None:
            raise ConflictError(
                f"Transaction '{tx.id}' has already been rated",
                details={"transaction_id": tx.id},
            )

        rating = Rating(
            transaction_id=tx.id,
            service_id=tx.service_id,
            rater=rater or tx.buyer,
            score=score,
            review=review,
        )
        # The rating row claims the transaction; it is withdrawn if the fold fails
        await self.store.insert_rating(rating)
        try:
            service = await self.registry.update_reputation(tx.service_id, score)
        except MarketError as e:
            logger.warning(
                f"Reputation update for {tx.service_id} failed, withdrawing rating {rating.id}: {e.message}"
            )
            await self.store.delete_rating(rating.id)
            raise
        logger.info(f"Transaction {tx.id} rated {score} for service {tx.service_id}")
        return {"rating": rating, "service": service}

    async def get_transaction(self, transaction_id: str) -> Transaction:
        transaction_id = validate_string(transaction_id, field_name="transaction_id")
        tx = await self.ledger.get(transaction_id)
        if tx is None:
            raise NotFoundError("Transaction", transaction_id)
        return tx
