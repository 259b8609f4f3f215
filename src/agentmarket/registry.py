"""
Service registry.

Owns the authoritative set of listed services and keeps a read-optimized
in-memory mirror of the ledger store's service table. Reads (``get``,
``search``) are served from the cache only; writes go to the store first
and touch the cache only once the store accepted them.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .exceptions import NotFoundError, ValidationError
from .models import (
    SearchFilter,
    Service,
    ServiceDraft,
    ServiceStatus,
    SortBy,
    utcnow,
)
from .pricing import parse_price, round_half_up
from .store.base import LedgerStore
from .validators import validate_score, validate_url

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("name", "endpoint", "capabilities", "pricing")
_EDITABLE_FIELDS = frozenset({
    "name",
    "description",
    "endpoint",
    "capabilities",
    "pricing",
    "metadata",
})


def service_price(service: Service) -> Decimal:
    """Per-request price of a service; unparseable prices sort as free."""
    try:
        return parse_price(service.pricing.per_request)
    except ValueError:
        logger.warning(f"Service {service.id} has unparseable price {service.pricing.per_request!r}")
        return Decimal(0)


def _first_error(exc: PydanticValidationError) -> tuple[str, str]:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ())) or "draft"
    return field, err.get("msg", "invalid value")


class ServiceRegistry:
    """
    In-memory service cache backed by a LedgerStore.

    Example:
        registry = ServiceRegistry(store)
        await registry.initialize()
        service = await registry.register(draft)
        cheap = registry.search(SearchFilter(capabilities=["ocr"], max_price="$0.05"))
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store
        # dicts keep insertion order, which is the default search order
        self._services: Dict[str, Service] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._initialized = False

    def _lock(self, service_id: str) -> asyncio.Lock:
        """Per-service lock around read-modify-write of a cached listing."""
        return self._locks.setdefault(service_id, asyncio.Lock())

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Load every non-deleted service from the store into the cache."""
        services = await self._store.load_services()
        self._services = {s.id: s for s in services}
        self._initialized = True
        logger.info(f"Service registry loaded {len(self._services)} services")

    async def register(self, draft: Union[ServiceDraft, Dict[str, Any]]) -> Service:
        """
        Validate and persist a new service.

        Raises:
            ValidationError: If name, endpoint, capabilities or pricing is missing/invalid
            LedgerWriteError: If the store rejects the write
        """
        if isinstance(draft, dict):
            missing = [f for f in _REQUIRED_FIELDS if not draft.get(f)]
            if missing:
                raise ValidationError(
                    f"Missing required fields: {', '.join(missing)}",
                    field=missing[0],
                )
            try:
                draft = ServiceDraft.model_validate(draft)
            except PydanticValidationError as e:
                field, msg = _first_error(e)
                raise ValidationError(f"Invalid service: {field}: {msg}", field=field) from e

        if not draft.name.strip():
            raise ValidationError("name cannot be empty", field="name")
        validate_url(draft.endpoint, field_name="endpoint")
        try:
            parse_price(draft.pricing.per_request)
        except ValueError as e:
            raise ValidationError(str(e), field="pricing.per_request") from e

        now = utcnow()
        service = Service(
            **draft.model_dump(),
            created_at=now,
            updated_at=now,
        )
        await self._store.insert_service(service)
        self._services[service.id] = service
        logger.info(f"Registered service {service.name} ({service.id})")
        return service

    def get(self, service_id: str) -> Optional[Service]:
        return self._services.get(service_id)

    def all(self) -> List[Service]:
        return list(self._services.values())

    def search(self, search: Optional[SearchFilter] = None, **kwargs: Any) -> List[Service]:
        """
        Filter the cached services.

        Capability filter is OR semantics: a service matches if it carries
        any of the requested capabilities.

        Args:
            search: SearchFilter, or pass its fields as keyword arguments

        Returns:
            Matching services, sorted by ``sort_by`` (stable) or insertion order
        """
        if search is None:
            search = SearchFilter(**kwargs)

        results = list(self._services.values())

        if search.capabilities:
            wanted = set(search.capabilities)
            results = [s for s in results if wanted.intersection(s.capabilities)]

        if search.max_price is not None:
            try:
                limit = parse_price(search.max_price)
            except ValueError as e:
                raise ValidationError(str(e), field="max_price") from e
            results = [s for s in results if service_price(s) <= limit]

        if search.min_rating is not None:
            results = [s for s in results if s.reputation.rating >= search.min_rating]

        if search.sort_by == SortBy.PRICE.value:
            results.sort(key=service_price)
        elif search.sort_by == SortBy.RATING.value:
            results.sort(key=lambda s: s.reputation.rating, reverse=True)
        elif search.sort_by == SortBy.POPULARITY.value:
            results.sort(key=lambda s: s.reputation.total_jobs, reverse=True)

        return results

    async def update_reputation(self, service_id: str, score: int) -> Optional[Service]:
        """
        Fold one rating into a service's running mean.

        new rating = round1((rating * reviews + score) / (reviews + 1))

        Unknown ids are a no-op returning None. The cache is only
        touched after the store accepted the write. Writes to one service
        are serialized, so concurrent ratings each see the previous one.
        """
        score = validate_score(score)
        async with self._lock(service_id):
            service = self._services.get(service_id)
            if service is None:
                logger.warning(f"Reputation update for unknown service {service_id} ignored")
                return None

            rep = service.reputation
            total = Decimal(str(rep.rating)) * rep.reviews + score
            new_rating = round_half_up(total / (rep.reviews + 1), 1)

            updated = service.model_copy(
                update={
                    "reputation": rep.model_copy(update={
                        "rating": new_rating,
                        "reviews": rep.reviews + 1,
                    }),
                    "updated_at": utcnow(),
                },
                deep=True,
            )
            await self._store.update_service(updated)
            self._services[service_id] = updated
        logger.info(
            f"Service {service_id} rating {rep.rating} -> {new_rating} "
            f"({updated.reputation.reviews} reviews)"
        )
        return updated

    async def update(self, service_id: str, changes: Dict[str, Any]) -> Service:
        """
        Explicit edit of a listing's descriptive fields.

        Reputation, status and timestamps cannot be edited here.

        Raises:
            NotFoundError: Unknown service id
            ValidationError: Unknown or invalid fields
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields cannot be edited: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )

        async with self._lock(service_id):
            service = self._services.get(service_id)
            if service is None:
                raise NotFoundError("Service", service_id)

            data = service.model_dump()
            data.update(changes)
            data["updated_at"] = utcnow()
            try:
                updated = Service.model_validate(data)
            except PydanticValidationError as e:
                field, msg = _first_error(e)
                raise ValidationError(f"Invalid service: {field}: {msg}", field=field) from e
            if "endpoint" in changes:
                validate_url(updated.endpoint, field_name="endpoint")

            await self._store.update_service(updated)
            self._services[service_id] = updated
        logger.info(f"Updated service {service_id}: {', '.join(sorted(changes))}")
        return updated

    async def deactivate(self, service_id: str) -> Service:
        """Soft-delete a service. The row stays; the service leaves the cache."""
        async with self._lock(service_id):
            service = self._services.get(service_id)
            if service is None:
                raise NotFoundError("Service", service_id)

            updated = service.model_copy(
                update={"status": ServiceStatus.INACTIVE.value, "updated_at": utcnow()},
            )
            await self._store.update_service(updated)
            del self._services[service_id]
        logger.info(f"Deactivated service {service_id}")
        return updated
