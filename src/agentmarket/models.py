"""Marketplace data models."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .pricing import from_smallest_units

SCHEMA_VERSION = 1

MetadataValue = Union[str, int, float, bool, None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class MarketModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        """Create model from dictionary."""
        return cls.model_validate(data)


class ServiceStatus(str, Enum):
    """Listing status. Inactive services are soft-deleted."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class TransactionStatus(str, Enum):
    """Provider attempt status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


class SortBy(str, Enum):
    """Search ordering."""

    PRICE = "price"
    RATING = "rating"
    POPULARITY = "popularity"


class Pricing(MarketModel):
    """Per-request pricing of a service."""

    per_request: str = Field(alias="perRequest")
    currency: str = "USDC"
    network: str = "devnet"
    token: Optional[str] = None  # SPL mint; falls back to the network's USDC mint
    billing_model: str = Field(default="per-request", alias="billingModel")


class Reputation(MarketModel):
    """Aggregated feedback and delivery statistics."""

    rating: float = Field(default=0.0, ge=0, le=5)
    reviews: int = Field(default=0, ge=0)
    total_jobs: int = Field(default=0, ge=0, alias="totalJobs")
    success_rate: float = Field(default=0.0, ge=0, le=100, alias="successRate")
    avg_response_time: str = Field(default="0s", alias="avgResponseTime")

    @property
    def avg_response_seconds(self) -> float:
        """Average response time as seconds; unparseable values count as 0."""
        raw = self.avg_response_time.strip().lower()
        try:
            if raw.endswith("ms"):
                return float(raw[:-2]) / 1000
            return float(raw.rstrip("s"))
        except ValueError:
            return 0.0


def _collapse_capabilities(values: List[str]) -> List[str]:
    seen: list[str] = []
    for value in values:
        tag = value.strip() if isinstance(value, str) else value
        if not tag:
            raise ValueError("capabilities must be non-empty strings")
        if tag not in seen:
            seen.append(tag)
    if not seen:
        raise ValueError("at least one capability is required")
    return seen


class ServiceDraft(MarketModel):
    """Registration input for a new service."""

    name: str
    description: str = ""
    provider: str
    endpoint: str
    capabilities: List[str]
    pricing: Pricing
    reputation: Reputation = Field(default_factory=Reputation)
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)

    @field_validator("capabilities")
    @classmethod
    def normalize_capabilities(cls, v: List[str]) -> List[str]:
        return _collapse_capabilities(v)


class Service(MarketModel):
    """A service listed in the marketplace."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    provider: str
    endpoint: str
    capabilities: List[str]
    pricing: Pricing
    reputation: Reputation = Field(default_factory=Reputation)
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)
    status: ServiceStatus = ServiceStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")
    schema_version: int = SCHEMA_VERSION

    @field_validator("capabilities")
    @classmethod
    def normalize_capabilities(cls, v: List[str]) -> List[str]:
        return _collapse_capabilities(v)

    @property
    def is_active(self) -> bool:
        return self.status == ServiceStatus.ACTIVE.value

    @property
    def health_check_url(self) -> str:
        url = self.metadata.get("health_check_url") or self.metadata.get("healthCheckUrl")
        if isinstance(url, str) and url:
            return url
        return self.endpoint.rstrip("/") + "/health"


class Transaction(MarketModel):
    """One provider attempt. Retries against a backup are new rows."""

    id: str = Field(default_factory=new_id)
    service_id: str
    buyer: str
    seller: str
    amount: str
    currency: str = "USDC"
    status: TransactionStatus = TransactionStatus.PENDING
    request: Dict[str, Any] = Field(default_factory=dict)
    response: Optional[Any] = None
    payment_hash: str
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    attempt: int = 0
    session_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return TransactionStatus(self.status).is_terminal


class Rating(MarketModel):
    """One buyer's feedback on one transaction."""

    id: str = Field(default_factory=new_id)
    transaction_id: str
    service_id: str
    rater: str = "anonymous"
    score: int = Field(ge=1, le=5)
    review: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SearchFilter(MarketModel):
    """Registry search parameters."""

    capabilities: Optional[List[str]] = None
    max_price: Optional[str] = None
    min_rating: Optional[float] = None
    sort_by: Optional[SortBy] = None


class PurchaseRequirements(MarketModel):
    """Caller constraints applied while selecting a primary."""

    max_price: Optional[str] = None
    min_rating: Optional[float] = None
    preferred_providers: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Ephemeral value objects
# ---------------------------------------------------------------------------

@dataclass
class ServiceMatch:
    """Matcher output for one candidate service."""

    service_id: str
    service_name: str
    score: int
    matched_capabilities: List[str] = field(default_factory=list)


@dataclass
class VerificationResult:
    """Outcome of an on-chain payment check. Never persisted."""

    verified: bool
    actual_amount: Optional[int] = None
    actual_recipient: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PaymentClaim:
    """A payment signature plus what it is expected to prove.

    One claim is verified exactly once and then consumed by every
    provider attempt of the same purchase.
    """

    signature: str
    amount: int
    recipient: str
    token: str
    network: str
    payer: Optional[str] = None
    verification: Optional[VerificationResult] = None

    @property
    def verified(self) -> bool:
        return self.verification is not None and self.verification.verified is True

    def payment_proof(self) -> Dict[str, Any]:
        """Body of the X-Payment header presented to providers."""
        return {
            "network": self.network,
            "txHash": self.signature,
            "from": self.payer,
            "to": self.recipient,
            "amount": str(from_smallest_units(self.amount)),
            "asset": self.token,
        }


@dataclass
class ProviderAttempt:
    """One call of a provider endpoint under a verified claim."""

    service: Optional[Service]
    attempt: int
    claim: PaymentClaim
    request: Dict[str, Any]
    buyer: str
    session_id: Optional[str] = None
    success: bool = False
    response: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None
    transaction_id: Optional[str] = None


@dataclass
class PaymentInstructions:
    """What the caller must pay before completing a purchase."""

    amount: int
    price: str
    recipient: str
    token: str
    currency: str
    network: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "price": self.price,
            "recipient": self.recipient,
            "token": self.token,
            "currency": self.currency,
            "network": self.network,
        }


@dataclass
class PurchaseSession:
    """Server-side state linking a prepared purchase to its completion."""

    session_id: str
    service_id: str
    backup_ids: List[str]
    request_data: Dict[str, Any]
    instructions: PaymentInstructions
    buyer: str
    max_retries: int
    created_at: datetime
    expires_at: datetime
    state: str = "awaiting_payment"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class PreparedPurchase:
    """Result of the prepare phase."""

    session_id: str
    service: Service
    instructions: PaymentInstructions
    backups: List[Service]
    expires_at: datetime
    match_score: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "service": {
                "id": self.service.id,
                "name": self.service.name,
                "rating": self.service.reputation.rating,
                "price": self.service.pricing.per_request,
            },
            "payment_instructions": self.instructions.to_dict(),
            "backups": [s.id for s in self.backups],
            "expires_at": self.expires_at.isoformat(),
            "match_score": self.match_score,
        }


@dataclass
class PurchaseOutcome:
    """Terminal result of the complete phase.

    ``payment_confirmed`` separates "nothing was charged" from
    "payment confirmed but undelivered".
    """

    success: bool
    payment_confirmed: bool
    session_id: str
    signature: str
    service_id: Optional[str] = None
    result: Any = None
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    primary_error: Optional[str] = None
    backup_errors: List[Dict[str, Any]] = field(default_factory=list)
    refund_guidance: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "payment_confirmed": self.payment_confirmed,
            "session_id": self.session_id,
            "signature": self.signature,
            "metadata": self.metadata,
        }
        for key in (
            "service_id",
            "result",
            "transaction_id",
            "error",
            "primary_error",
            "refund_guidance",
        ):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.backup_errors:
            data["backup_errors"] = self.backup_errors
        return data
