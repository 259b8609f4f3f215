"""AgentMarket core: payment-gated service marketplace."""
from .config import MarketSettings, load_settings
from .exceptions import (
    ChainRPCError,
    ConfigurationError,
    ConflictError,
    LedgerWriteError,
    MarketError,
    NotFoundError,
    PaymentVerificationError,
    ProviderError,
    SessionNotFoundError,
    ValidationError,
)
from .ledger import TransactionLedgerWriter
from .marketplace import Marketplace
from .matcher import CapabilityMatcher
from .models import (
    PaymentClaim,
    PaymentInstructions,
    PreparedPurchase,
    ProviderAttempt,
    PurchaseOutcome,
    PurchaseRequirements,
    Rating,
    SearchFilter,
    Service,
    ServiceDraft,
    ServiceMatch,
    SortBy,
    Transaction,
    TransactionStatus,
    VerificationResult,
)
from .orchestrator import PurchaseOrchestrator
from .registry import ServiceRegistry
from .verifier import PaymentVerifier

__version__ = "0.1.0"

__all__ = [
    "MarketSettings",
    "load_settings",
    "Marketplace",
    "ServiceRegistry",
    "CapabilityMatcher",
    "PaymentVerifier",
    "PurchaseOrchestrator",
    "TransactionLedgerWriter",
    "Service",
    "ServiceDraft",
    "ServiceMatch",
    "SearchFilter",
    "SortBy",
    "Transaction",
    "TransactionStatus",
    "Rating",
    "PaymentClaim",
    "PaymentInstructions",
    "PreparedPurchase",
    "ProviderAttempt",
    "PurchaseOutcome",
    "PurchaseRequirements",
    "VerificationResult",
    "MarketError",
    "ValidationError",
    "NotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "PaymentVerificationError",
    "ProviderError",
    "LedgerWriteError",
    "ChainRPCError",
    "ConfigurationError",
]
