"""Unified exception hierarchy for AgentMarket.

All marketplace exceptions inherit from MarketError, enabling:
- Consistent error handling across the registry, verifier and orchestrator
- HTTP status code mapping for whatever transport wraps the marketplace
- Structured error responses with machine-readable error codes

Usage:
    from agentmarket.exceptions import (
        MarketError,
        ValidationError,
        NotFoundError,
    )

    try:
        service = await marketplace.get_service_details(service_id)
    except NotFoundError as e:
        return e.to_dict()

All exceptions have:
- error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
- http_status: Appropriate HTTP status code for API responses
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Optional


class MarketError(Exception):
    """Base exception for all AgentMarket errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "MARKET_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation & Input Errors (4xx)
# =============================================================================

class ValidationError(MarketError):
    """Malformed caller input. Never retried, surfaced verbatim."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class NotFoundError(MarketError):
    """Requested resource not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class SessionNotFoundError(NotFoundError):
    """Purchase session is unknown, expired or already finished."""

    error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Session",
            session_id,
            details={
                "suggestion": "Call prepare_service again to create a new session",
            },
        )


class ConflictError(MarketError):
    """Resource conflict (e.g., a transaction that was already rated)."""

    error_code = "CONFLICT"
    http_status = 409


# =============================================================================
# Payment & Provider Errors
# =============================================================================

class PaymentVerificationError(MarketError):
    """On-chain payment does not match what was expected.

    Fatal for the attempt that raised it; the same claim is never retried.
    """

    error_code = "PAYMENT_VERIFICATION_FAILED"
    http_status = 402

    def __init__(
        self,
        message: str,
        signature: Optional[str] = None,
        network: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if signature:
            details["signature"] = signature
        if network:
            details["network"] = network
        super().__init__(message, details=details)


class ProviderError(MarketError):
    """Provider endpoint unreachable, timed out or answered non-2xx.

    This is the single shape every HTTP client failure is normalized into
    before it reaches orchestration logic.
    """

    error_code = "PROVIDER_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
        service_id: Optional[str] = None,
        timed_out: bool = False,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.service_id = service_id
        self.timed_out = timed_out
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if service_id:
            details["service_id"] = service_id
        if timed_out:
            details["timed_out"] = True
        super().__init__(message, details=details)


# =============================================================================
# Infrastructure Errors (5xx)
# =============================================================================

class LedgerWriteError(MarketError):
    """Persistence failure in the ledger store, on reads as well as writes."""

    error_code = "LEDGER_WRITE_ERROR"
    http_status = 503

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)


class ChainRPCError(MarketError):
    """RPC call to the payment network failed."""

    error_code = "RPC_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        rpc_error: Optional[dict[str, Any]] = None,
    ) -> None:
        self.rpc_error = rpc_error or {}
        details: dict[str, Any] = {}
        if method:
            details["method"] = method
        if rpc_error:
            details["rpc_error"] = rpc_error
        super().__init__(message, details=details)


class ConfigurationError(MarketError):
    """Service configuration error."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500
