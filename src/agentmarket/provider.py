"""
Provider endpoint client.

Every failure of a provider call (transport error, timeout, non-2xx
answer, unreadable body) is normalized here into a single ProviderError
shape before it reaches orchestration logic.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .exceptions import ProviderError
from .logging_config import mask_headers, mask_value
from .models import PaymentClaim, Service

logger = logging.getLogger(__name__)

PAYMENT_HEADER = "X-Payment"
DEFAULT_PROVIDER_TIMEOUT = 30.0
DEFAULT_HEALTH_TIMEOUT = 5.0

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
UNKNOWN = "unknown"


@dataclass
class ProviderResponse:
    """Successful provider answer."""

    data: Any
    status_code: int
    response_time_ms: int


@dataclass
class HealthCheckResult:
    service_id: str
    status: str
    response_time_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.status == HEALTHY


def _error_message(response: httpx.Response, body: Any) -> str:
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])
    return f"Provider returned HTTP {response.status_code}"


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ProviderClient:
    """
    Calls provider endpoints with a payment proof.

    Example:
        client = ProviderClient(timeout=30.0)
        result = await client.call(service, {"text": "hi"}, claim)
    """

    def __init__(
        self,
        timeout: float = DEFAULT_PROVIDER_TIMEOUT,
        health_timeout: float = DEFAULT_HEALTH_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.timeout = timeout
        self.health_timeout = health_timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def call(
        self,
        service: Service,
        request_data: Dict[str, Any],
        claim: PaymentClaim,
    ) -> ProviderResponse:
        """
        POST the request body to the provider with an ``X-Payment`` proof.

        Raises:
            ProviderError: On any transport failure, timeout or non-2xx answer
        """
        headers = {
            "Content-Type": "application/json",
            PAYMENT_HEADER: json.dumps(claim.payment_proof()),
        }
        logger.info(
            f"Calling {service.name} ({service.id}) with payment "
            f"{mask_value(claim.signature, show_chars=8)}"
        )
        logger.debug(f"POST {service.endpoint} headers={mask_headers(headers)}")
        started = time.monotonic()
        try:
            response = await self._client.post(
                service.endpoint,
                json=request_data,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"{service.name} timed out after {self.timeout:g}s",
                service_id=service.id,
                timed_out=True,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                f"{service.name} unreachable: {e}",
                service_id=service.id,
            ) from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        body = _decode(response)
        if not response.is_success:
            raise ProviderError(
                _error_message(response, body),
                status_code=response.status_code,
                body=body,
                service_id=service.id,
            )

        logger.info(f"{service.name} answered {response.status_code} in {elapsed_ms}ms")
        return ProviderResponse(data=body, status_code=response.status_code, response_time_ms=elapsed_ms)

    async def health_check(self, service: Service) -> HealthCheckResult:
        """
        GET the service's health URL.

        Healthy means HTTP 200 with ``status`` of ``healthy``/``ok`` or
        ``healthy: true`` in the body. Never raises.
        """
        started = time.monotonic()
        try:
            response = await self._client.get(service.health_check_url, timeout=self.health_timeout)
        except httpx.TimeoutException:
            return HealthCheckResult(service.id, UNHEALTHY, self._since(started), "Health check timeout")
        except httpx.HTTPError as e:
            return HealthCheckResult(service.id, UNHEALTHY, self._since(started), f"Service unreachable: {e}")

        elapsed = self._since(started)
        if response.status_code != 200:
            return HealthCheckResult(
                service.id, UNHEALTHY, elapsed, f"Unexpected status code: {response.status_code}"
            )
        body = _decode(response)
        healthy = isinstance(body, dict) and (
            body.get("status") in ("healthy", "ok") or body.get("healthy") is True
        )
        return HealthCheckResult(service.id, HEALTHY if healthy else UNHEALTHY, elapsed)

    async def check_many(self, services: List[Service]) -> Dict[str, HealthCheckResult]:
        """Health-check several services concurrently."""
        results = await asyncio.gather(*(self.health_check(s) for s in services))
        return {r.service_id: r for r in results}

    @staticmethod
    def _since(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
