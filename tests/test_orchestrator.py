"""
Tests for agentmarket.orchestrator.

Providers are mocked over HTTP with pytest-httpx; payment verification
uses RecordingVerifier so tests can count verifications.

Tests cover:
- Candidate selection (capability, direct id, matcher fallback)
- Requirements, preferred providers and max_payment guard
- Health-checked selection
- Single verification per purchase
- Failover to backups under the same payment
- Ledger rows for every attempt
- Session lifecycle around completion
- One purchase per payment signature
- Pending ledger rows while a provider call is in flight
"""
from __future__ import annotations

import asyncio
import json
from typing import Optional

import httpx
import pytest

from agentmarket.config import USDC_MINT_DEVNET
from agentmarket.exceptions import (
    NotFoundError,
    ProviderError,
    SessionNotFoundError,
    ValidationError,
)
from agentmarket.models import PurchaseRequirements, Service, TransactionStatus
from agentmarket.orchestrator import REFUND_GUIDANCE, PurchaseOrchestrator, rank_candidates
from agentmarket.provider import HealthCheckResult, PAYMENT_HEADER, ProviderClient, ProviderResponse

from market_helpers import PROVIDER_WALLET, RecordingVerifier, make_draft

ALPHA_URL = "https://alpha-sentiment.example.com/api"
BETA_URL = "https://beta-sentiment.example.com/api"
GAMMA_URL = "https://gamma-sentiment.example.com/api"


@pytest.fixture
def verifier() -> RecordingVerifier:
    return RecordingVerifier()


@pytest.fixture
async def provider():
    client = ProviderClient(timeout=1.0, health_timeout=1.0)
    yield client
    await client.close()


@pytest.fixture
def orchestrator(registry, matcher, verifier, provider, ledger, sessions) -> PurchaseOrchestrator:
    return PurchaseOrchestrator(
        registry=registry,
        matcher=matcher,
        verifier=verifier,
        provider=provider,
        ledger=ledger,
        sessions=sessions,
        usdc_mints={"devnet": USDC_MINT_DEVNET},
        max_retries=2,
    )


@pytest.fixture
async def trio(registry):
    """Three sentiment services: Alpha is the best rated, Gamma the worst."""
    alpha = await registry.register(make_draft(name="Alpha Sentiment", rating=4.9))
    beta = await registry.register(make_draft(name="Beta Sentiment", rating=4.5))
    gamma = await registry.register(make_draft(name="Gamma Sentiment", rating=4.0))
    return alpha, beta, gamma


class TestRankCandidates:
    """Tests for rank_candidates."""

    def test_rating_then_price(self):
        """Should order by rating descending, then price ascending."""
        def svc(name, rating, price):
            return Service(**make_draft(name=name, rating=rating, price=price).model_dump())

        a = svc("A", 4.5, "$0.03")
        b = svc("B", 4.9, "$0.05")
        c = svc("C", 4.5, "$0.01")

        assert [s.name for s in rank_candidates([a, b, c])] == ["B", "C", "A"]

    def test_health_outranks_rating(self):
        """Should put healthy services ahead of better rated unhealthy ones."""
        good = Service(**make_draft(name="Good", rating=5.0).model_dump())
        ok = Service(**make_draft(name="Ok", rating=3.0).model_dump())
        health = {
            good.id: HealthCheckResult(good.id, "unhealthy", 50),
            ok.id: HealthCheckResult(ok.id, "healthy", 50),
        }

        assert [s.name for s in rank_candidates([good, ok], health)] == ["Ok", "Good"]


class TestPrepare:
    """Tests for PurchaseOrchestrator.prepare."""

    @pytest.mark.asyncio
    async def test_by_capability(self, orchestrator, sessions, trio):
        """Should pick the best rated primary and keep the rest as ordered backups."""
        alpha, beta, gamma = trio

        prepared = await orchestrator.prepare(
            capability="sentiment-analysis", request_data={"text": "great"}, buyer="agent-1"
        )

        assert prepared.service.id == alpha.id
        assert [s.id for s in prepared.backups] == [beta.id, gamma.id]
        assert prepared.match_score is None
        instructions = prepared.instructions
        assert instructions.amount == 20_000
        assert instructions.price == "$0.02"
        assert instructions.recipient == PROVIDER_WALLET
        assert instructions.token == USDC_MINT_DEVNET
        assert instructions.network == "devnet"

        session = await sessions.get(prepared.session_id)
        assert session.service_id == alpha.id
        assert session.backup_ids == [beta.id, gamma.id]
        assert session.buyer == "agent-1"
        assert session.request_data == {"text": "great"}

    @pytest.mark.asyncio
    async def test_max_retries_limits_backups(self, orchestrator, trio):
        """Should keep at most max_retries backups."""
        alpha, beta, _ = trio

        prepared = await orchestrator.prepare(capability="sentiment-analysis", max_retries=1)

        assert [s.id for s in prepared.backups] == [beta.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retries", [-1, 6, True, "2"])
    async def test_rejects_bad_max_retries(self, orchestrator, trio, retries):
        """Should reject max_retries outside 0-5."""
        with pytest.raises(ValidationError):
            await orchestrator.prepare(capability="sentiment-analysis", max_retries=retries)

    @pytest.mark.asyncio
    async def test_direct_service_stays_primary(self, orchestrator, trio):
        """Should buy from the named service even when better ones exist."""
        alpha, beta, gamma = trio

        prepared = await orchestrator.prepare(service_id=gamma.id)

        assert prepared.service.id == gamma.id
        assert [s.id for s in prepared.backups] == [alpha.id, beta.id]

    @pytest.mark.asyncio
    async def test_unknown_service(self, orchestrator, trio):
        """Should raise NotFoundError for unknown service ids."""
        with pytest.raises(NotFoundError):
            await orchestrator.prepare(service_id="missing")

    @pytest.mark.asyncio
    async def test_requires_target(self, orchestrator):
        """Should require a capability or service id."""
        with pytest.raises(ValidationError):
            await orchestrator.prepare()

    @pytest.mark.asyncio
    async def test_no_match(self, orchestrator, trio):
        """Should raise NotFoundError when nothing matches."""
        with pytest.raises(NotFoundError):
            await orchestrator.prepare(capability="translation")

    @pytest.mark.asyncio
    async def test_matcher_fallback(self, orchestrator, registry):
        """Should resolve free-text intents through the matcher."""
        ocr = await registry.register(make_draft(name="Scanner", capabilities=["ocr"], description=""))

        prepared = await orchestrator.prepare(capability="run ocr on this receipt")

        assert prepared.service.id == ocr.id
        assert prepared.match_score == 68

    @pytest.mark.asyncio
    async def test_requirements_filter(self, orchestrator, registry, trio):
        """Should apply max_price and min_rating before selection."""
        alpha, beta, gamma = trio
        cheap = await registry.register(make_draft(name="Cheap Sentiment", price="$0.01", rating=4.2))

        prepared = await orchestrator.prepare(
            capability="sentiment-analysis",
            requirements=PurchaseRequirements(max_price="$0.01", min_rating=4.0),
        )

        assert prepared.service.id == cheap.id
        assert prepared.backups == []

    @pytest.mark.asyncio
    async def test_preferred_providers(self, orchestrator, registry, trio):
        """Should restrict candidates to preferred providers when any match."""
        preferred = await registry.register(make_draft(
            name="Delta Sentiment", rating=3.0, provider="PreferredWallet1111111111111111111111111111"
        ))

        prepared = await orchestrator.prepare(
            capability="sentiment-analysis",
            requirements=PurchaseRequirements(preferred_providers=[preferred.provider]),
        )

        assert prepared.service.id == preferred.id
        assert prepared.instructions.recipient == preferred.provider

    @pytest.mark.asyncio
    async def test_max_payment_guard(self, orchestrator, registry):
        """Should refuse a primary priced above max_payment and list alternatives."""
        pricey = await registry.register(make_draft(name="Pricey", price="$0.50", rating=5.0))
        cheap = await registry.register(make_draft(name="Cheap", price="$0.01", rating=4.0))

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.prepare(capability="sentiment-analysis", max_payment="$0.10")

        details = exc_info.value.details
        assert details["field"] == "max_payment"
        assert details["service_id"] == pricey.id
        assert [a["id"] for a in details["alternatives"]] == [cheap.id]

    @pytest.mark.asyncio
    async def test_health_check_drops_unhealthy(self, httpx_mock, orchestrator, trio):
        """Should skip unhealthy candidates."""
        alpha, beta, gamma = trio
        httpx_mock.add_response(url=ALPHA_URL + "/health", method="GET", status_code=503)
        httpx_mock.add_response(url=BETA_URL + "/health", method="GET", json={"status": "ok"})
        httpx_mock.add_response(url=GAMMA_URL + "/health", method="GET", json={"status": "ok"})

        prepared = await orchestrator.prepare(capability="sentiment-analysis", check_health=True)

        assert prepared.service.id == beta.id
        assert [s.id for s in prepared.backups] == [gamma.id]

    @pytest.mark.asyncio
    async def test_health_check_all_unhealthy(self, httpx_mock, orchestrator, trio):
        """Should raise ProviderError before any payment when every candidate is down."""
        for url in (ALPHA_URL, BETA_URL, GAMMA_URL):
            httpx_mock.add_response(url=url + "/health", method="GET", status_code=500)

        with pytest.raises(ProviderError):
            await orchestrator.prepare(capability="sentiment-analysis", check_health=True)


class TestComplete:
    """Tests for PurchaseOrchestrator.complete."""

    @pytest.mark.asyncio
    async def test_primary_succeeds(self, httpx_mock, orchestrator, verifier, ledger, trio, signature):
        """Should verify once, call the primary with the proof and record one completed row."""
        alpha, _, _ = trio
        httpx_mock.add_response(url=ALPHA_URL, method="POST", json={"sentiment": "positive"})
        prepared = await orchestrator.prepare(
            capability="sentiment-analysis", request_data={"text": "great"}, buyer="agent-1"
        )

        outcome = await orchestrator.complete(prepared.session_id, signature)

        assert outcome.success is True
        assert outcome.payment_confirmed is True
        assert outcome.service_id == alpha.id
        assert outcome.result == {"sentiment": "positive"}
        assert outcome.metadata["retries_used"] == 0
        assert outcome.metadata["remaining_backups"] == 2
        assert outcome.primary_error is None
        assert len(verifier.claims) == 1

        request = httpx_mock.get_requests()[0]
        assert json.loads(request.content) == {"text": "great"}
        proof = json.loads(request.headers[PAYMENT_HEADER])
        assert proof["txHash"] == signature
        assert proof["amount"] == "0.02"
        assert proof["from"] == "agent-1"

        rows = await ledger.for_payment(signature)
        assert len(rows) == 1
        assert rows[0].id == outcome.transaction_id
        assert rows[0].status == TransactionStatus.COMPLETED.value
        assert rows[0].buyer == "agent-1"

    @pytest.mark.asyncio
    async def test_verification_failure_never_calls_provider(
        self, httpx_mock, registry, matcher, provider, ledger, sessions, store, trio, signature
    ):
        """Should stop before any provider call when the payment does not verify."""
        verifier = RecordingVerifier(verified=False, error="Amount mismatch: expected 20000, got 1")
        orchestrator = PurchaseOrchestrator(
            registry, matcher, verifier, provider, ledger, sessions,
            usdc_mints={"devnet": USDC_MINT_DEVNET},
        )
        prepared = await orchestrator.prepare(capability="sentiment-analysis")

        outcome = await orchestrator.complete(prepared.session_id, signature)

        assert outcome.success is False
        assert outcome.payment_confirmed is False
        assert "Amount mismatch" in outcome.error
        assert outcome.metadata["error"]["error"] == "PAYMENT_VERIFICATION_FAILED"
        assert outcome.refund_guidance is None
        assert httpx_mock.get_requests() == []
        assert store.count_transactions() == 0
        with pytest.raises(SessionNotFoundError):
            await orchestrator.complete(prepared.session_id, signature)

    @pytest.mark.asyncio
    async def test_failover_to_backup(self, httpx_mock, orchestrator, verifier, ledger, trio, signature):
        """Should retry the next backup under the same verified payment."""
        alpha, beta, _ = trio
        httpx_mock.add_exception(httpx.ReadTimeout("slow"), url=ALPHA_URL)
        httpx_mock.add_response(url=BETA_URL, method="POST", json={"sentiment": "negative"})
        prepared = await orchestrator.prepare(capability="sentiment-analysis")

        outcome = await orchestrator.complete(prepared.session_id, signature)

        assert outcome.success is True
        assert outcome.service_id == beta.id
        assert outcome.result == {"sentiment": "negative"}
        assert outcome.metadata["retries_used"] == 1
        assert outcome.metadata["remaining_backups"] == 1
        assert "timed out" in outcome.primary_error
        assert outcome.backup_errors == []
        assert len(verifier.claims) == 1

        rows = await ledger.for_payment(signature)
        assert [(r.service_id, r.attempt, r.status) for r in rows] == [
            (alpha.id, 0, "failed"),
            (beta.id, 1, "completed"),
        ]
        assert rows[0].error == outcome.primary_error

    @pytest.mark.asyncio
    async def test_all_attempts_fail(self, httpx_mock, orchestrator, verifier, ledger, trio, signature):
        """Should report a confirmed but undelivered payment with refund guidance."""
        alpha, beta, gamma = trio
        httpx_mock.add_response(url=ALPHA_URL, method="POST", status_code=500, json={"error": "model crashed"})
        httpx_mock.add_exception(httpx.ReadTimeout("slow"), url=BETA_URL)
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=GAMMA_URL)
        prepared = await orchestrator.prepare(capability="sentiment-analysis")

        outcome = await orchestrator.complete(prepared.session_id, signature)

        assert outcome.success is False
        assert outcome.payment_confirmed is True
        assert outcome.primary_error == "model crashed"
        assert [e["service_id"] for e in outcome.backup_errors] == [beta.id, gamma.id]
        assert "timed out" in outcome.backup_errors[0]["error"]
        assert "unreachable" in outcome.backup_errors[1]["error"]
        assert outcome.refund_guidance == REFUND_GUIDANCE
        assert outcome.metadata["retries_used"] == 2
        assert len(verifier.claims) == 1

        rows = await ledger.for_payment(signature)
        assert [r.attempt for r in rows] == [0, 1, 2]
        assert all(r.status == "failed" for r in rows)
        assert {r.session_id for r in rows} == {prepared.session_id}

    @pytest.mark.asyncio
    async def test_retry_disabled(self, httpx_mock, orchestrator, ledger, trio, signature):
        """Should only call the primary when retry_on_failure is off."""
        httpx_mock.add_response(url=ALPHA_URL, method="POST", status_code=503)
        prepared = await orchestrator.prepare(capability="sentiment-analysis")

        outcome = await orchestrator.complete(prepared.session_id, signature, retry_on_failure=False)

        assert outcome.success is False
        assert outcome.payment_confirmed is True
        assert outcome.backup_errors == []
        assert outcome.metadata["remaining_backups"] == 2
        assert len(httpx_mock.get_requests()) == 1
        assert len(await ledger.for_payment(signature)) == 1

    @pytest.mark.asyncio
    async def test_delisted_backup_is_skipped(self, httpx_mock, orchestrator, registry, ledger, trio, signature):
        """Should skip backups deactivated after prepare."""
        alpha, beta, gamma = trio
        httpx_mock.add_response(url=ALPHA_URL, method="POST", status_code=500)
        httpx_mock.add_response(url=GAMMA_URL, method="POST", json={"ok": True})
        prepared = await orchestrator.prepare(capability="sentiment-analysis")
        await registry.deactivate(beta.id)

        outcome = await orchestrator.complete(prepared.session_id, signature)

        assert outcome.success is True
        assert outcome.service_id == gamma.id
        assert outcome.metadata["retries_used"] == 2
        assert "no longer available" in outcome.backup_errors[0]["error"]
        assert [r.service_id for r in await ledger.for_payment(signature)] == [alpha.id, gamma.id]

    @pytest.mark.asyncio
    async def test_unknown_session_fails_every_time(self, orchestrator, verifier, signature):
        """Should raise SessionNotFoundError without verifying anything."""
        for _ in range(2):
            with pytest.raises(SessionNotFoundError):
                await orchestrator.complete("garbage", signature)
        assert verifier.claims == []

    @pytest.mark.asyncio
    async def test_bad_signature_leaves_session_usable(self, httpx_mock, orchestrator, verifier, trio, signature):
        """Should reject a malformed signature without consuming the session."""
        httpx_mock.add_response(url=ALPHA_URL, method="POST", json={"ok": True})
        prepared = await orchestrator.prepare(capability="sentiment-analysis")

        with pytest.raises(ValidationError):
            await orchestrator.complete(prepared.session_id, "not-a-signature!")
        assert verifier.claims == []

        outcome = await orchestrator.complete(prepared.session_id, signature)
        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_session_single_use(self, httpx_mock, orchestrator, trio, signature):
        """Should invalidate the session after a terminal outcome."""
        httpx_mock.add_response(url=ALPHA_URL, method="POST", json={"ok": True})
        prepared = await orchestrator.prepare(capability="sentiment-analysis")
        await orchestrator.complete(prepared.session_id, signature)

        with pytest.raises(SessionNotFoundError):
            await orchestrator.complete(prepared.session_id, signature)


class LedgerPeekingProvider:
    """Provider stand-in that reads the ledger while a call is in flight."""

    def __init__(self, ledger, fail_with: Optional[BaseException] = None) -> None:
        self.ledger = ledger
        self.fail_with = fail_with
        self.seen: list[list[str]] = []

    async def call(self, service, request_data, claim) -> ProviderResponse:
        rows = await self.ledger.for_payment(claim.signature)
        self.seen.append([r.status for r in rows])
        if self.fail_with is not None:
            raise self.fail_with
        return ProviderResponse(data={"ok": True}, status_code=200, response_time_ms=5)

    async def close(self) -> None:
        pass


class TestPaymentReuse:
    """Tests for redeeming one payment signature at most once."""

    @pytest.mark.asyncio
    async def test_second_session_rejected(self, httpx_mock, orchestrator, verifier, ledger, trio, signature):
        """Should refuse to deliver a second purchase for the same payment."""
        httpx_mock.add_response(url=ALPHA_URL, method="POST", json={"ok": True})
        first = await orchestrator.prepare(capability="sentiment-analysis")
        assert (await orchestrator.complete(first.session_id, signature)).success is True

        second = await orchestrator.prepare(capability="sentiment-analysis")
        outcome = await orchestrator.complete(second.session_id, signature)

        assert outcome.success is False
        assert outcome.payment_confirmed is False
        assert outcome.metadata["error"]["error"] == "CONFLICT"
        assert "already used" in outcome.error
        assert len(verifier.claims) == 1
        assert len(httpx_mock.get_requests()) == 1
        rows = await ledger.for_payment(signature)
        assert [(r.session_id, r.status) for r in rows] == [(first.session_id, "completed")]
        with pytest.raises(SessionNotFoundError):
            await orchestrator.complete(second.session_id, signature)

    @pytest.mark.asyncio
    async def test_rejected_from_ledger_history(
        self, httpx_mock, orchestrator, registry, matcher, provider, ledger, sessions, trio, signature
    ):
        """Should find earlier redemptions in the ledger, not only in memory."""
        httpx_mock.add_response(url=ALPHA_URL, method="POST", json={"ok": True})
        first = await orchestrator.prepare(capability="sentiment-analysis")
        await orchestrator.complete(first.session_id, signature)

        verifier = RecordingVerifier()
        restarted = PurchaseOrchestrator(
            registry, matcher, verifier, provider, ledger, sessions,
            usdc_mints={"devnet": USDC_MINT_DEVNET},
        )
        second = await restarted.prepare(capability="sentiment-analysis")
        outcome = await restarted.complete(second.session_id, signature)

        assert outcome.success is False
        assert outcome.metadata["error"]["error"] == "CONFLICT"
        assert verifier.claims == []

    @pytest.mark.asyncio
    async def test_concurrent_completions(self, httpx_mock, orchestrator, verifier, trio, signature):
        """Should let only one of two concurrent completions use the payment."""
        httpx_mock.add_response(url=ALPHA_URL, method="POST", json={"ok": True})
        first = await orchestrator.prepare(capability="sentiment-analysis")
        second = await orchestrator.prepare(capability="sentiment-analysis")

        outcomes = await asyncio.gather(
            orchestrator.complete(first.session_id, signature),
            orchestrator.complete(second.session_id, signature),
        )

        assert sorted(o.success for o in outcomes) == [False, True]
        assert len(verifier.claims) == 1
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_failed_verification_frees_signature(self, httpx_mock, orchestrator, verifier, trio, signature):
        """Should accept the signature again once a verification attempt failed."""
        httpx_mock.add_response(url=ALPHA_URL, method="POST", json={"ok": True})
        verifier.verified = False
        verifier.error = "Transaction not yet confirmed"
        first = await orchestrator.prepare(capability="sentiment-analysis")
        assert (await orchestrator.complete(first.session_id, signature)).payment_confirmed is False

        verifier.verified = True
        second = await orchestrator.prepare(capability="sentiment-analysis")
        outcome = await orchestrator.complete(second.session_id, signature)

        assert outcome.success is True


class TestLedgerDuringCall:
    """Tests for the pending ledger row around a provider call."""

    def _orchestrator(self, registry, matcher, ledger, sessions, provider) -> PurchaseOrchestrator:
        return PurchaseOrchestrator(
            registry, matcher, RecordingVerifier(), provider, ledger, sessions,
            usdc_mints={"devnet": USDC_MINT_DEVNET},
        )

    @pytest.mark.asyncio
    async def test_pending_row_exists_during_call(self, registry, matcher, ledger, sessions, trio, signature):
        """Should write the pending row before the provider is called."""
        provider = LedgerPeekingProvider(ledger)
        orchestrator = self._orchestrator(registry, matcher, ledger, sessions, provider)
        prepared = await orchestrator.prepare(capability="sentiment-analysis")

        outcome = await orchestrator.complete(prepared.session_id, signature)

        assert provider.seen == [["pending"]]
        rows = await ledger.for_payment(signature)
        assert [r.status for r in rows] == ["completed"]
        assert rows[0].id == outcome.transaction_id

    @pytest.mark.asyncio
    async def test_cancelled_call_leaves_pending_row(self, registry, matcher, ledger, sessions, trio, signature):
        """Should keep the pending row when the call is cancelled mid-flight."""
        provider = LedgerPeekingProvider(ledger, fail_with=asyncio.CancelledError())
        orchestrator = self._orchestrator(registry, matcher, ledger, sessions, provider)
        prepared = await orchestrator.prepare(capability="sentiment-analysis")

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.complete(prepared.session_id, signature)

        rows = await ledger.for_payment(signature)
        assert [(r.status, r.session_id) for r in rows] == [("pending", prepared.session_id)]

        retry = await orchestrator.prepare(capability="sentiment-analysis")
        outcome = await orchestrator.complete(retry.session_id, signature)
        assert outcome.metadata["error"]["error"] == "CONFLICT"
