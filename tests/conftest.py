"""
Pytest configuration and fixtures for AgentMarket tests.
"""
from __future__ import annotations

import pytest

from agentmarket.config import MarketSettings
from agentmarket.ledger import TransactionLedgerWriter
from agentmarket.matcher import CapabilityMatcher
from agentmarket.registry import ServiceRegistry
from agentmarket.sessions import InMemorySessionStore, SessionManager
from agentmarket.store import InMemoryLedgerStore

from market_helpers import RPC_URL, make_signature


@pytest.fixture
def settings() -> MarketSettings:
    """Settings isolated from the environment and any .env file."""
    return MarketSettings(
        _env_file=None,
        environment="test",
        database_url="memory://",
        solana_rpc_urls={"devnet": RPC_URL},
        log_json=False,
    )


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
async def registry(store) -> ServiceRegistry:
    registry = ServiceRegistry(store)
    await registry.initialize()
    return registry


@pytest.fixture
def matcher(registry) -> CapabilityMatcher:
    return CapabilityMatcher(registry, cache_ttl=0)


@pytest.fixture
def ledger(store) -> TransactionLedgerWriter:
    return TransactionLedgerWriter(store)


@pytest.fixture
def sessions() -> SessionManager:
    return SessionManager(InMemorySessionStore(), ttl_seconds=900)


@pytest.fixture
def signature() -> str:
    return make_signature(7)
