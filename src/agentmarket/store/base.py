"""Abstract base class for ledger store implementations."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from agentmarket.models import Rating, Service, Transaction


class LedgerStore(ABC):
    """
    Durable storage for service listings, transactions and ratings.

    This interface allows swapping between different backends:
    - InMemoryLedgerStore for development and testing
    - SQLLedgerStore for SQLite / PostgreSQL via SQLAlchemy

    Transaction status is write-once-terminal: once a row is
    ``completed`` or ``failed``, implementations must refuse to
    rewrite it (raise ConflictError).
    """

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open pools)."""

    async def close(self) -> None:
        """Release backend resources."""

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    @abstractmethod
    async def load_services(self, include_inactive: bool = False) -> List[Service]:
        """
        Return stored services in insertion order.

        Args:
            include_inactive: Also return soft-deleted services

        Returns:
            Services ordered by creation
        """

    @abstractmethod
    async def insert_service(self, service: Service) -> Service:
        """Persist a new service row."""

    @abstractmethod
    async def update_service(self, service: Service) -> Service:
        """
        Overwrite an existing service row.

        Raises:
            NotFoundError: If the service was never stored
        """

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        """Persist a new transaction row."""

    @abstractmethod
    async def update_transaction(self, transaction: Transaction) -> Transaction:
        """
        Move a pending transaction to its terminal status.

        Raises:
            NotFoundError: If the transaction is unknown
            ConflictError: If the stored row is already terminal
        """

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Fetch a transaction by id, or None."""

    @abstractmethod
    async def transactions_for_payment(self, payment_hash: str) -> List[Transaction]:
        """Every attempt recorded against one payment signature, by attempt index."""

    # ------------------------------------------------------------------
    # Ratings
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_rating(self, rating: Rating) -> Rating:
        """Persist a rating row. A second rating of one transaction raises ConflictError."""

    @abstractmethod
    async def rating_for_transaction(self, transaction_id: str) -> Optional[Rating]:
        """Return the rating recorded for a transaction, if any."""

    @abstractmethod
    async def delete_rating(self, rating_id: str) -> bool:
        """Remove a rating row. Returns False if it did not exist."""
