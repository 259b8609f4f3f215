"""In-memory ledger store."""
from __future__ import annotations

from typing import Dict, List, Optional

from agentmarket.exceptions import ConflictError, NotFoundError
from agentmarket.models import Rating, Service, Transaction, TransactionStatus

from .base import LedgerStore


class InMemoryLedgerStore(LedgerStore):
    """
    In-memory store for development and testing.

    Note: Data is lost on restart. Use SQLLedgerStore for anything durable.
    Rows are copied in and out so callers never share mutable state
    with the store.
    """

    def __init__(self) -> None:
        self._services: Dict[str, Service] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._ratings: Dict[str, Rating] = {}

    async def load_services(self, include_inactive: bool = False) -> List[Service]:
        return [
            s.model_copy(deep=True)
            for s in self._services.values()
            if include_inactive or s.is_active
        ]

    async def insert_service(self, service: Service) -> Service:
        if service.id in self._services:
            raise ConflictError(f"Service '{service.id}' already exists")
        self._services[service.id] = service.model_copy(deep=True)
        return service

    async def update_service(self, service: Service) -> Service:
        if service.id not in self._services:
            raise NotFoundError("Service", service.id)
        self._services[service.id] = service.model_copy(deep=True)
        return service

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.id in self._transactions:
            raise ConflictError(f"Transaction '{transaction.id}' already exists")
        self._transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction

    async def update_transaction(self, transaction: Transaction) -> Transaction:
        stored = self._transactions.get(transaction.id)
        if stored is None:
            raise NotFoundError("Transaction", transaction.id)
        if stored.is_terminal:
            raise ConflictError(
                f"Transaction '{transaction.id}' is already {stored.status}",
                details={"transaction_id": transaction.id, "status": stored.status},
            )
        self._transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        tx = self._transactions.get(transaction_id)
        return tx.model_copy(deep=True) if tx else None

    async def transactions_for_payment(self, payment_hash: str) -> List[Transaction]:
        rows = [
            tx.model_copy(deep=True)
            for tx in self._transactions.values()
            if tx.payment_hash == payment_hash
        ]
        return sorted(rows, key=lambda tx: tx.attempt)

    async def insert_rating(self, rating: Rating) -> Rating:
        if any(r.transaction_id == rating.transaction_id for r in self._ratings.values()):
            raise ConflictError(f"Transaction '{rating.transaction_id}' has already been rated")
        self._ratings[rating.id] = rating.model_copy(deep=True)
        return rating

    async def rating_for_transaction(self, transaction_id: str) -> Optional[Rating]:
        for rating in self._ratings.values():
            if rating.transaction_id == transaction_id:
                return rating.model_copy(deep=True)
        return None

    async def delete_rating(self, rating_id: str) -> bool:
        return self._ratings.pop(rating_id, None) is not None

    def count_transactions(self, status: Optional[TransactionStatus] = None) -> int:
        if status is None:
            return len(self._transactions)
        return sum(1 for tx in self._transactions.values() if tx.status == status)
