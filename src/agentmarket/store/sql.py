"""
SQLAlchemy-backed ledger store.

Works against SQLite (aiosqlite) for development and PostgreSQL
(asyncpg) in production. Table layout:

- services: typed core columns plus JSON capabilities/pricing/reputation/metadata
- transactions: one row per provider attempt, keyed by payment signature
- ratings: one row per rated transaction
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    func,
    select,
    delete,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from agentmarket.exceptions import ConflictError, LedgerWriteError, NotFoundError
from agentmarket.models import (
    Rating,
    Service,
    ServiceStatus,
    Transaction,
    TransactionStatus,
)

from .base import LedgerStore

logger = logging.getLogger(__name__)

Base = declarative_base()

_TERMINAL = (TransactionStatus.COMPLETED.value, TransactionStatus.FAILED.value)


class ServiceRow(Base):
    __tablename__ = "services"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, default="")
    provider = Column(String(128), nullable=False, index=True)
    endpoint = Column(String(2048), nullable=False)
    capabilities = Column(JSON, nullable=False)
    pricing = Column(JSON, nullable=False)
    reputation = Column(JSON, nullable=False)
    metadata_json = Column("metadata", JSON, default=dict)
    status = Column(String(16), default=ServiceStatus.ACTIVE.value, index=True)
    schema_version = Column(Integer, default=1)
    # Insertion order for cache loading
    seq = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(String(64), primary_key=True)
    service_id = Column(String(64), nullable=False, index=True)
    buyer = Column(String(128), nullable=False)
    seller = Column(String(128), nullable=False)
    amount = Column(String(32), nullable=False)
    currency = Column(String(16), default="USDC")
    status = Column(String(16), nullable=False, index=True)
    request = Column(JSON)
    response = Column(JSON)
    payment_hash = Column(String(128), nullable=False, index=True)
    error = Column(Text)
    attempt = Column(Integer, default=0)
    session_id = Column(String(64), index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)


class RatingRow(Base):
    __tablename__ = "ratings"

    id = Column(String(64), primary_key=True)
    transaction_id = Column(String(64), nullable=False, unique=True, index=True)
    service_id = Column(String(64), nullable=False, index=True)
    rater = Column(String(128), nullable=False)
    score = Column(Integer, nullable=False)
    review = Column(Text)
    timestamp = Column(DateTime(timezone=True), nullable=False)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _service_from_row(row: ServiceRow) -> Service:
    return Service.model_validate({
        "id": row.id,
        "name": row.name,
        "description": row.description or "",
        "provider": row.provider,
        "endpoint": row.endpoint,
        "capabilities": row.capabilities,
        "pricing": row.pricing,
        "reputation": row.reputation,
        "metadata": row.metadata_json or {},
        "status": row.status,
        "schema_version": row.schema_version,
        "created_at": _aware(row.created_at),
        "updated_at": _aware(row.updated_at),
    })


def _service_columns(service: Service) -> dict[str, Any]:
    return {
        "name": service.name,
        "description": service.description,
        "provider": service.provider,
        "endpoint": service.endpoint,
        "capabilities": list(service.capabilities),
        "pricing": service.pricing.model_dump(mode="json"),
        "reputation": service.reputation.model_dump(mode="json"),
        "metadata_json": dict(service.metadata),
        "status": service.status,
        "schema_version": service.schema_version,
        "created_at": service.created_at,
        "updated_at": service.updated_at,
    }


def _transaction_from_row(row: TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        service_id=row.service_id,
        buyer=row.buyer,
        seller=row.seller,
        amount=row.amount,
        currency=row.currency,
        status=row.status,
        request=row.request or {},
        response=row.response,
        payment_hash=row.payment_hash,
        error=row.error,
        attempt=row.attempt or 0,
        session_id=row.session_id,
        timestamp=_aware(row.timestamp),
    )


def _transaction_columns(tx: Transaction) -> dict[str, Any]:
    return {
        "service_id": tx.service_id,
        "buyer": tx.buyer,
        "seller": tx.seller,
        "amount": tx.amount,
        "currency": tx.currency,
        "status": tx.status,
        "request": tx.request,
        "response": tx.response,
        "payment_hash": tx.payment_hash,
        "error": tx.error,
        "attempt": tx.attempt,
        "session_id": tx.session_id,
        "timestamp": tx.timestamp,
    }


def _rating_from_row(row: RatingRow) -> Rating:
    return Rating(
        id=row.id,
        transaction_id=row.transaction_id,
        service_id=row.service_id,
        rater=row.rater,
        score=row.score,
        review=row.review,
        timestamp=_aware(row.timestamp),
    )


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine configured for the database type."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            # One shared connection, otherwise every session sees an empty database
            return create_async_engine(
                database_url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        db_path = database_url.split("///", 1)[-1]
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(database_url, echo=echo)

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )


class SQLLedgerStore(LedgerStore):
    """
    Ledger store backed by SQLAlchemy's async engine.

    Every write runs in its own short transaction; the database
    serializes individual row writes.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def initialize(self) -> None:
        if self._engine is not None:
            return
        self._engine = create_engine_for_url(self.database_url, echo=self.echo)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Ledger store initialized ({self._engine.url.get_backend_name()})")

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _session(self) -> AsyncSession:
        if self._session_factory is None:
            raise LedgerWriteError("Ledger store is not initialized", operation="session")
        return self._session_factory()

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def load_services(self, include_inactive: bool = False) -> List[Service]:
        stmt = select(ServiceRow).order_by(ServiceRow.seq)
        if not include_inactive:
            stmt = stmt.where(ServiceRow.status == ServiceStatus.ACTIVE.value)
        try:
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Failed to load services: {e}", operation="load_services") from e
        return [_service_from_row(row) for row in rows]

    async def insert_service(self, service: Service) -> Service:
        try:
            async with self._session() as session:
                async with session.begin():
                    existing = await session.get(ServiceRow, service.id)
                    if existing is not None:
                        raise ConflictError(f"Service '{service.id}' already exists")
                    seq = (await session.execute(select(func.count()).select_from(ServiceRow))).scalar_one()
                    session.add(ServiceRow(id=service.id, seq=seq, **_service_columns(service)))
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Failed to insert service: {e}", operation="insert_service") from e
        return service

    async def update_service(self, service: Service) -> Service:
        try:
            async with self._session() as session:
                async with session.begin():
                    result = await session.execute(
                        update(ServiceRow)
                        .where(ServiceRow.id == service.id)
                        .values(**_service_columns(service))
                    )
                    if result.rowcount == 0:
                        raise NotFoundError("Service", service.id)
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Failed to update service: {e}", operation="update_service") from e
        return service

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        try:
            async with self._session() as session:
                async with session.begin():
                    session.add(TransactionRow(id=transaction.id, **_transaction_columns(transaction)))
        except SQLAlchemyError as e:
            raise LedgerWriteError(
                f"Failed to insert transaction: {e}", operation="insert_transaction"
            ) from e
        return transaction

    async def update_transaction(self, transaction: Transaction) -> Transaction:
        try:
            async with self._session() as session:
                async with session.begin():
                    stored = await session.get(TransactionRow, transaction.id)
                    if stored is None:
                        raise NotFoundError("Transaction", transaction.id)
                    if stored.status in _TERMINAL:
                        raise ConflictError(
                            f"Transaction '{transaction.id}' is already {stored.status}",
                            details={"transaction_id": transaction.id, "status": stored.status},
                        )
                    # Guarded update so a concurrent writer cannot flip a terminal row
                    await session.execute(
                        update(TransactionRow)
                        .where(TransactionRow.id == transaction.id)
                        .where(TransactionRow.status.not_in(_TERMINAL))
                        .values(**_transaction_columns(transaction))
                    )
        except SQLAlchemyError as e:
            raise LedgerWriteError(
                f"Failed to update transaction: {e}", operation="update_transaction"
            ) from e
        return transaction

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        try:
            async with self._session() as session:
                row = await session.get(TransactionRow, transaction_id)
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Failed to read transaction: {e}", operation="get_transaction") from e
        return _transaction_from_row(row) if row else None

    async def transactions_for_payment(self, payment_hash: str) -> List[Transaction]:
        stmt = (
            select(TransactionRow)
            .where(TransactionRow.payment_hash == payment_hash)
            .order_by(TransactionRow.attempt, TransactionRow.timestamp)
        )
        try:
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise LedgerWriteError(
                f"Failed to read transactions: {e}", operation="transactions_for_payment"
            ) from e
        return [_transaction_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Ratings
    # ------------------------------------------------------------------

    async def insert_rating(self, rating: Rating) -> Rating:
        try:
            async with self._session() as session:
                async with session.begin():
                    session.add(RatingRow(
                        id=rating.id,
                        transaction_id=rating.transaction_id,
                        service_id=rating.service_id,
                        rater=rating.rater,
                        score=rating.score,
                        review=rating.review,
                        timestamp=rating.timestamp,
                    ))
        except IntegrityError as e:
            raise ConflictError(
                f"Transaction '{rating.transaction_id}' has already been rated",
                details={"transaction_id": rating.transaction_id},
            ) from e
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Failed to insert rating: {e}", operation="insert_rating") from e
        return rating

    async def rating_for_transaction(self, transaction_id: str) -> Optional[Rating]:
        stmt = select(RatingRow).where(RatingRow.transaction_id == transaction_id).limit(1)
        try:
            async with self._session() as session:
                row = (await session.execute(stmt)).scalars().first()
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Failed to read rating: {e}", operation="rating_for_transaction") from e
        return _rating_from_row(row) if row else None

    async def delete_rating(self, rating_id: str) -> bool:
        try:
            async with self._session() as session:
                async with session.begin():
                    result = await session.execute(delete(RatingRow).where(RatingRow.id == rating_id))
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Failed to delete rating: {e}", operation="delete_rating") from e
        return result.rowcount > 0
