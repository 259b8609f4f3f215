"""
Transaction ledger writer.

Records every provider attempt, successful or not, with the payment
signature it ran under. The ``pending`` row is written before the
provider is called, so "money moved but nothing was delivered" can
always be reconstructed from the ledger alone, even after a crash
mid-call.

Recording never raises: a store failure is logged and the caller keeps
the provider outcome it already has.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from .exceptions import LedgerWriteError
from .logging_config import mask_value
from .models import ProviderAttempt, Transaction, TransactionStatus
from .pricing import from_smallest_units
from .store.base import LedgerStore

logger = logging.getLogger(__name__)


class TransactionLedgerWriter:
    """Sole writer of transaction rows and their terminal status."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    @staticmethod
    def _pending(attempt: ProviderAttempt) -> Transaction:
        service = attempt.service
        return Transaction(
            service_id=service.id,
            buyer=attempt.buyer,
            seller=service.provider,
            amount=str(from_smallest_units(attempt.claim.amount)),
            currency=service.pricing.currency,
            status=TransactionStatus.PENDING,
            request=attempt.request,
            payment_hash=attempt.claim.signature,
            attempt=attempt.attempt,
            session_id=attempt.session_id,
        )

    @staticmethod
    def _log_failure(attempt: ProviderAttempt, error: Exception, operation: str) -> None:
        err = error if isinstance(error, LedgerWriteError) else LedgerWriteError(
            str(error), operation=operation
        )
        logger.error(
            f"Failed to {operation.replace('_', ' ')} {attempt.attempt} for {attempt.service.id} "
            f"(payment {mask_value(attempt.claim.signature, show_chars=8)}, "
            f"success={attempt.success}): {err.message}"
        )

    async def begin(self, attempt: ProviderAttempt) -> Optional[Transaction]:
        """
        Insert the ``pending`` row for an attempt about to call its provider.

        Returns the pending transaction, or None if the store failed
        (logged, never raised).
        """
        pending = self._pending(attempt)
        try:
            await self._store.insert_transaction(pending)
        except Exception as e:
            self._log_failure(attempt, e, "begin_attempt")
            return None
        attempt.transaction_id = pending.id
        logger.debug(f"Opened transaction {pending.id}: {attempt.service.id} attempt {attempt.attempt}")
        return pending

    async def finish(
        self, attempt: ProviderAttempt, pending: Optional[Transaction] = None
    ) -> Optional[Transaction]:
        """
        Move an attempt's row to ``completed`` or ``failed``.

        When ``begin`` could not write the pending row, it is inserted
        here first. Returns the terminal transaction, or None if the
        store failed (logged, never raised).
        """
        inserted = pending is not None
        pending = pending or self._pending(attempt)
        final = pending.model_copy(update={
            "status": (
                TransactionStatus.COMPLETED.value if attempt.success
                else TransactionStatus.FAILED.value
            ),
            "response": attempt.response if attempt.success else None,
            "error": None if attempt.success else attempt.error,
        })

        try:
            if not inserted:
                await self._store.insert_transaction(pending)
            await self._store.update_transaction(final)
        except Exception as e:
            self._log_failure(attempt, e, "finish_attempt")
            return None

        attempt.transaction_id = final.id
        logger.info(
            f"Recorded transaction {final.id}: {attempt.service.id} attempt {attempt.attempt} {final.status}"
        )
        return final

    async def record(self, attempt: ProviderAttempt) -> Optional[Transaction]:
        """Write the pending and terminal row for an already finished attempt."""
        return await self.finish(attempt, await self.begin(attempt))

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        return await self._store.get_transaction(transaction_id)

    async def for_payment(self, signature: str) -> List[Transaction]:
        """Every attempt recorded against one payment signature."""
        return await self._store.transactions_for_payment(signature)
