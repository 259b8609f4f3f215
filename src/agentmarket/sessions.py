"""
Purchase session management.

A session links a prepared purchase (chosen primary, price, ordered
backups) to its later completion call. Sessions are short-lived, held
in an injected SessionStore, and invalidated once a completion reaches
a terminal outcome.
"""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .exceptions import SessionNotFoundError
from .models import PaymentInstructions, PurchaseSession, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 15 * 60

STATE_AWAITING_PAYMENT = "awaiting_payment"
STATE_VERIFYING = "verifying"


class SessionStore(ABC):
    """Abstract interface for purchase session storage."""

    @abstractmethod
    async def create(self, session: PurchaseSession) -> PurchaseSession:
        """Store a new session."""
        pass

    @abstractmethod
    async def get(self, session_id: str) -> Optional[PurchaseSession]:
        """Get a session by ID."""
        pass

    @abstractmethod
    async def update(self, session: PurchaseSession) -> PurchaseSession:
        """Update a session."""
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Delete a session."""
        pass

    @abstractmethod
    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Remove expired sessions. Returns count of removed sessions."""
        pass


class InMemorySessionStore(SessionStore):
    """
    In-memory session store.

    Note: Sessions do not survive a restart and are not shared between
    processes.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, PurchaseSession] = {}

    async def create(self, session: PurchaseSession) -> PurchaseSession:
        self._sessions[session.session_id] = session
        return session

    async def get(self, session_id: str) -> Optional[PurchaseSession]:
        return self._sessions.get(session_id)

    async def update(self, session: PurchaseSession) -> PurchaseSession:
        if session.session_id in self._sessions:
            self._sessions[session.session_id] = session
        return session

    async def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


class SessionManager:
    """
    Manages purchase sessions.

    Features:
    - Session creation with a fixed TTL (15 minutes by default)
    - Fail-fast lookup: unknown, expired or already claimed sessions
      raise SessionNotFoundError and are never recreated
    - Claiming, so one session is completed at most once
    """

    def __init__(
        self,
        store: SessionStore,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def create(
        self,
        service_id: str,
        backup_ids: List[str],
        request_data: Dict[str, Any],
        instructions: PaymentInstructions,
        buyer: str,
        max_retries: int,
    ) -> PurchaseSession:
        now = self._clock()
        session = PurchaseSession(
            session_id=str(uuid.uuid4()),
            service_id=service_id,
            backup_ids=list(backup_ids),
            request_data=request_data,
            instructions=instructions,
            buyer=buyer,
            max_retries=max_retries,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        await self.store.create(session)
        logger.info(
            f"Created session {session.session_id} for service {service_id} "
            f"with {len(session.backup_ids)} backups"
        )
        return session

    async def get(self, session_id: str) -> PurchaseSession:
        """
        Get a live session.

        Raises:
            SessionNotFoundError: If the session is unknown or expired
        """
        session = await self.store.get(session_id) if session_id else None
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.is_expired(self._clock()):
            await self.store.delete(session_id)
            logger.info(f"Session {session_id} expired")
            raise SessionNotFoundError(session_id)
        return session

    async def claim(self, session_id: str) -> PurchaseSession:
        """
        Take a session out of ``awaiting_payment`` for completion.

        A second concurrent completion of the same session sees it as
        not found.
        """
        session = await self.get(session_id)
        if session.state != STATE_AWAITING_PAYMENT:
            logger.warning(f"Session {session_id} already being completed ({session.state})")
            raise SessionNotFoundError(session_id)
        session.state = STATE_VERIFYING
        await self.store.update(session)
        return session

    async def expire(self, session_id: str) -> bool:
        """Invalidate a session. Returns False if it was already gone."""
        removed = await self.store.delete(session_id)
        if removed:
            logger.debug(f"Session {session_id} invalidated")
        return removed

    async def cleanup_expired(self) -> int:
        count = await self.store.cleanup_expired(self._clock())
        if count:
            logger.info(f"Removed {count} expired sessions")
        return count
