"""Opaque session tokens resolved server-side to an identity and role."""
from __future__ import annotations

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """A successful login.

    Fields:
        token: Opaque credential (256 bits, URL-safe).
        user_id: Owning user.
        is_admin: Role snapshot taken from the admin allow-list at login.
        created_at / last_seen: Epoch seconds, used for absolute / idle expiry.
    """
    token: str
    user_id: str
    is_admin: bool = False
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)


class SessionStore(ABC):
    """create / resolve / destroy interface; swap the backing store behind it."""

    @abstractmethod
    def create(self, user_id: str) -> Session: ...

    @abstractmethod
    def resolve(self, token: Optional[str]) -> Optional[Session]: ...

    @abstractmethod
    def destroy(self, token: Optional[str]) -> bool: ...

    @abstractmethod
    def destroy_user(self, user_id: str) -> int: ...


class InMemorySessionStore(SessionStore):
    """Process-local session table. A restart invalidates every session."""

    def __init__(
        self,
        admins: Iterable[str] = (),
        *,
        idle_seconds: float = 0,
        max_age_seconds: float = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.admins = frozenset(admins)
        self.idle_seconds = idle_seconds
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admins

    def create(self, user_id: str) -> Session:
        now = self._clock()
        session = Session(
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            is_admin=self.is_admin(user_id),
            created_at=now,
            last_seen=now,
        )
        with self._lock:
            self._sessions[session.token] = session
        logger.debug("Session created for %s (admin=%s)", user_id, session.is_admin)
        return session

    def resolve(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        now = self._clock()
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            if self._expired(session, now):
                del self._sessions[token]
                logger.info("Session for %s expired", session.user_id)
                return None
            session.last_seen = now
            return session

    def destroy(self, token: Optional[str]) -> bool:
        if not token:
            return False
        with self._lock:
            return self._sessions.pop(token, None) is not None

    def destroy_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [t for t, s in self._sessions.items() if s.user_id == user_id]
            for t in doomed:
                del self._sessions[t]
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _expired(self, session: Session, now: float) -> bool:
        if self.max_age_seconds and now - session.created_at > self.max_age_seconds:
            return True
        if self.idle_seconds and now - session.last_seen > self.idle_seconds:
            return True
        return False
