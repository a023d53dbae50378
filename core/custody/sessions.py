"""In-memory unlock sessions.

A `SessionStore` is constructed once at process start and handed to the
custody service. Cached secrets are re-encrypted under a per-session
ephemeral key (`SessionCipher`) so they are useless outside this process and
outside the session lifetime.

Expiry is enforced lazily on every read and, additionally, by an optional
periodic sweep task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from threading import RLock
from typing import Callable, Optional

from core.custody.cipher import SessionCipher
from core.types import Chain

logger = logging.getLogger(__name__)


@dataclass
class Session:
    user_id: int
    unlocked_at: float  # unix seconds
    expires_at: float  # unix seconds
    encrypted_keys: dict[Chain, str] = field(default_factory=dict, repr=False)
    cipher: SessionCipher = field(default_factory=SessionCipher, repr=False)

    def is_expired(self, now: float) -> bool:
        return self.expires_at < now


@dataclass(frozen=True)
class SessionInfo:
    """Session metadata without sensitive data."""

    active: bool
    expires_in_seconds: float
    chains: tuple[Chain, ...] = ()


class SessionStore:
    """Thread-safe, time-bounded cache of unlocked wallet secrets."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30 * 60,
        max_sessions: int = 10_000,
        cleanup_interval_seconds: float = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_sessions = max_sessions
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._sessions: dict[int, Session] = {}
        self._lock = RLock()
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ---- lifecycle

    def create(self, user_id: int, timeout_seconds: Optional[float] = None) -> Session:
        """Create (or replace) the session for a user with a fresh ephemeral key."""
        now = self._clock()
        with self._lock:
            if len(self._sessions) >= self.max_sessions and user_id not in self._sessions:
                self._evict_locked(now)
            session = Session(
                user_id=user_id,
                unlocked_at=now,
                expires_at=now + (timeout_seconds if timeout_seconds is not None else self.timeout_seconds),
            )
            self._sessions[user_id] = session
        return session

    def _evict_locked(self, now: float) -> None:
        self._sweep_locked(now)
        if len(self._sessions) >= self.max_sessions:
            oldest = min(self._sessions.values(), key=lambda s: s.unlocked_at)
            del self._sessions[oldest.user_id]
            logger.info("Evicted oldest session for user %s (session cap %d)", oldest.user_id, self.max_sessions)

    def get(self, user_id: int) -> Optional[Session]:
        """Return the live session, dropping it if it has expired."""
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return None
            if session.is_expired(self._clock()):
                del self._sessions[user_id]
                return None
            return session

    def refresh(self, user_id: int, timeout_seconds: Optional[float] = None) -> bool:
        with self._lock:
            session = self.get(user_id)
            if session is None:
                return False
            session.expires_at = self._clock() + (
                timeout_seconds if timeout_seconds is not None else self.timeout_seconds
            )
            return True

    def lock(self, user_id: int) -> None:
        with self._lock:
            self._sessions.pop(user_id, None)

    def lock_all(self) -> None:
        with self._lock:
            self._sessions.clear()

    # ---- secrets

    def store_key(self, user_id: int, chain: Chain, secret: str) -> bool:
        with self._lock:
            session = self.get(user_id)
            if session is None:
                return False
            session.encrypted_keys[chain] = session.cipher.encrypt(secret)
            return True

    def get_key(self, user_id: int, chain: Chain) -> Optional[str]:
        with self._lock:
            session = self.get(user_id)
            if session is None:
                return None
            encrypted = session.encrypted_keys.get(chain)
            if encrypted is None:
                return None
            return session.cipher.decrypt(encrypted)

    def has_key(self, user_id: int, chain: Chain) -> bool:
        with self._lock:
            session = self.get(user_id)
            return session is not None and chain in session.encrypted_keys

    # ---- introspection

    def info(self, user_id: int) -> SessionInfo:
        with self._lock:
            session = self.get(user_id)
            if session is None:
                return SessionInfo(active=False, expires_in_seconds=0)
            return SessionInfo(
                active=True,
                expires_in_seconds=max(0.0, session.expires_at - self._clock()),
                chains=tuple(session.encrypted_keys),
            )

    def time_remaining_minutes(self, user_id: int) -> int:
        info = self.info(user_id)
        return int(info.expires_in_seconds // 60)

    # ---- active expiry

    def _sweep_locked(self, now: float) -> int:
        expired = [uid for uid, s in self._sessions.items() if s.is_expired(now)]
        for uid in expired:
            del self._sessions[uid]
        return len(expired)

    def sweep_expired(self) -> int:
        """Drop every expired session. Returns the number removed."""
        with self._lock:
            removed = self._sweep_locked(self._clock())
        if removed:
            logger.debug("Session sweep removed %d expired session(s)", removed)
        return removed

    async def _cleanup_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.cleanup_interval_seconds)
                self.sweep_expired()
        except asyncio.CancelledError:
            logger.debug("Session cleanup cancelled")
            raise

    def start_cleanup(self) -> None:
        """Start the periodic sweep on the running event loop (idempotent)."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
