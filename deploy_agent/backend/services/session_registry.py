from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from deploy_agent.backend.core.errors import InternalFault, SessionNotFound
from deploy_agent.backend.core.rwlock import ReadWriteLock
from deploy_agent.backend.models.session import Session

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SessionRegistry:
    """
    In-memory table: refresh fingerprint -> Session.

    Lookups share a read lock; create/revoke/rotate/sweep take the write lock.
    Only fingerprints are stored, so the table alone cannot be used to mint or
    replay a refresh token.

    Owns its background sweeper: start_sweeper() once, shutdown() once.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self.clock = clock
        self._lock = ReadWriteLock()
        self._sessions: Dict[str, Session] = {}

        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()

    # ---- 등록 / 조회 ----
    def create(
        self,
        identity: str,
        refresh_id: str,
        user_agent: Optional[str] = None,
        *,
        created_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        ts = now or self.clock()
        session = Session(
            identity=identity,
            refresh_id=refresh_id,
            created_at=created_at or ts,
            last_used_at=ts,
            user_agent=user_agent,
        )
        with self._lock.write():
            if refresh_id in self._sessions:
                raise InternalFault("refresh id collision")
            self._sessions[refresh_id] = session
        return session

    def lookup(self, refresh_id: str) -> Optional[Session]:
        with self._lock.read():
            return self._sessions.get(refresh_id)

    # ---- 회전 ----
    def rotate(
        self,
        old_refresh_id: str,
        new_refresh_id: str,
        user_agent: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Session:
        """
        Replace the old entry with a new one in a single write section.
        Of two callers rotating the same entry, the second gets SessionNotFound.
        created_at is carried forward; last_used_at becomes now.
        """
        ts = now or self.clock()
        with self._lock.write():
            if new_refresh_id in self._sessions:
                raise InternalFault("refresh id collision")
            old = self._sessions.pop(old_refresh_id, None)
            if old is None:
                raise SessionNotFound("session already rotated or revoked")
            new = Session(
                identity=old.identity,
                refresh_id=new_refresh_id,
                created_at=old.created_at,
                last_used_at=ts,
                user_agent=user_agent if user_agent is not None else old.user_agent,
            )
            self._sessions[new_refresh_id] = new
        return new

    # ---- 폐기 ----
    def revoke(self, refresh_id: str) -> bool:
        """Idempotent. True if an entry was removed."""
        with self._lock.write():
            return self._sessions.pop(refresh_id, None) is not None

    def revoke_all_for(self, identity: str) -> int:
        with self._lock.write():
            doomed = [k for k, s in self._sessions.items() if s.identity == identity]
            for k in doomed:
                del self._sessions[k]
        if doomed:
            logger.info("revoked %d session(s) for %s", len(doomed), identity)
        return len(doomed)

    def sweep(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """Remove every session older than max_age. Returns the number removed."""
        ts = now or self.clock()
        with self._lock.write():
            doomed = [k for k, s in self._sessions.items() if s.is_expired(ts, max_age)]
            for k in doomed:
                del self._sessions[k]
        return len(doomed)

    # ---- 진단 ----
    def count(self) -> int:
        with self._lock.read():
            return len(self._sessions)

    def count_for(self, identity: str) -> int:
        with self._lock.read():
            return sum(1 for s in self._sessions.values() if s.identity == identity)

    def sessions_for(self, identity: str) -> List[Session]:
        with self._lock.read():
            found = [s for s in self._sessions.values() if s.identity == identity]
        return sorted(found, key=lambda s: s.created_at)

    # ---- 백그라운드 정리 ----
    def start_sweeper(self, interval: timedelta, max_age: timedelta) -> None:
        with self._lifecycle_lock:
            if self._sweeper is not None:
                raise RuntimeError("session sweeper already started")
            self._stop.clear()
            self._sweeper = threading.Thread(
                target=self._run_sweeper,
                args=(interval.total_seconds(), max_age),
                name="session-sweeper",
                daemon=True,
            )
            self._sweeper.start()
        logger.info(
            "session sweeper started (interval=%ss, max_age=%ss)",
            int(interval.total_seconds()),
            int(max_age.total_seconds()),
        )

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lifecycle_lock:
            thread, self._sweeper = self._sweeper, None
            self._stop.set()
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("session sweeper did not stop within %.1fs", timeout)
            else:
                logger.info("session sweeper stopped")

    @property
    def sweeper_running(self) -> bool:
        t = self._sweeper
        return t is not None and t.is_alive()

    def _run_sweeper(self, interval_seconds: float, max_age: timedelta) -> None:
        while not self._stop.wait(interval_seconds):
            try:
                removed = self.sweep(max_age)
                if removed:
                    logger.info("swept %d expired session(s)", removed)
            except Exception:
                # a failed pass must not kill the thread; retry next tick
                logger.exception("session sweep failed")
