"""
Session pool: a bounded set of browser identities with usage/error budgets.

Each session pairs a proxy handle with the cookies collected by its browser
views. Sessions are retired once they have been used `max_usage_count` times
or have accumulated `max_error_score` errors; retirement frees a slot that the
next acquire() fills with a fresh identity.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class PoolExhausted(RuntimeError):
    """Raised when the pool is at capacity and every session is in use."""


class SessionOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class Session:
    session_id: str
    proxy: Optional[Dict[str, str]] = None
    usage_count: int = 0
    error_score: int = 0
    storage_state: Optional[Dict[str, Any]] = None
    warmed_up: bool = False
    retired: bool = False
    in_use: bool = False
    retire_reason: str = ""

    def __str__(self) -> str:
        return f"session {self.session_id} (uses={self.usage_count}, errors={self.error_score})"


@dataclass
class _PoolStats:
    created: int = 0
    retired: int = 0
    retire_reasons: Dict[str, int] = field(default_factory=dict)


def _new_session_id() -> str:
    return uuid.uuid4().hex[:12]


class SessionPool:
    """Thread-safe pool of crawl sessions."""

    def __init__(
        self,
        max_pool_size: int = 10,
        max_usage_count: int = 5,
        max_error_score: int = 3,
        proxy_factory: Optional[Callable[[str], Optional[Dict[str, str]]]] = None,
        id_factory: Callable[[], str] = _new_session_id,
    ):
        if max_pool_size < 1:
            raise ValueError("max_pool_size must be >= 1")
        self.max_pool_size = max_pool_size
        self.max_usage_count = max_usage_count
        self.max_error_score = max_error_score
        self._proxy_factory = proxy_factory
        self._id_factory = id_factory
        self._active: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._stats = _PoolStats()

    @classmethod
    def from_config(cls, config: Any, proxy_manager: Any = None) -> "SessionPool":
        return cls(
            max_pool_size=config.get_max_pool_size(),
            max_usage_count=config.get_max_usage_count(),
            max_error_score=config.get_max_error_score(),
            proxy_factory=proxy_manager.proxy_for_session if proxy_manager is not None else None,
        )

    def _create(self) -> Session:
        session_id = self._id_factory()
        while session_id in self._active:
            session_id = self._id_factory()
        proxy = self._proxy_factory(session_id) if self._proxy_factory else None
        session = Session(session_id=session_id, proxy=proxy)
        self._active[session_id] = session
        self._stats.created += 1
        logger.info("Session created: %s (active=%d/%d)", session_id, len(self._active), self.max_pool_size)
        return session

    def acquire(self, prefer: Optional[str] = None, exclude: Iterable[str] = ()) -> Session:
        """
        Hand out an idle session, creating one when none is acceptable.

        `prefer` picks a specific session if it is still active and idle.
        Sessions listed in `exclude` are only reused when the pool is full and
        no other session is idle.
        """
        excluded = set(exclude or ())
        with self._lock:
            if prefer and prefer not in excluded:
                session = self._active.get(prefer)
                if session is not None and not session.in_use:
                    session.in_use = True
                    return session

            idle = [s for s in self._active.values() if not s.in_use]
            for session in idle:
                if session.session_id not in excluded:
                    session.in_use = True
                    return session

            if len(self._active) < self.max_pool_size:
                session = self._create()
                session.in_use = True
                return session

            if idle:
                session = idle[0]
                logger.debug("Pool full; reusing excluded session %s", session.session_id)
                session.in_use = True
                return session

        raise PoolExhausted(
            f"All {self.max_pool_size} sessions are in use"
        )

    def release(self, session: Session, outcome: SessionOutcome) -> bool:
        """Record a task outcome for the session. Returns True if it was retired."""
        with self._lock:
            session.usage_count += 1
            if outcome == SessionOutcome.ERROR:
                session.error_score += 1
            session.in_use = False

            reason = ""
            if session.usage_count >= self.max_usage_count:
                reason = "usage_cap"
            elif session.error_score >= self.max_error_score:
                reason = "error_cap"
            if reason:
                self._retire_locked(session, reason)
                return True
            return False

    def retire(self, session: Session, reason: str = "manual") -> None:
        with self._lock:
            session.in_use = False
            self._retire_locked(session, reason)

    def _retire_locked(self, session: Session, reason: str) -> None:
        if session.retired:
            return
        session.retired = True
        session.retire_reason = reason
        self._active.pop(session.session_id, None)
        self._stats.retired += 1
        self._stats.retire_reasons[reason] = self._stats.retire_reasons.get(reason, 0) + 1
        logger.info(
            "Session retired: %s (reason=%s, uses=%d, errors=%d)",
            session.session_id,
            reason,
            session.usage_count,
            session.error_score,
        )

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._active

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active": len(self._active),
                "in_use": sum(1 for s in self._active.values() if s.in_use),
                "capacity": self.max_pool_size,
                "created": self._stats.created,
                "retired": self._stats.retired,
                "retire_reasons": dict(self._stats.retire_reasons),
            }
