"""
In-memory session store for the refinement orchestrator.
"""
from __future__ import annotations

import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from .errors import ValidationError
from .models import RefinementSession

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex}"


class SessionStore:
    """
    Keyed storage for active refinement sessions.

    Sessions handed out by ``get`` and ``update`` are detached copies, so the only way
    to change stored state is through ``update``. Sessions live for the lifetime of the
    process; nothing is persisted.
    """

    def __init__(self, id_factory: Callable[[], str] = new_session_id) -> None:
        self._sessions: Dict[str, RefinementSession] = {}
        self._lock = ReadWriteLock()
        self._id_factory = id_factory
        self._session_locks: Dict[str, threading.Lock] = {}
        self._session_locks_guard = threading.Lock()

    def new_id(self) -> str:
        return self._id_factory()

    def create(self, session: RefinementSession) -> str:
        with self._lock.write():
            if not session.session_id:
                session.session_id = self._id_factory()
            if session.session_id in self._sessions:
                raise ValidationError(f"Session '{session.session_id}' already exists", code="session_exists")
            self._sessions[session.session_id] = copy.deepcopy(session)
            with self._session_locks_guard:
                self._session_locks[session.session_id] = threading.Lock()
        logger.debug("Stored session %s", session.session_id)
        return session.session_id

    def get(self, session_id: str) -> RefinementSession:
        with self._lock.read():
            session = self._sessions.get(session_id)
            if session is None:
                raise _not_found(session_id)
            return copy.deepcopy(session)

    def update(self, session_id: str, mutator: Callable[[RefinementSession], None]) -> RefinementSession:
        """Apply ``mutator`` to the stored session atomically and return a copy of the result."""
        with self._lock.write():
            current = self._sessions.get(session_id)
            if current is None:
                raise _not_found(session_id)
            working = copy.deepcopy(current)
            mutator(working)
            # thread handles are bound to the session for its whole life
            working.session_id = current.session_id
            working.thread_id = current.thread_id
            self._sessions[session_id] = working
            return copy.deepcopy(working)

    def count(self) -> int:
        with self._lock.read():
            return len(self._sessions)

    def __len__(self) -> int:
        return self.count()

    @contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        """
        Hold the single-writer lock for one session across a whole operation.

        Only sessions that were created have a lock; unknown ids raise not-found.
        """
        lock = self._lock_for(session_id)
        with lock:
            yield

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._session_locks_guard:
            lock: Optional[threading.Lock] = self._session_locks.get(session_id)
        if lock is None:
            raise _not_found(session_id)
        return lock


def _not_found(session_id: str) -> ValidationError:
    return ValidationError(
        f"session {session_id} not found",
        code="session_not_found",
        details={"session_id": session_id},
    )
