"""
Request time budget and per-conversation serialization.
"""
from contextlib import contextmanager
from typing import Dict, Optional
import threading
import time

from ci_rag.errors import UpstreamError


class Deadline:
    """
    Wall-clock budget for one pipeline invocation.

    Every outbound call gets remaining() as its timeout; check() raises
    UpstreamError once the budget is spent. Nothing retries.
    """

    def __init__(self, budget_seconds: Optional[float]):
        self.budget_seconds = budget_seconds
        self.started_at = time.monotonic()

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded."""
        if self.budget_seconds is None:
            return None
        return max(0.0, self.budget_seconds - (time.monotonic() - self.started_at))

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, step: str) -> None:
        if self.expired():
            raise UpstreamError(f"Request time budget of {self.budget_seconds}s exhausted before {step}")


class ConversationLocks:
    """
    One lock per conversation id, so turns on the same conversation run one at a time.

    Locks are created on demand and dropped when no request holds or waits on them.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, conversation_id: str, timeout: Optional[float] = None):
        """Acquire the conversation's lock, raising UpstreamError if it cannot be had within timeout."""
        with self._guard:
            lock = self._locks.setdefault(conversation_id, threading.Lock())
            self._users[conversation_id] = self._users.get(conversation_id, 0) + 1

        try:
            acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
            if not acquired:
                raise UpstreamError(f"Timed out waiting for conversation {conversation_id}")
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._users[conversation_id] -= 1
                if self._users[conversation_id] == 0:
                    del self._users[conversation_id]
                    del self._locks[conversation_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
