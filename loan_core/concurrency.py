"""
Concurrency Control Module

Per-key mutual exclusion for loan and account writes, plus automatic retry
of writes that lost an optimistic-version race.
"""

import threading
from contextlib import contextmanager, ExitStack
from typing import Callable, Dict, Iterable, TypeVar

from .exceptions import ConcurrencyConflict
from .logging_config import get_logger

T = TypeVar("T")

logger = get_logger("loan_core.concurrency")


class LockManager:
    """
    Registry of re-entrant locks keyed by entity

    Two writers on the same key serialize; writers on different keys proceed
    in parallel. Keys are namespaced strings such as "loan:<id>".

    Each entry counts the threads holding or waiting on it and is dropped
    when the count reaches zero, so the registry only holds keys in use.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
                self._users[key] = 0
            self._users[key] += 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def lock(self, key: str):
        """Hold the lock for a single key"""
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    @contextmanager
    def lock_many(self, keys: Iterable[str]):
        """Hold several keys, always acquired in sorted order to avoid deadlock"""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.lock(key))
            yield

    def lock_count(self) -> int:
        """Number of keys currently held or waited on"""
        with self._registry_lock:
            return len(self._locks)


def loan_key(loan_id: str) -> str:
    return f"loan:{loan_id}"


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def retry_on_conflict(operation: Callable[[], T], max_retries: int = 3) -> T:
    """
    Run operation, retrying when it raises ConcurrencyConflict

    Every write is atomic, so a conflicted attempt left no trace and can
    simply be re-run against fresh state. Other errors propagate at once.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except ConcurrencyConflict as e:
            attempt += 1
            if attempt > max_retries:
                raise
            logger.warning(f"Retrying after concurrency conflict (attempt {attempt}/{max_retries}): {e}")

