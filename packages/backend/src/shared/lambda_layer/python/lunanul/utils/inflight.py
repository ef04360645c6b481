import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Tuple

from aws_lambda_powertools import Logger

from ..models.errors import AlreadyProcessingError

logger = Logger()


class InFlightGuard:
    """
    Serializes consuming actions per (user_id, feature_key).

    In "queue" mode a second caller waits for the first to finish (up to
    `timeout` seconds when set). In "reject" mode it fails immediately with
    AlreadyProcessingError.

    A key's lock lives only while someone holds or waits for it, so a
    long-lived guard does not grow with the number of users seen.
    """

    QUEUE = "queue"
    REJECT = "reject"

    def __init__(self, mode: str = QUEUE, timeout: Optional[float] = None):
        if mode not in (self.QUEUE, self.REJECT):
            raise ValueError(f"Unknown in-flight mode: {mode}")
        self.mode = mode
        self.timeout = timeout
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._users: Dict[Tuple[str, str], int] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        """Number of keys currently held or waited on"""
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, key: Tuple[str, str]) -> threading.Lock:
        with self._registry_lock:
            self._users[key] = self._users.get(key, 0) + 1
            return self._locks.setdefault(key, threading.Lock())

    def _checkin(self, key: Tuple[str, str]) -> None:
        with self._registry_lock:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def _acquire(self, lock: threading.Lock) -> bool:
        if self.mode == self.REJECT:
            return lock.acquire(blocking=False)
        if self.timeout is not None:
            return lock.acquire(timeout=self.timeout)
        return lock.acquire()

    @contextmanager
    def hold(self, user_id: str, feature_key: str) -> Iterator[None]:
        key = (user_id, feature_key)
        lock = self._checkout(key)
        try:
            if not self._acquire(lock):
                logger.warning(f"Rejected concurrent {feature_key} action for user {user_id}")
                raise AlreadyProcessingError(user_id, feature_key)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


class ReplayCache:
    """Bounded map of recent results keyed by (user_id, feature_key, idempotency_key)"""

    def __init__(self, max_size: int = 256):
        self.max_size = max_size
        self._entries: "OrderedDict[Tuple[str, str, str], Any]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Tuple[str, str, str]) -> Optional[Any]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: Tuple[str, str, str], value: Any) -> None:
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def discard(self, key: Tuple[str, str, str]) -> None:
        with self._lock:
            self._entries.pop(key, None)
