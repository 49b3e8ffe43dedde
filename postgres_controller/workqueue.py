"""
Rate-limited work queue

Delivers resource keys to worker threads with the guarantees the reconcile
loop depends on:

- a key is pending at most once, no matter how often it is added
- a key handed out by get() is not handed out again until done() is called
  for it; adds that arrive meanwhile are deferred until then
- failed keys come back after an exponentially growing delay
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, Optional, Set, Tuple

from postgres_controller.settings import Config

logger = logging.getLogger("postgres-controller.workqueue")


def exponential_backoff(base: float = 0.005, cap: float = 1000.0) -> Callable[[int], float]:
    """
    Build a backoff function

    Args:
        base: Delay for the first failure, in seconds
        cap: Upper bound for any delay

    Returns:
        Function mapping the number of previous failures to a delay
    """
    def backoff(failures: int) -> float:
        try:
            delay = base * (2 ** failures)
        except OverflowError:
            return cap
        return min(delay, cap)
    return backoff


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how fast a failing key is retried"""
    max_retries: int = 15
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_retries=Config.MAX_RETRIES,
            backoff=exponential_backoff(Config.RETRY_BACKOFF_BASE, Config.RETRY_BACKOFF_MAX),
        )


class WorkQueue:
    """Deduplicating FIFO of keys with per-key mutual exclusion and backoff"""

    def __init__(self, name: str = "", policy: Optional[RetryPolicy] = None):
        self.name = name
        self.policy = policy or RetryPolicy()
        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._failures: Dict[Hashable, int] = {}
        self._timers: Set[threading.Timer] = set()
        self._shutting_down = False

    def add(self, key: Hashable):
        """Enqueue key unless it is already pending"""
        with self._cond:
            if self._shutting_down:
                return
            if key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                # Delivered again once the current holder calls done()
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self) -> Tuple[Optional[Hashable], bool]:
        """
        Block until a key is available

        Returns:
            Tuple of (key, shutting_down); once the queue is shut down and
            drained this returns (None, True)
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key, False

    def done(self, key: Hashable):
        """Release key; re-deliver it if it was added while in flight"""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def forget(self, key: Hashable):
        """Clear the failure count of key"""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def when(self, key: Hashable) -> float:
        """Record a failure for key and return the delay before its retry"""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return self.policy.backoff(failures)

    def add_rate_limited(self, key: Hashable):
        """Enqueue key after its backoff delay"""
        self.add_after(key, self.when(key))

    def add_after(self, key: Hashable, delay: float):
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            timer = threading.Timer(delay, self._fire, args=(key,))
            timer.daemon = True
            self._timers.add(timer)
            timer.start()

    def _fire(self, key: Hashable):
        with self._cond:
            self._timers = {t for t in self._timers if t.is_alive() and t is not threading.current_thread()}
        self.add(key)

    def shut_down(self):
        """Stop intake; get() drains what is pending, then reports shutdown"""
        with self._cond:
            self._shutting_down = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()
        logger.info(f"Work queue {self.name!r} shutting down")

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self):
        with self._cond:
            return len(self._queue)
