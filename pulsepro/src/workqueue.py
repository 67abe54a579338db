from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Hashable


class WorkQueue:
    """De-duplicating work queue with delayed requeues and retry backoff.

    Guarantees:

    * a key is handed to at most one worker at a time; adding a key that is
      being processed marks it dirty and it is re-delivered after ``done``;
    * a key waiting in the queue is never queued twice;
    * ``add_after`` replaces any earlier schedule for the same key, so the most
      recent decision about when to reconcile next wins.

    Retry delays grow as ``base * 2 ** (attempt - 1)`` up to ``max_delay``
    and reset on ``forget``.
    """

    def __init__(
        self,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._delayed: dict[Hashable, float] = {}
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._delayed)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _enqueue_locked(self, key: Hashable) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.append(key)
            self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._enqueue_locked(key)

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            self._delayed[key] = self._clock() + delay_seconds
            self._cond.notify()

    def backoff(self, key: Hashable) -> float:
        """Schedule a retry for *key* and return the delay used."""
        with self._cond:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt
        delay = min(self.backoff_max_seconds, self.backoff_base_seconds * 2 ** (attempt - 1))
        self.add_after(key, delay)
        return delay

    def failures(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys to the queue; return seconds until the next one."""
        now = self._clock()
        nearest: float | None = None
        for key, due_at in list(self._delayed.items()):
            if due_at <= now:
                del self._delayed[key]
                self._enqueue_locked(key)
            elif nearest is None or due_at - now < nearest:
                nearest = due_at - now
        return nearest

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Return the next ready key, or ``None`` on timeout or shutdown."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key

                wait: float | None = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(timeout=wait)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        """Wake every waiting worker and stop handing out keys; further adds are ignored."""
        with self._cond:
            self._shutting_down = True
            self._delayed.clear()
            self._cond.notify_all()
