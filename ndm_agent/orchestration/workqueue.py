"""
De-duplicating work queue keyed by record name.
A name added while it is being processed is handed out again once the
current worker calls done(), so one record is never handled by two workers
at the same time.
"""
import collections
import threading
from typing import Deque, Optional, Set


class WorkQueue:
    def __init__(self):
        self._cond = threading.Condition()
        self._queue: Deque[str] = collections.deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._timers: Set[threading.Timer] = set()
        self._shutdown = False

    def add(self, name: str) -> None:
        with self._cond:
            if self._shutdown or name in self._dirty:
                return
            self._dirty.add(name)
            if name not in self._processing:
                self._queue.append(name)
                self._cond.notify()

    def add_after(self, name: str, delay: float) -> None:
        if delay <= 0:
            self.add(name)
            return

        def fire() -> None:
            with self._cond:
                self._timers.discard(timer)
            self.add(name)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._cond:
            if self._shutdown:
                return
            self._timers.add(timer)
        timer.start()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next name to process, or None on timeout or shutdown."""
        with self._cond:
            if not self._queue and not self._shutdown:
                self._cond.wait(timeout)
            if self._shutdown or not self._queue:
                return None
            name = self._queue.popleft()
            self._dirty.discard(name)
            self._processing.add(name)
            return name

    def done(self, name: str) -> None:
        with self._cond:
            self._processing.discard(name)
            if name in self._dirty:
                self._queue.append(name)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
