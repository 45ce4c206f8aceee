"""
Thread-safe frontier of CrawlTargets.

Workers block in ``get`` while the queue is empty but other targets are still in
flight (they may enqueue follow-up work). When the queue is empty and nothing is
in flight the crawl is exhausted and ``get`` returns None to every worker.
"""

import threading
from collections import deque
from typing import Deque, Optional

from jobtrawl.contexts.crawling.models import CrawlTarget


class Frontier:
    def __init__(self):
        self._queue: Deque[CrawlTarget] = deque()
        self._cond = threading.Condition()
        self._in_flight = 0
        self._closed = False

    def put(self, target: CrawlTarget) -> bool:
        """Queue a target. Returns False if the frontier is closed."""
        with self._cond:
            if self._closed:
                return False
            self._queue.append(target)
            self._cond.notify()
            return True

    def get(self) -> Optional[CrawlTarget]:
        """Next target (marked in flight), or None once the frontier is exhausted or closed."""
        with self._cond:
            while not self._queue and self._in_flight > 0 and not self._closed:
                self._cond.wait()
            if self._closed or not self._queue:
                self._cond.notify_all()
                return None
            self._in_flight += 1
            return self._queue.popleft()

    def task_done(self) -> None:
        with self._cond:
            self._in_flight -= 1
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def backlog(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def exhausted(self) -> bool:
        with self._cond:
            return not self._queue and self._in_flight == 0
