"""Global OCR worker pool with round-robin document lanes.

All documents share one fixed set of worker threads. Each document submits
its passes to its own lane, and idle workers take the next task from the
lanes in turn, so a large document cannot starve a small one queued behind
it.
"""

import threading
from collections import OrderedDict, deque
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)


class WorkerPool:
    """Fixed-size thread pool scheduling tasks fairly across lanes.

    Args:
        workers: Number of worker threads.
        name: Thread name prefix.
    """

    def __init__(self, workers: int = 4, name: str = "ocr") -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.workers = workers
        self._lanes: OrderedDict[str, deque[tuple[Future, Callable[[], Any]]]] = OrderedDict()
        self._cv = threading.Condition()
        self._shutdown = False
        self._threads = [
            threading.Thread(target=self._work, name=f"{name}-{i}", daemon=True)
            for i in range(workers)
        ]
        for thread in self._threads:
            thread.start()

    def submit(self, lane: str, fn: Callable[[], Any]) -> Future:
        """Queue a task on a lane.

        Args:
            lane: Lane name, usually the document id.
            fn: Zero-argument callable to run.

        Returns:
            Future completed with the callable's result or exception.

        Raises:
            RuntimeError: If the pool has been shut down.
        """
        future: Future = Future()
        with self._cv:
            if self._shutdown:
                raise RuntimeError("WorkerPool is shut down")
            self._lanes.setdefault(lane, deque()).append((future, fn))
            self._cv.notify()
        return future

    def cancel_lane(self, lane: str) -> int:
        """Cancel every queued, not yet started task of a lane.

        Returns:
            Number of tasks cancelled. Running tasks are unaffected.
        """
        with self._cv:
            queued = self._lanes.pop(lane, deque())
        for future, _ in queued:
            future.cancel()
        return len(queued)

    def pending(self, lane: str | None = None) -> int:
        with self._cv:
            if lane is not None:
                return len(self._lanes.get(lane, ()))
            return sum(len(q) for q in self._lanes.values())

    def _next_task(self) -> tuple[Future, Callable[[], Any]] | None:
        # Take from the first non-empty lane, then move it to the back.
        for lane in list(self._lanes):
            queue = self._lanes[lane]
            if queue:
                task = queue.popleft()
                self._lanes.move_to_end(lane)
                if not queue:
                    del self._lanes[lane]
                return task
            del self._lanes[lane]
        return None

    def _work(self) -> None:
        while True:
            with self._cv:
                task = self._next_task()
                while task is None and not self._shutdown:
                    self._cv.wait()
                    task = self._next_task()
                if task is None:
                    return
            future, fn = task
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn())
            except BaseException as exc:
                future.set_exception(exc)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; queued tasks still run before workers exit."""
        with self._cv:
            self._shutdown = True
            self._cv.notify_all()
        if wait:
            for thread in self._threads:
                thread.join()
        logger.debug("WorkerPool shut down")
