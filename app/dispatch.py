"""Detached execution of post-write side effects."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable


logger = logging.getLogger("recordbase.dispatch")

Task = Callable[[], Any]


class InlineDispatcher:
    """Runs each task on the calling thread with the same error contract."""

    def __init__(self) -> None:
        self._stats = {"submitted": 0, "completed": 0, "failed": 0, "dropped": 0}

    def submit(self, task: Task, name: str = "task") -> bool:
        self._stats["submitted"] += 1
        try:
            task()
            self._stats["completed"] += 1
        except Exception:
            self._stats["failed"] += 1
            logger.exception("dispatch_failed task=%s", name)
        return True

    def join(self, timeout: float | None = None) -> bool:
        return True

    def stats(self) -> dict:
        return dict(self._stats)

    def shutdown(self) -> None:
        return None


class BackgroundDispatcher:
    """Bounded queue drained by daemon worker threads.

    ``submit`` never blocks: a full queue drops the task and returns ``False``.
    Task failures are logged and counted, never raised to the submitter.
    """

    def __init__(self, max_pending: int = 256, workers: int = 2) -> None:
        self._queue: "queue.Queue[tuple[str, Task] | None]" = queue.Queue(maxsize=max(1, max_pending))
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._inflight = 0
        self._stats = {"submitted": 0, "completed": 0, "failed": 0, "dropped": 0}
        self._threads = []
        for idx in range(max(1, workers)):
            thread = threading.Thread(target=self._run, name=f"recordbase-dispatch-{idx}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def submit(self, task: Task, name: str = "task") -> bool:
        with self._lock:
            try:
                self._queue.put_nowait((name, task))
            except queue.Full:
                self._stats["dropped"] += 1
                logger.warning("dispatch_dropped task=%s pending=%s", name, self._queue.qsize())
                return False
            self._inflight += 1
            self._stats["submitted"] += 1
        return True

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                self._queue.task_done()
                return
            name, task = item
            ok = True
            try:
                task()
            except Exception:
                ok = False
                logger.exception("dispatch_failed task=%s", name)
            finally:
                with self._lock:
                    self._stats["completed" if ok else "failed"] += 1
                    self._inflight -= 1
                    if self._inflight == 0:
                        self._idle.notify_all()
                self._queue.task_done()

    def join(self, timeout: float | None = None) -> bool:
        """Wait until every submitted task has finished."""
        with self._lock:
            return self._idle.wait_for(lambda: self._inflight == 0, timeout=timeout)

    def stats(self) -> dict:
        with self._lock:
            out = dict(self._stats)
            out["pending"] = self._inflight
        return out

    def shutdown(self, timeout: float | None = 5.0) -> None:
        for _ in self._threads:
            self._queue.put(None)
        for thread in self._threads:
            thread.join(timeout)
