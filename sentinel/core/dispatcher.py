"""
MODULE: CALLBACK_DISPATCHER

DESCRIPTION:
    Moves listener callbacks and persistence writes off the detection hot
    path. submit() only enqueues; a single worker thread runs the handlers
    in submission order.

    BUFFER POLICY:
    The queue is unbounded and nothing is ever dropped. When the backlog
    crosses the high-water mark a warning is logged (once per crossing) so
    a stuck listener shows up in the logs instead of silently eating memory.
"""

import logging
import queue
import threading
from typing import Any, Callable, Dict

logger = logging.getLogger("SENTINEL.DISPATCH")

_STOP = object()


class CallbackDispatcher:

    def __init__(self, high_water_mark: int = 1000, name: str = "sentinel-dispatch"):
        self.high_water_mark = high_water_mark
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._above_mark = False

        self._submitted = 0
        self._processed = 0
        self._errors = 0
        self._peak_depth = 0

        self._worker = threading.Thread(target=self._worker_loop, daemon=True, name=name)
        self._worker.start()

    def submit(self, handler: Callable[..., Any], *args, **kwargs) -> bool:
        """Queues handler(*args, **kwargs). Returns False once closed."""
        with self._lock:
            if self._closed:
                logger.warning(f"Dispatcher closed, rejected {getattr(handler, '__name__', handler)}")
                return False
            self._queue.put((handler, args, kwargs))
            self._submitted += 1
            depth = self._queue.qsize()
            self._peak_depth = max(self._peak_depth, depth)
            if depth > self.high_water_mark and not self._above_mark:
                self._above_mark = True
                logger.warning(f"Callback backlog {depth} above high-water mark {self.high_water_mark}")
            elif depth <= self.high_water_mark // 2:
                self._above_mark = False
        return True

    def _worker_loop(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                handler, args, kwargs = item
                try:
                    handler(*args, **kwargs)
                    with self._lock:
                        self._processed += 1
                except Exception as e:
                    with self._lock:
                        self._errors += 1
                    logger.error(f"Callback {getattr(handler, '__name__', handler)} failed: {e}",
                                 exc_info=True)
            finally:
                self._queue.task_done()

    def drain(self):
        """Blocks until every callback submitted so far has run."""
        self._queue.join()

    def close(self, timeout: float = 5.0):
        """Runs the remaining backlog, then stops the worker."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)
        self._worker.join(timeout=timeout)
        logger.info(f"Dispatcher stopped. {self.metrics}")

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "queue_depth": self._queue.qsize(),
                "peak_depth": self._peak_depth,
                "submitted": self._submitted,
                "processed": self._processed,
                "errors": self._errors,
            }
