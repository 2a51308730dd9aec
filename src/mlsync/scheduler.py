"""Thread pool for concurrent folder scans (standard library).

`imap_unordered_bounded` keeps at most `max_pending` scans in flight and stops
submitting new ones once the stop event is set. Running the iterator to
exhaustion is the join point: when it ends, every submitted scan is finished.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, Future, wait, FIRST_COMPLETED
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple
import threading

from loguru import logger


class WorkerPool:
    def __init__(self, max_workers: int) -> None:
        self._max_workers = max(1, max_workers)
        self._exe = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="mlsync-scan")

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def imap_unordered_bounded(
        self,
        fn: Callable[[Any], Any],
        iterable: Iterable[Any],
        max_pending: int,
        *,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[Tuple[Any, Any]]:
        """Yield (item, fn(item)) in completion order.

        Exceptions raised by fn propagate out of the iterator. Items not yet
        submitted when stop_event is set are never run; in-flight ones are
        still drained.
        """
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")
        logger.debug(f"scan window: bound={max_pending} workers={self._max_workers}")

        source = iter(iterable)
        in_flight: Dict[Future, Any] = {}

        def fill() -> None:
            while len(in_flight) < max_pending:
                if stop_event is not None and stop_event.is_set():
                    return
                item = next(source, _END)
                if item is _END:
                    return
                in_flight[self._exe.submit(fn, item)] = item

        fill()
        while in_flight:
            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                item = in_flight.pop(fut)
                yield item, fut.result()
            fill()

    def shutdown(self, wait: bool = True) -> None:
        self._exe.shutdown(wait=wait)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown(wait=True)


_END = object()
