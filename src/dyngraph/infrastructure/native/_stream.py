"""
Stream contexts: ordered asynchronous execution lanes.

A `StreamContext` is bound to one device and owns a single-worker thread
pool, so work submitted to the same stream runs in issue order while the
issuing thread continues. Work on different streams has no ordering
guarantee unless the caller joins them.

Failures inside a lane do not propagate at submission time; the first
failure is re-raised (as `ExecutionError`) by `join()`. Once a lane has
failed, later work on it is skipped until the failure has been reported.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional
import threading

from typing_extensions import Self

from ...domain._errors import ExecutionError, InvalidOperationError
from ...domain.device._device import Device


class StreamContext:
    """
    Ordered asynchronous execution lane bound to a device.

    Parameters
    ----------
    device : Device
        Device this stream issues work for.
    name : Optional[str]
        Label used for the worker thread.
    """

    def __init__(self, device: Device, name: Optional[str] = None) -> None:
        self.device = device
        self.name = name or f"stream-{device}"
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=self.name)
        self._pending: List[Future] = []
        self._error: Optional[ExecutionError] = None
        self._lock = threading.Lock()
        self._closed = False

    def __repr__(self) -> str:
        return f"StreamContext(device='{self.device}', name='{self.name}')"

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, job: Callable[[], None]) -> Future:
        """
        Enqueue `job` on this lane.

        Raises
        ------
        InvalidOperationError
            If the stream has been closed.
        """
        if self._closed:
            raise InvalidOperationError(f"{self!r} is closed.")

        def run() -> None:
            with self._lock:
                if self._error is not None:
                    return
            try:
                job()
            except ExecutionError as e:
                with self._lock:
                    if self._error is None:
                        self._error = e

        fut = self._executor.submit(run)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(fut)
        return fut

    def join(self) -> None:
        """
        Block until all submitted work has finished.

        Raises
        ------
        ExecutionError
            The first failure recorded on this lane since the last join.
        """
        with self._lock:
            pending = list(self._pending)
        for fut in pending:
            fut.result()
        with self._lock:
            self._pending = []
            error, self._error = self._error, None
        if error is not None:
            raise error

    synchronize = join

    def close(self) -> None:
        """Join outstanding work and shut the lane down."""
        if self._closed:
            return
        try:
            self.join()
        finally:
            self._closed = True
            self._executor.shutdown(wait=True)
