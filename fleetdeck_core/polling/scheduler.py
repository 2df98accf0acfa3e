from __future__ import annotations

import threading
from typing import Any, Callable

from fleetdeck_core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_S = 5.0
DEFAULT_DEBOUNCE_S = 0.3


class PollingScheduler:
    """Run a task on a fixed interval from a daemon thread.

    The scheduler owns its timer: ``stop()`` ends polling and no task starts
    after it returns. ``trigger()`` forces the next run without waiting for the
    interval to elapse.
    """

    def __init__(
        self,
        task: Callable[[], Any],
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        *,
        name: str = "fleetdeck-poller",
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._task = task
        self._interval_s = interval_s
        self._name = name
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._runs = 0

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    @property
    def runs(self) -> int:
        with self._lock:
            return self._runs

    def start(self) -> None:
        thread = self._thread
        if thread is not None:
            if not self._stop.is_set():
                return
            if thread is threading.current_thread():
                raise RuntimeError("Cannot restart polling from its own task")
            # a loop stopped from inside its task may still be finishing
            thread.join()
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.info(
            "Polling started",
            extra={"read_model": self._name, "interval_s": self._interval_s},
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=timeout)
        if not thread.is_alive():
            self._thread = None

    def trigger(self) -> None:
        self._wake.set()

    def _run(self) -> None:
        while not self._stop.is_set():
            self._run_task()
            self._wake.wait(self._interval_s)
            self._wake.clear()

    def _run_task(self) -> None:
        if self._stop.is_set():
            return
        try:
            self._task()
        except Exception as exc:
            logger.warning(
                "Polling task failed",
                extra={"read_model": self._name, "error_message": str(exc)},
            )
        finally:
            with self._lock:
                self._runs += 1


class Debouncer:
    """Delay a call until input has been quiet for ``delay_s`` seconds."""

    def __init__(
        self,
        func: Callable[..., Any],
        delay_s: float = DEFAULT_DEBOUNCE_S,
    ) -> None:
        self._func = func
        self._delay_s = delay_s
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._pending: tuple[tuple[Any, ...], dict[str, Any]] | None = None

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = (args, kwargs)
            self._timer = threading.Timer(self._delay_s, self._fire)
            self._timer.daemon = True
            self._timer.start()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def flush(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._fire()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._pending = None

    def _fire(self) -> None:
        with self._lock:
            pending = self._pending
            self._pending = None
            self._timer = None
        if pending is None:
            return
        args, kwargs = pending
        self._func(*args, **kwargs)
