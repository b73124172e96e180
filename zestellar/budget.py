from __future__ import annotations

import threading
import time
from typing import Callable


class CancelToken:
    """Thread-safe cancellation flag that can be set from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __call__(self) -> bool:
        return self._event.is_set()


class SolveBudget:
    """Shared stop conditions for one solve.

    Combines the wall-clock deadline, the quad-count budget, external
    cancellation and the "good enough" signal raised once a match reaches
    the keep threshold. Workers poll :meth:`should_stop` before each unit of
    work.
    """

    def __init__(
        self,
        *,
        time_limit: float | None = None,
        max_quads: int = 0,
        token: CancelToken | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._start = clock()
        self._deadline = self._start + float(time_limit) if time_limit and time_limit > 0 else None
        self._max_quads = max(0, int(max_quads))
        self._quads = 0
        self._lock = threading.Lock()
        self._token = token or CancelToken()
        self._solved = threading.Event()

    @property
    def aborted(self) -> bool:
        return self._token.cancelled

    @property
    def solved(self) -> bool:
        return self._solved.is_set()

    def mark_solved(self) -> None:
        self._solved.set()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._start

    def expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    @property
    def quads_used(self) -> int:
        with self._lock:
            return self._quads

    def quads_exhausted(self) -> bool:
        with self._lock:
            return self._max_quads > 0 and self._quads >= self._max_quads

    def consume_quads(self, count: int) -> int:
        """Reserve up to *count* quads; returns how many may be probed."""
        with self._lock:
            if self._max_quads <= 0:
                self._quads += count
                return count
            granted = max(0, min(count, self._max_quads - self._quads))
            self._quads += granted
            return granted

    def stop_reason(self) -> str | None:
        if self.aborted:
            return "aborted"
        if self.solved:
            return "solved"
        if self.expired():
            return "time limit reached"
        if self.quads_exhausted():
            return "quad budget exhausted"
        return None

    def should_stop(self) -> bool:
        return self.stop_reason() is not None
