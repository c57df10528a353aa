"""
Per-task progress smoothing.

Encoders report progress unreliably: samples jitter backwards, arrive in
bursts, and usually stop completely during the final muxing/flush step. The
`ProgressNormalizer` turns that raw stream into a display value that:

- never decreases (lower samples are dropped),
- is only forwarded when it moved by at least `min_delta` points,
- creeps slowly towards `creep_ceiling` when no sample has advanced it for
  `stall_timeout` seconds, so a finalizing encode does not look frozen,
- reaches 100 only through `complete()`, which is called once the encoder
  exited successfully and its output was verified.

The creep is a display heuristic. Its timeout, rate and ceiling are plain
constructor arguments.
"""
import threading
import time
from typing import Callable, Optional

from ..config.common import (
    MIN_EMIT_DELTA,
    RUNNING_PERCENT_CEILING,
    STALL_CREEP_CEILING,
    STALL_CREEP_RATE,
    STALL_TIMEOUT_SECONDS,
)


class ProgressNormalizer:
    """
    Smooths the raw percentage stream of one task.

    `on_emit` is called with every forwarded value. It runs while the
    normalizer's lock is held, so values reach it in non-decreasing order even
    when `accept()` (worker thread) and `tick()` (heartbeat thread) race.
    """

    def __init__(
        self,
        on_emit: Optional[Callable[[float], None]] = None,
        min_delta: float = MIN_EMIT_DELTA,
        running_ceiling: float = RUNNING_PERCENT_CEILING,
        stall_timeout: float = STALL_TIMEOUT_SECONDS,
        creep_rate: float = STALL_CREEP_RATE,
        creep_ceiling: float = STALL_CREEP_CEILING,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._on_emit = on_emit
        self.min_delta = min_delta
        self.running_ceiling = running_ceiling
        self.stall_timeout = stall_timeout
        self.creep_rate = creep_rate
        self.creep_ceiling = creep_ceiling
        self._clock = clock

        self._lock = threading.Lock()
        self._last_raw: Optional[float] = None
        self._value = 0.0
        self._last_emitted = 0.0
        self._last_advance = clock()
        self._creep_base = 0.0
        self._completed = False
        self._closed = False

    @property
    def value(self) -> float:
        """The current display value (including any creep), emitted or not."""
        with self._lock:
            return self._value

    @property
    def last_emitted(self) -> float:
        with self._lock:
            return self._last_emitted

    @property
    def completed(self) -> bool:
        with self._lock:
            return self._completed

    def accept(self, raw_percent: float) -> Optional[float]:
        """
        Feeds one raw sample.

        Returns:
            The value forwarded to `on_emit`, or None if nothing was forwarded.
        """
        with self._lock:
            if self._completed or self._closed:
                return None
            raw = min(max(float(raw_percent), 0.0), self.running_ceiling)
            if self._last_raw is not None and raw < self._last_raw:
                return None
            self._last_raw = raw
            if raw > self._value:
                self._value = raw
                self._creep_base = raw
                self._last_advance = self._clock()
            return self._maybe_emit()

    def tick(self) -> Optional[float]:
        """
        Applies the stall creep. Called periodically while the task runs.

        Returns:
            The value forwarded to `on_emit`, or None if nothing was forwarded.
        """
        with self._lock:
            if self._completed or self._closed:
                return None
            idle = self._clock() - self._last_advance
            if idle <= self.stall_timeout:
                return None
            target = min(self.creep_ceiling, self._creep_base + self.creep_rate * (idle - self.stall_timeout))
            if target > self._value:
                self._value = target
            return self._maybe_emit()

    def complete(self) -> Optional[float]:
        """
        Emits 100. Only the first call has an effect.

        Returns:
            100.0 on the first call, None afterwards or after `close()`.
        """
        with self._lock:
            if self._completed or self._closed:
                return None
            self._completed = True
            self._value = 100.0
            self._last_emitted = 100.0
            if self._on_emit is not None:
                self._on_emit(100.0)
            return 100.0

    def close(self) -> None:
        """Stops all further emissions (task failed or was cancelled)."""
        with self._lock:
            self._closed = True

    def _maybe_emit(self) -> Optional[float]:
        if self._value - self._last_emitted < self.min_delta:
            return None
        self._last_emitted = self._value
        if self._on_emit is not None:
            self._on_emit(self._value)
        return self._value
