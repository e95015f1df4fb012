# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import threading
from collections import deque
from typing import NamedTuple, Optional, Sequence
import numpy as np
from public import public

@public
class Sample(NamedTuple):
    """One computed point: its timestamp and a read-only value vector."""
    time: float
    values: np.ndarray

    @classmethod
    def create(cls, time: float, values: Sequence[float]) -> "Sample":
        arr = np.array(values, dtype=np.float64)
        arr.flags.writeable = False
        return cls(float(time), arr)

    def project(self, columns: Sequence[int]) -> "Sample":
        return Sample.create(self.time, self.values[list(columns)])


@public
class SampleRingBuffer:
    """
    Bounded FIFO of samples. Once full, every push evicts the oldest sample.

    If columns is set, only those value indices are kept per sample. The
    row width is fixed per configuration, so changing capacity or columns
    empties the buffer.
    """

    def __init__(self, capacity: int, columns: Optional[Sequence[int]] = None):
        self._lock = threading.Lock()
        self._capacity = self._check_capacity(capacity)
        self._columns = None if columns is None else tuple(columns)
        self._samples = deque(maxlen=self._capacity)

    @staticmethod
    def _check_capacity(capacity) -> int:
        if int(capacity) != capacity or capacity < 1:
            raise ValueError(f"Ring buffer capacity must be a positive integer, got {capacity!r}.")
        return int(capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def columns(self) -> Optional[tuple[int, ...]]:
        return self._columns

    def configure(self, capacity: Optional[int] = None, columns=...):
        """
        Changes capacity and/or column filter (None keeps all columns) and
        clears the buffer. Arguments left out keep their current value.
        """
        with self._lock:
            if capacity is not None:
                self._capacity = self._check_capacity(capacity)
            if columns is not ...:
                self._columns = None if columns is None else tuple(columns)
            self._samples = deque(maxlen=self._capacity)

    def push(self, sample: Sample):
        with self._lock:
            if self._columns is not None:
                sample = sample.project(self._columns)
            self._samples.append(sample)

    def snapshot(self) -> list[Sample]:
        with self._lock:
            return list(self._samples)

    def pop_front(self, n: int) -> list[Sample]:
        with self._lock:
            count = min(max(n, 0), len(self._samples))
            return [self._samples.popleft() for _ in range(count)]

    def clear(self):
        with self._lock:
            self._samples.clear()

    def to_array(self) -> np.ndarray:
        """Buffered samples as 2-D array; column 0 is time."""
        samples = self.snapshot()
        if not samples:
            width = 1 + (len(self._columns) if self._columns is not None else 0)
            return np.empty((0, width))
        return np.array([np.concatenate(([s.time], s.values)) for s in samples])

    def __len__(self):
        with self._lock:
            return len(self._samples)
