# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import csv
import math
import threading
import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence
from public import public

from .ringbuffer import Sample

HEADER = ("time", "signal", "value")

@public
class ExportError(Exception):
    pass

def format_value(value: float) -> str:
    """Shortest decimal text that reads back as the same double."""
    return repr(float(value))

@public
class CsvExportSink:
    """
    Append-only long-format CSV mirror of streamed samples: one row per
    (time, signal, value). Samples whose time is not strictly greater than
    the last written one are skipped.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._file = None
        self._writer = None
        self._path = None
        self._signals = None
        self._watermark = -math.inf
        self.rows_written = 0
        self.last_error = None

    @property
    def enabled(self) -> bool:
        return self._file is not None

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def watermark(self) -> float:
        return self._watermark

    def configure(self, path, signals: Optional[Iterable[str]] = None):
        """
        Creates (or truncates) the file at path, creating parent directories,
        and writes the header. If signals is given, only those names are
        exported (case-insensitive).
        """
        if not path or not str(path).strip():
            raise ExportError("Export path must not be empty.")
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            f = open(path, "w", newline="", encoding="utf-8")
        except OSError as e:
            raise ExportError(f"Cannot open export file {str(path)!r}: {e}") from e

        with self._lock:
            self._close()
            self._file = f
            self._writer = csv.writer(f)
            self._path = path
            self._signals = None if signals is None else {s.lower() for s in signals}
            self._watermark = -math.inf
            self.rows_written = 0
            self.last_error = None
            try:
                self._writer.writerow(HEADER)
                f.flush()
            except OSError as e:
                self._fail(e)
                raise ExportError(self.last_error) from e

    def append(self, sample: Sample, names: Sequence[str]) -> bool:
        """
        Writes one row per non-time signal of sample; names gives the signal
        name of each value. Returns False if the sink is disabled or the
        write failed, in which case the sink disables itself.
        """
        with self._lock:
            if self._file is None:
                return False
            if not sample.time > self._watermark:
                return True
            time_str = format_value(sample.time)
            rows = []
            for name, value in zip(names, sample.values):
                key = name.lower()
                if key == "time":
                    continue
                if self._signals is not None and key not in self._signals:
                    continue
                rows.append((time_str, name, format_value(value)))
            try:
                self._writer.writerows(rows)
                self._file.flush()
            except (OSError, ValueError) as e:
                self._fail(e)
                return False
            self._watermark = sample.time
            self.rows_written += len(rows)
            return True

    def set_signals(self, signals: Optional[Iterable[str]]):
        """Replaces the name filter without touching the file."""
        with self._lock:
            self._signals = None if signals is None else {s.lower() for s in signals}

    def disable(self):
        with self._lock:
            self._close()
            self._signals = None
            self._watermark = -math.inf

    def _fail(self, error):
        self.last_error = f"Export to {str(self._path)!r} failed: {error}"
        logging.error(self.last_error)
        self._close()

    def _close(self):
        f = self._file
        self._file = None
        self._writer = None
        if f is not None:
            try:
                f.close()
            except OSError as e:
                logging.warning("Closing export file failed: %s", e)
