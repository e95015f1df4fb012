# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import re
import threading
from typing import Iterable, Optional
from public import public

from .ngspice_common import SignalKind

_probe_re = re.compile(r"^([vi])\((.+)\)$", re.IGNORECASE)

def lookup_keys(name: str) -> list[str]:
    """
    Lowercase spellings under which a vector can be found. The engine
    reports node voltages either as "v(node)" or as "node", and branch
    currents either as "i(src)" or as "src#branch".
    """
    key = name.strip().lower()
    keys = [key]
    if m := _probe_re.match(key):
        kind, inner = m.groups()
        keys.append(inner if kind == "v" else f"{inner}#branch")
    elif key.endswith("#branch"):
        keys.append(f"i({key[:-len('#branch')]})")
    elif key not in ("time", "frequency", "index"):
        keys.append(f"v({key})")
    return keys

@public
class SignalCatalog:
    """
    Ordered, duplicate-free map between signal names and their column index
    within a sample. Rebuilt at the start of every run; indices of a
    previous run are never valid for the next one.
    """

    def __init__(self, names: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._names = []
        self._index = {}
        self._generation = 0
        if names:
            self.rebuild(names)

    def rebuild(self, names: Iterable[str]):
        with self._lock:
            self._names = list(names)
            self._index = {}
            # Exact names first, so an alias never shadows a real vector.
            for i, name in enumerate(self._names):
                self._index.setdefault(name.strip().lower(), i)
            for i, name in enumerate(self._names):
                for key in lookup_keys(name)[1:]:
                    self._index.setdefault(key, i)
            self._generation += 1

    def clear(self):
        self.rebuild(())

    @property
    def generation(self) -> int:
        """Incremented on every rebuild."""
        return self._generation

    @property
    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._names)

    def __len__(self):
        with self._lock:
            return len(self._names)

    def __bool__(self):
        return len(self) > 0

    def __contains__(self, name):
        return self.index_of(name) is not None

    def index_of(self, name: str) -> Optional[int]:
        with self._lock:
            for key in lookup_keys(name):
                if (idx := self._index.get(key)) is not None:
                    return idx
        return None

    def name_of(self, index: int) -> str:
        with self._lock:
            return self._names[index]

    @property
    def time_index(self) -> Optional[int]:
        return self.index_of("time")

    def kind_of(self, index: int) -> SignalKind:
        return SignalKind.from_name(self.name_of(index))

    def resolve(self, names: Iterable[str]) -> list[int]:
        """
        Column indices of names, matched case-insensitively, in the order
        requested. Names not in the catalog are skipped, duplicates are
        dropped.
        """
        indices = []
        for name in names:
            idx = self.index_of(name)
            if idx is not None and idx not in indices:
                indices.append(idx)
        return indices

    def __repr__(self):
        return f"SignalCatalog({list(self.names)!r})"
