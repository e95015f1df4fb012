# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import itertools
import threading
from public import public

@public
class CallbackRegistry:
    """
    Process-wide map from opaque integer handles to callback sinks.

    The engine library accepts exactly one set of C callbacks per process
    and hands back only the user-data pointer given at initialization.
    Adapters pass a handle from this registry as that pointer and dispatch
    every callback by looking the handle up here.
    """

    _instance = None
    _instance_lock = threading.Lock()

    def __init__(self):
        self._lock = threading.Lock()
        self._sinks = {}
        self._handles = itertools.count(1)

    @classmethod
    def instance(cls) -> "CallbackRegistry":
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def register(self, sink) -> int:
        with self._lock:
            handle = next(self._handles)
            self._sinks[handle] = sink
            return handle

    def rebind(self, handle: int, sink):
        with self._lock:
            if handle not in self._sinks:
                raise KeyError(f"Unknown callback handle {handle}")
            self._sinks[handle] = sink

    def unregister(self, handle: int):
        with self._lock:
            self._sinks.pop(handle, None)

    def lookup(self, handle):
        """Returns the sink bound to handle, or None."""
        if handle is None:
            return None
        with self._lock:
            return self._sinks.get(handle)

    def __len__(self):
        with self._lock:
            return sum(1 for s in self._sinks.values() if s is not None)
