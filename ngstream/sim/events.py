# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import threading
import traceback
import logging
from enum import Enum
from typing import Callable, NamedTuple
from public import public

@public
class SessionEvent(Enum):
    STREAMING_STARTED = "streaming_started"
    STREAMING_STOPPED = "streaming_stopped"
    FRAME = "frame"                 #: args: Frame
    EXPORT_ERROR = "export_error"   #: args: message
    OUTPUT_LINE = "output_line"     #: args: message

@public
class Frame(NamedTuple):
    """Progress notification emitted every few samples."""
    time: float
    sample_count: int
    step: float
    window: float

@public
class EventHub:
    """
    Minimal publish/subscribe hub. Handlers run synchronously on the thread
    that emits, which may be an engine thread. Exceptions raised by handlers
    are logged and otherwise ignored.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers = {event: [] for event in SessionEvent}

    def subscribe(self, event: SessionEvent, handler: Callable) -> Callable[[], None]:
        """Registers handler for event; returns a function that unsubscribes it."""
        event = SessionEvent(event)
        with self._lock:
            self._handlers[event].append(handler)

        def unsubscribe():
            with self._lock:
                try:
                    self._handlers[event].remove(handler)
                except ValueError:
                    pass
        return unsubscribe

    def emit(self, event: SessionEvent, *args):
        with self._lock:
            handlers = list(self._handlers[event])
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                logging.error("Handler for %s failed: %s", event.value, traceback.format_exc())

    def handler_count(self, event: SessionEvent) -> int:
        with self._lock:
            return len(self._handlers[SessionEvent(event)])
