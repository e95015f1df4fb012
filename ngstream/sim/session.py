# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

"""
Continuous streaming of transient results from the engine.

Three kinds of threads meet in a StreamingSession:

- the caller's thread issuing control-plane calls (start, stop, pause,
  configure, snapshot),
- the driver thread started per run, which issues the background run
  command and polls until the run ends or a stop is requested,
- whatever engine thread delivers the callbacks (on_init_data, on_data, ...).

Engine commands go through _command_lock only. Sample ingestion is
serialized by _ingest_lock, which is never held while calling into the
engine.

Event handlers run on the engine and driver threads. Called from there,
stop, pause and resume are only requested and the other control-plane
calls raise NgspiceConfigError instead of blocking.
"""

import os
import time
import threading
import traceback
import logging
import concurrent.futures
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence
import numpy as np
from public import public

from ..rational import Rational
from ..deck.normalizer import NormalizedDeck, normalize_file
from .ngspice_common import (
    NgspiceBase,
    NgspiceError,
    NgspiceConfigError,
    EngineCallbacks,
)
from .catalog import SignalCatalog
from .ringbuffer import Sample, SampleRingBuffer
from .export import CsvExportSink
from .events import EventHub, SessionEvent, Frame

_DEBUG_PREFIX = "[ngstream]"


def _debug(message: str) -> None:
    print(f"{_DEBUG_PREFIX} {message}")


@public
class SessionState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"  #: run ended by itself; stop() returns to IDLE


@public
@dataclass
class StreamSettings:
    buffer_capacity: int = 10000
    frame_stride: int = 64          #: samples between two FRAME events
    poll_interval: float = 0.02     #: seconds between engine status polls
    startup_timeout: float = 10.0   #: seconds to wait for the engine to report activity
    halt_timeout: float = 1.0
    buffer_signals: Optional[Sequence[str]] = None
    debug: bool = False


def spice_number(value, what: str) -> Rational:
    try:
        return Rational(value)
    except (ValueError, TypeError, ZeroDivisionError) as e:
        raise NgspiceConfigError(f"Invalid {what}: {value!r}") from e


def positive_number(value, what: str) -> Rational:
    number = spice_number(value, what)
    if number <= 0:
        raise NgspiceConfigError(f"{what.capitalize()} must be positive, got {value!r}.")
    return number


def _default_engine_factory(debug: bool) -> Callable[[], NgspiceBase]:
    def factory():
        from .ngspice_ffi import NgspiceFFI
        return NgspiceFFI(debug=debug)
    return factory


@public
class StreamingSession(EngineCallbacks):
    """
    Drives the engine through a background transient run and keeps the most
    recent samples in a ring buffer, optionally mirrored to CSV.

    engine_factory returns the engine adapter and is called once by
    initialize(). It defaults to the ngspice shared-library adapter.
    """

    def __init__(self, engine_factory: Optional[Callable[[], NgspiceBase]] = None,
            settings: Optional[StreamSettings] = None, events: Optional[EventHub] = None):
        self.settings = settings or StreamSettings()
        self._check_stride(self.settings.frame_stride)
        self.events = events or EventHub()
        self.debug = self.settings.debug
        self._engine_factory = engine_factory or _default_engine_factory(self.debug)
        self.engine: Optional[NgspiceBase] = None

        self._control_lock = threading.RLock()
        self._command_lock = threading.Lock()
        self._ingest_lock = threading.RLock()
        self._status_lock = threading.Lock()
        self._inputs_lock = threading.Lock()

        self.catalog = SignalCatalog()
        self.buffer = SampleRingBuffer(self.settings.buffer_capacity)
        self.export = CsvExportSink()
        self._buffer_signals = self._names_or_none(self.settings.buffer_signals)
        self._export_signals = None
        self._external_inputs = {}
        self._callback_context = threading.local()

        self._state = SessionState.IDLE
        self._driver: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._accepting = False
        self._paused = False
        self._pending_pause: Optional[bool] = None
        self._engine_started = False
        self._start_deadline = 0.0
        self._step = None
        self._window = None
        self._time_index = None
        self._sample_count = 0
        self._last_time = None
        self.last_error: Optional[BaseException] = None
        self.current_netlist: Optional[tuple] = None

    # Lifecycle

    @classmethod
    @contextmanager
    def launch(cls, engine_factory=None, settings=None, events=None):
        session = cls(engine_factory, settings, events)
        session.initialize()
        try:
            yield session
        finally:
            session.close()

    def initialize(self):
        self._reject_in_session_thread("initialize the session")
        with self._control_lock:
            if self.engine is not None:
                return
            engine = self._engine_factory()
            engine.init(self)
            self.engine = engine
            if self.debug:
                _debug(f"Engine initialized: {type(engine).__name__}")

    @property
    def initialized(self) -> bool:
        return self.engine is not None

    def close(self):
        self._reject_in_session_thread("close the session")
        self.stop()
        with self._control_lock:
            with self._ingest_lock:
                self.buffer.clear()
                self.export.disable()
                self.catalog.clear()
            if self.engine is not None:
                self.engine.release(self)
                self.engine = None

    def _require_engine(self) -> NgspiceBase:
        if self.engine is None:
            raise NgspiceConfigError("Engine not initialized; call initialize() first.")
        return self.engine

    # State

    @property
    def state(self) -> SessionState:
        with self._status_lock:
            return self._state

    def _set_state(self, state: SessionState):
        with self._status_lock:
            self._state = state
        if self.debug:
            _debug(f"State: {state.value}")

    @property
    def is_running(self) -> bool:
        return self.state == SessionState.RUNNING

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def step(self) -> Optional[float]:
        return self._step

    @property
    def window(self) -> Optional[float]:
        return self._window

    @property
    def sample_count(self) -> int:
        return self._sample_count

    @property
    def current_time(self) -> Optional[float]:
        return self._last_time

    # Deck loading and engine commands

    def command(self, command: str) -> str:
        """Issues an engine command through the serialized command path."""
        self._reject_in_engine_callback("issue engine commands")
        engine = self._require_engine()
        with self._command_lock:
            return engine.command(command)

    def load_deck(self, deck):
        """Loads a NormalizedDeck or a sequence of deck lines into the engine."""
        lines = tuple(deck.lines if isinstance(deck, NormalizedDeck) else deck)
        self._reject_in_session_thread("load a deck")
        with self._control_lock:
            self._reject_while_running("load a deck")
            engine = self._require_engine()
            with self._command_lock:
                engine.load_netlist(lines)
            self.current_netlist = lines

    def load_spice_file(self, path, root_override: Optional[str] = None) -> NormalizedDeck:
        deck = normalize_file(path, root_override)
        self.load_deck(deck)
        return deck

    def source_file(self, path):
        """
        Lets the engine read the deck at path itself (ngspice "source"
        command). The deck is not normalized, so it must already be
        batch-executable.
        """
        path = os.path.abspath(path)
        self._foreground_command("source a deck", f"source {path}")
        # Only the engine knows the circuit text.
        self.current_netlist = None

    def set_parameter(self, name: str, value):
        """Changes a deck parameter (.param) and resets the circuit."""
        value = spice_number(value, "parameter value")
        self._reject_in_session_thread("alter parameters")
        with self._control_lock:
            self._reject_while_running("alter parameters")
            engine = self._require_engine()
            with self._command_lock:
                engine.command(f"alterparam {name}={value:e}")
                engine.command("reset")

    # Foreground analyses. The engine returns once the analysis is done
    # (run_simulation excepted), results are read through vector().

    def run_transient(self, step, stop, start=0):
        step = positive_number(step, "step")
        stop = positive_number(stop, "stop time")
        start = spice_number(start, "start time")
        if not 0 <= start < stop:
            raise NgspiceConfigError(f"Start time ({start}) must lie in [0, {stop}).")
        self._foreground_command("run an analysis", f"tran {step:e} {stop:e} {start:e}")

    def run_dc(self, source: str, start, stop, step):
        """Sweeps the named source from start to stop."""
        if not source or not source.strip():
            raise NgspiceConfigError("DC sweep needs a source name.")
        start = spice_number(start, "sweep start")
        stop = spice_number(stop, "sweep stop")
        step = positive_number(step, "sweep step")
        self._foreground_command("run an analysis",
            f"dc {source.strip()} {start:e} {stop:e} {step:e}")

    def run_simulation(self):
        """Runs the analyses of the loaded deck on the engine's background thread, without streaming."""
        self._foreground_command("run an analysis", "bg_run")

    def _foreground_command(self, action: str, command: str):
        self._reject_in_session_thread(action)
        with self._control_lock:
            self._reject_while_running(action)
            engine = self._require_engine()
            with self._command_lock:
                engine.command(command)

    def vector(self, name: str) -> list:
        self._reject_in_engine_callback("read vectors")
        engine = self._require_engine()
        with self._command_lock:
            return engine.vector(name)

    def vector_names(self) -> list:
        self._reject_in_engine_callback("read vectors")
        engine = self._require_engine()
        with self._command_lock:
            return engine.vector_names()

    def all_vectors(self) -> dict:
        """Every vector of the current plot, by name."""
        self._reject_in_engine_callback("read vectors")
        engine = self._require_engine()
        with self._command_lock:
            return engine.all_vectors()

    def get_voltage(self, node: str) -> list:
        return self.vector(f"v({node})")

    def get_current(self, source: str) -> list:
        return self.vector(f"i({source})")

    def get_time_vector(self) -> list:
        return self.vector("time")

    def _reject_while_running(self, action: str):
        if self.state == SessionState.RUNNING:
            raise NgspiceConfigError(f"Cannot {action} while streaming; stop() first.")

    def _in_engine_callback(self) -> bool:
        return getattr(self._callback_context, "active", False)

    def _in_session_thread(self) -> bool:
        """True in engine callbacks (and the event handlers they run) and on the driver thread."""
        return self._in_engine_callback() or threading.current_thread() is self._driver

    def _reject_in_engine_callback(self, action: str):
        # The driver may hold _command_lock while it waits for the very
        # thread the callback runs on.
        if self._in_engine_callback():
            raise NgspiceConfigError(f"Cannot {action} from an engine callback or event handler.")

    def _reject_in_session_thread(self, action: str):
        if self._in_session_thread():
            raise NgspiceConfigError(f"Cannot {action} from a session callback or event handler.")

    # External inputs

    def set_external_input(self, name: str, value: float):
        with self._inputs_lock:
            self._external_inputs[name.lower()] = float(value)

    def external_input(self, name: str, time: float = 0.0) -> float:
        with self._inputs_lock:
            return self._external_inputs.get(name.lower(), 0.0)

    # Control plane

    def start(self, step, window):
        """
        Starts streaming a transient analysis with the given step and
        window (numbers or SPICE literals). An active run is stopped first.
        Raises NgspiceConfigError for invalid parameters and NgspiceError if
        the engine rejects the run command.
        """
        step = positive_number(step, "step")
        window = positive_number(window, "streaming window")
        if window <= step:
            raise NgspiceConfigError(f"Streaming window ({window}) must exceed step ({step}).")
        self._reject_in_session_thread("start a run")

        with self._control_lock:
            self._require_engine()
            self._stop_locked()
            self._reset_run(step, window)
            self._set_state(SessionState.RUNNING)

            setup = concurrent.futures.Future()
            self._driver = threading.Thread(
                target=self._drive, args=(step, window, setup),
                name="ngstream-driver", daemon=True,
            )
            self._driver.start()
            try:
                setup.result()
            except Exception:
                self._driver.join()
                self._driver = None
                with self._ingest_lock:
                    self._accepting = False
                self._set_state(SessionState.IDLE)
                raise

    def stop(self):
        """
        Stops the active run and waits for the driver thread. Idempotent.
        Once it returns, no more samples are buffered or exported and no
        more frames are emitted for the run.

        Called from within a session callback or event handler, it only
        requests the stop.
        """
        if self._in_session_thread():
            self._stop_event.set()
            return
        with self._control_lock:
            self._stop_locked()

    def _stop_locked(self):
        driver = self._driver
        if driver is not None:
            self._stop_event.set()
            driver.join()
            self._driver = None
        with self._ingest_lock:
            self._accepting = False
        self._paused = False
        self._pending_pause = None
        if self.state != SessionState.IDLE:
            self._set_state(SessionState.IDLE)

    def pause(self):
        """
        Halts the engine without ending the run. Does nothing if the engine
        has already finished the run.

        Called from within a session callback or event handler, it only
        requests the pause; the driver thread carries it out.
        """
        if self._in_session_thread():
            self._request_pause(True)
            return
        with self._control_lock:
            if self.state != SessionState.RUNNING:
                raise NgspiceConfigError("No running stream to pause.")
            self._take_pause_request()
            self._pause_engine(self.engine)

    def resume(self):
        if self._in_session_thread():
            self._request_pause(False)
            return
        with self._control_lock:
            if self.state != SessionState.RUNNING:
                return
            self._take_pause_request()
            self._resume_engine(self.engine)

    def _request_pause(self, pause: bool):
        if pause and self.state != SessionState.RUNNING:
            raise NgspiceConfigError("No running stream to pause.")
        with self._status_lock:
            self._pending_pause = pause

    def _take_pause_request(self) -> Optional[bool]:
        with self._status_lock:
            pending, self._pending_pause = self._pending_pause, None
        return pending

    def _pause_engine(self, engine: NgspiceBase):
        # Checked under _command_lock: a finished run halted here would
        # look paused to the driver forever.
        with self._command_lock:
            if self._paused or not engine.is_running():
                return
            self._paused = True
            try:
                engine.command("bg_halt")
            except NgspiceError:
                self._paused = False
                raise

    def _resume_engine(self, engine: NgspiceBase):
        with self._command_lock:
            if not self._paused:
                return
            self._engine_started = False
            self._start_deadline = time.monotonic() + self.settings.startup_timeout
            engine.command("bg_resume")
            self._paused = False

    # Buffer and export configuration

    @staticmethod
    def _names_or_none(names: Optional[Iterable[str]]):
        return None if names is None else tuple(names)

    @staticmethod
    def _check_stride(stride):
        if int(stride) != stride or stride < 1:
            raise NgspiceConfigError(f"Frame stride must be a positive integer, got {stride!r}.")

    def configure_buffer(self, capacity: Optional[int] = None, signals=...):
        """
        Sets ring buffer capacity and/or the signals to keep (None: all).
        Clears the buffer.
        """
        with self._ingest_lock:
            if signals is not ...:
                self._buffer_signals = self._names_or_none(signals)
            try:
                self.buffer.configure(capacity, self._buffer_columns())
            except ValueError as e:
                raise NgspiceConfigError(str(e)) from e
            if capacity is not None:
                self.settings.buffer_capacity = self.buffer.capacity

    def set_frame_stride(self, stride: int):
        self._check_stride(stride)
        with self._ingest_lock:
            self.settings.frame_stride = int(stride)

    def configure_export(self, path, signals: Optional[Iterable[str]] = None):
        """Mirrors samples to a CSV file at path; signals limits the exported names."""
        with self._ingest_lock:
            self._export_signals = self._names_or_none(signals)
            self.export.configure(path, self._export_names())

    def disable_export(self):
        with self._ingest_lock:
            self.export.disable()
            self._export_signals = None

    def _buffer_columns(self):
        if self._buffer_signals is None:
            return None
        return self.catalog.resolve(self._buffer_signals)

    def _export_names(self):
        if self._export_signals is None:
            return None
        if not self.catalog:
            return self._export_signals
        return [self.catalog.name_of(i) for i in self.catalog.resolve(self._export_signals)]

    # Reading the buffer

    def snapshot(self) -> list[Sample]:
        return self.buffer.snapshot()

    def pop_samples(self, n: int) -> list[Sample]:
        return self.buffer.pop_front(n)

    def samples_array(self) -> np.ndarray:
        return self.buffer.to_array()

    def buffer_columns(self) -> tuple[str, ...]:
        """Names of the value columns of buffered samples."""
        with self._ingest_lock:
            columns = self.buffer.columns
            if columns is None:
                return self.catalog.names
            return tuple(self.catalog.name_of(i) for i in columns)

    # Driver thread

    def _reset_run(self, step: Rational, window: Rational):
        with self._ingest_lock:
            self.catalog.clear()
            self._time_index = None
            self.buffer.configure(columns=self._buffer_columns())
            self._step = float(step)
            self._window = float(window)
            self._sample_count = 0
            self._last_time = None
            self._accepting = True
        self._stop_event.clear()
        self._paused = False
        self._pending_pause = None
        self._engine_started = False
        self._start_deadline = time.monotonic() + self.settings.startup_timeout
        self.last_error = None

    def _drive(self, step: Rational, window: Rational, setup: concurrent.futures.Future):
        engine = self.engine
        self.events.emit(SessionEvent.STREAMING_STARTED)
        try:
            with self._command_lock:
                engine.command(f"bg_tran {step:e} {window:e}")
        except Exception as e:
            self.last_error = e
            logging.error("Starting the run failed: %s", e)
            self.events.emit(SessionEvent.STREAMING_STOPPED)
            setup.set_exception(e)
            return
        setup.set_result(None)

        failed = False
        try:
            while not self._stop_event.wait(self.settings.poll_interval):
                self._apply_pause_request(engine)
                # _pause_engine sets the flag before halting, so a halted
                # engine is never mistaken for a finished run.
                if engine.is_running():
                    self._engine_started = True
                elif self._paused:
                    continue
                elif self._engine_started or time.monotonic() > self._start_deadline:
                    break
        except Exception as e:
            failed = True
            self.last_error = e
            logging.error("Streaming driver failed: %s", traceback.format_exc())

        if failed or self._stop_event.is_set():
            self._set_state(SessionState.STOPPING)
            self._halt(engine)
            with self._ingest_lock:
                self._accepting = False
            self._set_state(SessionState.IDLE)
        else:
            self._set_state(SessionState.STOPPED)
            if self.debug:
                _debug(f"Run completed after {self._sample_count} samples")
        self.events.emit(SessionEvent.STREAMING_STOPPED)

    def _apply_pause_request(self, engine: NgspiceBase):
        pending = self._take_pause_request()
        try:
            if pending is True:
                self._pause_engine(engine)
            elif pending is False:
                self._resume_engine(engine)
        except NgspiceError as e:
            self.last_error = e
            logging.error("Requested %s failed: %s", "pause" if pending else "resume", e)

    def _halt(self, engine: NgspiceBase):
        try:
            with self._command_lock:
                engine.command("bg_halt")
            deadline = time.monotonic() + self.settings.halt_timeout
            while engine.is_running() and time.monotonic() < deadline:
                time.sleep(min(0.01, self.settings.poll_interval))
        except Exception as e:
            logging.warning("Halting the engine failed: %s", e)

    # Engine callbacks

    @contextmanager
    def _engine_callback(self):
        """Marks the current thread as running an engine callback (or handlers run from one)."""
        ctx = self._callback_context
        outer = getattr(ctx, "active", False)
        ctx.active = True
        try:
            yield
        finally:
            ctx.active = outer

    def on_output(self, text: str):
        # ngspice prints from whichever thread issued the command.
        with self._engine_callback():
            self.events.emit(SessionEvent.OUTPUT_LINE, text)

    def on_status(self, text: str):
        if self.debug:
            _debug(f"Status: {text}")

    def on_exit(self, status: int, unload: bool, quit_upon_exit: bool):
        logging.warning("Engine requested exit (status %d)", status)
        self._stop_event.set()

    def on_bg_thread_state(self, running: bool):
        if running:
            self._engine_started = True

    def on_init_data(self, names: Sequence[str]):
        with self._ingest_lock:
            if not self._accepting:
                return
            self._engine_started = True
            self._rebuild_catalog(names)

    def _rebuild_catalog(self, names: Sequence[str]):
        self.catalog.rebuild(names)
        self._time_index = self.catalog.time_index
        self.buffer.configure(columns=self._buffer_columns())
        if self._export_signals is not None:
            self.export.set_signals(self._export_names())
        if self.debug:
            _debug(f"Catalog: {list(self.catalog.names)}")

    def on_data(self, values: Sequence[float], names: Sequence[str]):
        try:
            with self._engine_callback(), self._ingest_lock:
                if self._accepting:
                    self._ingest(values, names)
        except Exception:
            logging.error("Sample ingestion failed: %s", traceback.format_exc())

    def _ingest(self, values: Sequence[float], names: Sequence[str]):
        self._engine_started = True
        if not self.catalog and names:
            self._rebuild_catalog(names)

        idx = self._time_index
        if idx is not None and idx < len(values):
            t = float(values[idx])
        elif self._last_time is not None:
            t = self._last_time + self._step
        else:
            t = 0.0
        self._last_time = t

        sample = Sample.create(t, values)
        self.buffer.push(sample)

        if self.export.enabled and not self.export.append(sample, self.catalog.names):
            self.events.emit(SessionEvent.EXPORT_ERROR, self.export.last_error)

        self._sample_count += 1
        if self._sample_count % self.settings.frame_stride == 0:
            self.events.emit(SessionEvent.FRAME,
                Frame(t, self._sample_count, self._step, self._window))
