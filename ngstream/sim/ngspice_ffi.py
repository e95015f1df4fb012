# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import collections
import ctypes
import os
import sys
import threading
import traceback
import logging
from contextlib import contextmanager
from typing import List, Optional, Sequence
from public import public

from .ngspice_common import (
    NgspiceBase,
    NgspiceError,
    NgspiceFatalError,
    NgspiceConfigError,
    EngineCallbacks,
    check_errors,
)
from .registry import CallbackRegistry

LIBRARY_ENV_VAR = "NGSPICE_LIBRARY_PATH"

# Output kept for the error check of the current command. Background runs
# print until the next command, so only the most recent lines are kept.
MAX_OUTPUT_LINES = 10000

_DEBUG_PREFIX = "[ngspice-ffi]"


def _debug(message: str) -> None:
    print(f"{_DEBUG_PREFIX} {message}")


def library_candidates(platform: str = sys.platform) -> List[str]:
    """Shared library names and paths tried in order when loading ngspice."""
    candidates = []
    if env_path := os.environ.get(LIBRARY_ENV_VAR):
        candidates.append(env_path)
    if platform == "win32":
        candidates += ["ngspice.dll", "libngspice-0.dll", "bin/ngspice.dll"]
    elif platform == "darwin":
        candidates += [
            "libngspice.0.dylib",
            "libngspice.dylib",
            "./libngspice.dylib",
            "./bin/libngspice.dylib",
            "libngspice.so",
        ]
    else:
        candidates += [
            "libngspice.so.0",
            "libngspice.so",
            "./libngspice.so",
            "./bin/libngspice.so",
        ]
    return candidates


@public
class NgspiceFFI(NgspiceBase):
    """Engine adapter for the ngspice shared library.

    - NEVER raise Python exceptions inside C callback functions (_send_char_handler, etc.)
    - C callbacks cannot propagate Python exceptions and will cause crashes/undefined behavior
    - Always store error states in instance variables and check them after C calls return
    - The ngspice command API is NOT reentrant - callers serialize command(), load_netlist()
    - The library holds one set of callbacks per process, hence this class is a singleton
    """

    _instance = None

    def __new__(cls, *args, **kwargs):
        if not cls._instance:
            cls._instance = super(NgspiceFFI, cls).__new__(cls)
        return cls._instance

    class NgComplex(ctypes.Structure):
        _fields_ = [("cx_real", ctypes.c_double), ("cx_imag", ctypes.c_double)]

    class VecValues(ctypes.Structure):
        pass

    class VecValuesAll(ctypes.Structure):
        pass

    class VecInfo(ctypes.Structure):
        pass

    class VecInfoAll(ctypes.Structure):
        pass

    # Define fields after forward declarations
    VecValues._fields_ = [
        ("name", ctypes.c_char_p),
        ("creal", ctypes.c_double),
        ("cimag", ctypes.c_double),
        ("is_scale", ctypes.c_bool),
        ("is_complex", ctypes.c_bool),
    ]

    VecValuesAll._fields_ = [
        ("veccount", ctypes.c_int),
        ("vecindex", ctypes.c_int),
        ("vecsa", ctypes.POINTER(ctypes.POINTER(VecValues))),
    ]

    VecInfo._fields_ = [
        ("number", ctypes.c_int),
        ("vecname", ctypes.c_char_p),
        ("is_real", ctypes.c_bool),
        ("pdvec", ctypes.c_void_p),
        ("pdvecscale", ctypes.c_void_p),
    ]

    VecInfoAll._fields_ = [
        ("name", ctypes.c_char_p),
        ("title", ctypes.c_char_p),
        ("date", ctypes.c_char_p),
        ("type", ctypes.c_char_p),
        ("veccount", ctypes.c_int),
        ("vecs", ctypes.POINTER(ctypes.POINTER(VecInfo))),
    ]

    class VectorInfo(ctypes.Structure):
        pass

    PVectorInfo = ctypes.POINTER(VectorInfo)
    VectorInfo._fields_ = [
        ("v_name", ctypes.c_char_p),
        ("v_type", ctypes.c_int),
        ("v_flags", ctypes.c_short),
        ("v_realdata", ctypes.POINTER(ctypes.c_double)),
        ("v_compdata", ctypes.POINTER(NgComplex)),
        ("v_length", ctypes.c_int),
    ]

    REQUIRED_FUNCTIONS = ("ngSpice_Init", "ngSpice_Command")

    def __init__(self, debug: bool = False):
        self.debug = debug
        # The __init__ method is called every time, but we only load once.
        if hasattr(self, "_loaded") and self._loaded:
            return

        self.lib = self.find_library()
        self._setup_library_functions()
        self._output_lock = threading.Lock()
        self._output_lines = collections.deque(maxlen=MAX_OUTPUT_LINES)
        self._error_message = None
        self._has_fatal_error = False
        self._is_running = False
        self._handle = None
        self._ident = ctypes.c_int(0)
        self._loaded = True

    @classmethod
    @contextmanager
    def launch(cls, callbacks: Optional[EngineCallbacks] = None, debug: bool = False):
        backend = cls(debug=debug)
        backend.init(callbacks or EngineCallbacks())
        try:
            yield backend
        finally:
            backend.release(callbacks)

    def init(self, callbacks: EngineCallbacks):
        registry = CallbackRegistry.instance()
        if self._handle is not None:
            registry.rebind(self._handle, callbacks)
            return

        self._handle = registry.register(callbacks)

        # Keep references to callbacks
        self._send_char_cb = self._SendChar(self._send_char_handler)
        self._send_stat_cb = self._SendStat(self._send_stat_handler)
        self._exit_cb = self._ControlledExit(self._exit_handler)
        self._send_data_cb = self._SendData(self._send_data_handler)
        self._send_init_data_cb = self._SendInitData(self._send_init_data_handler)
        self._bg_thread_running_cb = self._BGThreadRunning(self._bg_thread_running_handler)
        self._get_vsrc_data_cb = self._GetVSRCData(self._get_vsrc_data_handler)

        init_result = self.lib.ngSpice_Init(
            self._send_char_cb,
            self._send_stat_cb,
            self._exit_cb,
            self._send_data_cb,
            self._send_init_data_cb,
            self._bg_thread_running_cb,
            ctypes.c_void_p(self._handle),
        )
        if init_result != 0:
            registry.unregister(self._handle)
            self._handle = None
            raise NgspiceConfigError(
                f"Failed to initialize NgSpice FFI library (error code: {init_result})."
            )

        if self._has_function("ngSpice_Init_Sync"):
            self.lib.ngSpice_Init_Sync(
                self._get_vsrc_data_cb,
                None,
                None,
                ctypes.byref(self._ident),
                ctypes.c_void_p(self._handle),
            )
        if self.debug:
            _debug(f"Initialized with callback handle {self._handle}")

    def release(self, callbacks: Optional[EngineCallbacks] = None):
        if self._handle is None:
            return
        registry = CallbackRegistry.instance()
        if callbacks is None or registry.lookup(self._handle) is callbacks:
            registry.rebind(self._handle, None)

    def _sink(self, user_data) -> Optional[EngineCallbacks]:
        return CallbackRegistry.instance().lookup(user_data)

    def _send_char_handler(self, message: bytes, ident: int, user_data) -> int:
        try:
            if not message:
                return 0
            msg_str = message.decode("utf-8", errors="ignore").strip()
            with self._output_lock:
                self._output_lines.append(msg_str)
                # Exceptions in C callbacks cause undefined behavior and crashes
                if msg_str.startswith("stderr Error:"):
                    if not self._error_message:  # Keep first error
                        self._error_message = msg_str[7:]  # Remove "stderr " prefix
                if "cannot recover" in msg_str or "awaits to be reset" in msg_str:
                    self._has_fatal_error = True
            if self.debug:
                _debug(f"Output: {msg_str}")
            if sink := self._sink(user_data):
                sink.on_output(msg_str)
        except Exception:
            logging.error("Error in _send_char_handler: %s", traceback.format_exc())
        return 0

    def _send_stat_handler(self, status: bytes, ident: int, user_data) -> int:
        try:
            if not status:
                return 0
            status_str = status.decode("utf-8", errors="ignore").strip()
            if self.debug:
                _debug(f"Status: {status_str}")
            if sink := self._sink(user_data):
                sink.on_status(status_str)
        except Exception:
            logging.error("Error in _send_stat_handler: %s", traceback.format_exc())
        return 0

    def _exit_handler(
        self, status: int, unload: bool, quit_upon_exit: bool, ident: int, user_data
    ) -> int:
        try:
            if self.debug:
                _debug(f"Exit requested, code {status}")
            if sink := self._sink(user_data):
                sink.on_exit(status, bool(unload), bool(quit_upon_exit))
        except Exception:
            logging.error("Error in _exit_handler: %s", traceback.format_exc())
        return status

    def _send_data_handler(self, vec_data, vec_count, ident, user_data) -> int:
        try:
            sink = self._sink(user_data)
            if sink is None or not vec_data:
                return 0
            content = vec_data.contents
            names = []
            values = []
            for i in range(content.veccount):
                vec_ptr = content.vecsa[i]
                if not vec_ptr:
                    continue
                vec = vec_ptr.contents
                names.append(vec.name.decode("utf-8") if vec.name else f"vec_{i}")
                values.append(vec.creal)
            sink.on_data(values, names)
        except Exception:
            logging.error("Error in _send_data_handler: %s", traceback.format_exc())
        return 0

    def _send_init_data_handler(self, vec_info, ident, user_data) -> int:
        try:
            sink = self._sink(user_data)
            if sink is None or not vec_info:
                return 0
            content = vec_info.contents
            names = []
            for i in range(content.veccount):
                vec_ptr = content.vecs[i]
                if vec_ptr:
                    vec = vec_ptr.contents
                    names.append(vec.vecname.decode("utf-8") if vec.vecname else f"vec_{i}")
            if self.debug:
                plot = content.name.decode("utf-8") if content.name else "unknown"
                _debug(f"Simulation initialized: {plot} with {len(names)} vectors")
            sink.on_init_data(names)
        except Exception:
            logging.error("Error in _send_init_data_handler: %s", traceback.format_exc())
        return 0

    def _bg_thread_running_handler(self, is_not_running, ident, user_data) -> int:
        try:
            self._is_running = not bool(is_not_running)
            if self.debug:
                status = "stopped" if is_not_running else "started"
                _debug(f"Background thread {status}")
            if sink := self._sink(user_data):
                sink.on_bg_thread_state(self._is_running)
        except Exception:
            logging.error("Error in _bg_thread_running_handler: %s", traceback.format_exc())
        return 0

    def _get_vsrc_data_handler(self, voltage, time, node_name, ident, user_data) -> int:
        try:
            name = node_name.decode("utf-8") if node_name else ""
            value = 0.0
            if sink := self._sink(user_data):
                value = float(sink.external_input(name, time))
            voltage[0] = value
        except Exception:
            logging.error("Error in _get_vsrc_data_handler: %s", traceback.format_exc())
        return 0

    def _reset_error_state(self):
        with self._output_lock:
            self._output_lines.clear()
            self._error_message = None
            self._has_fatal_error = False

    def _raise_stored_error(self):
        # Safe to raise here: we are back from the C call.
        with self._output_lock:
            error_message = self._error_message
            has_fatal_error = self._has_fatal_error
            output = "\n".join(self._output_lines)
        if error_message:
            if has_fatal_error:
                raise NgspiceFatalError(error_message)
            else:
                raise NgspiceError(error_message)
        check_errors(output)
        return output

    def command(self, command: str) -> str:
        self._reset_error_state()
        ret = self.lib.ngSpice_Command(command.encode("utf-8"))
        output = self._raise_stored_error()
        if ret != 0:
            raise NgspiceError(f"Command {command!r} failed (error code: {ret}).")
        return output

    def load_netlist(self, lines: Sequence[str]):
        self._require_function("ngSpice_Circ")
        self._reset_error_state()

        circuit_lines = [line.encode("utf-8") for line in lines if line.strip()]
        c_circuit = (ctypes.c_char_p * (len(circuit_lines) + 1))()
        c_circuit[:-1] = circuit_lines
        c_circuit[-1] = None

        circ_result = self.lib.ngSpice_Circ(c_circuit)
        output = self._raise_stored_error()

        if circ_result != 0:
            raise NgspiceFatalError(
                f"Failed to load circuit into FFI backend. Full output:\n{output}"
            )

    def is_running(self) -> bool:
        if self._has_function("ngSpice_running"):
            return bool(self.lib.ngSpice_running())
        return self._is_running

    def vector_names(self) -> List[str]:
        self._require_function("ngSpice_CurPlot", "ngSpice_AllVecs")
        plot_name = self.lib.ngSpice_CurPlot()
        if not plot_name:
            return []

        vecs_ptr = self.lib.ngSpice_AllVecs(plot_name)
        vectors = []
        i = 0
        while vecs_ptr and vecs_ptr[i]:
            vectors.append(vecs_ptr[i].decode("utf-8"))
            i += 1
        return vectors

    def vector(self, name: str) -> List[float]:
        self._require_function("ngGet_Vec_Info")
        vec_info_ptr = self.lib.ngGet_Vec_Info(name.encode("utf-8"))
        if not vec_info_ptr:
            return []
        vec_info = vec_info_ptr.contents
        if vec_info.v_realdata:
            return [vec_info.v_realdata[i] for i in range(vec_info.v_length)]
        if vec_info.v_compdata:
            return [vec_info.v_compdata[i].cx_real for i in range(vec_info.v_length)]
        return []

    def _has_function(self, name: str) -> bool:
        return name in self._functions

    def _require_function(self, *names: str):
        missing = [n for n in names if not self._has_function(n)]
        if missing:
            raise NgspiceConfigError(f"ngspice library lacks {', '.join(missing)}.")

    @staticmethod
    def find_library() -> ctypes.CDLL:
        tried = []
        last_error = None
        for candidate in library_candidates():
            try:
                return ctypes.CDLL(candidate)
            except OSError as e:
                tried.append(candidate)
                last_error = e
        raise NgspiceConfigError(
            f"Failed to load ngspice library. Tried: {', '.join(tried)}. Last error: {last_error}"
        )

    def _setup_library_functions(self):
        # Define callback function prototypes
        self._SendChar = ctypes.CFUNCTYPE(
            ctypes.c_int, ctypes.c_char_p, ctypes.c_int, ctypes.c_void_p
        )
        self._SendStat = ctypes.CFUNCTYPE(
            ctypes.c_int, ctypes.c_char_p, ctypes.c_int, ctypes.c_void_p
        )
        self._ControlledExit = ctypes.CFUNCTYPE(
            ctypes.c_int,
            ctypes.c_int,
            ctypes.c_bool,
            ctypes.c_bool,
            ctypes.c_int,
            ctypes.c_void_p,
        )
        self._SendData = ctypes.CFUNCTYPE(
            ctypes.c_int,
            ctypes.POINTER(self.VecValuesAll),
            ctypes.c_int,
            ctypes.c_int,
            ctypes.c_void_p,
        )
        self._SendInitData = ctypes.CFUNCTYPE(
            ctypes.c_int, ctypes.POINTER(self.VecInfoAll), ctypes.c_int, ctypes.c_void_p
        )
        self._BGThreadRunning = ctypes.CFUNCTYPE(
            ctypes.c_int, ctypes.c_bool, ctypes.c_int, ctypes.c_void_p
        )
        self._GetVSRCData = ctypes.CFUNCTYPE(
            ctypes.c_int,
            ctypes.POINTER(ctypes.c_double),
            ctypes.c_double,
            ctypes.c_char_p,
            ctypes.c_int,
            ctypes.c_void_p,
        )

        signatures = {
            "ngSpice_Init": (ctypes.c_int, [
                self._SendChar,
                self._SendStat,
                self._ControlledExit,
                self._SendData,
                self._SendInitData,
                self._BGThreadRunning,
                ctypes.c_void_p,
            ]),
            "ngSpice_Init_Sync": (ctypes.c_int, [
                self._GetVSRCData,
                ctypes.c_void_p,
                ctypes.c_void_p,
                ctypes.POINTER(ctypes.c_int),
                ctypes.c_void_p,
            ]),
            "ngSpice_Command": (ctypes.c_int, [ctypes.c_char_p]),
            "ngSpice_Circ": (ctypes.c_int, [ctypes.POINTER(ctypes.c_char_p)]),
            "ngGet_Vec_Info": (self.PVectorInfo, [ctypes.c_char_p]),
            "ngSpice_CurPlot": (ctypes.c_char_p, []),
            "ngSpice_AllVecs": (ctypes.POINTER(ctypes.c_char_p), [ctypes.c_char_p]),
            "ngSpice_running": (ctypes.c_bool, []),
        }

        self._functions = set()
        for name, (restype, argtypes) in signatures.items():
            try:
                func = getattr(self.lib, name)
            except AttributeError:
                # Older ngspice builds lack some of the optional entry points.
                continue
            func.restype = restype
            func.argtypes = argtypes
            self._functions.add(name)

        missing = [n for n in self.REQUIRED_FUNCTIONS if n not in self._functions]
        if missing:
            raise NgspiceConfigError(f"ngspice library lacks required functions: {', '.join(missing)}.")
