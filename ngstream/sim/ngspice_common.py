# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import re
from enum import Enum
from dataclasses import dataclass
from typing import Dict, Sequence
from abc import ABC, abstractmethod
from public import public

@public
class SignalKind(Enum):
    TIME = (1, "time")
    FREQUENCY = (2, "frequency")
    VOLTAGE = (3, "voltage")
    CURRENT = (4, "current")
    OTHER = (99, "other")

    def __init__(self, vtype_value: int, description: str):
        self.vtype_value = vtype_value
        self.description = description

    @classmethod
    def from_name(cls, name: str) -> "SignalKind":
        """Guesses the kind of a vector from the name the engine reports."""
        if not name:
            return cls.OTHER
        lower = name.lower()
        if lower in ("time", "index"):
            return cls.TIME
        if lower in ("frequency", "freq"):
            return cls.FREQUENCY
        if lower.startswith("i(") or lower.endswith("#branch"):
            return cls.CURRENT
        if lower.startswith("@") and "[" in lower:
            return cls.CURRENT
        return cls.VOLTAGE


@public
@dataclass
class SignalArray:
    kind: SignalKind
    values: list


@public
class NgspiceError(Exception):
    pass


@public
class NgspiceFatalError(NgspiceError):
    pass


@public
class NgspiceConfigError(NgspiceError):
    """Invalid parameters, or the engine is missing or not ready."""
    pass


@public
class EngineCallbacks:
    """
    Receiver of the notifications an engine delivers while it runs. The
    engine may call these from any of its threads. Implementations must not
    raise and must not issue engine commands from within a callback.
    """

    def on_output(self, text: str):
        pass

    def on_status(self, text: str):
        pass

    def on_exit(self, status: int, unload: bool, quit_upon_exit: bool):
        pass

    def on_init_data(self, names: Sequence[str]):
        """Vector names of the run that is about to start, in sample order."""
        pass

    def on_data(self, values: Sequence[float], names: Sequence[str]):
        """One computed point; values are ordered like on_init_data's names."""
        pass

    def on_bg_thread_state(self, running: bool):
        pass

    def external_input(self, name: str, time: float) -> float:
        """Value of the externally controlled source name at the given time."""
        return 0.0


@public
class NgspiceBase(ABC):
    """
    Command/callback protocol of a simulation engine. The command methods
    are not reentrant; callers serialize them.
    """

    @abstractmethod
    def init(self, callbacks: EngineCallbacks):
        pass

    def release(self, callbacks: EngineCallbacks):
        """Stops delivering callbacks to callbacks (if they are bound)."""
        pass

    @abstractmethod
    def command(self, command: str) -> str:
        pass

    @abstractmethod
    def load_netlist(self, lines: Sequence[str]):
        pass

    @abstractmethod
    def is_running(self) -> bool:
        pass

    @abstractmethod
    def vector(self, name: str) -> list:
        pass

    @abstractmethod
    def vector_names(self) -> list:
        pass

    def all_vectors(self) -> Dict[str, list]:
        return {name: self.vector(name) for name in self.vector_names()}


@public
class NgspiceTransientResult:
    def __init__(self):
        self.signals: Dict[str, SignalArray] = {}
        self.time: list = []

    def add_signal(self, name: str, values: list):
        kind = SignalKind.from_name(name)
        self.signals[name] = SignalArray(kind=kind, values=list(values))
        if kind == SignalKind.TIME and name.lower() == "time":
            self.time = self.signals[name].values

    def __getitem__(self, key):
        return self.get_signal(key)

    def __contains__(self, key):
        return key in self.signals

    def get_signal(self, signal_name):
        return self.signals[signal_name].values

    def list_signals(self):
        return list(self.signals.keys())


@public
def check_errors(ngspice_out):
    """Helper function to raise NgspiceError in Python from "Error: ..."
    messages in Ngspice's output."""
    first_error_msg = None
    has_fatal_indicator = False

    for line in ngspice_out.split("\n"):
        if "no such vector" in line:
            # Harmless after analyses that produce no plot output.
            continue
        # Handle both "Error: ..." and "stderr Error: ..." formats
        m = re.match(r"(?:stderr )?Error:\s*(.*)", line)
        if m and first_error_msg is None:
            first_error_msg = "Error: " + m.group(1)

        if "cannot recover" in line or "awaits to be reset" in line:
            has_fatal_indicator = True

    if first_error_msg:
        if has_fatal_indicator:
            raise NgspiceFatalError(first_error_msg)
        else:
            raise NgspiceError(first_error_msg)
