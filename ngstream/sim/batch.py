# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

"""
Batch mode: normalize a deck, run it to completion and read the harvested
vectors back in one go.
"""

import os
import time
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from public import public

from ..deck.normalizer import NormalizedDeck, normalize_file
from .ngspice_common import NgspiceBase, NgspiceTransientResult

@public
@dataclass
class BatchResult:
    deck: NormalizedDeck
    result: NgspiceTransientResult

    @property
    def netlist(self) -> str:
        return self.deck.netlist()

    @property
    def signal_count(self) -> int:
        return len(self.deck.signals)

@public
def run_spice_file(engine: NgspiceBase, path, root_override: Optional[str] = None) -> BatchResult:
    """
    Normalizes and runs the deck at path. The result holds the time vector
    and every signal named by the deck's wrdata commands that the engine
    produced.
    """
    deck = normalize_file(path, root_override)
    engine.load_netlist(deck.lines)
    engine.command("run")

    result = NgspiceTransientResult()
    time_values = engine.vector("time")
    if time_values:
        result.add_signal("time", time_values)
    for signal in deck.signals:
        values = engine.vector(signal)
        if values:
            result.add_signal(signal, values)
    return BatchResult(deck, result)

TEST_INCLUDE = """\
* include file used by test pipeline
.param dummy=1
"""

TEST_DECK = """\
* test deck for run_spice_file
.include "$PDK_ROOT/models.inc"
V1 in 0 PULSE(0 1.8 0
+ 1n 1n 5n 10n)
R1 in out 1k
C1 out 0 1p
.control
tran 0.1n 20n
wrdata out.csv v(in) v(out)
.endc
"""

@public
def pipeline_selftest(engine: NgspiceBase, output_dir=None) -> dict:
    """
    Writes a small RC deck (without .end) and an include file into a fresh
    run directory, runs it through run_spice_file and checks the outcome.
    Returns a report dict with 'passed', 'errors' and 'checks'.
    """
    errors = []
    checks = {}
    report = {"passed": False, "errors": errors, "checks": checks}

    base_dir = Path(output_dir) if output_dir else Path(tempfile.gettempdir()) / "ngstream_spice_test"
    run_dir = Path(os.path.abspath(base_dir)) / f"run_{int(time.time() * 1000)}"
    include_path = run_dir / "models.inc"
    spice_path = run_dir / "pipeline_test.spice"

    try:
        run_dir.mkdir(parents=True, exist_ok=True)
        include_path.write_text(TEST_INCLUDE)
        spice_path.write_text(TEST_DECK)
    except OSError as e:
        errors.append(f"Could not write test files in {str(run_dir)!r}: {e}")
        return report

    report["test_spice_path"] = str(spice_path)
    report["test_include_path"] = str(include_path)

    batch = run_spice_file(engine, spice_path, str(run_dir))
    result = batch.result
    normalized = batch.netlist
    report["normalized_netlist"] = normalized

    def check(name, ok, message):
        checks[name] = ok
        if not ok:
            errors.append(message)

    for name, key in (("has_time", "time"), ("has_v_in", "v(in)"), ("has_v_out", "v(out)")):
        check(name, key in result, f"Missing {key} vector in result")

    if all(key in result for key in ("time", "v(in)", "v(out)")):
        lengths = [len(result[key]) for key in ("time", "v(in)", "v(out)")]
        check("vectors_non_empty", min(lengths) > 0, "Vectors are empty")
        check("vectors_same_length", len(set(lengths)) == 1, "Vector lengths do not match")

    check("control_removed", ".control" not in normalized and ".endc" not in normalized,
        "Normalized netlist still contains .control/.endc")
    check("tran_appended", ".tran 0.1n 20n" in normalized,
        "Expected .tran line not found in normalized netlist")
    check("save_appended", ".save time v(in) v(out)" in normalized,
        "Expected .save line not found in normalized netlist")
    check("end_present", batch.deck.lines[-1].strip().lower() == ".end",
        "Expected .end not found in normalized netlist")
    check("include_rewritten", os.path.normpath(include_path) in normalized,
        "Expected absolute include path not found in normalized netlist")

    report["passed"] = not errors
    return report
