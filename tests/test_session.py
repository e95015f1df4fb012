# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import csv
import time
import threading
import pytest
from ngstream.sim.ngspice_common import NgspiceError, NgspiceConfigError
from ngstream.sim.events import SessionEvent
from ngstream.sim.session import StreamingSession, StreamSettings, SessionState
from engine_helpers import FakeEngine, wait_until

def ramp(n, step=1e-10):
    return [[i * step, i * 0.1, i * 0.05] for i in range(n)]

def watch(session, event):
    """Returns a threading.Event set when event is emitted."""
    flag = threading.Event()
    session.events.subscribe(event, lambda *args: flag.set())
    return flag

def test_run_to_completion(make_session):
    points = ramp(10)
    session, engine = make_session(FakeEngine(points=points), frame_stride=4)
    frames = []
    session.events.subscribe(SessionEvent.FRAME, frames.append)
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)

    session.start("0.1n", "2n")
    assert stopped.wait(5)
    assert session.state == SessionState.STOPPED
    assert engine.commands == ["bg_tran 1.0e-10 2.0e-9"]
    assert [s.time for s in session.snapshot()] == [p[0] for p in points]
    assert session.sample_count == 10
    assert session.current_time == points[-1][0]
    assert session.buffer_columns() == ("time", "V(in)", "V(out)")

    assert [f.sample_count for f in frames] == [4, 8]
    assert frames[0].time == points[3][0]
    assert frames[0].step == 1e-10
    assert frames[0].window == 2e-9

    session.stop()
    assert session.state == SessionState.IDLE
    assert "bg_halt" not in engine.commands

def test_start_requires_engine():
    session = StreamingSession(lambda: FakeEngine())
    assert not session.initialized
    with pytest.raises(NgspiceConfigError, match="not initialized"):
        session.start("1n", "10n")
    assert session.state == SessionState.IDLE

@pytest.mark.parametrize("step, window", [
    (0, "10n"),
    ("-1n", "10n"),
    ("1n", 0),
    ("10n", "10n"),
    ("10n", "1n"),
    ("abc", "10n"),
])
def test_start_validation(make_session, step, window):
    session, engine = make_session()
    with pytest.raises(NgspiceConfigError):
        session.start(step, window)
    assert session.state == SessionState.IDLE
    assert engine.commands == []
    assert session._driver is None

def test_setup_failure_returns_to_idle(make_session):
    session, engine = make_session(FakeEngine(fail_commands={"bg_tran"}))
    seen = []
    session.events.subscribe(SessionEvent.STREAMING_STARTED, lambda: seen.append("started"))
    session.events.subscribe(SessionEvent.STREAMING_STOPPED, lambda: seen.append("stopped"))
    with pytest.raises(NgspiceError, match="bg_tran failed"):
        session.start("1n", "10n")
    assert session.state == SessionState.IDLE
    assert seen == ["started", "stopped"]
    assert session._driver is None
    engine.deliver([0.0, 1.0, 2.0])
    assert session.sample_count == 0

def test_stop_is_terminal(make_session, tmp_path):
    session, engine = make_session(FakeEngine(delay=0.001), frame_stride=1)
    frames = []
    session.events.subscribe(SessionEvent.FRAME, frames.append)
    session.configure_export(tmp_path / "live.csv")
    session.start(1e-9, 1e-6)
    assert session.state == SessionState.RUNNING
    assert wait_until(lambda: session.sample_count > 5)

    session.stop()
    assert session.state == SessionState.IDLE
    assert "bg_halt" in engine.commands
    count = session.sample_count
    buffered = len(session.snapshot())
    frame_count = len(frames)
    rows = session.export.rows_written

    engine.deliver([1.0, 1.0, 1.0])
    engine.deliver([2.0, 1.0, 1.0])
    assert session.sample_count == count
    assert len(session.snapshot()) == buffered
    assert len(frames) == frame_count
    assert session.export.rows_written == rows

def test_stop_is_idempotent(make_session):
    session, engine = make_session(FakeEngine(delay=0.001))
    session.stop()
    session.stop()
    assert session.state == SessionState.IDLE
    session.start("1n", "1u")
    session.stop()
    session.stop()
    assert session.state == SessionState.IDLE
    assert engine.commands.count("bg_halt") == 1

def test_restart_stops_previous_run(make_session):
    session, engine = make_session(FakeEngine(delay=0.001))
    session.start("1n", "1u")
    assert wait_until(lambda: session.sample_count > 3)
    session.start("2n", "2u")
    assert engine.commands == ["bg_tran 1.0e-9 1.0e-6", "bg_halt", "bg_tran 2.0e-9 2.0e-6"]
    assert session.state == SessionState.RUNNING
    assert session.step == 2e-9
    assert session.window == 2e-6
    assert wait_until(lambda: session.sample_count > 0)
    assert session.snapshot()[0].time == 0.0
    session.stop()

def test_time_fallback_without_time_vector(make_session):
    engine = FakeEngine(names=("V(a)",), points=[[1.0], [2.0], [3.0]])
    session, _ = make_session(engine)
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)
    session.start("1n", "10n")
    assert stopped.wait(5)
    times = [s.time for s in session.snapshot()]
    assert times == pytest.approx([0.0, 1e-9, 2e-9])

def test_buffer_capacity(make_session):
    session, _ = make_session(FakeEngine(points=ramp(10)))
    session.configure_buffer(capacity=3)
    assert session.settings.buffer_capacity == 3
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)
    session.start("0.1n", "1n")
    assert stopped.wait(5)
    assert [s.time for s in session.snapshot()] == [p[0] for p in ramp(10)[-3:]]
    assert [s.time for s in session.pop_samples(2)] == [p[0] for p in ramp(10)[-3:-1]]
    assert len(session.snapshot()) == 1

def test_buffer_signal_filter(make_session):
    session, _ = make_session(FakeEngine(points=ramp(5)),
        buffer_signals=["v(OUT)", "nonexistent"])
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)
    session.start("0.1n", "1n")
    assert stopped.wait(5)
    assert session.buffer_columns() == ("V(out)",)
    samples = session.snapshot()
    assert len(samples) == 5
    assert [list(s.values) for s in samples] == [[p[2]] for p in ramp(5)]
    arr = session.samples_array()
    assert arr.shape == (5, 2)
    assert arr[:, 0].tolist() == [p[0] for p in ramp(5)]

def test_catalog_rebuilt_per_run(make_session):
    engine = FakeEngine(points=ramp(3))
    session, _ = make_session(engine)
    stopped = threading.Event()
    session.events.subscribe(SessionEvent.STREAMING_STOPPED, stopped.set)
    session.start("0.1n", "1n")
    assert stopped.wait(5)
    session.stop()
    first_generation = session.catalog.generation

    engine.names = ["time", "V(x)", "I(V1)"]
    stopped.clear()
    session.start("0.1n", "1n")
    assert stopped.wait(5)
    assert session.buffer_columns() == ("time", "V(x)", "I(V1)")
    assert session.catalog.generation > first_generation
    assert session.catalog.index_of("v1#branch") == 2

def test_export(make_session, tmp_path):
    path = tmp_path / "sub" / "live.csv"
    session, _ = make_session(FakeEngine(points=ramp(4)))
    session.configure_export(path, ["v(in)"])
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)
    session.start("0.1n", "1n")
    assert stopped.wait(5)
    with open(path, newline="") as f:
        rows = list(csv.reader(f))
    assert rows[0] == ["time", "signal", "value"]
    assert [r[1] for r in rows[1:]] == ["V(in)"] * 4
    assert [float(r[2]) for r in rows[1:]] == [p[1] for p in ramp(4)]

def test_export_watermark_kept_across_runs(make_session, tmp_path):
    path = tmp_path / "live.csv"
    session, _ = make_session(FakeEngine(points=ramp(3)))
    session.configure_export(path)
    stopped = threading.Event()
    session.events.subscribe(SessionEvent.STREAMING_STOPPED, stopped.set)

    def run():
        stopped.clear()
        session.start("0.1n", "1n")
        assert stopped.wait(5)
        session.stop()

    run()
    run()
    # The second run starts at t=0 again, below the watermark.
    assert session.export.rows_written == 3 * 2
    with open(path, newline="") as f:
        times = [float(r[0]) for r in list(csv.reader(f))[1:]]
    assert times == sorted(times)

    session.configure_export(path)
    run()
    assert session.export.rows_written == 3 * 2

class BrokenFile:
    def write(self, data):
        raise OSError("disk full")

    def flush(self):
        raise OSError("disk full")

    def close(self):
        pass

def test_export_failure_keeps_streaming(make_session, tmp_path):
    session, _ = make_session(FakeEngine(points=ramp(10)))
    session.configure_export(tmp_path / "live.csv")
    session.export._file = BrokenFile()
    session.export._writer = csv.writer(session.export._file)
    errors = []
    session.events.subscribe(SessionEvent.EXPORT_ERROR, errors.append)
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)
    session.start("0.1n", "2n")
    assert stopped.wait(5)
    assert len(errors) == 1
    assert "disk full" in errors[0]
    assert not session.export.enabled
    assert len(session.snapshot()) == 10

def test_disable_export(make_session, tmp_path):
    session, _ = make_session()
    session.configure_export(tmp_path / "x.csv", ["v(in)"])
    session.disable_export()
    assert not session.export.enabled

def test_pause_resume(make_session):
    session, engine = make_session(FakeEngine(delay=0.001))
    session.start("1n", "1u")
    assert wait_until(lambda: session.sample_count > 3)

    session.pause()
    assert session.paused
    assert session.state == SessionState.RUNNING
    assert engine.commands[-1] == "bg_halt"
    count = session.sample_count
    time.sleep(0.05)
    assert session.sample_count == count
    assert session.state == SessionState.RUNNING

    session.resume()
    assert not session.paused
    assert engine.commands[-1] == "bg_resume"
    assert wait_until(lambda: session.sample_count > count + 3)
    times = [s.time for s in session.snapshot()]
    assert times == sorted(times)
    session.stop()
    assert session.state == SessionState.IDLE

def test_pause_requires_running(make_session):
    session, _ = make_session()
    with pytest.raises(NgspiceConfigError):
        session.pause()
    session.resume()

def test_pause_after_run_finished(make_session):
    session, engine = make_session(FakeEngine(points=ramp(3)), poll_interval=1.0)
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)
    session.start("0.1n", "1n")
    assert wait_until(lambda: session.sample_count == 3 and not engine.is_running())
    assert session.state == SessionState.RUNNING
    session.pause()
    assert not session.paused
    assert "bg_halt" not in engine.commands
    assert stopped.wait(3)
    assert session.state == SessionState.STOPPED

def test_pause_requested_from_handler(make_session):
    session, engine = make_session(FakeEngine(delay=0.001), frame_stride=5)
    session.events.subscribe(SessionEvent.FRAME,
        lambda frame: session.pause() if frame.sample_count == 5 else None)
    session.events.subscribe(SessionEvent.OUTPUT_LINE, lambda text: session.resume())
    session.start("1n", "1u")
    assert wait_until(lambda: session.paused and not engine.is_running())
    assert engine.commands[-1] == "bg_halt"
    assert session.state == SessionState.RUNNING
    count = session.sample_count
    time.sleep(0.05)
    assert session.sample_count == count

    # Output handlers count as engine callbacks too.
    session.on_output("stdout continue")
    assert wait_until(lambda: not session.paused)
    assert engine.commands[-1] == "bg_resume"
    assert wait_until(lambda: session.sample_count > count)
    session.stop()
    assert session.state == SessionState.IDLE

def test_pause_from_handler_while_stopping(make_session):
    session, engine = make_session(FakeEngine(delay=0.001), frame_stride=5)
    entered = threading.Event()
    outcomes = []

    def on_frame(frame):
        if entered.is_set():
            return
        entered.set()
        time.sleep(0.3)
        try:
            session.pause()
        except NgspiceConfigError:
            outcomes.append("declined")
        else:
            outcomes.append("requested")

    session.events.subscribe(SessionEvent.FRAME, on_frame)
    session.start("1n", "1u")
    assert entered.wait(5)
    stopper = threading.Thread(target=session.stop, daemon=True)
    stopper.start()
    stopper.join(3)
    assert not stopper.is_alive()
    assert session.state == SessionState.IDLE
    assert len(outcomes) == 1
    assert not session.paused

def test_blocking_calls_rejected_in_handlers(make_session):
    session, engine = make_session(FakeEngine(points=ramp(5)), frame_stride=1)
    errors = []

    def attempt(call):
        try:
            call()
        except NgspiceConfigError as e:
            errors.append(str(e))

    def on_frame(frame):
        if frame.sample_count == 1:
            attempt(lambda: session.start("1n", "10n"))
            attempt(lambda: session.load_deck([".end"]))
            attempt(lambda: session.set_parameter("rload", "2k"))
            attempt(lambda: session.run_dc("V1", 0, 1, "0.1"))
            attempt(lambda: session.vector("time"))
            attempt(lambda: session.command("echo hi"))

    session.events.subscribe(SessionEvent.FRAME, on_frame)
    # STREAMING_STOPPED handlers run on the driver thread.
    session.events.subscribe(SessionEvent.STREAMING_STOPPED,
        lambda: attempt(lambda: session.start("1n", "10n")))
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)
    session.start("0.1n", "1n")
    assert stopped.wait(5)
    assert len(errors) == 7
    assert all("callback or event handler" in e for e in errors)
    assert engine.commands == ["bg_tran 1.0e-10 1.0e-9"]
    assert engine.loaded == []
    assert engine.lookups == []

def test_stop_from_event_handler(make_session):
    session, engine = make_session(FakeEngine(delay=0.001), frame_stride=5)
    session.events.subscribe(SessionEvent.FRAME, lambda frame: session.stop())
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)
    session.start("1n", "1u")
    assert stopped.wait(5)
    assert wait_until(lambda: session.state == SessionState.IDLE)
    assert "bg_halt" in engine.commands
    count = session.sample_count
    assert count >= 5
    engine.deliver([1.0, 1.0, 1.0])
    assert session.sample_count == count
    session.stop()

def test_engine_exit_request_stops(make_session):
    session, engine = make_session(FakeEngine(delay=0.001))
    stopped = watch(session, SessionEvent.STREAMING_STOPPED)
    session.start("1n", "1u")
    assert wait_until(lambda: session.sample_count > 2)
    session.on_exit(1, False, False)
    assert stopped.wait(5)
    assert wait_until(lambda: session.state == SessionState.IDLE)
    assert "bg_halt" in engine.commands

def test_output_lines_forwarded(make_session):
    session, _ = make_session()
    lines = []
    session.events.subscribe(SessionEvent.OUTPUT_LINE, lines.append)
    session.on_output("stdout Circuit: rc")
    assert lines == ["stdout Circuit: rc"]

def test_set_parameter(make_session):
    session, engine = make_session()
    session.set_parameter("rload", "2k")
    assert engine.commands == ["alterparam rload=2.0e3", "reset"]

def test_reconfigure_rejected_while_running(make_session):
    session, engine = make_session(FakeEngine(delay=0.001))
    session.start("1n", "1u")
    with pytest.raises(NgspiceConfigError):
        session.set_parameter("rload", "2k")
    with pytest.raises(NgspiceConfigError):
        session.load_deck(["R1 a 0 1", ".end"])
    session.stop()
    session.load_deck(["R1 a 0 1", ".end"])
    assert engine.loaded == [["R1 a 0 1", ".end"]]

def test_load_spice_file(make_session, tmp_path):
    deck_path = tmp_path / "rc.spice"
    deck_path.write_text("R1 in out 1k\n.control\ntran 1n 10n\nwrdata o.csv v(out)\n.endc\n")
    session, engine = make_session()
    deck = session.load_spice_file(deck_path)
    assert deck.signals == ("v(out)",)
    assert engine.loaded[-1] == ["R1 in out 1k", ".tran 1n 10n", ".save time v(out)", ".end"]
    assert session.current_netlist == deck.lines

def test_external_inputs(make_session):
    session, _ = make_session()
    session.set_external_input("V1", 1.2)
    assert session.external_input("v1", 0.0) == 1.2
    assert session.external_input("V1", 5e-9) == 1.2
    assert session.external_input("vx") == 0.0

def test_vectors(make_session):
    engine = FakeEngine(vectors={"time": [0.0, 1.0], "v(out)": [0.0, 0.5]})
    session, _ = make_session(engine)
    assert session.vector("v(out)") == [0.0, 0.5]
    assert session.vector_names() == ["time", "v(out)"]
    assert session.command("echo hi") == ""

def test_vector_wrappers(make_session):
    engine = FakeEngine(vectors={"time": [0.0, 1e-9], "v(out)": [0.0, 0.5], "i(v1)": [0.0, -1e-3]})
    session, _ = make_session(engine)
    assert session.get_voltage("out") == [0.0, 0.5]
    assert session.get_current("v1") == [0.0, -1e-3]
    assert session.get_time_vector() == [0.0, 1e-9]
    assert session.get_voltage("missing") == []
    assert engine.lookups == ["v(out)", "i(v1)", "time", "v(missing)"]
    assert session.all_vectors() == engine.vectors

def test_foreground_analyses(make_session, tmp_path):
    session, engine = make_session()
    session.run_dc("V1", 0, "1.8", "0.1")
    session.run_transient("1n", "1u")
    session.run_transient(1e-9, "1u", start="100n")
    session.run_simulation()
    deck_path = tmp_path / "rc.cir"
    deck_path.write_text("* rc\nR1 a 0 1k\n.end\n")
    session.source_file(deck_path)
    assert engine.commands == [
        "dc V1 0.0e0 1.8e0 1.0e-1",
        "tran 1.0e-9 1.0e-6 0.0e0",
        "tran 1.0e-9 1.0e-6 1.0e-7",
        "bg_run",
        f"source {deck_path}",
    ]
    assert session.current_netlist is None

@pytest.mark.parametrize("call", [
    lambda s: s.run_transient(0, "1u"),
    lambda s: s.run_transient("1n", "1u", start="2u"),
    lambda s: s.run_transient("1n", "1u", start="-1n"),
    lambda s: s.run_dc("", 0, 1, "0.1"),
    lambda s: s.run_dc("V1", 0, 1, 0),
    lambda s: s.run_dc("V1", "x", 1, "0.1"),
])
def test_foreground_validation(make_session, call):
    session, engine = make_session()
    with pytest.raises(NgspiceConfigError):
        call(session)
    assert engine.commands == []

def test_foreground_rejected_while_streaming(make_session, tmp_path):
    session, engine = make_session(FakeEngine(delay=0.001))
    session.start("1n", "1u")
    for call in (
            lambda: session.run_dc("V1", 0, 1, "0.1"),
            lambda: session.run_transient("1n", "1u"),
            lambda: session.run_simulation(),
            lambda: session.source_file(tmp_path / "rc.cir")):
        with pytest.raises(NgspiceConfigError, match="while streaming"):
            call()
    session.stop()
    session.run_simulation()
    assert engine.commands == ["bg_tran 1.0e-9 1.0e-6", "bg_halt", "bg_run"]

def test_foreground_failure_propagates(make_session):
    session, _ = make_session(FakeEngine(fail_commands={"dc"}))
    with pytest.raises(NgspiceError, match="dc failed"):
        session.run_dc("V1", 0, 1, "0.1")

def test_settings_validation(make_session):
    with pytest.raises(NgspiceConfigError):
        StreamingSession(lambda: FakeEngine(), StreamSettings(frame_stride=0))
    session, _ = make_session()
    with pytest.raises(NgspiceConfigError):
        session.set_frame_stride(0)
    with pytest.raises(NgspiceConfigError):
        session.configure_buffer(capacity=0)
    session.set_frame_stride(3)
    assert session.settings.frame_stride == 3

def test_close_releases_engine():
    engine = FakeEngine()
    with StreamingSession.launch(lambda: engine) as session:
        assert session.initialized
        assert engine.callbacks is session
    assert engine.released
    assert engine.callbacks is None
    assert not session.initialized
