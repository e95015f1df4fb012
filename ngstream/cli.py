# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

"""
ngstream prepares SPICE decks for the ngspice shared library and streams
transient results.

Examples:

    ngstream normalize amp.spice --pdk-root /opt/pdk -o amp_batch.spice
    ngstream run amp.spice --csv amp.csv
    ngstream stream amp.spice --step 0.1n --window 20n --csv live.csv
"""

import argparse
import csv
import sys
import threading

from .version import version
from .deck.normalizer import DeckError, normalize_file
from .sim.ngspice_common import NgspiceError
from .sim.ngspice_ffi import NgspiceFFI
from .sim.export import ExportError
from .sim.events import SessionEvent
from .sim.session import StreamingSession, StreamSettings
from .sim.batch import run_spice_file, pipeline_selftest


def cmd_normalize(args):
    deck = normalize_file(args.deck, args.pdk_root)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(deck.netlist())
    else:
        sys.stdout.write(deck.netlist())
    print(f"signals: {' '.join(deck.signals) or '(none)'}", file=sys.stderr)
    return 0


def cmd_run(args):
    with NgspiceFFI.launch(debug=args.debug) as engine:
        batch = run_spice_file(engine, args.deck, args.pdk_root)
        if args.all:
            columns = engine.all_vectors()
        else:
            columns = {name: batch.result[name] for name in batch.result.list_signals()}
    if args.csv:
        with open(args.csv, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(list(columns))
            writer.writerows(zip(*columns.values()))
    else:
        for name, values in columns.items():
            last = values[-1] if values else None
            print(f"{name}: {len(values)} points, last={last!r}")
    return 0


def cmd_stream(args):
    settings = StreamSettings(buffer_capacity=args.capacity, frame_stride=args.frame_stride,
        buffer_signals=args.signals, debug=args.debug)
    finished = threading.Event()

    with StreamingSession.launch(settings=settings) as session:
        session.events.subscribe(SessionEvent.FRAME,
            lambda frame: print(f"t={frame.time:.6g} samples={frame.sample_count}"))
        session.events.subscribe(SessionEvent.EXPORT_ERROR,
            lambda message: print(f"export error: {message}", file=sys.stderr))
        session.events.subscribe(SessionEvent.STREAMING_STOPPED, finished.set)

        session.load_spice_file(args.deck, args.pdk_root)
        if args.csv:
            session.configure_export(args.csv, args.signals)
        session.start(args.step, args.window)
        try:
            finished.wait(args.duration)
        except KeyboardInterrupt:
            pass
        session.stop()
        print(f"{session.sample_count} samples, {len(session.snapshot())} buffered")
    return 0


def cmd_selftest(args):
    with NgspiceFFI.launch(debug=args.debug) as engine:
        report = pipeline_selftest(engine, args.output_dir)
    for name, ok in report["checks"].items():
        print(f"{'ok  ' if ok else 'FAIL'} {name}")
    for error in report["errors"]:
        print(error, file=sys.stderr)
    return 0 if report["passed"] else 1


def build_parser():
    parser = argparse.ArgumentParser(prog='ngstream',
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('-V', '--version', action='version', version=f'%(prog)s {version}')
    parser.add_argument('--debug', action='store_true', help="Print engine and session trace output.")
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('normalize', help="Print the batch-executable form of a deck.")
    p.add_argument('deck')
    p.add_argument('--pdk-root', help="Value for $PDK_ROOT (default: environment).")
    p.add_argument('-o', '--output', help="Write the deck to this file instead of stdout.")
    p.set_defaults(func=cmd_normalize)

    p = sub.add_parser('run', help="Run a deck to completion (batch mode).")
    p.add_argument('deck')
    p.add_argument('--pdk-root')
    p.add_argument('--csv', help="Write time and signals as CSV columns.")
    p.add_argument('--all', action='store_true', help="Write every vector of the plot, not only the harvested signals.")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser('stream', help="Stream a transient run.")
    p.add_argument('deck')
    p.add_argument('--pdk-root')
    p.add_argument('--step', required=True, help="Time step, e.g. 0.1n.")
    p.add_argument('--window', required=True, help="Streaming window, e.g. 20n.")
    p.add_argument('--duration', type=float, default=None, help="Stop after this many seconds.")
    p.add_argument('--csv', help="Mirror samples to this CSV file.")
    p.add_argument('--signals', nargs='+', help="Only buffer/export these signals.")
    p.add_argument('--capacity', type=int, default=10000, help="Ring buffer capacity (default 10000).")
    p.add_argument('--frame-stride', type=int, default=64, help="Samples per progress line (default 64).")
    p.set_defaults(func=cmd_stream)

    p = sub.add_parser('selftest', help="Run the normalize-and-run pipeline check.")
    p.add_argument('--output-dir')
    p.set_defaults(func=cmd_selftest)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except (DeckError, ExportError, NgspiceError) as e:
        print(f"ngstream: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
