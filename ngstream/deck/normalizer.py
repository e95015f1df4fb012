# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

"""
Turns a SPICE deck as written for interactive use (typically exported by a
schematic editor) into a deck that the shared-library engine can load in
batch mode:

- continuation lines ("+ ...") are folded into their logical line,
- .include/.lib paths and input_file="..." attributes become absolute,
- the .control ... .endc block is removed; its tran command is hoisted out
  as a .tran directive and the probes named by its wrdata commands are
  collected into a .save directive,
- a terminating .end is appended if missing.
"""

import os
import re
from pathlib import Path
from typing import NamedTuple, Iterable
from public import public

from .paths import PathResolver, ROOT_ENV_VAR
from .textutil import (
    first_token,
    split_tokens,
    quote_char,
    unquote,
    requote,
    starts_with_ci,
)

CONTINUATION = "+"
CONTROL_OPEN = ".control"
CONTROL_CLOSE = ".endc"
TERMINATOR = ".end"
TIME_SIGNAL = "time"

INCLUDE_DIRECTIVES = (".include", ".inc")
LIB_DIRECTIVE = ".lib"
TRAN_COMMANDS = ("tran", ".tran")
EXPORT_COMMAND = "wrdata"

_input_file_re = re.compile(r'(input_file\s*=\s*")([^"]*)(")', re.IGNORECASE)

@public
class DeckError(Exception):
    pass

@public
class NormalizedDeck(NamedTuple):
    lines: tuple[str, ...]
    signals: tuple[str, ...]

    def netlist(self) -> str:
        return "\n".join(self.lines) + "\n"

    def save_signals(self) -> tuple[str, ...]:
        """Columns of the synthesized .save directive (time first)."""
        if not self.signals:
            return ()
        return (TIME_SIGNAL,) + self.signals

@public
def is_probe(token: str) -> bool:
    return (starts_with_ci(token, "v(")
        or starts_with_ci(token, "i(")
        or token.lower() == TIME_SIGNAL)

@public
def fold_continuations(physical_lines: Iterable[str]) -> list[str]:
    logical_lines = []
    for raw in physical_lines:
        stripped = raw.strip()
        if stripped.startswith(CONTINUATION) and logical_lines:
            logical_lines[-1] += " " + stripped[1:].strip()
        else:
            logical_lines.append(raw)
    return logical_lines

@public
def rewrite_include_or_lib(line: str, resolver: PathResolver) -> str:
    tokens = split_tokens(line)
    if not tokens:
        return line
    directive = tokens[0].lower()
    is_lib = directive == LIB_DIRECTIVE
    if not (is_lib or directive in INCLUDE_DIRECTIVES):
        return line
    if len(tokens) < 2:
        return line

    path_token = tokens[1]
    resolved = resolver.resolve(unquote(path_token))
    rebuilt = [tokens[0], requote(resolved, quote_char(path_token))]
    if is_lib and len(tokens) > 2:
        rebuilt.append(tokens[2])
    return " ".join(rebuilt)

@public
def rewrite_input_file(line: str, resolver: PathResolver) -> str:
    def repl(m):
        return m.group(1) + resolver.resolve(m.group(2)) + m.group(3)
    return _input_file_re.sub(repl, line)

def _tran_directive(tokens: list[str]) -> str | None:
    if len(tokens) < 2 or tokens[0].lower() not in TRAN_COMMANDS:
        return None
    return " ".join([".tran"] + tokens[1:])

def _export_probes(tokens: list[str]) -> list[str]:
    """
    Probe tokens of a wrdata command. The first token after the command
    is always the output file, even if it looks like a probe.
    """
    lowered = [t.lower() for t in tokens]
    try:
        start = lowered.index(EXPORT_COMMAND)
    except ValueError:
        return []
    return [t for t in tokens[start + 2:] if is_probe(t)]

class _SignalSet:
    def __init__(self):
        self.seen = set()
        self.ordered = []

    def add(self, name):
        key = name.lower()
        if key in self.seen:
            return
        self.seen.add(key)
        if key != TIME_SIGNAL:
            self.ordered.append(name)

@public
def normalize(raw_lines: Iterable[str], base_dir, root_override: str | None = None,
        root_var: str = ROOT_ENV_VAR) -> NormalizedDeck:
    """
    Normalizes the deck given as physical lines.

    base_dir is the directory of the source deck, against which relative
    paths are resolved. root_override replaces the PDK root placeholder
    (falls back to the environment variable named root_var).

    Returns the output lines together with the distinct signals named by
    wrdata commands of the control block (without the time axis).
    """
    resolver = PathResolver(base_dir, root_override, root_var)

    output = []
    signals = _SignalSet()
    inside_control = False
    end_index = None
    has_tran = False
    extracted_tran = None

    for line in fold_continuations(raw_lines):
        stripped = line.strip()
        keyword = first_token(stripped)

        if inside_control:
            if keyword == CONTROL_CLOSE:
                inside_control = False
                continue
            tokens = split_tokens(stripped)
            if extracted_tran is None:
                extracted_tran = _tran_directive(tokens)
            for probe in _export_probes(tokens):
                signals.add(probe)
            continue

        if keyword == CONTROL_OPEN:
            inside_control = True
            continue

        rewritten = rewrite_include_or_lib(line, resolver)
        rewritten = rewrite_input_file(rewritten, resolver)

        if keyword == ".tran":
            has_tran = True
        if keyword == TERMINATOR and end_index is None:
            end_index = len(output)
        output.append(rewritten)

    synthesized = []
    if not has_tran and extracted_tran:
        synthesized.append(extracted_tran)
    if signals.ordered:
        synthesized.append(" ".join([".save", TIME_SIGNAL] + signals.ordered))

    if end_index is None:
        output += synthesized
        output.append(TERMINATOR)
    else:
        output[end_index:end_index] = synthesized

    return NormalizedDeck(tuple(output), tuple(signals.ordered))

@public
def read_deck_lines(path) -> list[str]:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return [l.rstrip("\r\n") for l in f]
    except OSError as e:
        raise DeckError(f"Failed to read deck {str(path)!r}: {e}") from e

@public
def normalize_file(path, root_override: str | None = None, root_var: str = ROOT_ENV_VAR) -> NormalizedDeck:
    """Reads and normalizes a deck file; paths are resolved relative to its directory."""
    path = Path(os.path.abspath(path))
    return normalize(read_deck_lines(path), path.parent, root_override, root_var)
