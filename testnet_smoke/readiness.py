"""Wait for a readiness pattern to show up in a stream of log lines.

Patterns use expect-style globs: `*` matches any run of characters
(newlines included), `?` matches one character and a backslash makes the
next character literal. The glob is matched unanchored against everything
read from the stream so far, so `validator_1*Aptos is running` matches the
compose prefix and the message even when they arrive on different lines.
"""
from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
import queue
import re
import threading
import time
from typing import Callable, Iterable

from testnet_smoke.errors import ConfigError

logger = logging.getLogger(__name__)

MAX_BUFFER_CHARS = 64 * 1024

_EOF = object()


class ReadinessOutcome(str, enum.Enum):
    MATCHED = "matched"
    TIMEOUT = "timeout"
    EOF = "eof"


@dataclass(frozen=True)
class ReadinessResult:
    outcome: ReadinessOutcome
    matched_text: str | None
    lines_seen: int
    elapsed: float

    @property
    def matched(self) -> bool:
        return self.outcome is ReadinessOutcome.MATCHED


@dataclass(frozen=True)
class ReadinessPattern:
    glob: str
    # Fixed-width pieces between the `*` wildcards, in order.
    segments: tuple[re.Pattern[str], ...]
    widths: tuple[int, ...]

    @classmethod
    def from_glob(cls, glob: str) -> ReadinessPattern:
        if not glob:
            raise ConfigError("readiness pattern must not be empty")

        pieces: list[list[str]] = [[]]
        chars = iter(glob)
        for char in chars:
            if char == "\\":
                escaped = next(chars, "\\")
                pieces[-1].append(re.escape(escaped))
            elif char == "*":
                pieces.append([])
            elif char == "?":
                pieces[-1].append(".")
            else:
                pieces[-1].append(re.escape(char))

        parts = [piece for piece in pieces if piece]
        return cls(
            glob=glob,
            segments=tuple(re.compile("".join(piece), re.DOTALL) for piece in parts),
            widths=tuple(len(piece) for piece in parts),
        )


class _Matcher:
    """Incremental leftmost match of the pattern's segments over a growing buffer."""

    def __init__(self, pattern: ReadinessPattern) -> None:
        self._pattern = pattern
        self._buffer = ""
        self._reset()

    def _reset(self) -> None:
        self._next_segment = 0
        self._position = 0
        self._start: int | None = None
        self._scanned = 0

    def feed(self, text: str) -> str | None:
        self._buffer += text
        if len(self._buffer) > MAX_BUFFER_CHARS:
            self._buffer = self._buffer[-MAX_BUFFER_CHARS:]
            self._reset()
        return self._advance()

    def _advance(self) -> str | None:
        segments = self._pattern.segments
        while self._next_segment < len(segments):
            width = self._pattern.widths[self._next_segment]
            # Text before this point was already searched without success.
            begin = max(self._position, self._scanned - width + 1, 0)
            found = segments[self._next_segment].search(self._buffer, begin)
            if found is None:
                self._scanned = len(self._buffer)
                return None
            if self._start is None:
                self._start = found.start()
            self._position = found.end()
            self._scanned = found.end()
            self._next_segment += 1
        return self._buffer[self._start or 0:self._position]


def _pump(lines: Iterable[str], sink: queue.Queue) -> None:
    try:
        for line in lines:
            sink.put(line)
    except (OSError, ValueError) as exc:
        # Reading from a pipe the other side already closed.
        logger.debug("Log stream closed while reading: %s", exc)
    finally:
        sink.put(_EOF)


def wait_for_pattern(
    lines: Iterable[str],
    pattern: ReadinessPattern,
    *,
    timeout: float,
    clock: Callable[[], float] = time.monotonic,
    on_line: Callable[[str], None] | None = None,
) -> ReadinessResult:
    """Block until `pattern` appears in `lines`, the stream ends, or `timeout` elapses."""
    started = clock()
    matcher = _Matcher(pattern)
    lines_seen = 0

    if not pattern.segments:
        return ReadinessResult(ReadinessOutcome.MATCHED, "", 0, 0.0)

    inbox: queue.Queue = queue.Queue()
    reader = threading.Thread(target=_pump, args=(lines, inbox), name="log-reader", daemon=True)
    reader.start()

    while True:
        remaining = timeout - (clock() - started)
        if remaining <= 0:
            return ReadinessResult(ReadinessOutcome.TIMEOUT, None, lines_seen, clock() - started)
        try:
            item = inbox.get(timeout=remaining)
        except queue.Empty:
            continue
        if item is _EOF:
            return ReadinessResult(ReadinessOutcome.EOF, None, lines_seen, clock() - started)

        lines_seen += 1
        if on_line is not None:
            on_line(item)
        separator = "\n" if lines_seen > 1 else ""
        matched = matcher.feed(separator + item)
        if matched is not None:
            return ReadinessResult(ReadinessOutcome.MATCHED, matched, lines_seen, clock() - started)
