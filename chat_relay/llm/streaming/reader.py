"""
Line framing for SSE streams.

Network chunks are not aligned with line boundaries, so the reader keeps the
unterminated tail of the previous chunk and only hands out complete lines.
"""

from __future__ import annotations

import structlog

from .models import LineKind, ProtocolLine

logger = structlog.get_logger(__name__)

DATA_MARKER = "data:"
COMMENT_MARKER = ":"


def classify_line(line: str) -> LineKind:
    """Classify a single line with its line terminator already removed."""
    if not line.strip():
        return LineKind.BLANK
    if line.startswith(COMMENT_MARKER):
        return LineKind.COMMENT
    if line.startswith(DATA_MARKER):
        return LineKind.DATA
    return LineKind.UNRECOGNIZED


class FrameReader:
    """Turns arbitrary text chunks into complete protocol lines."""

    def __init__(self) -> None:
        self._buffer = ""
        self.lines_read = 0
        self.lines_dropped = 0

    @property
    def pending(self) -> str:
        """Text received after the last newline."""
        return self._buffer

    def feed(self, chunk: str) -> list[ProtocolLine]:
        """
        Append a chunk and return every line it completed.

        Blank and comment lines are dropped here and never reach the parser.
        """
        if not chunk:
            return []

        self._buffer += chunk
        lines: list[ProtocolLine] = []

        while (newline_index := self._buffer.find("\n")) != -1:
            line = self._buffer[:newline_index]
            self._buffer = self._buffer[newline_index + 1:]
            if line.endswith("\r"):
                line = line[:-1]

            kind = classify_line(line)
            if kind in (LineKind.BLANK, LineKind.COMMENT):
                self.lines_dropped += 1
                continue

            self.lines_read += 1
            lines.append(ProtocolLine(kind=kind, text=line))

        return lines

    def close(self) -> None:
        """Discard unterminated trailing text at end of stream."""
        if self._buffer:
            logger.debug("stream.unterminated_tail_discarded", length=len(self._buffer))
        self._buffer = ""
