"""
Line framing for CR/LF terminated text streams.

Cluster servers terminate lines with CR, LF or CRLF (sometimes mixed on the
same connection). The framer turns arbitrary read() chunks into complete
lines and produces the same lines no matter how the bytes were split.
"""

from typing import List

from .constants import CLUSTER_ENCODING


class LineFramer:
    """Incremental CR / LF / CRLF line splitter.

    A CR ends the line immediately. An LF arriving straight after a CR
    (in the same chunk or the next one) belongs to that CR and is dropped,
    so a split CRLF never produces an extra empty line. Empty lines between
    two terminators are kept.
    """

    def __init__(self, encoding: str = CLUSTER_ENCODING):
        self.encoding = encoding
        self._buffer: List[str] = []
        self._after_cr = False

    def feed(self, data: bytes) -> List[str]:
        """Add a chunk of bytes and return every line it completed."""
        text = data.decode(self.encoding, errors="replace")
        lines = []

        start = 0
        for i, ch in enumerate(text):
            if ch == "\n":
                if self._after_cr:
                    # Second half of a CRLF
                    self._after_cr = False
                    start = i + 1
                    continue
                lines.append(self._take(text[start:i]))
                start = i + 1
            elif ch == "\r":
                lines.append(self._take(text[start:i]))
                start = i + 1
                self._after_cr = True
            else:
                self._after_cr = False

        if start < len(text):
            self._buffer.append(text[start:])
            self._after_cr = False

        return lines

    def flush(self) -> List[str]:
        """Return the unterminated remainder (if any) as a final line."""
        self._after_cr = False
        if not self._buffer:
            return []
        remainder = "".join(self._buffer)
        self._buffer = []
        return [remainder] if remainder else []

    @property
    def pending(self) -> str:
        """Buffered text that has not been terminated yet."""
        return "".join(self._buffer)

    def _take(self, tail: str) -> str:
        if self._buffer:
            self._buffer.append(tail)
            line = "".join(self._buffer)
            self._buffer = []
            return line
        return tail
