"""Line-delimited JSON framing for the agent subprocess output stream."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator, Callable

logger = logging.getLogger(__name__)

ParseErrorCallback = Callable[[str, Exception], None]


class LineFramer:
    """Accumulate arbitrary chunks and emit one parsed JSON object per complete line.

    The trailing fragment after the last newline is held back until a later chunk
    completes it. Blank lines are skipped. A line that is not a JSON object is
    logged, counted and dropped without interrupting the stream.
    """

    def __init__(self, on_error: ParseErrorCallback | None = None, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._on_error = on_error
        self.parse_errors = 0

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> list[dict[str, Any]]:
        """Emit whatever is left once the stream has ended."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([tail])

    def _parse_lines(self, lines: list[str]) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for raw in lines:
            line = raw.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
                if not isinstance(record, dict):
                    raise ValueError(f"expected a JSON object, got {type(record).__name__}")
            except ValueError as e:
                self.parse_errors += 1
                logger.warning("Skipping malformed protocol line (%s): %.200s", e, line)
                if self._on_error:
                    self._on_error(line, e)
                continue
            records.append(record)
        return records


async def iter_records(
    chunks: AsyncIterator[bytes],
    framer: LineFramer | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield parsed records from an async stream of byte chunks, in arrival order."""
    framer = framer or LineFramer()
    async for chunk in chunks:
        for record in framer.feed(chunk):
            yield record
    for record in framer.flush():
        yield record
