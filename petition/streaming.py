"""Server-sent event helpers and the partial-JSON stream consumer.

Producers emit one JSON object per ``data:`` line::

    data: {"type": "doc_started", "documentId": 3}\\n\\n

Consumers feed raw chunks (split anywhere, even mid-line or mid-UTF-8
sequence) into :class:`PartialJsonStream`, which applies every complete,
parseable line exactly once and keeps the last one as ``latest``.
"""
from __future__ import annotations

import codecs
import enum
import json
import logging
from typing import Any, Callable

log = logging.getLogger(__name__)

DATA_PREFIX = "data:"


def sse_event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


# ---------------------------------------------------------------------------
# Consumer state machine
# ---------------------------------------------------------------------------


class StreamState(str, enum.Enum):
    EMPTY = "empty"
    PARTIAL = "partial_received"
    COMPLETE = "complete"


class PartialJsonStream:
    """Apply-latest-and-skip-invalid consumer for ``data:`` JSON lines.

    ``EMPTY -> PARTIAL -> COMPLETE``. Lines that fail to parse are counted in
    ``skipped`` and otherwise ignored; the previous ``latest`` stays in place.
    """

    def __init__(self, on_update: Callable[[dict[str, Any]], None] | None = None):
        self.state = StreamState.EMPTY
        self.latest: dict[str, Any] | None = None
        self.applied = 0
        self.skipped = 0
        self._on_update = on_update
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: str | bytes) -> list[dict[str, Any]]:
        """Consume a chunk and return the objects applied from it, in order."""
        if self.state is StreamState.COMPLETE:
            raise RuntimeError("stream already closed")
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [obj for obj in map(self._apply_line, lines) if obj is not None]

    def close(self) -> dict[str, Any] | None:
        """Flush any unterminated final line and mark the stream complete."""
        if self.state is StreamState.COMPLETE:
            return self.latest
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if tail:
            self._apply_line(tail)
        self.state = StreamState.COMPLETE
        return self.latest

    def _apply_line(self, line: str) -> dict[str, Any] | None:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        raw = line[len(DATA_PREFIX):].strip()
        if not raw:
            return None
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            self.skipped += 1
            log.debug("Skipping unparseable stream line: %.80s", raw)
            return None
        if not isinstance(obj, dict):
            self.skipped += 1
            return None
        self.latest = obj
        self.applied += 1
        self.state = StreamState.PARTIAL
        if self._on_update is not None:
            self._on_update(obj)
        return obj


# ---------------------------------------------------------------------------
# Producer side: close a truncated JSON document
# ---------------------------------------------------------------------------

_MAX_CUT_ATTEMPTS = 64


def _close_open_structures(text: str) -> str:
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    if in_string:
        if escaped:
            text = text[:-1]
        text += '"'
    text = text.rstrip()
    if text.endswith(","):
        text = text[:-1]
    return text + "".join(reversed(stack))


def parse_partial_json(text: str) -> dict[str, Any] | None:
    """Best-effort parse of a JSON object whose tail has not arrived yet.

    Open strings and containers are closed; if the result still does not
    parse (e.g. a key without its value), the text is cut back to the
    previous comma or opening bracket and retried.
    """
    start = text.find("{")
    if start == -1:
        return None
    text = text[start:]
    cut = len(text)
    for _ in range(_MAX_CUT_ATTEMPTS):
        try:
            obj = json.loads(_close_open_structures(text[:cut]))
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            return obj
        cut = max(text.rfind(",", 0, cut), text.rfind("{", 0, cut - 1) + 1, text.rfind("[", 0, cut - 1) + 1)
        if cut <= 0:
            return None
    return None
