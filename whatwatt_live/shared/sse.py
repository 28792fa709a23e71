"""
MODULE OVERVIEW:
The raw `text/event-stream` parser.

WHAT IS HAPPENING HERE:
TCP does not care about event boundaries, so a chunk can end anywhere, even in
the middle of `data: {"P_In":1`. `parse_sse` only emits blocks that are closed
by a blank line and hands the unterminated tail back as `remainder`. The caller
prepends that remainder to the next chunk and parses again.
"""
import re
from typing import List, Tuple

from whatwatt_live.shared.models import Frame

# One or more blank lines, LF or CRLF
_BOUNDARY = re.compile(r"(?:\r?\n){2,}")
_LINE = re.compile(r"\r?\n")


def _parse_block(block: str) -> Frame | None:
    event_name = None
    data_lines: List[str] = []

    for line in _LINE.split(block):
        if line.startswith("event:"):
            event_name = line[6:].strip()
        elif line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)
        # comments (":") and unknown fields such as id/retry are ignored

    if not event_name and not data_lines:
        return None
    return Frame(event=event_name or "message", data="\n".join(data_lines))


def parse_sse(buffer: str) -> Tuple[List[Frame], str]:
    """Split accumulated stream text into complete frames and the leftover tail."""
    blocks = _BOUNDARY.split(buffer)
    remainder = blocks.pop()

    frames = []
    for block in blocks:
        frame = _parse_block(block)
        if frame is not None:
            frames.append(frame)
    return frames, remainder


class SSEBuffer:
    """Carries the unterminated tail between `feed` calls."""

    def __init__(self) -> None:
        self._remainder = ""

    @property
    def remainder(self) -> str:
        return self._remainder

    def feed(self, text: str) -> List[Frame]:
        frames, self._remainder = parse_sse(self._remainder + text)
        return frames
