"""Incremental frame decoders for upstream streaming responses.

Network reads can end anywhere: inside a multi-byte character, inside a JSON
object, or between the two newlines of an SSE frame separator. The decoders
here buffer the incomplete tail and only release whole frames.
"""

import codecs
import json
from typing import Any, List, Optional


DONE_SENTINEL = "[DONE]"


class _TextBuffer:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.buffer = ""

    def feed_bytes(self, chunk: bytes) -> None:
        text = self._decoder.decode(chunk)
        if text:
            self.buffer = (self.buffer + text).replace("\r\n", "\n")

    def finish(self) -> None:
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.buffer = (self.buffer + tail).replace("\r\n", "\n")


class SSEFrameDecoder(_TextBuffer):
    """Splits a byte stream into SSE frames separated by a blank line."""

    def feed(self, chunk: bytes) -> List[str]:
        self.feed_bytes(chunk)
        frames: List[str] = []
        while True:
            idx = self.buffer.find("\n\n")
            if idx == -1:
                break
            frames.append(self.buffer[:idx])
            self.buffer = self.buffer[idx + 2:]
        return frames

    def flush(self) -> Optional[str]:
        """Return a trailing frame that never received its terminating blank line."""
        self.finish()
        leftover = self.buffer.strip()
        self.buffer = ""
        return leftover or None


class LineDecoder(_TextBuffer):
    """Splits a byte stream into non-empty lines (NDJSON)."""

    def feed(self, chunk: bytes) -> List[str]:
        self.feed_bytes(chunk)
        lines: List[str] = []
        while True:
            idx = self.buffer.find("\n")
            if idx == -1:
                break
            line = self.buffer[:idx].strip()
            self.buffer = self.buffer[idx + 1:]
            if line:
                lines.append(line)
        return lines

    def flush(self) -> Optional[str]:
        self.finish()
        leftover = self.buffer.strip()
        self.buffer = ""
        return leftover or None


def frame_data_lines(frame: str) -> List[str]:
    """Payloads of a frame's lines, with any ``data:`` prefix removed.

    Lines without the prefix are kept as well; some upstreams omit it.
    Event, id and comment lines carry no payload and are skipped.
    """
    payloads: List[str] = []
    for raw in frame.split("\n"):
        line = raw.strip()
        if not line or line.startswith(":"):
            continue
        if line.startswith("data:"):
            line = line[5:].strip()
        elif line.startswith(("event:", "id:", "retry:")):
            continue
        if line:
            payloads.append(line)
    return payloads


def frame_event_data(frame: str) -> Optional[str]:
    """The last ``data:`` payload of an SSE event frame."""
    data: Optional[str] = None
    for raw in frame.split("\n"):
        if raw.startswith("data:"):
            data = raw[5:].strip()
    return data


def parse_json(payload: str) -> Optional[Any]:
    try:
        return json.loads(payload)
    except (json.JSONDecodeError, ValueError):
        return None
