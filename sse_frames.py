"""Split decoded SSE text into frames.

Wire format (one event per frame, frames separated by a blank line):

    data: {"type": "content", "value": "..."}

Comment lines (``: keep-alive``), frames without data and the ``[DONE]``
end marker are dropped here, before anything tries to parse them.
"""

import logging

log = logging.getLogger("aibook")

FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def frame_payload(frame: str) -> str | None:
    """Return the data payload of one frame, or None if it carries no data."""
    data_lines: list[str] = []
    for line in frame.split("\n"):
        if not line.startswith(DATA_PREFIX):
            continue
        value = line[len(DATA_PREFIX):]
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)
    if not data_lines:
        return None
    payload = "\n".join(data_lines).strip()
    if not payload or payload == DONE_SENTINEL:
        return None
    return payload


class FrameSplitter:
    """Accumulate text and hand back complete frame payloads."""

    def __init__(self):
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        if not text:
            return []
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        parts = self._buffer.split(FRAME_DELIMITER)
        # Last segment is either "" or an incomplete frame
        self._buffer = parts.pop()
        return self._collect(parts)

    def flush(self) -> list[str]:
        """Emit a trailing frame the server never terminated."""
        rest, self._buffer = self._buffer.replace("\r", ""), ""
        return self._collect([rest]) if rest.strip() else []

    @property
    def pending(self) -> str:
        return self._buffer

    @staticmethod
    def _collect(frames: list[str]) -> list[str]:
        payloads = []
        for frame in frames:
            payload = frame_payload(frame)
            if payload is None:
                if frame.strip():
                    log.debug("    sse_frames: dropped non-data frame %r", frame[:40])
                continue
            payloads.append(payload)
        return payloads
