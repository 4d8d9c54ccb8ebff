"""Incremental UTF-8 decoding for chunked network bodies.

Chunks arrive with arbitrary boundaries, so a multi-byte character may be
split between two reads. The decoder keeps the unfinished tail (at most 3
bytes) until the next chunk completes it.
"""

import codecs
import logging

log = logging.getLogger("aibook")

SKIP_BYTE_HANDLER = "aibook-skip-byte"


def _skip_one_byte(exc: UnicodeDecodeError):
    """Drop a single malformed byte and resume right after it."""
    if not isinstance(exc, UnicodeDecodeError):
        raise exc
    log.debug("    stream_decoder: skipping malformed byte 0x%02x at offset %d",
              exc.object[exc.start], exc.start)
    return "", exc.start + 1


codecs.register_error(SKIP_BYTE_HANDLER, _skip_one_byte)


class Utf8StreamDecoder:
    """Stateful decoder; one instance per stream, never shared."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors=SKIP_BYTE_HANDLER)

    def decode(self, data: bytes) -> str:
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"expected bytes, got {type(data).__name__}")
        return self._decoder.decode(bytes(data), final=False)

    def flush(self) -> str:
        """Finish the stream. An incomplete trailing sequence is dropped."""
        return self._decoder.decode(b"", final=True)

    @property
    def pending(self) -> bytes:
        """Bytes held back waiting for the rest of their character."""
        buffered, _flag = self._decoder.getstate()
        return buffered

    def reset(self):
        self._decoder.reset()
