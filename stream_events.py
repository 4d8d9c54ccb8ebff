"""Event dispatch for one streamed chapter generation.

``GenerationStream`` is the per-request pipeline:

    raw bytes -> Utf8StreamDecoder -> FrameSplitter -> parse_frame -> dispatch

Dispatch mutates the generation's ``AccumulatedGeneration`` and reports to an
observer callback. Only an ``error`` event aborts; every other anomaly is
logged and skipped.
"""

import json
import logging
from typing import Callable, Optional

from branch_detector import BranchDetector, MIN_CONTENT_LENGTH
from chapter_assembler import DEFAULT_BRANCHES, assemble_result
from sse_frames import FrameSplitter
from story_errors import StreamError
from story_models import AccumulatedGeneration, GenerateResult, StreamEvent
from stream_decoder import Utf8StreamDecoder

log = logging.getLogger("aibook")

EVENT_TITLE = "title"
EVENT_CONTENT = "content"
EVENT_BRANCHES = "branches"
EVENT_NODE_UPDATE = "node_update"
EVENT_ERROR = "error"
EVENT_COMPLETE = "complete"
# Emitted to the observer (never on the wire): the text a reader may see now
EVENT_DISPLAY = "display"

Observer = Callable[[StreamEvent], None]


def parse_frame(payload: str) -> StreamEvent | None:
    """Parse one frame payload into a ``StreamEvent``; None if unusable."""
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, ValueError) as e:
        log.warning("    stream_events: unparseable frame %r (%s)", payload[:80], e)
        return None
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        log.warning("    stream_events: frame without a type %r", payload[:80])
        return None
    value = data.get("value", "")
    if value is None:
        value = ""
    elif not isinstance(value, str):
        value = json.dumps(value, ensure_ascii=False)
    return StreamEvent(type=data["type"], value=value)


def parse_branches(value: str) -> list[str] | None:
    """Lenient branch payload parse: a JSON array, or None."""
    try:
        data = json.loads(value)
    except (json.JSONDecodeError, ValueError, TypeError):
        return None
    if not isinstance(data, list):
        return None
    return ["" if item is None else str(item) for item in data]


class GenerationStream:
    """Consumes one chapter stream. Not reusable, not shareable."""

    def __init__(
        self,
        on_event: Optional[Observer] = None,
        min_length: int = MIN_CONTENT_LENGTH,
    ):
        self.on_event = on_event
        self.acc: AccumulatedGeneration | None = AccumulatedGeneration()
        self.detector = BranchDetector(min_length=min_length)
        self._decoder = Utf8StreamDecoder()
        self._splitter = FrameSplitter()
        self.error: str | None = None

    # -- input ---------------------------------------------------------------

    def feed(self, chunk: bytes):
        """Process one raw network chunk."""
        self._check_open()
        text = self._decoder.decode(chunk)
        for payload in self._splitter.feed(text):
            self.dispatch_payload(payload)

    def dispatch_payload(self, payload: str):
        event = parse_frame(payload)
        if event is not None:
            self.dispatch(event)

    def dispatch(self, event: StreamEvent):
        self._check_open()
        acc = self.acc
        if event.type == EVENT_TITLE:
            acc.title = event.value
            self._notify(event)
        elif event.type == EVENT_CONTENT:
            acc.content += event.value
            index = self.detector.update(acc.content)
            if index is not None:
                acc.freeze(index)
            self._notify(StreamEvent(EVENT_DISPLAY, self.visible_text))
        elif event.type == EVENT_BRANCHES:
            acc.freeze(self.detector.force_freeze(len(acc.content)))
            branches = parse_branches(event.value)
            if branches is None:
                log.warning("    stream_events: bad branches payload %r, keeping previous", event.value[:80])
                return
            acc.branches = branches
            self._notify(event)
        elif event.type == EVENT_NODE_UPDATE:
            if event.value.strip():
                acc.node_update = event.value.strip()
            self._notify(event)
        elif event.type == EVENT_ERROR:
            self._fail(event.value or "生成意外中断")
        else:
            self._notify(event)

    # -- output --------------------------------------------------------------

    @property
    def visible_text(self) -> str:
        if self.acc is None:
            return ""
        return self.detector.visible(self.acc.content)

    def finish(
        self,
        chapter_index: int,
        fallback_title: str | None = None,
        default_branches=DEFAULT_BRANCHES,
    ) -> GenerateResult:
        """Flush buffered input and build the chapter result."""
        self._check_open()
        tail = self._decoder.flush()
        for payload in self._splitter.feed(tail) + self._splitter.flush():
            self.dispatch_payload(payload)
        result = assemble_result(self.acc, chapter_index, fallback_title, default_branches)
        self.acc = None
        return result

    def abort(self):
        """Drop everything accumulated so far (caller cancelled)."""
        self.acc = None
        self.error = self.error or "cancelled"

    # -- internals -----------------------------------------------------------

    def _notify(self, event: StreamEvent):
        if self.on_event is not None:
            self.on_event(event)

    def _fail(self, message: str):
        log.info("    stream_events: error event: %s", message)
        self.error = message
        self.acc = None
        raise StreamError(message)

    def _check_open(self):
        if self.error is not None:
            raise StreamError(self.error)
        if self.acc is None:
            raise StreamError("stream already finished")
