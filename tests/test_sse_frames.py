"""Tests for sse_frames.FrameSplitter and frame_payload."""

import pytest

from sse_frames import FrameSplitter, frame_payload

STREAM = (
    'data: {"type":"title","value":"第 1 章"}\n\n'
    ": keep-alive\n\n"
    'data: {"type":"content","value":"夜色如墨"}\n\n'
    "data: [DONE]\n\n"
    'data: {"type":"content","value":"雨丝斜织"}\n\n'
)
EXPECTED = [
    '{"type":"title","value":"第 1 章"}',
    '{"type":"content","value":"夜色如墨"}',
    '{"type":"content","value":"雨丝斜织"}',
]


def _split_all(pieces: list[str]) -> list[str]:
    splitter = FrameSplitter()
    frames = []
    for piece in pieces:
        frames.extend(splitter.feed(piece))
    frames.extend(splitter.flush())
    return frames


class TestFramePayload:
    def test_data_line(self):
        assert frame_payload('data: {"a":1}') == '{"a":1}'

    def test_no_space_after_colon(self):
        assert frame_payload('data:{"a":1}') == '{"a":1}'

    def test_multi_line_data_joined(self):
        assert frame_payload("data: first\ndata: second") == "first\nsecond"

    def test_event_field_ignored(self):
        assert frame_payload("event: message\ndata: x") == "x"

    @pytest.mark.parametrize("frame", [": comment", "", "event: ping", "data: [DONE]", "data:   "])
    def test_non_data_frames(self, frame):
        assert frame_payload(frame) is None


class TestFrameSplitter:
    def test_whole_stream(self):
        assert _split_all([STREAM]) == EXPECTED

    def test_incomplete_tail_retained(self):
        splitter = FrameSplitter()
        assert splitter.feed('data: {"type":"title"') == []
        assert splitter.pending == 'data: {"type":"title"'
        assert splitter.feed(',"value":"x"}\n\n') == ['{"type":"title","value":"x"}']
        assert splitter.pending == ""

    @pytest.mark.parametrize("size", [1, 2, 3, 5, 11])
    def test_arbitrary_chunking_same_frames(self, size):
        pieces = [STREAM[i:i + size] for i in range(0, len(STREAM), size)]
        assert _split_all(pieces) == EXPECTED

    def test_delimiter_split_between_chunks(self):
        for cut in range(len(STREAM)):
            assert _split_all([STREAM[:cut], STREAM[cut:]]) == EXPECTED

    def test_crlf_delimiters(self):
        crlf = STREAM.replace("\n", "\r\n")
        for cut in range(0, len(crlf), 3):
            assert _split_all([crlf[:cut], crlf[cut:]]) == EXPECTED

    def test_flush_unterminated_frame(self):
        splitter = FrameSplitter()
        assert splitter.feed('data: {"type":"complete","value":""}') == []
        assert splitter.flush() == ['{"type":"complete","value":""}']
        assert splitter.flush() == []

    def test_empty_feed(self):
        assert FrameSplitter().feed("") == []
