"""Shared test fixtures for AIBook core tests."""

import json

import pytest

from story_models import GenerateRequest, UserPreferences


# ---------------------------------------------------------------------------
# Sample data constants
# ---------------------------------------------------------------------------

SAMPLE_SETTINGS = {
    "characters": "主角林默，25岁，程序员，性格内向但观察力敏锐",
    "worldview": "现代都市背景，融合超自然元素的悬疑世界",
    "scenes": "老旧公寓、深夜街道、神秘图书馆",
    "mainPlot": "寻找失踪父亲真相的过程中，发现了一个隐藏的超自然组织",
    "storyNodes": "",
}

# Long enough to clear the detector's minimum and the first-third guard
SAMPLE_PROSE = (
    "夜色如墨，雨丝斜织。林默站在老旧公寓的窗前，手中握着一封泛黄的信封。"
    "信封上没有寄件人姓名，只有一行娟秀的小字。他轻轻拆开信封，一张羊皮纸滑落而出。"
    "纸张边缘已经磨损，上面用暗红色墨水写着一段话。林默的心跳突然加快，"
    "这封信和三年前父亲失踪前留下的最后一句话一模一样。窗外一道闪电划破夜空。"
)

SAMPLE_OPTIONS = "\n\n选项A：前往对面大楼|选项B：研究信件|选项C：联系老朋友\nSUMMARY：林默收到神秘信件"


def sse(event_type: str, value) -> str:
    """One SSE frame as the relay writes it."""
    return f"data: {json.dumps({'type': event_type, 'value': value}, ensure_ascii=False)}\n\n"


def chunked(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


class StubSummarizer:
    """Records every call; returns canned one-line summaries."""

    def __init__(self, fail_on: set | None = None):
        self.calls: list[tuple[str, str]] = []
        self.fail_on = fail_on or set()

    def summarize(self, text: str, mode: str) -> str:
        self.calls.append((mode, text))
        if mode in self.fail_on:
            raise RuntimeError(f"{mode} backend down")
        return f"{mode}摘要({len(text.splitlines())}行)"

    def extract_anchor(self, title: str, content: str) -> str:
        self.calls.append(("anchor", title))
        if "anchor" in self.fail_on:
            raise RuntimeError("anchor backend down")
        return f"{title}的关键变动"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_request():
    return GenerateRequest(
        settings=dict(SAMPLE_SETTINGS),
        preferences=UserPreferences(pov="third", single_output_length=800),
        next_chapter_index=1,
    )


@pytest.fixture
def stub_summarizer():
    return StubSummarizer()


@pytest.fixture
def sample_stream_bytes():
    """A complete well-formed chapter stream."""
    frames = [
        ": keep-alive\n\n",
        sse("title", "第 1 章"),
        sse("content", SAMPLE_PROSE[:60]),
        sse("content", SAMPLE_PROSE[60:]),
        sse("content", SAMPLE_OPTIONS),
        sse("branches", json.dumps(["前往对面大楼", "研究信件", "联系老朋友"], ensure_ascii=False)),
        sse("node_update", "林默收到神秘信件"),
        sse("complete", "生成完成"),
        "data: [DONE]\n\n",
    ]
    return "".join(frames).encode("utf-8")
