"""Relay bridge: network transport between the story core and the relay.

The relay forwards prompts to the model provider and streams the chapter
back as SSE. This module owns the config file, the HTTP calls and the
built-in demo stream used while no relay is configured.

Config: relay_config.json (auto-reloads on file change), overridden by
AIBOOK_API_BASE / AIBOOK_API_KEY.
"""

import json
import logging
import os
import ssl
import time
import urllib.error
import urllib.request
from typing import Callable, Iterable, Iterator, Optional

import certifi

import compaction
from story_errors import NetworkConnectionError, NetworkTimeout, SummarizationFailure
from story_models import GenerateRequest, GenerateResult, StreamEvent
from stream_events import GenerationStream

log = logging.getLogger("aibook")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.environ.get("AIBOOK_CONFIG", os.path.join(BASE_DIR, "relay_config.json"))
PLACEHOLDER_HOST = "your-api.com"

DEFAULT_CONFIG = {
    "api_base": "",
    "api_key": "",
    "timeout": 60,            # seconds, whole generation stream
    "read_timeout": 15,       # seconds, any single socket read
    "summary_timeout": 30,
    "max_ledger_chars": compaction.DEFAULT_MAX_LEDGER_CHARS,
    "phase_threshold": compaction.PHASE_LINE_THRESHOLD,
    "detector_min_length": 80,
    "chunk_size": 1024,
}

_ssl_ctx = ssl.create_default_context(cafile=certifi.where())

# ---------------------------------------------------------------------------
# Config (auto-reload on file change)
# ---------------------------------------------------------------------------

_config_cache: dict | None = None
_config_mtime: float = 0


def _read_config_file() -> dict:
    global _config_cache, _config_mtime
    try:
        mtime = os.path.getmtime(CONFIG_PATH)
    except OSError:
        return _config_cache or {}
    if _config_cache is None or mtime != _config_mtime:
        try:
            with open(CONFIG_PATH, "r", encoding="utf-8") as f:
                _config_cache = json.load(f)
            _config_mtime = mtime
            log.info("relay_bridge: loaded config, api_base=%s", _config_cache.get("api_base"))
        except (OSError, json.JSONDecodeError) as e:
            log.warning("relay_bridge: cannot read %s: %s", CONFIG_PATH, e)
            if _config_cache is None:
                _config_cache = {}
    return _config_cache


def get_config() -> dict:
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(_read_config_file())
    if os.environ.get("AIBOOK_API_BASE"):
        cfg["api_base"] = os.environ["AIBOOK_API_BASE"]
    if os.environ.get("AIBOOK_API_KEY"):
        cfg["api_key"] = os.environ["AIBOOK_API_KEY"]
    cfg["api_base"] = (cfg.get("api_base") or "").rstrip("/")
    return cfg


def is_generate_api_configured(cfg: dict | None = None) -> bool:
    cfg = cfg if cfg is not None else get_config()
    base = cfg.get("api_base") or ""
    return bool(base) and PLACEHOLDER_HOST not in base


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------

def _headers(cfg: dict) -> dict:
    headers = {"Content-Type": "application/json"}
    if cfg.get("api_key"):
        headers["Authorization"] = f"Bearer {cfg['api_key']}"
    return headers


def _open(url: str, body: dict, cfg: dict, timeout: float):
    """POST ``body`` and return the open response; map failures to typed errors."""
    req = urllib.request.Request(
        url, data=json.dumps(body, ensure_ascii=False).encode("utf-8"),
        headers=_headers(cfg), method="POST",
    )
    try:
        return urllib.request.urlopen(req, timeout=timeout, context=_ssl_ctx)
    except urllib.error.HTTPError as e:
        body_text = e.read().decode("utf-8", errors="replace")[:300]
        log.info("    relay_bridge: HTTP %d: %s", e.code, body_text)
        raise NetworkConnectionError(f"请求失败: HTTP {e.code} {body_text}", status=e.code) from e
    except urllib.error.URLError as e:
        if isinstance(e.reason, TimeoutError):
            raise NetworkTimeout(f"请求超时: {e.reason}") from e
        raise NetworkConnectionError(f"网络连接失败: {e.reason}") from e
    except TimeoutError as e:
        raise NetworkTimeout(f"请求超时: {e}") from e
    except OSError as e:
        raise NetworkConnectionError(f"网络连接失败: {e}") from e


# ---------------------------------------------------------------------------
# Generation stream
# ---------------------------------------------------------------------------

def open_generation_stream(request: GenerateRequest, cfg: dict | None = None) -> Iterator[bytes]:
    """Yield raw body chunks of ``/generate/stream`` as they arrive.

    The whole stream is bounded by ``cfg["timeout"]``, checked between reads,
    and each socket read by ``cfg["read_timeout"]``. A stalled stream therefore
    fails with ``NetworkTimeout`` within ``timeout + read_timeout`` seconds.
    """
    cfg = cfg if cfg is not None else get_config()
    timeout = float(cfg.get("timeout", 60))
    read_timeout = min(timeout, float(cfg.get("read_timeout", 15)))
    chunk_size = int(cfg.get("chunk_size", 1024))
    url = f"{cfg['api_base']}/generate/stream"

    log.info("    relay_bridge_stream: POST %s chapter=%d", url, request.next_chapter_index)
    t0 = time.monotonic()
    resp = _open(url, request.to_payload(), cfg, read_timeout)
    received = 0
    try:
        while True:
            if time.monotonic() - t0 > timeout:
                raise NetworkTimeout(f"请求超时: 超过 {timeout:.0f} 秒")
            try:
                chunk = resp.read1(chunk_size)
            except TimeoutError as e:
                raise NetworkTimeout(f"请求超时: {e}") from e
            except OSError as e:
                raise NetworkConnectionError(f"网络连接中断: {e}") from e
            if not chunk:
                break
            received += len(chunk)
            yield chunk
    finally:
        resp.close()
    log.info("    relay_bridge_stream: OK in %.1fs bytes=%d", time.monotonic() - t0, received)


# ---------------------------------------------------------------------------
# Demo stream (no relay configured)
# ---------------------------------------------------------------------------

MOCK_TITLE = "第一章 神秘的邀请函"
MOCK_CONTENT = """夜色如墨，雨丝斜织。林默站在老旧公寓的窗前，手中握着一封泛黄的信封。信封上没有寄件人姓名，只有一行娟秀的小字："致命运的编织者"。

他轻轻拆开信封，一张羊皮纸滑落而出。纸张边缘已经磨损，上面用暗红色墨水写着一段话：

"当月光与影子重叠之时，古老的图书馆将向你敞开大门。那里藏着改变一切的秘密，但记住——选择即代价。"

林默的心跳突然加快。这封信，和三年前父亲失踪前留下的最后一句话一模一样。

窗外，一道闪电划破夜空，照亮了对面大楼玻璃幕墙上的倒影——那里，似乎有一个模糊的人影正注视着他。

选项A：跟随神秘人影的指引，前往对面大楼|选项B：仔细研究信件，寻找隐藏的线索|选项C：联系老朋友，询问关于父亲失踪的往事
SUMMARY：林默收到与父亲失踪遗言相同的神秘信件"""
MOCK_BRANCHES = [
    "跟随神秘人影的指引，前往对面大楼",
    "仔细研究信件，寻找隐藏的线索",
    "联系老朋友，询问关于父亲失踪的往事",
]
MOCK_NODE_UPDATE = "林默收到与父亲失踪遗言相同的神秘信件"

_MOCK_CHUNK_SIZES = (7, 13, 5, 29, 11)


def _sse(event_type: str, value: str) -> str:
    return f"data: {json.dumps({'type': event_type, 'value': value}, ensure_ascii=False)}\n\n"


def mock_generation_stream(request: GenerateRequest) -> Iterator[bytes]:
    """Demo chapter as an SSE byte stream, cut at uneven (byte, not char) offsets."""
    title = MOCK_TITLE if request.next_chapter_index == 1 else f"第 {request.next_chapter_index} 章"
    frames = [": demo stream\n\n", _sse("title", title)]
    for i in range(0, len(MOCK_CONTENT), 40):
        frames.append(_sse("content", MOCK_CONTENT[i:i + 40]))
    frames += [
        _sse("branches", json.dumps(MOCK_BRANCHES, ensure_ascii=False)),
        _sse("node_update", MOCK_NODE_UPDATE),
        _sse("complete", "生成完成"),
        "data: [DONE]\n\n",
    ]
    raw = "".join(frames).encode("utf-8")
    pos, n = 0, 0
    while pos < len(raw):
        size = _MOCK_CHUNK_SIZES[n % len(_MOCK_CHUNK_SIZES)]
        yield raw[pos:pos + size]
        pos += size
        n += 1


# ---------------------------------------------------------------------------
# Chapter generation
# ---------------------------------------------------------------------------

Transport = Callable[[GenerateRequest], Iterable[bytes]]


def generate_chapter(
    request: GenerateRequest,
    on_event: Optional[Callable[[StreamEvent], None]] = None,
    cfg: dict | None = None,
    transport: Optional[Transport] = None,
) -> GenerateResult:
    """Run one generation to completion and return the assembled result.

    Any failure (error event, network) raises; partial text is never returned.
    """
    cfg = cfg if cfg is not None else get_config()
    if transport is None:
        if is_generate_api_configured(cfg):
            transport = lambda req: open_generation_stream(req, cfg)  # noqa: E731
        else:
            log.info("    relay_bridge: relay not configured, using demo stream")
            transport = mock_generation_stream

    stream = GenerationStream(on_event=on_event, min_length=int(cfg.get("detector_min_length", 80)))
    chunks = transport(request)
    try:
        for chunk in chunks:
            stream.feed(chunk)
    except BaseException:
        stream.abort()
        raise
    finally:
        close = getattr(chunks, "close", None)
        if close is not None:
            close()
    return stream.finish(request.next_chapter_index)


# ---------------------------------------------------------------------------
# Summarization
# ---------------------------------------------------------------------------

class RelaySummarizer:
    """Summarization round-trips through the relay's ``/summarize`` endpoint.

    Request: {"mode": "anchor"|"phase"|"global", "prompt": str}
    Response: {"summary": str}
    """

    def __init__(self, cfg: dict | None = None):
        self._cfg = cfg

    @property
    def cfg(self) -> dict:
        return self._cfg if self._cfg is not None else get_config()

    def _call(self, mode: str, prompt: str) -> str:
        cfg = self.cfg
        if not is_generate_api_configured(cfg):
            raise SummarizationFailure("relay not configured")
        url = f"{cfg['api_base']}/summarize"
        t0 = time.time()
        try:
            with _open(url, {"mode": mode, "prompt": prompt}, cfg,
                       float(cfg.get("summary_timeout", 30))) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except (NetworkTimeout, NetworkConnectionError) as e:
            raise SummarizationFailure(f"{mode}: {e}") from e
        except (OSError, ValueError) as e:
            raise SummarizationFailure(f"{mode}: bad response: {e}") from e
        summary = data.get("summary", "") if isinstance(data, dict) else ""
        if not isinstance(summary, str) or not summary.strip():
            raise SummarizationFailure(f"{mode}: relay returned empty summary")
        log.info("    relay_bridge: %s summary in %.1fs len=%d", mode, time.time() - t0, len(summary))
        return summary.strip()

    def summarize(self, text: str, mode: str) -> str:
        return self._call(mode, compaction.build_prompt(mode, text))

    def extract_anchor(self, title: str, content: str) -> str:
        return self._call(compaction.MODE_ANCHOR,
                          compaction.build_prompt(compaction.MODE_ANCHOR, content, title=title))
