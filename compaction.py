"""Plot-anchor ledger compaction: bounded long-term memory for a story.

Every finished chapter adds one "irreversible fact" line to the ledger. The
ledger is fed back into every prompt, so it is kept small in two tiers:

  phase:  >= PHASE_LINE_THRESHOLD plain lines  -> one 【阶段摘要】 line
  global: ledger length >= 90% of the cap      -> one 【全局摘要】 line

Both tiers are summarization calls, never truncation. ``append_anchor`` is a
pure function of (ledger, new line, summarizer, thresholds); a summarizer
failure raises and the caller keeps its old ledger.
"""

import logging
from typing import Callable

from story_errors import SummarizationFailure

log = logging.getLogger("aibook")

# Compaction thresholds
PHASE_LINE_THRESHOLD = 100     # plain anchor lines before a phase summary
GLOBAL_COMPACT_RATIO = 0.9     # fraction of max_chars that triggers a global summary
DEFAULT_MAX_LEDGER_CHARS = 1000  # same cap as any other setting document

MODE_ANCHOR = "anchor"
MODE_PHASE = "phase"
MODE_GLOBAL = "global"

PHASE_TAG = "【阶段摘要】"
GLOBAL_TAG = "【全局摘要】"
SUMMARY_TAGS = (PHASE_TAG, GLOBAL_TAG)

Summarize = Callable[[str, str], str]

_ANCHOR_PROMPT = """\
你是故事记录员。以下是一篇互动小说的最新章节。
请用一句话（30字以内）总结本章发生的「不可逆转」的关键变动，只记录核心事实，不要评价，不要换行。

【{title}】
{content}
"""

_PHASE_PROMPT = """\
你是故事记录员。以下是一部互动小说按时间顺序记录的重要故事锚点，每行一条。
请把它们压缩成一段不超过200字的阶段摘要，保留：

1. 不可逆转的关键事实（生死、得失、身份揭露、关系决裂等）
2. 仍在进行中的冲突和伏笔

按时间顺序书写，只输出一行，不要换行，不要加标题。

---
{ledger}
"""

_GLOBAL_PROMPT = """\
你是故事记录员。以下是一部互动小说的全部故事锚点（含之前的阶段摘要），已经太长了。
请将它重新精炼为不超过300字的全局摘要，保留最关键的剧情转折和仍未解决的悬念，
可以省略已解决的小事件和重复的细节。只输出一行，不要换行，不要加标题。

---
{ledger}
"""


def build_prompt(mode: str, text: str = "", title: str = "") -> str:
    """Summarization prompt for ``mode`` (anchor / phase / global)."""
    if mode == MODE_ANCHOR:
        return _ANCHOR_PROMPT.format(title=title, content=text)
    if mode == MODE_PHASE:
        return _PHASE_PROMPT.format(ledger=text)
    if mode == MODE_GLOBAL:
        return _GLOBAL_PROMPT.format(ledger=text)
    raise ValueError(f"unknown summarization mode: {mode}")


# ---------------------------------------------------------------------------
# Ledger helpers
# ---------------------------------------------------------------------------

def ledger_lines(ledger: str) -> list[str]:
    return [line for line in (ledger or "").split("\n") if line.strip()]


def is_summary_line(line: str) -> bool:
    return line.lstrip().startswith(SUMMARY_TAGS)


def split_ledger(ledger: str) -> tuple[list[str], list[str]]:
    """Return (summary_lines, normal_lines), each in ledger order."""
    summaries, normal = [], []
    for line in ledger_lines(ledger):
        (summaries if is_summary_line(line) else normal).append(line)
    return summaries, normal


def one_line(text: str) -> str:
    return " ".join(part.strip() for part in text.splitlines() if part.strip())


def _summarize(summarize: Summarize, text: str, mode: str) -> str:
    try:
        result = summarize(text, mode)
    except SummarizationFailure:
        raise
    except Exception as e:
        raise SummarizationFailure(f"{mode} summarization failed: {e}") from e
    result = one_line(result or "")
    if not result:
        raise SummarizationFailure(f"{mode} summarization returned empty")
    return result


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------

def append_anchor(
    ledger: str,
    new_line: str,
    summarize: Summarize,
    *,
    max_chars: int = DEFAULT_MAX_LEDGER_CHARS,
    phase_threshold: int = PHASE_LINE_THRESHOLD,
    global_ratio: float = GLOBAL_COMPACT_RATIO,
) -> str:
    """Append ``new_line`` to ``ledger`` and compact if a threshold is crossed."""
    lines = ledger_lines(ledger)
    new_line = one_line(new_line or "")
    if new_line:
        lines.append(new_line)
    result = "\n".join(lines)

    summaries, normal = split_ledger(result)
    if len(normal) >= phase_threshold:
        log.info("    compaction: %d anchor lines, phase-compacting", len(normal))
        phase = _summarize(summarize, "\n".join(normal), MODE_PHASE)
        result = "\n".join(summaries + [PHASE_TAG + phase])

    if len(result) >= max_chars * global_ratio:
        log.info("    compaction: ledger %d/%d chars, global-compacting", len(result), max_chars)
        whole = _summarize(summarize, result, MODE_GLOBAL)
        result = GLOBAL_TAG + whole

    log.info("    compaction: done, ledger=%d chars, %d lines", len(result), len(ledger_lines(result)))
    return result
