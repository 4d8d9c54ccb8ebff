"""Find where the model's branch menu starts inside streamed chapter text.

The relay asks the model to finish every chapter with three options and a
one-line ``SUMMARY：`` fact, but those arrive as ordinary content. This
module locates the start of that trailing block so neither the live display
nor the saved chapter ever shows it. Pattern matching only; a miss leaves the
full text in place and the ``branches`` event still forces a cut.
"""

import logging
import re

log = logging.getLogger("aibook")

MIN_CONTENT_LENGTH = 80  # below this, openings like "请选择你的道路：" are story text

# Imperative framing at a line start in front of the option block (or the SUMMARY line)
_GUIDANCE_RE = re.compile(
    r"^[ \t>#*【\[]*"
    r"(?:请选择|请做出(?:你的)?选择|你的选择|你会如何选择|你会怎么做|接下来(?:的)?选择|"
    r"下一步(?:行动)?|可选(?:择的)?行动|行动选项|分支选项|"
    r"choose\s+(?:your\s+)?next|what\s+will\s+you\s+do|your\s+choices?|SUMMARY)"
    r"[ \t]*[*】\]]*[ \t]*[：:]",
    re.MULTILINE | re.IGNORECASE,
)

# "A：" / "1." / "①、" at a line start, or "选项A：" anywhere
_ENUM_LINE_RE = re.compile(
    r"^[ \t>#*-]*(?:选项|option[ \t]*)?[A-Ca-c1-3①②③][ \t]*\**[ \t]*[：:、.．)）]",
    re.MULTILINE | re.IGNORECASE,
)
_ENUM_INLINE_RE = re.compile(
    r"(?:选项|option[ \t]*)[A-Ca-c1-3①②③][ \t]*[：:、.．)）]",
    re.IGNORECASE,
)

# Editorial notes the model sometimes drops inline: （注：…） [作者注: …] (Note: …)
_ANNOTATION_RE = re.compile(
    r"[（(\[【][ \t]*"
    r"(?:注|注释|注解|作者注|作者的话|编者注|旁白说明|说明|备注|ooc|note|author'?s[ \t]+note)"
    r"[ \t]*[：:][^（()）\[\]【】\n]*[）)\]】]",
    re.IGNORECASE,
)


def _scan(pattern: re.Pattern, content: str, start: int) -> int | None:
    m = pattern.search(content, start)
    return m.start() if m else None


def find_guidance(content: str) -> int | None:
    """Earliest guidance phrase outside the first third of ``content``."""
    return _scan(_GUIDANCE_RE, content, len(content) // 3)


def find_enumeration(content: str) -> int | None:
    """Earliest option marker outside the first third of ``content``."""
    cutoff = len(content) // 3
    hits = [i for i in (_scan(_ENUM_LINE_RE, content, cutoff),
                        _scan(_ENUM_INLINE_RE, content, cutoff)) if i is not None]
    return min(hits) if hits else None


def find_branch_start(content: str, min_length: int = MIN_CONTENT_LENGTH) -> int | None:
    """Index where the branch block begins, or None if nothing fired yet."""
    if len(content) < min_length:
        return None
    hits = [i for i in (find_guidance(content), find_enumeration(content)) if i is not None]
    return min(hits) if hits else None


def strip_annotations(text: str) -> str:
    """Remove bracketed editorial notes. Applying it twice changes nothing."""
    while True:
        cleaned = _ANNOTATION_RE.sub("", text)
        if cleaned == text:
            return cleaned
        text = cleaned


class BranchDetector:
    """Per-generation freeze point. Once set it never moves."""

    def __init__(self, min_length: int = MIN_CONTENT_LENGTH):
        self.min_length = min_length
        self.frozen_index: int | None = None

    @property
    def frozen(self) -> bool:
        return self.frozen_index is not None

    def update(self, content: str) -> int | None:
        if self.frozen_index is not None:
            return self.frozen_index
        index = find_branch_start(content, self.min_length)
        if index is not None:
            self.frozen_index = index
            log.info("    branch_detector: froze content at %d/%d", index, len(content))
        return self.frozen_index

    def force_freeze(self, length: int) -> int:
        """Freeze at ``length`` unless a freeze point already exists."""
        if self.frozen_index is None:
            self.frozen_index = length
            log.info("    branch_detector: branches event, froze content at %d", length)
        return self.frozen_index

    def visible(self, content: str) -> str:
        body = content if self.frozen_index is None else content[: self.frozen_index]
        return strip_annotations(body)
