"""Turn a finished stream's accumulation into a chapter result."""

import logging

from branch_detector import strip_annotations
from story_errors import StreamError
from story_models import AccumulatedGeneration, BranchOption, Chapter, GenerateResult, new_chapter_id

log = logging.getLogger("aibook")

DEFAULT_BRANCHES = ("继续探索", "停下休息", "仔细观察四周")
BRANCH_COUNT = 3


def default_title(chapter_index: int) -> str:
    return f"第 {chapter_index} 章"


def normalize_branches(branches, default=DEFAULT_BRANCHES) -> tuple[str, str, str]:
    """Exactly three strings: pad short lists with "", use ``default`` when absent."""
    if branches is None:
        items = list(default)
    else:
        items = ["" if b is None else str(b).strip() for b in branches]
    items = items[:BRANCH_COUNT]
    while len(items) < BRANCH_COUNT:
        items.append("")
    return items[0], items[1], items[2]


def assemble_result(
    acc: AccumulatedGeneration,
    chapter_index: int,
    fallback_title: str | None = None,
    default_branches=DEFAULT_BRANCHES,
) -> GenerateResult:
    title = acc.title.strip() or fallback_title or default_title(chapter_index)
    content = strip_annotations(acc.body).strip()
    if not content:
        raise StreamError("AI返回的内容格式异常，请重试")
    branches = normalize_branches(acc.branches, default_branches)
    log.info("    chapter_assembler: chapter %d title=%s content_len=%d frozen=%s",
             chapter_index, title, len(content), acc.frozen_index)
    return GenerateResult(title=title, content=content, branches=branches,
                          node_update=acc.node_update.strip())


def build_chapter(result: GenerateResult, chapter_index: int) -> Chapter:
    options = tuple(BranchOption(id=f"b_{i}", text=text) for i, text in enumerate(result.branches))
    return Chapter(
        id=new_chapter_id(),
        index=chapter_index,
        title=result.title,
        content=result.content,
        branches=options,
    )
