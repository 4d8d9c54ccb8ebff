"""Story session: one story's chapters, anchor ledger and generation token.

A session allows one generation at a time. After each chapter it records a
plot anchor on a background thread; the next generation waits for that
thread before it reads the ledger.

Storage: <data_dir>/<story_id>.json (chapters, ledger, settings, preferences)
"""

import json
import logging
import os
import threading
import time
from datetime import datetime
from typing import Callable, Optional

import compaction
from chapter_assembler import build_chapter
from story_errors import GenerationInProgress, SummarizationFailure
from story_models import SETTING_KEYS, Chapter, GenerateRequest, StreamEvent, UserPreferences

log = logging.getLogger("aibook")

CONTEXT_CHAPTERS = 3          # chapters quoted in the prior-context digest
CONTEXT_EXCERPT_CHARS = 200
MIN_CUSTOM_BRANCH_CHARS = 5

Generate = Callable[[GenerateRequest, Optional[Callable[[StreamEvent], None]]], object]


class StorySession:
    def __init__(
        self,
        story_id: str,
        settings: dict | None = None,
        preferences: UserPreferences | None = None,
        summarizer=None,
        generate: Generate | None = None,
        title: str = "",
        max_ledger_chars: int = compaction.DEFAULT_MAX_LEDGER_CHARS,
        phase_threshold: int = compaction.PHASE_LINE_THRESHOLD,
    ):
        self.story_id = story_id
        self.title = title
        self.settings = {k: (settings or {}).get(k, "") for k in SETTING_KEYS}
        self.preferences = preferences or UserPreferences()
        self.summarizer = summarizer
        self._generate = generate
        self.max_ledger_chars = max_ledger_chars
        self.phase_threshold = phase_threshold

        self.chapters: list[Chapter] = []
        self.ledger = ""
        self.generating = False
        self._token_lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._compaction_thread: threading.Thread | None = None
        self.last_compaction_error: str | None = None

    # -----------------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------------

    def _acquire(self):
        with self._token_lock:
            if self.generating:
                raise GenerationInProgress(f"story {self.story_id} is already generating")
            self.generating = True

    def _release(self):
        with self._token_lock:
            self.generating = False

    def context_digest(self) -> str:
        """Short excerpt of the last few chapters for the next prompt."""
        return "\n".join(
            f"【{c.title}】{c.content[:CONTEXT_EXCERPT_CHARS]}…"
            for c in self.chapters[-CONTEXT_CHAPTERS:]
        )

    def build_request(self, chosen_branch: str | None = None) -> GenerateRequest:
        settings = dict(self.settings)
        settings["storyNodes"] = self.ledger
        return GenerateRequest(
            settings=settings,
            preferences=self.preferences,
            next_chapter_index=len(self.chapters) + 1,
            context_summary=self.context_digest(),
            chosen_branch=(chosen_branch or "").strip(),
        )

    def generate_next(
        self,
        chosen_branch: str | None = None,
        on_event: Optional[Callable[[StreamEvent], None]] = None,
        custom: bool = False,
    ) -> Chapter:
        """Generate, store and return the next chapter.

        Raises GenerationInProgress, StreamError or NetworkFailure; on any
        failure nothing is appended.
        """
        if custom and len((chosen_branch or "").strip()) < MIN_CUSTOM_BRANCH_CHARS:
            raise ValueError(f"custom branch needs at least {MIN_CUSTOM_BRANCH_CHARS} characters")
        if self._generate is None:
            raise RuntimeError("session has no generate function")

        self._acquire()
        try:
            self.wait_for_compaction()
            request = self.build_request(chosen_branch)
            t0 = time.time()
            log.info("story_session: generating chapter %d for %s", request.next_chapter_index, self.story_id)
            result = self._generate(request, on_event)
            chapter = build_chapter(result, request.next_chapter_index)
            self.chapters.append(chapter)
            if request.chosen_branch and len(self.chapters) > 1:
                self.chapters[-2].select(request.chosen_branch)
            log.info("story_session: chapter %d done in %.1fs", chapter.index, time.time() - t0)
            # anchor thread exists before the token is released
            self.record_anchor_async(chapter, getattr(result, "node_update", ""))
        finally:
            self._release()
        return chapter

    def select_branch(self, text: str) -> bool:
        if not self.chapters:
            return False
        return self.chapters[-1].select(text)

    # -----------------------------------------------------------------------
    # Anchor ledger (background)
    # -----------------------------------------------------------------------

    def record_anchor(self, chapter: Chapter, node_update: str = "") -> str:
        """Add this chapter's anchor to the ledger, compacting as needed.

        On a summarization failure the ledger is left exactly as it was.
        """
        before = self.ledger
        try:
            line = node_update.strip() or self._extract_anchor(chapter)
            self.ledger = compaction.append_anchor(
                before, line, self._summarize,
                max_chars=self.max_ledger_chars, phase_threshold=self.phase_threshold,
            )
            self.last_compaction_error = None
        except SummarizationFailure as e:
            self.ledger = before
            self.last_compaction_error = str(e)
            raise
        return self.ledger

    def _extract_anchor(self, chapter: Chapter) -> str:
        if self.summarizer is None:
            raise SummarizationFailure("no summarizer for anchor extraction")
        try:
            return self.summarizer.extract_anchor(chapter.title, chapter.content)
        except SummarizationFailure:
            raise
        except Exception as e:
            raise SummarizationFailure(f"anchor extraction failed: {e}") from e

    def _summarize(self, text: str, mode: str) -> str:
        if self.summarizer is None:
            raise SummarizationFailure(f"no summarizer for {mode} compaction")
        return self.summarizer.summarize(text, mode)

    def record_anchor_async(self, chapter: Chapter, node_update: str = ""):
        """Record the anchor off the caller's thread. Non-blocking."""
        def _do_record():
            try:
                self.record_anchor(chapter, node_update)
            except SummarizationFailure as e:
                log.warning("story_session: anchor for chapter %d skipped: %s", chapter.index, e)

        self.wait_for_compaction()
        t = threading.Thread(target=_do_record, daemon=True)
        self._compaction_thread = t
        t.start()

    def wait_for_compaction(self, timeout: float | None = None):
        t = self._compaction_thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)

    # -----------------------------------------------------------------------
    # Persistence & export
    # -----------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "id": self.story_id,
            "title": self.title,
            "settings": self.settings,
            "preferences": {
                "pov": self.preferences.pov,
                "single_output_length": self.preferences.single_output_length,
                "perspective": self.preferences.perspective,
                "specific_character_name": self.preferences.specific_character_name,
            },
            "chapters": [c.to_dict() for c in self.chapters],
            "branchPath": [c.id for c in self.chapters],
            "ledger": self.ledger,
        }

    @classmethod
    def from_dict(cls, data: dict, **kwargs) -> "StorySession":
        session = cls(
            data["id"],
            settings=data.get("settings"),
            preferences=UserPreferences.from_dict(data.get("preferences")),
            title=data.get("title", ""),
            **kwargs,
        )
        session.chapters = [Chapter.from_dict(c) for c in data.get("chapters", [])]
        session.ledger = data.get("ledger", "")
        return session

    def save(self, path: str):
        self.wait_for_compaction()
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with self._save_lock:
            tmp = path + ".tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)

    @classmethod
    def load(cls, path: str, **kwargs) -> "StorySession":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f), **kwargs)

    def export_text(self, now: datetime | None = None) -> str:
        """Plain-text export of every chapter, for clipboard or file."""
        timestamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        header = (
            "AI互动小说导出\n\n"
            f"导出时间: {timestamp}\n"
            f"总章节数: {len(self.chapters)}章\n\n"
            f"{'=' * 50}\n\n"
        )
        body = []
        for i, ch in enumerate(self.chapters):
            divider = "" if i == 0 else f"\n{'─' * 30}\n\n"
            body.append(f"{divider}第 {ch.index} 章 {ch.title}\n\n{ch.content}")
        footer = f"\n\n{'=' * 50}\n\n本故事由AIBook智能创作助手生成"
        return header + "\n".join(body) + footer
