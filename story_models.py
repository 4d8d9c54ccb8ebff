"""Data records shared by the stream client, the assembler and the session."""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from typing import Optional

SETTING_KEYS = ("characters", "worldview", "scenes", "mainPlot", "storyNodes")

POV_CHOICES = ("first", "second", "third", "third_it")
PERSPECTIVE_CHOICES = ("omniscient", "specific")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _rand_suffix(n: int = 7) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=n))


@dataclass(frozen=True)
class UserPreferences:
    pov: str = "third"
    single_output_length: int = 800
    perspective: str = "omniscient"
    specific_character_name: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "pov": self.pov,
            "singleOutputLength": self.single_output_length,
            "perspective": self.perspective,
        }
        if self.perspective == "specific" and self.specific_character_name:
            payload["specificCharacterName"] = self.specific_character_name
        return payload

    @classmethod
    def from_dict(cls, data: dict | None) -> "UserPreferences":
        data = data or {}
        return cls(
            pov=data.get("pov", "third"),
            single_output_length=int(data.get("single_output_length", data.get("singleOutputLength", 800))),
            perspective=data.get("perspective", "omniscient"),
            specific_character_name=data.get("specific_character_name", data.get("specificCharacterName")),
        )


@dataclass(frozen=True)
class GenerateRequest:
    """One generation request. Built by the session, never mutated after."""

    settings: dict
    preferences: UserPreferences
    next_chapter_index: int
    context_summary: str = ""
    chosen_branch: str = ""

    def __post_init__(self):
        if self.next_chapter_index < 1:
            raise ValueError("next_chapter_index must be a positive integer")

    def to_payload(self) -> dict:
        """Body sent to ``/generate/stream``."""
        settings = {k: self.settings.get(k, "") or "" for k in SETTING_KEYS}
        body = {
            "settings": settings,
            "userConfig": self.preferences.to_payload(),
            "nextChapterIndex": self.next_chapter_index,
        }
        if self.context_summary:
            body["contextSummary"] = self.context_summary
        if self.chosen_branch:
            body["chosenBranch"] = self.chosen_branch
        return body


@dataclass(frozen=True)
class StreamEvent:
    type: str
    value: str = ""


@dataclass
class AccumulatedGeneration:
    """Working state of one in-flight generation.

    ``content`` only ever grows. ``frozen_index`` is set at most once.
    """

    title: str = ""
    content: str = ""
    frozen_index: Optional[int] = None
    branches: Optional[list[str]] = None
    node_update: str = ""

    def freeze(self, index: int) -> int:
        if self.frozen_index is None:
            self.frozen_index = max(0, min(index, len(self.content)))
        return self.frozen_index

    @property
    def body(self) -> str:
        """Content up to the freeze point (raw, before annotation filtering)."""
        if self.frozen_index is None:
            return self.content
        return self.content[: self.frozen_index]


@dataclass(frozen=True)
class GenerateResult:
    title: str
    content: str
    branches: tuple[str, str, str]
    node_update: str = ""

    def to_dict(self) -> dict:
        return {"title": self.title, "content": self.content, "branches": list(self.branches)}


@dataclass(frozen=True)
class BranchOption:
    id: str
    text: str
    custom: bool = False

    def to_dict(self) -> dict:
        return {"id": self.id, "text": self.text, "isCustom": self.custom}


@dataclass
class Chapter:
    id: str
    index: int
    title: str
    content: str
    branches: tuple[BranchOption, BranchOption, BranchOption]
    created_at: int = field(default_factory=_now_ms)
    selected_branch: Optional[str] = None

    def select(self, text: str) -> bool:
        """Record the branch the reader acted on. Only the first call sticks."""
        if self.selected_branch is not None:
            return False
        self.selected_branch = text
        return True

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "index": self.index,
            "title": self.title,
            "content": self.content,
            "branches": [b.to_dict() for b in self.branches],
            "createdAt": self.created_at,
        }
        if self.selected_branch is not None:
            data["selectedBranch"] = self.selected_branch
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Chapter":
        raw = list(data.get("branches", []))[:3]
        while len(raw) < 3:
            raw.append({"id": f"b_{len(raw)}", "text": ""})
        branches = tuple(
            BranchOption(id=b.get("id", f"b_{i}"), text=b.get("text", ""), custom=bool(b.get("isCustom", False)))
            for i, b in enumerate(raw)
        )
        return cls(
            id=data["id"],
            index=int(data["index"]),
            title=data.get("title", ""),
            content=data.get("content", ""),
            branches=branches,
            created_at=int(data.get("createdAt", 0)),
            selected_branch=data.get("selectedBranch"),
        )


def new_chapter_id() -> str:
    return f"ch_{_now_ms()}_{_rand_suffix()}"


def new_story_id() -> str:
    return f"story_{_now_ms()}_{_rand_suffix()}"
