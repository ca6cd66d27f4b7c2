"""
lexicon.py — Speaking Drill · Lesson Data
=========================================
The ordered, read-only list of prompt / expected-answer pairs that drives a
drill session.  An entry's position is its only identity.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter

log = logging.getLogger("speaking_drill.lexicon")


class LessonEntry(BaseModel):
    """One prompt and the answer the learner is expected to say."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    prompt: str = Field(min_length=1, validation_alias=AliasChoices("prompt", "question"))
    expected_answer: str = Field(min_length=1, validation_alias=AliasChoices("expected_answer", "answer"))


DEFAULT_LESSONS: tuple[LessonEntry, ...] = (
    LessonEntry(prompt="What is your name?", expected_answer="My name is André."),
    LessonEntry(prompt="Where do you work?", expected_answer="I work at a bank."),
    LessonEntry(prompt="What do you do?", expected_answer="I am a software developer."),
    LessonEntry(prompt="Do you like technology?", expected_answer="Yes, I like technology."),
    LessonEntry(prompt="How often do you study English?", expected_answer="I study English every day."),
    LessonEntry(prompt="Are you ready to speak faster?", expected_answer="Yes, I am ready to speak faster."),
)

_ENTRIES_ADAPTER = TypeAdapter(list[LessonEntry])


class Lexicon(Sequence[LessonEntry]):
    """Immutable ordered sequence of LessonEntry (never empty)."""

    def __init__(self, entries: Iterable[LessonEntry]):
        self._entries: tuple[LessonEntry, ...] = tuple(entries)
        if not self._entries:
            raise ValueError("Lexicon needs at least one lesson entry")

    @classmethod
    def default(cls) -> "Lexicon":
        return cls(DEFAULT_LESSONS)

    @classmethod
    def from_json(cls, path: str | Path) -> "Lexicon":
        """Load a JSON list of {"prompt", "expected_answer"} (or {"question", "answer"}) objects."""
        p = Path(path)
        entries = _ENTRIES_ADAPTER.validate_python(json.loads(p.read_text(encoding="utf-8")))
        log.info("event=lexicon_loaded path=%s entries=%d", p, len(entries))
        return cls(entries)

    def __getitem__(self, index):  # type: ignore[override]
        return self._entries[index]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LessonEntry]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"Lexicon({len(self._entries)} entries)"
