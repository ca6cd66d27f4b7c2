"""
scoring.py — Speaking Drill · Response Scoring
==============================================
Pure functions that turn (expected answer, spoken response, elapsed time,
time limit) into a ScoreResult.

Score composition (0–100 after the clamp):
  • phonetic  0–70  per-word 4-character consonant-class codes, position by position
  • lexical   0–20  normalised word overlap against the expected word set
  • pacing    0–10  penalises responses much longer / shorter than expected
  • timing    0–10  full credit within the limit, linear decay for overage

The four parts can add up to more than 100; only their sum is clamped.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import List

PHONETIC_WEIGHT = 70.0
LEXICAL_WEIGHT  = 20.0
PACING_MAX      = 10.0
TIMING_WEIGHT   = 10.0
MAX_SCORE       = 100.0

PHONETIC_CODE_LENGTH = 4

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_NON_LETTER_RE = re.compile(r"[^A-Za-z]")

_PHONETIC_CLASSES: dict[str, int] = {
    **dict.fromkeys("BFPV", 1),
    **dict.fromkeys("CGJKQSXZ", 2),
    **dict.fromkeys("DT", 3),
    "L": 4,
    **dict.fromkeys("MN", 5),
    "R": 6,
}


@dataclass(frozen=True)
class ScoreResult:
    phonetic_score: float
    lexical_score: float
    pacing_bonus: float
    timing_score: float
    total: float
    is_correct: bool
    is_empty: bool = False

    @classmethod
    def empty(cls) -> "ScoreResult":
        """Zero score for a turn where nothing was said."""
        return cls(
            phonetic_score=0.0,
            lexical_score=0.0,
            pacing_bonus=0.0,
            timing_score=0.0,
            total=0.0,
            is_correct=False,
            is_empty=True,
        )


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def _fold_accents(text: str) -> str:
    t = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in t if not unicodedata.combining(ch))


def normalize_text(text: str) -> str:
    """Lower-case, drop accents and punctuation, collapse whitespace."""
    t = _fold_accents(text).lower()
    t = _NON_ALNUM_RE.sub("", t)
    return _WHITESPACE_RE.sub(" ", t).strip()


def _split_words(text: str) -> List[str]:
    return text.split()


def _clamp(x: float, lo: float = 0.0, hi: float = MAX_SCORE) -> float:
    return max(lo, min(hi, x))


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

def phonetic_code(word: str) -> str:
    """Soundex-style code: first letter + up to three class digits, zero padded.

    Vowels and H/W/Y map to 0 and separate repeated classes, so "Robert"
    and "Rupert" both give "R163".  A word without letters gives "".
    """
    letters = _NON_LETTER_RE.sub("", _fold_accents(word)).upper()
    if not letters:
        return ""

    first = letters[0]
    code = first
    previous = _PHONETIC_CLASSES.get(first, 0)
    for ch in letters[1:]:
        digit = _PHONETIC_CLASSES.get(ch, 0)
        if digit != 0 and digit != previous:
            code += str(digit)
        previous = digit

    return (code + "000")[:PHONETIC_CODE_LENGTH]


def phonetic_similarity(expected: str, actual: str) -> float:
    """Fraction of word positions whose phonetic codes agree (0.0–1.0)."""
    expected_codes = [phonetic_code(w) for w in _split_words(expected)]
    actual_codes = [phonetic_code(w) for w in _split_words(actual)]

    max_len = max(len(expected_codes), len(actual_codes))
    if max_len == 0:
        return 0.0

    matches = 0
    for i, code in enumerate(expected_codes):
        if code and i < len(actual_codes) and code == actual_codes[i]:
            matches += 1
    return matches / max_len


def lexical_overlap(expected: str, actual: str) -> float:
    """Share of expected words covered by the response's words (duplicates count)."""
    expected_words = _split_words(normalize_text(expected))
    actual_words = _split_words(normalize_text(actual))

    expected_set = set(expected_words)
    overlap = sum(1 for w in actual_words if w in expected_set)
    return overlap / max(len(expected_words), 1)


def pacing_bonus(expected_word_count: int, actual_word_count: int) -> float:
    return max(0.0, PACING_MAX - 2.0 * abs(actual_word_count - expected_word_count))


def timing_score(elapsed: float, limit: float) -> float:
    if limit <= 0:
        return 0.0
    overage = max(elapsed - limit, 0.0)
    return max(0.0, (limit - overage) / limit) * TIMING_WEIGHT


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def is_match(expected: str, actual: str) -> bool:
    return normalize_text(actual) == normalize_text(expected)


def score(
    expected_answer: str,
    observed_response: str,
    elapsed: float,
    limit: float,
) -> ScoreResult:
    """Score one spoken response against the expected answer.

    `elapsed` and `limit` must share a unit; the session passes countdown units.
    """
    if not observed_response or not observed_response.strip():
        return ScoreResult.empty()

    is_correct = is_match(expected_answer, observed_response)

    expected_words = _split_words(expected_answer)
    actual_words = _split_words(observed_response)
    if max(len(expected_words), len(actual_words)) == 0:
        return ScoreResult(0.0, 0.0, 0.0, 0.0, 0.0, is_correct)

    phonetic = phonetic_similarity(expected_answer, observed_response) * PHONETIC_WEIGHT
    lexical = lexical_overlap(expected_answer, observed_response) * LEXICAL_WEIGHT
    pacing = pacing_bonus(len(expected_words), len(actual_words))
    timing = timing_score(elapsed, limit)

    total = _clamp(phonetic + lexical + pacing + timing)

    return ScoreResult(
        phonetic_score=phonetic,
        lexical_score=lexical,
        pacing_bonus=pacing,
        timing_score=timing,
        total=total,
        is_correct=is_correct,
    )
