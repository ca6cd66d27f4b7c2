"""
speech.py — Speaking Drill · Collaborator Contracts
===================================================
Capability interfaces the session controller talks to.  Real implementations
(WebSocket bridge to a browser client) live in transport.py; tests substitute
deterministic fakes.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, Protocol


class CapabilityUnavailable(RuntimeError):
    """Speech recognition is not available, so a drill cannot run at all."""


class FeedbackTone(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR   = "error"


# ---------------------------------------------------------------------------
# Speech-to-text
# ---------------------------------------------------------------------------

class RecognitionListener(Protocol):
    """Receives the events of one listening session."""

    def on_result(self, transcript: str, is_final: bool) -> None:
        """Transcript so far; is_final marks the recogniser's last word on it."""

    def on_error(self) -> None: ...

    def on_end(self) -> None: ...


class RecognitionSession(Protocol):
    def stop(self) -> None:
        """Stop listening.  No listener callbacks are delivered afterwards."""


class SpeechRecognizer(Protocol):
    def open(
        self,
        language: str,
        listener: RecognitionListener,
        *,
        interim: bool = True,
        continuous: bool = False,
    ) -> RecognitionSession: ...


# ---------------------------------------------------------------------------
# Speech synthesis
# ---------------------------------------------------------------------------

class SpeechSynthesizer(Protocol):
    def speak(self, text: str, on_finished: Callable[[], None]) -> None:
        """Speak `text`, cancelling any utterance still in flight."""

    def cancel(self) -> None: ...


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------

class DisplaySink(Protocol):
    def show_prompt(self, text: str) -> None: ...

    def show_transcript(self, text: str) -> None: ...

    def show_feedback(self, message: str, tone: Optional[FeedbackTone]) -> None: ...

    def show_score(self, total: Optional[float]) -> None: ...

    def show_timer(self, remaining: Optional[int]) -> None: ...

    def lesson_complete(self) -> None: ...
