import asyncio
from typing import Callable, Optional

import pytest

from speaking_drill.config import DrillConfig
from speaking_drill.lexicon import LessonEntry, Lexicon
from speaking_drill.session import SessionController
from speaking_drill.speech import FeedbackTone
from speaking_drill.timer import CountdownTimer


class FakeClock:
    """Deterministic test clock."""

    def __init__(self, *, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, dt: float) -> None:
        self._now += float(dt)


class FakeRecognitionSession:
    def __init__(self, listener, language: str, interim: bool, continuous: bool):
        self.listener = listener
        self.language = language
        self.interim = interim
        self.continuous = continuous
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True

    # Events are delivered even after stop() so tests can play late arrivals.
    def result(self, transcript: str, is_final: bool = True) -> None:
        self.listener.on_result(transcript, is_final)

    def error(self) -> None:
        self.listener.on_error()

    def end(self) -> None:
        self.listener.on_end()


class FakeRecognizer:
    def __init__(self):
        self.sessions: list[FakeRecognitionSession] = []

    def open(self, language, listener, *, interim=True, continuous=False):
        session = FakeRecognitionSession(listener, language, interim, continuous)
        self.sessions.append(session)
        return session

    @property
    def current(self) -> FakeRecognitionSession:
        return self.sessions[-1]


class FakeSynthesizer:
    def __init__(self):
        self.spoken: list[str] = []
        self.callbacks: list[Callable[[], None]] = []
        self.cancelled = 0

    def speak(self, text: str, on_finished: Callable[[], None]) -> None:
        self.spoken.append(text)
        self.callbacks.append(on_finished)

    def cancel(self) -> None:
        self.cancelled += 1

    def finish(self) -> None:
        self.callbacks[-1]()


class RecordingDisplay:
    def __init__(self):
        self.events: list[tuple] = []

    def show_prompt(self, text: str) -> None:
        self.events.append(("prompt", text))

    def show_transcript(self, text: str) -> None:
        self.events.append(("transcript", text))

    def show_feedback(self, message: str, tone: Optional[FeedbackTone]) -> None:
        self.events.append(("feedback", tone, message))

    def show_score(self, total: Optional[float]) -> None:
        self.events.append(("score", total))

    def show_timer(self, remaining: Optional[int]) -> None:
        self.events.append(("timer", remaining))

    def lesson_complete(self) -> None:
        self.events.append(("complete",))

    def of(self, kind: str) -> list[tuple]:
        return [e for e in self.events if e[0] == kind]

    def feedback(self) -> list[tuple]:
        return [(tone, message) for _, tone, message in self.of("feedback") if tone is not None]

    def scores(self) -> list[float]:
        return [value for _, value in self.of("score") if value is not None]


class Drill:
    """A controller wired to fakes."""

    def __init__(self, lessons, config: DrillConfig):
        self.lexicon = Lexicon(LessonEntry(prompt=p, expected_answer=a) for p, a in lessons)
        self.config = config
        self.recognizer = FakeRecognizer()
        self.synthesizer = FakeSynthesizer()
        self.display = RecordingDisplay()
        self.clock = FakeClock()
        self.controller = SessionController(
            self.lexicon,
            self.recognizer,
            self.synthesizer,
            self.display,
            config=config,
            timer=CountdownTimer(config.timer.tick_seconds),
            clock=self.clock,
        )

    def prompt_and_listen(self) -> FakeRecognitionSession:
        self.synthesizer.finish()
        return self.recognizer.current

    def answer(self, transcript: str, elapsed: float = 1.0) -> None:
        """Reply after `elapsed` countdown units."""
        session = self.prompt_and_listen()
        self.clock.advance(elapsed * self.config.timer.tick_seconds)
        session.result(transcript, is_final=True)


async def settle(seconds: float = 0.02) -> None:
    await asyncio.sleep(seconds)


NAME_LESSON = [("What is your name?", "My name is André.")]

THREE_LESSONS = [
    ("What is your name?", "My name is André."),
    ("Where do you work?", "I work at a bank."),
    ("Do you like technology?", "Yes, I like technology."),
]


@pytest.fixture
def drill_config():
    # Countdown effectively never fires unless a test shortens the tick.
    return DrillConfig.model_validate({
        "timer": {"limit_units": 5, "tick_seconds": 10.0},
        "pacing": {"advance_delay_sec": 0.0, "retry_delay_sec": 0.0},
    })


@pytest.fixture
def make_drill(drill_config):
    def _make(lessons=NAME_LESSON, config: Optional[DrillConfig] = None) -> Drill:
        return Drill(lessons, config or drill_config)
    return _make
