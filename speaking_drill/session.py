"""
session.py — Speaking Drill · Session Controller
================================================
The turn state machine.  One controller per learner connection.

Turn lifecycle
--------------
    IDLE → PROMPTING        start(): speak the prompt for current_index
         → AWAITING_RESPONSE on_prompted(): open listening + arm countdown
         → EVALUATING        first of {final transcript, error, end}
         → ADVANCING         correct   → index + 1, pause, next prompt / COMPLETED
         → RETRYING          mismatch / empty / timeout → pause, same prompt

Exactly-once resolution
-----------------------
Recognition events and the countdown race each other.  Two guards make sure
only the first one acts:
  • pending_evaluation: true from on_prompted() until the turn resolves
  • turn token: every callback handed to a collaborator carries the
    turn it was created for; callbacks from an older
    turn are dropped before they reach the handlers

All handlers are synchronous and run on the session's event loop, so the
controller never re-enters itself.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from .config import DrillConfig
from .lexicon import Lexicon
from .scoring import ScoreResult, score
from .speech import (
    CapabilityUnavailable,
    DisplaySink,
    FeedbackTone,
    RecognitionSession,
    SpeechRecognizer,
    SpeechSynthesizer,
)
from .timer import Clock, CountdownTimer, MonotonicClock

log = logging.getLogger("speaking_drill.session")

# ---------------------------------------------------------------------------
# Learner-facing copy
# ---------------------------------------------------------------------------

LISTENING_TEXT      = "Listening..."
NO_RESPONSE_TEXT    = "No response detected."
SPEAK_UP_TEXT       = "Speak up! Answer quickly like in class."
ENCOURAGEMENT_TEXT  = "Keep going! Answer before the timer runs out."
MISMATCH_TEMPLATE   = 'Not quite. Say: "{answer}"'
CORRECT_TEMPLATE    = "Correct! {rhythm}"
GOOD_PACE_TEXT      = "Good pace."
TOO_SLOW_TEXT       = "Too slow."
COMPLETE_PROMPT     = "Lesson complete!"
COMPLETE_TRANSCRIPT = "Great job keeping the pace!"
COMPLETE_FEEDBACK   = "Fantastic work. Restart for more practice."


class Phase(Enum):
    IDLE              = auto()   # nothing started yet
    PROMPTING         = auto()   # prompt is being spoken
    AWAITING_RESPONSE = auto()   # listening + countdown running
    EVALUATING        = auto()   # transcript won the race; scoring
    ADVANCING         = auto()   # correct; waiting to show the next prompt
    RETRYING          = auto()   # wrong / silent / timed out; waiting to replay
    COMPLETED         = auto()   # every lesson answered


class TurnOutcome(Enum):
    CORRECT  = "correct"
    MISMATCH = "mismatch"
    EMPTY    = "empty"
    TIMEOUT  = "timeout"


@dataclass
class SessionState:
    current_index: int = 0
    phase: Phase = Phase.IDLE
    pending_evaluation: bool = False
    turn_start_time: Optional[float] = None
    turn: int = 0
    last_transcript: str = ""


class _TurnListener:
    """Listening-session callbacks pinned to the turn that opened them."""

    def __init__(self, controller: "SessionController", turn: int):
        self._controller = controller
        self._turn = turn

    def on_result(self, transcript: str, is_final: bool) -> None:
        self._controller._on_recognition_result(self._turn, transcript, is_final)

    def on_error(self) -> None:
        if self._controller._is_current(self._turn, "recognition_error"):
            self._controller.on_recognition_error()

    def on_end(self) -> None:
        if self._controller._is_current(self._turn, "recognition_end"):
            self._controller.on_recognition_ended_without_final()


class SessionController:
    """Drives one drill: prompt, listen, race the countdown, score, advance or retry."""

    def __init__(
        self,
        lexicon: Lexicon,
        recognizer: Optional[SpeechRecognizer],
        synthesizer: SpeechSynthesizer,
        display: DisplaySink,
        *,
        config: Optional[DrillConfig] = None,
        timer: Optional[CountdownTimer] = None,
        clock: Optional[Clock] = None,
    ):
        if recognizer is None:
            raise CapabilityUnavailable("Speech recognition is not available.")

        self._lexicon = lexicon
        self._recognizer = recognizer
        self._synthesizer = synthesizer
        self._display = display
        self._config = config or DrillConfig()
        self._timer = timer or CountdownTimer(self._config.timer.tick_seconds)
        self._clock = clock or MonotonicClock()

        self._state = SessionState()
        self._listening: Optional[RecognitionSession] = None
        self._continuation: Optional[asyncio.TimerHandle] = None

        self._last_outcome: Optional[TurnOutcome] = None
        self._last_score: Optional[ScoreResult] = None

    # -----------------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return dataclasses.replace(self._state)

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def current_index(self) -> int:
        return self._state.current_index

    @property
    def lesson_count(self) -> int:
        return len(self._lexicon)

    @property
    def last_outcome(self) -> Optional[TurnOutcome]:
        return self._last_outcome

    @property
    def last_score(self) -> Optional[ScoreResult]:
        return self._last_score

    @property
    def limit(self) -> int:
        return self._config.timer.limit_units

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    def start(self) -> None:
        """Reset to the first lesson and prompt it.  Safe to call at any time."""
        log.info("event=session_start lessons=%d previous_phase=%s", len(self._lexicon), self._state.phase.name)
        self._cancel_turn_activity()
        self._synthesizer.cancel()
        self._state.current_index = 0
        self._state.pending_evaluation = False
        self._last_outcome = None
        self._last_score = None
        self._ask_question()

    restart = start

    def stop(self) -> None:
        """Drop everything in flight (countdown, listening, speech, pauses).  State is kept."""
        self._cancel_turn_activity()
        self._synthesizer.cancel()
        self._state.pending_evaluation = False
        self._state.turn += 1  # orphan every callback already handed out
        log.info("event=session_stopped phase=%s index=%d", self._state.phase.name, self._state.current_index)

    # -----------------------------------------------------------------------
    # Prompting
    # -----------------------------------------------------------------------

    def _ask_question(self) -> None:
        self._continuation = None
        if self._state.current_index >= len(self._lexicon):
            self._finish()
            return

        self._state.turn += 1
        self._state.turn_start_time = None
        self._state.last_transcript = ""
        self._set_phase(Phase.PROMPTING)

        entry = self._lexicon[self._state.current_index]
        self._display.show_feedback("", None)
        self._display.show_score(None)
        self._display.show_transcript(LISTENING_TEXT)
        self._display.show_prompt(entry.prompt)

        log.info("event=prompt index=%d turn=%d prompt=%.60s", self._state.current_index, self._state.turn, entry.prompt)
        self._synthesizer.speak(entry.prompt, self._bind(self.on_prompted, "prompt_spoken"))

    def on_prompted(self) -> None:
        """The prompt has finished playing: start listening and the countdown."""
        if self._state.phase is not Phase.PROMPTING:
            log.debug("event=prompted_ignored phase=%s", self._state.phase.name)
            return

        self._set_phase(Phase.AWAITING_RESPONSE)
        self._close_listening()

        speech = self._config.speech
        self._listening = self._recognizer.open(
            speech.language,
            _TurnListener(self, self._state.turn),
            interim=speech.interim_results,
            continuous=speech.continuous,
        )
        self._state.pending_evaluation = True
        self._state.turn_start_time = self._clock.now()

        self._display.show_timer(self.limit)
        self._timer.arm(
            self.limit,
            self._bind_tick(),
            self._bind(self.on_timeout, "countdown_expired"),
        )
        log.info(
            "event=listening turn=%d limit=%d window_sec=%.1f",
            self._state.turn, self.limit, self._config.timer.window_seconds,
        )

    # -----------------------------------------------------------------------
    # Resolution: first signal wins
    # -----------------------------------------------------------------------

    def _on_recognition_result(self, turn: int, transcript: str, is_final: bool) -> None:
        if not self._is_current(turn, "recognition_result"):
            return
        text = transcript.strip()
        if not self._state.pending_evaluation:
            log.debug("event=result_after_resolution turn=%d final=%s", turn, is_final)
            return

        self._state.last_transcript = text
        self._display.show_transcript(text)
        if is_final:
            log.info("event=transcript_final turn=%d text=%.80s", turn, text)
            self.on_final_transcript(text)
        else:
            log.debug("event=transcript_interim turn=%d text=%.80s", turn, text)

    def on_final_transcript(self, text: str) -> None:
        if not self._resolve("final_transcript"):
            return
        self._set_phase(Phase.EVALUATING)
        self._evaluate(text.strip())

    def on_recognition_error(self) -> None:
        if self._state.pending_evaluation:
            log.warning("event=recognition_error turn=%d", self._state.turn)
        self.on_final_transcript("")

    def on_recognition_ended_without_final(self) -> None:
        if self._state.pending_evaluation:
            log.info("event=recognition_ended turn=%d fallback=%.60s", self._state.turn, self._state.last_transcript)
        self.on_final_transcript(self._state.last_transcript)

    def on_timeout(self) -> None:
        if not self._resolve("timeout"):
            return

        log.warning("event=turn_timeout index=%d turn=%d", self._state.current_index, self._state.turn)
        self._last_outcome = TurnOutcome.TIMEOUT
        self._last_score = None
        self._display.show_timer(0)
        self._display.show_feedback(ENCOURAGEMENT_TEXT, FeedbackTone.WARNING)
        self._display.show_transcript(NO_RESPONSE_TEXT)
        self._repeat_question()

    def _resolve(self, source: str) -> bool:
        """Claim the current turn.  Returns False when another signal already won."""
        if not self._state.pending_evaluation:
            log.debug("event=resolution_ignored source=%s phase=%s", source, self._state.phase.name)
            return False
        self._state.pending_evaluation = False
        self._timer.cancel()
        self._close_listening()
        log.debug("event=turn_resolved source=%s turn=%d", source, self._state.turn)
        return True

    # -----------------------------------------------------------------------
    # Evaluation
    # -----------------------------------------------------------------------

    def _elapsed(self) -> float:
        """Response time in countdown units, comparable with `limit`."""
        if self._state.turn_start_time is None:
            return float(self.limit + 1)
        return self._config.timer.to_units(self._clock.now() - self._state.turn_start_time)

    def _evaluate(self, response: str) -> None:
        entry = self._lexicon[self._state.current_index]
        elapsed = self._elapsed()
        result = score(entry.expected_answer, response, elapsed, self.limit)
        self._last_score = result

        if result.is_empty:
            log.warning("event=empty_response index=%d turn=%d", self._state.current_index, self._state.turn)
            self._last_outcome = TurnOutcome.EMPTY
            self._display.show_feedback(SPEAK_UP_TEXT, FeedbackTone.WARNING)
            self._display.show_transcript(NO_RESPONSE_TEXT)
            self._repeat_question()
            return

        self._display.show_score(result.total)
        log.info(
            "event=scored index=%d correct=%s total=%.1f phonetic=%.1f lexical=%.1f pacing=%.1f timing=%.1f elapsed_units=%.2f",
            self._state.current_index, result.is_correct, result.total, result.phonetic_score,
            result.lexical_score, result.pacing_bonus, result.timing_score, elapsed,
        )

        if result.is_correct:
            self._last_outcome = TurnOutcome.CORRECT
            rhythm = GOOD_PACE_TEXT if elapsed <= self.limit else TOO_SLOW_TEXT
            self._display.show_feedback(CORRECT_TEMPLATE.format(rhythm=rhythm), FeedbackTone.SUCCESS)
            self._proceed_to_next_question()
        else:
            self._last_outcome = TurnOutcome.MISMATCH
            self._display.show_feedback(MISMATCH_TEMPLATE.format(answer=entry.expected_answer), FeedbackTone.ERROR)
            self._repeat_question()

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    def _proceed_to_next_question(self) -> None:
        self._set_phase(Phase.ADVANCING)
        self._state.current_index += 1
        self._schedule(self._config.pacing.advance_delay_sec)

    def _repeat_question(self) -> None:
        self._set_phase(Phase.RETRYING)
        self._schedule(self._config.pacing.retry_delay_sec)

    def _finish(self) -> None:
        self._set_phase(Phase.COMPLETED)
        self._display.show_prompt(COMPLETE_PROMPT)
        self._display.show_timer(None)
        self._display.show_transcript(COMPLETE_TRANSCRIPT)
        self._display.show_feedback(COMPLETE_FEEDBACK, FeedbackTone.SUCCESS)
        self._display.show_score(None)
        self._display.lesson_complete()
        log.info("event=session_complete lessons=%d", len(self._lexicon))

    def _schedule(self, delay: float) -> None:
        if self._continuation is not None:
            self._continuation.cancel()
        turn = self._state.turn
        self._continuation = asyncio.get_running_loop().call_later(
            delay, self._bind_turn(turn, self._ask_question, "continuation"),
        )

    def _set_phase(self, phase: Phase) -> None:
        if phase is not self._state.phase:
            log.debug("event=phase_change old=%s new=%s", self._state.phase.name, phase.name)
        self._state.phase = phase

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _is_current(self, turn: int, source: str) -> bool:
        if turn != self._state.turn:
            log.debug("event=stale_callback source=%s turn=%d current=%d", source, turn, self._state.turn)
            return False
        return True

    def _bind_turn(self, turn: int, handler: Callable[[], None], source: str) -> Callable[[], None]:
        def _callback() -> None:
            if self._is_current(turn, source):
                handler()
        return _callback

    def _bind(self, handler: Callable[[], None], source: str) -> Callable[[], None]:
        return self._bind_turn(self._state.turn, handler, source)

    def _bind_tick(self) -> Callable[[int], None]:
        turn = self._state.turn

        def _tick(remaining: int) -> None:
            if self._is_current(turn, "countdown_tick") and self._state.pending_evaluation:
                self._display.show_timer(remaining)
        return _tick

    def _close_listening(self) -> None:
        session, self._listening = self._listening, None
        if session is not None:
            session.stop()

    def _cancel_turn_activity(self) -> None:
        self._timer.cancel()
        self._close_listening()
        if self._continuation is not None:
            self._continuation.cancel()
            self._continuation = None
