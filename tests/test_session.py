import asyncio
import logging

import pytest

from conftest import NAME_LESSON, THREE_LESSONS, settle
from speaking_drill.config import DrillConfig
from speaking_drill.session import (
    ENCOURAGEMENT_TEXT,
    NO_RESPONSE_TEXT,
    SPEAK_UP_TEXT,
    Phase,
    SessionController,
    TurnOutcome,
)
from speaking_drill.speech import CapabilityUnavailable, FeedbackTone


def test_missing_recognizer_is_capability_unavailable(make_drill):
    drill = make_drill()
    with pytest.raises(CapabilityUnavailable):
        SessionController(drill.lexicon, None, drill.synthesizer, drill.display)


def test_start_prompts_first_lesson(make_drill):
    drill = make_drill(THREE_LESSONS)
    drill.controller.start()

    assert drill.controller.phase is Phase.PROMPTING
    assert drill.controller.current_index == 0
    assert drill.synthesizer.spoken == ["What is your name?"]
    assert ("prompt", "What is your name?") in drill.display.events
    assert ("transcript", "Listening...") in drill.display.events
    assert drill.recognizer.sessions == []


def test_prompted_opens_listening_and_countdown(make_drill):
    async def scenario():
        drill = make_drill()
        drill.controller.start()
        drill.synthesizer.finish()
        return drill

    drill = asyncio.run(scenario())
    state = drill.controller.state
    assert state.phase is Phase.AWAITING_RESPONSE
    assert state.pending_evaluation is True
    assert state.turn_start_time == 0.0
    session = drill.recognizer.current
    assert (session.language, session.interim, session.continuous) == ("en-US", True, False)
    assert ("timer", 5) in drill.display.events


def test_prompted_outside_prompting_is_ignored(make_drill):
    drill = make_drill()
    drill.controller.on_prompted()
    assert drill.controller.phase is Phase.IDLE
    assert drill.recognizer.sessions == []


def test_correct_answer_completes_single_lesson(make_drill):
    async def scenario():
        drill = make_drill(NAME_LESSON)
        drill.controller.start()
        drill.answer("my name is andre")
        outcome, index, phase = drill.controller.last_outcome, drill.controller.current_index, drill.controller.phase
        await settle()
        return drill, outcome, index, phase

    drill, outcome, index, phase = asyncio.run(scenario())
    assert outcome is TurnOutcome.CORRECT
    assert (index, phase) == (1, Phase.ADVANCING)
    assert drill.controller.phase is Phase.COMPLETED
    assert drill.controller.last_score.is_correct
    assert drill.display.feedback()[0] == (FeedbackTone.SUCCESS, "Correct! Good pace.")
    assert drill.display.events[-1] == ("complete",)
    assert ("prompt", "Lesson complete!") in drill.display.events
    assert drill.recognizer.current.stopped


def test_slow_correct_answer_says_too_slow(make_drill):
    async def scenario():
        drill = make_drill()
        drill.controller.start()
        drill.answer("My name is André", elapsed=7.0)
        return drill

    drill = asyncio.run(scenario())
    assert drill.display.feedback()[0] == (FeedbackTone.SUCCESS, "Correct! Too slow.")
    assert drill.controller.last_score.timing_score == pytest.approx(6)


def test_timeout_retries_same_prompt_without_scoring(make_drill):
    async def scenario():
        drill = make_drill(NAME_LESSON)
        drill.controller.start()
        session = drill.prompt_and_listen()
        drill.controller.on_timeout()
        phase, index = drill.controller.phase, drill.controller.current_index
        await settle()
        return drill, session, phase, index

    drill, session, phase, index = asyncio.run(scenario())
    assert (phase, index) == (Phase.RETRYING, 0)
    assert drill.controller.last_outcome is TurnOutcome.TIMEOUT
    assert drill.controller.last_score is None
    assert drill.display.scores() == []
    assert drill.display.feedback() == [(FeedbackTone.WARNING, ENCOURAGEMENT_TEXT)]
    assert ("transcript", NO_RESPONSE_TEXT) in drill.display.events
    assert session.stopped
    # replayed after the retry pause
    assert drill.synthesizer.spoken == ["What is your name?", "What is your name?"]
    assert drill.controller.phase is Phase.PROMPTING


def test_countdown_expiry_drives_timeout(make_drill):
    config = DrillConfig.model_validate({
        "timer": {"limit_units": 3, "tick_seconds": 0.01},
        "pacing": {"advance_delay_sec": 5.0, "retry_delay_sec": 5.0},
    })

    async def scenario():
        drill = make_drill(NAME_LESSON, config)
        drill.controller.start()
        drill.prompt_and_listen()
        await asyncio.sleep(0.2)
        return drill

    drill = asyncio.run(scenario())
    assert drill.controller.phase is Phase.RETRYING
    assert drill.controller.last_outcome is TurnOutcome.TIMEOUT
    timers = [remaining for _, remaining in drill.display.of("timer")]
    assert timers[:4] == [3, 2, 1, 0]


def test_final_then_timeout_resolves_once(make_drill):
    async def scenario():
        drill = make_drill(THREE_LESSONS)
        drill.controller.start()
        drill.answer("my name is andre")
        drill.controller.on_timeout()
        return drill

    drill = asyncio.run(scenario())
    assert drill.controller.last_outcome is TurnOutcome.CORRECT
    assert drill.controller.current_index == 1
    assert len(drill.display.feedback()) == 1
    assert len(drill.display.scores()) == 1


def test_timeout_then_late_final_is_ignored(make_drill):
    async def scenario():
        drill = make_drill(NAME_LESSON)
        drill.controller.start()
        session = drill.prompt_and_listen()
        drill.controller.on_timeout()
        session.result("my name is andre", is_final=True)
        session.end()
        return drill

    drill = asyncio.run(scenario())
    assert drill.controller.last_outcome is TurnOutcome.TIMEOUT
    assert drill.controller.current_index == 0
    assert drill.display.scores() == []
    assert len(drill.display.feedback()) == 1


def test_mismatch_reports_expected_answer_and_score(make_drill):
    async def scenario():
        drill = make_drill(THREE_LESSONS)
        drill.controller.start()
        drill.answer("my name is andrew smith")
        return drill, drill.controller.phase

    drill, phase = asyncio.run(scenario())
    assert phase is Phase.RETRYING
    assert drill.controller.last_outcome is TurnOutcome.MISMATCH
    assert drill.controller.current_index == 0
    assert drill.display.feedback() == [(FeedbackTone.ERROR, 'Not quite. Say: "My name is André."')]
    assert len(drill.display.scores()) == 1


@pytest.mark.parametrize("resolve", ["empty_final", "error", "silent_end"])
def test_no_response_warns_and_retries(make_drill, resolve):
    async def scenario():
        drill = make_drill(NAME_LESSON)
        drill.controller.start()
        session = drill.prompt_and_listen()
        if resolve == "empty_final":
            session.result("   ", is_final=True)
        elif resolve == "error":
            session.error()
        else:
            session.end()
        return drill, drill.controller.phase

    drill, phase = asyncio.run(scenario())
    assert phase is Phase.RETRYING
    assert drill.controller.last_outcome is TurnOutcome.EMPTY
    assert drill.controller.current_index == 0
    assert drill.display.feedback() == [(FeedbackTone.WARNING, SPEAK_UP_TEXT)]
    assert drill.display.scores() == []


def test_end_without_final_scores_last_interim(make_drill):
    async def scenario():
        drill = make_drill(NAME_LESSON)
        drill.controller.start()
        session = drill.prompt_and_listen()
        session.result("my name", is_final=False)
        session.result("my name is andre", is_final=False)
        session.end()
        return drill

    drill = asyncio.run(scenario())
    assert drill.controller.last_outcome is TurnOutcome.CORRECT
    assert ("transcript", "my name is andre") in drill.display.events


def test_stale_listening_session_cannot_touch_new_turn(make_drill):
    async def scenario():
        drill = make_drill(NAME_LESSON)
        drill.controller.start()
        old = drill.prompt_and_listen()
        drill.controller.on_timeout()
        await settle()
        new = drill.prompt_and_listen()
        old.result("my name is andre", is_final=True)
        old.error()
        state = drill.controller.state
        new.result("my name is andre", is_final=True)
        return drill, old, new, state

    drill, old, new, state = asyncio.run(scenario())
    assert old is not new
    assert state.phase is Phase.AWAITING_RESPONSE
    assert state.pending_evaluation
    assert drill.controller.last_outcome is TurnOutcome.CORRECT


def test_restart_ignores_previous_prompt_callback(make_drill):
    async def scenario():
        drill = make_drill(THREE_LESSONS)
        drill.controller.start()
        stale_spoken = drill.synthesizer.callbacks[0]
        drill.controller.restart()
        stale_spoken()
        return drill

    drill = asyncio.run(scenario())
    assert drill.controller.phase is Phase.PROMPTING
    assert drill.recognizer.sessions == []
    assert drill.synthesizer.cancelled >= 1


def test_index_advances_only_on_correct_answers(make_drill):
    script = [
        "my name is bob",
        "",
        "my name is andre",
        None,  # timeout
        "i work at a bank",
        "i like it",
        "yes i like technology",
    ]

    async def scenario():
        drill = make_drill(THREE_LESSONS)
        drill.controller.start()
        indices = [drill.controller.current_index]
        for reply in script:
            if reply is None:
                drill.prompt_and_listen()
                drill.controller.on_timeout()
            else:
                drill.answer(reply)
            indices.append(drill.controller.current_index)
            await settle()
        return drill, indices

    drill, indices = asyncio.run(scenario())
    assert indices == [0, 0, 0, 1, 1, 2, 2, 3]
    assert all(b - a in (0, 1) for a, b in zip(indices, indices[1:]))
    assert drill.controller.phase is Phase.COMPLETED
    assert drill.display.of("complete") == [("complete",)]


def test_start_after_completion_restarts_from_first_lesson(make_drill):
    async def scenario():
        drill = make_drill(NAME_LESSON)
        drill.controller.start()
        drill.answer("My name is André.")
        await settle()
        completed = drill.controller.phase
        drill.controller.start()
        return drill, completed

    drill, completed = asyncio.run(scenario())
    assert completed is Phase.COMPLETED
    assert drill.controller.phase is Phase.PROMPTING
    assert drill.controller.current_index == 0
    assert drill.synthesizer.spoken[-1] == "What is your name?"


def test_stop_cancels_pending_continuation(make_drill):
    config = DrillConfig.model_validate({
        "timer": {"tick_seconds": 10.0},
        "pacing": {"retry_delay_sec": 0.01},
    })

    async def scenario():
        drill = make_drill(NAME_LESSON, config)
        drill.controller.start()
        drill.prompt_and_listen()
        drill.controller.on_timeout()
        drill.controller.stop()
        await asyncio.sleep(0.05)
        return drill

    drill = asyncio.run(scenario())
    assert drill.controller.phase is Phase.RETRYING
    assert drill.synthesizer.spoken == ["What is your name?"]


@pytest.mark.parametrize(
    "tick_seconds, seconds, rhythm, timing",
    [
        (2.0, 7.0, "Good pace.", 10.0),   # 3.5 of 5 units
        (2.0, 11.0, "Too slow.", 9.0),    # 5.5 units
        (0.5, 3.0, "Too slow.", 8.0),     # 6 units
    ],
)
def test_response_time_is_measured_in_countdown_units(make_drill, tick_seconds, seconds, rhythm, timing):
    config = DrillConfig.model_validate({
        "timer": {"limit_units": 5, "tick_seconds": tick_seconds},
        "pacing": {"advance_delay_sec": 0.0, "retry_delay_sec": 0.0},
    })

    async def scenario():
        drill = make_drill(NAME_LESSON, config)
        drill.controller.start()
        session = drill.prompt_and_listen()
        drill.clock.advance(seconds)
        session.result("my name is andre", is_final=True)
        return drill

    drill = asyncio.run(scenario())
    assert drill.controller.last_outcome is TurnOutcome.CORRECT
    assert drill.display.feedback()[0] == (FeedbackTone.SUCCESS, f"Correct! {rhythm}")
    assert drill.controller.last_score.timing_score == pytest.approx(timing)


def test_late_recognition_events_log_as_ignored(make_drill, caplog):
    caplog.set_level(logging.DEBUG, logger="speaking_drill.session")

    async def scenario():
        drill = make_drill(THREE_LESSONS)
        drill.controller.start()
        drill.answer("my name is andre")
        caplog.clear()
        drill.controller.on_recognition_error()
        drill.controller.on_recognition_ended_without_final()
        return drill

    drill = asyncio.run(scenario())
    assert drill.controller.last_outcome is TurnOutcome.CORRECT
    messages = [r.getMessage() for r in caplog.records if r.name == "speaking_drill.session"]
    assert not any("event=recognition_error" in m or "event=recognition_ended" in m for m in messages)
    assert sum("event=resolution_ignored" in m for m in messages) == 2
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
