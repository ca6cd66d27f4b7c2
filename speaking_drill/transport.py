"""
transport.py — Speaking Drill · WebSocket Collaborators
=======================================================
The browser client owns the microphone, the speech engine and the screen.
These adapters implement the speech.py contracts by exchanging JSON messages
with it.  Nothing here awaits: every outbound message is handed to `send`,
which the server wires to a queue drained by the connection's writer task.

Server → client
---------------
  speak / cancel_speech              synthesis
  listen / stop_listening            recognition (session id per turn)
  prompt / transcript / feedback /
  score / timer / complete           display

Inbound client events are routed back with dispatch_*; events that carry an
unknown or already-stopped id are dropped.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .config import SpeechConfig
from .speech import FeedbackTone, RecognitionListener

log = logging.getLogger("speaking_drill.transport")

Send = Callable[[dict[str, Any]], None]


# ---------------------------------------------------------------------------
# Speech-to-text
# ---------------------------------------------------------------------------

class WebSocketRecognitionSession:
    def __init__(self, recognizer: "WebSocketRecognizer", session_id: int, listener: RecognitionListener):
        self.id = session_id
        self.listener = listener
        self._recognizer = recognizer

    def stop(self) -> None:
        self._recognizer.release(self.id, notify_client=True)


class WebSocketRecognizer:
    """Opens listening sessions on the client and routes their events back."""

    def __init__(self, send: Send):
        self._send = send
        self._sessions: dict[int, WebSocketRecognitionSession] = {}
        self._next_id: int = 0

    def open(
        self,
        language: str,
        listener: RecognitionListener,
        *,
        interim: bool = True,
        continuous: bool = False,
    ) -> WebSocketRecognitionSession:
        self._next_id += 1
        session = WebSocketRecognitionSession(self, self._next_id, listener)
        self._sessions[session.id] = session
        self._send({
            "type":       "listen",
            "session":    session.id,
            "lang":       language,
            "interim":    interim,
            "continuous": continuous,
        })
        log.debug("event=listen_opened session=%d lang=%s", session.id, language)
        return session

    def release(self, session_id: int, *, notify_client: bool) -> None:
        if self._sessions.pop(session_id, None) is None:
            return
        if notify_client:
            self._send({"type": "stop_listening", "session": session_id})
        log.debug("event=listen_released session=%d notified=%s", session_id, notify_client)

    @property
    def open_sessions(self) -> int:
        return len(self._sessions)

    # -- Inbound ---------------------------------------------------------------

    def _lookup(self, session_id: Optional[int], kind: str) -> Optional[WebSocketRecognitionSession]:
        session = self._sessions.get(session_id) if session_id is not None else None
        if session is None:
            log.debug("event=stale_recognition_event kind=%s session=%s", kind, session_id)
        return session

    def dispatch_result(self, session_id: Optional[int], transcript: str, is_final: bool) -> None:
        session = self._lookup(session_id, "result")
        if session is not None:
            session.listener.on_result(transcript, is_final)

    def dispatch_error(self, session_id: Optional[int]) -> None:
        session = self._lookup(session_id, "error")
        if session is not None:
            self.release(session.id, notify_client=False)
            session.listener.on_error()

    def dispatch_end(self, session_id: Optional[int]) -> None:
        session = self._lookup(session_id, "end")
        if session is not None:
            self.release(session.id, notify_client=False)
            session.listener.on_end()


# ---------------------------------------------------------------------------
# Speech synthesis
# ---------------------------------------------------------------------------

class WebSocketSynthesizer:
    """One utterance at a time; a new speak() cancels the one in flight."""

    def __init__(self, send: Send, speech: SpeechConfig):
        self._send = send
        self._speech = speech
        self._next_id: int = 0
        self._pending: Optional[tuple[int, Callable[[], None]]] = None

    def speak(self, text: str, on_finished: Callable[[], None]) -> None:
        if self._pending is not None:
            self.cancel()
        self._next_id += 1
        self._pending = (self._next_id, on_finished)
        self._send({
            "type":      "speak",
            "utterance": self._next_id,
            "text":      text,
            "lang":      self._speech.language,
            "rate":      self._speech.rate,
            "pitch":     self._speech.pitch,
        })

    def cancel(self) -> None:
        if self._pending is None:
            return
        utterance_id, _ = self._pending
        self._pending = None
        self._send({"type": "cancel_speech", "utterance": utterance_id})
        log.debug("event=speech_cancelled utterance=%d", utterance_id)

    def dispatch_finished(self, utterance_id: Optional[int]) -> None:
        if self._pending is None or self._pending[0] != utterance_id:
            log.debug("event=stale_spoken utterance=%s", utterance_id)
            return
        _, on_finished = self._pending
        self._pending = None
        on_finished()


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------

class WebSocketDisplay:
    def __init__(self, send: Send):
        self._send = send

    def show_prompt(self, text: str) -> None:
        self._send({"type": "prompt", "text": text})

    def show_transcript(self, text: str) -> None:
        self._send({"type": "transcript", "text": text})

    def show_feedback(self, message: str, tone: Optional[FeedbackTone]) -> None:
        self._send({"type": "feedback", "tone": tone.value if tone else None, "message": message})

    def show_score(self, total: Optional[float]) -> None:
        self._send({"type": "score", "value": round(total) if total is not None else None})

    def show_timer(self, remaining: Optional[int]) -> None:
        self._send({"type": "timer", "remaining": remaining})

    def lesson_complete(self) -> None:
        self._send({"type": "complete"})
