"""Streaming session state machine.

One instance per WebSocket connection, one exchange in flight at a time:

  IDLE → DISPATCHING → RECEIVING → COMPLETED
                                 → FAILED   (error frame, timeout)
  any  → CLOSED                             (peer closed the connection)

Closing while DISPATCHING (no meta or audio seen yet) fails the exchange
with ClosedBeforeData. Closing while RECEIVING keeps whatever audio
arrived. Frames arriving after a terminal phase are ignored.
"""

from __future__ import annotations

import enum
import logging
import uuid
from typing import TYPE_CHECKING

from src.errors import ClosedBeforeData, SessionFailed, SessionTimeout
from src.streaming.frames import ControlFrame, EndFrame, ErrorFrame, Frame, MetaFrame, parse_text_frame, speak_frame

if TYPE_CHECKING:
    from src.engines.base import SynthesisRequest

logger = logging.getLogger(__name__)


class SessionPhase(enum.StrEnum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_PHASES = frozenset({SessionPhase.COMPLETED, SessionPhase.FAILED, SessionPhase.CLOSED})

_VALID_TRANSITIONS: dict[SessionPhase, set[SessionPhase]] = {
    SessionPhase.IDLE: {SessionPhase.DISPATCHING, SessionPhase.CLOSED},
    SessionPhase.DISPATCHING: {
        SessionPhase.RECEIVING,
        SessionPhase.COMPLETED,
        SessionPhase.FAILED,
        SessionPhase.CLOSED,
    },
    SessionPhase.RECEIVING: {
        SessionPhase.RECEIVING,
        SessionPhase.COMPLETED,
        SessionPhase.FAILED,
        SessionPhase.CLOSED,
    },
    SessionPhase.COMPLETED: {SessionPhase.IDLE, SessionPhase.CLOSED},
    SessionPhase.FAILED: {SessionPhase.IDLE, SessionPhase.CLOSED},
    SessionPhase.CLOSED: set(),
}


class StreamingSession:
    """Client-side view of one connection's exchanges."""

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.phase = SessionPhase.IDLE
        self.request: SynthesisRequest | None = None
        self.meta: MetaFrame | None = None
        self.end: EndFrame | None = None
        self.failure: SessionFailed | None = None
        self.chunks = 0
        self._buffer = bytearray()
        self._started = False

    # --- State transitions ---

    def transition_to(self, new_phase: SessionPhase) -> bool:
        """Move to ``new_phase`` if allowed; logs and refuses otherwise."""
        if new_phase not in _VALID_TRANSITIONS[self.phase]:
            logger.warning(
                "Invalid session transition %s → %s",
                self.phase.value,
                new_phase.value,
                extra={"session_id": self.session_id},
            )
            return False
        self.phase = new_phase
        return True

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def started(self) -> bool:
        """True once a meta or audio frame has arrived for this exchange."""
        return self._started

    @property
    def buffer(self) -> bytes:
        return bytes(self._buffer)

    # --- Events ---

    def begin(self, request: SynthesisRequest, *, stream: bool | None = None) -> str:
        """Start an exchange; returns the speak control frame to send."""
        if self.phase is not SessionPhase.IDLE:
            msg = f"Cannot start an exchange in phase {self.phase.value}"
            raise RuntimeError(msg)
        self.transition_to(SessionPhase.DISPATCHING)
        self.request = request
        return speak_frame(
            request.text,
            engine=request.engine,
            voice=request.voice,
            format=str(request.format),
            sample_rate=request.sample_rate,
            stream=stream,
        )

    def on_text(self, raw: str) -> Frame | None:
        """Apply a text frame. Returns the parsed frame, or None if ignored."""
        if self._ignoring("text"):
            return None
        frame = parse_text_frame(raw)
        if frame is None:
            return None

        if isinstance(frame, MetaFrame):
            self.meta = frame
            self._started = True
            self.transition_to(SessionPhase.RECEIVING)
        elif isinstance(frame, EndFrame):
            self.end = frame
            self.transition_to(SessionPhase.COMPLETED)
        elif isinstance(frame, ErrorFrame):
            self.failure = SessionFailed(frame.message, server_code=frame.code)
            self.transition_to(SessionPhase.FAILED)
            logger.warning("Server error frame: %s", frame.message, extra={"session_id": self.session_id})
        elif isinstance(frame, ControlFrame):
            logger.debug("Ignoring %s frame during exchange", frame.type, extra={"session_id": self.session_id})
        return frame

    def on_binary(self, data: bytes) -> bool:
        """Append an audio frame in arrival order. Returns False if ignored."""
        if self._ignoring("binary"):
            return False
        self._buffer.extend(data)
        self.chunks += 1
        self._started = True
        self.transition_to(SessionPhase.RECEIVING)
        return True

    def on_close(self) -> None:
        """Peer closed the connection."""
        if self.phase is SessionPhase.CLOSED:
            return
        if self.phase is SessionPhase.DISPATCHING:
            self.failure = ClosedBeforeData()
        self.transition_to(SessionPhase.CLOSED)

    def on_timeout(self, timeout: float) -> None:
        """The exchange outlived its deadline."""
        if self.is_terminal or self.phase is SessionPhase.IDLE:
            return
        self.failure = SessionTimeout(timeout)
        self.transition_to(SessionPhase.FAILED)

    def reset(self) -> None:
        """Return a finished (not closed) session to IDLE for the next exchange."""
        if self.phase is SessionPhase.CLOSED:
            msg = "Session is closed"
            raise RuntimeError(msg)
        if self.phase not in TERMINAL_PHASES:
            msg = f"Cannot reset an exchange in phase {self.phase.value}"
            raise RuntimeError(msg)
        self.transition_to(SessionPhase.IDLE)
        self.request = None
        self.meta = None
        self.end = None
        self.failure = None
        self.chunks = 0
        self._buffer.clear()
        self._started = False

    # --- Outcome ---

    def result(self) -> bytes:
        """Accumulated audio of a finished exchange, or raise its failure."""
        if self.failure is not None:
            raise self.failure
        if self.phase is SessionPhase.COMPLETED or (self.phase is SessionPhase.CLOSED and self._started):
            return bytes(self._buffer)
        msg = f"Exchange not finished (phase {self.phase.value})"
        raise SessionFailed(msg)

    def _ignoring(self, kind: str) -> bool:
        if self.phase in TERMINAL_PHASES or self.phase is SessionPhase.IDLE:
            logger.debug(
                "Ignoring %s frame in phase %s",
                kind,
                self.phase.value,
                extra={"session_id": self.session_id},
            )
            return True
        return False
