"""
State machine for a live voice session.

The session starts CONNECTING when the participant joins the voice channel and
always finishes in ENDED, tagged with how it ended:
- Timer reached zero: auto-ended
- Participant left: manual-ended
- Connection could not be recovered and the participant gave up: error-ended
"""

from typing import Optional
from models import SessionPhase, EndType
from utils import SessionLogger


class SessionStateMachine:
    """
    Tracks the lifecycle phase of one participant's session.

    State Transitions:
    CONNECTING → CONNECTED (on channel joined)
    CONNECTED → RECONNECTING (on transient transport loss)
    CONNECTING/RECONNECTING → CONNECTED (on rejoin)
    CONNECTING/RECONNECTING → FAILED (on retries exhausted)
    FAILED → CONNECTING (on explicit retry)
    ANY → ENDED (manual, auto or error); ENDED is terminal
    """

    _ALLOWED = {
        SessionPhase.CONNECTING: {SessionPhase.CONNECTED, SessionPhase.FAILED, SessionPhase.RECONNECTING},
        SessionPhase.CONNECTED: {SessionPhase.RECONNECTING, SessionPhase.FAILED},
        SessionPhase.RECONNECTING: {SessionPhase.CONNECTED, SessionPhase.FAILED},
        SessionPhase.FAILED: {SessionPhase.CONNECTING},
        SessionPhase.ENDED: set(),
    }

    def __init__(self, session_id: str, logger: Optional[SessionLogger] = None):
        self.session_id = session_id
        self.logger = logger or SessionLogger(session_id)
        self._phase = SessionPhase.CONNECTING
        self._end_type: Optional[EndType] = None
        self._last_error: Optional[str] = None

    @property
    def phase(self) -> SessionPhase:
        """Get current phase."""
        return self._phase

    @property
    def end_type(self) -> Optional[EndType]:
        return self._end_type

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def connecting(self):
        """Explicit retry after a failure."""
        if self._transition_to(SessionPhase.CONNECTING):
            self._last_error = None
            self.logger.info("Reconnecting to voice channel on request")

    def connected(self):
        if self._transition_to(SessionPhase.CONNECTED):
            self.logger.info("Voice channel connected")

    def reconnecting(self):
        if self._transition_to(SessionPhase.RECONNECTING):
            self.logger.warning("Voice connection lost, reconnecting")

    def failed(self, error_message: str):
        """Retries exhausted; the caller must retry or abandon."""
        if self._transition_to(SessionPhase.FAILED):
            self._last_error = error_message
            self.logger.error(f"Voice connection failed: {error_message}")

    def end(self, end_type: EndType) -> bool:
        """
        Move to ENDED. Only the first call wins.

        Returns:
            True if this call ended the session
        """
        if self._phase == SessionPhase.ENDED:
            self.logger.debug(f"End ({EndType(end_type).value}) ignored: already {self._end_type.value}")
            return False

        self._end_type = EndType(end_type)
        self._set(SessionPhase.ENDED)
        self.logger.info(f"Session ended ({self._end_type.value})")
        return True

    def _transition_to(self, new_phase: SessionPhase) -> bool:
        """Internal method to transition to a new phase."""
        if new_phase == self._phase:
            return False
        if new_phase not in self._ALLOWED[self._phase]:
            self.logger.debug(f"Transition ignored: {self._phase.value} → {new_phase.value}")
            return False

        self._set(new_phase)
        return True

    def _set(self, new_phase: SessionPhase):
        old_phase = self._phase
        self._phase = new_phase

        self.logger.debug(f"State transition: {old_phase.value} → {new_phase.value}")
