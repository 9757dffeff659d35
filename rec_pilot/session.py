"""Session state machine for a screen recording."""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .geometry import Rect

if TYPE_CHECKING:
    from .engine import ProcessHandle


class SessionState(Enum):
    """States for a recording session."""

    IDLE = "idle"              # No session
    RECORDING = "recording"    # Engine is encoding
    PAUSED = "paused"          # Engine frozen, output stream resumable
    STOPPING = "stopping"      # Stop/cancel issued, finalizing or discarding


class CaptureMode(Enum):
    """What part of the screen a session captures."""

    FULLSCREEN = "fullscreen"
    WINDOW = "window"
    REGION = "region"


# Legal edges; IDLE -> RECORDING happens by constructing a Session
_TRANSITIONS = {
    SessionState.RECORDING: {SessionState.PAUSED, SessionState.STOPPING},
    SessionState.PAUSED: {SessionState.RECORDING, SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.IDLE},
}


class InvalidTransition(Exception):
    """Raised when a state edge is not part of the session state machine."""


@dataclass
class Session:
    """Represents the single active recording attempt."""

    mode: CaptureMode
    started_at: float
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: SessionState = SessionState.RECORDING
    geometry: Optional[Rect] = None
    paused_at: Optional[float] = None
    paused_accumulated: float = 0.0
    handle: Optional["ProcessHandle"] = None
    output_path: Optional[Path] = None
    recovered: bool = False

    def __post_init__(self):
        if self.mode == CaptureMode.FULLSCREEN and self.geometry is not None:
            raise ValueError("fullscreen sessions carry no geometry")
        if self.mode != CaptureMode.FULLSCREEN and self.geometry is None:
            raise ValueError(f"{self.mode.value} sessions require geometry")

    def _move(self, target: SessionState):
        if target not in _TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        self.state = target

    def pause(self, current_time: float):
        """Transition to paused."""
        self._move(SessionState.PAUSED)
        self.paused_at = current_time

    def resume(self, current_time: float):
        """Return to recording, folding the pause into the accumulated total."""
        paused_at = self.paused_at if self.paused_at is not None else current_time
        self._move(SessionState.RECORDING)
        self.paused_accumulated += max(0.0, current_time - paused_at)
        self.paused_at = None

    def begin_stopping(self):
        """Transition to stopping."""
        self._move(SessionState.STOPPING)

    def finish(self):
        """Mark session as finished."""
        self._move(SessionState.IDLE)

    def elapsed(self, current_time: float) -> float:
        """Recorded time so far, excluding pauses."""
        # While paused, the clock is frozen at the pause moment
        until = self.paused_at if self.paused_at is not None else current_time
        return max(0.0, until - self.started_at - self.paused_accumulated)

    def duration(self, stop_time: float) -> float:
        """Final duration: stop time minus start time minus paused time."""
        return max(0.0, stop_time - self.started_at - self.paused_accumulated)

    @property
    def is_active(self) -> bool:
        """Check if session is recording or paused."""
        return self.state in (SessionState.RECORDING, SessionState.PAUSED)

    @property
    def is_recording(self) -> bool:
        return self.state == SessionState.RECORDING

    @property
    def is_paused(self) -> bool:
        return self.state == SessionState.PAUSED
