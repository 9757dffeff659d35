"""Error taxonomy for the recording controller."""

from pathlib import Path
from typing import Optional


class RecError(Exception):
    """Base class for all rec-pilot errors."""


class ConfigError(RecError):
    """Invalid configuration value."""


class AlreadyRecording(RecError):
    def __init__(self, message: str = "Already recording"):
        super().__init__(message)


class NotRecording(RecError):
    def __init__(self, message: str = "Not recording"):
        super().__init__(message)


class ExecutableNotFound(RecError):
    """The capture engine binary could not be launched."""

    def __init__(self, path: str):
        super().__init__(f"Capture engine not executable: {path}")
        self.path = path


class PermissionDenied(RecError):
    def __init__(self, message: str = "Screen recording permission denied"):
        super().__init__(message)


class NoDeviceFound(RecError):
    def __init__(self, message: str = "No screen capture device found"):
        super().__init__(message)


class SpawnFailed(RecError):
    """Engine failed to start or exited during startup."""


class GeometryUnavailable(RecError):
    """Target is a floating surface, or origin/calibration is unavailable."""


class SelectionCancelled(RecError):
    """User cancelled region selection. A normal outcome, not a failure."""

    def __init__(self, message: str = "Selection cancelled"):
        super().__init__(message)


class SelectionInProgress(RecError):
    def __init__(self, message: str = "A region selection is already active"):
        super().__init__(message)


class SignalDeliveryFailed(RecError):
    """Pause/resume control signal could not be delivered."""


class MetadataWriteFailed(RecError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"Failed to write metadata {path}: {reason}")
        self.path = path


class OutputFileMissing(RecError):
    def __init__(self, directory: Optional[Path] = None):
        where = f" in {directory}" if directory else ""
        super().__init__(f"Could not locate recording file{where}")
        self.directory = directory
