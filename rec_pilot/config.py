"""Configuration management for rec-pilot."""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError

CONTROL_MODES = ("signal", "command")
HUD_POSITIONS = ("top-right", "top-center", "bottom-right", "bottom-center")


def _get_default_output_dir() -> Path:
    """Get default recordings directory."""
    return Path.home() / "Videos" / "nvim-recordings"


def _get_default_recovery_dir() -> Path:
    """Get directory for crash-recovery anchors (pid / output path files)."""
    # Survives a host restart but not a reboot, which also kills the engine
    return Path(tempfile.gettempdir()) / "rec-pilot"


def _get_default_engine_pid_file() -> Path:
    """Where rec-cli records the pid of its background ffmpeg."""
    return Path("/tmp/rec.nvim.pid")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RecConfig:
    """Configuration for the recording controller."""

    # Capture engine
    engine_path: str = "rec-cli"
    control: str = "signal"
    # Pid file a detaching engine writes for its encoder; None to rely on announcements
    engine_pid_file: Optional[Path] = field(default_factory=_get_default_engine_pid_file)

    # Paths
    output_dir: Path = field(default_factory=_get_default_output_dir)
    recovery_dir: Path = field(default_factory=_get_default_recovery_dir)

    # Calibration overrides; None means measure or use the defaults
    cell_width: Optional[int] = None
    cell_height: Optional[int] = None
    window_x: Optional[int] = None
    window_y: Optional[int] = None

    # Timing
    finalize_grace: float = 1.0
    cancel_grace: float = 0.7
    preview_ms: int = 1500

    # Titles
    title_max_length: int = 60
    trunk_branches: Tuple[str, ...] = ("main", "master", "dev")

    # Viewer
    auto_open: bool = False
    open_command: Optional[str] = None

    # HUD
    hud_position: str = "top-right"

    # Runtime
    verbose: bool = False

    def __post_init__(self):
        """Ensure paths are Path objects."""
        self.output_dir = Path(self.output_dir).expanduser()
        self.recovery_dir = Path(self.recovery_dir).expanduser()
        if self.engine_pid_file is not None:
            self.engine_pid_file = Path(self.engine_pid_file).expanduser()

    @property
    def window_origin_override(self) -> Optional[Tuple[int, int]]:
        """Manual host window origin, if both coordinates are set."""
        if self.window_x is None or self.window_y is None:
            return None
        return self.window_x, self.window_y

    def ensure_directories(self):
        """Create necessary directories."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.recovery_dir.mkdir(parents=True, exist_ok=True)

    def validate(self):
        """Raise ConfigError if any value is out of range."""
        for name in ("cell_width", "cell_height"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ConfigError(f"{name} must be at least 1")
        if self.finalize_grace < 0 or self.cancel_grace < 0:
            raise ConfigError("grace delays must not be negative")
        if self.preview_ms < 0:
            raise ConfigError("preview_ms must not be negative")
        if self.title_max_length < 1:
            raise ConfigError("title_max_length must be at least 1")
        if self.control not in CONTROL_MODES:
            raise ConfigError(
                f"Invalid control mode '{self.control}'. Valid options: {', '.join(CONTROL_MODES)}"
            )
        if self.hud_position not in HUD_POSITIONS:
            raise ConfigError(
                f"Invalid hud_position '{self.hud_position}'. "
                f"Valid options: {', '.join(HUD_POSITIONS)}"
            )

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "RecConfig":
        """Load configuration from environment variables."""
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        config = cls()

        # Capture engine
        if val := os.getenv("REC_ENGINE_PATH"):
            config.engine_path = os.path.expanduser(val)
        if val := os.getenv("REC_CONTROL"):
            config.control = val.strip().lower()
        if val := os.getenv("REC_ENGINE_PID_FILE"):
            config.engine_pid_file = None if val.strip().lower() == "none" else Path(val).expanduser()

        # Paths
        if val := os.getenv("REC_OUTPUT_DIR"):
            config.output_dir = Path(val).expanduser()
        if val := os.getenv("REC_RECOVERY_DIR"):
            config.recovery_dir = Path(val).expanduser()

        # Calibration
        if val := os.getenv("REC_CELL_WIDTH"):
            config.cell_width = int(val)
        if val := os.getenv("REC_CELL_HEIGHT"):
            config.cell_height = int(val)
        if val := os.getenv("REC_WINDOW_X"):
            config.window_x = int(val)
        if val := os.getenv("REC_WINDOW_Y"):
            config.window_y = int(val)

        # Timing
        if val := os.getenv("REC_FINALIZE_GRACE"):
            config.finalize_grace = float(val)
        if val := os.getenv("REC_CANCEL_GRACE"):
            config.cancel_grace = float(val)
        if val := os.getenv("REC_PREVIEW_MS"):
            config.preview_ms = int(val)

        # Titles
        if val := os.getenv("REC_TITLE_MAX"):
            config.title_max_length = int(val)
        if val := os.getenv("REC_TRUNK_BRANCHES"):
            config.trunk_branches = tuple(b.strip() for b in val.split(",") if b.strip())

        # Viewer
        if val := os.getenv("REC_AUTO_OPEN"):
            config.auto_open = _env_bool(val)
        if val := os.getenv("REC_OPEN_COMMAND"):
            config.open_command = val

        # HUD
        if val := os.getenv("REC_HUD_POSITION"):
            config.hud_position = val.strip().lower()

        return config
