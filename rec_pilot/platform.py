"""Platform abstraction for window queries, process signals and file safety."""

import asyncio
import logging
import os
import re
import signal
import struct
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

# Only files with these suffixes are ever deleted on cancel
VIDEO_SUFFIXES = (".mp4", ".mov", ".mkv", ".webm")

# Timeout for one-shot OS queries (osascript, xdotool)
QUERY_TIMEOUT = 2.0


def pid_alive(pid: int) -> bool:
    """Check whether a process id refers to a live process."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return not _is_zombie(pid)


def _is_zombie(pid: int) -> bool:
    """An exited but unreaped process still answers kill(pid, 0) on Linux."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    # The state field follows the parenthesized command name
    fields = stat.rpartition(")")[2].split()
    return bool(fields) and fields[0] == "Z"


def send_signal(pid: int, sig: signal.Signals) -> Tuple[bool, Optional[str]]:
    """
    Deliver a signal to a process.

    Returns:
        (success, error message)
    """
    if pid <= 0:
        return False, f"Invalid PID {pid}"
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False, f"PID {pid} not found"
    except PermissionError:
        return False, f"Not permitted to signal PID {pid}"
    logger.debug(f"Sent {sig.name} to {pid}")
    return True, None


def is_safe_to_delete(path: Path, output_dir: Path) -> bool:
    """
    Check if a recording file is safe to delete.

    Only allows deletion of regular files that:
    - live directly or indirectly under the output directory
    - carry a video suffix

    This prevents a bad announcement or anchor from deleting user data.
    """
    if not path.is_file():
        return False

    resolved = path.resolve()
    if resolved.suffix.lower() not in VIDEO_SUFFIXES:
        logger.warning(f"Refusing to delete {resolved}: not a video file")
        return False

    try:
        resolved.relative_to(output_dir.resolve())
    except ValueError:
        logger.warning(f"Refusing to delete {resolved}: not under {output_dir}")
        return False
    return True


def safe_unlink(path: Path, output_dir: Path) -> bool:
    """
    Safely remove a recording only if it passes safety checks.

    Returns True if deleted, False if skipped or failed.
    """
    if not is_safe_to_delete(path, output_dir):
        return False

    try:
        path.unlink()
        logger.debug(f"Deleted recording: {path}")
        return True
    except OSError as e:
        logger.error(f"Failed to delete {path}: {e}")
        return False


def terminal_cell_size(fd: Optional[int] = None) -> Optional[Tuple[int, int]]:
    """
    Measure the terminal cell size in pixels via TIOCGWINSZ.

    Many terminals leave the pixel fields zero; None is returned then.
    """
    try:
        import fcntl
        import termios
    except ImportError:
        return None

    if fd is None:
        fd = sys.stdout.fileno() if sys.stdout and sys.stdout.isatty() else -1
    if fd < 0:
        return None

    try:
        packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
    except OSError:
        return None
    rows, cols, xpixel, ypixel = struct.unpack("HHHH", packed)
    if not (rows and cols and xpixel and ypixel):
        return None
    return xpixel // cols, ypixel // rows


async def _query(cmd: List[str]) -> Optional[str]:
    """Run a short OS query without blocking the event loop."""
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug(f"{cmd[0]} unavailable: {e}")
        return None

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), QUERY_TIMEOUT)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning(f"{cmd[0]} query timed out")
        return None

    if process.returncode != 0:
        return None
    return stdout.decode(errors="replace").strip()


class Platform(ABC):
    """Abstract base class for platform-specific operations."""

    @abstractmethod
    async def window_origin(self) -> Optional[Tuple[int, int]]:
        """Absolute screen position of the focused host window's top-left corner."""
        pass

    @abstractmethod
    async def screen_size(self) -> Optional[Tuple[int, int]]:
        """Size of the capture screen in pixels."""
        pass

    @abstractmethod
    def open_command(self) -> Optional[str]:
        """Default command to open a file in an external viewer."""
        pass

    def cell_size(self) -> Optional[Tuple[int, int]]:
        """Measured cell size in pixels, if the terminal reports it."""
        return terminal_cell_size()

    @staticmethod
    def get_current() -> "Platform":
        """Get the platform implementation for the current system."""
        if sys.platform == "darwin":
            return MacPlatform()
        elif sys.platform == "win32":
            return WindowsPlatform()
        else:
            return LinuxPlatform()


class MacPlatform(Platform):
    """macOS implementation using AppleScript and system_profiler."""

    ORIGIN_SCRIPT = (
        'tell application "System Events"\n'
        "set frontApp to first application process whose frontmost is true\n"
        "set frontWindow to front window of frontApp\n"
        "set windowPosition to position of frontWindow\n"
        'return (item 1 of windowPosition as text) & "," & (item 2 of windowPosition as text)\n'
        "end tell"
    )

    async def window_origin(self) -> Optional[Tuple[int, int]]:
        """Query the frontmost window position with osascript."""
        out = await _query(["osascript", "-e", self.ORIGIN_SCRIPT])
        if not out:
            return None
        match = re.match(r"^(-?\d+),\s*(-?\d+)$", out)
        if not match:
            logger.debug(f"Unexpected osascript output: {out!r}")
            return None
        return int(match.group(1)), int(match.group(2))

    async def screen_size(self) -> Optional[Tuple[int, int]]:
        """Query the main display resolution."""
        out = await _query(["system_profiler", "SPDisplaysDataType"])
        if not out:
            return None
        match = re.search(r"Resolution:\s*(\d+)\s*x\s*(\d+)", out)
        if not match:
            return None
        return int(match.group(1)), int(match.group(2))

    def open_command(self) -> Optional[str]:
        return "open"


class LinuxPlatform(Platform):
    """Linux/X11 implementation using xdotool."""

    async def window_origin(self) -> Optional[Tuple[int, int]]:
        """Query the active window geometry with xdotool."""
        out = await _query(["xdotool", "getactivewindow", "getwindowgeometry", "--shell"])
        if not out:
            return None
        values = dict(
            line.split("=", 1) for line in out.splitlines() if "=" in line
        )
        try:
            return int(values["X"]), int(values["Y"])
        except (KeyError, ValueError):
            logger.debug(f"Unexpected xdotool output: {out!r}")
            return None

    async def screen_size(self) -> Optional[Tuple[int, int]]:
        out = await _query(["xdotool", "getdisplaygeometry"])
        if not out:
            return None
        parts = out.split()
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            return None
        return int(parts[0]), int(parts[1])

    def open_command(self) -> Optional[str]:
        return "xdg-open"


class WindowsPlatform(Platform):
    """Windows has no origin query here; rely on manual overrides."""

    async def window_origin(self) -> Optional[Tuple[int, int]]:
        return None

    async def screen_size(self) -> Optional[Tuple[int, int]]:
        return None

    def open_command(self) -> Optional[str]:
        return "start"
